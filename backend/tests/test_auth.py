# tests/test_auth.py — Authentication, token revocation and tenant binding
import pytest
from httpx import AsyncClient
from sqlalchemy import select

from auth import MAX_LOGIN_ATTEMPTS
from models import AuditAction, AuditLog
from tests.conftest import PASSWORD, get_auth_headers


@pytest.mark.asyncio
class TestRegistration:
    async def test_register_success(self, client: AsyncClient, tenant):
        res = await client.post("/api/v1/auth/register", json={
            "email": "newuser@acme.example.com",
            "password": "SecurePass123",
            "first_name": "New",
            "last_name": "User",
            "subdomain": "acme",
        })
        assert res.status_code == 201
        data = res.json()
        assert "access_token" in data
        assert "refresh_token" in data
        assert data["user"]["email"] == "newuser@acme.example.com"
        assert data["user"]["role"] == "employee"
        assert data["user"]["tenant_id"] == tenant.id

    async def test_register_requires_tenant(self, client: AsyncClient):
        res = await client.post("/api/v1/auth/register", json={
            "email": "lost@acme.example.com",
            "password": "SecurePass123",
            "first_name": "Lost",
            "last_name": "User",
        })
        assert res.status_code == 400
        assert res.json()["reason"] == "validation_error"

    async def test_register_into_suspended_tenant(self, client: AsyncClient, db_session, tenant):
        tenant.is_active = False
        await db_session.commit()
        res = await client.post("/api/v1/auth/register", json={
            "email": "late@acme.example.com",
            "password": "SecurePass123",
            "first_name": "Late",
            "last_name": "User",
            "tenant_id": tenant.id,
        })
        assert res.status_code == 403
        assert res.json()["reason"] == "tenant_access_denied"

    async def test_register_weak_password(self, client: AsyncClient, tenant):
        res = await client.post("/api/v1/auth/register", json={
            "email": "weak@acme.example.com",
            "password": "lettersonly",
            "first_name": "Weak",
            "last_name": "User",
            "tenant_id": tenant.id,
        })
        assert res.status_code == 422

    async def test_register_duplicate_email(self, client: AsyncClient, tenant, employee):
        res = await client.post("/api/v1/auth/register", json={
            "email": employee.email,
            "password": "SecurePass123",
            "first_name": "Dupe",
            "last_name": "User",
            "tenant_id": tenant.id,
        })
        assert res.status_code == 409


@pytest.mark.asyncio
class TestLogin:
    async def test_login_success(self, client: AsyncClient, employee):
        res = await client.post("/api/v1/auth/login", json={"email": employee.email, "password": PASSWORD})
        assert res.status_code == 200
        data = res.json()
        assert data["user"]["id"] == employee.id
        assert data["token_type"] == "bearer"

    async def test_login_wrong_password_is_audited(self, client: AsyncClient, db_session, employee):
        res = await client.post("/api/v1/auth/login", json={"email": employee.email, "password": "Wrong12345"})
        assert res.status_code == 401
        assert res.json()["reason"] == "unauthenticated"

        logs = (await db_session.execute(
            select(AuditLog).where(AuditLog.action == AuditAction.LOGIN_FAILED)
        )).scalars().all()
        assert len(logs) == 1
        assert logs[0].user_id == employee.id

    async def test_login_nonexistent_user(self, client: AsyncClient):
        res = await client.post("/api/v1/auth/login", json={"email": "nobody@acme.example.com", "password": PASSWORD})
        assert res.status_code == 401

    async def test_brute_force_lockout(self, client: AsyncClient, employee):
        for _ in range(MAX_LOGIN_ATTEMPTS):
            res = await client.post("/api/v1/auth/login", json={"email": employee.email, "password": "Wrong12345"})
            assert res.status_code == 401
        res = await client.post("/api/v1/auth/login", json={"email": employee.email, "password": PASSWORD})
        assert res.status_code == 429

    async def test_login_to_suspended_tenant(self, client: AsyncClient, db_session, tenant, employee):
        tenant.is_active = False
        await db_session.commit()
        res = await client.post("/api/v1/auth/login", json={"email": employee.email, "password": PASSWORD})
        assert res.status_code == 403
        assert res.json()["reason"] == "tenant_access_denied"

    async def test_disabled_account(self, client: AsyncClient, db_session, employee):
        employee.is_active = False
        await db_session.commit()
        res = await client.post("/api/v1/auth/login", json={"email": employee.email, "password": PASSWORD})
        assert res.status_code == 401

    async def test_super_admin_has_no_tenant(self, client: AsyncClient, super_admin):
        res = await client.post("/api/v1/auth/login", json={"email": super_admin.email, "password": PASSWORD})
        assert res.status_code == 200
        assert res.json()["user"]["tenant_id"] is None


@pytest.mark.asyncio
class TestTokens:
    async def test_me_carries_effective_permissions(self, client: AsyncClient, employee):
        res = await client.get("/api/v1/auth/me", headers=get_auth_headers(employee))
        assert res.status_code == 200
        data = res.json()
        assert data["email"] == employee.email
        assert data["permissions"]["task"] == {
            "create": False, "read": True, "update": True, "delete": False, "assign": False,
        }

    async def test_access_without_token(self, client: AsyncClient):
        res = await client.get("/api/v1/auth/me")
        assert res.status_code == 401
        assert res.headers.get("www-authenticate") == "Bearer"

    async def test_access_with_invalid_token(self, client: AsyncClient):
        res = await client.get("/api/v1/auth/me", headers={"Authorization": "Bearer invalid.token.here"})
        assert res.status_code == 401

    async def test_refresh_rotates_token(self, client: AsyncClient, employee):
        login = await client.post("/api/v1/auth/login", json={"email": employee.email, "password": PASSWORD})
        refresh_token = login.json()["refresh_token"]

        res = await client.post("/api/v1/auth/refresh", json={"refresh_token": refresh_token})
        assert res.status_code == 200
        assert "access_token" in res.json()

        again = await client.post("/api/v1/auth/refresh", json={"refresh_token": refresh_token})
        assert again.status_code == 401

    async def test_access_token_cannot_refresh(self, client: AsyncClient, employee):
        login = await client.post("/api/v1/auth/login", json={"email": employee.email, "password": PASSWORD})
        res = await client.post("/api/v1/auth/refresh", json={"refresh_token": login.json()["access_token"]})
        assert res.status_code == 401

    async def test_logout_revokes_tokens(self, client: AsyncClient, employee):
        login = (await client.post(
            "/api/v1/auth/login", json={"email": employee.email, "password": PASSWORD},
        )).json()
        headers = {"Authorization": f"Bearer {login['access_token']}"}

        res = await client.post("/api/v1/auth/logout", headers=headers,
                                json={"refresh_token": login["refresh_token"]})
        assert res.status_code == 200

        me = await client.get("/api/v1/auth/me", headers=headers)
        assert me.status_code == 401
        assert me.json()["detail"] == "Token has been revoked"

        refresh = await client.post("/api/v1/auth/refresh", json={"refresh_token": login["refresh_token"]})
        assert refresh.status_code == 401

    async def test_logout_without_body(self, client: AsyncClient, employee):
        res = await client.post("/api/v1/auth/logout", headers=get_auth_headers(employee))
        assert res.status_code == 200

    async def test_deactivated_user_token_rejected(self, client: AsyncClient, db_session, employee):
        headers = get_auth_headers(employee)
        employee.is_active = False
        await db_session.commit()
        res = await client.get("/api/v1/auth/me", headers=headers)
        assert res.status_code == 401


@pytest.mark.asyncio
class TestPasswordChange:
    async def test_change_password(self, client: AsyncClient, employee):
        headers = get_auth_headers(employee)
        res = await client.post("/api/v1/auth/change-password", headers=headers, json={
            "current_password": PASSWORD, "new_password": "BrandNew456",
        })
        assert res.status_code == 200

        login = await client.post("/api/v1/auth/login", json={"email": employee.email, "password": "BrandNew456"})
        assert login.status_code == 200

    async def test_wrong_current_password(self, client: AsyncClient, employee):
        res = await client.post("/api/v1/auth/change-password", headers=get_auth_headers(employee), json={
            "current_password": "NotMine123", "new_password": "BrandNew456",
        })
        assert res.status_code == 400


@pytest.mark.asyncio
class TestTenantBinding:
    async def test_header_for_other_tenant(self, client: AsyncClient, employee, other_tenant):
        headers = {**get_auth_headers(employee), "X-Tenant-ID": other_tenant.id}
        res = await client.get("/api/v1/projects", headers=headers)
        assert res.status_code == 403
        assert res.json()["reason"] == "tenant_access_denied"

    async def test_query_for_other_tenant(self, client: AsyncClient, employee, other_tenant):
        res = await client.get(f"/api/v1/tasks?tenant_id={other_tenant.id}", headers=get_auth_headers(employee))
        assert res.status_code == 403
        assert res.json()["reason"] == "tenant_access_denied"

    async def test_suspended_tenant_blocks_api(self, client: AsyncClient, db_session, tenant, employee):
        headers = get_auth_headers(employee)
        tenant.is_active = False
        await db_session.commit()
        res = await client.get("/api/v1/projects", headers=headers)
        assert res.status_code == 403

    async def test_subdomain_resolution(self, client: AsyncClient, monkeypatch, employee, other_tenant):
        import auth
        monkeypatch.setattr(auth, "TENANT_BASE_DOMAIN", "taskhub.test")
        headers = {**get_auth_headers(employee), "Host": "globex.taskhub.test"}
        res = await client.get("/api/v1/projects", headers=headers)
        assert res.status_code == 403
        assert res.json()["reason"] == "tenant_access_denied"

        headers["Host"] = "acme.taskhub.test"
        assert (await client.get("/api/v1/projects", headers=headers)).status_code == 200
