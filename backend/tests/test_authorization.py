# tests/test_authorization.py — The authorization engine over in-memory snapshots
from dataclasses import replace
from types import SimpleNamespace

import pytest

from authorization import Decision, ResourceFacts, authorize, require
from errors import (
    CannotManageSuperAdmin, DenyReason, InsufficientCapability, NotOwner,
    SuperAdminScopeViolation, TenantRequired,
)
from models import MemberRole, UserRole
from permissions import Action, CapabilityMatrix, Principal, ResourceCategory, role_defaults
from tenancy import TenantContext

TENANT = "tenant-a"
CTX = TenantContext(TENANT)


def principal(role, uid="me", tenant_id=TENANT, capabilities=None):
    return Principal(
        id=uid, role=role, tenant_id=tenant_id,
        capabilities=capabilities or role_defaults(role),
    )


def project(manager="pm", owner="pm", members=(), tenant_id=TENANT):
    return SimpleNamespace(
        id="p1", tenant_id=tenant_id, manager_id=manager, owner_id=owner,
        members=[SimpleNamespace(user_id=u, role=r) for u, r in members],
    )


def task(assignee="u2", tenant_id=TENANT):
    return SimpleNamespace(id="t1", tenant_id=tenant_id, project_id="p1", assignee_id=assignee)


def user(uid, role, tenant_id=TENANT):
    return SimpleNamespace(id=uid, role=role, tenant_id=tenant_id)


def reason(decision: Decision):
    assert not decision.allowed
    return decision.reason


class TestSuperAdminScope:
    @pytest.mark.parametrize("category", [c for c in ResourceCategory if c is not ResourceCategory.TENANT])
    @pytest.mark.parametrize("action", list(Action))
    def test_denied_outside_tenant_management(self, category, action):
        sa = principal(UserRole.SUPER_ADMIN, tenant_id=None)
        ctx = TenantContext(None, platform_scope=True)
        assert reason(authorize(sa, ctx, action, category)) is DenyReason.SUPER_ADMIN_SCOPE_VIOLATION

    def test_denied_even_with_a_generous_matrix(self):
        everything = CapabilityMatrix.from_dict({
            c.value: {op: True for op in ("create", "read", "update", "delete", "assign")}
            for c in ResourceCategory
        })
        sa = principal(UserRole.SUPER_ADMIN, tenant_id=None, capabilities=everything)
        decision = authorize(sa, TenantContext(TENANT, platform_scope=True), Action.READ,
                             ResourceCategory.PROJECT, ResourceFacts(project=project()))
        assert reason(decision) is DenyReason.SUPER_ADMIN_SCOPE_VIOLATION

    def test_tenant_management_allowed(self):
        sa = principal(UserRole.SUPER_ADMIN, tenant_id=None)
        ctx = TenantContext(None, platform_scope=True)
        for action in (Action.CREATE, Action.READ, Action.UPDATE, Action.DELETE):
            assert authorize(sa, ctx, action, ResourceCategory.TENANT, ResourceFacts(tenant_id="any"))

    def test_require_raises_typed_error(self):
        sa = principal(UserRole.SUPER_ADMIN, tenant_id=None)
        with pytest.raises(SuperAdminScopeViolation):
            require(sa, TenantContext(None, platform_scope=True), Action.READ, ResourceCategory.AUDIT)


class TestTenantGuard:
    def test_missing_tenant(self):
        with pytest.raises(TenantRequired):
            require(principal(UserRole.ORG_ADMIN), None, Action.READ, ResourceCategory.PROJECT)

    def test_resource_in_other_tenant(self):
        decision = authorize(principal(UserRole.ORG_ADMIN), CTX, Action.READ, ResourceCategory.PROJECT,
                             ResourceFacts(project=project(tenant_id="tenant-b")))
        assert reason(decision) is DenyReason.TENANT_ACCESS_DENIED

    def test_context_for_other_tenant(self):
        decision = authorize(principal(UserRole.EMPLOYEE), TenantContext("tenant-b"),
                             Action.READ, ResourceCategory.TASK)
        assert reason(decision) is DenyReason.TENANT_ACCESS_DENIED

    def test_org_admin_cannot_manage_tenants(self):
        decision = authorize(principal(UserRole.ORG_ADMIN), CTX, Action.READ, ResourceCategory.TENANT,
                             ResourceFacts(tenant_id=TENANT))
        assert reason(decision) is DenyReason.INSUFFICIENT_CAPABILITY


class TestCannotManageSuperAdmin:
    @pytest.mark.parametrize("action", [Action.READ, Action.UPDATE, Action.DELETE])
    def test_org_admin_on_super_admin_target(self, action):
        target = user("root", UserRole.SUPER_ADMIN, tenant_id=None)
        decision = authorize(principal(UserRole.ORG_ADMIN), CTX, action, ResourceCategory.USER,
                             ResourceFacts(target_user=target))
        assert reason(decision) is DenyReason.CANNOT_MANAGE_SUPER_ADMIN

    def test_regardless_of_matrix(self):
        generous = replace(role_defaults(UserRole.ORG_ADMIN), tenant=role_defaults(UserRole.SUPER_ADMIN).tenant)
        target = user("root", UserRole.SUPER_ADMIN, tenant_id=TENANT)
        decision = authorize(principal(UserRole.ORG_ADMIN, capabilities=generous), CTX,
                             Action.UPDATE, ResourceCategory.USER, ResourceFacts(target_user=target))
        assert reason(decision) is DenyReason.CANNOT_MANAGE_SUPER_ADMIN

    def test_promotion_to_super_admin(self):
        target = user("pm", UserRole.PROJECT_MANAGER)
        facts = ResourceFacts(target_user=target, requested_role=UserRole.SUPER_ADMIN)
        with pytest.raises(CannotManageSuperAdmin):
            require(principal(UserRole.ORG_ADMIN), CTX, Action.UPDATE, ResourceCategory.USER, facts)

    def test_creating_super_admin(self):
        facts = ResourceFacts(requested_role=UserRole.SUPER_ADMIN)
        decision = authorize(principal(UserRole.ORG_ADMIN), CTX, Action.CREATE, ResourceCategory.USER, facts)
        assert reason(decision) is DenyReason.CANNOT_MANAGE_SUPER_ADMIN

    def test_ordinary_target_allowed(self):
        facts = ResourceFacts(target_user=user("e1", UserRole.EMPLOYEE))
        assert authorize(principal(UserRole.ORG_ADMIN), CTX, Action.UPDATE, ResourceCategory.USER, facts)

    def test_cannot_delete_self(self):
        me = user("me", UserRole.ORG_ADMIN)
        decision = authorize(principal(UserRole.ORG_ADMIN), CTX, Action.DELETE, ResourceCategory.USER,
                             ResourceFacts(target_user=me))
        assert reason(decision) is DenyReason.CANNOT_MODIFY_SELF


class TestCapabilityMatrix:
    def test_employee_cannot_delete_tasks(self):
        decision = authorize(principal(UserRole.EMPLOYEE, uid="u2"), CTX, Action.DELETE,
                             ResourceCategory.TASK, ResourceFacts(project=project(), task=task("u2")))
        assert reason(decision) is DenyReason.INSUFFICIENT_CAPABILITY

    def test_employee_cannot_assign(self):
        decision = authorize(principal(UserRole.EMPLOYEE, uid="u2"), CTX, Action.ASSIGN,
                             ResourceCategory.TASK, ResourceFacts(project=project(), task=task("u2")))
        assert reason(decision) is DenyReason.INSUFFICIENT_CAPABILITY

    def test_pm_cannot_delete_projects(self):
        decision = authorize(principal(UserRole.PROJECT_MANAGER, uid="pm"), CTX, Action.DELETE,
                             ResourceCategory.PROJECT, ResourceFacts(project=project()))
        assert reason(decision) is DenyReason.INSUFFICIENT_CAPABILITY

    def test_override_removing_task_delete(self):
        # A PM whose override drops task delete, acting on a task in a project they manage
        matrix = role_defaults(UserRole.PROJECT_MANAGER).to_dict()
        matrix["task"]["delete"] = False
        pm = principal(UserRole.PROJECT_MANAGER, uid="pm", capabilities=CapabilityMatrix.from_dict(matrix))
        facts = ResourceFacts(project=project(manager="pm"), task=task())

        assert authorize(principal(UserRole.PROJECT_MANAGER, uid="pm"), CTX, Action.DELETE,
                         ResourceCategory.TASK, facts)
        with pytest.raises(InsufficientCapability):
            require(pm, CTX, Action.DELETE, ResourceCategory.TASK, facts)

    def test_reports_and_audit(self):
        assert authorize(principal(UserRole.PROJECT_MANAGER), CTX, Action.READ, ResourceCategory.REPORT)
        assert reason(authorize(principal(UserRole.PROJECT_MANAGER), CTX, Action.READ,
                                ResourceCategory.AUDIT)) is DenyReason.INSUFFICIENT_CAPABILITY
        assert authorize(principal(UserRole.ORG_ADMIN), CTX, Action.READ, ResourceCategory.AUDIT)


class TestProjectNarrowing:
    def test_pm_not_manager(self):
        decision = authorize(principal(UserRole.PROJECT_MANAGER, uid="pm2"), CTX, Action.UPDATE,
                             ResourceCategory.PROJECT, ResourceFacts(project=project(manager="pm", owner="pm")))
        assert reason(decision) is DenyReason.NOT_OWNER

    def test_pm_becomes_manager(self):
        facts = ResourceFacts(project=project(manager="pm2", owner="pm"))
        assert authorize(principal(UserRole.PROJECT_MANAGER, uid="pm2"), CTX, Action.UPDATE,
                         ResourceCategory.PROJECT, facts)

    def test_pm_becomes_lead_member(self):
        facts = ResourceFacts(project=project(members=[("pm2", MemberRole.LEAD)]))
        assert authorize(principal(UserRole.PROJECT_MANAGER, uid="pm2"), CTX, Action.UPDATE,
                         ResourceCategory.PROJECT, facts)

    def test_pm_plain_member_may_read_but_not_update(self):
        facts = ResourceFacts(project=project(members=[("pm2", MemberRole.MEMBER)]))
        pm2 = principal(UserRole.PROJECT_MANAGER, uid="pm2")
        assert authorize(pm2, CTX, Action.READ, ResourceCategory.PROJECT, facts)
        assert reason(authorize(pm2, CTX, Action.UPDATE, ResourceCategory.PROJECT, facts)) is DenyReason.NOT_OWNER

    def test_pm_outsider_cannot_read(self):
        decision = authorize(principal(UserRole.PROJECT_MANAGER, uid="pm2"), CTX, Action.READ,
                             ResourceCategory.PROJECT, ResourceFacts(project=project()))
        assert reason(decision) is DenyReason.NOT_OWNER

    def test_employee_reads_only_member_projects(self):
        e = principal(UserRole.EMPLOYEE, uid="e1")
        member_of = ResourceFacts(project=project(members=[("e1", MemberRole.MEMBER)]))
        assert authorize(e, CTX, Action.READ, ResourceCategory.PROJECT, member_of)
        decision = authorize(e, CTX, Action.READ, ResourceCategory.PROJECT, ResourceFacts(project=project()))
        assert reason(decision) is DenyReason.NOT_OWNER

    def test_org_admin_bypasses_narrowing(self):
        assert authorize(principal(UserRole.ORG_ADMIN, uid="admin"), CTX, Action.DELETE,
                         ResourceCategory.PROJECT, ResourceFacts(project=project()))

    def test_listing_needs_no_project(self):
        assert authorize(principal(UserRole.EMPLOYEE), CTX, Action.READ, ResourceCategory.PROJECT)

    def test_update_without_project_is_a_routing_bug(self):
        with pytest.raises(ValueError):
            authorize(principal(UserRole.PROJECT_MANAGER), CTX, Action.UPDATE, ResourceCategory.PROJECT)


class TestTaskNarrowing:
    def test_employee_not_assignee_then_assignee(self):
        e = principal(UserRole.EMPLOYEE, uid="e1")
        t = task(assignee="u2")
        facts = ResourceFacts(project=project(members=[("e1", MemberRole.MEMBER)]), task=t)

        assert reason(authorize(e, CTX, Action.UPDATE, ResourceCategory.TASK, facts)) is DenyReason.NOT_OWNER
        t.assignee_id = "e1"
        assert authorize(e, CTX, Action.UPDATE, ResourceCategory.TASK, facts)

    def test_employee_comment_requires_assignment(self):
        e = principal(UserRole.EMPLOYEE, uid="e1")
        facts = ResourceFacts(project=project(), task=task(assignee="u2"))
        assert reason(authorize(e, CTX, Action.COMMENT, ResourceCategory.TASK, facts)) is DenyReason.NOT_OWNER

    def test_employee_creates_only_in_member_projects(self):
        e = principal(UserRole.EMPLOYEE, uid="e1")
        matrix = role_defaults(UserRole.EMPLOYEE).to_dict()
        matrix["task"]["create"] = True
        e_creator = principal(UserRole.EMPLOYEE, uid="e1", capabilities=CapabilityMatrix.from_dict(matrix))

        member_of = ResourceFacts(project=project(members=[("e1", MemberRole.MEMBER)]))
        assert reason(authorize(e, CTX, Action.CREATE, ResourceCategory.TASK, member_of)) \
            is DenyReason.INSUFFICIENT_CAPABILITY
        assert authorize(e_creator, CTX, Action.CREATE, ResourceCategory.TASK, member_of)
        assert reason(authorize(e_creator, CTX, Action.CREATE, ResourceCategory.TASK,
                                ResourceFacts(project=project()))) is DenyReason.NOT_OWNER

    def test_pm_must_manage_the_tasks_project(self):
        facts = ResourceFacts(project=project(manager="other", owner="other"), task=task())
        pm = principal(UserRole.PROJECT_MANAGER, uid="pm")
        assert reason(authorize(pm, CTX, Action.UPDATE, ResourceCategory.TASK, facts)) is DenyReason.NOT_OWNER
        assert reason(authorize(pm, CTX, Action.READ, ResourceCategory.TASK, facts)) is DenyReason.NOT_OWNER

    def test_pm_member_may_read_tasks(self):
        facts = ResourceFacts(project=project(manager="other", owner="other",
                                              members=[("pm", MemberRole.MEMBER)]), task=task())
        pm = principal(UserRole.PROJECT_MANAGER, uid="pm")
        assert authorize(pm, CTX, Action.READ, ResourceCategory.TASK, facts)
        assert reason(authorize(pm, CTX, Action.DELETE, ResourceCategory.TASK, facts)) is DenyReason.NOT_OWNER

    def test_pm_task_without_project_is_a_routing_bug(self):
        with pytest.raises(ValueError):
            authorize(principal(UserRole.PROJECT_MANAGER), CTX, Action.UPDATE, ResourceCategory.TASK,
                      ResourceFacts(task=task()))

    def test_listing_needs_no_task(self):
        assert authorize(principal(UserRole.EMPLOYEE), CTX, Action.READ, ResourceCategory.TASK)


class TestCommentNarrowing:
    def test_assignee_cannot_edit_someone_elses_comment(self):
        comment = SimpleNamespace(id="c1", author_id="u1")
        facts = ResourceFacts(project=project(), task=task(assignee="u2"), comment=comment)
        u2 = principal(UserRole.EMPLOYEE, uid="u2")

        with pytest.raises(NotOwner):
            require(u2, CTX, Action.UPDATE, ResourceCategory.TASK, facts)
        assert reason(authorize(u2, CTX, Action.DELETE, ResourceCategory.TASK, facts)) is DenyReason.NOT_OWNER

    def test_org_admin_edits_any_comment(self):
        comment = SimpleNamespace(id="c1", author_id="u1")
        facts = ResourceFacts(project=project(), task=task(assignee="u2"), comment=comment)
        assert authorize(principal(UserRole.ORG_ADMIN, uid="admin"), CTX, Action.UPDATE,
                         ResourceCategory.TASK, facts)

    def test_author_edits_own_comment(self):
        comment = SimpleNamespace(id="c1", author_id="u2")
        facts = ResourceFacts(project=project(), task=task(assignee="u2"), comment=comment)
        assert authorize(principal(UserRole.EMPLOYEE, uid="u2"), CTX, Action.UPDATE,
                         ResourceCategory.TASK, facts)

    def test_comment_delete_uses_update_column(self):
        # Employees have no task delete, yet may delete their own comments
        comment = SimpleNamespace(id="c1", author_id="u2")
        facts = ResourceFacts(project=project(), task=task(assignee="u2"), comment=comment)
        assert authorize(principal(UserRole.EMPLOYEE, uid="u2"), CTX, Action.DELETE,
                         ResourceCategory.TASK, facts)
