# tests/test_tasks.py — Tasks, status workflow, comments and notifications
import pytest
from httpx import AsyncClient
from sqlalchemy import select

from models import Notification, TaskStatus, UserRole
from tests.conftest import get_auth_headers, make_project, make_task, make_user


async def _notifications(db, user_id):
    result = await db.execute(
        select(Notification).where(Notification.user_id == user_id).order_by(Notification.created_at)
    )
    return [n.event_type for n in result.scalars().all()]


@pytest.mark.asyncio
class TestCreateTask:
    async def test_pm_creates_and_assigns(self, client: AsyncClient, db_session, project,
                                          project_manager, employee):
        res = await client.post("/api/v1/tasks", headers=get_auth_headers(project_manager), json={
            "project_id": project.id,
            "title": "Design schema",
            "priority": "high",
            "assignee_id": employee.id,
        })
        assert res.status_code == 201
        data = res.json()
        assert data["status"] == "todo"
        assert data["reporter_id"] == project_manager.id
        assert data["assignee_id"] == employee.id
        assert await _notifications(db_session, employee.id) == ["task.assigned"]

    async def test_pm_outside_project(self, client: AsyncClient, db_session, tenant, project):
        other_pm = await make_user(db_session, "pm2@acme.example.com", UserRole.PROJECT_MANAGER, tenant)
        res = await client.post("/api/v1/tasks", headers=get_auth_headers(other_pm), json={
            "project_id": project.id, "title": "Sneaky",
        })
        assert res.status_code == 403
        assert res.json()["reason"] == "not_owner"

    async def test_employee_cannot_create_by_default(self, client: AsyncClient, project, employee):
        res = await client.post("/api/v1/tasks", headers=get_auth_headers(employee), json={
            "project_id": project.id, "title": "Self-assigned",
        })
        assert res.status_code == 403
        assert res.json()["reason"] == "insufficient_capability"

    async def test_assignee_must_belong_to_tenant(self, client: AsyncClient, project, project_manager,
                                                  other_org_admin):
        res = await client.post("/api/v1/tasks", headers=get_auth_headers(project_manager), json={
            "project_id": project.id, "title": "Outsourced", "assignee_id": other_org_admin.id,
        })
        assert res.status_code == 400

    async def test_parent_in_other_project(self, client: AsyncClient, db_session, tenant, project,
                                           project_manager):
        elsewhere = await make_project(db_session, tenant, project_manager, name="Elsewhere")
        parent = await make_task(db_session, elsewhere, project_manager)
        res = await client.post("/api/v1/tasks", headers=get_auth_headers(project_manager), json={
            "project_id": project.id, "title": "Child", "parent_task_id": parent.id,
        })
        assert res.status_code == 400


@pytest.mark.asyncio
class TestReadTasks:
    async def test_employee_sees_only_assigned(self, client: AsyncClient, db_session, project,
                                               project_manager, employee, other_employee, task):
        unassigned = await make_task(db_session, project, project_manager, assignee=other_employee,
                                     title="Not yours")
        headers = get_auth_headers(employee)

        res = await client.get("/api/v1/tasks", headers=headers)
        assert [t["id"] for t in res.json()] == [task.id]

        assert (await client.get(f"/api/v1/tasks/{task.id}", headers=headers)).status_code == 200
        res = await client.get(f"/api/v1/tasks/{unassigned.id}", headers=headers)
        assert res.status_code == 403
        assert res.json()["reason"] == "not_owner"

    async def test_pm_sees_tasks_of_their_projects(self, client: AsyncClient, db_session, tenant,
                                                   project_manager, task):
        other_pm = await make_user(db_session, "pm2@acme.example.com", UserRole.PROJECT_MANAGER, tenant)
        foreign_project = await make_project(db_session, tenant, other_pm, name="Other")
        await make_task(db_session, foreign_project, other_pm, title="Other task")

        res = await client.get("/api/v1/tasks", headers=get_auth_headers(project_manager))
        assert [t["id"] for t in res.json()] == [task.id]

    async def test_org_admin_sees_everything_in_tenant(self, client: AsyncClient, db_session,
                                                       other_tenant, other_org_admin, org_admin, task):
        foreign = await make_project(db_session, other_tenant, other_org_admin, name="Foreign")
        await make_task(db_session, foreign, other_org_admin)
        res = await client.get("/api/v1/tasks", headers=get_auth_headers(org_admin))
        assert [t["id"] for t in res.json()] == [task.id]

    async def test_other_tenant_task_is_not_found(self, client: AsyncClient, task, other_org_admin):
        headers = get_auth_headers(other_org_admin)
        assert (await client.get(f"/api/v1/tasks/{task.id}", headers=headers)).status_code == 404
        res = await client.patch(f"/api/v1/tasks/{task.id}/status", headers=headers, json={"status": "cancelled"})
        assert res.status_code == 404
        res = await client.post("/api/v1/tasks", headers=headers, json={"project_id": task.project_id, "title": "x"})
        assert res.status_code == 404


@pytest.mark.asyncio
class TestUpdateTask:
    async def test_employee_updates_only_when_assigned(self, client: AsyncClient, db_session,
                                                       task, employee, other_employee):
        res = await client.patch(f"/api/v1/tasks/{task.id}", headers=get_auth_headers(other_employee),
                                 json={"actual_hours": 2})
        assert res.status_code == 403
        assert res.json()["reason"] == "not_owner"

        task.assignee_id = other_employee.id
        await db_session.commit()
        res = await client.patch(f"/api/v1/tasks/{task.id}", headers=get_auth_headers(other_employee),
                                 json={"actual_hours": 2})
        assert res.status_code == 200
        assert res.json()["actual_hours"] == 2

    async def test_employee_cannot_reassign(self, client: AsyncClient, task, employee, other_employee):
        res = await client.patch(f"/api/v1/tasks/{task.id}", headers=get_auth_headers(employee),
                                 json={"assignee_id": other_employee.id})
        assert res.status_code == 403
        assert res.json()["reason"] == "insufficient_capability"

    async def test_pm_reassigns(self, client: AsyncClient, db_session, task, project_manager, other_employee):
        res = await client.patch(f"/api/v1/tasks/{task.id}", headers=get_auth_headers(project_manager),
                                 json={"assignee_id": other_employee.id})
        assert res.status_code == 200
        assert res.json()["assignee_id"] == other_employee.id
        assert await _notifications(db_session, other_employee.id) == ["task.assigned"]

    async def test_pm_unassigns(self, client: AsyncClient, task, project_manager):
        res = await client.patch(f"/api/v1/tasks/{task.id}", headers=get_auth_headers(project_manager),
                                 json={"assignee_id": None})
        assert res.status_code == 200
        assert res.json()["assignee_id"] is None

    async def test_employee_status_change_notifies_manager(self, client: AsyncClient, db_session,
                                                           task, employee, project_manager):
        res = await client.patch(f"/api/v1/tasks/{task.id}/status", headers=get_auth_headers(employee),
                                 json={"status": "in_progress"})
        assert res.status_code == 200
        assert res.json()["status"] == "in_progress"
        assert await _notifications(db_session, project_manager.id) == ["task.status_changed"]


@pytest.mark.asyncio
class TestStatusWorkflow:
    async def test_invalid_transition(self, client: AsyncClient, task, project_manager):
        res = await client.patch(f"/api/v1/tasks/{task.id}/status", headers=get_auth_headers(project_manager),
                                 json={"status": "done"})
        assert res.status_code == 400
        assert res.json()["reason"] == "invalid_status_transition"

    async def test_done_cannot_block_but_reopens(self, client: AsyncClient, db_session, task, project_manager):
        task.status = TaskStatus.DONE
        await db_session.commit()
        headers = get_auth_headers(project_manager)

        res = await client.patch(f"/api/v1/tasks/{task.id}/status", headers=headers, json={"status": "blocked"})
        assert res.status_code == 400
        assert res.json()["reason"] == "invalid_status_transition"

        res = await client.patch(f"/api/v1/tasks/{task.id}/status", headers=headers, json={"status": "in_progress"})
        assert res.status_code == 200
        assert res.json()["status"] == "in_progress"
        assert res.json()["completed_at"] is None

    async def test_walk_to_done_sets_completed_at(self, client: AsyncClient, task, employee):
        headers = get_auth_headers(employee)
        for status in ("in_progress", "in_review", "done"):
            res = await client.patch(f"/api/v1/tasks/{task.id}/status", headers=headers, json={"status": status})
            assert res.status_code == 200
        assert res.json()["completed_at"] is not None

    async def test_status_through_generic_update(self, client: AsyncClient, task, project_manager):
        res = await client.patch(f"/api/v1/tasks/{task.id}", headers=get_auth_headers(project_manager),
                                 json={"status": "cancelled"})
        assert res.status_code == 200
        res = await client.patch(f"/api/v1/tasks/{task.id}", headers=get_auth_headers(project_manager),
                                 json={"status": "in_progress"})
        assert res.status_code == 400


@pytest.mark.asyncio
class TestDeleteTask:
    async def test_employee_cannot_delete(self, client: AsyncClient, task, employee):
        res = await client.delete(f"/api/v1/tasks/{task.id}", headers=get_auth_headers(employee))
        assert res.status_code == 403
        assert res.json()["reason"] == "insufficient_capability"

    async def test_pm_deletes(self, client: AsyncClient, task, project_manager):
        headers = get_auth_headers(project_manager)
        assert (await client.delete(f"/api/v1/tasks/{task.id}", headers=headers)).status_code == 200
        assert (await client.get(f"/api/v1/tasks/{task.id}", headers=headers)).status_code == 404

    async def test_subtasks_block_delete(self, client: AsyncClient, db_session, project, task, project_manager):
        child = await make_task(db_session, project, project_manager, title="Child")
        child.parent_task_id = task.id
        await db_session.commit()
        res = await client.delete(f"/api/v1/tasks/{task.id}", headers=get_auth_headers(project_manager))
        assert res.status_code == 400


@pytest.mark.asyncio
class TestComments:
    async def test_assignee_comments(self, client: AsyncClient, task, employee):
        headers = get_auth_headers(employee)
        res = await client.post(f"/api/v1/tasks/{task.id}/comments", headers=headers, json={"content": "On it"})
        assert res.status_code == 201
        assert res.json()["author_id"] == employee.id

        res = await client.get(f"/api/v1/tasks/{task.id}", headers=headers)
        assert [c["content"] for c in res.json()["comments"]] == ["On it"]

    async def test_non_assignee_cannot_comment(self, client: AsyncClient, task, other_employee):
        res = await client.post(f"/api/v1/tasks/{task.id}/comments", headers=get_auth_headers(other_employee),
                                json={"content": "Drive-by"})
        assert res.status_code == 403
        assert res.json()["reason"] == "not_owner"

    async def test_only_author_or_org_admin_edits(self, client: AsyncClient, task, project_manager,
                                                  employee, org_admin):
        created = await client.post(f"/api/v1/tasks/{task.id}/comments",
                                    headers=get_auth_headers(project_manager), json={"content": "Please hurry"})
        comment_id = created.json()["id"]
        url = f"/api/v1/tasks/{task.id}/comments/{comment_id}"

        res = await client.patch(url, headers=get_auth_headers(employee), json={"content": "No rush"})
        assert res.status_code == 403
        assert res.json()["reason"] == "not_owner"

        res = await client.patch(url, headers=get_auth_headers(org_admin), json={"content": "Moderated"})
        assert res.status_code == 200
        assert res.json()["content"] == "Moderated"

        assert (await client.delete(url, headers=get_auth_headers(employee))).status_code == 403
        assert (await client.delete(url, headers=get_auth_headers(project_manager))).status_code == 200

    async def test_missing_comment(self, client: AsyncClient, task, employee):
        res = await client.patch(f"/api/v1/tasks/{task.id}/comments/nope", headers=get_auth_headers(employee),
                                 json={"content": "x"})
        assert res.status_code == 404
