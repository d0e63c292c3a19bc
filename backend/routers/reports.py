# routers/reports.py — Aggregate reports over the projects a caller can read
from typing import Optional

from fastapi import APIRouter, Depends
from sqlalchemy import and_, case, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from auth import get_current_principal, get_tenant_context
from authorization import ResourceFacts, require
from database import get_db_session
from models import Project, ProjectStatus, Task, TaskStatus, utcnow
from permissions import Action, Principal, ResourceCategory
from routers.projects import get_project
from scoping import visible_projects, visible_tasks
from tenancy import TenantContext

router = APIRouter(prefix="/api/v1/reports", tags=["Reports"])


@router.get("/task-status")
async def task_status_report(
    project_id: Optional[str] = None,
    principal: Principal = Depends(get_current_principal),
    ctx: TenantContext = Depends(get_tenant_context),
    db: AsyncSession = Depends(get_db_session),
):
    """Task counts per status (and per priority) across visible tasks"""
    require(principal, ctx, Action.READ, ResourceCategory.REPORT)

    scope = visible_tasks(principal, ctx.tenant_id)
    if project_id:
        project = await get_project(db, project_id, ctx)
        require(principal, ctx, Action.READ, ResourceCategory.PROJECT, ResourceFacts(project=project))
        scope = and_(scope, Task.project_id == project.id)

    by_status = {s.value: 0 for s in TaskStatus}
    for status, count in (await db.execute(
        select(Task.status, func.count(Task.id)).where(scope).group_by(Task.status)
    )).all():
        by_status[TaskStatus(status).value] = count

    by_priority = {
        getattr(p, "value", p): c
        for p, c in (await db.execute(
            select(Task.priority, func.count(Task.id)).where(scope).group_by(Task.priority)
        )).all()
    }

    overdue = (await db.execute(
        select(func.count(Task.id)).where(
            scope,
            Task.due_date.is_not(None),
            Task.due_date < utcnow(),
            Task.status.not_in([TaskStatus.DONE, TaskStatus.CANCELLED]),
        )
    )).scalar() or 0

    return {
        "project_id": project_id,
        "total": sum(by_status.values()),
        "by_status": by_status,
        "by_priority": by_priority,
        "overdue": overdue,
    }


@router.get("/project-completion")
async def project_completion_report(
    status: Optional[ProjectStatus] = None,
    principal: Principal = Depends(get_current_principal),
    ctx: TenantContext = Depends(get_tenant_context),
    db: AsyncSession = Depends(get_db_session),
):
    """Per-project task totals and completion percentage"""
    require(principal, ctx, Action.READ, ResourceCategory.REPORT)

    done = func.sum(case((Task.status == TaskStatus.DONE, 1), else_=0))
    stmt = (
        select(Project.id, Project.name, Project.status, func.count(Task.id), done)
        .outerjoin(Task, Task.project_id == Project.id)
        .where(visible_projects(principal, ctx.tenant_id))
        .group_by(Project.id, Project.name, Project.status)
        .order_by(Project.name)
    )
    if status:
        stmt = stmt.where(Project.status == status)

    projects = []
    for pid, name, pstatus, total, completed in (await db.execute(stmt)).all():
        completed = int(completed or 0)
        projects.append({
            "project_id": pid,
            "name": name,
            "status": ProjectStatus(pstatus).value,
            "total_tasks": total,
            "completed_tasks": completed,
            "completion_rate": round(completed * 100.0 / total, 1) if total else 0.0,
        })

    return {"projects": projects, "count": len(projects)}
