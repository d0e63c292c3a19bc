# routers/projects.py — Projects and project membership
from datetime import datetime
from typing import Optional, List

from fastapi import APIRouter, BackgroundTasks, Depends, Query, Request
from pydantic import BaseModel, Field
from sqlalchemy import select, func
from sqlalchemy.ext.asyncio import AsyncSession

from audit import AuditRecorder, build_event, get_audit_recorder
from auth import get_current_principal, get_tenant_context
from authorization import ResourceFacts, require
from database import get_db_session
from errors import ConflictError, InsufficientCapability, ResourceNotFound, ValidationFailed
from models import (
    AuditAction, AuditResourceType, MemberRole, Project, ProjectMember, ProjectStatus,
    Task, TaskPriority, User, UserRole,
)
from notifier import NotificationPublisher, get_notifier
from permissions import Action, Principal, ResourceCategory
from scoping import tenant_predicate, visible_projects
from tenancy import TenantContext

router = APIRouter(prefix="/api/v1/projects", tags=["Projects"])

MANAGER_ROLES = (UserRole.PROJECT_MANAGER, UserRole.ORG_ADMIN)


# ============================================================
# SCHEMAS
# ============================================================

class MemberOut(BaseModel):
    user_id: str
    role: str
    joined_at: Optional[str] = None


class ProjectOut(BaseModel):
    id: str
    tenant_id: str
    name: str
    description: Optional[str] = None
    owner_id: str
    manager_id: str
    status: str
    priority: str
    start_date: Optional[str] = None
    end_date: Optional[str] = None
    budget: Optional[float] = None
    spent: float = 0.0
    tags: List[str] = []
    members: List[MemberOut] = []
    task_count: int = 0
    created_at: str


class ProjectCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=200)
    description: Optional[str] = None
    manager_id: Optional[str] = None
    status: ProjectStatus = ProjectStatus.PLANNING
    priority: TaskPriority = TaskPriority.MEDIUM
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    budget: Optional[float] = Field(None, ge=0)
    tags: List[str] = Field(default_factory=list)
    member_ids: List[str] = Field(default_factory=list)


class ProjectUpdate(BaseModel):
    name: Optional[str] = Field(None, min_length=1, max_length=200)
    description: Optional[str] = None
    manager_id: Optional[str] = None
    status: Optional[ProjectStatus] = None
    priority: Optional[TaskPriority] = None
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    budget: Optional[float] = Field(None, ge=0)
    spent: Optional[float] = Field(None, ge=0)
    tags: Optional[List[str]] = None


class MemberAdd(BaseModel):
    user_id: str
    role: MemberRole = MemberRole.MEMBER


# ============================================================
# HELPERS
# ============================================================

def _ts(dt) -> Optional[str]:
    return dt.isoformat() if dt else None


def _project_to_out(p: Project, task_count: int = 0) -> ProjectOut:
    return ProjectOut(
        id=p.id,
        tenant_id=p.tenant_id,
        name=p.name,
        description=p.description,
        owner_id=p.owner_id,
        manager_id=p.manager_id,
        status=ProjectStatus(p.status).value,
        priority=TaskPriority(p.priority).value,
        start_date=_ts(p.start_date),
        end_date=_ts(p.end_date),
        budget=p.budget,
        spent=p.spent or 0.0,
        tags=p.tags or [],
        members=[
            MemberOut(user_id=m.user_id, role=MemberRole(m.role).value, joined_at=_ts(m.joined_at))
            for m in p.members
        ],
        task_count=task_count,
        created_at=_ts(p.created_at) or "",
    )


async def get_project(db: AsyncSession, project_id: str, ctx: TenantContext) -> Project:
    """Load a project of the bound tenant with its members.

    Projects of other tenants are reported as missing; authorize() still
    compares the row's tenant against the context.
    """
    tenant_id = ctx.require_resource_scope()
    project = (await db.execute(
        select(Project)
        .where(Project.id == project_id, tenant_predicate(Project, tenant_id))
        .execution_options(populate_existing=True)
    )).scalar_one_or_none()
    if not project:
        raise ResourceNotFound("Project not found")
    return project


async def _task_count(db: AsyncSession, project_id: str) -> int:
    return (await db.execute(
        select(func.count(Task.id)).where(Task.project_id == project_id)
    )).scalar() or 0


async def _tenant_user(db: AsyncSession, tenant_id: str, user_id: str) -> User:
    user = (await db.execute(
        select(User).where(
            User.id == user_id,
            User.tenant_id == tenant_id,
            User.deleted_at.is_(None),
            User.is_active.is_(True),
        )
    )).scalar_one_or_none()
    if not user:
        raise ValidationFailed(f"User {user_id} is not an active member of this tenant")
    return user


# ============================================================
# PROJECTS
# ============================================================

@router.get("", response_model=List[ProjectOut])
async def list_projects(
    principal: Principal = Depends(get_current_principal),
    ctx: TenantContext = Depends(get_tenant_context),
    db: AsyncSession = Depends(get_db_session),
    status: Optional[ProjectStatus] = None,
    search: Optional[str] = None,
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
):
    """Projects visible to the caller: all of the tenant's for org_admin,
    managed/owned/joined ones for project managers, joined ones for employees"""
    require(principal, ctx, Action.READ, ResourceCategory.PROJECT)

    stmt = select(Project).where(visible_projects(principal, ctx.tenant_id))
    if status:
        stmt = stmt.where(Project.status == status)
    if search:
        stmt = stmt.where(Project.name.ilike(f"%{search}%"))
    stmt = stmt.order_by(Project.created_at.desc()).offset(offset).limit(limit)

    projects = (await db.execute(stmt)).scalars().all()
    counts = {}
    if projects:
        counts = dict((await db.execute(
            select(Task.project_id, func.count(Task.id))
            .where(Task.project_id.in_([p.id for p in projects]))
            .group_by(Task.project_id)
        )).all())
    return [_project_to_out(p, counts.get(p.id, 0)) for p in projects]


@router.post("", response_model=ProjectOut, status_code=201)
async def create_project(
    data: ProjectCreate,
    request: Request,
    background_tasks: BackgroundTasks,
    principal: Principal = Depends(get_current_principal),
    ctx: TenantContext = Depends(get_tenant_context),
    db: AsyncSession = Depends(get_db_session),
    recorder: AuditRecorder = Depends(get_audit_recorder),
    notifier: NotificationPublisher = Depends(get_notifier),
):
    """Create a project. A project manager always manages what they create;
    an org_admin may name a manager."""
    require(principal, ctx, Action.CREATE, ResourceCategory.PROJECT)

    manager_id = principal.id
    if principal.role is UserRole.ORG_ADMIN and data.manager_id:
        manager = await _tenant_user(db, ctx.tenant_id, data.manager_id)
        if UserRole(manager.role) not in MANAGER_ROLES:
            raise ValidationFailed("Manager must be a project manager or org admin")
        manager_id = manager.id

    project = Project(
        tenant_id=ctx.tenant_id,
        name=data.name,
        description=data.description,
        owner_id=principal.id,
        manager_id=manager_id,
        status=data.status,
        priority=data.priority,
        start_date=data.start_date,
        end_date=data.end_date,
        budget=data.budget,
        tags=data.tags,
    )
    added = []
    for user_id in dict.fromkeys(data.member_ids):
        member = await _tenant_user(db, ctx.tenant_id, user_id)
        project.members.append(ProjectMember(user_id=member.id, role=MemberRole.MEMBER))
        added.append(member.id)
    db.add(project)
    await db.commit()

    project = await get_project(db, project.id, ctx)
    out = _project_to_out(project)
    recorder.schedule(background_tasks, build_event(
        request, principal.id, ctx.tenant_id, AuditAction.CREATE, AuditResourceType.PROJECT, project.id,
        after=out.model_dump(),
    ))
    for user_id in added:
        if user_id != principal.id:
            background_tasks.add_task(notifier.publish, user_id, "project.member_added", {
                "tenant_id": ctx.tenant_id, "project_id": project.id, "project_name": project.name,
                "message": f"You were added to {project.name}",
            })
    return out


@router.get("/{project_id}", response_model=ProjectOut)
async def get_project_detail(
    project_id: str,
    principal: Principal = Depends(get_current_principal),
    ctx: TenantContext = Depends(get_tenant_context),
    db: AsyncSession = Depends(get_db_session),
):
    project = await get_project(db, project_id, ctx)
    require(principal, ctx, Action.READ, ResourceCategory.PROJECT, ResourceFacts(project=project))
    return _project_to_out(project, await _task_count(db, project.id))


@router.patch("/{project_id}", response_model=ProjectOut)
async def update_project(
    project_id: str,
    update: ProjectUpdate,
    request: Request,
    background_tasks: BackgroundTasks,
    principal: Principal = Depends(get_current_principal),
    ctx: TenantContext = Depends(get_tenant_context),
    db: AsyncSession = Depends(get_db_session),
    recorder: AuditRecorder = Depends(get_audit_recorder),
):
    project = await get_project(db, project_id, ctx)
    require(principal, ctx, Action.UPDATE, ResourceCategory.PROJECT, ResourceFacts(project=project))
    before = _project_to_out(project).model_dump()

    if update.manager_id is not None and update.manager_id != project.manager_id:
        if principal.role is not UserRole.ORG_ADMIN:
            raise InsufficientCapability("Only an org admin can change a project's manager")
        manager = await _tenant_user(db, ctx.tenant_id, update.manager_id)
        if UserRole(manager.role) not in MANAGER_ROLES:
            raise ValidationFailed("Manager must be a project manager or org admin")
        project.manager_id = manager.id

    for field in ("name", "description", "status", "priority", "start_date",
                  "end_date", "budget", "spent", "tags"):
        value = getattr(update, field)
        if value is not None:
            setattr(project, field, value)
    await db.commit()

    out = _project_to_out(project, await _task_count(db, project.id))
    recorder.schedule(background_tasks, build_event(
        request, principal.id, ctx.tenant_id, AuditAction.UPDATE, AuditResourceType.PROJECT, project.id,
        before=before, after=out.model_dump(),
    ))
    return out


@router.delete("/{project_id}")
async def delete_project(
    project_id: str,
    request: Request,
    background_tasks: BackgroundTasks,
    principal: Principal = Depends(get_current_principal),
    ctx: TenantContext = Depends(get_tenant_context),
    db: AsyncSession = Depends(get_db_session),
    recorder: AuditRecorder = Depends(get_audit_recorder),
):
    """Delete an empty project"""
    project = await get_project(db, project_id, ctx)
    require(principal, ctx, Action.DELETE, ResourceCategory.PROJECT, ResourceFacts(project=project))

    task_count = await _task_count(db, project.id)
    if task_count:
        raise ConflictError(f"Project still has {task_count} task(s); delete or move them first")

    before = _project_to_out(project).model_dump()
    await db.delete(project)
    await db.commit()

    recorder.schedule(background_tasks, build_event(
        request, principal.id, ctx.tenant_id, AuditAction.DELETE, AuditResourceType.PROJECT, project_id,
        before=before,
    ))
    return {"status": "deleted", "id": project_id}


# ============================================================
# MEMBERS
# ============================================================

@router.post("/{project_id}/members", response_model=ProjectOut, status_code=201)
async def add_member(
    project_id: str,
    data: MemberAdd,
    request: Request,
    background_tasks: BackgroundTasks,
    principal: Principal = Depends(get_current_principal),
    ctx: TenantContext = Depends(get_tenant_context),
    db: AsyncSession = Depends(get_db_session),
    recorder: AuditRecorder = Depends(get_audit_recorder),
    notifier: NotificationPublisher = Depends(get_notifier),
):
    project = await get_project(db, project_id, ctx)
    require(principal, ctx, Action.UPDATE, ResourceCategory.PROJECT, ResourceFacts(project=project))

    user = await _tenant_user(db, ctx.tenant_id, data.user_id)
    if any(m.user_id == user.id for m in project.members):
        raise ConflictError("User is already a member of this project")

    project.members.append(ProjectMember(user_id=user.id, role=data.role))
    await db.commit()

    recorder.schedule(background_tasks, build_event(
        request, principal.id, ctx.tenant_id, AuditAction.UPDATE, AuditResourceType.PROJECT, project.id,
        after={"member_added": user.id, "member_role": data.role.value},
    ))
    background_tasks.add_task(notifier.publish, user.id, "project.member_added", {
        "tenant_id": ctx.tenant_id, "project_id": project.id, "project_name": project.name,
        "role": data.role.value, "message": f"You were added to {project.name}",
    })
    return _project_to_out(project, await _task_count(db, project.id))


@router.delete("/{project_id}/members/{user_id}", response_model=ProjectOut)
async def remove_member(
    project_id: str,
    user_id: str,
    request: Request,
    background_tasks: BackgroundTasks,
    principal: Principal = Depends(get_current_principal),
    ctx: TenantContext = Depends(get_tenant_context),
    db: AsyncSession = Depends(get_db_session),
    recorder: AuditRecorder = Depends(get_audit_recorder),
):
    project = await get_project(db, project_id, ctx)
    require(principal, ctx, Action.UPDATE, ResourceCategory.PROJECT, ResourceFacts(project=project))

    member = next((m for m in project.members if m.user_id == user_id), None)
    if member is None:
        raise ResourceNotFound("Member not found")
    project.members.remove(member)
    await db.commit()

    recorder.schedule(background_tasks, build_event(
        request, principal.id, ctx.tenant_id, AuditAction.UPDATE, AuditResourceType.PROJECT, project.id,
        after={"member_removed": user_id},
    ))
    return _project_to_out(project, await _task_count(db, project.id))
