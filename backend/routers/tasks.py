# routers/tasks.py — Tasks, status workflow and comments
from datetime import datetime
from typing import Optional, List

from fastapi import APIRouter, BackgroundTasks, Depends, Query, Request
from pydantic import BaseModel, Field
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from audit import AuditRecorder, build_event, get_audit_recorder
from auth import get_current_principal, get_tenant_context
from authorization import ResourceFacts, require
from database import get_db_session
from errors import ResourceNotFound, ValidationFailed
from models import (
    AuditAction, AuditResourceType, Project, Task, TaskComment, TaskPriority,
    TaskStatus, TaskType, User, UserRole, utcnow,
)
from notifier import NotificationPublisher, get_notifier
from permissions import Action, Principal, ResourceCategory
from routers.projects import get_project
from scoping import tenant_predicate, visible_tasks
from task_workflow import ensure_transition
from tenancy import TenantContext

router = APIRouter(prefix="/api/v1/tasks", tags=["Tasks"])


# ============================================================
# SCHEMAS
# ============================================================

class CommentOut(BaseModel):
    id: str
    task_id: str
    author_id: str
    content: str
    created_at: str
    updated_at: Optional[str] = None


class TaskOut(BaseModel):
    id: str
    tenant_id: str
    project_id: str
    parent_task_id: Optional[str] = None
    title: str
    description: Optional[str] = None
    task_type: str
    status: str
    priority: str
    assignee_id: Optional[str] = None
    reporter_id: str
    due_date: Optional[str] = None
    estimated_hours: Optional[float] = None
    actual_hours: float = 0.0
    tags: List[str] = []
    comment_count: int = 0
    created_at: str
    updated_at: Optional[str] = None
    completed_at: Optional[str] = None


class TaskDetailOut(TaskOut):
    comments: List[CommentOut] = []


class TaskCreate(BaseModel):
    project_id: str
    title: str = Field(..., min_length=1, max_length=300)
    description: Optional[str] = None
    task_type: TaskType = TaskType.STORY
    priority: TaskPriority = TaskPriority.MEDIUM
    assignee_id: Optional[str] = None
    parent_task_id: Optional[str] = None
    due_date: Optional[datetime] = None
    estimated_hours: Optional[float] = Field(None, ge=0)
    tags: List[str] = Field(default_factory=list)


class TaskUpdate(BaseModel):
    title: Optional[str] = Field(None, min_length=1, max_length=300)
    description: Optional[str] = None
    task_type: Optional[TaskType] = None
    status: Optional[TaskStatus] = None
    priority: Optional[TaskPriority] = None
    assignee_id: Optional[str] = None
    due_date: Optional[datetime] = None
    estimated_hours: Optional[float] = Field(None, ge=0)
    actual_hours: Optional[float] = Field(None, ge=0)
    tags: Optional[List[str]] = None


class StatusChange(BaseModel):
    status: TaskStatus


class CommentCreate(BaseModel):
    content: str = Field(..., min_length=1, max_length=5000)


# ============================================================
# HELPERS
# ============================================================

def _ts(dt) -> Optional[str]:
    return dt.isoformat() if dt else None


def _comment_to_out(c: TaskComment) -> CommentOut:
    return CommentOut(
        id=c.id,
        task_id=c.task_id,
        author_id=c.author_id,
        content=c.content,
        created_at=_ts(c.created_at) or "",
        updated_at=_ts(c.updated_at),
    )


def _task_to_out(t: Task) -> TaskOut:
    return TaskOut(
        id=t.id,
        tenant_id=t.tenant_id,
        project_id=t.project_id,
        parent_task_id=t.parent_task_id,
        title=t.title,
        description=t.description,
        task_type=TaskType(t.task_type).value,
        status=TaskStatus(t.status).value,
        priority=TaskPriority(t.priority).value,
        assignee_id=t.assignee_id,
        reporter_id=t.reporter_id,
        due_date=_ts(t.due_date),
        estimated_hours=t.estimated_hours,
        actual_hours=t.actual_hours or 0.0,
        tags=t.tags or [],
        comment_count=len(t.comments),
        created_at=_ts(t.created_at) or "",
        updated_at=_ts(t.updated_at),
        completed_at=_ts(t.completed_at),
    )


def _task_to_detail(t: Task) -> TaskDetailOut:
    return TaskDetailOut(
        **_task_to_out(t).model_dump(),
        comments=[_comment_to_out(c) for c in t.comments],
    )


async def _load(db: AsyncSession, task_id: str, ctx: TenantContext):
    """Task of the bound tenant plus its project, the snapshot authorize() narrows on"""
    tenant_id = ctx.require_resource_scope()
    task = (await db.execute(
        select(Task)
        .where(Task.id == task_id, tenant_predicate(Task, tenant_id))
        .execution_options(populate_existing=True)
    )).scalar_one_or_none()
    if not task:
        raise ResourceNotFound("Task not found")
    project = await get_project(db, task.project_id, ctx)
    return task, project


async def _check_assignee(db: AsyncSession, tenant_id: str, user_id: str) -> User:
    user = (await db.execute(
        select(User).where(
            User.id == user_id,
            User.tenant_id == tenant_id,
            User.deleted_at.is_(None),
            User.is_active.is_(True),
        )
    )).scalar_one_or_none()
    if not user:
        raise ValidationFailed("Assignee must be an active user of this tenant")
    return user


def _apply_status(task: Task, target: TaskStatus) -> TaskStatus:
    previous = TaskStatus(task.status)
    task.status = ensure_transition(previous, target)
    if task.status is TaskStatus.DONE:
        task.completed_at = utcnow()
    elif previous is TaskStatus.DONE:
        task.completed_at = None
    return previous


def _notify_assigned(background_tasks, notifier, principal: Principal, task: Task, project: Project):
    if task.assignee_id and task.assignee_id != principal.id:
        background_tasks.add_task(notifier.publish, task.assignee_id, "task.assigned", {
            "tenant_id": task.tenant_id, "task_id": task.id, "project_id": project.id,
            "title": task.title, "assigned_by": principal.id,
            "message": f"You were assigned '{task.title}' in {project.name}",
        })


def _notify_status(background_tasks, notifier, principal: Principal, task: Task,
                   project: Project, previous: TaskStatus):
    # Employees report progress upward; managers already see their own changes
    if principal.role is not UserRole.EMPLOYEE:
        return
    payload = {
        "tenant_id": task.tenant_id, "task_id": task.id, "project_id": project.id,
        "title": task.title, "from": previous.value, "to": TaskStatus(task.status).value,
        "changed_by": principal.id,
        "message": f"'{task.title}' moved from {previous.value} to {TaskStatus(task.status).value}",
    }
    for user_id in dict.fromkeys((project.manager_id, project.owner_id)):
        if user_id and user_id != principal.id:
            background_tasks.add_task(notifier.publish, user_id, "task.status_changed", payload)


# ============================================================
# TASKS
# ============================================================

@router.get("", response_model=List[TaskOut])
async def list_tasks(
    principal: Principal = Depends(get_current_principal),
    ctx: TenantContext = Depends(get_tenant_context),
    db: AsyncSession = Depends(get_db_session),
    project_id: Optional[str] = None,
    status: Optional[TaskStatus] = None,
    priority: Optional[TaskPriority] = None,
    assignee_id: Optional[str] = None,
    limit: int = Query(default=100, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
):
    """Tasks visible to the caller: the tenant's for org_admin, those in
    projects they take part in for project managers, assigned ones for employees"""
    require(principal, ctx, Action.READ, ResourceCategory.TASK)

    stmt = select(Task).where(visible_tasks(principal, ctx.tenant_id))
    if project_id:
        stmt = stmt.where(Task.project_id == project_id)
    if status:
        stmt = stmt.where(Task.status == status)
    if priority:
        stmt = stmt.where(Task.priority == priority)
    if assignee_id:
        stmt = stmt.where(Task.assignee_id == assignee_id)
    stmt = stmt.order_by(Task.created_at.desc()).offset(offset).limit(limit)

    result = await db.execute(stmt)
    return [_task_to_out(t) for t in result.scalars().all()]


@router.post("", response_model=TaskOut, status_code=201)
async def create_task(
    data: TaskCreate,
    request: Request,
    background_tasks: BackgroundTasks,
    principal: Principal = Depends(get_current_principal),
    ctx: TenantContext = Depends(get_tenant_context),
    db: AsyncSession = Depends(get_db_session),
    recorder: AuditRecorder = Depends(get_audit_recorder),
    notifier: NotificationPublisher = Depends(get_notifier),
):
    project = await get_project(db, data.project_id, ctx)
    task = Task(
        tenant_id=project.tenant_id,
        project_id=project.id,
        parent_task_id=data.parent_task_id,
        title=data.title,
        description=data.description,
        task_type=data.task_type,
        status=TaskStatus.TODO,
        priority=data.priority,
        assignee_id=data.assignee_id,
        reporter_id=principal.id,
        due_date=data.due_date,
        estimated_hours=data.estimated_hours,
        tags=data.tags,
    )
    facts = ResourceFacts(project=project, task=task)
    require(principal, ctx, Action.CREATE, ResourceCategory.TASK, facts)
    if data.assignee_id:
        require(principal, ctx, Action.ASSIGN, ResourceCategory.TASK, facts)
        await _check_assignee(db, ctx.tenant_id, data.assignee_id)
    if data.parent_task_id:
        parent = await db.get(Task, data.parent_task_id)
        if not parent or parent.project_id != project.id:
            raise ValidationFailed("Parent task must belong to the same project")

    db.add(task)
    await db.commit()
    task, project = await _load(db, task.id, ctx)

    out = _task_to_out(task)
    recorder.schedule(background_tasks, build_event(
        request, principal.id, ctx.tenant_id, AuditAction.CREATE, AuditResourceType.TASK, task.id,
        after=out.model_dump(),
    ))
    _notify_assigned(background_tasks, notifier, principal, task, project)
    return out


@router.get("/{task_id}", response_model=TaskDetailOut)
async def get_task(
    task_id: str,
    principal: Principal = Depends(get_current_principal),
    ctx: TenantContext = Depends(get_tenant_context),
    db: AsyncSession = Depends(get_db_session),
):
    task, project = await _load(db, task_id, ctx)
    require(principal, ctx, Action.READ, ResourceCategory.TASK, ResourceFacts(project=project, task=task))
    return _task_to_detail(task)


@router.patch("/{task_id}", response_model=TaskOut)
async def update_task(
    task_id: str,
    update: TaskUpdate,
    request: Request,
    background_tasks: BackgroundTasks,
    principal: Principal = Depends(get_current_principal),
    ctx: TenantContext = Depends(get_tenant_context),
    db: AsyncSession = Depends(get_db_session),
    recorder: AuditRecorder = Depends(get_audit_recorder),
    notifier: NotificationPublisher = Depends(get_notifier),
):
    task, project = await _load(db, task_id, ctx)
    facts = ResourceFacts(project=project, task=task)
    require(principal, ctx, Action.UPDATE, ResourceCategory.TASK, facts)

    reassigned = "assignee_id" in update.model_fields_set and update.assignee_id != task.assignee_id
    if reassigned:
        require(principal, ctx, Action.ASSIGN, ResourceCategory.TASK, facts)
        if update.assignee_id:
            await _check_assignee(db, ctx.tenant_id, update.assignee_id)

    before = _task_to_out(task).model_dump()
    previous = None
    if update.status is not None:
        previous = _apply_status(task, update.status)
    if reassigned:
        task.assignee_id = update.assignee_id
    for field in ("title", "description", "task_type", "priority", "due_date",
                  "estimated_hours", "actual_hours", "tags"):
        value = getattr(update, field)
        if value is not None:
            setattr(task, field, value)
    await db.commit()
    task, project = await _load(db, task.id, ctx)

    out = _task_to_out(task)
    recorder.schedule(background_tasks, build_event(
        request, principal.id, ctx.tenant_id, AuditAction.UPDATE, AuditResourceType.TASK, task.id,
        before=before, after=out.model_dump(),
    ))
    if reassigned:
        _notify_assigned(background_tasks, notifier, principal, task, project)
    if previous is not None:
        _notify_status(background_tasks, notifier, principal, task, project, previous)
    return out


@router.patch("/{task_id}/status", response_model=TaskOut)
async def change_status(
    task_id: str,
    change: StatusChange,
    request: Request,
    background_tasks: BackgroundTasks,
    principal: Principal = Depends(get_current_principal),
    ctx: TenantContext = Depends(get_tenant_context),
    db: AsyncSession = Depends(get_db_session),
    recorder: AuditRecorder = Depends(get_audit_recorder),
    notifier: NotificationPublisher = Depends(get_notifier),
):
    """Move a task along the status workflow"""
    task, project = await _load(db, task_id, ctx)
    require(principal, ctx, Action.UPDATE, ResourceCategory.TASK, ResourceFacts(project=project, task=task))

    previous = _apply_status(task, change.status)
    await db.commit()

    recorder.schedule(background_tasks, build_event(
        request, principal.id, ctx.tenant_id, AuditAction.UPDATE, AuditResourceType.TASK, task.id,
        before={"status": previous.value}, after={"status": change.status.value},
    ))
    _notify_status(background_tasks, notifier, principal, task, project, previous)
    return _task_to_out(task)


@router.delete("/{task_id}")
async def delete_task(
    task_id: str,
    request: Request,
    background_tasks: BackgroundTasks,
    principal: Principal = Depends(get_current_principal),
    ctx: TenantContext = Depends(get_tenant_context),
    db: AsyncSession = Depends(get_db_session),
    recorder: AuditRecorder = Depends(get_audit_recorder),
):
    task, project = await _load(db, task_id, ctx)
    require(principal, ctx, Action.DELETE, ResourceCategory.TASK, ResourceFacts(project=project, task=task))

    subtasks = (await db.execute(select(Task.id).where(Task.parent_task_id == task.id))).first()
    if subtasks:
        raise ValidationFailed("Delete the task's subtasks first")

    before = _task_to_out(task).model_dump()
    await db.delete(task)
    await db.commit()

    recorder.schedule(background_tasks, build_event(
        request, principal.id, ctx.tenant_id, AuditAction.DELETE, AuditResourceType.TASK, task_id,
        before=before,
    ))
    return {"status": "deleted", "id": task_id}


# ============================================================
# COMMENTS
# ============================================================

@router.get("/{task_id}/comments", response_model=List[CommentOut])
async def list_comments(
    task_id: str,
    principal: Principal = Depends(get_current_principal),
    ctx: TenantContext = Depends(get_tenant_context),
    db: AsyncSession = Depends(get_db_session),
):
    task, project = await _load(db, task_id, ctx)
    require(principal, ctx, Action.READ, ResourceCategory.TASK, ResourceFacts(project=project, task=task))
    return [_comment_to_out(c) for c in task.comments]


@router.post("/{task_id}/comments", response_model=CommentOut, status_code=201)
async def add_comment(
    task_id: str,
    data: CommentCreate,
    request: Request,
    background_tasks: BackgroundTasks,
    principal: Principal = Depends(get_current_principal),
    ctx: TenantContext = Depends(get_tenant_context),
    db: AsyncSession = Depends(get_db_session),
    recorder: AuditRecorder = Depends(get_audit_recorder),
):
    task, project = await _load(db, task_id, ctx)
    require(principal, ctx, Action.COMMENT, ResourceCategory.TASK, ResourceFacts(project=project, task=task))

    comment = TaskComment(author_id=principal.id, content=data.content)
    task.comments.append(comment)
    await db.commit()

    recorder.schedule(background_tasks, build_event(
        request, principal.id, ctx.tenant_id, AuditAction.CREATE, AuditResourceType.TASK, task.id,
        after={"comment_id": comment.id},
    ))
    return _comment_to_out(comment)


def _find_comment(task: Task, comment_id: str) -> TaskComment:
    comment = next((c for c in task.comments if c.id == comment_id), None)
    if comment is None:
        raise ResourceNotFound("Comment not found")
    return comment


@router.patch("/{task_id}/comments/{comment_id}", response_model=CommentOut)
async def update_comment(
    task_id: str,
    comment_id: str,
    data: CommentCreate,
    request: Request,
    background_tasks: BackgroundTasks,
    principal: Principal = Depends(get_current_principal),
    ctx: TenantContext = Depends(get_tenant_context),
    db: AsyncSession = Depends(get_db_session),
    recorder: AuditRecorder = Depends(get_audit_recorder),
):
    """Edit a comment (author or org_admin)"""
    task, project = await _load(db, task_id, ctx)
    comment = _find_comment(task, comment_id)
    require(principal, ctx, Action.UPDATE, ResourceCategory.TASK,
            ResourceFacts(project=project, task=task, comment=comment))

    before = comment.content
    comment.content = data.content
    comment.updated_at = utcnow()
    await db.commit()

    recorder.schedule(background_tasks, build_event(
        request, principal.id, ctx.tenant_id, AuditAction.UPDATE, AuditResourceType.TASK, task.id,
        before={"comment_id": comment.id, "content": before},
        after={"comment_id": comment.id, "content": comment.content},
    ))
    return _comment_to_out(comment)


@router.delete("/{task_id}/comments/{comment_id}")
async def delete_comment(
    task_id: str,
    comment_id: str,
    request: Request,
    background_tasks: BackgroundTasks,
    principal: Principal = Depends(get_current_principal),
    ctx: TenantContext = Depends(get_tenant_context),
    db: AsyncSession = Depends(get_db_session),
    recorder: AuditRecorder = Depends(get_audit_recorder),
):
    task, project = await _load(db, task_id, ctx)
    comment = _find_comment(task, comment_id)
    require(principal, ctx, Action.DELETE, ResourceCategory.TASK,
            ResourceFacts(project=project, task=task, comment=comment))

    task.comments.remove(comment)
    await db.commit()

    recorder.schedule(background_tasks, build_event(
        request, principal.id, ctx.tenant_id, AuditAction.DELETE, AuditResourceType.TASK, task.id,
        before={"comment_id": comment_id},
    ))
    return {"status": "deleted", "id": comment_id}
