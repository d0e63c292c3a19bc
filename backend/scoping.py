# scoping.py — Query-side counterparts of the ownership predicates
#
# List endpoints filter with these clauses; single-item endpoints call
# authorize(). Both encode the same visibility rules, so a row a caller can
# fetch by id is exactly a row that appears in their lists.

from sqlalchemy import and_, exists, false, or_, select

from models import Project, ProjectMember, Task, UserRole
from permissions import Principal


def tenant_predicate(model, tenant_id: str):
    if not tenant_id:
        raise ValueError("tenant_id is required for tenant-scoped queries")
    return model.tenant_id == tenant_id


def _is_member(user_id: str):
    return exists().where(and_(
        ProjectMember.project_id == Project.id,
        ProjectMember.user_id == user_id,
    ))


def visible_projects(principal: Principal, tenant_id: str):
    """WHERE clause over Project for the projects a principal may read"""
    clause = tenant_predicate(Project, tenant_id)
    if principal.role is UserRole.ORG_ADMIN:
        return clause
    if principal.role is UserRole.PROJECT_MANAGER:
        return and_(clause, or_(
            Project.manager_id == principal.id,
            Project.owner_id == principal.id,
            _is_member(principal.id),
        ))
    if principal.role is UserRole.EMPLOYEE:
        return and_(clause, _is_member(principal.id))
    return false()


def visible_tasks(principal: Principal, tenant_id: str):
    """WHERE clause over Task for the tasks a principal may read"""
    clause = tenant_predicate(Task, tenant_id)
    if principal.role is UserRole.ORG_ADMIN:
        return clause
    if principal.role is UserRole.PROJECT_MANAGER:
        project_ids = select(Project.id).where(visible_projects(principal, tenant_id))
        return and_(clause, Task.project_id.in_(project_ids))
    if principal.role is UserRole.EMPLOYEE:
        return and_(clause, Task.assignee_id == principal.id)
    return false()
