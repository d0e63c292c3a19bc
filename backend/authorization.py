# authorization.py — The single authorization choke point
#
# authorize() combines four things: the principal's effective capability
# matrix, the bound tenant, the super_admin scope restriction and the
# ownership predicates. It is pure over already-fetched rows; routers load
# the resource (and its project, when narrowing needs it) before calling.

import logging
from dataclasses import dataclass
from typing import Any, Optional

from errors import DenyReason, denial_for
from models import UserRole
from ownership import (
    is_comment_owner,
    is_project_manager,
    is_project_member,
    is_project_participant,
    is_task_assignee,
)
from permissions import Action, Operation, Principal, ResourceCategory
from tenancy import TenantContext

logger = logging.getLogger("taskhub.authz")


@dataclass(frozen=True)
class ResourceFacts:
    """Snapshot of the resource an action targets.

    ``project`` must be the task's project whenever ``task`` is given and the
    principal is a project manager. ``requested_role`` is the role a user is
    being created with or moved to.
    """
    tenant_id: Optional[str] = None
    project: Any = None
    task: Any = None
    comment: Any = None
    target_user: Any = None
    requested_role: Optional[UserRole] = None

    def resource_tenant_id(self) -> Optional[str]:
        if self.tenant_id:
            return self.tenant_id
        for resource in (self.task, self.project, self.target_user):
            if resource is not None and getattr(resource, "tenant_id", None):
                return resource.tenant_id
        return None


NO_FACTS = ResourceFacts()


@dataclass(frozen=True)
class Decision:
    allowed: bool
    reason: Optional[DenyReason] = None
    message: Optional[str] = None

    def __bool__(self) -> bool:
        return self.allowed

    @classmethod
    def allow(cls) -> "Decision":
        return cls(allowed=True)

    @classmethod
    def deny(cls, reason: DenyReason, message: Optional[str] = None) -> "Decision":
        return cls(allowed=False, reason=reason, message=message)

    def enforce(self) -> None:
        """Raise the matching AccessDenied / TenantRequired if denied"""
        if not self.allowed:
            raise denial_for(self.reason, self.message)


def _missing(what: str, action: Action, category: ResourceCategory) -> ValueError:
    return ValueError(f"{what} is required to authorize {action.value} on {category.value}")


def _narrow_project(principal: Principal, action: Action, facts: ResourceFacts) -> Optional[Decision]:
    role = principal.role
    if action is Action.CREATE:
        return None
    project = facts.project
    if project is None:
        if action is Action.READ:
            # Listing; rows are narrowed by scoping.visible_projects
            return None
        raise _missing("project", action, ResourceCategory.PROJECT)

    if role is UserRole.PROJECT_MANAGER:
        if action is Action.READ:
            ok = is_project_participant(principal.id, project)
        else:
            ok = is_project_manager(principal.id, project)
        if not ok:
            return Decision.deny(DenyReason.NOT_OWNER, "You can only manage projects you own or manage")
    elif role is UserRole.EMPLOYEE:
        if action is Action.READ:
            ok = is_project_member(principal.id, project)
        else:
            ok = is_project_manager(principal.id, project)
        if not ok:
            return Decision.deny(DenyReason.NOT_OWNER, "You are not a member of this project")
    return None


def _narrow_task(principal: Principal, action: Action, facts: ResourceFacts) -> Optional[Decision]:
    role = principal.role
    if facts.comment is not None and action in (Action.UPDATE, Action.DELETE):
        if not is_comment_owner(principal.id, facts.comment):
            return Decision.deny(DenyReason.NOT_OWNER, "You can only modify your own comments")
        return None
    if action is Action.READ and facts.task is None and facts.project is None:
        # Listing; rows are narrowed by scoping.visible_tasks
        return None

    if role is UserRole.PROJECT_MANAGER:
        if facts.project is None:
            raise _missing("project", action, ResourceCategory.TASK)
        if action is Action.READ:
            ok = is_project_participant(principal.id, facts.project)
        else:
            ok = is_project_manager(principal.id, facts.project)
        if not ok:
            return Decision.deny(DenyReason.NOT_OWNER, "You can only manage tasks in projects you manage")
    elif role is UserRole.EMPLOYEE:
        if action is Action.CREATE:
            if facts.project is None:
                raise _missing("project", action, ResourceCategory.TASK)
            ok = is_project_member(principal.id, facts.project)
        else:
            if facts.task is None:
                raise _missing("task", action, ResourceCategory.TASK)
            ok = is_task_assignee(principal.id, facts.task)
        if not ok:
            return Decision.deny(DenyReason.NOT_OWNER, "You can only access tasks assigned to you")
    return None


def _evaluate(
    principal: Principal,
    tenant: Optional[TenantContext],
    action: Action,
    category: ResourceCategory,
    facts: ResourceFacts,
) -> Decision:
    if principal.is_super_admin and category is not ResourceCategory.TENANT:
        return Decision.deny(DenyReason.SUPER_ADMIN_SCOPE_VIOLATION)

    if not principal.is_super_admin:
        if tenant is None or not tenant.tenant_id:
            return Decision.deny(DenyReason.TENANT_REQUIRED)
        resource_tenant = facts.resource_tenant_id()
        if tenant.tenant_id != principal.tenant_id or (
            resource_tenant is not None and resource_tenant != tenant.tenant_id
        ):
            return Decision.deny(DenyReason.TENANT_ACCESS_DENIED)

        if category is ResourceCategory.USER:
            target = facts.target_user
            if (target is not None and UserRole(target.role) is UserRole.SUPER_ADMIN) or (
                facts.requested_role is not None
                and UserRole(facts.requested_role) is UserRole.SUPER_ADMIN
            ):
                return Decision.deny(DenyReason.CANNOT_MANAGE_SUPER_ADMIN)

    operation = action.operation
    if facts.comment is not None:
        operation = Operation.UPDATE
    if not principal.capabilities.allows(category, operation):
        return Decision.deny(DenyReason.INSUFFICIENT_CAPABILITY)

    if category is ResourceCategory.USER and action is Action.DELETE:
        target = facts.target_user
        if target is not None and target.id == principal.id:
            return Decision.deny(DenyReason.CANNOT_MODIFY_SELF, "Cannot delete your own account")

    if principal.role is UserRole.ORG_ADMIN or principal.is_super_admin:
        return Decision.allow()

    narrowed = None
    if category is ResourceCategory.PROJECT:
        narrowed = _narrow_project(principal, action, facts)
    elif category is ResourceCategory.TASK:
        narrowed = _narrow_task(principal, action, facts)
    return narrowed if narrowed is not None else Decision.allow()


def authorize(
    principal: Principal,
    tenant: Optional[TenantContext],
    action: Action,
    category: ResourceCategory,
    facts: Optional[ResourceFacts] = None,
) -> Decision:
    """Decide whether ``principal`` may perform ``action`` on ``category``.

    Never raises for a denial; call ``.enforce()`` on the result to turn it
    into an exception. Raises ValueError when narrowing needs a resource the
    caller did not supply, which is a routing bug rather than a denial.
    """
    action = Action(action)
    category = ResourceCategory(category)
    decision = _evaluate(principal, tenant, action, category, facts or NO_FACTS)
    if not decision.allowed:
        logger.info(
            "Denied %s on %s for user=%s role=%s: %s",
            action.value, category.value, principal.id,
            UserRole(principal.role).value, decision.reason.value,
        )
    return decision


def require(
    principal: Principal,
    tenant: Optional[TenantContext],
    action: Action,
    category: ResourceCategory,
    facts: Optional[ResourceFacts] = None,
) -> None:
    """authorize() and raise on denial"""
    authorize(principal, tenant, action, category, facts).enforce()
