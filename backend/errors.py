# errors.py — Error taxonomy shared by the authorization core and the API
#
# Authorization failures carry a stable DenyReason code so callers can tell
# which rule fired. Infrastructure failures (database down, etc.) are NOT
# TaskHubErrors and surface as 500s, never as denials.

from enum import Enum
from typing import Optional


class DenyReason(str, Enum):
    TENANT_REQUIRED = "tenant_required"
    TENANT_ACCESS_DENIED = "tenant_access_denied"
    SUPER_ADMIN_SCOPE_VIOLATION = "super_admin_scope_violation"
    INSUFFICIENT_CAPABILITY = "insufficient_capability"
    NOT_OWNER = "not_owner"
    CANNOT_MANAGE_SUPER_ADMIN = "cannot_manage_super_admin"
    CANNOT_MODIFY_SELF = "cannot_modify_self"


class TaskHubError(Exception):
    """Base error for TaskHub"""
    status_code = 500
    code = "internal_error"

    def __init__(self, message: Optional[str] = None):
        self.message = message or self.__class__.__doc__ or self.code
        super().__init__(self.message)


class AuthenticationError(TaskHubError):
    """Authentication required"""
    status_code = 401
    code = "unauthenticated"


class TenantRequired(TaskHubError):
    """Tenant ID is required"""
    status_code = 400
    code = DenyReason.TENANT_REQUIRED.value


class AccessDenied(TaskHubError):
    """Access denied"""
    status_code = 403
    reason = DenyReason.INSUFFICIENT_CAPABILITY

    @property
    def code(self) -> str:
        return self.reason.value


class TenantAccessDenied(AccessDenied):
    """Access denied to this tenant"""
    reason = DenyReason.TENANT_ACCESS_DENIED


class SuperAdminScopeViolation(AccessDenied):
    """super_admin cannot perform tenant-level operations; use tenant management instead"""
    reason = DenyReason.SUPER_ADMIN_SCOPE_VIOLATION


class InsufficientCapability(AccessDenied):
    """You do not have permission to perform this action"""
    reason = DenyReason.INSUFFICIENT_CAPABILITY


class NotOwner(AccessDenied):
    """You can only act on resources you own, manage or are assigned to"""
    reason = DenyReason.NOT_OWNER


class CannotManageSuperAdmin(AccessDenied):
    """super_admin accounts cannot be managed from a tenant"""
    reason = DenyReason.CANNOT_MANAGE_SUPER_ADMIN


class CannotModifySelf(AccessDenied):
    """Cannot modify your own permissions"""
    reason = DenyReason.CANNOT_MODIFY_SELF


_DENIALS = {cls.reason: cls for cls in (
    TenantAccessDenied, SuperAdminScopeViolation, InsufficientCapability,
    NotOwner, CannotManageSuperAdmin, CannotModifySelf,
)}


def denial_for(reason: DenyReason, message: Optional[str] = None) -> TaskHubError:
    if reason is DenyReason.TENANT_REQUIRED:
        return TenantRequired(message)
    return _DENIALS[reason](message)


class InvalidStatusTransition(TaskHubError):
    """Invalid status transition"""
    status_code = 400
    code = "invalid_status_transition"


class ValidationFailed(TaskHubError):
    """Invalid request"""
    status_code = 400
    code = "validation_error"


class ResourceNotFound(TaskHubError):
    """Resource not found"""
    status_code = 404
    code = "not_found"


class ConflictError(TaskHubError):
    """Resource already exists"""
    status_code = 409
    code = "conflict"
