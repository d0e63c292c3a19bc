# permissions.py — Role defaults and the capability matrix
#
# The matrix is a fixed shape: six resource categories x five operations.
# Role defaults are produced by a pure function so that "reset to defaults"
# can always re-derive them exactly; nothing here touches the database.

from dataclasses import dataclass, field, fields, replace
from enum import Enum
from typing import Any, Dict, Mapping, Optional

from models import UserRole


class ResourceCategory(str, Enum):
    TENANT = "tenant"
    USER = "user"
    PROJECT = "project"
    TASK = "task"
    REPORT = "report"
    AUDIT = "audit"


class Operation(str, Enum):
    """Columns of the capability matrix"""
    CREATE = "create"
    READ = "read"
    UPDATE = "update"
    DELETE = "delete"
    ASSIGN = "assign"


class Action(str, Enum):
    """Actions a caller can request; each one consumes one matrix column"""
    CREATE = "create"
    READ = "read"
    UPDATE = "update"
    DELETE = "delete"
    ASSIGN = "assign"
    COMMENT = "comment"

    @property
    def operation(self) -> Operation:
        # Commenting is a change to the task's discussion
        if self is Action.COMMENT:
            return Operation.UPDATE
        return Operation(self.value)


@dataclass(frozen=True)
class Capabilities:
    create: bool = False
    read: bool = False
    update: bool = False
    delete: bool = False
    assign: bool = False

    def allows(self, operation: Operation) -> bool:
        return getattr(self, Operation(operation).value)

    def to_dict(self) -> Dict[str, bool]:
        return {f.name: getattr(self, f.name) for f in fields(self)}

    @classmethod
    def from_dict(cls, data: Optional[Mapping[str, Any]]) -> "Capabilities":
        data = data or {}
        return cls(**{f.name: bool(data.get(f.name, False)) for f in fields(cls)})


CRUD = Capabilities(create=True, read=True, update=True, delete=True)
CRUD_ASSIGN = replace(CRUD, assign=True)
READ_ONLY = Capabilities(read=True)


@dataclass(frozen=True)
class CapabilityMatrix:
    tenant: Capabilities = field(default_factory=Capabilities)
    user: Capabilities = field(default_factory=Capabilities)
    project: Capabilities = field(default_factory=Capabilities)
    task: Capabilities = field(default_factory=Capabilities)
    report: Capabilities = field(default_factory=Capabilities)
    audit: Capabilities = field(default_factory=Capabilities)

    def for_category(self, category: ResourceCategory) -> Capabilities:
        return getattr(self, ResourceCategory(category).value)

    def allows(self, category: ResourceCategory, operation: Operation) -> bool:
        return self.for_category(category).allows(operation)

    def to_dict(self) -> Dict[str, Dict[str, bool]]:
        return {c.value: self.for_category(c).to_dict() for c in ResourceCategory}

    @classmethod
    def from_dict(cls, data: Optional[Mapping[str, Any]]) -> "CapabilityMatrix":
        """Build a matrix from stored JSON; missing categories or flags are False"""
        data = data or {}
        return cls(**{c.value: Capabilities.from_dict(data.get(c.value)) for c in ResourceCategory})


def role_defaults(role: UserRole) -> CapabilityMatrix:
    """Default capability matrix for a role.

    Deterministic: the same role always yields an equal matrix, which is what
    lets a reset materialise exactly the defaults.
    """
    role = UserRole(role)
    if role is UserRole.SUPER_ADMIN:
        return CapabilityMatrix(tenant=CRUD, user=CRUD, audit=READ_ONLY)
    if role is UserRole.ORG_ADMIN:
        return CapabilityMatrix(
            user=CRUD, project=CRUD, task=CRUD_ASSIGN,
            report=READ_ONLY, audit=READ_ONLY,
        )
    if role is UserRole.PROJECT_MANAGER:
        return CapabilityMatrix(
            project=Capabilities(create=True, read=True, update=True),
            task=CRUD_ASSIGN,
            report=READ_ONLY,
        )
    if role is UserRole.EMPLOYEE:
        return CapabilityMatrix(
            project=READ_ONLY,
            task=Capabilities(read=True, update=True),
        )
    raise ValueError(f"Unknown role: {role}")


@dataclass(frozen=True)
class Principal:
    """The authenticated actor for one request.

    Role and home tenant come from the credential; capabilities are the
    effective matrix loaded once when the request was authenticated.
    """
    id: str
    role: UserRole
    tenant_id: Optional[str]
    capabilities: CapabilityMatrix
    email: str = ""
    display_name: str = ""

    def __post_init__(self):
        object.__setattr__(self, "role", UserRole(self.role))

    @property
    def is_super_admin(self) -> bool:
        return self.role is UserRole.SUPER_ADMIN

    @classmethod
    def with_defaults(cls, id: str, role: UserRole, tenant_id: Optional[str], **kwargs) -> "Principal":
        return cls(id=id, role=UserRole(role), tenant_id=tenant_id, capabilities=role_defaults(role), **kwargs)
