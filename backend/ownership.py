# ownership.py — Resource ownership predicates
#
# Pure functions over already-fetched rows (ORM instances or anything with
# the same attributes). They never query; callers load the resource first.

from typing import Any, Optional

from models import MemberRole


def _member_role(member: Any) -> Optional[MemberRole]:
    role = getattr(member, "role", None)
    if role is None:
        return None
    try:
        return MemberRole(role)
    except ValueError:
        return None


def is_project_manager(user_id: str, project: Any) -> bool:
    """Manager, owner, or a LEAD member of the project"""
    if project is None or not user_id:
        return False
    if user_id in (project.manager_id, project.owner_id):
        return True
    return any(
        m.user_id == user_id and _member_role(m) is MemberRole.LEAD
        for m in (project.members or [])
    )


def is_project_member(user_id: str, project: Any) -> bool:
    if project is None or not user_id:
        return False
    return any(m.user_id == user_id for m in (project.members or []))


def is_project_participant(user_id: str, project: Any) -> bool:
    """Manager, owner or any member; the visibility rule for project managers"""
    return is_project_manager(user_id, project) or is_project_member(user_id, project)


def is_task_assignee(user_id: str, task: Any) -> bool:
    if task is None or not user_id:
        return False
    return task.assignee_id is not None and task.assignee_id == user_id


def is_comment_owner(user_id: str, comment: Any) -> bool:
    if comment is None or not user_id:
        return False
    return comment.author_id == user_id
