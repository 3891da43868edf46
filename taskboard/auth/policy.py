"""Authorization policy.

``decide`` is a pure function of the actor, the action and ownership facts the
caller has already resolved from the Store. It never touches the Store or the
cache. Services call ``authorize`` at the top of every operation; there are no
stacked guards elsewhere.
"""

import uuid
from dataclasses import dataclass
from enum import Enum
from typing import Iterable

from taskboard.core.errors import AuthenticationRequired, AuthorizationDenied, DenyReason
from taskboard.models import Role


class Action(str, Enum):
    CREATE_TASK = "create_task"
    LIST_TASKS = "list_tasks"
    LIST_USERS = "list_users"
    READ_TASK = "read_task"
    READ_ASSIGNED_TASKS = "read_assigned_tasks"
    UPDATE_TASK_STATUS = "update_task_status"
    UPDATE_TASK = "update_task"
    DELETE_TASK = "delete_task"
    DELETE_USER = "delete_user"
    READ_OWN_PROFILE = "read_own_profile"
    EDIT_PROFILE = "edit_profile"
    UPDATE_ROLE = "update_role"


@dataclass(frozen=True)
class Actor:
    """Identity taken from a verified token, never from cache or request body."""

    id: uuid.UUID
    role: Role

    @property
    def is_admin(self) -> bool:
        return self.role == Role.ADMIN


@dataclass(frozen=True)
class ResourceFacts:
    target_user_id: uuid.UUID | None = None
    assignee_id: uuid.UUID | None = None


@dataclass(frozen=True)
class Decision:
    allowed: bool
    reason: DenyReason | None = None

    @classmethod
    def allow(cls) -> "Decision":
        return cls(True)

    @classmethod
    def deny(cls, reason: DenyReason) -> "Decision":
        return cls(False, reason)


_ADMIN_ONLY = frozenset({Role.ADMIN})
_ANY_ROLE = frozenset({Role.ADMIN, Role.USER})

ALLOWED_ROLES: dict[Action, frozenset[Role]] = {
    Action.CREATE_TASK: _ADMIN_ONLY,
    Action.LIST_TASKS: _ADMIN_ONLY,
    Action.LIST_USERS: _ADMIN_ONLY,
    Action.READ_TASK: _ADMIN_ONLY,
    Action.READ_ASSIGNED_TASKS: _ANY_ROLE,
    Action.UPDATE_TASK_STATUS: _ANY_ROLE,
    Action.UPDATE_TASK: _ADMIN_ONLY,
    Action.DELETE_TASK: _ADMIN_ONLY,
    Action.DELETE_USER: _ADMIN_ONLY,
    Action.READ_OWN_PROFILE: _ANY_ROLE,
    Action.EDIT_PROFILE: _ANY_ROLE,
    Action.UPDATE_ROLE: _ADMIN_ONLY,
}

# Fields each role may touch through a patch. Checked before any merge.
TASK_PATCH_FIELDS: dict[Role, frozenset[str]] = {
    Role.ADMIN: frozenset(
        {"title", "description", "status", "priority", "due_date", "assigned_to_id"}
    ),
    Role.USER: frozenset({"status"}),
}
PROFILE_PATCH_FIELDS: dict[Role, frozenset[str]] = {
    Role.ADMIN: frozenset({"name", "email", "password"}),
    Role.USER: frozenset({"name", "email", "password"}),
}


def decide(actor: Actor | None, action: Action, facts: ResourceFacts = ResourceFacts()) -> Decision:
    if actor is None:
        return Decision.deny(DenyReason.NOT_AUTHENTICATED)

    if actor.role not in ALLOWED_ROLES[action]:
        return Decision.deny(DenyReason.INSUFFICIENT_ROLE)

    if action == Action.UPDATE_ROLE and actor.id == facts.target_user_id:
        return Decision.deny(DenyReason.SELF_ACTION_FORBIDDEN)

    if action == Action.EDIT_PROFILE and actor.id != facts.target_user_id:
        return Decision.deny(DenyReason.NOT_OWNER)

    if not actor.is_admin:
        if action == Action.READ_ASSIGNED_TASKS and actor.id != facts.target_user_id:
            return Decision.deny(DenyReason.NOT_OWNER)
        # creatorship never grants status rights, only the assignment does
        if action == Action.UPDATE_TASK_STATUS and (
            facts.assignee_id is None or actor.id != facts.assignee_id
        ):
            return Decision.deny(DenyReason.NOT_OWNER)

    return Decision.allow()


def authorize(actor: Actor | None, action: Action, facts: ResourceFacts = ResourceFacts()) -> Actor:
    """Raise the domain error matching a denial, return the actor otherwise."""
    decision = decide(actor, action, facts)
    if decision.allowed:
        return actor
    if decision.reason == DenyReason.NOT_AUTHENTICATED:
        raise AuthenticationRequired("Authentication required")
    raise AuthorizationDenied(decision.reason)


def check_patch_fields(actor: Actor, fields: Iterable[str], allow_list: dict[Role, frozenset[str]]):
    forbidden = set(fields) - allow_list.get(actor.role, frozenset())
    if forbidden:
        raise AuthorizationDenied(
            DenyReason.INSUFFICIENT_ROLE,
            f"Role '{actor.role.value}' may not change: {', '.join(sorted(forbidden))}",
        )
