"""Cache key builders.

Entity keys are singular (``task:``, ``user:``, ``token:``); collection keys
live under the plural namespaces (``tasks:``, ``users:``) so one prefix delete
drops every cached listing of a resource type without touching entity keys.
"""

import uuid

TASK_COLLECTIONS = "tasks:"
USER_COLLECTIONS = "users:"


def task_key(task_id: uuid.UUID) -> str:
    return f"task:{task_id}"


def user_key(user_id: uuid.UUID) -> str:
    return f"user:{user_id}"


def user_email_key(email: str) -> str:
    return f"user:email:{email.lower()}"


def token_key(user_id: uuid.UUID) -> str:
    return f"token:{user_id}"


def _search_part(search: str | None) -> str:
    return search.lower() if search else "none"


def all_tasks_key(search: str | None, page: int, limit: int) -> str:
    return f"{TASK_COLLECTIONS}all:search={_search_part(search)}:page={page}:limit={limit}"


def assigned_tasks_key(user_id: uuid.UUID, status: str | None, page: int, limit: int) -> str:
    return (
        f"{TASK_COLLECTIONS}assigned:{user_id}:status={status or 'any'}"
        f":page={page}:limit={limit}"
    )


def all_users_key(search: str | None, page: int, limit: int) -> str:
    return f"{USER_COLLECTIONS}all:search={_search_part(search)}:page={page}:limit={limit}"
