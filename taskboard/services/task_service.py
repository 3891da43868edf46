import logging
import uuid

from sqlmodel import col, func, select
from sqlmodel.ext.asyncio.session import AsyncSession

from taskboard.auth.policy import (
    TASK_PATCH_FIELDS,
    Action,
    Actor,
    ResourceFacts,
    authorize,
    check_patch_fields,
)
from taskboard.cache import keys
from taskboard.cache.coordinator import CacheCoordinator
from taskboard.core.config import Settings
from taskboard.core.errors import NotFound, ValidationError
from taskboard.models import (
    Page,
    Task,
    TaskCreate,
    TaskRead,
    TaskStatus,
    TaskUpdate,
    User,
    get_utc_now,
)
from taskboard.services.pagination import fetch_page, normalize_search, validate_page

logger = logging.getLogger(__name__)

_NON_NULLABLE = ("title", "status", "priority")


def task_projection(task: Task) -> dict:
    return TaskRead.model_validate(task).model_dump(mode="json")


def _parse_status(status: TaskStatus | str) -> TaskStatus:
    try:
        return TaskStatus(status)
    except ValueError:
        raise ValidationError("Status must be TODO, IN_PROGRESS, or DONE") from None


class TaskService:
    def __init__(self, db: AsyncSession, cache: CacheCoordinator, settings: Settings):
        self.db = db
        self.cache = cache
        self.settings = settings

    async def _get_task(self, task_id: uuid.UUID) -> Task:
        task = await self.db.get(Task, task_id)
        if task is None:
            raise NotFound(f"Task with id {task_id} not found")
        return task

    async def _require_assignee(self, user_id: uuid.UUID) -> None:
        if await self.db.get(User, user_id) is None:
            raise ValidationError(f"Assigned user {user_id} does not exist")

    async def _sync_task_cache(self, task: Task):
        await self.cache.refresh_entities({keys.task_key(task.id): task_projection(task)})
        await self.cache.invalidate_collections(keys.TASK_COLLECTIONS)

    async def create_task(self, task_data: TaskCreate, actor: Actor | None) -> TaskRead:
        title = (task_data.title or "").strip()
        if not title:
            raise ValidationError("Task title is required")

        actor = authorize(actor, Action.CREATE_TASK)
        creator = await self.db.get(User, actor.id)
        if creator is None:
            raise NotFound("Authenticated user not found")
        if task_data.assigned_to_id is not None:
            await self._require_assignee(task_data.assigned_to_id)

        task = Task(
            title=title,
            description=task_data.description,
            status=task_data.status,
            priority=task_data.priority,
            due_date=task_data.due_date,
            created_by_id=creator.id,
            assigned_to_id=task_data.assigned_to_id,
        )
        self.db.add(task)
        await self.db.commit()
        await self.db.refresh(task)
        logger.info(f"Task {task.id} created by {actor.id}")

        await self._sync_task_cache(task)
        return TaskRead.model_validate(task)

    async def list_all_tasks(
        self,
        search: str | None,
        page: int,
        limit: int,
        actor: Actor | None,
    ) -> Page[TaskRead]:
        authorize(actor, Action.LIST_TASKS)
        validate_page(page, limit, self.settings.max_page_size)
        term = normalize_search(search)

        async def loader():
            query = select(Task)
            if term:
                query = query.where(func.lower(col(Task.title)).contains(term, autoescape=True))
            return await fetch_page(
                self.db, query, [col(Task.title), col(Task.id)], page, limit, TaskRead
            )

        result = await self.cache.read_collection(keys.all_tasks_key(term, page, limit), loader)
        return Page[TaskRead].model_validate(result)

    async def list_assigned_tasks(
        self,
        user_id: uuid.UUID,
        page: int,
        limit: int,
        status: TaskStatus | str | None,
        actor: Actor | None,
    ) -> Page[TaskRead]:
        authorize(actor, Action.READ_ASSIGNED_TASKS, ResourceFacts(target_user_id=user_id))
        validate_page(page, limit, self.settings.max_page_size)
        status = _parse_status(status) if status is not None else None

        async def loader():
            query = select(Task).where(Task.assigned_to_id == user_id)
            if status is not None:
                query = query.where(Task.status == status)
            return await fetch_page(
                self.db, query, [col(Task.title), col(Task.id)], page, limit, TaskRead
            )

        key = keys.assigned_tasks_key(user_id, status.value if status else None, page, limit)
        result = await self.cache.read_collection(key, loader)
        return Page[TaskRead].model_validate(result)

    async def get_task_by_id(self, task_id: uuid.UUID, actor: Actor | None) -> TaskRead:
        authorize(actor, Action.READ_TASK)

        async def loader():
            task = await self.db.get(Task, task_id)
            return task_projection(task) if task else None

        cached = await self.cache.read_entity(keys.task_key(task_id), loader)
        if cached is None:
            raise NotFound(f"Task with id {task_id} not found")
        return TaskRead.model_validate(cached)

    async def update_task_status(
        self, task_id: uuid.UUID, status: TaskStatus | str, actor: Actor | None
    ) -> TaskRead:
        status = _parse_status(status)
        task = await self._get_task(task_id)
        authorize(actor, Action.UPDATE_TASK_STATUS, ResourceFacts(assignee_id=task.assigned_to_id))

        task.status = status
        task.updated_at = get_utc_now()
        self.db.add(task)
        await self.db.commit()
        await self.db.refresh(task)

        await self._sync_task_cache(task)
        return TaskRead.model_validate(task)

    async def update_task(
        self, task_id: uuid.UUID, task_data: TaskUpdate, actor: Actor | None
    ) -> TaskRead:
        fields = task_data.model_dump(exclude_unset=True)
        if not fields:
            raise ValidationError("No fields to update")
        for field in _NON_NULLABLE:
            if field in fields and fields[field] is None:
                raise ValidationError(f"{field} cannot be null")
        if "title" in fields:
            fields["title"] = fields["title"].strip()
            if not fields["title"]:
                raise ValidationError("Title cannot be empty")
        if fields.get("description") is not None:
            fields["description"] = fields["description"].strip()

        task = await self._get_task(task_id)
        # a status-only patch is the assignee's path, anything else is admin-only
        action = Action.UPDATE_TASK_STATUS if fields.keys() <= {"status"} else Action.UPDATE_TASK
        actor = authorize(actor, action, ResourceFacts(assignee_id=task.assigned_to_id))
        check_patch_fields(actor, fields, TASK_PATCH_FIELDS)

        if fields.get("assigned_to_id") is not None:
            await self._require_assignee(fields["assigned_to_id"])

        task.sqlmodel_update(fields)
        task.updated_at = get_utc_now()
        self.db.add(task)
        await self.db.commit()
        await self.db.refresh(task)
        logger.info(f"Task {task.id} updated by {actor.id}: {', '.join(sorted(fields))}")

        await self._sync_task_cache(task)
        return TaskRead.model_validate(task)

    async def delete_task(self, task_id: uuid.UUID, actor: Actor | None) -> None:
        authorize(actor, Action.DELETE_TASK)
        task = await self._get_task(task_id)

        await self.db.delete(task)
        await self.db.commit()
        logger.info(f"Task {task_id} deleted")

        await self.cache.evict(keys.task_key(task_id))
        await self.cache.invalidate_collections(keys.TASK_COLLECTIONS)
