import uuid
from typing import Annotated

from fastapi import APIRouter, Depends, Query, status
from sqlmodel.ext.asyncio.session import AsyncSession

from taskboard.auth.dependencies import ActorDep
from taskboard.cache.coordinator import CacheCoordinator, get_cache_coordinator
from taskboard.core.config import SettingsDep
from taskboard.database import get_db
from taskboard.models import Page, TaskCreate, TaskRead, TaskStatus, TaskStatusUpdate, TaskUpdate
from taskboard.services.task_service import TaskService

router = APIRouter(prefix="/tasks", tags=["tasks"])


def get_task_service(
    settings: SettingsDep,
    db: AsyncSession = Depends(get_db),
    cache: CacheCoordinator = Depends(get_cache_coordinator),
) -> TaskService:
    return TaskService(db, cache, settings)


TaskServiceDep = Annotated[TaskService, Depends(get_task_service)]


@router.post("/", response_model=TaskRead, status_code=status.HTTP_201_CREATED)
async def create_task(task_data: TaskCreate, actor: ActorDep, service: TaskServiceDep):
    """Create a task (admin only)"""
    return await service.create_task(task_data, actor)


@router.get("/", response_model=Page[TaskRead])
async def list_tasks(
    actor: ActorDep,
    service: TaskServiceDep,
    settings: SettingsDep,
    search: str | None = None,
    page: int = Query(default=1),
    limit: int | None = Query(default=None),
):
    limit = settings.default_page_size if limit is None else limit
    return await service.list_all_tasks(search, page, limit, actor)


@router.get("/assigned/{user_id}", response_model=Page[TaskRead])
async def list_assigned_tasks(
    user_id: uuid.UUID,
    actor: ActorDep,
    service: TaskServiceDep,
    settings: SettingsDep,
    page: int = Query(default=1),
    limit: int | None = Query(default=None),
    task_status: TaskStatus | None = Query(default=None, alias="status"),
):
    """Tasks assigned to a user; users may only list their own"""
    limit = settings.default_page_size if limit is None else limit
    return await service.list_assigned_tasks(user_id, page, limit, task_status, actor)


@router.get("/{task_id}", response_model=TaskRead)
async def get_task(task_id: uuid.UUID, actor: ActorDep, service: TaskServiceDep):
    return await service.get_task_by_id(task_id, actor)


@router.patch("/{task_id}", response_model=TaskRead)
async def update_task(
    task_id: uuid.UUID, task_data: TaskUpdate, actor: ActorDep, service: TaskServiceDep
):
    return await service.update_task(task_id, task_data, actor)


@router.patch("/{task_id}/status", response_model=TaskRead)
async def update_task_status(
    task_id: uuid.UUID, body: TaskStatusUpdate, actor: ActorDep, service: TaskServiceDep
):
    """Change only the status; allowed for admins and the assignee"""
    return await service.update_task_status(task_id, body.status, actor)


@router.delete("/{task_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_task(task_id: uuid.UUID, actor: ActorDep, service: TaskServiceDep):
    await service.delete_task(task_id, actor)
