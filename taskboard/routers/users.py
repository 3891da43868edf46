import uuid
from typing import Annotated

from fastapi import APIRouter, Depends, Query, status
from sqlmodel.ext.asyncio.session import AsyncSession

from taskboard.auth.dependencies import ActorDep
from taskboard.cache.coordinator import CacheCoordinator, get_cache_coordinator
from taskboard.core.config import SettingsDep
from taskboard.database import get_db
from taskboard.models import (
    AuthResponse,
    LoginRequest,
    Page,
    RoleUpdate,
    UserCreate,
    UserEdit,
    UserPublic,
    UserWithRole,
)
from taskboard.services.user_service import UserService

router = APIRouter(prefix="/users", tags=["users"])


def get_user_service(
    settings: SettingsDep,
    db: AsyncSession = Depends(get_db),
    cache: CacheCoordinator = Depends(get_cache_coordinator),
) -> UserService:
    return UserService(db, cache, settings)


UserServiceDep = Annotated[UserService, Depends(get_user_service)]


@router.post("/register", response_model=AuthResponse, status_code=status.HTTP_201_CREATED)
async def register(user_data: UserCreate, service: UserServiceDep):
    return await service.register_user(user_data)


@router.post("/login", response_model=AuthResponse)
async def login(credentials: LoginRequest, service: UserServiceDep):
    return await service.login_user(credentials)


@router.get("/", response_model=Page[UserPublic])
async def list_users(
    actor: ActorDep,
    service: UserServiceDep,
    settings: SettingsDep,
    search: str | None = None,
    page: int = Query(default=1),
    limit: int | None = Query(default=None),
):
    """Search users by name or email (admin only)"""
    limit = settings.default_page_size if limit is None else limit
    return await service.list_users(search, page, limit, actor)


@router.get("/me", response_model=UserPublic)
async def get_profile(actor: ActorDep, service: UserServiceDep):
    return await service.get_own_profile(actor)


@router.patch("/{user_id}", response_model=UserPublic)
async def edit_profile(
    user_id: uuid.UUID, patch: UserEdit, actor: ActorDep, service: UserServiceDep
):
    """Edit your own name, email or password"""
    return await service.edit_own_profile(user_id, patch, actor)


@router.patch("/{user_id}/role", response_model=UserWithRole)
async def update_role(
    user_id: uuid.UUID, body: RoleUpdate, actor: ActorDep, service: UserServiceDep
):
    return await service.update_user_role(user_id, body.role, actor)


@router.delete("/{user_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_user(user_id: uuid.UUID, actor: ActorDep, service: UserServiceDep):
    await service.delete_user(user_id, actor)
