import asyncio
import logging
import uuid

from sqlalchemy.exc import IntegrityError
from sqlmodel import col, func, or_, select
from sqlmodel.ext.asyncio.session import AsyncSession

from taskboard.auth.policy import (
    PROFILE_PATCH_FIELDS,
    Action,
    Actor,
    ResourceFacts,
    authorize,
    check_patch_fields,
)
from taskboard.cache import keys
from taskboard.cache.coordinator import CacheCoordinator
from taskboard.core.config import Settings
from taskboard.core.errors import AuthenticationRequired, Conflict, NotFound, ValidationError
from taskboard.core.security import check_credentials, create_access_token, hash_password
from taskboard.models import (
    AuthResponse,
    LoginRequest,
    Page,
    Role,
    Task,
    User,
    UserCreate,
    UserEdit,
    UserPublic,
    UserWithRole,
    get_utc_now,
)
from taskboard.services.pagination import fetch_page, normalize_search, validate_page

logger = logging.getLogger(__name__)

EMAIL_TAKEN = "Email already registered"


def normalize_email(email: str) -> str:
    return email.strip().lower()


def user_projection(user: User) -> dict:
    return UserPublic.model_validate(user).model_dump(mode="json")


class UserService:
    def __init__(self, db: AsyncSession, cache: CacheCoordinator, settings: Settings):
        self.db = db
        self.cache = cache
        self.settings = settings

    async def _find_by_email(self, email: str) -> User | None:
        result = await self.db.exec(select(User).where(User.email == email))
        return result.first()

    async def _get_user(self, user_id: uuid.UUID) -> User:
        user = await self.db.get(User, user_id)
        if user is None:
            raise NotFound(f"User with id {user_id} not found")
        return user

    async def _commit_unique_email(self):
        # the unique constraint is the final word on duplicate emails
        try:
            await self.db.commit()
        except IntegrityError as e:
            await self.db.rollback()
            raise Conflict(EMAIL_TAKEN) from e

    async def _sync_user_cache(self, user: User, stale: list[str] | None = None):
        projection = user_projection(user)
        await self.cache.refresh_entities(
            {keys.user_key(user.id): projection, keys.user_email_key(user.email): projection},
            stale=stale or [],
        )
        await self.cache.invalidate_collections(keys.USER_COLLECTIONS)

    async def _issue_token(self, user: User) -> str:
        token = create_access_token(user)
        await self.cache.refresh_entities({keys.token_key(user.id): token})
        return token

    async def register_user(self, data: UserCreate) -> AuthResponse:
        name = data.name.strip()
        if not name:
            raise ValidationError("Name is required")
        email = normalize_email(data.email)

        # advisory fast path only, the Store decides
        if await self.cache.peek(keys.user_email_key(email)) is not None:
            raise Conflict(EMAIL_TAKEN)
        if await self._find_by_email(email) is not None:
            raise Conflict(EMAIL_TAKEN)

        hashed = await asyncio.to_thread(hash_password, data.password)
        user = User(name=name, email=email, hashed_password=hashed, role=Role.USER)
        self.db.add(user)
        await self._commit_unique_email()
        await self.db.refresh(user)
        logger.info(f"Registered user {user.id}")

        await self._sync_user_cache(user)
        token = await self._issue_token(user)
        return AuthResponse(user=UserPublic.model_validate(user), token=token)

    async def login_user(self, data: LoginRequest) -> AuthResponse:
        # credentials always come from the Store
        user = await self._find_by_email(normalize_email(data.email))
        valid = await asyncio.to_thread(
            check_credentials, data.password, user.hashed_password if user else None
        )
        if user is None or not valid:
            logger.info("Failed login attempt")
            raise AuthenticationRequired("Invalid credentials")

        projection = user_projection(user)
        await self.cache.refresh_entities(
            {keys.user_key(user.id): projection, keys.user_email_key(user.email): projection}
        )
        token = await self._issue_token(user)
        return AuthResponse(user=UserPublic.model_validate(user), token=token)

    async def list_users(
        self,
        search: str | None,
        page: int,
        limit: int,
        actor: Actor | None,
    ) -> Page[UserPublic]:
        authorize(actor, Action.LIST_USERS)
        validate_page(page, limit, self.settings.max_page_size)
        term = normalize_search(search)

        async def loader():
            query = select(User)
            if term:
                query = query.where(
                    or_(
                        func.lower(col(User.name)).contains(term, autoescape=True),
                        func.lower(col(User.email)).contains(term, autoescape=True),
                    )
                )
            return await fetch_page(
                self.db, query, [col(User.name), col(User.id)], page, limit, UserPublic
            )

        result = await self.cache.read_collection(keys.all_users_key(term, page, limit), loader)
        return Page[UserPublic].model_validate(result)

    async def delete_user(self, user_id: uuid.UUID, actor: Actor | None) -> None:
        authorize(actor, Action.DELETE_USER, ResourceFacts(target_user_id=user_id))
        user = await self._get_user(user_id)

        created = (
            await self.db.exec(
                select(func.count()).select_from(Task).where(Task.created_by_id == user_id)
            )
        ).one()
        if created:
            raise Conflict(f"User {user_id} is still the creator of {created} task(s)")

        assigned = (await self.db.exec(select(Task).where(Task.assigned_to_id == user_id))).all()
        now = get_utc_now()
        for task in assigned:
            task.assigned_to_id = None
            task.updated_at = now
            self.db.add(task)
        await self.db.delete(user)
        await self.db.commit()
        logger.info(f"Deleted user {user_id}, unassigned {len(assigned)} task(s)")

        await self.cache.evict(
            keys.user_key(user.id),
            keys.user_email_key(user.email),
            keys.token_key(user.id),
            *(keys.task_key(task.id) for task in assigned),
        )
        await self.cache.invalidate_collections(keys.USER_COLLECTIONS)
        if assigned:
            await self.cache.invalidate_collections(keys.TASK_COLLECTIONS)

    async def get_own_profile(self, actor: Actor | None) -> UserPublic:
        actor = authorize(actor, Action.READ_OWN_PROFILE)

        async def loader():
            user = await self.db.get(User, actor.id)
            return user_projection(user) if user else None

        cached = await self.cache.read_entity(keys.user_key(actor.id), loader)
        if cached is None:
            raise NotFound(f"User with id {actor.id} not found")
        return UserPublic.model_validate(cached)

    async def edit_own_profile(
        self, user_id: uuid.UUID, patch: UserEdit, actor: Actor | None
    ) -> UserPublic:
        fields = patch.model_dump(exclude_unset=True)
        if not fields:
            raise ValidationError("No fields to update")
        for field, value in fields.items():
            if value is None or (isinstance(value, str) and not value.strip()):
                raise ValidationError(f"{field} cannot be empty")

        actor = authorize(actor, Action.EDIT_PROFILE, ResourceFacts(target_user_id=user_id))
        check_patch_fields(actor, fields, PROFILE_PATCH_FIELDS)
        user = await self._get_user(user_id)
        old_email = user.email

        if "email" in fields:
            fields["email"] = normalize_email(fields["email"])
            if fields["email"] != old_email and await self._find_by_email(fields["email"]):
                raise Conflict("Email already in use")
        if "name" in fields:
            fields["name"] = fields["name"].strip()
        if "password" in fields:
            fields["hashed_password"] = await asyncio.to_thread(
                hash_password, fields.pop("password")
            )

        user.sqlmodel_update(fields)
        user.updated_at = get_utc_now()
        self.db.add(user)
        await self._commit_unique_email()
        await self.db.refresh(user)

        stale = []
        if user.email != old_email:
            # the email claim changed, so the cached session goes too
            stale = [keys.user_email_key(old_email), keys.token_key(user.id)]
        await self._sync_user_cache(user, stale=stale)
        return UserPublic.model_validate(user)

    async def update_user_role(
        self, user_id: uuid.UUID, role: Role | str, actor: Actor | None
    ) -> UserWithRole:
        try:
            role = Role(role)
        except ValueError:
            raise ValidationError("Role must be admin or user") from None

        authorize(actor, Action.UPDATE_ROLE, ResourceFacts(target_user_id=user_id))
        user = await self._get_user(user_id)
        if user.role == role:
            return UserWithRole.model_validate(user)

        user.role = role
        user.updated_at = get_utc_now()
        self.db.add(user)
        await self.db.commit()
        await self.db.refresh(user)
        logger.info(f"User {user_id} role changed to {role.value} by {actor.id}")

        await self._sync_user_cache(user, stale=[keys.token_key(user.id)])
        return UserWithRole.model_validate(user)
