"""Tests for UserService: registration, login, profile, roles and deletion."""

import pytest
from sqlmodel import func, select

from taskboard.cache import keys
from taskboard.core.errors import (
    AuthenticationRequired,
    AuthorizationDenied,
    Conflict,
    DenyReason,
    NotFound,
    ValidationError,
)
from taskboard.core.security import decode_access_token, verify_password
from taskboard.models import LoginRequest, Role, Task, User, UserCreate, UserEdit


async def _count_users(db, email: str) -> int:
    return (await db.exec(select(func.count()).select_from(User).where(User.email == email))).one()


# ---------------------------------------------------------------------------
# Registration
# ---------------------------------------------------------------------------


class TestRegister:
    @pytest.mark.asyncio
    async def test_register_creates_user_and_token(self, user_service, db, cache):
        result = await user_service.register_user(
            UserCreate(name=" Carol ", email="Carol@Example.com", password="secret123")
        )

        assert result.user.name == "Carol"
        assert result.user.email == "carol@example.com"
        claims = decode_access_token(result.token)
        assert claims.subject_id == result.user.id
        assert claims.role == Role.USER

        stored = await db.get(User, result.user.id)
        assert stored.role == Role.USER
        assert verify_password("secret123", stored.hashed_password)

        cached = await cache.get(keys.user_email_key("carol@example.com"))
        assert set(cached) == {"id", "name", "email"}
        assert await cache.get(keys.token_key(result.user.id)) == result.token

    @pytest.mark.asyncio
    async def test_duplicate_email_detected_by_store(self, user_service, db, cache):
        data = UserCreate(name="Carol", email="carol@example.com", password="secret123")
        await user_service.register_user(data)
        await cache.delete(keys.user_email_key("carol@example.com"))

        with pytest.raises(Conflict):
            await user_service.register_user(
                UserCreate(name="Carol 2", email="CAROL@example.com", password="secret456")
            )
        assert await _count_users(db, "carol@example.com") == 1

    @pytest.mark.asyncio
    async def test_duplicate_email_short_circuits_on_cache(self, user_service, db, cache):
        await cache.set(keys.user_email_key("dave@example.com"), {"id": "x"})

        with pytest.raises(Conflict):
            await user_service.register_user(
                UserCreate(name="Dave", email="dave@example.com", password="secret123")
            )
        assert await _count_users(db, "dave@example.com") == 0

    @pytest.mark.asyncio
    async def test_unique_constraint_is_the_final_authority(self, user_service, db, monkeypatch):
        """Both registrations pass the pre-checks; the Store rejects the second."""
        await user_service.register_user(
            UserCreate(name="Erin", email="erin@example.com", password="secret123")
        )

        async def nobody(email):
            return None

        monkeypatch.setattr(user_service, "_find_by_email", nobody)
        monkeypatch.setattr(user_service.cache, "peek", lambda key: nobody(key))

        with pytest.raises(Conflict) as excinfo:
            await user_service.register_user(
                UserCreate(name="Erin again", email="erin@example.com", password="secret123")
            )
        assert excinfo.value.message == "Email already registered"
        assert await _count_users(db, "erin@example.com") == 1

    @pytest.mark.asyncio
    async def test_blank_name_rejected(self, user_service):
        with pytest.raises(ValidationError):
            await user_service.register_user(
                UserCreate(name="   ", email="blank@example.com", password="secret123")
            )


# ---------------------------------------------------------------------------
# Login
# ---------------------------------------------------------------------------


class TestLogin:
    @pytest.mark.asyncio
    async def test_login_issues_claims_from_store(self, user_service, admin, cache):
        result = await user_service.login_user(
            LoginRequest(email="ADMIN@example.com", password="secret123")
        )

        claims = decode_access_token(result.token)
        assert claims.subject_id == admin.id
        assert claims.role == Role.ADMIN
        assert claims.email == "admin@example.com"
        assert await cache.get(keys.user_key(admin.id)) == {
            "id": str(admin.id),
            "name": "Admin",
            "email": "admin@example.com",
        }

    @pytest.mark.asyncio
    async def test_wrong_password(self, user_service, alice):
        with pytest.raises(AuthenticationRequired):
            await user_service.login_user(LoginRequest(email=alice.email, password="wrong-pass"))

    @pytest.mark.asyncio
    async def test_unknown_email(self, user_service):
        with pytest.raises(AuthenticationRequired):
            await user_service.login_user(
                LoginRequest(email="ghost@example.com", password="secret123")
            )


# ---------------------------------------------------------------------------
# Listing
# ---------------------------------------------------------------------------


class TestListUsers:
    @pytest.mark.asyncio
    async def test_admin_lists_sorted_by_name(self, user_service, admin, alice, bob, actor):
        page = await user_service.list_users(None, 1, 2, actor(admin))

        assert [u.name for u in page.data] == ["Admin", "Alice"]
        assert page.meta.total == 3
        assert page.meta.total_pages == 2

        second = await user_service.list_users(None, 2, 2, actor(admin))
        assert [u.name for u in second.data] == ["Bob"]

    @pytest.mark.asyncio
    async def test_search_matches_name_or_email(self, user_service, admin, alice, bob, actor):
        page = await user_service.list_users("BOB@", 1, 10, actor(admin))
        assert [u.name for u in page.data] == ["Bob"]

        page = await user_service.list_users("ali", 1, 10, actor(admin))
        assert [u.name for u in page.data] == ["Alice"]

    @pytest.mark.asyncio
    async def test_user_role_denied(self, user_service, alice, actor):
        with pytest.raises(AuthorizationDenied) as excinfo:
            await user_service.list_users(None, 1, 10, actor(alice))
        assert excinfo.value.reason == DenyReason.INSUFFICIENT_ROLE

    @pytest.mark.asyncio
    async def test_anonymous_denied(self, user_service):
        with pytest.raises(AuthenticationRequired):
            await user_service.list_users(None, 1, 10, None)

    @pytest.mark.asyncio
    async def test_invalid_page(self, user_service, admin, actor):
        with pytest.raises(ValidationError):
            await user_service.list_users(None, 0, 10, actor(admin))

    @pytest.mark.asyncio
    async def test_listing_is_refreshed_after_registration(self, user_service, admin, actor):
        before = await user_service.list_users(None, 1, 10, actor(admin))
        await user_service.register_user(
            UserCreate(name="Zed", email="zed@example.com", password="secret123")
        )
        after = await user_service.list_users(None, 1, 10, actor(admin))

        assert after.meta.total == before.meta.total + 1


# ---------------------------------------------------------------------------
# Profile
# ---------------------------------------------------------------------------


class TestProfile:
    @pytest.mark.asyncio
    async def test_get_own_profile(self, user_service, alice, actor, cache):
        profile = await user_service.get_own_profile(actor(alice))

        assert profile.email == "alice@example.com"
        assert await cache.get(keys.user_key(alice.id)) is not None

    @pytest.mark.asyncio
    async def test_edit_other_profile_denied(self, user_service, alice, bob, actor):
        with pytest.raises(AuthorizationDenied) as excinfo:
            await user_service.edit_own_profile(bob.id, UserEdit(name="Hacked"), actor(alice))
        assert excinfo.value.reason == DenyReason.NOT_OWNER

    @pytest.mark.asyncio
    async def test_name_change_keeps_session(self, user_service, alice, actor, cache):
        await cache.set(keys.token_key(alice.id), "alice-token")

        updated = await user_service.edit_own_profile(
            alice.id, UserEdit(name="Alice Liddell"), actor(alice)
        )

        assert updated.name == "Alice Liddell"
        assert await cache.get(keys.token_key(alice.id)) == "alice-token"
        assert (await cache.get(keys.user_key(alice.id)))["name"] == "Alice Liddell"

    @pytest.mark.asyncio
    async def test_email_change_evicts_session(self, user_service, alice, actor, cache):
        await cache.set(keys.token_key(alice.id), "alice-token")
        await cache.set(keys.user_email_key(alice.email), {"id": str(alice.id)})

        updated = await user_service.edit_own_profile(
            alice.id, UserEdit(email="Wonder@Example.com"), actor(alice)
        )

        assert updated.email == "wonder@example.com"
        assert await cache.get(keys.token_key(alice.id)) is None
        assert await cache.get(keys.user_email_key("alice@example.com")) is None
        assert await cache.get(keys.user_email_key("wonder@example.com")) is not None

    @pytest.mark.asyncio
    async def test_password_change_rehashes(self, user_service, db, alice, actor):
        await user_service.edit_own_profile(alice.id, UserEdit(password="n3w-secret"), actor(alice))

        stored = await db.get(User, alice.id)
        assert verify_password("n3w-secret", stored.hashed_password)

    @pytest.mark.asyncio
    async def test_email_taken(self, user_service, alice, bob, actor):
        with pytest.raises(Conflict):
            await user_service.edit_own_profile(alice.id, UserEdit(email=bob.email), actor(alice))

    @pytest.mark.asyncio
    async def test_empty_patch(self, user_service, alice, actor):
        with pytest.raises(ValidationError):
            await user_service.edit_own_profile(alice.id, UserEdit(), actor(alice))


# ---------------------------------------------------------------------------
# Roles
# ---------------------------------------------------------------------------


class TestUpdateRole:
    @pytest.mark.asyncio
    async def test_self_change_forbidden(self, user_service, admin, actor):
        with pytest.raises(AuthorizationDenied) as excinfo:
            await user_service.update_user_role(admin.id, "admin", actor(admin))
        assert excinfo.value.reason == DenyReason.SELF_ACTION_FORBIDDEN

    @pytest.mark.asyncio
    async def test_user_cannot_promote(self, user_service, alice, bob, actor):
        with pytest.raises(AuthorizationDenied) as excinfo:
            await user_service.update_user_role(bob.id, Role.ADMIN, actor(alice))
        assert excinfo.value.reason == DenyReason.INSUFFICIENT_ROLE

    @pytest.mark.asyncio
    async def test_promotion_evicts_session(self, user_service, db, admin, alice, actor, cache):
        await cache.set(keys.token_key(alice.id), "alice-token")

        result = await user_service.update_user_role(alice.id, "admin", actor(admin))

        assert result.role == Role.ADMIN
        assert (await db.get(User, alice.id)).role == Role.ADMIN
        assert await cache.get(keys.token_key(alice.id)) is None
        assert "role" not in await cache.get(keys.user_key(alice.id))

    @pytest.mark.asyncio
    async def test_same_role_is_a_no_op(self, user_service, admin, alice, actor, cache):
        await cache.set(keys.token_key(alice.id), "alice-token")

        result = await user_service.update_user_role(alice.id, Role.USER, actor(admin))

        assert result.role == Role.USER
        assert await cache.get(keys.token_key(alice.id)) == "alice-token"

    @pytest.mark.asyncio
    async def test_invalid_role(self, user_service, admin, alice, actor):
        with pytest.raises(ValidationError):
            await user_service.update_user_role(alice.id, "root", actor(admin))

    @pytest.mark.asyncio
    async def test_missing_user(self, user_service, admin, alice, actor, db):
        await db.delete(alice)
        await db.commit()
        with pytest.raises(NotFound):
            await user_service.update_user_role(alice.id, Role.ADMIN, actor(admin))


# ---------------------------------------------------------------------------
# Deletion
# ---------------------------------------------------------------------------


class TestDeleteUser:
    @pytest.mark.asyncio
    async def test_delete_evicts_every_user_key(
        self, user_service, db, admin, alice, actor, cache, add_task
    ):
        task = await add_task("Water plants", creator=admin, assignee=alice)
        await cache.set(keys.user_key(alice.id), {"id": str(alice.id)})
        await cache.set(keys.user_email_key(alice.email), {"id": str(alice.id)})
        await cache.set(keys.token_key(alice.id), "alice-token")
        await cache.set(keys.task_key(task.id), {"assigned_to_id": str(alice.id)})

        await user_service.delete_user(alice.id, actor(admin))

        assert await db.get(User, alice.id) is None
        assert (await db.get(Task, task.id)).assigned_to_id is None
        for key in (
            keys.user_key(alice.id),
            keys.user_email_key(alice.email),
            keys.token_key(alice.id),
            keys.task_key(task.id),
        ):
            assert await cache.get(key) is None

    @pytest.mark.asyncio
    async def test_creator_cannot_be_deleted(self, user_service, admin, bob, actor, add_task):
        await add_task("Bob's task", creator=bob)

        with pytest.raises(Conflict):
            await user_service.delete_user(bob.id, actor(admin))

    @pytest.mark.asyncio
    async def test_user_cannot_delete(self, user_service, alice, bob, actor):
        with pytest.raises(AuthorizationDenied):
            await user_service.delete_user(bob.id, actor(alice))

    @pytest.mark.asyncio
    async def test_profile_gone_after_delete(self, user_service, admin, alice, actor):
        await user_service.get_own_profile(actor(alice))
        await user_service.delete_user(alice.id, actor(admin))

        with pytest.raises(NotFound):
            await user_service.get_own_profile(actor(alice))
