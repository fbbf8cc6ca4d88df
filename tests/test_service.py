"""
Tests for the task service layer.
"""

from datetime import datetime

import pytest
from conftest import DAY_MS, START_MS, make_task

from dispatch_task_storage.credentials import is_hashed, verify_password
from dispatch_task_storage.exceptions import (
    ServiceUnavailableError,
    TaskNotFoundError,
    UserNotFoundError,
    ValidationError,
)
from dispatch_task_storage.protocol import RecurringType, TaskStatus, UserRole, avatar_url_for
from dispatch_task_storage.service import DEFAULT_PASSWORD, TaskEnricher, TaskService


class StaticEnricher(TaskEnricher):
    async def suggest_steps(self, title: str, description: str) -> list[str]:
        return ["Read the dispatch", "Draft a reply", "Submit for approval"]


class BrokenEnricher(TaskEnricher):
    async def suggest_steps(self, title: str, description: str) -> list[str]:
        raise RuntimeError("model unavailable")


@pytest.fixture
def service(engine):
    return TaskService(engine)


class TestAuthentication:
    @pytest.mark.asyncio
    async def test_login(self, service):
        user = await service.login("  officer ", "123123")
        assert user is not None and user.role == UserRole.OFFICER

    @pytest.mark.asyncio
    async def test_wrong_password(self, service):
        assert await service.login("officer", "nope") is None

    @pytest.mark.asyncio
    async def test_login_unavailable(self, service, fake_remote):
        fake_remote.offline = True
        with pytest.raises(ServiceUnavailableError) as exc_info:
            await service.login("officer", "123123")
        assert exc_info.value.user_message

    @pytest.mark.asyncio
    async def test_change_password(self, service, engine, fake_remote):
        user = await service.login("officer", "123123")

        updated = await service.change_password(user, "n3w-pass")
        await engine.wait_idle()

        assert updated.is_first_login is False
        assert is_hashed(updated.password)
        assert await service.login("officer", "n3w-pass") is not None
        assert await service.login("officer", "123123") is None

    @pytest.mark.asyncio
    async def test_change_password_rejects_empty(self, service):
        user = await service.login("officer", "123123")
        with pytest.raises(ValidationError):
            await service.change_password(user, "")

    @pytest.mark.asyncio
    async def test_reset_password(self, service):
        user = await service.login("officer", "123123")
        await service.change_password(user, "changed")

        reset = await service.reset_password(user.id)

        assert reset.is_first_login is True
        assert verify_password(DEFAULT_PASSWORD, reset.password)

    @pytest.mark.asyncio
    async def test_reset_unknown_user(self, service):
        with pytest.raises(UserNotFoundError):
            await service.reset_password("u404")

    @pytest.mark.asyncio
    async def test_reset_without_users_unavailable(self, service, fake_remote):
        fake_remote.offline = True
        with pytest.raises(ServiceUnavailableError):
            await service.reset_password("u2")


class TestUsers:
    @pytest.mark.asyncio
    async def test_add_user(self, service, clock):
        user = await service.add_user("newbie", "Tran Van A")

        assert user.id == f"u{clock.now}"
        assert user.role == UserRole.OFFICER
        assert user.is_first_login is True
        assert verify_password(DEFAULT_PASSWORD, user.password)
        assert user.avatar_url == avatar_url_for("Tran Van A", UserRole.OFFICER)
        assert "059669" in user.avatar_url

    @pytest.mark.asyncio
    async def test_add_user_ids_unique_within_same_ms(self, service):
        first = await service.add_user("one", "One")
        second = await service.add_user("two", "Two")
        assert first.id != second.id

    @pytest.mark.asyncio
    async def test_duplicate_username_rejected(self, service):
        with pytest.raises(ValidationError):
            await service.add_user("officer", "Someone Else")

    @pytest.mark.asyncio
    async def test_blank_username_rejected(self, service):
        with pytest.raises(ValidationError):
            await service.add_user("   ", "Name")

    @pytest.mark.asyncio
    async def test_update_user_rederives_avatar(self, service):
        officer = (await service.officers())[0]
        officer.role = UserRole.MANAGER

        updated = await service.update_user(officer)

        assert "ef4444" in updated.avatar_url
        assert {u.id for u in await service.managers()} == {"u1", officer.id}

    @pytest.mark.asyncio
    async def test_delete_user(self, service):
        await service.list_users()
        assert await service.delete_user("u2") is True
        assert [u.id for u in await service.list_users()] == ["u1"]

    @pytest.mark.asyncio
    async def test_list_users_unavailable(self, service, fake_remote):
        fake_remote.offline = True
        with pytest.raises(ServiceUnavailableError):
            await service.list_users()


class TestTasks:
    @pytest.mark.asyncio
    async def test_create_task_defaults(self, service, clock):
        task = await service.create_task("Reply to dispatch 12", "Prepare a reply", creator_id="u1")

        assert task.id == f"t{clock.now}"
        assert task.assignee_id == "u2"
        assert task.status == TaskStatus.PENDING
        assert task.recurring == RecurringType.NONE
        assert task.created_at == clock.now
        due = datetime.fromisoformat(task.due_date)
        assert int(due.timestamp() * 1000) == clock.now + 7 * DAY_MS
        assert task.ai_suggested_steps is None

    @pytest.mark.asyncio
    async def test_create_task_is_listed(self, service):
        task = await service.create_task("Title", "Body", creator_id="u1")
        assert [t.id for t in await service.list_tasks()] == [task.id]

    @pytest.mark.asyncio
    async def test_create_task_requires_title(self, service):
        with pytest.raises(ValidationError):
            await service.create_task("  ", "Body", creator_id="u1")

    @pytest.mark.asyncio
    async def test_enricher_steps(self, engine):
        service = TaskService(engine, enricher=StaticEnricher())
        task = await service.create_task("Title", "Body", creator_id="u1")
        assert len(task.ai_suggested_steps) == 3

    @pytest.mark.asyncio
    async def test_failing_enricher_is_ignored(self, engine):
        service = TaskService(engine, enricher=BrokenEnricher())
        task = await service.create_task("Title", "Body", creator_id="u1")
        assert task.ai_suggested_steps is None

    @pytest.mark.asyncio
    async def test_save_task_bumps_updated_at(self, service, clock):
        task = await service.create_task("Title", "Body", creator_id="u1")
        clock.advance(5000)

        saved = await service.save_task(task)

        assert saved.updated_at == clock.now
        assert saved.created_at == task.created_at

    @pytest.mark.asyncio
    async def test_update_status(self, service):
        task = await service.create_task("Title", "Body", creator_id="u1")
        updated = await service.update_status(task.id, TaskStatus.COMPLETED)
        assert (await service.get_task(task.id)).status == TaskStatus.COMPLETED
        assert updated.status == TaskStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_update_status_unknown_task(self, service):
        await service.list_tasks()
        with pytest.raises(TaskNotFoundError):
            await service.update_status("t404", TaskStatus.COMPLETED)

    @pytest.mark.asyncio
    async def test_delete_task(self, service):
        task = await service.create_task("Title", "Body", creator_id="u1")
        assert await service.delete_task(task.id) is True
        assert await service.list_tasks() == []

    @pytest.mark.asyncio
    async def test_visible_tasks(self, service, engine):
        await engine.save_task(make_task("mine", assignee_id="u2", status=TaskStatus.PENDING))
        await engine.save_task(make_task("theirs", assignee_id="u3", status=TaskStatus.COMPLETED))
        officer = await service.login("officer", "123123")
        manager = await service.login("manager", "123123")

        assert [t.id for t in await service.visible_tasks(officer)] == ["mine"]
        assert {t.id for t in await service.visible_tasks(manager)} == {"mine", "theirs"}
        assert [t.id for t in await service.visible_tasks(manager, assignee_id="u3")] == ["theirs"]
        assert [t.id for t in await service.visible_tasks(manager, status=TaskStatus.PENDING)] == ["mine"]


class TestDashboard:
    def test_dashboard_stats(self):
        tasks = [
            make_task("a", status=TaskStatus.PENDING),
            make_task("b", status=TaskStatus.PENDING),
            make_task("c", status=TaskStatus.IN_PROGRESS),
            make_task("d", status=TaskStatus.COMPLETED),
            make_task("e", status=TaskStatus.CANCELLED),
        ]
        stats = TaskService.dashboard_stats(tasks)
        assert stats.to_dict() == {"total": 5, "pending": 2, "inProgress": 1, "completed": 1}

    @pytest.mark.asyncio
    async def test_recurring_tasks(self, service, engine):
        await engine.save_task(make_task("weekly", recurring=RecurringType.WEEKLY))
        await engine.save_task(
            make_task("done", recurring=RecurringType.MONTHLY, status=TaskStatus.COMPLETED)
        )
        await engine.save_task(make_task("once", created_at=START_MS + 1))

        assert [t.id for t in await service.recurring_tasks()] == ["weekly"]

    @pytest.mark.asyncio
    async def test_force_sync_unavailable(self, service, fake_remote):
        fake_remote.offline = True
        with pytest.raises(ServiceUnavailableError):
            await service.force_sync()

    @pytest.mark.asyncio
    async def test_sync_stats(self, service, engine):
        await service.force_sync()
        stats = await service.sync_stats()
        assert stats.users_count == 2
        assert stats.last_sync is not None
