"""
Task service.

The operation surface the application calls. It builds Users and Tasks
(ids, avatars, defaults, password hashing), delegates storage to the
cache/sync engine, and turns failures that have no offline fallback into
``ServiceUnavailableError`` with a message fit for the UI.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, replace
from datetime import UTC, datetime

from .credentials import ensure_hashed, hash_password
from .exceptions import (
    RemoteStoreError,
    ServiceUnavailableError,
    StorageConnectionError,
    SyncError,
    TaskNotFoundError,
    UserNotFoundError,
    ValidationError,
)
from .protocol import (
    RecurringType,
    SyncStats,
    Task,
    TaskPriority,
    TaskStatus,
    User,
    UserRole,
    avatar_url_for,
)
from .sync.engine import CacheSyncEngine, SyncResult

logger = logging.getLogger(__name__)

DEFAULT_PASSWORD = "123123"
DEFAULT_DUE_DAYS = 7

OFFLINE_MESSAGE = "Cannot reach the server and no offline data is available. Try again later."
SYNC_FAILED_MESSAGE = "Synchronization failed. Your changes are kept on this device."


class TaskEnricher(ABC):
    """Suggests implementation steps for a new task.

    Suggestions are advisory; a failing enricher never blocks task creation.
    """

    @abstractmethod
    async def suggest_steps(self, title: str, description: str) -> list[str]:
        """Return a short list of suggested steps."""
        ...


@dataclass
class DashboardStats:
    """Task counters shown on the dashboard."""

    total: int
    pending: int
    in_progress: int
    completed: int

    def to_dict(self) -> dict[str, int]:
        return {
            "total": self.total,
            "pending": self.pending,
            "inProgress": self.in_progress,
            "completed": self.completed,
        }


class TaskService:
    """Users and tasks operations on top of the cache/sync engine."""

    def __init__(self, engine: CacheSyncEngine, enricher: TaskEnricher | None = None):
        """Initialize the service.

        Args:
            engine: Started (or startable) cache/sync engine
            enricher: Optional step-suggestion hook used by ``create_task``
        """
        self.engine = engine
        self.enricher = enricher

    def _now(self) -> int:
        return self.engine.clock()

    # =========================================================================
    # Authentication
    # =========================================================================

    async def login(self, username: str, password: str) -> User | None:
        """Check credentials.

        Returns:
            The user, or None for unknown users and wrong passwords

        Raises:
            ServiceUnavailableError: Server unreachable and nothing cached
        """
        try:
            return await self.engine.login(username.strip(), password)
        except (StorageConnectionError, RemoteStoreError) as e:
            raise ServiceUnavailableError(OFFLINE_MESSAGE, e) from e

    async def change_password(self, user: User, new_password: str) -> User:
        """Set a new password and clear the first-login flag."""
        if not new_password:
            raise ValidationError("password", "must not be empty")
        updated = replace(user, password=hash_password(new_password), is_first_login=False)
        await self.engine.update_user(updated)
        logger.info(f"Password changed for {user.username}")
        return updated

    async def reset_password(self, user_id: str) -> User:
        """Reset a user's password to the default and require a change on next login."""
        user = await self._require_user(user_id)
        updated = replace(user, password=hash_password(DEFAULT_PASSWORD), is_first_login=True)
        await self.engine.update_user(updated)
        logger.info(f"Password reset for {user.username}")
        return updated

    # =========================================================================
    # Users
    # =========================================================================

    async def list_users(self) -> list[User]:
        """All users.

        Raises:
            ServiceUnavailableError: Server unreachable and nothing cached
        """
        try:
            return await self.engine.get_users()
        except (StorageConnectionError, RemoteStoreError) as e:
            raise ServiceUnavailableError(OFFLINE_MESSAGE, e) from e

    async def officers(self) -> list[User]:
        return [u for u in await self.list_users() if u.role == UserRole.OFFICER]

    async def managers(self) -> list[User]:
        return [u for u in await self.list_users() if u.role == UserRole.MANAGER]

    async def _require_user(self, user_id: str) -> User:
        try:
            user = await self.engine.get_user(user_id)
        except (StorageConnectionError, RemoteStoreError) as e:
            raise ServiceUnavailableError(OFFLINE_MESSAGE, e) from e
        if user is None:
            raise UserNotFoundError(user_id)
        return user

    async def add_user(
        self,
        username: str,
        full_name: str,
        role: UserRole = UserRole.OFFICER,
        password: str = DEFAULT_PASSWORD,
    ) -> User:
        """Create a user with a derived avatar and a hashed password.

        Raises:
            ValidationError: Missing fields or username already taken
        """
        username = username.strip()
        full_name = full_name.strip()
        if not username:
            raise ValidationError("username", "must not be empty")
        if not full_name:
            raise ValidationError("full_name", "must not be empty")

        existing = await self.list_users()
        if any(u.username == username for u in existing):
            raise ValidationError("username", "already exists", username)

        user_id = f"u{self._now()}"
        taken = {u.id for u in existing}
        while user_id in taken:
            user_id = f"u{int(user_id[1:]) + 1}"

        user = User(
            id=user_id,
            username=username,
            full_name=full_name,
            role=role,
            password=hash_password(password or DEFAULT_PASSWORD),
            is_first_login=True,
            avatar_url=avatar_url_for(full_name, role),
        )
        await self.engine.add_user(user)
        logger.info(f"Added user {username} ({role.value})")
        return user

    async def update_user(self, user: User) -> User:
        """Save changes to a user, re-deriving the avatar from name and role."""
        if not user.full_name.strip():
            raise ValidationError("full_name", "must not be empty")
        updated = replace(
            user,
            avatar_url=avatar_url_for(user.full_name, user.role),
            password=ensure_hashed(user.password) if user.password else user.password,
        )
        await self.engine.update_user(updated)
        return updated

    async def delete_user(self, user_id: str) -> bool:
        """Delete a user and the tasks assigned to or created by them."""
        return await self.engine.delete_user(user_id)

    # =========================================================================
    # Tasks
    # =========================================================================

    async def list_tasks(self) -> list[Task]:
        """All tasks, newest first."""
        return await self.engine.get_tasks()

    async def visible_tasks(
        self,
        user: User,
        status: TaskStatus | None = None,
        assignee_id: str | None = None,
    ) -> list[Task]:
        """Tasks a user sees: officers their own, managers all (optionally filtered)."""
        tasks = await self.list_tasks()
        if user.role == UserRole.OFFICER:
            tasks = [t for t in tasks if t.assignee_id == user.id]
        elif assignee_id is not None:
            tasks = [t for t in tasks if t.assignee_id == assignee_id]
        if status is not None:
            tasks = [t for t in tasks if t.status == status]
        return tasks

    async def get_task(self, task_id: str) -> Task:
        for task in await self.list_tasks():
            if task.id == task_id:
                return task
        raise TaskNotFoundError(task_id)

    async def create_task(
        self,
        title: str,
        description: str,
        creator_id: str,
        assignee_id: str | None = None,
        due_date: str | None = None,
        priority: TaskPriority = TaskPriority.MEDIUM,
        status: TaskStatus = TaskStatus.PENDING,
        recurring: RecurringType = RecurringType.NONE,
        dispatch_number: str | None = None,
        issuing_authority: str | None = None,
        issue_date: str | None = None,
        suggest_steps: bool = True,
    ) -> Task:
        """Create and save a task.

        Defaults: assignee is the first officer (or the creator when there
        is none), due date is one week from now.
        """
        title = title.strip()
        if not title:
            raise ValidationError("title", "must not be empty")

        now = self._now()
        if assignee_id is None:
            officers = await self.officers()
            assignee_id = officers[0].id if officers else creator_id
        if due_date is None:
            due_ms = now + DEFAULT_DUE_DAYS * 24 * 60 * 60 * 1000
            due_date = datetime.fromtimestamp(due_ms / 1000, UTC).isoformat()

        steps = None
        if suggest_steps and self.enricher is not None:
            steps = await self._suggest_steps(title, description)

        task = Task(
            id=f"t{now}",
            title=title,
            description=description,
            assignee_id=assignee_id,
            creator_id=creator_id,
            status=status,
            priority=priority,
            due_date=due_date,
            created_at=now,
            dispatch_number=dispatch_number,
            issuing_authority=issuing_authority,
            issue_date=issue_date,
            recurring=recurring,
            ai_suggested_steps=steps,
            updated_at=now,
        )
        await self.engine.save_task(task)
        logger.info(f"Created task {task.id} for {assignee_id}")
        return task

    async def _suggest_steps(self, title: str, description: str) -> list[str] | None:
        assert self.enricher is not None
        try:
            steps = await self.enricher.suggest_steps(title, description)
        except Exception as e:
            logger.warning(f"Step suggestion failed for '{title}': {e}")
            return None
        return [str(s) for s in steps] if steps else None

    async def save_task(self, task: Task) -> Task:
        """Save an edited task, bumping its ``updated_at``."""
        if not task.title.strip():
            raise ValidationError("title", "must not be empty")
        updated = replace(task, updated_at=self._now())
        await self.engine.save_task(updated)
        return updated

    async def update_status(self, task_id: str, status: TaskStatus) -> Task:
        """Change a task's status."""
        task = await self.get_task(task_id)
        return await self.save_task(replace(task, status=status))

    async def delete_task(self, task_id: str) -> bool:
        """Delete a task everywhere."""
        return await self.engine.delete_task(task_id)

    # =========================================================================
    # Dashboard and sync
    # =========================================================================

    @staticmethod
    def dashboard_stats(tasks: list[Task]) -> DashboardStats:
        return DashboardStats(
            total=len(tasks),
            pending=sum(1 for t in tasks if t.status == TaskStatus.PENDING),
            in_progress=sum(1 for t in tasks if t.status == TaskStatus.IN_PROGRESS),
            completed=sum(1 for t in tasks if t.status == TaskStatus.COMPLETED),
        )

    async def recurring_tasks(self) -> list[Task]:
        """Recurring tasks that are still open."""
        closed = {TaskStatus.COMPLETED, TaskStatus.CANCELLED}
        return [
            t
            for t in await self.list_tasks()
            if t.recurring != RecurringType.NONE and t.status not in closed
        ]

    async def force_sync(self) -> SyncResult:
        """User-initiated sync.

        Raises:
            ServiceUnavailableError: The sync failed
        """
        try:
            return await self.engine.force_sync()
        except SyncError as e:
            raise ServiceUnavailableError(SYNC_FAILED_MESSAGE, e) from e

    async def sync_stats(self) -> SyncStats:
        return await self.engine.get_sync_stats()
