"""
Cache/sync engine.

Keeps the local store and the remote endpoint in step:
- Reads are served from the local copy and refreshed in the background
  when stale
- Writes land locally first, are queued in the outbox, then pushed
- A sync cycle flushes the outbox, pulls users, merges tasks and pushes
  tasks the remote has forgotten (the endpoint evicts task rows after
  its TTL)

Network and endpoint failures never reach readers or writers. They are
logged, recorded as the engine's last error, and the pending changes stay
in the outbox until a later cycle succeeds. ``force_sync`` is the one
path that reports failure to the caller.
"""

from __future__ import annotations

import asyncio
import logging
import secrets
import string
from collections.abc import Callable, Coroutine
from dataclasses import dataclass, field
from typing import Any

from ..config import SyncConfig
from ..credentials import verify_password
from ..exceptions import (
    RemoteStoreError,
    StorageCapacityError,
    StorageConnectionError,
    SyncError,
    TaskStorageError,
)
from ..local.store import FileLocalStore, LocalStore, StorageKeys
from ..logging_utils import DeviceLoggerAdapter, get_component_logger
from ..protocol import CacheState, RemoteSyncStats, SyncStats, Task, User, now_ms
from ..remote.client import RemoteStoreClient
from .merge import MergeResult, merge_tasks, merge_users
from .tracker import ChangeRecord, ChangeTracker, ChangeType, EntityType

logger = get_component_logger("sync")

_DEVICE_ID_ALPHABET = string.ascii_lowercase + string.digits


@dataclass
class SyncResult:
    """Result of a sync operation."""

    success: bool
    pushed: int = 0
    pulled: int = 0
    errors: list[str] = field(default_factory=list)
    skipped: bool = False
    duration_ms: int = 0


class _PushAborted(Exception):
    """Transport failure while flushing the outbox."""


def generate_device_id(clock: Callable[[], int] = now_ms) -> str:
    """Create an installation id of the form ``device_<ms>_<9 chars>``."""
    suffix = "".join(secrets.choice(_DEVICE_ID_ALPHABET) for _ in range(9))
    return f"device_{clock()}_{suffix}"


def _is_transport_failure(error: Exception) -> bool:
    if isinstance(error, StorageConnectionError):
        return True
    return isinstance(error, RemoteStoreError) and error.retryable


class CacheSyncEngine:
    """Local-first cache over the remote users/tasks endpoint.

    Example:
        >>> engine = CacheSyncEngine(FileLocalStore("~/.tasksync"), RemoteStoreClient(url))
        >>> async with engine:
        ...     tasks = await engine.get_tasks()
        ...     await engine.save_task(task)
    """

    def __init__(
        self,
        local: LocalStore,
        remote: RemoteStoreClient | None,
        config: SyncConfig | None = None,
        clock: Callable[[], int] | None = None,
    ):
        """Initialize the engine.

        Args:
            local: Local key-value store (system of record)
            remote: Endpoint client, or None for local-only operation
            config: Sync configuration
            clock: Returns epoch milliseconds (defaults to wall clock)
        """
        self.local = local
        self.remote = remote
        self.config = config or SyncConfig()
        self.clock = clock or now_ms
        self.keys = StorageKeys(self.config.key_prefix)
        self.tracker = ChangeTracker(local, self.keys.pending_changes)

        self.device_id: str | None = None
        self.log: logging.Logger | DeviceLoggerAdapter = logger

        self._syncing = False
        self._cycle_done = asyncio.Event()
        self._cycle_done.set()
        self._flush_requested = False
        self._last_error: str | None = None
        self._last_remote_cleanup: int | None = None
        self._lock = asyncio.Lock()
        self._background: set[asyncio.Task[Any]] = set()
        self._sync_task: asyncio.Task[None] | None = None

    async def __aenter__(self) -> CacheSyncEngine:
        await self.start()
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.stop()

    @property
    def is_syncing(self) -> bool:
        return self._syncing

    @property
    def last_error(self) -> str | None:
        return self._last_error

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def start(self, auto_sync: bool = True) -> None:
        """Load the device id, initialize the endpoint and start the loop.

        Args:
            auto_sync: Start the periodic background loop
        """
        await self.ensure_device_id()

        if self.remote is not None and self.config.initialize_remote:
            try:
                await self.remote.initialize()
            except TaskStorageError as e:
                self.log.warning(f"Remote initialization failed, continuing offline: {e}")

        if auto_sync:
            await self.start_auto_sync()

    async def stop(self) -> None:
        """Stop the loop and cancel background work."""
        await self.stop_auto_sync()
        for task in list(self._background):
            task.cancel()
        if self._background:
            await asyncio.gather(*self._background, return_exceptions=True)
        self._background.clear()

    async def close(self) -> None:
        """Stop, then release the remote session and the local store."""
        await self.stop()
        if self.remote is not None:
            await self.remote.close()
        await self.local.close()

    async def ensure_device_id(self) -> str:
        """Load the persisted device id, creating one on first run."""
        if self.device_id is not None:
            return self.device_id

        stored = await self.local.read(self.keys.device_id)
        if isinstance(stored, str) and stored:
            device_id = stored
        else:
            device_id = generate_device_id(self.clock)
            await self._write_local(self.keys.device_id, device_id)
            logger.info(f"Created device id {device_id}")

        self.device_id = device_id
        self.log = DeviceLoggerAdapter(logger, device_id)
        return device_id

    async def wait_idle(self) -> None:
        """Wait until scheduled background refreshes and flushes finish."""
        while self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    def _spawn(self, coro: Coroutine[Any, Any, Any]) -> asyncio.Task[Any]:
        task = asyncio.create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task

    # =========================================================================
    # Local snapshot access
    # =========================================================================

    async def _write_local(self, key: str, value: Any) -> bool:
        """Write a local key, evicting old tasks once if the store is full.

        Returns:
            False if the write was dropped
        """
        try:
            await self.local.write(key, value)
            return True
        except StorageCapacityError as e:
            self.log.warning(f"Local storage full writing {key}, evicting old tasks: {e}")

        cutoff = self.clock() - self.config.local_retention_ms
        await self._evict_tasks_before(cutoff)
        if key == self.keys.tasks and isinstance(value, list):
            value = [t for t in value if int(t.get("createdAt", 0)) >= cutoff]

        try:
            await self.local.write(key, value)
            return True
        except StorageCapacityError as e:
            self.log.error(f"Dropped local write to {key}, storage still full: {e}")
            return False

    async def _evict_tasks_before(self, cutoff: int) -> int:
        tasks = await self._read_tasks()
        if not tasks:
            return 0
        kept = [t for t in tasks if t.created_at >= cutoff]
        evicted = len(tasks) - len(kept)
        if evicted:
            try:
                await self.local.write(self.keys.tasks, [t.to_dict() for t in kept])
                self.log.info(f"Evicted {evicted} tasks older than the local retention window")
            except StorageCapacityError as e:
                self.log.error(f"Could not rewrite tasks during eviction: {e}")
                return 0
        return evicted

    async def _track(self, entity_type: EntityType, entity_id: str, change_type: ChangeType) -> None:
        try:
            await self.tracker.track(entity_type, entity_id, change_type)
        except StorageCapacityError:
            await self._evict_tasks_before(self.clock() - self.config.local_retention_ms)
            try:
                await self.tracker.track(entity_type, entity_id, change_type)
            except StorageCapacityError as e:
                self.log.error(f"Could not persist pending change for {entity_id}: {e}")

    async def _read_tasks(self) -> list[Task] | None:
        raw = await self.local.read(self.keys.tasks)
        if raw is None:
            return None
        if not isinstance(raw, list):
            self.log.warning("Local tasks snapshot has an unexpected shape, treating as empty")
            return None
        return self._parse_records(raw, Task.from_dict, "task")

    async def _read_users_snapshot(self) -> tuple[list[User], int] | None:
        raw = await self.local.read(self.keys.users)
        if raw is None:
            return None
        if isinstance(raw, list):
            # Bare list written by older versions; treat as never fetched
            return self._parse_records(raw, User.from_dict, "user"), 0
        if not isinstance(raw, dict) or not isinstance(raw.get("data"), list):
            self.log.warning("Local users snapshot has an unexpected shape, treating as empty")
            return None
        users = self._parse_records(raw["data"], User.from_dict, "user")
        return users, int(raw.get("fetchedAt") or 0)

    def _parse_records(self, raw: list[Any], parse: Callable[[dict[str, Any]], Any], kind: str) -> list[Any]:
        records = []
        for item in raw:
            try:
                records.append(parse(item))
            except (TaskStorageError, TypeError, AttributeError) as e:
                self.log.warning(f"Skipping unreadable local {kind} record: {e}")
        return records

    async def _write_tasks(self, tasks: list[Task]) -> bool:
        return await self._write_local(self.keys.tasks, [t.to_dict() for t in tasks])

    async def _write_users(self, users: list[User], fetched_at: int) -> bool:
        return await self._write_local(
            self.keys.users, {"data": [u.to_dict() for u in users], "fetchedAt": fetched_at}
        )

    async def get_last_sync(self) -> int | None:
        """Time of the last completed sync cycle (epoch ms)."""
        raw = await self.local.read(self.keys.last_sync)
        try:
            return int(raw) if raw is not None else None
        except (TypeError, ValueError):
            return None

    # =========================================================================
    # Reads
    # =========================================================================

    async def cache_state(self, entity: EntityType) -> CacheState:
        """Freshness state of the local users or tasks snapshot."""
        if entity == EntityType.USER:
            snapshot = await self._read_users_snapshot()
            if snapshot is None:
                return CacheState.COLD
            if self._syncing:
                return CacheState.SYNCING
            age_ms = self.clock() - snapshot[1]
            if age_ms > self.config.users_freshness_seconds * 1000:
                return CacheState.STALE
            return CacheState.FRESH

        if await self._read_tasks() is None:
            return CacheState.COLD
        if self._syncing:
            return CacheState.SYNCING
        if self.config.tasks_freshness_seconds is None:
            return CacheState.FRESH
        last_sync = await self.get_last_sync()
        if last_sync is None or self.clock() - last_sync > self.config.tasks_freshness_seconds * 1000:
            return CacheState.STALE
        return CacheState.FRESH

    async def get_users(self) -> list[User]:
        """Get users from the local snapshot, refreshing it as needed.

        Raises:
            StorageConnectionError: No local snapshot and the endpoint is unreachable
            RemoteStoreError: No local snapshot and the endpoint rejected the request
        """
        state = await self.cache_state(EntityType.USER)
        snapshot = await self._read_users_snapshot()

        # A snapshot with fetchedAt 0 holds only local edits, never a remote list
        if state == CacheState.COLD or (snapshot is not None and snapshot[1] == 0):
            if self.remote is None:
                return snapshot[0] if snapshot else []
            try:
                return await self._pull_users()
            except TaskStorageError as e:
                self._last_error = str(e)
                if snapshot is None:
                    self.log.warning(f"Users refresh failed with no local copy: {e}")
                    raise
                self.log.warning(f"Users refresh failed, serving local edits only: {e}")
                return snapshot[0]

        if state == CacheState.STALE:
            self.schedule_sync()

        return snapshot[0] if snapshot else []

    async def get_user(self, user_id: str) -> User | None:
        """Get a single cached user by id."""
        for user in await self.get_users():
            if user.id == user_id:
                return user
        return None

    async def get_tasks(self) -> list[Task]:
        """Get tasks from the local copy, newest first.

        A cold read waits for one sync cycle, joining a cycle already in
        flight; if that fails the empty local set is returned.
        """
        state = await self.cache_state(EntityType.TASK)

        if state == CacheState.COLD and self.remote is not None:
            await self._load_cold_tasks()
        elif state == CacheState.STALE:
            self.schedule_sync()

        tasks = await self._read_tasks() or []
        return sorted(tasks, key=lambda t: t.created_at, reverse=True)

    async def _load_cold_tasks(self) -> None:
        while True:
            # A flush in flight does not pull, so the local copy can still be cold after it
            while self._syncing:
                await self._cycle_done.wait()
            if await self._read_tasks() is not None:
                return
            result = await self.sync_now()
            if not result.skipped:
                break

        if not result.success:
            self.log.warning(f"Initial task sync failed: {'; '.join(result.errors)}")

    # =========================================================================
    # Writes
    # =========================================================================

    async def save_task(self, task: Task) -> None:
        """Upsert a task locally and queue it for push.

        An existing id is replaced in place; a new id goes to the front.
        """
        async with self._lock:
            tasks = await self._read_tasks() or []
            for i, existing in enumerate(tasks):
                if existing.id == task.id:
                    tasks[i] = task
                    break
            else:
                tasks.insert(0, task)
            await self._write_tasks(tasks)
            await self._track(EntityType.TASK, task.id, ChangeType.UPSERT)

        self.schedule_flush()

    async def delete_task(self, task_id: str) -> bool:
        """Delete a task locally and queue the remote delete.

        Returns:
            True if the task existed locally
        """
        async with self._lock:
            tasks = await self._read_tasks() or []
            kept = [t for t in tasks if t.id != task_id]
            existed = len(kept) < len(tasks)
            if existed:
                await self._write_tasks(kept)
            await self._track(EntityType.TASK, task_id, ChangeType.DELETE)

        self.schedule_flush()
        return existed

    async def add_user(self, user: User) -> None:
        """Add (or replace) a user locally and queue it for push."""
        await self._upsert_user(user)

    async def update_user(self, user: User) -> None:
        """Update a user locally and queue it for push."""
        await self._upsert_user(user)

    async def _upsert_user(self, user: User) -> None:
        async with self._lock:
            snapshot = await self._read_users_snapshot()
            users, fetched_at = snapshot if snapshot else ([], 0)
            for i, existing in enumerate(users):
                if existing.id == user.id:
                    users[i] = user
                    break
            else:
                users.append(user)
            await self._write_users(users, fetched_at)
            await self._track(EntityType.USER, user.id, ChangeType.UPSERT)

        self.schedule_flush()

    async def delete_user(self, user_id: str) -> bool:
        """Delete a user and, locally, the tasks assigned to or created by them.

        Returns:
            True if the user existed locally
        """
        async with self._lock:
            snapshot = await self._read_users_snapshot()
            users, fetched_at = snapshot if snapshot else ([], 0)
            kept = [u for u in users if u.id != user_id]
            existed = len(kept) < len(users)
            if existed:
                await self._write_users(kept, fetched_at)

            tasks = await self._read_tasks() or []
            remaining = [t for t in tasks if user_id not in (t.assignee_id, t.creator_id)]
            if len(remaining) < len(tasks):
                await self._write_tasks(remaining)
                self.log.info(f"Removed {len(tasks) - len(remaining)} tasks of deleted user {user_id}")

            await self._track(EntityType.USER, user_id, ChangeType.DELETE)

        self.schedule_flush()
        return existed

    # =========================================================================
    # Login
    # =========================================================================

    async def login(self, username: str, password: str) -> User | None:
        """Check credentials against the endpoint, falling back to the cache.

        Returns:
            The user, or None when the credentials do not match

        Raises:
            StorageConnectionError: Endpoint unreachable and no cached users
        """
        if self.remote is None:
            return await self._login_cached(username, password)

        try:
            user = await self.remote.login(username, password)
        except TaskStorageError as e:
            if not _is_transport_failure(e):
                raise
            if await self._read_users_snapshot() is None:
                raise
            self.log.warning(f"Remote login unavailable, checking cached users: {e}")
            return await self._login_cached(username, password)

        if user is None:
            return None

        async with self._lock:
            snapshot = await self._read_users_snapshot()
            if snapshot is not None:
                users, fetched_at = snapshot
                users = [u for u in users if u.id != user.id] + [user]
                await self._write_users(users, fetched_at)
        return user

    async def _login_cached(self, username: str, password: str) -> User | None:
        snapshot = await self._read_users_snapshot()
        if snapshot is None:
            return None
        for user in snapshot[0]:
            if user.username == username and user.password and verify_password(password, user.password):
                return user
        return None

    # =========================================================================
    # Sync
    # =========================================================================

    def schedule_sync(self) -> None:
        """Run a sync cycle in the background unless one is in flight."""
        if self.remote is None or self._syncing:
            return
        self._spawn(self.sync_now())

    def schedule_flush(self) -> None:
        """Push pending changes in the background (fire and forget)."""
        if self.remote is None:
            return
        if self._syncing:
            self._flush_requested = True
            return
        self._spawn(self.flush_pending())

    async def flush_pending(self) -> SyncResult:
        """Push the outbox without pulling."""
        if self._syncing:
            self._flush_requested = True
            return SyncResult(success=False, skipped=True, errors=["Sync already in progress"])
        if self.remote is None:
            return SyncResult(success=False, errors=["No remote endpoint configured"])

        self._syncing = True
        self._cycle_done.clear()
        start = self.clock()
        result = SyncResult(success=False)
        try:
            await self._push_changes(result)
            result.success = not result.errors
        except _PushAborted:
            pass
        except Exception as e:
            result.errors.append(str(e))
            self.log.warning(f"Flushing pending changes failed: {e}")
        finally:
            self._finish(result, start)
        return result

    async def sync_now(self) -> SyncResult:
        """Run one bidirectional sync cycle.

        Failures are absorbed into the result; cached data stays in place.
        """
        if self._syncing:
            return SyncResult(success=False, skipped=True, errors=["Sync already in progress"])
        if self.remote is None:
            return SyncResult(success=False, errors=["No remote endpoint configured"])

        self._syncing = True
        self._cycle_done.clear()
        start = self.clock()
        result = SyncResult(success=False)

        try:
            await self._push_changes(result)

            users = await self._pull_users()
            merge = await self._pull_tasks()
            result.pulled = len(users) + len(merge.added) + len(merge.updated)

            # Tasks still queued in the outbox are retried from there
            queued = await self.tracker.pending_ids(EntityType.TASK, ChangeType.UPSERT)
            to_push = [t for t in merge.to_push if t.id not in queued]
            if to_push:
                await self._push_local_only(to_push, result)

            await self._write_local(self.keys.last_sync, self.clock())
            result.success = not result.errors
            self.log.info(
                f"Sync complete: pushed {result.pushed}, pulled {result.pulled}",
                extra={"added": len(merge.added), "updated": len(merge.updated)},
            )
        except _PushAborted:
            pass
        except Exception as e:
            result.errors.append(str(e))
            self.log.warning(f"Sync failed, keeping local data: {e}")
        finally:
            self._finish(result, start)

        return result

    def _finish(self, result: SyncResult, start: int) -> None:
        result.duration_ms = max(self.clock() - start, 0)
        self._last_error = result.errors[-1] if result.errors else None
        self._syncing = False
        self._cycle_done.set()
        if self._flush_requested:
            self._flush_requested = False
            self._spawn(self.flush_pending())

    async def force_sync(self) -> SyncResult:
        """Run a full sync cycle and raise if it fails.

        Raises:
            SyncError: The cycle failed or another cycle is in flight
        """
        result = await self.sync_now()
        if not result.success:
            raise SyncError("Sync failed", result.errors)
        return result

    async def _push_changes(self, result: SyncResult) -> None:
        """Push the outbox; user changes and task deletes one by one, task upserts batched.

        Raises:
            _PushAborted: A transport failure stopped the push
        """
        assert self.remote is not None
        changes = [c for c in await self.tracker.get_pending_changes() if not self._set_aside(c)]
        if not changes:
            return

        tasks_by_id = {t.id: t for t in await self._read_tasks() or []}
        snapshot = await self._read_users_snapshot()
        users_by_id = {u.id: u for u in snapshot[0]} if snapshot else {}

        task_upserts: list[tuple[ChangeRecord, Task]] = []
        for change in changes:
            if change.entity_type == EntityType.TASK and change.change_type == ChangeType.UPSERT:
                task = tasks_by_id.get(change.entity_id)
                if task is None:
                    # Gone locally since it was queued
                    await self.tracker.mark_synced(change)
                else:
                    task_upserts.append((change, task))
                continue

            try:
                pushed = await self._push_single_change(change, users_by_id)
                await self.tracker.mark_synced(change)
                result.pushed += int(pushed)
            except TaskStorageError as e:
                await self._record_push_failure([change], e, result)

        for i in range(0, len(task_upserts), self.config.batch_size):
            batch = task_upserts[i : i + self.config.batch_size]
            try:
                await self.remote.batch_save_tasks([task for _, task in batch])
            except TaskStorageError as e:
                if _is_transport_failure(e) or len(batch) == 1:
                    await self._record_push_failure([change for change, _ in batch], e, result)
                    continue
                # One bad task fails the whole batch; find it by pushing singly
                self.log.warning(f"Batch of {len(batch)} tasks rejected, pushing one by one: {e}")
                for change, task in batch:
                    await self._push_task_alone(change, task, result)
                continue
            for change, _ in batch:
                await self.tracker.mark_synced(change)
            result.pushed += len(batch)

    async def _push_task_alone(self, change: ChangeRecord, task: Task, result: SyncResult) -> None:
        assert self.remote is not None
        try:
            await self.remote.save_task(task)
        except TaskStorageError as e:
            await self._record_push_failure([change], e, result)
            return
        await self.tracker.mark_synced(change)
        result.pushed += 1

    def _set_aside(self, change: ChangeRecord) -> bool:
        return change.rejections >= self.config.max_push_attempts

    async def _push_single_change(self, change: ChangeRecord, users_by_id: dict[str, User]) -> bool:
        assert self.remote is not None
        if change.entity_type == EntityType.TASK:
            await self.remote.delete_task(change.entity_id)
            return True

        if change.change_type == ChangeType.DELETE:
            await self.remote.delete_user(change.entity_id)
            return True

        user = users_by_id.get(change.entity_id)
        if user is None:
            return False
        # addUser ignores existing ids, updateUser applies the changes
        await self.remote.add_user(user)
        await self.remote.update_user(user)
        return True

    async def _record_push_failure(
        self, changes: list[ChangeRecord], error: TaskStorageError, result: SyncResult
    ) -> None:
        rejected = not _is_transport_failure(error)
        for change in changes:
            queued = await self.tracker.mark_failed(change, str(error), rejected=rejected)
            if queued is not None and self._set_aside(queued):
                self.log.error(
                    f"Giving up on {queued.entity_type.value} {queued.entity_id} "
                    f"after {queued.rejections} rejected pushes: {error}",
                    extra={"change_id": queued.change_id},
                )
        result.errors.append(f"Failed to push {len(changes)} change(s): {error}")
        self.log.warning(f"Push failed, {len(changes)} change(s) kept for retry: {error}")
        if not rejected:
            raise _PushAborted()

    async def _pull_users(self) -> list[User]:
        assert self.remote is not None
        remote_users = await self.remote.get_users()

        async with self._lock:
            upsert_ids = await self.tracker.pending_ids(EntityType.USER, ChangeType.UPSERT)
            delete_ids = await self.tracker.pending_ids(EntityType.USER, ChangeType.DELETE)
            snapshot = await self._read_users_snapshot()
            local_users = snapshot[0] if snapshot else []
            pending = [u for u in local_users if u.id in upsert_ids]

            users = merge_users(remote_users, pending, delete_ids)
            await self._write_users(users, self.clock())
        return users

    async def _pull_tasks(self) -> MergeResult:
        assert self.remote is not None
        remote_tasks = await self.remote.get_tasks()

        async with self._lock:
            deleted_tasks = await self.tracker.pending_ids(EntityType.TASK, ChangeType.DELETE)
            deleted_users = await self.tracker.pending_ids(EntityType.USER, ChangeType.DELETE)
            excluded = set(deleted_tasks)
            if deleted_users:
                excluded.update(
                    t.id
                    for t in remote_tasks
                    if t.assignee_id in deleted_users or t.creator_id in deleted_users
                )

            local_tasks = await self._read_tasks()
            merge = merge_tasks(
                local_tasks or [], remote_tasks, self.config.merge_timestamp, excluded
            )
            if merge.changed or local_tasks is None:
                await self._write_tasks(merge.tasks)
        return merge

    async def _push_local_only(self, tasks: list[Task], result: SyncResult) -> None:
        assert self.remote is not None
        for i in range(0, len(tasks), self.config.batch_size):
            batch = tasks[i : i + self.config.batch_size]
            try:
                result.pushed += await self.remote.batch_save_tasks(batch)
            except TaskStorageError as e:
                if _is_transport_failure(e):
                    result.errors.append(f"Failed to re-upload {len(batch)} task(s): {e}")
                    self.log.warning(f"Re-upload of local-only tasks failed: {e}")
                    return
                self.log.warning(f"Re-upload batch rejected, pushing one by one: {e}")
                for task in batch:
                    # Rejected tasks move to the outbox so their rejections are counted
                    change = await self.tracker.track_upsert(EntityType.TASK, task.id)
                    await self._push_task_alone(change, task, result)
        if tasks:
            self.log.info(f"Re-uploaded {len(tasks)} tasks missing from the remote")

    # =========================================================================
    # Background loop
    # =========================================================================

    async def start_auto_sync(self) -> None:
        """Start the periodic background loop (first tick runs immediately)."""
        if self._sync_task is not None or self.remote is None:
            return

        async def sync_loop() -> None:
            while True:
                try:
                    await self.tick()
                except asyncio.CancelledError:
                    raise
                except Exception as e:
                    self.log.warning(f"Background sync tick failed: {e}")
                await asyncio.sleep(self.config.sync_interval_seconds)

        self._sync_task = asyncio.create_task(sync_loop())

    async def stop_auto_sync(self) -> None:
        """Stop the periodic background loop."""
        if self._sync_task is not None:
            self._sync_task.cancel()
            try:
                await self._sync_task
            except asyncio.CancelledError:
                pass
            self._sync_task = None

    async def tick(self) -> SyncResult | None:
        """One background iteration.

        Runs a full cycle when the last sync is older than the force
        threshold or tasks were never loaded, otherwise only flushes a
        non-empty outbox. Also asks the endpoint to sweep expired rows
        when a cleanup interval is configured.
        """
        now = self.clock()
        last_sync = await self.get_last_sync()
        force_ms = self.config.force_sync_after_seconds * 1000

        result: SyncResult | None = None
        if last_sync is None or now - last_sync > force_ms or await self._read_tasks() is None:
            result = await self.sync_now()
        elif await self.tracker.get_pending_count():
            result = await self.flush_pending()

        interval = self.config.remote_cleanup_interval_seconds
        if interval is not None and (
            self._last_remote_cleanup is None or now - self._last_remote_cleanup >= interval * 1000
        ):
            self._last_remote_cleanup = now
            try:
                await self.cleanup_remote()
            except TaskStorageError as e:
                self.log.warning(f"Remote cleanup failed: {e}")

        return result

    # =========================================================================
    # Stats and maintenance
    # =========================================================================

    async def get_sync_stats(self) -> SyncStats:
        """Local view of sync health."""
        device_id = await self.ensure_device_id()
        now = self.clock()
        last_sync = await self.get_last_sync()
        snapshot = await self._read_users_snapshot()
        tasks = await self._read_tasks() or []
        offline_ms = self.config.max_offline_days * 24 * 60 * 60 * 1000

        return SyncStats(
            device_id=device_id,
            users_count=len(snapshot[0]) if snapshot else 0,
            tasks_count=len(tasks),
            last_sync=last_sync,
            next_sync=(
                last_sync + int(self.config.sync_interval_seconds * 1000)
                if last_sync is not None
                else now
            ),
            pending_changes=await self.tracker.get_pending_count(),
            failed_changes=len(await self.tracker.get_failed_changes()),
            is_offline_too_long=last_sync is not None and now - last_sync > offline_ms,
            is_syncing=self._syncing,
            ttl_days=self.config.ttl_days,
            users_state=await self.cache_state(EntityType.USER),
            tasks_state=await self.cache_state(EntityType.TASK),
            local_bytes=await self.local.size(),
            last_error=self._last_error,
        )

    async def get_remote_stats(self) -> RemoteSyncStats:
        """Statistics reported by the endpoint."""
        if self.remote is None:
            raise StorageConnectionError("<no endpoint configured>")
        return await self.remote.get_sync_stats()

    async def cleanup_remote(self) -> int:
        """Ask the endpoint to evict expired tasks now.

        Returns:
            Number of rows the endpoint deleted
        """
        if self.remote is None:
            return 0
        deleted = await self.remote.cleanup()
        self.log.info(f"Remote cleanup removed {deleted} expired tasks")
        return deleted

    async def clear_local(self) -> None:
        """Drop cached users, tasks, sync time and outbox. The device id is kept."""
        async with self._lock:
            await self.local.clear(self.keys.cache_keys())
            self.tracker.reset()
        self.log.info("Local cache cleared")


def create_engine(config: SyncConfig | None = None, clock: Callable[[], int] | None = None) -> CacheSyncEngine:
    """Create an engine with a file-backed store and, if configured, a remote client.

    Args:
        config: Sync configuration (defaults to ``SyncConfig.from_env()``)
        clock: Optional epoch-ms clock

    Returns:
        Engine ready to ``start()``
    """
    config = config or SyncConfig.from_env()
    local = FileLocalStore(config.resolved_local_path(), quota_bytes=config.local_quota_bytes)
    remote = None
    if config.endpoint_url:
        remote = RemoteStoreClient(
            config.endpoint_url,
            timeout=config.request_timeout_seconds,
            max_retries=config.max_retries,
            retry_delay=config.retry_delay_seconds,
        )
    return CacheSyncEngine(local, remote, config=config, clock=clock)
