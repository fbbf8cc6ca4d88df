"""
Migration from the legacy cache layout.

Older installations kept users and tasks under versioned keys
(``cache_users_v1``, ``cache_tasks_v1``, ``cache_last_sync_v1``) without an
outbox. Migration copies that data into the current layout through the
engine, so migrated tasks are queued for push like any other local write.

A backup of the legacy values is written before anything else; legacy
keys are left in place.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

from .exceptions import TaskStorageError
from .protocol import Task, User
from .sync.engine import CacheSyncEngine

logger = logging.getLogger(__name__)

BACKUP_KEY = "backup_migration"


@dataclass(frozen=True)
class LegacyKeys:
    """Key names of the legacy cache layout."""

    prefix: str = "cache"
    version: str = "v1"

    @property
    def users(self) -> str:
        return f"{self.prefix}_users_{self.version}"

    @property
    def tasks(self) -> str:
        return f"{self.prefix}_tasks_{self.version}"

    @property
    def last_sync(self) -> str:
        return f"{self.prefix}_last_sync_{self.version}"


@dataclass
class MigrationResult:
    """Result of a legacy cache migration."""

    success: bool
    tasks_migrated: int = 0
    users_migrated: int = 0
    tasks_skipped: int = 0
    errors: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "success": self.success,
            "tasks_migrated": self.tasks_migrated,
            "users_migrated": self.users_migrated,
            "tasks_skipped": self.tasks_skipped,
            "errors": self.errors,
        }


async def needs_migration(engine: CacheSyncEngine, legacy: LegacyKeys | None = None) -> bool:
    """Legacy tasks exist and the current layout holds none yet."""
    legacy = legacy or LegacyKeys()
    has_legacy = await engine.local.read(legacy.tasks) is not None
    has_current = await engine.local.read(engine.keys.tasks) is not None
    return has_legacy and not has_current


async def migrate_legacy_cache(
    engine: CacheSyncEngine,
    legacy: LegacyKeys | None = None,
) -> MigrationResult:
    """Copy legacy users and tasks into the engine's layout.

    Tasks whose id already exists in the current layout are kept as they
    are. Users are only copied when no users snapshot exists; the copy is
    marked as never fetched so the next read refreshes it.

    Args:
        engine: Engine owning the current layout
        legacy: Legacy key names (defaults to the v1 layout)

    Returns:
        MigrationResult with counts and per-record errors
    """
    legacy = legacy or LegacyKeys()
    result = MigrationResult(success=False)
    local = engine.local

    users_raw = await local.read(legacy.users)
    tasks_raw = await local.read(legacy.tasks)
    last_sync_raw = await local.read(legacy.last_sync)

    try:
        await local.write(
            BACKUP_KEY,
            {
                "users": users_raw,
                "tasks": tasks_raw,
                "lastSync": last_sync_raw,
                "timestamp": engine.clock(),
            },
        )
    except TaskStorageError as e:
        result.errors.append(f"Backup failed: {e}")
        logger.error(f"Legacy migration aborted, backup failed: {e}")
        return result

    current = await local.read(engine.keys.tasks)
    existing_ids = {_record_id(item) for item in current} if isinstance(current, list) else set()

    for item in tasks_raw if isinstance(tasks_raw, list) else []:
        try:
            task = Task.from_dict(item)
        except (TaskStorageError, TypeError, AttributeError) as e:
            result.errors.append(f"Task {_record_id(item)}: {e}")
            continue
        if task.id in existing_ids:
            result.tasks_skipped += 1
            continue
        try:
            await engine.save_task(task)
        except TaskStorageError as e:
            result.errors.append(f"Task {task.id}: {e}")
            continue
        existing_ids.add(task.id)
        result.tasks_migrated += 1

    if isinstance(users_raw, list) and await local.read(engine.keys.users) is None:
        users = []
        for item in users_raw:
            try:
                users.append(User.from_dict(item))
            except (TaskStorageError, TypeError, AttributeError) as e:
                result.errors.append(f"User {_record_id(item)}: {e}")
        # fetchedAt 0 marks the snapshot as never pulled, so the next read refreshes it
        if await engine._write_users(users, 0):
            result.users_migrated = len(users)
        else:
            result.errors.append(f"Users: local storage full, {len(users)} users not migrated")

    result.success = True
    logger.info(
        f"Legacy migration complete: {result.tasks_migrated} tasks, {result.users_migrated} users",
        extra={"errors": len(result.errors), "skipped": result.tasks_skipped},
    )
    return result


async def restore_from_backup(engine: CacheSyncEngine, legacy: LegacyKeys | None = None) -> bool:
    """Write the backed-up legacy values back to the legacy keys.

    Returns:
        False if no backup exists
    """
    legacy = legacy or LegacyKeys()
    backup = await engine.local.read(BACKUP_KEY)
    if not isinstance(backup, dict):
        logger.warning("No legacy migration backup found")
        return False

    for key, name in ((legacy.users, "users"), (legacy.tasks, "tasks"), (legacy.last_sync, "lastSync")):
        if backup.get(name) is not None:
            await engine.local.write(key, backup[name])
    return True


def _record_id(item: Any) -> str:
    if isinstance(item, dict):
        return str(item.get("id", "?"))
    return "?"
