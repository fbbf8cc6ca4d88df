"""
Change tracking for synchronization.

Tracks local writes that still have to reach the remote endpoint and
keeps them in a persistent queue (the outbox) stored under its own key
in the local store, so pending pushes and deletes survive restarts.

Only the latest change per entity is kept. The push always sends the
entity's current local value, so older records for the same id carry
no extra information.
"""

import uuid
from dataclasses import dataclass
from enum import Enum
from typing import Any

from ..local.store import LocalStore
from ..protocol import now_ms


class ChangeType(Enum):
    """Type of change being tracked."""

    UPSERT = "upsert"
    DELETE = "delete"


class EntityType(Enum):
    """Type of entity being changed."""

    USER = "user"
    TASK = "task"


@dataclass
class ChangeRecord:
    """Record of a single change that needs to be synced.

    Attributes:
        change_id: Unique identifier for this change
        entity_type: Type of entity changed
        entity_id: ID of the entity
        change_type: Upsert or delete
        timestamp: When the change occurred (epoch ms)
        retries: Number of failed push attempts
        last_error: Last error message if a push failed
        rejections: Failed attempts the endpoint refused outright (4xx)
    """

    change_id: str
    entity_type: EntityType
    entity_id: str
    change_type: ChangeType
    timestamp: int
    retries: int = 0
    last_error: str | None = None
    rejections: int = 0

    @property
    def key(self) -> tuple[EntityType, str]:
        return (self.entity_type, self.entity_id)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "change_id": self.change_id,
            "entity_type": self.entity_type.value,
            "entity_id": self.entity_id,
            "change_type": self.change_type.value,
            "timestamp": self.timestamp,
            "retries": self.retries,
            "last_error": self.last_error,
            "rejections": self.rejections,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ChangeRecord":
        """Create from dictionary."""
        return cls(
            change_id=data.get("change_id") or str(uuid.uuid4()),
            entity_type=EntityType(data["entity_type"]),
            entity_id=data["entity_id"],
            change_type=ChangeType(data["change_type"]),
            timestamp=int(data.get("timestamp", 0)),
            retries=data.get("retries", 0),
            last_error=data.get("last_error"),
            rejections=int(data.get("rejections", 0)),
        )


class ChangeTracker:
    """Tracks and persists changes for synchronization.

    Records are held in memory and written back to the local store on
    every mutation.
    """

    def __init__(self, store: LocalStore, key: str):
        """Initialize the change tracker.

        Args:
            store: Local store holding the queue
            key: Key the queue is stored under
        """
        self.store = store
        self.key = key
        self._changes: list[ChangeRecord] = []
        self._loaded = False

    async def _ensure_loaded(self) -> None:
        """Load changes from the store if not already loaded."""
        if self._loaded:
            return

        raw = await self.store.read(self.key)
        self._changes = []
        if isinstance(raw, list):
            for item in raw:
                try:
                    self._changes.append(ChangeRecord.from_dict(item))
                except (KeyError, TypeError, ValueError):
                    # Unparseable record, skip it
                    continue

        self._loaded = True

    async def _persist(self) -> None:
        """Persist changes to the store."""
        if self._changes:
            await self.store.write(self.key, [c.to_dict() for c in self._changes])
        else:
            await self.store.remove(self.key)

    async def track(
        self,
        entity_type: EntityType,
        entity_id: str,
        change_type: ChangeType,
        timestamp: int | None = None,
    ) -> ChangeRecord:
        """Track a change, replacing any queued change for the same entity.

        Args:
            entity_type: Type of entity changed
            entity_id: ID of the entity
            change_type: Upsert or delete
            timestamp: When the change occurred (defaults to now)

        Returns:
            Created ChangeRecord
        """
        await self._ensure_loaded()

        change = ChangeRecord(
            change_id=str(uuid.uuid4()),
            entity_type=entity_type,
            entity_id=entity_id,
            change_type=change_type,
            timestamp=timestamp if timestamp is not None else now_ms(),
        )

        self._changes = [c for c in self._changes if c.key != change.key]
        self._changes.append(change)
        await self._persist()
        return change

    async def track_upsert(self, entity_type: EntityType, entity_id: str) -> ChangeRecord:
        """Track a create or update."""
        return await self.track(entity_type, entity_id, ChangeType.UPSERT)

    async def track_delete(self, entity_type: EntityType, entity_id: str) -> ChangeRecord:
        """Track a delete."""
        return await self.track(entity_type, entity_id, ChangeType.DELETE)

    async def get_pending_changes(
        self,
        entity_type: EntityType | None = None,
        change_type: ChangeType | None = None,
    ) -> list[ChangeRecord]:
        """Get pending changes that need to be synced, oldest first.

        Args:
            entity_type: Filter by entity type (optional)
            change_type: Filter by change type (optional)

        Returns:
            List of pending changes
        """
        await self._ensure_loaded()

        changes = self._changes
        if entity_type is not None:
            changes = [c for c in changes if c.entity_type == entity_type]
        if change_type is not None:
            changes = [c for c in changes if c.change_type == change_type]

        return list(changes)

    async def pending_ids(
        self,
        entity_type: EntityType,
        change_type: ChangeType | None = None,
    ) -> set[str]:
        """Ids with a pending change of the given kind."""
        changes = await self.get_pending_changes(entity_type, change_type)
        return {c.entity_id for c in changes}

    async def get_pending_count(self) -> int:
        """Get count of pending changes."""
        await self._ensure_loaded()
        return len(self._changes)

    async def mark_synced(self, change: ChangeRecord) -> bool:
        """Remove a change from the queue after a successful push.

        A newer change tracked for the same entity while the push was in
        flight is left in place.

        Returns:
            True if the change was found and removed
        """
        await self._ensure_loaded()

        original_count = len(self._changes)
        self._changes = [c for c in self._changes if c.change_id != change.change_id]

        if len(self._changes) < original_count:
            await self._persist()
            return True
        return False

    async def mark_failed(
        self, change: ChangeRecord, error: str, rejected: bool = False
    ) -> ChangeRecord | None:
        """Record a failed push attempt (increments the retry count).

        Args:
            change: The change that was pushed
            error: Failure message
            rejected: The endpoint refused the change itself, as opposed to
                being unreachable

        Returns:
            The updated queued record, or None if it was replaced or removed
        """
        await self._ensure_loaded()

        for queued in self._changes:
            if queued.change_id == change.change_id:
                queued.retries += 1
                queued.last_error = error
                if rejected:
                    queued.rejections += 1
                await self._persist()
                return queued
        return None

    async def get_failed_changes(self, min_retries: int = 1) -> list[ChangeRecord]:
        """Get changes that have failed at least ``min_retries`` times."""
        await self._ensure_loaded()
        return [c for c in self._changes if c.retries >= min_retries]

    async def get_rejected_changes(self, min_rejections: int = 1) -> list[ChangeRecord]:
        """Get changes the endpoint refused at least ``min_rejections`` times."""
        await self._ensure_loaded()
        return [c for c in self._changes if c.rejections >= min_rejections]

    async def clear_all(self) -> int:
        """Clear all pending changes.

        Returns:
            Number of changes removed
        """
        await self._ensure_loaded()

        count = len(self._changes)
        self._changes = []
        await self._persist()
        return count

    def reset(self) -> None:
        """Forget the in-memory queue so the next call reloads it."""
        self._changes = []
        self._loaded = False
