"""
Local/remote synchronization.

Provides the cache/sync engine, the task merge rules and the outbox of
changes waiting to be pushed.
"""

from .engine import CacheSyncEngine, SyncResult, create_engine, generate_device_id
from .merge import MergeResult, merge_tasks, merge_users, task_version
from .tracker import ChangeRecord, ChangeTracker, ChangeType, EntityType

__all__ = [
    "CacheSyncEngine",
    "SyncResult",
    "create_engine",
    "generate_device_id",
    "MergeResult",
    "merge_tasks",
    "merge_users",
    "task_version",
    "ChangeRecord",
    "ChangeTracker",
    "ChangeType",
    "EntityType",
]
