"""
Dispatch Task Storage

Local-first storage and sync for a task-assignment application.

Provides:
- A durable local copy of users and tasks (file-backed or in-memory)
- A client for the remote JSON action endpoint, whose task rows expire
  after a TTL
- A cache/sync engine that merges both copies without losing local tasks
- A service layer with the application's user and task operations

Usage:

    >>> from dispatch_task_storage import SyncConfig, TaskService, create_engine
    >>> config = SyncConfig(endpoint_url="https://example.netlify.app/.netlify/functions/db")
    >>> engine = create_engine(config)
    >>> async with engine:
    ...     service = TaskService(engine)
    ...     user = await service.login("admin", "123123")
    ...     tasks = await service.visible_tasks(user)
"""

from .config import SyncConfig
from .credentials import hash_password, is_hashed, verify_password
from .exceptions import (
    RemoteStoreError,
    ServiceUnavailableError,
    StorageCapacityError,
    StorageConnectionError,
    StorageIOError,
    SyncError,
    TaskNotFoundError,
    TaskStorageError,
    UserNotFoundError,
    ValidationError,
)
from .local import FileLocalStore, LocalStore, MemoryLocalStore, StorageKeys
from .logging_utils import configure_structured_logging
from .migration import (
    LegacyKeys,
    MigrationResult,
    migrate_legacy_cache,
    needs_migration,
    restore_from_backup,
)
from .protocol import (
    CacheState,
    MergeTimestamp,
    RecurringType,
    RemoteSyncStats,
    SyncStats,
    Task,
    TaskPriority,
    TaskStatus,
    User,
    UserRole,
    avatar_url_for,
    now_ms,
)
from .remote import RemoteStoreClient
from .service import DEFAULT_PASSWORD, DashboardStats, TaskEnricher, TaskService
from .sync import CacheSyncEngine, MergeResult, SyncResult, create_engine, merge_tasks

__all__ = [
    # Configuration
    "SyncConfig",
    # Data model
    "User",
    "Task",
    "UserRole",
    "TaskStatus",
    "TaskPriority",
    "RecurringType",
    "CacheState",
    "MergeTimestamp",
    "SyncStats",
    "RemoteSyncStats",
    "avatar_url_for",
    "now_ms",
    # Storage layers
    "LocalStore",
    "FileLocalStore",
    "MemoryLocalStore",
    "StorageKeys",
    "RemoteStoreClient",
    # Sync
    "CacheSyncEngine",
    "SyncResult",
    "MergeResult",
    "merge_tasks",
    "create_engine",
    # Service
    "TaskService",
    "TaskEnricher",
    "DashboardStats",
    "DEFAULT_PASSWORD",
    # Migration
    "LegacyKeys",
    "MigrationResult",
    "migrate_legacy_cache",
    "needs_migration",
    "restore_from_backup",
    # Credentials
    "hash_password",
    "verify_password",
    "is_hashed",
    # Logging
    "configure_structured_logging",
    # Exceptions
    "TaskStorageError",
    "StorageIOError",
    "StorageCapacityError",
    "StorageConnectionError",
    "RemoteStoreError",
    "ValidationError",
    "SyncError",
    "ServiceUnavailableError",
    "UserNotFoundError",
    "TaskNotFoundError",
]

__version__ = "0.1.0"
