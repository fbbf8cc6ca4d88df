"""
Sync configuration.

Configuration can be provided directly, from environment variables or
from a YAML settings file:

Environment Variables:
    TASKSYNC_ENDPOINT_URL: Remote action endpoint URL
    TASKSYNC_TTL_DAYS: Server-side task TTL in days (default: 3)
    TASKSYNC_LOCAL_PATH: Directory for the local store
    TASKSYNC_KEY_PREFIX: Prefix for local storage keys (default: tasksync)
    TASKSYNC_SYNC_INTERVAL: Seconds between background ticks (default: 300)
    TASKSYNC_FORCE_SYNC_AFTER: Seconds before a tick forces a full sync (default: 1800)
    TASKSYNC_USERS_FRESHNESS: Seconds a users snapshot stays fresh (default: 300)
    TASKSYNC_REQUEST_TIMEOUT: Per-request timeout in seconds (default: 10)
    TASKSYNC_MERGE_TIMESTAMP: created_at or updated_at (default: created_at)

Settings file (``sync`` section):

```yaml
sync:
  endpoint_url: "https://example.netlify.app/.netlify/functions/db"
  ttl_days: 3
  local_path: "~/.tasksync"
  users_freshness_seconds: 300
```
"""

from __future__ import annotations

import os
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Any

import yaml

from .exceptions import ValidationError
from .protocol import MergeTimestamp

DAY_SECONDS = 24 * 60 * 60
DEFAULT_QUOTA_BYTES = 5 * 1024 * 1024


@dataclass
class SyncConfig:
    """Configuration for the cache/sync engine.

    Attributes:
        endpoint_url: Remote action endpoint (None means local-only)
        ttl_days: Age after which the server evicts task rows
        users_freshness_seconds: Users snapshot freshness window
        tasks_freshness_seconds: Tasks freshness window (None = never stale)
        sync_interval_seconds: Background tick interval
        force_sync_after_seconds: Elapsed time that makes a tick run a full sync
        request_timeout_seconds: Timeout applied to every remote call
        max_retries: In-call retries for retryable remote failures
        retry_delay_seconds: Base backoff delay between retries
        local_retention_days: Tasks older than this are evicted when storage is full
        max_offline_days: Days without sync before stats flag the device
        batch_size: Tasks per ``batchSaveTasks`` request
        max_push_attempts: Rejected pushes of one change before it is set aside
        key_prefix: Prefix for local storage keys
        local_path: Directory for the file-backed local store
        local_quota_bytes: Capacity of the local store
        merge_timestamp: Field compared when merging the same task id
        remote_cleanup_interval_seconds: How often to ask the server to sweep (None = never)
        initialize_remote: Whether ``start()`` calls the ``init`` action
    """

    endpoint_url: str | None = None
    ttl_days: int = 3
    users_freshness_seconds: float = 5 * 60
    tasks_freshness_seconds: float | None = None
    sync_interval_seconds: float = 5 * 60
    force_sync_after_seconds: float = 30 * 60
    request_timeout_seconds: float = 10.0
    max_retries: int = 2
    retry_delay_seconds: float = 0.5
    local_retention_days: int = 90
    max_offline_days: int = 7
    batch_size: int = 50
    max_push_attempts: int = 5
    key_prefix: str = "tasksync"
    local_path: str | None = None
    local_quota_bytes: int | None = DEFAULT_QUOTA_BYTES
    merge_timestamp: MergeTimestamp = MergeTimestamp.CREATED_AT
    remote_cleanup_interval_seconds: float | None = None
    initialize_remote: bool = True

    def __post_init__(self) -> None:
        if isinstance(self.merge_timestamp, str):
            try:
                self.merge_timestamp = MergeTimestamp(self.merge_timestamp.lower())
            except ValueError as e:
                raise ValidationError(
                    "merge_timestamp", "expected created_at or updated_at", self.merge_timestamp
                ) from e
        if self.ttl_days <= 0:
            raise ValidationError("ttl_days", "must be positive", str(self.ttl_days))
        if self.batch_size <= 0:
            raise ValidationError("batch_size", "must be positive", str(self.batch_size))
        if self.max_push_attempts <= 0:
            raise ValidationError(
                "max_push_attempts", "must be positive", str(self.max_push_attempts)
            )
        if self.sync_interval_seconds <= 0:
            raise ValidationError(
                "sync_interval_seconds", "must be positive", str(self.sync_interval_seconds)
            )

    @property
    def ttl_ms(self) -> int:
        """Server TTL in milliseconds."""
        return self.ttl_days * DAY_SECONDS * 1000

    @property
    def local_retention_ms(self) -> int:
        """Local retention horizon in milliseconds."""
        return self.local_retention_days * DAY_SECONDS * 1000

    def resolved_local_path(self) -> Path:
        """Directory for the file-backed store (default: ~/.tasksync)."""
        if self.local_path:
            return Path(self.local_path).expanduser()
        return Path.home() / ".tasksync"

    @classmethod
    def from_env(cls) -> SyncConfig:
        """Create configuration from environment variables."""
        env = os.environ
        values: dict[str, Any] = {}

        if env.get("TASKSYNC_ENDPOINT_URL"):
            values["endpoint_url"] = env["TASKSYNC_ENDPOINT_URL"]
        if env.get("TASKSYNC_LOCAL_PATH"):
            values["local_path"] = env["TASKSYNC_LOCAL_PATH"]
        if env.get("TASKSYNC_KEY_PREFIX"):
            values["key_prefix"] = env["TASKSYNC_KEY_PREFIX"]
        if env.get("TASKSYNC_MERGE_TIMESTAMP"):
            values["merge_timestamp"] = env["TASKSYNC_MERGE_TIMESTAMP"]

        numeric = {
            "TASKSYNC_TTL_DAYS": ("ttl_days", int),
            "TASKSYNC_SYNC_INTERVAL": ("sync_interval_seconds", float),
            "TASKSYNC_FORCE_SYNC_AFTER": ("force_sync_after_seconds", float),
            "TASKSYNC_USERS_FRESHNESS": ("users_freshness_seconds", float),
            "TASKSYNC_REQUEST_TIMEOUT": ("request_timeout_seconds", float),
        }
        for var, (name, cast) in numeric.items():
            raw = env.get(var)
            if raw:
                try:
                    values[name] = cast(raw)
                except ValueError as e:
                    raise ValidationError(var, "not a number", raw) from e

        return cls(**values)

    @classmethod
    def from_file(cls, path: Path | str) -> SyncConfig:
        """Create configuration from the ``sync`` section of a YAML file.

        Unknown keys are rejected so typos do not silently fall back to defaults.
        """
        path = Path(path).expanduser()
        try:
            with open(path, encoding="utf-8") as f:
                content = yaml.safe_load(f) or {}
        except OSError as e:
            raise ValidationError("config_path", f"cannot read settings: {e}", str(path)) from e
        except yaml.YAMLError as e:
            raise ValidationError("config_path", f"invalid YAML: {e}", str(path)) from e

        section = content.get("sync", {}) if isinstance(content, dict) else {}
        if not isinstance(section, dict):
            raise ValidationError("sync", "expected a mapping")

        known = {f.name for f in fields(cls)}
        unknown = set(section) - known
        if unknown:
            raise ValidationError("sync", "unknown settings", ", ".join(sorted(unknown)))

        return cls(**section)
