"""
Core data types for task storage.

Defines the User and Task records exchanged between the local store,
the remote endpoint and the application, plus the telemetry types the
sync engine reports.

Wire format is camelCase JSON (``fullName``, ``assigneeId``, ``createdAt``).
``from_dict`` also accepts the snake_case row form the relational endpoint
returns (``full_name``, ``assignee_id``, ``created_at``).
"""

import time
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any
from urllib.parse import quote_plus

from .exceptions import ValidationError

# =============================================================================
# Enumerations
# =============================================================================


class UserRole(Enum):
    """Role of a user inside the organization."""

    MANAGER = "MANAGER"
    OFFICER = "OFFICER"


class TaskStatus(Enum):
    """Workflow status of a task."""

    PENDING = "PENDING"
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"


class TaskPriority(Enum):
    """Priority of a task."""

    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    URGENT = "URGENT"


class RecurringType(Enum):
    """Recurrence of a task."""

    NONE = "NONE"
    WEEKLY = "WEEKLY"
    MONTHLY = "MONTHLY"
    QUARTERLY = "QUARTERLY"


class CacheState(Enum):
    """Freshness state of a locally cached collection."""

    COLD = "cold"  # No local copy yet
    FRESH = "fresh"  # Within the freshness window
    STALE = "stale"  # Served as-is while a refresh runs
    SYNCING = "syncing"  # A sync cycle is in flight


class MergeTimestamp(Enum):
    """Field compared when the same task id exists locally and remotely."""

    CREATED_AT = "created_at"
    UPDATED_AT = "updated_at"  # Falls back to created_at when unset


# =============================================================================
# Helpers
# =============================================================================


def now_ms() -> int:
    """Current time as epoch milliseconds."""
    return int(time.time() * 1000)


def avatar_url_for(full_name: str, role: UserRole) -> str:
    """Build the avatar URL shown next to a user's name."""
    background = "ef4444" if role == UserRole.MANAGER else "059669"
    return (
        f"https://ui-avatars.com/api/?name={quote_plus(full_name)}"
        f"&background={background}&color=fff&size=128"
    )


def _first(data: dict[str, Any], *keys: str, default: Any = None) -> Any:
    for key in keys:
        if key in data and data[key] is not None:
            return data[key]
    return default


def _parse_enum(enum_cls: type[Enum], value: Any, field_name: str) -> Any:
    if isinstance(value, enum_cls):
        return value
    try:
        return enum_cls(value)
    except ValueError as e:
        raise ValidationError(field_name, "unknown value", str(value)) from e


def _parse_ms(value: Any, field_name: str) -> int:
    # BIGINT columns come back as strings from some drivers
    try:
        return int(value)
    except (TypeError, ValueError) as e:
        raise ValidationError(field_name, "expected epoch milliseconds", str(value)) from e


# =============================================================================
# Core Data Types
# =============================================================================


@dataclass
class User:
    """A member of the organization.

    ``password`` holds either a hash from ``credentials.hash_password`` or,
    for records created before hashing, the legacy plain value.
    """

    id: str
    username: str
    full_name: str
    role: UserRole
    password: str | None = None
    is_first_login: bool = True
    avatar_url: str | None = None

    def to_dict(self) -> dict[str, Any]:
        """Convert to the camelCase wire form."""
        data: dict[str, Any] = {
            "id": self.id,
            "username": self.username,
            "fullName": self.full_name,
            "role": self.role.value,
            "isFirstLogin": self.is_first_login,
        }
        if self.password is not None:
            data["password"] = self.password
        if self.avatar_url is not None:
            data["avatarUrl"] = self.avatar_url
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "User":
        """Create from a wire dict or a snake_case row."""
        try:
            return cls(
                id=str(data["id"]),
                username=data["username"],
                full_name=_first(data, "fullName", "full_name", default=""),
                role=_parse_enum(UserRole, data.get("role"), "role"),
                password=data.get("password"),
                is_first_login=bool(_first(data, "isFirstLogin", "is_first_login", default=True)),
                avatar_url=_first(data, "avatarUrl", "avatar_url"),
            )
        except KeyError as e:
            raise ValidationError(str(e.args[0]), "missing required field") from e


@dataclass
class Task:
    """An assignment, usually tracking an incoming official dispatch.

    ``id`` is the only merge key between copies. ``created_at`` is set once;
    ``updated_at`` is bumped on every mutation made through the service.
    """

    id: str
    title: str
    description: str
    assignee_id: str
    creator_id: str
    status: TaskStatus
    priority: TaskPriority
    due_date: str
    created_at: int
    dispatch_number: str | None = None
    issuing_authority: str | None = None
    issue_date: str | None = None
    recurring: RecurringType = RecurringType.NONE
    ai_suggested_steps: list[str] | None = None
    updated_at: int | None = None

    def to_dict(self) -> dict[str, Any]:
        """Convert to the camelCase wire form."""
        data: dict[str, Any] = {
            "id": self.id,
            "title": self.title,
            "description": self.description,
            "assigneeId": self.assignee_id,
            "creatorId": self.creator_id,
            "status": self.status.value,
            "priority": self.priority.value,
            "dueDate": self.due_date,
            "createdAt": self.created_at,
            "recurring": self.recurring.value,
        }
        if self.dispatch_number is not None:
            data["dispatchNumber"] = self.dispatch_number
        if self.issuing_authority is not None:
            data["issuingAuthority"] = self.issuing_authority
        if self.issue_date is not None:
            data["issueDate"] = self.issue_date
        if self.ai_suggested_steps is not None:
            data["aiSuggestedSteps"] = list(self.ai_suggested_steps)
        if self.updated_at is not None:
            data["updatedAt"] = self.updated_at
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Task":
        """Create from a wire dict or a snake_case row."""
        try:
            due_date = _first(data, "dueDate", "due_date", default="")
            if isinstance(due_date, datetime):
                due_date = due_date.isoformat()
            updated_at = _first(data, "updatedAt", "updated_at")
            steps = _first(data, "aiSuggestedSteps", "ai_suggested_steps")
            return cls(
                id=str(data["id"]),
                title=data["title"],
                description=data.get("description") or "",
                assignee_id=str(_first(data, "assigneeId", "assignee_id", default="")),
                creator_id=str(_first(data, "creatorId", "creator_id", default="")),
                status=_parse_enum(TaskStatus, data.get("status"), "status"),
                priority=_parse_enum(TaskPriority, data.get("priority"), "priority"),
                due_date=str(due_date),
                created_at=_parse_ms(_first(data, "createdAt", "created_at"), "createdAt"),
                dispatch_number=_first(data, "dispatchNumber", "dispatch_number"),
                issuing_authority=_first(data, "issuingAuthority", "issuing_authority"),
                issue_date=_first(data, "issueDate", "issue_date"),
                recurring=_parse_enum(
                    RecurringType, _first(data, "recurring", default="NONE"), "recurring"
                ),
                ai_suggested_steps=list(steps) if steps is not None else None,
                updated_at=_parse_ms(updated_at, "updatedAt") if updated_at is not None else None,
            )
        except KeyError as e:
            raise ValidationError(str(e.args[0]), "missing required field") from e


# =============================================================================
# Telemetry Types
# =============================================================================


@dataclass
class SyncStats:
    """Local view of sync health, shown in the sync status badge."""

    device_id: str
    users_count: int
    tasks_count: int
    last_sync: int | None
    next_sync: int | None
    pending_changes: int
    failed_changes: int
    is_offline_too_long: bool
    is_syncing: bool
    ttl_days: int
    users_state: CacheState
    tasks_state: CacheState
    local_bytes: int = 0
    last_error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "device_id": self.device_id,
            "users_count": self.users_count,
            "tasks_count": self.tasks_count,
            "last_sync": self.last_sync,
            "next_sync": self.next_sync,
            "pending_changes": self.pending_changes,
            "failed_changes": self.failed_changes,
            "is_offline_too_long": self.is_offline_too_long,
            "is_syncing": self.is_syncing,
            "ttl_days": self.ttl_days,
            "users_state": self.users_state.value,
            "tasks_state": self.tasks_state.value,
            "local_bytes": self.local_bytes,
            "last_error": self.last_error,
        }


@dataclass
class RemoteSyncStats:
    """Statistics reported by the remote endpoint's ``getSyncStats`` action."""

    total_tasks: int
    old_tasks: int
    ttl_days: int
    next_cleanup: str | None = None
    extra: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "RemoteSyncStats":
        """Create from the endpoint response."""
        known = {"totalTasks", "oldTasks", "ttlDays", "nextCleanup"}
        return cls(
            total_tasks=int(data.get("totalTasks", 0)),
            old_tasks=int(data.get("oldTasks", 0)),
            ttl_days=int(data.get("ttlDays", 0)),
            next_cleanup=data.get("nextCleanup"),
            extra={k: v for k, v in data.items() if k not in known},
        )
