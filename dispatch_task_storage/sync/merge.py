"""
Merge rules for local and remote snapshots.

Tasks use additive last-writer-wins keyed by id:
- An id only present locally is kept and queued for push (the server
  forgets tasks after its TTL, so the local copy is the durable one)
- An id only present remotely is added (another device created it)
- An id present on both sides takes the remote copy only when its
  timestamp is strictly greater; ties keep the local copy

Merging never removes a local task. Deletion only happens through an
explicit delete operation.

Users are not subject to a TTL, so the remote snapshot is authoritative
and only pending local edits are overlaid on top of it.
"""

from collections.abc import Iterable
from dataclasses import dataclass, field

from ..protocol import MergeTimestamp, Task, User


@dataclass
class MergeResult:
    """Outcome of merging local and remote task sets.

    Attributes:
        tasks: Merged set (local order first, remote additions appended)
        to_push: Local-only tasks the remote no longer (or never) had
        added: Ids taken from the remote that were missing locally
        updated: Ids where the remote copy replaced the local one
    """

    tasks: list[Task]
    to_push: list[Task] = field(default_factory=list)
    added: list[str] = field(default_factory=list)
    updated: list[str] = field(default_factory=list)

    @property
    def changed(self) -> bool:
        """Whether the merged set differs from the local input."""
        return bool(self.added or self.updated)


def task_version(task: Task, timestamp: MergeTimestamp = MergeTimestamp.CREATED_AT) -> int:
    """Comparator value of a task under the given merge timestamp."""
    if timestamp == MergeTimestamp.UPDATED_AT and task.updated_at is not None:
        return task.updated_at
    return task.created_at


def merge_tasks(
    local: list[Task],
    remote: list[Task],
    timestamp: MergeTimestamp = MergeTimestamp.CREATED_AT,
    excluded_ids: Iterable[str] = (),
) -> MergeResult:
    """Merge a remote task snapshot into the local one.

    Args:
        local: Tasks currently held locally
        remote: Tasks returned by the endpoint
        timestamp: Field compared when both sides hold the same id
        excluded_ids: Remote ids that must not be re-added (pending local deletes)

    Returns:
        MergeResult with the merged set and the ids that changed
    """
    excluded = set(excluded_ids)
    remote_by_id = {task.id: task for task in remote}

    merged: list[Task] = []
    result = MergeResult(tasks=merged)
    seen: set[str] = set()

    for task in local:
        if task.id in seen:
            continue
        seen.add(task.id)

        remote_task = remote_by_id.get(task.id)
        if remote_task is None:
            merged.append(task)
            result.to_push.append(task)
        elif task_version(remote_task, timestamp) > task_version(task, timestamp):
            merged.append(remote_task)
            result.updated.append(task.id)
        else:
            merged.append(task)

    for task in remote:
        if task.id in seen or task.id in excluded:
            continue
        seen.add(task.id)
        merged.append(task)
        result.added.append(task.id)

    return result


def merge_users(
    remote: list[User],
    pending_upserts: Iterable[User] = (),
    pending_deletes: Iterable[str] = (),
) -> list[User]:
    """Overlay pending local user changes on the remote snapshot.

    Args:
        remote: Users returned by the endpoint
        pending_upserts: Local users whose changes have not been pushed yet
        pending_deletes: Ids deleted locally but not yet on the remote

    Returns:
        The user list to cache locally
    """
    deleted = set(pending_deletes)
    by_id = {user.id: user for user in remote if user.id not in deleted}
    for user in pending_upserts:
        if user.id not in deleted:
            by_id[user.id] = user
    return list(by_id.values())
