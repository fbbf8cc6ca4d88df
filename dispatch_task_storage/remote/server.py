"""
Reference action endpoint.

A small aiohttp application backed by SQLite that answers the same
action vocabulary as the production serverless endpoint. Used for local
development and integration tests; production deployments point the
client at their own endpoint.

Semantics kept from the production endpoint:
- Users never expire
- Every task write resets ``synced_at``; rows whose ``synced_at`` is older
  than the TTL are deleted by a sweep (before each ``getTasks``, on the
  ``cleanup`` action, and by the daily ``CleanupScheduler``)
- ``deleteUser`` cascades to tasks assigned to or created by that user

Example with aiohttp:
    >>> store = await ReferenceStore.open(":memory:")
    >>> app = create_app(store)
    >>> web.run_app(app, port=8888)
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Callable
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

import aiosqlite
from aiohttp import web

from ..config import DAY_SECONDS
from ..credentials import ensure_hashed, verify_password
from ..exceptions import ValidationError
from ..protocol import Task, User, now_ms

logger = logging.getLogger(__name__)

DEFAULT_TTL_DAYS = 3
CLEANUP_INTERVAL_SECONDS = DAY_SECONDS

CORS_HEADERS = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Headers": "Content-Type",
    "Access-Control-Allow-Methods": "GET, POST, PUT, DELETE, OPTIONS",
}

_CREATE_TABLES_SQL = """
CREATE TABLE IF NOT EXISTS users (
    id TEXT PRIMARY KEY,
    username TEXT UNIQUE NOT NULL,
    password TEXT NOT NULL,
    is_first_login INTEGER DEFAULT 1,
    full_name TEXT NOT NULL,
    role TEXT NOT NULL,
    avatar_url TEXT
);

CREATE TABLE IF NOT EXISTS tasks (
    id TEXT PRIMARY KEY,
    title TEXT NOT NULL,
    description TEXT NOT NULL,
    dispatch_number TEXT,
    issuing_authority TEXT,
    issue_date TEXT,
    recurring TEXT DEFAULT 'NONE',
    assignee_id TEXT NOT NULL,
    creator_id TEXT NOT NULL,
    status TEXT NOT NULL,
    priority TEXT NOT NULL,
    due_date TEXT NOT NULL,
    created_at INTEGER NOT NULL,
    updated_at INTEGER,
    ai_suggested_steps TEXT,
    synced_at INTEGER NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_tasks_synced_at ON tasks(synced_at);
"""

# created_at and creator_id are immutable once inserted
_UPSERT_TASK_SQL = """
INSERT INTO tasks (
    id, title, description, dispatch_number, issuing_authority, issue_date,
    recurring, assignee_id, creator_id, status, priority, due_date,
    created_at, updated_at, ai_suggested_steps, synced_at
) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
ON CONFLICT(id) DO UPDATE SET
    title = excluded.title,
    description = excluded.description,
    dispatch_number = excluded.dispatch_number,
    issuing_authority = excluded.issuing_authority,
    issue_date = excluded.issue_date,
    recurring = excluded.recurring,
    assignee_id = excluded.assignee_id,
    status = excluded.status,
    priority = excluded.priority,
    due_date = excluded.due_date,
    updated_at = excluded.updated_at,
    ai_suggested_steps = excluded.ai_suggested_steps,
    synced_at = excluded.synced_at
"""


def _require(data: Any, *keys: str) -> dict[str, Any]:
    if not isinstance(data, dict):
        raise ValidationError("data", "expected an object")
    for key in keys:
        if data.get(key) in (None, ""):
            raise ValidationError(key, "missing required field")
    return data


class ReferenceStore:
    """SQLite-backed users/tasks store with TTL eviction for tasks."""

    def __init__(
        self,
        conn: aiosqlite.Connection,
        ttl_days: int = DEFAULT_TTL_DAYS,
        clock: Callable[[], int] = now_ms,
    ) -> None:
        self.conn = conn
        self.ttl_days = ttl_days
        self.clock = clock
        self._lock = asyncio.Lock()

    @classmethod
    async def open(
        cls,
        db_path: str | Path = ":memory:",
        ttl_days: int = DEFAULT_TTL_DAYS,
        clock: Callable[[], int] = now_ms,
    ) -> ReferenceStore:
        """Open (and initialize) a store."""
        conn = await aiosqlite.connect(str(db_path))
        conn.row_factory = aiosqlite.Row
        store = cls(conn, ttl_days=ttl_days, clock=clock)
        await store.init_db()
        return store

    async def close(self) -> None:
        await self.conn.close()

    @property
    def ttl_ms(self) -> int:
        return self.ttl_days * DAY_SECONDS * 1000

    async def init_db(self) -> None:
        """Create tables and indexes if they don't exist."""
        async with self._lock:
            await self.conn.executescript(_CREATE_TABLES_SQL)
            await self.conn.commit()

    # =========================================================================
    # TTL
    # =========================================================================

    async def cleanup_expired(self) -> int:
        """Delete tasks whose ``synced_at`` is older than the TTL.

        Returns:
            Number of tasks deleted
        """
        cutoff = self.clock() - self.ttl_ms
        async with self._lock:
            cursor = await self.conn.execute("DELETE FROM tasks WHERE synced_at < ?", (cutoff,))
            deleted = max(cursor.rowcount, 0)
            await self.conn.commit()

        if deleted:
            logger.info(f"Cleaned up {deleted} tasks older than {self.ttl_days} days")
        return deleted

    async def sync_stats(self) -> dict[str, Any]:
        """Counts for the ``getSyncStats`` action."""
        now = self.clock()
        async with self._lock:
            cursor = await self.conn.execute("SELECT COUNT(*) AS count FROM tasks")
            total = (await cursor.fetchone())["count"]
            cursor = await self.conn.execute(
                "SELECT COUNT(*) AS count FROM tasks WHERE synced_at < ?",
                (now - self.ttl_ms,),
            )
            old = (await cursor.fetchone())["count"]

        next_cleanup = datetime.fromtimestamp(now / 1000 + CLEANUP_INTERVAL_SECONDS, UTC)
        return {
            "totalTasks": total,
            "oldTasks": old,
            "ttlDays": self.ttl_days,
            "nextCleanup": next_cleanup.isoformat(),
        }

    # =========================================================================
    # Users
    # =========================================================================

    async def get_users(self) -> list[dict[str, Any]]:
        async with self._lock:
            cursor = await self.conn.execute("SELECT * FROM users ORDER BY id")
            rows = await cursor.fetchall()
        return [self._user_row(row) for row in rows]

    async def add_user(self, data: dict[str, Any]) -> None:
        user = User.from_dict(_require(data, "id", "username", "password"))
        async with self._lock:
            await self.conn.execute(
                """
                INSERT INTO users (id, username, password, is_first_login, full_name, role, avatar_url)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT (id) DO NOTHING
                """,
                (
                    user.id,
                    user.username,
                    ensure_hashed(user.password),
                    int(user.is_first_login),
                    user.full_name,
                    user.role.value,
                    user.avatar_url,
                ),
            )
            await self.conn.commit()

    async def update_user(self, data: dict[str, Any]) -> None:
        _require(data, "id")
        async with self._lock:
            cursor = await self.conn.execute("SELECT * FROM users WHERE id = ?", (data["id"],))
            row = await cursor.fetchone()
            if row is None:
                return
            merged = {**self._user_row(row), **data}
            user = User.from_dict(merged)
            await self.conn.execute(
                """
                UPDATE users
                SET password = ?, is_first_login = ?, full_name = ?, role = ?, avatar_url = ?
                WHERE id = ?
                """,
                (
                    ensure_hashed(user.password),
                    int(user.is_first_login),
                    user.full_name,
                    user.role.value,
                    user.avatar_url,
                    user.id,
                ),
            )
            await self.conn.commit()

    async def delete_user(self, user_id: str) -> None:
        async with self._lock:
            await self.conn.execute(
                "DELETE FROM tasks WHERE assignee_id = ? OR creator_id = ?", (user_id, user_id)
            )
            await self.conn.execute("DELETE FROM users WHERE id = ?", (user_id,))
            await self.conn.commit()

    async def login(self, username: str, password: str) -> dict[str, Any] | None:
        async with self._lock:
            cursor = await self.conn.execute("SELECT * FROM users WHERE username = ?", (username,))
            row = await cursor.fetchone()
        if row is None or not verify_password(password, row["password"]):
            return None
        return self._user_row(row)

    @staticmethod
    def _user_row(row: aiosqlite.Row) -> dict[str, Any]:
        data = dict(row)
        data["is_first_login"] = bool(data.get("is_first_login"))
        return data

    # =========================================================================
    # Tasks
    # =========================================================================

    async def get_tasks(self) -> list[dict[str, Any]]:
        await self.cleanup_expired()
        async with self._lock:
            cursor = await self.conn.execute("SELECT * FROM tasks ORDER BY created_at DESC")
            rows = await cursor.fetchall()
        return [self._task_row(row) for row in rows]

    async def save_tasks(self, items: list[dict[str, Any]]) -> int:
        synced_at = self.clock()
        params = []
        for item in items:
            task = Task.from_dict(_require(item, "id", "title", "createdAt"))
            params.append(
                (
                    task.id,
                    task.title,
                    task.description,
                    task.dispatch_number,
                    task.issuing_authority,
                    task.issue_date,
                    task.recurring.value,
                    task.assignee_id,
                    task.creator_id,
                    task.status.value,
                    task.priority.value,
                    task.due_date,
                    task.created_at,
                    task.updated_at,
                    json.dumps(task.ai_suggested_steps) if task.ai_suggested_steps else None,
                    synced_at,
                )
            )

        async with self._lock:
            await self.conn.executemany(_UPSERT_TASK_SQL, params)
            await self.conn.commit()
        return len(params)

    async def delete_task(self, task_id: str) -> None:
        async with self._lock:
            await self.conn.execute("DELETE FROM tasks WHERE id = ?", (task_id,))
            await self.conn.commit()

    async def get_task_row(self, task_id: str) -> dict[str, Any] | None:
        """Raw row including ``synced_at`` (not exposed through the actions)."""
        async with self._lock:
            cursor = await self.conn.execute("SELECT * FROM tasks WHERE id = ?", (task_id,))
            row = await cursor.fetchone()
        return dict(row) if row is not None else None

    @staticmethod
    def _task_row(row: aiosqlite.Row) -> dict[str, Any]:
        data = dict(row)
        steps = data.get("ai_suggested_steps")
        data["ai_suggested_steps"] = json.loads(steps) if steps else None
        data.pop("synced_at", None)
        return data


# =============================================================================
# HTTP Handler
# =============================================================================


async def _dispatch(store: ReferenceStore, action: str, data: Any) -> Any:
    if action == "init":
        await store.init_db()
        return {"success": True, "message": "Database initialized"}
    if action == "cleanup":
        deleted = await store.cleanup_expired()
        return {"success": True, "deletedCount": deleted, "message": f"Cleaned up {deleted} tasks"}
    if action == "getUsers":
        return await store.get_users()
    if action == "addUser":
        await store.add_user(data)
        return {"success": True}
    if action == "updateUser":
        await store.update_user(data)
        return {"success": True}
    if action == "deleteUser":
        await store.delete_user(_require(data, "id")["id"])
        return {"success": True}
    if action == "login":
        payload = _require(data, "username")
        return await store.login(payload["username"], payload.get("password") or "")
    if action == "getTasks":
        return await store.get_tasks()
    if action == "saveTask":
        await store.save_tasks([data])
        return {"success": True, "task": data}
    if action == "batchSaveTasks":
        items = (data or {}).get("tasks") or []
        saved = await store.save_tasks(items)
        return {"success": True, "saved": saved}
    if action == "deleteTask":
        await store.delete_task(_require(data, "id")["id"])
        return {"success": True}
    if action == "getSyncStats":
        return await store.sync_stats()
    raise KeyError(action)


def create_app(store: ReferenceStore) -> web.Application:
    """Create the aiohttp application serving the action endpoint at ``/``."""

    async def handle(request: web.Request) -> web.Response:
        if request.method == "OPTIONS":
            return web.Response(status=200, headers=CORS_HEADERS)

        try:
            body = await request.json() if request.can_read_body else {}
        except json.JSONDecodeError:
            return web.json_response({"error": "Invalid JSON"}, status=400, headers=CORS_HEADERS)

        if not isinstance(body, dict):
            return web.json_response({"error": "Invalid request"}, status=400, headers=CORS_HEADERS)

        action = body.get("action")
        try:
            result = await _dispatch(store, action, body.get("data"))
        except KeyError:
            return web.json_response({"error": "Unknown action"}, status=400, headers=CORS_HEADERS)
        except ValidationError as e:
            return web.json_response(
                {"error": "Invalid data", "message": e.message}, status=400, headers=CORS_HEADERS
            )
        except Exception as e:
            logger.exception(f"Database error during {action}")
            return web.json_response(
                {"error": "Database error", "message": str(e)}, status=500, headers=CORS_HEADERS
            )

        return web.json_response(result, headers=CORS_HEADERS)

    app = web.Application()
    app["store"] = store
    app.router.add_route("POST", "/", handle)
    app.router.add_route("OPTIONS", "/", handle)
    return app


class CleanupScheduler:
    """Periodic TTL sweep, independent of client requests.

    Runs ``cleanup_expired`` every ``interval`` seconds (daily by default)
    until stopped.
    """

    def __init__(self, store: ReferenceStore, interval: float = CLEANUP_INTERVAL_SECONDS) -> None:
        self.store = store
        self.interval = interval
        self._task: asyncio.Task[None] | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self._loop())

    async def stop(self) -> None:
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

    async def _loop(self) -> None:
        while True:
            await asyncio.sleep(self.interval)
            try:
                deleted = await self.store.cleanup_expired()
                logger.info(f"Scheduled cleanup completed: {deleted} tasks deleted")
            except Exception as e:
                logger.error(f"Scheduled cleanup error: {e}")
