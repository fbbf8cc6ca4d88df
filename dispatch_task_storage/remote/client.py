"""
Remote action endpoint client.

Speaks the endpoint's request/response contract: every call is a JSON
POST of ``{"action": <name>, "data": <object>}``. Writes answer
``{"success": true, ...}``, reads answer an array or object, failures
answer 4xx/5xx with ``{"error", "message"}``.

The client holds no state beyond its HTTP session. Transport failures
and 5xx responses are retried with exponential backoff, then raised so
the sync engine can fall back to cached data.
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any

import aiohttp

from ..exceptions import RemoteStoreError, StorageConnectionError
from ..protocol import RemoteSyncStats, Task, User

logger = logging.getLogger(__name__)

# Default retry configuration
DEFAULT_TIMEOUT = 10.0  # seconds
DEFAULT_MAX_RETRIES = 2
DEFAULT_RETRY_DELAY = 0.5  # seconds


class RemoteStoreClient:
    """Client for the users/tasks action endpoint.

    Example:
        >>> async with RemoteStoreClient("https://example.org/.netlify/functions/db") as remote:
        ...     users = await remote.get_users()
        ...     await remote.save_task(task)
    """

    def __init__(
        self,
        endpoint_url: str,
        timeout: float = DEFAULT_TIMEOUT,
        max_retries: int = DEFAULT_MAX_RETRIES,
        retry_delay: float = DEFAULT_RETRY_DELAY,
        session: aiohttp.ClientSession | None = None,
    ) -> None:
        """Initialize the client.

        Args:
            endpoint_url: URL of the action endpoint
            timeout: Total timeout per request, in seconds
            max_retries: Extra attempts for retryable failures
            retry_delay: Base delay between retries (doubles each attempt)
            session: Optional shared aiohttp session (not closed by the client)
        """
        self.endpoint_url = endpoint_url
        self.timeout = aiohttp.ClientTimeout(total=timeout)
        self.max_retries = max_retries
        self.retry_delay = retry_delay
        self._session = session
        self._owns_session = session is None

    async def __aenter__(self) -> RemoteStoreClient:
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.close()

    async def close(self) -> None:
        """Close the HTTP session if the client created it."""
        if self._session is not None and self._owns_session:
            await self._session.close()
        self._session = None

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=self.timeout)
            self._owns_session = True
        return self._session

    # =========================================================================
    # Transport
    # =========================================================================

    async def call(self, action: str, data: dict[str, Any] | None = None) -> Any:
        """Invoke an endpoint action with retry for transient failures.

        Args:
            action: Action name from the endpoint vocabulary
            data: Optional action payload

        Returns:
            Decoded JSON response body

        Raises:
            StorageConnectionError: Transport failure or timeout after retries
            RemoteStoreError: Error status from the endpoint
        """
        last_error: Exception | None = None

        for attempt in range(self.max_retries + 1):
            try:
                return await self._post(action, data)
            except RemoteStoreError as e:
                # Don't retry client errors (4xx)
                if not e.retryable:
                    raise
                last_error = e
            except StorageConnectionError as e:
                last_error = e

            if attempt < self.max_retries:
                delay = self.retry_delay * (2**attempt)
                logger.debug(f"Retrying {action} in {delay}s after: {last_error}")
                await asyncio.sleep(delay)

        assert last_error is not None
        raise last_error

    async def _post(self, action: str, data: dict[str, Any] | None) -> Any:
        body: dict[str, Any] = {"action": action}
        if data is not None:
            body["data"] = data

        session = self._get_session()
        try:
            async with session.post(self.endpoint_url, json=body, timeout=self.timeout) as response:
                text = await response.text()
                payload = self._decode(text)

                if response.status >= 400:
                    message = None
                    if isinstance(payload, dict):
                        message = payload.get("message") or payload.get("error")
                    raise RemoteStoreError(action, response.status, message or response.reason)

                return payload
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise StorageConnectionError(self.endpoint_url, e) from e

    @staticmethod
    def _decode(text: str) -> Any:
        if not text.strip():
            return None
        try:
            return json.loads(text)
        except json.JSONDecodeError:
            return {"message": text[:200]}

    # =========================================================================
    # Lifecycle Actions
    # =========================================================================

    async def initialize(self) -> None:
        """Ask the endpoint to create its tables if needed."""
        await self.call("init")

    async def cleanup(self) -> int:
        """Ask the endpoint to evict expired tasks now.

        Returns:
            Number of rows the endpoint deleted
        """
        result = await self.call("cleanup")
        return int((result or {}).get("deletedCount", 0))

    async def get_sync_stats(self) -> RemoteSyncStats:
        """Get the endpoint's task counts and TTL settings."""
        result = await self.call("getSyncStats")
        return RemoteSyncStats.from_dict(result or {})

    # =========================================================================
    # Users
    # =========================================================================

    async def get_users(self) -> list[User]:
        """Get all users (the remote copy is authoritative)."""
        rows = await self.call("getUsers")
        return [User.from_dict(row) for row in rows or []]

    async def add_user(self, user: User) -> None:
        """Insert a user; an existing id is left unchanged."""
        await self.call("addUser", user.to_dict())

    async def update_user(self, user: User) -> None:
        """Update a user's mutable fields."""
        await self.call("updateUser", user.to_dict())

    async def delete_user(self, user_id: str) -> None:
        """Delete a user and every task assigned to or created by them."""
        await self.call("deleteUser", {"id": user_id})

    async def login(self, username: str, password: str) -> User | None:
        """Check credentials.

        Returns:
            The matching user, or None. A mismatch is not an error.
        """
        row = await self.call("login", {"username": username, "password": password})
        if not row:
            return None
        return User.from_dict(row)

    # =========================================================================
    # Tasks
    # =========================================================================

    async def get_tasks(self) -> list[Task]:
        """Get tasks still within the server TTL."""
        rows = await self.call("getTasks")
        return [Task.from_dict(row) for row in rows or []]

    async def save_task(self, task: Task) -> None:
        """Upsert a task by id; resets its server-side TTL."""
        await self.call("saveTask", task.to_dict())

    async def batch_save_tasks(self, tasks: list[Task]) -> int:
        """Upsert several tasks in one request.

        Returns:
            Number of tasks the endpoint saved
        """
        if not tasks:
            return 0
        result = await self.call("batchSaveTasks", {"tasks": [t.to_dict() for t in tasks]})
        return int((result or {}).get("saved", len(tasks)))

    async def delete_task(self, task_id: str) -> None:
        """Delete a task."""
        await self.call("deleteTask", {"id": task_id})
