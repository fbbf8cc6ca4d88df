"""
Tests for the remote endpoint client.

Uses the reference endpoint over a real socket, plus small ad-hoc
aiohttp apps for failure modes.
"""

import asyncio

import pytest
from aiohttp import web
from aiohttp.test_utils import TestServer
from conftest import DAY_MS, START_MS, make_task, make_user

from dispatch_task_storage.credentials import is_hashed
from dispatch_task_storage.exceptions import RemoteStoreError, StorageConnectionError
from dispatch_task_storage.protocol import TaskStatus, UserRole
from dispatch_task_storage.remote.client import RemoteStoreClient


@pytest.fixture
async def failing_server():
    """Server answering 500 and counting requests."""
    hits = {"count": 0}

    async def handler(request: web.Request) -> web.Response:
        hits["count"] += 1
        return web.json_response({"error": "Database error", "message": "boom"}, status=500)

    app = web.Application()
    app.router.add_post("/", handler)
    server = TestServer(app)
    await server.start_server()
    yield server, hits
    await server.close()


class TestUsers:
    @pytest.mark.asyncio
    async def test_add_and_get_users(self, remote_client):
        await remote_client.initialize()
        await remote_client.add_user(make_user("u1", "alice"))

        users = await remote_client.get_users()

        assert [u.username for u in users] == ["alice"]
        assert users[0].role == UserRole.MANAGER
        assert is_hashed(users[0].password)

    @pytest.mark.asyncio
    async def test_add_existing_id_is_ignored(self, remote_client):
        await remote_client.add_user(make_user("u1", "alice", full_name="Alice"))
        await remote_client.add_user(make_user("u1", "alice", full_name="Changed"))

        users = await remote_client.get_users()
        assert users[0].full_name == "Alice"

    @pytest.mark.asyncio
    async def test_update_user(self, remote_client):
        user = make_user("u1", "alice")
        await remote_client.add_user(user)
        user.full_name = "Alice Nguyen"
        user.is_first_login = False
        await remote_client.update_user(user)

        stored = (await remote_client.get_users())[0]
        assert stored.full_name == "Alice Nguyen"
        assert stored.is_first_login is False

    @pytest.mark.asyncio
    async def test_login(self, remote_client):
        await remote_client.add_user(make_user("u1", "alice", password="secret"))

        user = await remote_client.login("alice", "secret")
        assert user is not None and user.id == "u1"
        assert await remote_client.login("alice", "wrong") is None
        assert await remote_client.login("nobody", "secret") is None

    @pytest.mark.asyncio
    async def test_delete_user_cascades_tasks(self, remote_client):
        await remote_client.add_user(make_user("u2", "officer", UserRole.OFFICER))
        await remote_client.batch_save_tasks(
            [
                make_task("assigned", assignee_id="u2"),
                make_task("created", assignee_id="u1", creator_id="u2"),
                make_task("unrelated", assignee_id="u1", creator_id="u1"),
            ]
        )

        await remote_client.delete_user("u2")

        assert await remote_client.get_users() == []
        assert [t.id for t in await remote_client.get_tasks()] == ["unrelated"]


class TestTasks:
    @pytest.mark.asyncio
    async def test_save_and_get_newest_first(self, remote_client):
        await remote_client.save_task(make_task("older", created_at=START_MS))
        await remote_client.save_task(make_task("newer", created_at=START_MS + 1))

        tasks = await remote_client.get_tasks()

        assert [t.id for t in tasks] == ["newer", "older"]

    @pytest.mark.asyncio
    async def test_save_is_an_upsert(self, remote_client):
        task = make_task("t1")
        await remote_client.save_task(task)
        task.status = TaskStatus.COMPLETED
        task.ai_suggested_steps = ["Read", "Reply"]
        await remote_client.save_task(task)

        tasks = await remote_client.get_tasks()
        assert len(tasks) == 1
        assert tasks[0].status == TaskStatus.COMPLETED
        assert tasks[0].ai_suggested_steps == ["Read", "Reply"]

    @pytest.mark.asyncio
    async def test_batch_save_reports_count(self, remote_client):
        saved = await remote_client.batch_save_tasks([make_task("a"), make_task("b")])
        assert saved == 2
        assert await remote_client.batch_save_tasks([]) == 0

    @pytest.mark.asyncio
    async def test_delete_task(self, remote_client):
        await remote_client.save_task(make_task("t1"))
        await remote_client.delete_task("t1")
        assert await remote_client.get_tasks() == []

    @pytest.mark.asyncio
    async def test_cleanup_and_stats(self, remote_client, clock):
        await remote_client.save_task(make_task("t1"))
        clock.advance(3 * DAY_MS + 1)

        stats = await remote_client.get_sync_stats()
        assert stats.total_tasks == 1
        assert stats.old_tasks == 1
        assert stats.ttl_days == 3
        assert stats.next_cleanup is not None

        assert await remote_client.cleanup() == 1
        assert (await remote_client.get_sync_stats()).total_tasks == 0


class TestFailures:
    @pytest.mark.asyncio
    async def test_unknown_action_is_not_retried(self, remote_client):
        with pytest.raises(RemoteStoreError) as exc_info:
            await remote_client.call("noSuchAction")

        assert exc_info.value.status == 400
        assert exc_info.value.retryable is False
        assert "Unknown action" in exc_info.value.message

    @pytest.mark.asyncio
    async def test_server_error_is_retried(self, failing_server):
        server, hits = failing_server
        client = RemoteStoreClient(str(server.make_url("/")), max_retries=2, retry_delay=0)

        with pytest.raises(RemoteStoreError) as exc_info:
            await client.get_tasks()

        assert hits["count"] == 3
        assert exc_info.value.retryable is True
        assert exc_info.value.details["message"] == "boom"
        await client.close()

    @pytest.mark.asyncio
    async def test_unreachable_endpoint(self):
        client = RemoteStoreClient("http://127.0.0.1:1/", max_retries=0)
        with pytest.raises(StorageConnectionError):
            await client.get_users()
        await client.close()

    @pytest.mark.asyncio
    async def test_timeout(self):
        async def slow(request: web.Request) -> web.Response:
            await asyncio.sleep(2)
            return web.json_response([])

        app = web.Application()
        app.router.add_post("/", slow)
        server = TestServer(app)
        await server.start_server()
        client = RemoteStoreClient(str(server.make_url("/")), timeout=0.1, max_retries=0)

        with pytest.raises(StorageConnectionError):
            await client.get_tasks()

        await client.close()
        await server.close()

    @pytest.mark.asyncio
    async def test_shared_session_is_not_closed(self, reference_server):
        import aiohttp

        async with aiohttp.ClientSession() as session:
            client = RemoteStoreClient(str(reference_server.make_url("/")), session=session)
            await client.get_users()
            await client.close()
            assert not session.closed
