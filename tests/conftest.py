"""
Shared test configuration and fixtures.

Provides a controllable clock, an in-memory stand-in for the remote
endpoint, and the reference endpoint served over a real HTTP socket.
"""

import logging

import pytest
from aiohttp.test_utils import TestServer

from dispatch_task_storage.config import SyncConfig
from dispatch_task_storage.credentials import ensure_hashed, verify_password
from dispatch_task_storage.exceptions import RemoteStoreError, StorageConnectionError
from dispatch_task_storage.local.store import MemoryLocalStore
from dispatch_task_storage.protocol import (
    RemoteSyncStats,
    Task,
    TaskPriority,
    TaskStatus,
    User,
    UserRole,
    avatar_url_for,
)
from dispatch_task_storage.remote.client import RemoteStoreClient
from dispatch_task_storage.remote.server import ReferenceStore, create_app
from dispatch_task_storage.sync.engine import CacheSyncEngine

logger = logging.getLogger(__name__)

START_MS = 1_700_000_000_000
DAY_MS = 24 * 60 * 60 * 1000


class FakeClock:
    """Epoch-ms clock advanced by hand."""

    def __init__(self, start: int = START_MS):
        self.now = start

    def __call__(self) -> int:
        return self.now

    def advance(self, ms: int) -> None:
        self.now += ms


class FakeRemote:
    """In-memory endpoint with the RemoteStoreClient interface.

    Set ``offline`` to make every call fail like an unreachable server.
    ``calls`` records action names in order. Task ids in ``rejected`` fail
    validation on save, failing the whole request they are part of.
    """

    def __init__(self) -> None:
        self.users: dict[str, User] = {}
        self.tasks: dict[str, Task] = {}
        self.offline = False
        self.calls: list[str] = []
        self.rejected: set[str] = set()

    def _call(self, action: str) -> None:
        self.calls.append(action)
        if self.offline:
            raise StorageConnectionError("http://fake-endpoint", OSError("unreachable"))

    async def initialize(self) -> None:
        self._call("init")

    async def close(self) -> None:
        pass

    async def cleanup(self) -> int:
        self._call("cleanup")
        return 0

    async def get_sync_stats(self) -> RemoteSyncStats:
        self._call("getSyncStats")
        return RemoteSyncStats(total_tasks=len(self.tasks), old_tasks=0, ttl_days=3)

    async def get_users(self) -> list[User]:
        self._call("getUsers")
        return list(self.users.values())

    async def add_user(self, user: User) -> None:
        self._call("addUser")
        if user.id not in self.users:
            self.users[user.id] = User.from_dict(user.to_dict())

    async def update_user(self, user: User) -> None:
        self._call("updateUser")
        if user.id in self.users:
            self.users[user.id] = User.from_dict(user.to_dict())

    async def delete_user(self, user_id: str) -> None:
        self._call("deleteUser")
        self.users.pop(user_id, None)
        self.tasks = {
            k: t for k, t in self.tasks.items() if user_id not in (t.assignee_id, t.creator_id)
        }

    async def login(self, username: str, password: str) -> User | None:
        self._call("login")
        for user in self.users.values():
            if user.username == username and verify_password(password, user.password or ""):
                return User.from_dict(user.to_dict())
        return None

    async def get_tasks(self) -> list[Task]:
        self._call("getTasks")
        return sorted(self.tasks.values(), key=lambda t: t.created_at, reverse=True)

    def _validate(self, action: str, tasks: list[Task]) -> None:
        if any(t.id in self.rejected for t in tasks):
            raise RemoteStoreError(action, 400, "Invalid data")

    async def save_task(self, task: Task) -> None:
        self._call("saveTask")
        self._validate("saveTask", [task])
        self.tasks[task.id] = Task.from_dict(task.to_dict())

    async def batch_save_tasks(self, tasks: list[Task]) -> int:
        self._call("batchSaveTasks")
        self._validate("batchSaveTasks", tasks)
        for task in tasks:
            self.tasks[task.id] = Task.from_dict(task.to_dict())
        return len(tasks)

    async def delete_task(self, task_id: str) -> None:
        self._call("deleteTask")
        self.tasks.pop(task_id, None)


def make_task(task_id: str = "t1", created_at: int = START_MS, **overrides) -> Task:
    values = {
        "id": task_id,
        "title": f"Task {task_id}",
        "description": "Process incoming dispatch",
        "assignee_id": "u2",
        "creator_id": "u1",
        "status": TaskStatus.PENDING,
        "priority": TaskPriority.MEDIUM,
        "due_date": "2023-11-21T00:00:00+00:00",
        "created_at": created_at,
    }
    values.update(overrides)
    return Task(**values)


def make_user(
    user_id: str = "u1",
    username: str = "manager",
    role: UserRole = UserRole.MANAGER,
    password: str = "123123",
    full_name: str | None = None,
) -> User:
    full_name = full_name or username.title()
    return User(
        id=user_id,
        username=username,
        full_name=full_name,
        role=role,
        password=ensure_hashed(password),
        is_first_login=True,
        avatar_url=avatar_url_for(full_name, role),
    )


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def local_store() -> MemoryLocalStore:
    return MemoryLocalStore()


@pytest.fixture
def fake_remote() -> FakeRemote:
    remote = FakeRemote()
    manager = make_user("u1", "manager", UserRole.MANAGER)
    officer = make_user("u2", "officer", UserRole.OFFICER)
    remote.users = {manager.id: manager, officer.id: officer}
    return remote


@pytest.fixture
def sync_config() -> SyncConfig:
    return SyncConfig(endpoint_url="http://fake-endpoint", local_quota_bytes=None)


@pytest.fixture
async def engine(local_store, fake_remote, sync_config, clock):
    """Engine over a memory store and the fake remote, without the background loop."""
    engine = CacheSyncEngine(local_store, fake_remote, config=sync_config, clock=clock)
    await engine.start(auto_sync=False)
    yield engine
    await engine.stop()


@pytest.fixture
async def reference_store(clock):
    store = await ReferenceStore.open(":memory:", ttl_days=3, clock=clock)
    yield store
    await store.close()


@pytest.fixture
async def reference_server(reference_store):
    server = TestServer(create_app(reference_store))
    await server.start_server()
    yield server
    await server.close()


@pytest.fixture
async def remote_client(reference_server):
    client = RemoteStoreClient(str(reference_server.make_url("/")), max_retries=1, retry_delay=0)
    yield client
    await client.close()
