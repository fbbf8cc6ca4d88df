"""
Tests for the task and user merge rules.
"""

from conftest import START_MS, make_task, make_user

from dispatch_task_storage.protocol import MergeTimestamp, UserRole
from dispatch_task_storage.sync.merge import merge_tasks, merge_users, task_version


def ids(tasks):
    return [t.id for t in tasks]


class TestMergeTasks:
    def test_union_of_both_sides(self):
        local = [make_task("a"), make_task("b")]
        remote = [make_task("b"), make_task("c")]

        result = merge_tasks(local, remote)

        assert set(ids(result.tasks)) == {"a", "b", "c"}
        assert result.added == ["c"]

    def test_local_only_is_kept_and_queued_for_push(self):
        local = [make_task("a")]
        result = merge_tasks(local, [])

        assert ids(result.tasks) == ["a"]
        assert ids(result.to_push) == ["a"]

    def test_empty_remote_never_removes_local(self):
        # The server forgot everything after its TTL
        local = [make_task(f"t{i}") for i in range(5)]
        result = merge_tasks(local, [])
        assert ids(result.tasks) == ids(local)

    def test_remote_wins_when_strictly_newer(self):
        local = [make_task("a", created_at=START_MS, title="local")]
        remote = [make_task("a", created_at=START_MS + 1, title="remote")]

        result = merge_tasks(local, remote)

        assert result.tasks[0].title == "remote"
        assert result.updated == ["a"]

    def test_tie_keeps_local(self):
        local = [make_task("a", title="edited locally")]
        remote = [make_task("a", title="stale remote")]

        result = merge_tasks(local, remote)

        assert result.tasks[0].title == "edited locally"
        assert not result.changed

    def test_local_newer_keeps_local(self):
        local = [make_task("a", created_at=START_MS + 10, title="local")]
        remote = [make_task("a", created_at=START_MS, title="remote")]
        assert merge_tasks(local, remote).tasks[0].title == "local"

    def test_excluded_ids_are_not_re_added(self):
        remote = [make_task("deleted-here"), make_task("other")]
        result = merge_tasks([], remote, excluded_ids={"deleted-here"})
        assert ids(result.tasks) == ["other"]

    def test_local_order_preserved_and_additions_appended(self):
        local = [make_task("b"), make_task("a")]
        remote = [make_task("z"), make_task("a")]
        assert ids(merge_tasks(local, remote).tasks) == ["b", "a", "z"]

    def test_duplicate_local_ids_collapse(self):
        local = [make_task("a", title="first"), make_task("a", title="second")]
        result = merge_tasks(local, [])
        assert len(result.tasks) == 1
        assert result.tasks[0].title == "first"

    def test_merge_is_idempotent(self):
        local = [make_task("a"), make_task("b", created_at=START_MS + 5)]
        remote = [make_task("b"), make_task("c")]

        once = merge_tasks(local, remote).tasks
        twice = merge_tasks(once, remote).tasks

        assert [t.to_dict() for t in once] == [t.to_dict() for t in twice]

    def test_updated_at_comparator(self):
        local = [make_task("a", title="local", updated_at=START_MS + 100)]
        remote = [make_task("a", title="remote", updated_at=START_MS + 200)]

        by_created = merge_tasks(local, remote, MergeTimestamp.CREATED_AT)
        by_updated = merge_tasks(local, remote, MergeTimestamp.UPDATED_AT)

        assert by_created.tasks[0].title == "local"
        assert by_updated.tasks[0].title == "remote"

    def test_updated_at_falls_back_to_created_at(self):
        task = make_task("a", created_at=START_MS)
        assert task_version(task, MergeTimestamp.UPDATED_AT) == START_MS


class TestTwoDeviceScenario:
    def test_both_devices_end_with_both_tasks(self):
        # Device A created t1, device B created t2, remote holds both
        device_a = [make_task("t1", created_at=START_MS)]
        device_b = [make_task("t2", created_at=START_MS + 1)]
        remote = device_a + device_b

        merged_a = merge_tasks(device_a, remote).tasks
        merged_b = merge_tasks(device_b, remote).tasks

        assert set(ids(merged_a)) == {"t1", "t2"}
        assert set(ids(merged_b)) == {"t1", "t2"}


class TestMergeUsers:
    def test_remote_is_authoritative(self):
        remote = [make_user("u1", "a"), make_user("u2", "b")]
        assert [u.id for u in merge_users(remote)] == ["u1", "u2"]

    def test_pending_upsert_overrides_remote(self):
        remote = [make_user("u1", "a", full_name="Old Name")]
        pending = [make_user("u1", "a", full_name="New Name")]

        users = merge_users(remote, pending)

        assert users[0].full_name == "New Name"

    def test_pending_new_user_is_kept(self):
        remote = [make_user("u1", "a")]
        pending = [make_user("u9", "new", UserRole.OFFICER)]
        assert {u.id for u in merge_users(remote, pending)} == {"u1", "u9"}

    def test_pending_delete_hides_remote_user(self):
        remote = [make_user("u1", "a"), make_user("u2", "b")]
        assert [u.id for u in merge_users(remote, pending_deletes={"u2"})] == ["u1"]
