import time

from mirror.local_store import LocalStore, MemoryStorageBackend
from mirror.sync import BackgroundSync, StorageManager
from mirror.write_queue import WriteQueue, make_queue_key
from tests.fakes import FakeSupabase


def _manager(fake, **kwargs):
    return StorageManager(fake, **kwargs), LocalStore(MemoryStorageBackend())


def test_anonymous_writes_stay_local() -> None:
    fake = FakeSupabase()
    manager, store = _manager(fake)

    assert manager.write(store, "streak", 2) is None
    assert store.read("streak") == 2
    assert len(manager.queue) == 0


def test_successful_pass_upserts_and_audits() -> None:
    fake = FakeSupabase()
    manager, store = _manager(fake)
    manager.write(store, "streak", 2, user_id="u1")
    manager.write(store, "streak", 3, user_id="u1")

    result = manager.process_queue()

    assert result.synced == 1
    assert len(manager.queue) == 0
    rows = fake.rows("user_storage")
    assert [(row["user_id"], row["storage_key"], row["value"]) for row in rows] == [("u1", "streak", 3)]
    audit = fake.rows("migration_audit_log")
    assert [row["status"] for row in audit] == ["success"]


def test_failed_item_is_retried_then_dropped_without_blocking_batch() -> None:
    class FlakyFake(FakeSupabase):
        def _execute(self, query):
            if query.table == "user_storage" and query.payload.get("storage_key") == "artifacts":
                raise RuntimeError("network down")
            return super()._execute(query)

    fake = FlakyFake()
    manager, store = _manager(fake, max_retries=3)
    manager.write(store, "artifacts", ["x"], user_id="u1")
    manager.write(store, "streak", 1, user_id="u1")

    first = manager.process_queue()
    assert (first.synced, first.retried, first.dropped) == (1, 1, 0)
    assert manager.queue.get(make_queue_key("u1", "artifacts")).retry_count == 1

    manager.process_queue()
    third = manager.process_queue()

    assert third.dropped == 1
    assert len(manager.queue) == 0
    statuses = [row["status"] for row in fake.rows("migration_audit_log")]
    assert statuses == ["success", "failed"]
    assert store.read("artifacts") == ["x"]


def test_pass_only_takes_one_batch() -> None:
    fake = FakeSupabase()
    manager, store = _manager(fake, batch_size=10)
    for index in range(25):
        manager.write(store, f"key_{index}", index, user_id="u1")

    result = manager.process_queue()

    assert result.attempted == 10
    assert len(manager.queue) == 15
    assert [row["storage_key"] for row in fake.rows("user_storage")] == [f"key_{i}" for i in range(10)]


def test_pass_is_skipped_while_another_is_in_flight() -> None:
    fake = FakeSupabase()
    manager, store = _manager(fake)
    manager.write(store, "streak", 1, user_id="u1")

    manager._sync_lock.acquire()
    try:
        assert manager.sync_in_progress
        assert manager.process_queue() is None
    finally:
        manager._sync_lock.release()

    assert manager.process_queue().synced == 1


def test_audit_failure_does_not_break_sync() -> None:
    fake = FakeSupabase()
    fake.fail("migration_audit_log", "insert")
    manager, store = _manager(fake)
    manager.write(store, "streak", 1, user_id="u1")

    result = manager.process_queue()

    assert result.synced == 1
    assert len(fake.rows("user_storage")) == 1


def test_missing_client_counts_as_failure() -> None:
    manager, store = _manager(None, max_retries=1)
    manager.write(store, "streak", 1, user_id="u1")

    result = manager.process_queue()

    assert result.dropped == 1
    assert store.read("streak") == 1


def test_replaced_item_keeps_position_and_resets_retries() -> None:
    queue = WriteQueue()
    first = queue.enqueue("a", 1, "u1")
    queue.enqueue("b", 2, "u1")
    first.retry_count = 2

    queue.enqueue("a", 3, "u1")

    items = queue.items()
    assert [(item.key, item.value, item.retry_count) for item in items] == [("a", 3, 0), ("b", 2, 0)]


def test_newer_write_survives_discard_of_older_item() -> None:
    queue = WriteQueue()
    queue.enqueue("streak", 1, "u1")
    [(queue_key, stale)] = queue.snapshot(10)

    queue.enqueue("streak", 2, "u1")

    assert queue.discard(queue_key, stale) is False
    assert queue.get(queue_key).value == 2


def test_background_loop_drains_queue() -> None:
    fake = FakeSupabase()
    manager, store = _manager(fake)
    manager.write(store, "streak", 7, user_id="u1")
    loop = BackgroundSync(manager, interval=0.05)

    loop.start()
    try:
        deadline = time.time() + 3
        while len(manager.queue) and time.time() < deadline:
            time.sleep(0.02)
    finally:
        loop.stop(timeout=1)

    assert len(manager.queue) == 0
    assert fake.rows("user_storage")[0]["value"] == 7
    assert not loop.running


def test_failed_item_replaced_mid_pass_is_not_dropped() -> None:
    class ReplacingFake(FakeSupabase):
        def __init__(self) -> None:
            super().__init__()
            self.on_upsert = None

        def _execute(self, query):
            if query.table == "user_storage" and query.op == "upsert":
                if self.on_upsert:
                    hook, self.on_upsert = self.on_upsert, None
                    hook()
                raise RuntimeError("network down")
            return super()._execute(query)

    fake = ReplacingFake()
    manager, store = _manager(fake, max_retries=1)
    manager.write(store, "streak", 1, user_id="u1")
    fake.on_upsert = lambda: manager.write(store, "streak", 2, user_id="u1")

    result = manager.process_queue()

    assert (result.attempted, result.dropped, result.retried) == (1, 0, 0)
    assert manager.queue.get(make_queue_key("u1", "streak")).value == 2
    assert fake.rows("migration_audit_log") == []
