import os
import sys
import tempfile
import threading
import unittest
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timedelta, timezone

ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
SRC = os.path.join(ROOT, "src")
for path in (ROOT, SRC):
    if path not in sys.path:
        sys.path.insert(0, path)

from app.stores import MemoryEngine
from app.stores_sqlite import SqliteEngine
from resource_store import INDEX_BUCKET, PAYLOAD_BUCKET, ResourceStore
from xhub.key_codec import InvalidPathSegment, decode
from xhub.ordered import DataInconsistency, StorageFailure

BASE_URL = "http://localhost:8081"


class StepClock:
    def __init__(self) -> None:
        self.now = datetime(2026, 1, 1, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        self.now = self.now + timedelta(seconds=1)
        return self.now


class FailingBucket:
    """Wraps a bucket and fails the Nth delete."""

    def __init__(self, inner, fail_on_delete: int) -> None:
        self._inner = inner
        self._fail_on = fail_on_delete
        self.deletes = 0

    def put(self, key, value):
        self._inner.put(key, value)

    def get(self, key):
        return self._inner.get(key)

    def scan_prefix(self, prefix):
        return self._inner.scan_prefix(prefix)

    def delete(self, key):
        self.deletes += 1
        if self.deletes == self._fail_on:
            raise StorageFailure("disk gone", key.decode("utf-8"))
        self._inner.delete(key)


class FailingEngine:
    def __init__(self, fail_on_delete: int) -> None:
        self._inner = MemoryEngine()
        self.payloads = FailingBucket(self._inner.bucket(PAYLOAD_BUCKET), fail_on_delete)

    def bucket(self, name):
        if name == PAYLOAD_BUCKET:
            return self.payloads
        return self._inner.bucket(name)

    def close(self):
        self._inner.close()


class TestResourceStore(unittest.TestCase):
    def setUp(self) -> None:
        self.engine = MemoryEngine()
        self.clock = StepClock()
        self.store = ResourceStore(self.engine, BASE_URL + "/", clock=self.clock)
        self.payloads = self.engine.bucket(PAYLOAD_BUCKET)

    def _populate(self) -> None:
        self.store.studies.create("s1", payload=b'{"Name":"s1"}')
        self.store.studies.create("s2", payload=b'{"Name":"s2"}')
        self.store.trials.create("s1", "t1", payload=b"{}")
        self.store.trials.create("s1", "t2", payload=b"{}")
        self.store.trials.create("s2", "t1", payload=b"{}")
        self.store.study_files.create("s1", "f1", payload=b"{}")
        self.store.trial_files.create("s1", "t1", "f1", payload=b"{}")
        self.store.trial_files.create("s1", "t1", "f2", payload=b"{}")
        self.store.trial_files.create("s1", "t2", "f1", payload=b"{}")
        self.store.trial_files.create("s2", "t1", "f1", payload=b"{}")

    def test_create_get_round_trip(self) -> None:
        path = self.store.studies.create("test_study", payload=b'{"Name":"test_study"}')
        self.assertEqual(str(path), "/studies/test_study")
        self.assertEqual(self.store.studies.get("test_study"), b'{"Name":"test_study"}')
        self.assertEqual(self.store.url_for(path), "http://localhost:8081/studies/test_study")

    def test_get_absent(self) -> None:
        self.assertIsNone(self.store.studies.get("missing"))
        self.assertIsNone(self.store.trial_files.get("s", "t", "f"))

    def test_bad_segment_rejected(self) -> None:
        with self.assertRaises(InvalidPathSegment):
            self.store.trials.create("s1", "a/b", payload=b"{}")
        with self.assertRaises(InvalidPathSegment):
            self.store.studies.get("")

    def test_wrong_name_count(self) -> None:
        with self.assertRaises(TypeError):
            self.store.trials.get("s1")
        with self.assertRaises(TypeError):
            self.store.trials.list()

    def test_study_list_is_key_ordered_with_created(self) -> None:
        for name in ["b", "a", "c"]:
            self.store.studies.create(name, payload=b'{"n":"%s"}' % name.encode())
        items = self.store.studies.list()
        self.assertEqual([i.id for i in items], ["/studies/a", "/studies/b", "/studies/c"])
        self.assertEqual([i.url for i in items], [BASE_URL + "/studies/a", BASE_URL + "/studies/b", BASE_URL + "/studies/c"])
        self.assertEqual(
            [i.created for i in items],
            ["2026-01-01T00:00:02.000000Z", "2026-01-01T00:00:01.000000Z", "2026-01-01T00:00:03.000000Z"],
        )
        self.assertEqual(items[0].data, b'{"n":"a"}')

    def test_study_list_ignores_nested_keys(self) -> None:
        self._populate()
        self.assertEqual([i.id for i in self.store.studies.list()], ["/studies/s1", "/studies/s2"])

    def test_scoped_lists(self) -> None:
        self._populate()
        self.assertEqual([i.id for i in self.store.trials.list("s1")], ["/studies/s1/trials/t1", "/studies/s1/trials/t2"])
        self.assertEqual([i.id for i in self.store.study_files.list("s1")], ["/studies/s1/files/f1"])
        self.assertEqual([i.id for i in self.store.trial_files.list("s1", "t1")], ["/files/s1/t1/f1", "/files/s1/t1/f2"])
        self.assertTrue(all(i.created is None for i in self.store.trials.list("s1")))

    def test_empty_lists(self) -> None:
        self.assertEqual(self.store.studies.list(), [])
        self.assertEqual(self.store.trials.list("nope"), [])
        self.assertEqual(self.store.trial_files.list("nope", "t"), [])

    def test_similar_study_names_are_isolated(self) -> None:
        self.store.studies.create("a", payload=b"{}")
        self.store.studies.create("ab", payload=b"{}")
        self.store.trials.create("ab", "t1", payload=b"{}")
        self.store.trial_files.create("ab", "t1", "f1", payload=b"{}")
        self.assertEqual(self.store.trials.list("a"), [])
        self.assertEqual(self.store.studies.delete("a"), 1)
        self.assertIsNotNone(self.store.trials.get("ab", "t1"))
        self.assertIsNotNone(self.store.trial_files.get("ab", "t1", "f1"))

    def test_study_delete_cascades(self) -> None:
        self._populate()
        removed = self.store.studies.delete("s1")
        self.assertEqual(removed, 7)
        self.assertEqual(self.payloads.scan_prefix(b"/studies/s1/"), [])
        self.assertEqual(self.payloads.scan_prefix(b"/files/s1/"), [])
        self.assertIsNone(self.store.studies.get("s1"))
        self.assertIsNone(self.store.index.get(b"/studies/s1"))
        self.assertEqual([i.id for i in self.store.studies.list()], ["/studies/s2"])
        self.assertIsNotNone(self.store.trials.get("s2", "t1"))
        self.assertIsNotNone(self.store.trial_files.get("s2", "t1", "f1"))

    def test_trial_delete_cascades_to_its_files(self) -> None:
        self._populate()
        self.assertEqual(self.store.trials.delete("s1", "t1"), 3)
        self.assertEqual(self.store.trial_files.list("s1", "t1"), [])
        self.assertEqual([i.id for i in self.store.trial_files.list("s1", "t2")], ["/files/s1/t2/f1"])
        self.assertIsNotNone(self.store.studies.get("s1"))

    def test_delete_is_idempotent(self) -> None:
        self._populate()
        self.store.study_files.delete("s1", "f1")
        self.assertEqual(self.store.study_files.delete("s1", "f1"), 0)
        self.assertEqual(self.store.studies.delete("missing"), 0)

    def test_recreate_refreshes_timestamp(self) -> None:
        self.store.studies.create("s1", payload=b"1")
        first = self.store.index.get(b"/studies/s1")
        self.store.studies.create("s1", payload=b"2")
        self.assertNotEqual(self.store.index.get(b"/studies/s1"), first)
        self.assertEqual(self.store.studies.get("s1"), b"2")
        self.assertEqual(len(self.store.studies.list()), 1)

    def test_index_without_payload_is_inconsistent(self) -> None:
        self.store.studies.create("s1", payload=b"{}")
        self.payloads.delete(b"/studies/s1")
        with self.assertRaises(DataInconsistency) as ctx:
            self.store.studies.list()
        self.assertEqual(ctx.exception.key, "/studies/s1")

    def test_partial_cascade_failure_reports_progress(self) -> None:
        engine = FailingEngine(fail_on_delete=3)
        store = ResourceStore(engine, BASE_URL, clock=self.clock)
        store.studies.create("s1", payload=b"{}")
        for name in ["t1", "t2", "t3"]:
            store.trials.create("s1", name, payload=b"{}")
        with self.assertRaises(StorageFailure) as ctx:
            store.studies.delete("s1")
        self.assertEqual(ctx.exception.detail["deleted"], 2)
        self.assertEqual(ctx.exception.detail["resource"], "/studies/s1")
        # the study itself is still readable and listed
        self.assertEqual(store.studies.get("s1"), b"{}")
        self.assertEqual([i.id for i in store.studies.list()], ["/studies/s1"])
        self.assertEqual([i.id for i in store.trials.list("s1")], ["/studies/s1/trials/t3"])


    def test_list_skips_study_deleted_while_listing(self) -> None:
        engine = DeletingEngine()
        store = ResourceStore(engine, BASE_URL, clock=self.clock)
        for name in ["s1", "s2", "s3"]:
            store.studies.create(name, payload=b"{}")
        engine.payloads.on_first_get(b"/studies/s2", lambda: store.studies.delete("s2"))
        self.assertEqual([i.id for i in store.studies.list()], ["/studies/s1", "/studies/s3"])


class DeletingBucket:
    """Runs a callback the first time a given key is read, before reading it."""

    def __init__(self, inner) -> None:
        self._inner = inner
        self._hooks = {}

    def on_first_get(self, key, callback) -> None:
        self._hooks[key] = callback

    def put(self, key, value):
        self._inner.put(key, value)

    def get(self, key):
        callback = self._hooks.pop(bytes(key), None)
        if callback is not None:
            callback()
        return self._inner.get(key)

    def scan_prefix(self, prefix):
        return self._inner.scan_prefix(prefix)

    def delete(self, key):
        self._inner.delete(key)


class DeletingEngine:
    def __init__(self) -> None:
        self._inner = MemoryEngine()
        self.payloads = DeletingBucket(self._inner.bucket(PAYLOAD_BUCKET))

    def bucket(self, name):
        if name == PAYLOAD_BUCKET:
            return self.payloads
        return self._inner.bucket(name)

    def close(self):
        self._inner.close()


class ConcurrentStoreContract:
    """Writers and readers share one store; run per engine."""

    workers = 4
    rounds = 10

    def make_engine(self):
        raise NotImplementedError

    def test_concurrent_creates_deletes_and_lists(self) -> None:
        engine = self.make_engine()
        self.addCleanup(engine.close)
        store = ResourceStore(engine, BASE_URL)
        stop = threading.Event()

        def writer(worker: int) -> None:
            for round_ in range(self.rounds):
                name = f"w{worker}-{round_}"
                store.studies.create(name, payload=b'{"round": %d}' % round_)
                for trial in ("t1", "t2"):
                    store.trials.create(name, trial, payload=b"{}")
                    store.trial_files.create(name, trial, "f1", payload=b"{}")
                store.study_files.create(name, "notes", payload=b"{}")
                if round_ % 2:
                    store.studies.delete(name)

        def reader() -> int:
            passes = 0
            while True:
                for item in store.studies.list():
                    store.trials.list(decode(item.id).name)
                passes += 1
                if stop.is_set():
                    return passes

        with ThreadPoolExecutor(max_workers=self.workers + 2) as pool:
            readers = [pool.submit(reader) for _ in range(2)]
            try:
                writers = [pool.submit(writer, w) for w in range(self.workers)]
                for future in writers:
                    future.result()
            finally:
                stop.set()
            for future in readers:
                self.assertGreaterEqual(future.result(), 1)

        kept = sorted(f"w{w}-{r}" for w in range(self.workers) for r in range(self.rounds) if r % 2 == 0)
        self.assertEqual([decode(i.id).name for i in store.studies.list()], kept)
        for name in kept:
            self.assertEqual(len(store.trials.list(name)), 2)
            self.assertEqual(len(store.trial_files.list(name, "t1")), 1)
            self.assertEqual(len(store.study_files.list(name)), 1)
        payloads = engine.bucket(PAYLOAD_BUCKET)
        for w in range(self.workers):
            for r in range(1, self.rounds, 2):
                name = f"w{w}-{r}"
                self.assertIsNone(store.studies.get(name))
                self.assertEqual(payloads.scan_prefix(f"/studies/{name}/".encode()), [])
                self.assertEqual(payloads.scan_prefix(f"/files/{name}/".encode()), [])


class TestConcurrentMemoryStore(ConcurrentStoreContract, unittest.TestCase):
    def make_engine(self):
        return MemoryEngine()


class TestConcurrentSqliteStore(ConcurrentStoreContract, unittest.TestCase):
    def make_engine(self):
        tmp = tempfile.TemporaryDirectory()
        self.addCleanup(tmp.cleanup)
        return SqliteEngine(os.path.join(tmp.name, "xhub.db"))


if __name__ == "__main__":
    unittest.main()
