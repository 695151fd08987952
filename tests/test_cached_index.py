import sys
import tempfile
import unittest
from pathlib import Path
from unittest.mock import MagicMock

from cargoyank.backends.remote_sparse import RemoteSparseIndex
from cargoyank.core.cached_index import CachedIndex
from cargoyank.core.config import Config
from cargoyank.core.errors import CargoYankError, ErrorKind
from cargoyank.core.package import Package
from cargoyank.utils.file_lock import IndexLock

from helpers import FakeBackend, FakeBatchBackend, make_crate, make_location

FOO_INDEX = b'{"name":"foo","vers":"1.0.0","yanked":true}\n'


class TestFindYanked(unittest.TestCase):

    def setUp(self):
        self.crates = {
            "foo": make_crate("foo", {"1.0.0": True, "1.1.0": False}),
            "baz": make_crate("baz", {"0.3.0": False, "0.4.0-beta..1": True}),
        }
        self.backend = FakeBackend(self.crates)
        self.index = CachedIndex(self.backend)

    def test_yanked_package_is_reported(self):
        results = self.index.find_yanked([Package("foo", "1.0.0")])
        self.assertEqual(results, [Package("foo", "1.0.0")])

    def test_duplicates_are_reported_once(self):
        results = self.index.find_yanked([Package("foo", "1.0.0"), Package("foo", "1.0.0")])
        self.assertEqual(results, [Package("foo", "1.0.0")])

    def test_unknown_crate_is_not_found(self):
        results = self.index.find_yanked([Package("bar", "2.0.0")])
        self.assertEqual(len(results), 1)
        self.assertIsInstance(results[0], CargoYankError)
        self.assertEqual(results[0].kind, ErrorKind.NOT_FOUND)
        self.assertIn("No such crate", results[0].message)
        self.assertIn("bar", results[0].message)

    def test_unknown_version_is_not_found(self):
        results = self.index.find_yanked([Package("foo", "9.9.9")])
        self.assertEqual(len(results), 1)
        self.assertEqual(results[0].kind, ErrorKind.NOT_FOUND)
        self.assertIn("No such version", results[0].message)
        self.assertIn("9.9.9", results[0].message)

    def test_packages_that_are_not_yanked_are_omitted(self):
        results = self.index.find_yanked([Package("foo", "1.1.0"), Package("baz", "0.3.0")])
        self.assertEqual(results, [])

    def test_versions_are_matched_as_plain_strings(self):
        results = self.index.find_yanked([Package("baz", "0.4.0-beta..1")])
        self.assertEqual(results, [Package("baz", "0.4.0-beta..1")])

    def test_one_failing_crate_does_not_hide_others(self):
        backend = FakeBackend(self.crates, failing=["baz"])
        index = CachedIndex(backend)

        results = index.find_yanked([Package("baz", "0.3.0"), Package("foo", "1.0.0")])

        self.assertEqual(len(results), 2)
        error = results[0]
        self.assertEqual(error.kind, ErrorKind.REGISTRY)
        self.assertIn("Failed to retrieve baz", error.message)
        self.assertIn("disk error", error.message)
        self.assertEqual(results[1], Package("foo", "1.0.0"))

    def test_each_crate_is_read_once_for_many_versions(self):
        self.index.find_yanked([Package("foo", "1.0.0"), Package("foo", "1.1.0"), Package("foo", "2.0.0")])
        self.assertEqual(self.backend.calls, ["foo"])

    def test_repeated_calls_reuse_the_cache(self):
        packages = [Package("foo", "1.0.0"), Package("bar", "1.0.0"), Package("baz", "0.3.0")]
        first = self.index.find_yanked(packages)
        calls_after_first = list(self.backend.calls)

        second = self.index.find_yanked(packages)

        self.assertEqual(first, second)
        self.assertEqual(self.backend.calls, calls_after_first)

    def test_stored_errors_are_not_retried(self):
        backend = FakeBackend(self.crates, failing=["foo"])
        index = CachedIndex(backend)
        index.find_yanked([Package("foo", "1.0.0")])
        backend.failing.clear()

        results = index.find_yanked([Package("foo", "1.0.0")])

        self.assertEqual(results[0].kind, ErrorKind.REGISTRY)
        self.assertEqual(backend.calls, ["foo"])

    def test_results_follow_package_order(self):
        results = self.index.find_yanked([Package("zzz", "1.0.0"), Package("foo", "1.0.0")])
        self.assertEqual(results[0], Package("foo", "1.0.0"))
        self.assertEqual(results[1].kind, ErrorKind.NOT_FOUND)

    def test_empty_input(self):
        self.assertEqual(self.index.find_yanked([]), [])
        self.assertEqual(self.backend.calls, [])


class TestCacheEntries(unittest.TestCase):

    def setUp(self):
        self.index = CachedIndex(FakeBackend({}))

    def test_insert_builds_version_map(self):
        self.index.insert("foo", make_crate("foo", {"1.0.0": True, "1.1.0": False}))
        self.assertEqual(self.index.cache["foo"], {"1.0.0": True, "1.1.0": False})

    def test_insert_overwrites_previous_entry(self):
        self.index.insert("foo", None)
        self.index.insert("foo", make_crate("foo", {"1.0.0": False}))
        self.assertEqual(self.index.cache["foo"], {"1.0.0": False})
        self.assertFalse(self.index.is_yanked(Package("foo", "1.0.0")))

    def test_missing_entry_falls_back_to_single_lookup(self):
        backend = FakeBackend({"foo": make_crate("foo", {"1.0.0": True})})
        index = CachedIndex(backend)
        self.assertTrue(index.is_yanked(Package("foo", "1.0.0")))
        self.assertIn("foo", index.cache)
        self.assertEqual(backend.calls, ["foo"])

    def test_close_closes_backend(self):
        with self.index as index:
            pass
        self.assertTrue(index.backend.closed)


class TestBatchPopulation(unittest.TestCase):

    def setUp(self):
        self.crates = {
            "foo": make_crate("foo", {"1.0.0": True}),
            "bar": make_crate("bar", {"2.0.0": False}),
        }
        self.config = Config()
        self.config.set("request_timeout", 5)

    def test_batch_backend_is_queried_once_for_all_names(self):
        backend = FakeBatchBackend(self.crates, config=self.config)
        index = CachedIndex(backend)

        results = index.find_yanked([Package("foo", "1.0.0"), Package("bar", "2.0.0"), Package("foo", "1.0.0")])

        self.assertEqual(results, [Package("foo", "1.0.0")])
        self.assertEqual(backend.batches, [(["bar", "foo"], 5.0)])

    def test_second_call_only_fetches_new_names(self):
        backend = FakeBatchBackend(self.crates, config=self.config)
        index = CachedIndex(backend)
        index.find_yanked([Package("foo", "1.0.0")])

        index.find_yanked([Package("foo", "1.0.0"), Package("bar", "2.0.0")])

        self.assertEqual([names for names, _ in backend.batches], [["foo"], ["bar"]])

    def test_whole_batch_failure_is_reported_once_and_lookups_continue(self):
        failure = CargoYankError(ErrorKind.REGISTRY, "unable to start a worker pool: can't start new thread")
        backend = FakeBatchBackend(self.crates, config=self.config, batch_error=failure)
        index = CachedIndex(backend)

        results = index.find_yanked([Package("foo", "1.0.0"), Package("bar", "2.0.0")])

        self.assertEqual(len(results), 2)
        self.assertEqual(results[0].kind, ErrorKind.REGISTRY)
        self.assertIn("Failed to download crates.io index", results[0].message)
        self.assertIn("can't start new thread", results[0].message)
        self.assertEqual(results[1], Package("foo", "1.0.0"))
        # Each crate fell back to one synchronous lookup.
        self.assertEqual(sorted(backend.calls), ["bar", "foo"])

    def test_cached_results_survive_a_later_batch_failure(self):
        backend = FakeBatchBackend(self.crates, config=self.config)
        index = CachedIndex(backend)
        index.find_yanked([Package("foo", "1.0.0")])
        backend.batch_error = CargoYankError(ErrorKind.REGISTRY, "offline")
        backend.crates = {}

        results = index.find_yanked([Package("foo", "1.0.0"), Package("bar", "2.0.0")])

        self.assertEqual(results[0].kind, ErrorKind.REGISTRY)
        self.assertEqual(results[1].kind, ErrorKind.NOT_FOUND)
        self.assertEqual(results[2], Package("foo", "1.0.0"))

    def test_partial_batch_results_are_kept_when_the_batch_fails(self):
        failure = CargoYankError(ErrorKind.REGISTRY, "worker pool shut down")
        backend = FakeBatchBackend(self.crates, config=self.config, batch_error=failure, finished_before_error=1)
        index = CachedIndex(backend)

        results = index.find_yanked([Package("foo", "1.0.0"), Package("bar", "2.0.0")])

        self.assertEqual(index.cache["bar"], {"2.0.0": False})
        # Only the crate that never finished is looked up again.
        self.assertEqual(backend.calls, ["foo"])
        self.assertEqual(results[0].kind, ErrorKind.REGISTRY)
        self.assertEqual(results[1:], [Package("foo", "1.0.0")])


class TestInvalidCrateNames(unittest.TestCase):

    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.root = Path(self.tmp.name)
        self.location = make_location(self.root)
        self.session = MagicMock()
        self.session.get.return_value = MagicMock(status_code=200, content=FOO_INDEX, headers={})
        self.index = CachedIndex(RemoteSparseIndex(self.location, Config(), session=self.session))

    def tearDown(self):
        self.tmp.cleanup()

    def test_invalid_name_is_a_per_package_error_and_never_touches_disk(self):
        results = self.index.find_yanked([Package("a/../../../escaped", "1.0.0"), Package("foo", "1.0.0")])

        self.assertEqual(len(results), 2)
        self.assertIsInstance(results[0], CargoYankError)
        self.assertIn("Invalid crate name", results[0].message)
        self.assertEqual(results[1], Package("foo", "1.0.0"))
        self.session.get.assert_called_once()
        written = [path for path in self.root.rglob("*") if path.is_file()]
        self.assertEqual(written, [self.location.cache_dir / "3" / "f" / "foo"])


class TestOpenWithLock(unittest.TestCase):

    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.cargo_home = Path(self.tmp.name)
        self.config = Config()
        self.config.set("cargo_home", str(self.cargo_home))
        self.config.set("index.protocol", "git")
        self.config.set("index.path", None)

    def tearDown(self):
        self.tmp.cleanup()

    @unittest.skipIf(sys.platform == "win32", "flock semantics")
    def test_zero_timeout_fails_immediately_when_lock_is_held(self):
        with IndexLock(self.cargo_home / ".package-cache", 0):
            with self.assertRaises(CargoYankError) as ctx:
                CachedIndex.open(lock_timeout=0, config=self.config)
            self.assertEqual(ctx.exception.kind, ErrorKind.LOCK_TIMEOUT)

            with self.assertRaises(CargoYankError) as ctx:
                CachedIndex.fetch(lock_timeout=0, config=self.config)
            self.assertEqual(ctx.exception.kind, ErrorKind.LOCK_TIMEOUT)

    def test_open_holds_lock_until_closed(self):
        index = CachedIndex.open(lock_timeout=0, config=self.config)
        self.assertTrue(index.backend.lock.locked)
        index.close()
        self.assertFalse(index.backend.lock.locked)
        # Lock is free again.
        IndexLock(self.cargo_home / ".package-cache", 0).release()

    def test_unsupported_protocol_fails_fast(self):
        self.config.set("index.protocol", "carrier-pigeon")
        with self.assertRaises(CargoYankError) as ctx:
            CachedIndex.open(lock_timeout=0, config=self.config)
        self.assertEqual(ctx.exception.kind, ErrorKind.REGISTRY_UNSUPPORTED)

    def test_open_sparse_reads_local_cache_only(self):
        self.config.set("index.protocol", "sparse")
        index = CachedIndex.open(lock_timeout=0, config=self.config)
        self.assertEqual(index.backend.name, "SparseCache")
        self.assertFalse(index.backend.supports_batch)


if __name__ == '__main__':
    unittest.main()
