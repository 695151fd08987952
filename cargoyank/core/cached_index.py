"""Finds yanked crates with one index lookup per crate.

Looking crates up in the crates.io index is slow. Instead of a lookup for
every version of every crate, `CachedIndex` reads each crate once, keeps the
`{version: yanked}` map for it in memory and answers every version query
from that map. For the sparse index all crates of a run are fetched in one
concurrent batch, which is orders of magnitude faster than one by one.

Versions are compared as plain strings: the crates.io index contains
version strings that are not valid semver.
"""

import logging
from typing import Dict, Iterable, List, Optional, Set, Union

import requests

from .base_backend import IndexBackend, KrateResult
from .config import Config
from .errors import CargoYankError, ErrorKind
from .package import Package
from ..backends.git_index import GitIndex
from ..backends.remote_sparse import RemoteSparseIndex
from ..backends.sparse_cache import SparseCacheIndex
from ..utils.index_layout import IndexKind, crates_io_location

logger = logging.getLogger(__name__)

# A crate's versions and their yanked flags, None for a crate the index
# does not have, or the error that prevented reading it.
CacheValue = Union[Optional[Dict[str, bool]], CargoYankError]

# Outcome of `find_yanked` for one package: the yanked package or an error.
YankResult = Union[Package, CargoYankError]

# Seconds each crate may take in a batch fetch, retries included.
DEFAULT_REQUEST_TIMEOUT = 10


class CachedIndex:
    """Checks packages against the crates.io index, one lookup per crate.

    Use `CachedIndex.fetch` or `CachedIndex.open` rather than constructing
    one directly. The cache lives as long as the instance and is not safe
    to share between threads.

    Attributes:
        backend (IndexBackend): Where crate metadata is read from.
        cache (Dict[str, CacheValue]): Crate name to cached lookup result.
    """

    def __init__(self, backend: IndexBackend, config: Optional[Config] = None) -> None:
        self.backend = backend
        self.config = config or backend.config
        self.cache: Dict[str, CacheValue] = {}

    @classmethod
    def fetch(
        cls,
        session: Optional[requests.Session] = None,
        lock_timeout: Optional[float] = None,
        config: Optional[Config] = None,
    ) -> "CachedIndex":
        """Opens the crates.io index, refreshing it from the network.

        A git index is fetched right away. A sparse index is downloaded on
        demand, crate by crate, when `find_yanked` is called.

        Args:
            session (Optional[requests.Session]): HTTP client for the sparse
                index. A default session is created when omitted.
            lock_timeout (Optional[float]): Seconds to wait for the index
                lock. `0` fails immediately if the lock is held. Defaults to
                the `lock_timeout` setting.
            config (Optional[Config]): The application's configuration.

        Returns:
            CachedIndex: A ready index with an empty cache.

        Raises:
            CargoYankError: `LockTimeout`, `RegistryUnsupported`, `Registry`
                or `Io` if the index cannot be opened.
        """
        config = config or Config()
        location = crates_io_location(config)
        lock_timeout = cls._lock_timeout(config, lock_timeout)

        if location.kind == IndexKind.GIT:
            backend = GitIndex(location, config, lock_timeout)
            try:
                backend.fetch_latest()
            except CargoYankError:
                backend.close()
                raise
        else:
            backend = RemoteSparseIndex(location, config, session=session)

        logger.info(f"Opened {backend.name} index at {location.path}")
        return cls(backend, config)

    @classmethod
    def open(cls, lock_timeout: Optional[float] = None, config: Optional[Config] = None) -> "CachedIndex":
        """Opens the local crates.io index without touching the network.

        A git index is read from the existing clone. A sparse index only
        answers for crates that are already cached locally.

        Args:
            lock_timeout (Optional[float]): Seconds to wait for the index
                lock. `0` fails immediately if the lock is held.
            config (Optional[Config]): The application's configuration.

        Raises:
            CargoYankError: `LockTimeout`, `RegistryUnsupported` or `Io` if
                the index cannot be opened.
        """
        config = config or Config()
        location = crates_io_location(config)
        lock_timeout = cls._lock_timeout(config, lock_timeout)

        if location.kind == IndexKind.GIT:
            backend = GitIndex(location, config, lock_timeout)
        else:
            backend = SparseCacheIndex(location, config)

        logger.info(f"Opened {backend.name} index at {location.path}")
        return cls(backend, config)

    @staticmethod
    def _lock_timeout(config: Config, lock_timeout: Optional[float]) -> float:
        if lock_timeout is None:
            lock_timeout = config.get("lock_timeout", 0)
        return max(float(lock_timeout), 0.0)

    def populate_cache(self, names: Set[str]) -> None:
        """Fills the cache for all of the given crates.

        One crate failing never stops the others: its error is stored in
        the cache instead. In a batch each crate is cached as soon as it
        finishes, so a batch that fails part-way keeps what it fetched.

        Raises:
            CargoYankError: `Registry` if the batch could not run at all.
        """
        if not names:
            return
        if self.backend.supports_batch:
            timeout = float(self.config.get("request_timeout", DEFAULT_REQUEST_TIMEOUT))
            results = self.backend.krates_batch(sorted(names), timeout, on_result=self.insert)
            for name, result in results.items():
                if name not in self.cache:
                    self.insert(name, result)
        else:
            for name in sorted(names):
                self.insert(name, self._krate(name))

    def _krate(self, name: str) -> KrateResult:
        try:
            return self.backend.krate(name)
        except CargoYankError as e:
            return e

    def insert(self, name: str, result: KrateResult) -> None:
        """Stores one crate's lookup result, replacing any earlier entry."""
        if isinstance(result, CargoYankError):
            logger.debug(f"Caching error for {name}: {result}")
            self.cache[name] = result
        elif result is None:
            self.cache[name] = None
        else:
            self.cache[name] = result.yank_map()

    def is_yanked(self, package: Package) -> bool:
        """Is the given package yanked?

        Raises:
            CargoYankError: `NotFound` if the crate or the version is not in
                the index, `Registry` if the crate could not be read.
        """
        if package.name not in self.cache:
            self.insert(package.name, self._krate(package.name))

        entry = self.cache[package.name]
        if isinstance(entry, CargoYankError):
            raise CargoYankError(
                ErrorKind.REGISTRY,
                f"Failed to retrieve {package.name} from crates.io index: {entry}",
            )
        if entry is None:
            raise CargoYankError(
                ErrorKind.NOT_FOUND,
                f"No such crate in crates.io index: {package.name}",
            )
        try:
            return entry[package.version]
        except KeyError:
            raise CargoYankError(
                ErrorKind.NOT_FOUND,
                f"No such version in crates.io index: {package.name} {package.version}",
            ) from None

    def find_yanked(self, packages: Iterable[Package]) -> List[YankResult]:
        """Returns the yanked packages, and an error for every failed lookup.

        Call this with all packages at once rather than one by one; that
        way the sparse index can be queried for all of them in one batch.

        Args:
            packages (Iterable[Package]): The packages to check. Duplicates
                are reported once.

        Returns:
            List[YankResult]: Each yanked `Package` and each
            `CargoYankError`, in package order. Packages that are not
            yanked do not appear.
        """
        yanked: List[YankResult] = []

        dedup_packages = sorted(set(packages))
        # Crates already cached by an earlier call are not fetched again.
        package_names = {package.name for package in dedup_packages if package.name not in self.cache}
        try:
            self.populate_cache(package_names)
        except CargoYankError as e:
            logger.error(f"Failed to download crates.io index: {e}")
            yanked.append(CargoYankError(
                ErrorKind.REGISTRY,
                f"Failed to download crates.io index: {e}\n"
                "Data may be missing or stale when checking for yanked packages.",
            ))

        for package in dedup_packages:
            try:
                if self.is_yanked(package):
                    yanked.append(package)
            except CargoYankError as e:
                yanked.append(e)

        return yanked

    def close(self) -> None:
        """Releases the backend, including the index lock if one is held."""
        self.backend.close()

    def __enter__(self) -> "CachedIndex":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()
