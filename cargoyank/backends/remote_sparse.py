"""Fetches crates from the sparse crates.io index over HTTP.

Each crate is a separate small file on `index.crates.io`, so checking a
whole lock-file means hundreds of requests. `krates_batch` issues them
concurrently from a worker pool that only lives for the duration of one
call, retrying transient failures of each crate until that crate's own
deadline passes. Every successful response is written to cargo's on-disk
cache, and cached entries are revalidated with conditional requests.
"""

import logging
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from typing import Dict, Iterable, Optional
from urllib.parse import urljoin

import requests
from requests.adapters import HTTPAdapter

from .. import __version__
from ..core.base_backend import KrateResult, ResultCallback
from ..core.errors import CargoYankError, ErrorKind
from ..core.package import CrateMetadata
from ..utils.index_entry import CacheEntry, parse_index_file, write_cache_file
from ..utils.index_layout import crate_path
from .sparse_cache import SparseCacheIndex

logger = logging.getLogger(__name__)

# Statuses the sparse index uses for a crate that does not exist.
NOT_FOUND_STATUSES = {404, 410, 451}
# Statuses worth retrying until the per-crate deadline.
TRANSIENT_STATUSES = {408, 425, 429, 500, 502, 503, 504}

INITIAL_BACKOFF = 0.1
MAX_BACKOFF = 2.0


def _conditional_headers(entry: Optional[CacheEntry]) -> Dict[str, str]:
    """Builds revalidation headers from a cache entry's revision."""
    if entry is None:
        return {}
    if entry.revision.startswith("etag: "):
        return {"If-None-Match": entry.revision[len("etag: "):]}
    if entry.revision.startswith("last-modified: "):
        return {"If-Modified-Since": entry.revision[len("last-modified: "):]}
    return {}


def _revision_of(response: requests.Response) -> str:
    etag = response.headers.get("etag")
    if etag:
        return f"etag: {etag}"
    last_modified = response.headers.get("last-modified")
    if last_modified:
        return f"last-modified: {last_modified}"
    return ""


class RemoteSparseIndex(SparseCacheIndex):
    """The sparse index over HTTP, backed by the local cache.

    `krate` only reads the local cache, like `SparseCacheIndex`; network
    access happens in `fetch_krate` and `krates_batch`.

    Requests are made over HTTP/1.1: `requests` cannot negotiate or force
    HTTP/2, so a session passed in here cannot change the transport version
    either. Instead the session gets an `HTTPAdapter` for the index URL with
    one pooled connection per worker, which replaces any adapter already
    mounted for that prefix.

    Args:
        location (IndexLocation): Where the index lives.
        config (Config): The application's configuration object.
        session (Optional[requests.Session]): The HTTP client to use. A new
            session is created when omitted. Its headers gain a
            `User-Agent`, and it is left open by `close`.
    """

    name = "RemoteSparse"
    supports_batch = True

    def __init__(self, location, config, session: Optional[requests.Session] = None) -> None:
        super().__init__(location, config)
        self._owns_session = session is None
        self.session = session if session is not None else requests.Session()
        self.session.headers.update({"User-Agent": f"cargoyank/{__version__}"})
        # One pooled connection per worker so a batch reuses its sockets.
        pool_size = max(1, int(config.get("max_workers", 32)))
        self.session.mount(location.url, HTTPAdapter(pool_connections=1, pool_maxsize=pool_size))

    def fetch_krate(self, name: str, timeout: float) -> Optional[CrateMetadata]:
        """Fetches one crate from the network, retrying until `timeout`.

        Args:
            name (str): The crate name.
            timeout (float): Seconds this crate may take, retries included.

        Returns:
            Optional[CrateMetadata]: The crate, or None if it does not exist.

        Raises:
            CargoYankError: `Registry` if the crate could not be fetched.
        """
        url = urljoin(self.location.url, crate_path(name))
        deadline = time.monotonic() + timeout

        try:
            cached = self.cached_entry(name)
        except CargoYankError as e:
            logger.debug(f"Ignoring unreadable cache entry for {name}: {e}")
            cached = None
        headers = _conditional_headers(cached)

        attempt = 0
        backoff = INITIAL_BACKOFF
        while True:
            attempt += 1
            remaining = max(deadline - time.monotonic(), 0.001)
            request_timeout = min(float(self.config.get("timeout", 30)), remaining)
            try:
                response = self.session.get(url, headers=headers, timeout=request_timeout)
            except (requests.ConnectionError, requests.Timeout) as e:
                last_error = str(e)
            except requests.RequestException as e:
                raise CargoYankError(ErrorKind.REGISTRY, f"request for {url} failed: {e}") from e
            else:
                status = response.status_code
                if status == 200:
                    return self._store(name, response)
                if status == 304 and cached is not None:
                    return self._from_cache(name, cached)
                if status in NOT_FOUND_STATUSES:
                    return None
                if status not in TRANSIENT_STATUSES:
                    raise CargoYankError(ErrorKind.REGISTRY, f"unexpected HTTP status {status} for {url}")
                last_error = f"HTTP status {status}"

            remaining = deadline - time.monotonic()
            if remaining <= 0:
                raise CargoYankError(
                    ErrorKind.REGISTRY,
                    f"gave up on {name} after {attempt} attempt(s) in {timeout}s: {last_error}",
                )
            sleep_time = min(backoff, remaining)
            logger.info(f"Retrying {name} in {sleep_time:.2f}s ({last_error})")
            time.sleep(sleep_time)
            backoff = min(backoff * 2, MAX_BACKOFF)

    def _store(self, name: str, response: requests.Response) -> CrateMetadata:
        try:
            metadata = parse_index_file(name, response.content)
        except ValueError as e:
            raise CargoYankError(ErrorKind.REGISTRY, str(e)) from e
        try:
            write_cache_file(self.cache_file(name), _revision_of(response), response.content)
        except OSError as e:
            logger.warning(f"Could not write index cache for {name}: {e}")
        return metadata

    def _from_cache(self, name: str, entry: CacheEntry) -> CrateMetadata:
        try:
            return entry.to_metadata(name)
        except ValueError as e:
            raise CargoYankError(ErrorKind.REGISTRY, str(e)) from e

    def krates_batch(self, names: Iterable[str], per_item_timeout: float,
                     on_result: Optional[ResultCallback] = None) -> Dict[str, KrateResult]:
        """Fetches many crates concurrently.

        Args:
            names (Iterable[str]): The crate names.
            per_item_timeout (float): Seconds each crate may take.
            on_result (Optional[ResultCallback]): Receives each result on the
                calling thread as soon as its crate finishes.

        Returns:
            Dict[str, KrateResult]: The outcome of every crate, failures
            included.

        Raises:
            CargoYankError: `Registry` if no worker pool could be started.
        """
        names = list(names)
        results: Dict[str, KrateResult] = {}
        if not names:
            return results

        workers = max(1, min(int(self.config.get("max_workers", 32)), len(names)))
        logger.info(f"Fetching {len(names)} crates from {self.location.url} with {workers} workers")
        try:
            with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="cargoyank") as executor:
                futures = {executor.submit(self.fetch_krate, name, per_item_timeout): name for name in names}
                for future in as_completed(futures):
                    name = futures[future]
                    try:
                        results[name] = future.result()
                    except CargoYankError as e:
                        results[name] = e
                    except Exception as e:
                        logger.error(f"Fetching {name} failed unexpectedly: {e}")
                        results[name] = CargoYankError(ErrorKind.REGISTRY, f"fetching {name} failed: {e}")
                    if on_result is not None:
                        on_result(name, results[name])
        except RuntimeError as e:
            raise CargoYankError(ErrorKind.REGISTRY, f"unable to start a worker pool: {e}") from e
        return results

    def close(self) -> None:
        if self._owns_session:
            self.session.close()
