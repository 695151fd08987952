"""Reads crates from a local clone of the git crates.io index.

Cargo keeps the git index as a repository without a checkout; crate files
are read straight from the fetched commit with `git cat-file`. Cargo's
`.cache` entries are used instead whenever they were written for that same
commit. The whole backend runs under cargo's package cache lock, which it
holds from construction until it is closed or collected.
"""

import logging
import subprocess
from pathlib import Path
from typing import List, Optional

from ..core.base_backend import IndexBackend
from ..core.errors import CargoYankError, ErrorKind
from ..core.package import CrateMetadata
from ..utils.file_lock import IndexLock
from ..utils.index_entry import parse_index_file, read_cache_file
from ..utils.index_layout import crate_path

logger = logging.getLogger(__name__)

# Refs that may point at the fetched index, in order of preference.
CANDIDATE_REFS = ["refs/remotes/origin/HEAD", "FETCH_HEAD", "HEAD"]


class GitIndex(IndexBackend):
    """A local clone of the git index, guarded by cargo's lock.

    Args:
        location (IndexLocation): Where the index lives.
        config (Config): The application's configuration object.
        lock_timeout (float): Seconds to wait for the lock; 0 fails at once.

    Raises:
        CargoYankError: `LockTimeout` if the lock is held elsewhere.
    """

    name = "Git"

    def __init__(self, location, config, lock_timeout: float) -> None:
        super().__init__(location, config)
        self.lock = IndexLock(location.lock_path, lock_timeout)
        self._head: Optional[str] = None

    @property
    def git_dir(self) -> Path:
        return self.location.path / ".git"

    def _git(self, *args: str) -> subprocess.CompletedProcess:
        cmd: List[str] = ["git", "--git-dir", str(self.git_dir), *args]
        logger.debug(f"Running: {' '.join(cmd)}")
        try:
            return subprocess.run(
                cmd,
                capture_output=True,
                check=False,
                timeout=self.config.get("timeout", 30),
            )
        except (OSError, subprocess.TimeoutExpired) as e:
            raise CargoYankError(ErrorKind.IO, f"could not run git: {e}") from e

    def fetch_latest(self) -> None:
        """Fetches the newest index commit, cloning the index if needed.

        Raises:
            CargoYankError: `Registry` if the fetch fails.
        """
        if not self.git_dir.exists():
            logger.info(f"Initialising crates.io index at {self.location.path}")
            self.location.path.mkdir(parents=True, exist_ok=True)
            result = self._git("init", "--quiet")
            if result.returncode != 0:
                raise CargoYankError(ErrorKind.IO, f"git init failed: {result.stderr.decode(errors='replace').strip()}")

        logger.info(f"Fetching {self.location.url}")
        result = self._git(
            "fetch", "--quiet", "--force", "--depth", "1",
            self.location.url.rstrip("/"), "+HEAD:refs/remotes/origin/HEAD",
        )
        if result.returncode != 0:
            raise CargoYankError(
                ErrorKind.REGISTRY,
                f"failed to fetch {self.location.url}: {result.stderr.decode(errors='replace').strip()}",
            )
        self._head = None

    def head(self) -> str:
        """Returns the commit the index is read at.

        Raises:
            CargoYankError: `Io` if the clone has no usable commit.
        """
        if self._head is None:
            for ref in CANDIDATE_REFS:
                result = self._git("rev-parse", "--verify", "--quiet", f"{ref}^{{commit}}")
                if result.returncode == 0:
                    self._head = result.stdout.decode().strip()
                    break
            else:
                raise CargoYankError(ErrorKind.IO, f"no index commit found in {self.git_dir}")
        return self._head

    def _cached(self, name: str, head: str) -> Optional[CrateMetadata]:
        path = self.location.cache_dir / crate_path(name)
        try:
            entry = read_cache_file(path)
        except (OSError, ValueError) as e:
            logger.debug(f"Ignoring cache entry {path}: {e}")
            return None
        if entry is None or entry.revision != head:
            return None
        try:
            return entry.to_metadata(name)
        except ValueError:
            return None

    def krate(self, name: str) -> Optional[CrateMetadata]:
        head = self.head()
        cached = self._cached(name, head)
        if cached is not None:
            return cached

        result = self._git("cat-file", "blob", f"{head}:{crate_path(name)}")
        if result.returncode != 0:
            stderr = result.stderr.decode(errors="replace").strip()
            # The path is simply absent from the tree: no such crate.
            if "does not exist" in stderr or "Not a valid object name" in stderr:
                return None
            raise CargoYankError(ErrorKind.IO, f"could not read {name} from {self.git_dir}: {stderr}")
        try:
            return parse_index_file(name, result.stdout)
        except ValueError as e:
            raise CargoYankError(ErrorKind.IO, str(e)) from e

    def close(self) -> None:
        self.lock.release()
