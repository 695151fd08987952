"""Reads crates from the locally cached copy of the sparse index.

This backend never touches the network: it only sees crates that cargo (or
`RemoteSparseIndex`) has already downloaded into `<index>/.cache/`.
"""

import logging
from pathlib import Path
from typing import Optional

from ..core.base_backend import IndexBackend
from ..core.errors import CargoYankError, ErrorKind
from ..core.package import CrateMetadata
from ..utils.index_entry import CacheEntry, read_cache_file
from ..utils.index_layout import crate_path

logger = logging.getLogger(__name__)


class SparseCacheIndex(IndexBackend):
    """Read-only access to the on-disk sparse index cache."""

    name = "SparseCache"

    def cache_file(self, name: str) -> Path:
        return self.location.cache_dir / crate_path(name)

    def cached_entry(self, name: str) -> Optional[CacheEntry]:
        """Reads the raw cache entry for a crate.

        Raises:
            CargoYankError: If the entry exists but cannot be read or decoded.
        """
        path = self.cache_file(name)
        try:
            return read_cache_file(path)
        except (OSError, ValueError) as e:
            raise CargoYankError(ErrorKind.IO, f"could not read cache entry {path}: {e}") from e

    def krate(self, name: str) -> Optional[CrateMetadata]:
        entry = self.cached_entry(name)
        if entry is None:
            logger.debug(f"No cached index entry for {name}")
            return None
        try:
            return entry.to_metadata(name)
        except ValueError as e:
            raise CargoYankError(ErrorKind.IO, str(e)) from e
