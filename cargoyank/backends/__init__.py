"""Index backends for cargoyank.

Each module in this package provides an `IndexBackend` implementation for
one way of reading the crates.io index:

- `git_index`: a local clone of the git index, guarded by cargo's lock.
- `sparse_cache`: the locally cached entries of the sparse index (read-only).
- `remote_sparse`: the sparse index over HTTP, with its own on-disk cache.
"""

from .git_index import GitIndex
from .remote_sparse import RemoteSparseIndex
from .sparse_cache import SparseCacheIndex

__all__ = ["GitIndex", "RemoteSparseIndex", "SparseCacheIndex"]
