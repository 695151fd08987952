"""cargoyank: find yanked crates in a Cargo.lock.

This package checks the crates pinned by a Rust lock-file against the
crates.io registry index and reports every version that has been yanked,
using a per-run in-memory cache so hundreds of crates cost one batch of
index reads.
"""

__version__ = "0.1.0"
__license__ = "MIT"

__all__ = ["__version__", "__license__"]
