"""Locates the crates.io index and maps crate names to index paths.

The index kind (a git clone or the sparse HTTP protocol) is not chosen by
the caller. It is discovered the same way cargo does it: an explicit
setting, then `CARGO_REGISTRIES_CRATES_IO_PROTOCOL`, then the
`[registries.crates-io]` table of cargo's own `config.toml`, and finally the
sparse default.
"""

import logging
import os
import re
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import List, Optional

try:
    import tomllib  # Available in Python 3.11+
except ImportError:
    import tomli as tomllib  # Fallback for Python versions < 3.11

from ..core.config import Config
from ..core.errors import CargoYankError, ErrorKind

logger = logging.getLogger(__name__)

# Directory names cargo uses below `$CARGO_HOME/registry/index`. The hash
# suffix changed between cargo releases, newest first.
SPARSE_DIR_NAMES = ["index.crates.io-1949cf8c6b5b557f", "index.crates.io-6f17d22bba15001f"]
GIT_DIR_NAMES = ["github.com-25cdd57fae9f0462", "github.com-1ecc6299db9ec5f8"]

# Name of the file cargo locks while it touches the package cache.
LOCK_FILE_NAME = ".package-cache"

MAX_CRATE_NAME_LENGTH = 64
CRATE_NAME_RE = re.compile(r"[A-Za-z][A-Za-z0-9_-]{0,%d}" % (MAX_CRATE_NAME_LENGTH - 1), re.ASCII)


class IndexKind(str, Enum):
    GIT = "git"
    SPARSE = "sparse"


@dataclass(frozen=True)
class IndexLocation:
    """Where the crates.io index lives, locally and remotely."""

    kind: IndexKind
    url: str
    path: Path
    lock_path: Path

    @property
    def cache_dir(self) -> Path:
        """Directory holding cargo-format cache entries for this index."""
        return self.path / ".cache"


def validate_crate_name(name: str) -> None:
    """Rejects names crates.io would never publish.

    A crate name is 1 to 64 ASCII characters: a letter, then letters,
    digits, `-` or `_`. Anything else could escape the index directory once
    it is turned into a path or URL.

    Raises:
        CargoYankError: With kind `NotFound` if the name is invalid.
    """
    if not CRATE_NAME_RE.fullmatch(name or ""):
        raise CargoYankError(ErrorKind.NOT_FOUND, f"Invalid crate name: {name!r}")


def crate_path(name: str) -> str:
    """Returns the relative path of a crate's file inside the index.

    Args:
        name (str): The crate name.

    Returns:
        str: e.g. `1/a`, `2/ab`, `3/a/abc` or `se/rd/serde`.

    Raises:
        CargoYankError: If the name is not a valid crate name.
    """
    validate_crate_name(name)
    lower = name.lower()
    if len(lower) == 1:
        return f"1/{lower}"
    if len(lower) == 2:
        return f"2/{lower}"
    if len(lower) == 3:
        return f"3/{lower[0]}/{lower}"
    return f"{lower[0:2]}/{lower[2:4]}/{lower}"


def _protocol_from_cargo_config(cargo_home: Path) -> Optional[str]:
    """Reads `registries.crates-io.protocol` from cargo's config file."""
    for file_name in ("config.toml", "config"):
        config_file = cargo_home / file_name
        if not config_file.exists():
            continue
        try:
            with open(config_file, "rb") as f:
                data = tomllib.load(f)
        except (OSError, tomllib.TOMLDecodeError) as e:
            logger.warning(f"Could not read cargo config {config_file}: {e}")
            return None
        return data.get("registries", {}).get("crates-io", {}).get("protocol")
    return None


def discover_protocol(config: Config) -> str:
    """Determines which protocol cargo would use for crates.io."""
    protocol = config.get("index.protocol")
    if not protocol:
        protocol = os.getenv("CARGO_REGISTRIES_CRATES_IO_PROTOCOL")
    if not protocol:
        protocol = _protocol_from_cargo_config(config.cargo_home())
    return (protocol or IndexKind.SPARSE.value).strip().lower()


def _pick_dir(index_root: Path, candidates: List[str]) -> Path:
    for dir_name in candidates:
        if (index_root / dir_name).exists():
            return index_root / dir_name
    return index_root / candidates[0]


def crates_io_location(config: Config) -> IndexLocation:
    """Resolves the location of the crates.io index.

    Args:
        config (Config): The application's configuration object.

    Returns:
        IndexLocation: The kind, URL and local paths of the index.

    Raises:
        CargoYankError: With kind `RegistryUnsupported` if the configured
            protocol is neither `git` nor `sparse`.
    """
    protocol = discover_protocol(config)
    cargo_home = config.cargo_home()
    index_root = cargo_home / "registry" / "index"
    override = config.get("index.path")

    if protocol == IndexKind.SPARSE.value:
        kind = IndexKind.SPARSE
        url = config.get("index.sparse_url")
        path = Path(override) if override else _pick_dir(index_root, SPARSE_DIR_NAMES)
    elif protocol == IndexKind.GIT.value:
        kind = IndexKind.GIT
        url = config.get("index.git_url")
        path = Path(override) if override else _pick_dir(index_root, GIT_DIR_NAMES)
    else:
        raise CargoYankError(
            ErrorKind.REGISTRY_UNSUPPORTED,
            f"Unsupported crates.io index protocol: {protocol!r}",
        )

    if not url.endswith("/"):
        url += "/"
    logger.debug(f"crates.io index is {kind.value} at {path} ({url})")
    return IndexLocation(kind=kind, url=url, path=path, lock_path=cargo_home / LOCK_FILE_NAME)
