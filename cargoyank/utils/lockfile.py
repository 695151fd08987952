"""Reads the crates.io packages pinned by a `Cargo.lock` file.

Only packages whose `source` is the crates.io registry are returned. Path
and git dependencies, and crates from other registries, cannot be yanked
from crates.io and are skipped.
"""
import logging
from pathlib import Path
from typing import List, Optional, Union

try:
    import tomllib  # Available in Python 3.11+
except ImportError:
    import tomli as tomllib  # Fallback for Python versions < 3.11

from ..core.errors import CargoYankError, ErrorKind
from ..core.package import Package

logger = logging.getLogger(__name__)

CRATES_IO_SOURCES = (
    "registry+https://github.com/rust-lang/crates.io-index",
    "sparse+https://index.crates.io/",
)


def detect_lock_file(start: Optional[Path] = None) -> Optional[Path]:
    """Finds the nearest `Cargo.lock`, searching upwards from `start`.

    Args:
        start (Optional[Path]): Directory to start from. Defaults to the
            current working directory.

    Returns:
        Optional[Path]: The lock-file path, or None if there is none.
    """
    directory = (start or Path.cwd()).resolve()
    for candidate in [directory, *directory.parents]:
        lock_file = candidate / "Cargo.lock"
        if lock_file.exists():
            return lock_file
    return None


def parse_cargo_lock(file_path: Union[str, Path]) -> List[Package]:
    """Parses a `Cargo.lock` file.

    Args:
        file_path (Union[str, Path]): The path to the lock-file.

    Returns:
        List[Package]: The crates.io packages, in file order.

    Raises:
        CargoYankError: `Io` if the file cannot be read or parsed.
    """
    try:
        with open(file_path, "rb") as f:
            data = tomllib.load(f)
    except (OSError, tomllib.TOMLDecodeError) as e:
        raise CargoYankError(ErrorKind.IO, f"Could not parse {file_path}: {e}") from e

    packages = []
    skipped = 0
    for entry in data.get("package", []):
        source = entry.get("source", "")
        if source not in CRATES_IO_SOURCES:
            skipped += 1
            continue
        try:
            packages.append(Package(entry["name"], str(entry["version"])))
        except KeyError as e:
            logger.warning(f"Skipping malformed package entry in {file_path}: missing {e}")

    logger.debug(f"Read {len(packages)} crates.io packages from {file_path} ({skipped} skipped)")
    return packages
