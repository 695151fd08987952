"""Decodes crate index files and reads/writes cargo's index cache entries.

A crate's index file holds one JSON object per line, one line per
published version. Cargo keeps a binary cache of those files below
`<index>/.cache/` laid out as::

    u8   cache version (3)
    u32  index format version, little endian (2)
    str  revision (git commit, `etag: ...` or `last-modified: ...`), NUL
    then, repeated: version NUL json NUL
"""

import json
import struct
from pathlib import Path
from typing import Iterable, List, Optional, Tuple

from ..core.package import CrateMetadata, CrateVersion

CACHE_VERSION = 3
INDEX_FORMAT_VERSION = 2

_HEADER = struct.Struct("<BI")


class CacheEntry:
    """A decoded cache file: the revision it was taken at and its lines."""

    def __init__(self, revision: str, lines: List[Tuple[str, bytes]]) -> None:
        self.revision = revision
        self.lines = lines

    def to_metadata(self, name: str) -> CrateMetadata:
        return parse_index_lines(name, (json_line for _, json_line in self.lines))


def _parse_line(line: bytes) -> CrateVersion:
    record = json.loads(line)
    return CrateVersion(version=str(record["vers"]), yanked=bool(record.get("yanked", False)))


def parse_index_lines(name: str, lines: Iterable[bytes]) -> CrateMetadata:
    """Builds crate metadata from the JSON lines of an index file.

    Raises:
        ValueError: If a line is not a valid index record.
    """
    versions = []
    for line in lines:
        line = line.strip()
        if not line:
            continue
        try:
            versions.append(_parse_line(line))
        except (json.JSONDecodeError, KeyError, TypeError) as e:
            raise ValueError(f"malformed index entry for {name}: {e}") from e
    return CrateMetadata(name=name, versions=tuple(versions))


def parse_index_file(name: str, data: bytes) -> CrateMetadata:
    return parse_index_lines(name, data.splitlines())


def decode_cache_entry(data: bytes) -> CacheEntry:
    """Decodes the bytes of a cargo cache file.

    Raises:
        ValueError: If the file has an unknown version or is truncated.
    """
    if len(data) < _HEADER.size:
        raise ValueError("cache entry is truncated")
    cache_version, index_version = _HEADER.unpack_from(data)
    if cache_version != CACHE_VERSION or index_version != INDEX_FORMAT_VERSION:
        raise ValueError(f"unsupported cache entry version {cache_version}/{index_version}")

    parts = data[_HEADER.size:].split(b"\0")
    # A well formed entry ends in NUL, leaving one empty trailing part.
    if parts and parts[-1] == b"":
        parts.pop()
    if not parts or len(parts) % 2 != 1:
        raise ValueError("cache entry is truncated")

    revision = parts[0].decode("utf-8")
    lines = [
        (parts[i].decode("utf-8"), parts[i + 1])
        for i in range(1, len(parts), 2)
    ]
    return CacheEntry(revision, lines)


def encode_cache_entry(revision: str, index_file: bytes) -> bytes:
    """Encodes a crate's raw index file as a cargo cache entry."""
    out = bytearray(_HEADER.pack(CACHE_VERSION, INDEX_FORMAT_VERSION))
    out += revision.encode("utf-8") + b"\0"
    for line in index_file.splitlines():
        line = line.strip()
        if not line:
            continue
        version = _parse_line(line).version
        out += version.encode("utf-8") + b"\0" + line + b"\0"
    return bytes(out)


def read_cache_file(path: Path) -> Optional[CacheEntry]:
    """Reads a cache file, returning None when it does not exist.

    Raises:
        OSError: If the file exists but cannot be read.
        ValueError: If the file cannot be decoded.
    """
    try:
        data = path.read_bytes()
    except FileNotFoundError:
        return None
    return decode_cache_entry(data)


def write_cache_file(path: Path, revision: str, index_file: bytes) -> None:
    """Atomically writes a cache file next to its final location."""
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = path.with_name(path.name + ".tmp")
    tmp_path.write_bytes(encode_cache_entry(revision, index_file))
    tmp_path.replace(path)
