"""Package identities and the crate metadata read from the index.

Versions are kept as opaque strings. The crates.io index contains version
strings that are not valid semver, so nothing here parses or orders them
beyond plain string comparison.
"""

import sys
from dataclasses import dataclass, field
from typing import Dict, Tuple


@dataclass(frozen=True, order=True)
class Package:
    """A crate pinned at one version, e.g. an entry of a `Cargo.lock`."""

    name: str
    version: str

    def __post_init__(self) -> None:
        # Names repeat across thousands of lookups; share one string object.
        object.__setattr__(self, "name", sys.intern(self.name))

    def __str__(self) -> str:
        return f"{self.name} {self.version}"


@dataclass(frozen=True)
class CrateVersion:
    """One line of a crate's index file."""

    version: str
    yanked: bool = False


@dataclass(frozen=True)
class CrateMetadata:
    """Everything the index knows about one crate, as a single unit."""

    name: str
    versions: Tuple[CrateVersion, ...] = field(default_factory=tuple)

    def yank_map(self) -> Dict[str, bool]:
        """Maps every published version string to its yanked flag."""
        return {v.version: v.yanked for v in self.versions}
