"""Shared test doubles for the cargoyank test-suite."""
from pathlib import Path
from typing import Dict, Iterable, Optional

from cargoyank.core.base_backend import IndexBackend
from cargoyank.core.config import Config
from cargoyank.core.errors import CargoYankError, ErrorKind
from cargoyank.core.package import CrateMetadata, CrateVersion
from cargoyank.utils.index_layout import IndexKind, IndexLocation


def make_location(root: Path, url: str = "https://index.example/") -> IndexLocation:
    return IndexLocation(kind=IndexKind.SPARSE, url=url, path=root / "index", lock_path=root / ".package-cache")


def make_crate(name: str, versions: Dict[str, bool]) -> CrateMetadata:
    return CrateMetadata(name=name, versions=tuple(CrateVersion(v, y) for v, y in versions.items()))


class FakeBackend(IndexBackend):
    """Serves crates from a dict and records every lookup."""

    name = "Fake"

    def __init__(self, crates: Dict[str, CrateMetadata], failing: Iterable[str] = (),
                 config: Optional[Config] = None) -> None:
        super().__init__(make_location(Path("/nonexistent")), config or Config())
        self.crates = crates
        self.failing = set(failing)
        self.calls = []
        self.closed = False

    def krate(self, name):
        self.calls.append(name)
        if name in self.failing:
            raise CargoYankError(ErrorKind.IO, f"disk error reading {name}")
        return self.crates.get(name)

    def close(self):
        self.closed = True


class FakeBatchBackend(FakeBackend):
    """A FakeBackend that takes the batch path, optionally failing wholesale.

    With `finished_before_error` set, that many crates are reported through
    `on_result` before `batch_error` is raised.
    """

    name = "FakeBatch"
    supports_batch = True

    def __init__(self, *args, batch_error: Optional[CargoYankError] = None,
                 finished_before_error: int = 0, **kwargs) -> None:
        super().__init__(*args, **kwargs)
        self.batch_error = batch_error
        self.finished_before_error = finished_before_error
        self.batches = []

    def krates_batch(self, names, per_item_timeout, on_result=None):
        names = list(names)
        self.batches.append((names, per_item_timeout))
        if self.batch_error is not None:
            for name in names[:self.finished_before_error]:
                if on_result is not None:
                    on_result(name, self.crates.get(name))
            raise self.batch_error
        return super().krates_batch(names, per_item_timeout, on_result)
