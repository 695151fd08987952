"""
Base class that every crates.io index backend inherits from.
"""

from abc import ABC, abstractmethod
from typing import Callable, Dict, Iterable, Optional, Union, TYPE_CHECKING

from .errors import CargoYankError
from .package import CrateMetadata

if TYPE_CHECKING:
    from .config import Config
    from ..utils.index_layout import IndexLocation

# What a backend can say about one crate: its metadata, None when the index
# has no such crate, or the error that prevented finding out.
KrateResult = Union[Optional[CrateMetadata], CargoYankError]

# Called with each crate's result as soon as it is known.
ResultCallback = Callable[[str, KrateResult], None]


class IndexBackend(ABC):
    """Abstract base class for the ways of reading the crates.io index.

    All backends expose the same single-crate read so that `CachedIndex`
    can stay agnostic of where the data comes from. Backends that can fetch
    many crates concurrently set `supports_batch` and override
    `krates_batch`.

    Attributes:
        name (str): The display name of the backend.
        supports_batch (bool): Whether `krates_batch` issues concurrent
            network requests rather than looping over `krate`.
    """

    name: str = "UnnamedBackend"
    supports_batch: bool = False

    def __init__(self, location: "IndexLocation", config: "Config") -> None:
        """Initializes the backend.

        Args:
            location (IndexLocation): Where the index lives.
            config (Config): The application's configuration object.
        """
        self.location = location
        self.config = config

    def fetch_latest(self) -> None:
        """Refreshes local index data over the network.

        Only meaningful for backends that keep a full local copy; the
        default does nothing.
        """

    @abstractmethod
    def krate(self, name: str) -> Optional[CrateMetadata]:
        """Reads one crate's metadata.

        Args:
            name (str): The crate name.

        Returns:
            Optional[CrateMetadata]: The crate, or None if the index has no
            crate by that name.

        Raises:
            CargoYankError: If the index could not be read.
        """
        raise NotImplementedError("Subclasses must implement krate()")

    def krates_batch(self, names: Iterable[str], per_item_timeout: float,
                     on_result: Optional[ResultCallback] = None) -> Dict[str, KrateResult]:
        """Reads many crates, isolating failures per crate.

        The default implementation loops over `krate`; `per_item_timeout`
        only matters for backends that go to the network.

        Args:
            names (Iterable[str]): The crate names.
            per_item_timeout (float): Seconds each crate may take.
            on_result (Optional[ResultCallback]): Receives every result as
                soon as it is known, so finished crates are not lost if the
                batch fails later on.

        Returns:
            Dict[str, KrateResult]: One entry per requested name.
        """
        results: Dict[str, KrateResult] = {}
        for name in names:
            try:
                results[name] = self.krate(name)
            except CargoYankError as e:
                results[name] = e
            if on_result is not None:
                on_result(name, results[name])
        return results

    def close(self) -> None:
        """Releases resources held by the backend."""

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.location.path})"
