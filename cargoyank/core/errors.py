"""Error type shared by every layer of cargoyank."""

from enum import Enum


class ErrorKind(str, Enum):
    """Categories of failure that callers may want to tell apart."""

    LOCK_TIMEOUT = "LockTimeout"
    REGISTRY_UNSUPPORTED = "RegistryUnsupported"
    REGISTRY = "Registry"
    NOT_FOUND = "NotFound"
    IO = "Io"


class CargoYankError(Exception):
    """An error raised (or collected) while checking crates against the index.

    Attributes:
        kind (ErrorKind): The category of the failure.
        message (str): A human readable description.
    """

    def __init__(self, kind: ErrorKind, message: str) -> None:
        super().__init__(message)
        self.kind = kind
        self.message = message

    def __str__(self) -> str:
        return f"{self.kind.value}: {self.message}"

    def __repr__(self) -> str:
        return f"CargoYankError({self.kind.value!r}, {self.message!r})"

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, CargoYankError):
            return NotImplemented
        return self.kind == other.kind and self.message == other.message

    def __hash__(self) -> int:
        return hash((self.kind, self.message))
