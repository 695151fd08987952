"""Exclusive filesystem lock guarding the local crates.io index.

The lock is the same `flock` cargo takes on `$CARGO_HOME/.package-cache`,
so a running `cargo` and cargoyank never read a half-updated clone.

An `IndexLock` is acquired when it is constructed and released when it goes
out of scope: on `release()`, at the end of a `with` block, when the object is
garbage collected, or at interpreter exit (including after a
`KeyboardInterrupt`). If the process is killed outright the kernel drops the
lock together with the file descriptor.
"""

import logging
import os
import sys
import time
import weakref
from pathlib import Path
from typing import Optional

from ..core.errors import CargoYankError, ErrorKind

if sys.platform == "win32":
    import msvcrt
else:
    import fcntl

logger = logging.getLogger(__name__)

INITIAL_BACKOFF = 0.05
MAX_BACKOFF = 1.0


def _try_lock(fd: int) -> bool:
    """Attempts a non-blocking exclusive lock, returning False if it is held."""
    try:
        if sys.platform == "win32":
            msvcrt.locking(fd, msvcrt.LK_NBLCK, 1)
        else:
            fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
    except (BlockingIOError, PermissionError):
        return False
    except OSError:
        # msvcrt reports a held lock as EDEADLOCK/EACCES.
        if sys.platform == "win32":
            return False
        raise
    return True


def _unlock_and_close(fd: int) -> None:
    try:
        if sys.platform == "win32":
            os.lseek(fd, 0, os.SEEK_SET)
            msvcrt.locking(fd, msvcrt.LK_UNLCK, 1)
        else:
            fcntl.flock(fd, fcntl.LOCK_UN)
    finally:
        os.close(fd)


class IndexLock:
    """Holds cargo's package cache lock for as long as the object lives.

    Args:
        path (Path): The lock file to create and lock.
        timeout (float): Seconds to wait for the lock. `0` fails immediately
            if another process holds it; a positive value retries with
            exponential backoff until the deadline.

    Raises:
        CargoYankError: `LockTimeout` if the lock could not be acquired in
            time, `Io` if the lock file cannot be opened.
    """

    def __init__(self, path: Path, timeout: float) -> None:
        self.path = Path(path)
        self.timeout = timeout
        self._fd: Optional[int] = None
        self._finalizer = None
        self._acquire()

    def _acquire(self) -> None:
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            fd = os.open(self.path, os.O_RDWR | os.O_CREAT, 0o644)
        except OSError as e:
            raise CargoYankError(ErrorKind.IO, f"could not open lock file {self.path}: {e}") from e

        deadline = time.monotonic() + max(self.timeout, 0)
        backoff = INITIAL_BACKOFF
        warned = False
        while not _try_lock(fd):
            remaining = deadline - time.monotonic()
            if self.timeout <= 0 or remaining <= 0:
                os.close(fd)
                raise CargoYankError(
                    ErrorKind.LOCK_TIMEOUT,
                    f"timed out after {self.timeout}s waiting for the lock on {self.path}",
                )
            if not warned:
                logger.warning(f"Waiting for file lock on {self.path} (held by another process)")
                warned = True
            time.sleep(min(backoff, remaining))
            backoff = min(backoff * 2, MAX_BACKOFF)

        self._fd = fd
        self._finalizer = weakref.finalize(self, _unlock_and_close, fd)
        logger.debug(f"Acquired lock on {self.path}")

    @property
    def locked(self) -> bool:
        return self._finalizer is not None and self._finalizer.alive

    def release(self) -> None:
        """Releases the lock. Calling it more than once is harmless."""
        if self.locked:
            self._finalizer()
            logger.debug(f"Released lock on {self.path}")
        self._fd = None

    def __enter__(self) -> "IndexLock":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.release()
