"""
Lock management for ship.

Uses flock on a lock file next to the data it protects, so that separate ship
processes (and separate agent sessions) serialize their read-modify-write
cycles. The kernel drops the lock when the holder exits, so a crashed process
never leaves a stale lock behind.
"""

import asyncio
import fcntl
import os
import time
from contextlib import asynccontextmanager, contextmanager
from pathlib import Path
from typing import AsyncIterator, Iterator, TextIO

from .errors import LockTimeoutError

POLL_INTERVAL_SECONDS = 0.1


def _acquire(lock_file: Path, timeout: float, lock_name: str) -> TextIO:
    lock_file.parent.mkdir(parents=True, exist_ok=True)

    fd = open(lock_file, 'w')
    start = time.monotonic()

    while True:
        try:
            fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
            break
        except BlockingIOError:
            if time.monotonic() - start > timeout:
                fd.close()
                raise LockTimeoutError(f"Could not acquire {lock_name} within {timeout}s")
            time.sleep(POLL_INTERVAL_SECONDS)

    fd.write(f"{os.getpid()}\n")
    fd.flush()
    return fd


def _release(fd: TextIO) -> None:
    fcntl.flock(fd, fcntl.LOCK_UN)
    fd.close()


@contextmanager
def file_lock(lock_file: Path, timeout: float, lock_name: str = "lock") -> Iterator[None]:
    """Acquire an exclusive lock on lock_file, yield, release on exit.

    Args:
        lock_file: Path to the lock file (created if missing)
        timeout: Seconds to wait for the lock
        lock_name: Human-readable name for error messages

    Raises:
        LockTimeoutError: If the lock is still held by another process after timeout
    """
    fd = _acquire(lock_file, timeout, lock_name)
    try:
        yield
    finally:
        _release(fd)


@asynccontextmanager
async def async_file_lock(lock_file: Path, timeout: float, lock_name: str = "lock") -> AsyncIterator[None]:
    """Same as file_lock, but waits for the lock in a worker thread.

    The event loop keeps running while another process holds the lock.
    """
    fd = await asyncio.to_thread(_acquire, lock_file, timeout, lock_name)
    try:
        yield
    finally:
        _release(fd)
