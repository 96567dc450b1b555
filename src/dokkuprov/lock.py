"""
Host run-lock.

A provisioning run owns the host configuration for its whole duration.
A second invocation against the same host fails fast with
``RunLockHeld`` instead of waiting; the operator decides what to do.

The lock is an ``flock`` on a file in the state directory, so it is
released by the kernel if the process dies.
"""

from __future__ import annotations

import contextlib
import fcntl
import logging
import os
from pathlib import Path
from typing import Generator, IO

from dokkuprov.errors import RunLockHeld

logger = logging.getLogger(__name__)


@contextlib.contextmanager
def run_lock(path: Path) -> Generator[IO, None, None]:
    """
    Hold the exclusive run-lock for the duration of the block.

    The holder's PID is written into the lock file for diagnostics.

    Raises:
        RunLockHeld: another process holds the lock
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    lock_file = open(path, "a+")
    try:
        try:
            fcntl.flock(lock_file.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
        except BlockingIOError:
            lock_file.seek(0)
            holder = lock_file.read().strip() or "unknown"
            raise RunLockHeld(f"Another provisioning run holds {path} (pid {holder})") from None
        lock_file.seek(0)
        lock_file.truncate()
        lock_file.write(str(os.getpid()))
        lock_file.flush()
        logger.debug("Acquired run-lock %s", path)
        try:
            yield lock_file
        finally:
            lock_file.seek(0)
            lock_file.truncate()
            fcntl.flock(lock_file.fileno(), fcntl.LOCK_UN)
    finally:
        lock_file.close()
