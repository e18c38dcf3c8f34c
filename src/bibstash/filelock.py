"""Exclusive ownership of a collection index for one pass.

Only one reconcile + seed + save cycle may write a collection's
``index.json`` at a time. :func:`collection_lock` holds an ``fcntl.flock``
on ``<collection>/index.json.lock`` for the whole cycle. The kernel drops
the lock with the descriptor, so a crashed run leaves nothing to clean up.

Not reentrant: taking the lock twice in one process waits on itself.
"""

from __future__ import annotations

import fcntl
import logging
import time
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import IO

from bibstash.paths import INDEX_FILENAME

logger = logging.getLogger(__name__)

DEFAULT_LOCK_TIMEOUT = 30.0
LOCK_SUFFIX = ".lock"

_POLL_INTERVAL = 0.05


class LockTimeout(OSError):
    """Another process holds the collection lock."""


def lock_path(collection_dir: Path) -> Path:
    return collection_dir / (INDEX_FILENAME + LOCK_SUFFIX)


def _try_lock(fh: IO[str]) -> bool:
    try:
        fcntl.flock(fh, fcntl.LOCK_EX | fcntl.LOCK_NB)
    except BlockingIOError:
        return False
    return True


@contextmanager
def collection_lock(collection_dir: Path, timeout: float = DEFAULT_LOCK_TIMEOUT) -> Iterator[Path]:
    """Hold the collection's index lock for the duration of the block.

    Polls every 50 ms until *timeout* seconds have passed; ``timeout=0``
    tries exactly once. The collection directory is created if needed.
    Yields the lock file path and raises :class:`LockTimeout` when the
    lock is still taken at the deadline.
    """
    path = lock_path(collection_dir)
    collection_dir.mkdir(parents=True, exist_ok=True)
    deadline = time.monotonic() + timeout
    with open(path, "a") as fh:
        while not _try_lock(fh):
            if time.monotonic() >= deadline:
                raise LockTimeout(
                    f"Collection '{collection_dir.name}' is locked by another "
                    f"pass ({path}); gave up after {timeout:.1f}s"
                )
            time.sleep(_POLL_INTERVAL)
        logger.debug("Locked %s", collection_dir.name)
        try:
            yield path
        finally:
            fcntl.flock(fh, fcntl.LOCK_UN)
            logger.debug("Unlocked %s", collection_dir.name)
