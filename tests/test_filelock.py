"""Tests for bibstash.filelock: per-collection index locking."""

from __future__ import annotations

import fcntl
import threading
from pathlib import Path

import pytest

from bibstash.filelock import LockTimeout, collection_lock, lock_path


def _hold(path: Path):
    """Grab the flock through a separate descriptor, like another pass would."""
    path.parent.mkdir(parents=True, exist_ok=True)
    blocker = open(path, "w")
    fcntl.flock(blocker, fcntl.LOCK_EX | fcntl.LOCK_NB)
    return blocker


def _release(blocker) -> None:
    fcntl.flock(blocker, fcntl.LOCK_UN)
    blocker.close()


def test_lock_path_next_to_index(tmp_path: Path) -> None:
    assert lock_path(tmp_path / "works") == tmp_path / "works" / "index.json.lock"


def test_lock_creates_lock_file_and_dir(tmp_path: Path) -> None:
    cdir = tmp_path / "works"
    with collection_lock(cdir) as path:
        assert path.exists()
        assert cdir.is_dir()


def test_lock_released_on_exception(tmp_path: Path) -> None:
    cdir = tmp_path / "works"
    with pytest.raises(ValueError):
        with collection_lock(cdir):
            raise ValueError("boom")

    with collection_lock(cdir, timeout=0):
        pass


def test_lock_timeout_when_held(tmp_path: Path) -> None:
    cdir = tmp_path / "works"
    blocker = _hold(lock_path(cdir))
    try:
        with pytest.raises(LockTimeout, match="works"):
            with collection_lock(cdir, timeout=0.15):
                pass  # pragma: no cover
    finally:
        _release(blocker)


def test_lock_timeout_zero(tmp_path: Path) -> None:
    """timeout=0 means exactly one non-blocking attempt."""
    cdir = tmp_path / "works"
    blocker = _hold(lock_path(cdir))
    try:
        with pytest.raises(LockTimeout):
            with collection_lock(cdir, timeout=0):
                pass  # pragma: no cover
    finally:
        _release(blocker)


def test_other_collections_not_blocked(tmp_path: Path) -> None:
    blocker = _hold(lock_path(tmp_path / "works"))
    try:
        with collection_lock(tmp_path / "authors", timeout=0):
            pass
    finally:
        _release(blocker)


def test_waits_for_release(tmp_path: Path) -> None:
    cdir = tmp_path / "works"
    blocker = _hold(lock_path(cdir))
    timer = threading.Timer(0.1, _release, args=(blocker,))
    timer.start()
    try:
        with collection_lock(cdir, timeout=2.0):
            pass
    finally:
        timer.join()


def test_lock_timeout_is_oserror() -> None:
    assert issubclass(LockTimeout, OSError)
