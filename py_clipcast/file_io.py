"""File helpers shared by the run logs, the registry store and clip manifests.

- ``exclusive_file_lock``: advisory lock on ``<path>.lock`` that serializes
  threads of this process and other processes touching the same file.
- ``atomic_write_text``: write to a uniquely named sibling temp file, then
  ``os.replace`` it over the target.
"""

from __future__ import annotations

import logging
import os
import tempfile
import threading
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Dict, Iterator, Optional

try:
    import fcntl
except ImportError:  # pragma: no cover - non-posix fallback
    fcntl = None

LOGGER = logging.getLogger(__name__)

DEFAULT_LOCK_TIMEOUT_S = 5.0
_MARKER_POLL_S = 0.05

# One in-process lock per lock file, keyed by resolved path
_PROCESS_LOCKS: Dict[str, threading.Lock] = {}
_PROCESS_LOCKS_GUARD = threading.Lock()


def lock_path_for(path: Path | str) -> Path:
    path = Path(path)
    return path.with_name(path.name + ".lock")


def _process_lock(lock_path: Path) -> threading.Lock:
    key = str(lock_path.resolve())
    with _PROCESS_LOCKS_GUARD:
        return _PROCESS_LOCKS.setdefault(key, threading.Lock())


@contextmanager
def exclusive_file_lock(path: Path | str, *, timeout_s: float = DEFAULT_LOCK_TIMEOUT_S) -> Iterator[Path]:
    """Hold an exclusive lock for ``path`` until the block exits.

    Not reentrant: acquiring the same path twice from one thread deadlocks.
    ``timeout_s`` only applies to the marker-file fallback used where
    ``fcntl`` is missing; ``flock`` waits as long as needed.
    """
    lock_path = lock_path_for(path)
    lock_path.parent.mkdir(parents=True, exist_ok=True)
    with _process_lock(lock_path):
        if fcntl is not None:
            with _flock(lock_path):
                yield lock_path
        else:
            with _marker_lock(lock_path, timeout_s):
                yield lock_path


@contextmanager
def _flock(lock_path: Path) -> Iterator[None]:
    with lock_path.open("a", encoding="utf-8") as handle:
        fcntl.flock(handle.fileno(), fcntl.LOCK_EX)
        try:
            yield
        finally:
            fcntl.flock(handle.fileno(), fcntl.LOCK_UN)


@contextmanager
def _marker_lock(lock_path: Path, timeout_s: float) -> Iterator[None]:
    deadline = time.monotonic() + timeout_s
    fd: Optional[int] = None
    while fd is None:
        try:
            fd = os.open(lock_path, os.O_CREAT | os.O_EXCL | os.O_WRONLY)
        except FileExistsError:
            if time.monotonic() >= deadline:
                # Stale marker from a crashed writer; go ahead without it
                LOGGER.warning("Gave up waiting %.1fs for lock %s; continuing unlocked", timeout_s, lock_path)
                break
            time.sleep(_MARKER_POLL_S)
    try:
        yield
    finally:
        if fd is not None:
            os.close(fd)
            lock_path.unlink(missing_ok=True)


def atomic_write_text(path: Path | str, text: str) -> Path:
    """Replace ``path`` with ``text`` so readers never see a partial file.

    Each call writes its own temp file, so concurrent writers of the same
    path never share one. The temp file is removed if anything fails.
    """
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_name: Optional[str] = None
    try:
        with tempfile.NamedTemporaryFile(
            "w",
            encoding="utf-8",
            dir=path.parent,
            prefix=f"{path.name}.",
            suffix=".tmp",
            delete=False,
        ) as handle:
            tmp_name = handle.name
            handle.write(text)
        os.replace(tmp_name, path)
    except BaseException:
        if tmp_name is not None:
            Path(tmp_name).unlink(missing_ok=True)
        raise
    return path


__all__ = ["DEFAULT_LOCK_TIMEOUT_S", "atomic_write_text", "exclusive_file_lock", "lock_path_for"]
