"""Storage backends for the identity registry.

The registry is persisted as a single JSON document:

    {
      "schema_version": "identity_registry_v1",
      "dimension": 512,
      "next_seq": 3,
      "identities": [...],
      "clips": {"<clip_id>": {...}}
    }

Backends only move documents; all registry semantics live in
``identity_registry``. Any I/O failure is raised as RegistryUnavailable.

Every backend exposes ``lock()``, the registry-wide write lock. Handles that
share a store (or a JSON path, across processes) serialize on it.
"""

from __future__ import annotations

import copy
import json
import logging
import threading
from abc import ABC, abstractmethod
from contextlib import contextmanager
from pathlib import Path
from typing import Any, ContextManager, Dict, Iterator, Optional

from py_clipcast.errors import RegistryUnavailable
from py_clipcast.file_io import atomic_write_text, exclusive_file_lock

LOGGER = logging.getLogger(__name__)


class IdentityStore(ABC):
    """Abstract base class for registry storage backends."""

    @property
    @abstractmethod
    def backend_type(self) -> str:
        """Return the backend type identifier ('memory', 'json')."""
        ...

    @abstractmethod
    def load(self) -> Optional[Dict[str, Any]]:
        """Return the stored document, or None when nothing was saved yet."""
        ...

    @abstractmethod
    def save(self, document: Dict[str, Any]) -> None:
        """Replace the stored document."""
        ...

    @abstractmethod
    def lock(self) -> ContextManager[None]:
        """Exclusive write lock held across a load-modify-save cycle."""
        ...


class InMemoryIdentityStore(IdentityStore):
    """Keeps the document in process memory (tests, one-off jobs)."""

    def __init__(self, document: Optional[Dict[str, Any]] = None) -> None:
        self._document = copy.deepcopy(document) if document is not None else None
        self._lock = threading.Lock()
        self._writer_lock = threading.Lock()

    @property
    def backend_type(self) -> str:
        return "memory"

    def load(self) -> Optional[Dict[str, Any]]:
        with self._lock:
            return copy.deepcopy(self._document)

    def save(self, document: Dict[str, Any]) -> None:
        with self._lock:
            self._document = copy.deepcopy(document)

    @contextmanager
    def lock(self) -> Iterator[None]:
        with self._writer_lock:
            yield


class JsonIdentityStore(IdentityStore):
    """Single JSON file, replaced atomically on every save.

    ``lock()`` takes an advisory lock on ``<path>.lock``, so every handle on
    the same file (in this process or another) commits one at a time.
    """

    def __init__(self, path: Path | str) -> None:
        self.path = Path(path).expanduser()

    @property
    def backend_type(self) -> str:
        return "json"

    def load(self) -> Optional[Dict[str, Any]]:
        if not self.path.exists():
            LOGGER.debug("Identity registry not found at %s; starting empty", self.path)
            return None
        try:
            with self.path.open("r", encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as exc:
            raise RegistryUnavailable(f"Failed to read identity registry {self.path}: {exc}") from exc
        if not isinstance(data, dict):
            raise RegistryUnavailable(f"Identity registry {self.path} is not a JSON object")
        return data

    def save(self, document: Dict[str, Any]) -> None:
        try:
            atomic_write_text(self.path, json.dumps(document, indent=2))
        except OSError as exc:
            raise RegistryUnavailable(f"Failed to write identity registry {self.path}: {exc}") from exc
        LOGGER.debug("Saved identity registry to %s", self.path)

    @contextmanager
    def lock(self) -> Iterator[None]:
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise RegistryUnavailable(f"Failed to lock identity registry {self.path}: {exc}") from exc
        with exclusive_file_lock(self.path):
            yield


__all__ = ["IdentityStore", "InMemoryIdentityStore", "JsonIdentityStore"]
