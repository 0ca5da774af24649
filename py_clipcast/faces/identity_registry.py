"""Identity registry for cross-clip face identities.

Handles:
- Storing and loading identities (centroid, count, representative, label)
- Nearest-identity lookup by cosine similarity
- Creating identities and merging detections into them
- The clip ledger (which clips were resolved, and to what)

Writes happen inside ``write_section``: one global section at a time (held
via the store lock, so separate handles and processes serialize too), working
on a freshly reloaded copy-on-write view that is persisted and published
only when the section exits cleanly. Readers always see the last published
state and never wait for a writer.
"""

from __future__ import annotations

import logging
import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any, Dict, Iterator, List, Optional, Tuple

import numpy as np
from pydantic import BaseModel, Field

from py_clipcast.errors import DimensionMismatch, RegistryUnavailable
from py_clipcast.pipeline.constants import (
    DEFAULT_MATCH_THRESHOLD,
    DEFAULT_SIMILAR_MAX_RESULTS,
    DEFAULT_SIMILAR_THRESHOLD,
    REGISTRY_SCHEMA_VERSION,
)
from py_clipcast.vector_math import VectorLike, as_vector, cosine_similarity, running_mean

from .models import (
    ClusterResolution,
    FaceDetection,
    Identity,
    MergeResult,
    RegistryConfig,
    RepresentativeRef,
    utcnow_iso,
)
from .registry_store import IdentityStore, InMemoryIdentityStore, JsonIdentityStore
from .representative import RepresentativeSelector

LOGGER = logging.getLogger(__name__)


class ClipContribution(BaseModel):
    """What one clip added to one identity (enough to take it back out)."""
    count: int = Field(..., ge=1)
    embedding_sum: List[float]


class ClipLedgerEntry(BaseModel):
    """Record of one resolved clip."""
    clip_id: str
    fingerprint: str
    assignments: Dict[str, str] = Field(default_factory=dict, description="detection_id -> identity_id")
    clusters: List[ClusterResolution] = Field(default_factory=list)
    contributions: Dict[str, ClipContribution] = Field(default_factory=dict, description="identity_id -> samples merged")
    resolved_at: str = Field(default_factory=utcnow_iso)


@dataclass
class _RegistryState:
    dimension: Optional[int] = None
    next_seq: int = 1
    # Insertion order is creation order
    identities: Dict[str, Identity] = field(default_factory=dict)
    clips: Dict[str, ClipLedgerEntry] = field(default_factory=dict)

    def fork(self) -> "_RegistryState":
        # Shallow: identities are copied on first write by the transaction
        return _RegistryState(
            dimension=self.dimension,
            next_seq=self.next_seq,
            identities=dict(self.identities),
            clips=dict(self.clips),
        )

    def to_document(self) -> Dict[str, Any]:
        return {
            "schema_version": REGISTRY_SCHEMA_VERSION,
            "dimension": self.dimension,
            "next_seq": self.next_seq,
            "identities": [identity.model_dump() for identity in self.identities.values()],
            "clips": {clip_id: entry.model_dump() for clip_id, entry in self.clips.items()},
        }

    @classmethod
    def from_document(cls, document: Dict[str, Any]) -> "_RegistryState":
        version = document.get("schema_version", REGISTRY_SCHEMA_VERSION)
        if version != REGISTRY_SCHEMA_VERSION:
            raise RegistryUnavailable(f"Unsupported identity registry schema '{version}'")
        try:
            identities = [Identity(**item) for item in document.get("identities") or []]
            clips = {
                str(clip_id): ClipLedgerEntry(**entry)
                for clip_id, entry in (document.get("clips") or {}).items()
            }
        except (TypeError, ValueError) as exc:
            raise RegistryUnavailable(f"Corrupt identity registry document: {exc}") from exc
        identities.sort(key=lambda ident: ident.creation_order)
        next_seq = int(document.get("next_seq") or 0)
        if identities:
            next_seq = max(next_seq, identities[-1].creation_order + 1)
        dimension = document.get("dimension")
        return cls(
            dimension=int(dimension) if dimension else None,
            next_seq=max(next_seq, 1),
            identities={ident.identity_id: ident for ident in identities},
            clips=clips,
        )


def _check_dimension(state: _RegistryState, vector: VectorLike, context: str) -> None:
    if state.dimension is not None and len(vector) != state.dimension:
        raise DimensionMismatch(state.dimension, len(vector), context=context)


def _rank_identities(
    state: _RegistryState,
    embedding: VectorLike,
    threshold: float,
) -> List[Tuple[Identity, float]]:
    """Identities with similarity strictly above ``threshold``, best first.

    Ties keep creation order (the sort is stable).
    """
    _check_dimension(state, embedding, "registry lookup")
    query = as_vector(embedding)
    scored = [(identity, cosine_similarity(query, identity.centroid)) for identity in state.identities.values()]
    matches = [(identity, sim) for identity, sim in scored if sim > threshold]
    matches.sort(key=lambda item: -item[1])
    return matches


def _best_match(state: _RegistryState, embedding: VectorLike, threshold: float) -> Optional[Tuple[Identity, float]]:
    _check_dimension(state, embedding, "registry lookup")
    query = as_vector(embedding)
    best: Optional[Identity] = None
    best_similarity = 0.0
    for identity in state.identities.values():
        similarity = cosine_similarity(query, identity.centroid)
        # Strict ">" keeps the earliest-created identity on ties
        if best is None or similarity > best_similarity:
            best = identity
            best_similarity = similarity
    if best is None or best_similarity <= threshold:
        return None
    return best, best_similarity


class RegistryTransaction:
    """Mutable view of the registry inside one write section."""

    def __init__(self, state: _RegistryState, selector: RepresentativeSelector, clip_id: Optional[str]) -> None:
        self._state = state
        self._selector = selector
        self._touched: set[str] = set()
        # identity_id -> (sum of merged vectors, sample count) for this section
        self._contributions: Dict[str, Tuple[np.ndarray, int]] = {}
        self.clip_id = clip_id
        self.created: List[str] = []
        self.updated: List[str] = []
        self.removed: List[str] = []

    @property
    def dimension(self) -> Optional[int]:
        return self._state.dimension

    def get(self, identity_id: str) -> Optional[Identity]:
        return self._state.identities.get(identity_id)

    def match_with_similarity(
        self,
        embedding: VectorLike,
        threshold: float = DEFAULT_MATCH_THRESHOLD,
    ) -> Optional[Tuple[Identity, float]]:
        return _best_match(self._state, embedding, threshold)

    def create(
        self,
        embedding: VectorLike,
        representative_detection: FaceDetection,
        clip_id: Optional[str] = None,
    ) -> Identity:
        """Allocate a new identity with count=1."""
        _check_dimension(self._state, embedding, "create identity")
        vector = as_vector(embedding)
        if self._state.dimension is None:
            self._state.dimension = int(vector.shape[0])

        seq = self._state.next_seq
        self._state.next_seq += 1
        clip = clip_id or representative_detection.clip_id
        identity = Identity(
            identity_id=f"ID_{seq:05d}",
            creation_order=seq,
            centroid=vector.tolist(),
            count=1,
            representative=RepresentativeRef.from_detection(representative_detection),
            first_seen_clip_id=clip,
            clip_ids=[clip] if clip else [],
        )
        self._state.identities[identity.identity_id] = identity
        self._touched.add(identity.identity_id)
        self._contribute(identity.identity_id, vector)
        self.created.append(identity.identity_id)
        LOGGER.debug("Created identity %s from clip %s", identity.identity_id, clip)
        return identity

    def merge(self, identity_id: str, embedding: VectorLike, detection: FaceDetection) -> MergeResult:
        """Fold one detection into an identity (running-mean centroid)."""
        identity = self._mutable(identity_id)
        _check_dimension(self._state, embedding, f"merge into {identity_id}")

        new_centroid = running_mean(identity.centroid, identity.count, embedding)
        identity.centroid = new_centroid.tolist()
        identity.count += 1
        self._contribute(identity_id, as_vector(embedding))

        replaced = self._selector.should_replace(identity.representative, detection, new_centroid)
        if replaced:
            identity.representative = RepresentativeRef.from_detection(detection)

        if detection.clip_id and detection.clip_id not in identity.clip_ids:
            identity.clip_ids.append(detection.clip_id)
        identity.updated_at = utcnow_iso()

        return MergeResult(
            identity_id=identity_id,
            centroid=identity.centroid,
            count=identity.count,
            representative_replaced=replaced,
        )

    def set_label(
        self,
        identity_id: str,
        label: Optional[str],
        *,
        aliases: Optional[List[str]] = None,
        attributes: Optional[Dict[str, Any]] = None,
    ) -> Identity:
        identity = self._mutable(identity_id)
        identity.label = label
        if aliases is not None:
            identity.aliases = list(dict.fromkeys(aliases))
        if attributes is not None:
            identity.attributes = dict(attributes)
        identity.updated_at = utcnow_iso()
        return identity

    def clip_entry(self, clip_id: str) -> Optional[ClipLedgerEntry]:
        return self._state.clips.get(clip_id)

    def record_clip(
        self,
        clip_id: str,
        fingerprint: str,
        assignments: Dict[str, str],
        clusters: List[ClusterResolution],
    ) -> ClipLedgerEntry:
        entry = ClipLedgerEntry(
            clip_id=clip_id,
            fingerprint=fingerprint,
            assignments=dict(assignments),
            clusters=list(clusters),
            contributions={
                identity_id: ClipContribution(count=count, embedding_sum=total.tolist())
                for identity_id, (total, count) in self._contributions.items()
            },
        )
        self._state.clips[clip_id] = entry
        return entry

    def retract_clip(self, clip_id: str) -> Optional[ClipLedgerEntry]:
        """Take a resolved clip's merges back out and drop its ledger entry.

        Each identity loses the samples the clip contributed (count and
        centroid sum). Identities left with nothing are removed; their
        sequence numbers are not reused. Representatives are kept as they are.
        Returns the dropped entry, or None if the clip is not in the ledger.
        """
        entry = self._state.clips.pop(clip_id, None)
        if entry is None:
            return None
        for identity_id, contribution in entry.contributions.items():
            current = self._state.identities.get(identity_id)
            if current is None:
                continue
            remaining = current.count - contribution.count
            if remaining <= 0:
                del self._state.identities[identity_id]
                self._touched.discard(identity_id)
                self.removed.append(identity_id)
                continue
            identity = self._mutable(identity_id)
            total = as_vector(identity.centroid) * identity.count - as_vector(contribution.embedding_sum)
            identity.centroid = (total / remaining).tolist()
            identity.count = remaining
            if clip_id in identity.clip_ids:
                identity.clip_ids.remove(clip_id)
            if identity.first_seen_clip_id == clip_id:
                identity.first_seen_clip_id = identity.clip_ids[0] if identity.clip_ids else None
            identity.updated_at = utcnow_iso()
        return entry

    def _contribute(self, identity_id: str, vector: np.ndarray) -> None:
        total, count = self._contributions.get(identity_id, (np.zeros_like(vector), 0))
        self._contributions[identity_id] = (total + vector, count + 1)

    def _mutable(self, identity_id: str) -> Identity:
        identity = self._state.identities.get(identity_id)
        if identity is None:
            raise KeyError(f"Unknown identity '{identity_id}'")
        if identity_id not in self._touched:
            identity = identity.model_copy(deep=True)
            self._state.identities[identity_id] = identity
            self._touched.add(identity_id)
            self.updated.append(identity_id)
        return identity


class IdentityRegistry:
    """Durable catalog of identities, queryable by similarity."""

    def __init__(
        self,
        store: Optional[IdentityStore] = None,
        *,
        embedding_dim: Optional[int] = None,
        selector: Optional[RepresentativeSelector] = None,
    ) -> None:
        self._store = store or InMemoryIdentityStore()
        self._selector = selector or RepresentativeSelector()
        self._write_lock = threading.RLock()
        self._active: Optional[RegistryTransaction] = None
        self._configured_dim = embedding_dim
        self._state = self._load_state()

    @classmethod
    def from_config(cls, config: Optional[RegistryConfig] = None) -> "IdentityRegistry":
        config = config or RegistryConfig()
        store: IdentityStore = JsonIdentityStore(config.path) if config.path else InMemoryIdentityStore()
        return cls(store, embedding_dim=config.embedding_dim)

    def _read_state(self) -> _RegistryState:
        document = self._store.load()
        state = _RegistryState.from_document(document) if document else _RegistryState()
        if state.dimension is None:
            state.dimension = self._configured_dim
        return state

    def _load_state(self) -> _RegistryState:
        state = self._read_state()
        if self._configured_dim and self._configured_dim != state.dimension:
            LOGGER.warning(
                "Configured embedding_dim=%d differs from stored registry dimension %d; "
                "lookups with %d-d embeddings will fail",
                self._configured_dim,
                state.dimension,
                self._configured_dim,
            )
        LOGGER.info(
            "Loaded identity registry (%s backend): %d identities, %d clips",
            self._store.backend_type,
            len(state.identities),
            len(state.clips),
        )
        return state

    def reload(self) -> None:
        """Re-read the store (e.g. after another process committed)."""
        with self._write_lock:
            self._state = self._load_state()

    # ------------------------------------------------------------------
    # Read-only API (published state; safe during a write section)
    # ------------------------------------------------------------------

    @property
    def dimension(self) -> Optional[int]:
        return self._state.dimension

    def __len__(self) -> int:
        return len(self._state.identities)

    def __contains__(self, identity_id: object) -> bool:
        return identity_id in self._state.identities

    def get(self, identity_id: str) -> Optional[Identity]:
        identity = self._state.identities.get(identity_id)
        return identity.model_copy(deep=True) if identity else None

    def list_identities(self) -> List[Identity]:
        return [identity.model_copy(deep=True) for identity in self._state.identities.values()]

    def find_best_match(
        self,
        embedding: VectorLike,
        threshold: float = DEFAULT_MATCH_THRESHOLD,
    ) -> Optional[Identity]:
        """Identity with the highest similarity, if it exceeds ``threshold``."""
        match = _best_match(self._state, embedding, threshold)
        return match[0].model_copy(deep=True) if match else None

    def find_similar(
        self,
        embedding: VectorLike,
        threshold: float = DEFAULT_SIMILAR_THRESHOLD,
        max_results: int = DEFAULT_SIMILAR_MAX_RESULTS,
    ) -> List[Tuple[Identity, float]]:
        """Up to ``max_results`` identities above ``threshold``, best first."""
        ranked = _rank_identities(self._state, embedding, threshold)
        return [(identity.model_copy(deep=True), sim) for identity, sim in ranked[: max(int(max_results), 0)]]

    def get_identity_clips(self, identity_id: str) -> List[str]:
        identity = self._state.identities.get(identity_id)
        if identity is None:
            raise KeyError(f"Unknown identity '{identity_id}'")
        return list(identity.clip_ids)

    def get_clip_assignments(self, clip_id: str) -> Dict[str, str]:
        entry = self._state.clips.get(clip_id)
        return dict(entry.assignments) if entry else {}

    def clip_entry(self, clip_id: str) -> Optional[ClipLedgerEntry]:
        entry = self._state.clips.get(clip_id)
        return entry.model_copy(deep=True) if entry else None

    # ------------------------------------------------------------------
    # Write API
    # ------------------------------------------------------------------

    @contextmanager
    def write_section(self, clip_id: Optional[str] = None) -> Iterator[RegistryTransaction]:
        """Serialize registry mutations.

        Holds the store lock for the whole section and re-reads the store
        first, so commits made through other handles on the same store (or
        JSON file) are never overwritten. Yields a transaction over a private
        view. On clean exit the view is saved to the store and published; on
        any exception it is discarded, so no partial mutation is ever visible.
        """
        with self._write_lock:
            if self._active is not None:
                raise RuntimeError(
                    f"Registry write section already open for clip {self._active.clip_id!r}"
                )
            with self._store.lock():
                started = time.monotonic()
                self._state = self._read_state()
                working = self._state.fork()
                txn = RegistryTransaction(working, self._selector, clip_id)
                self._active = txn
                try:
                    yield txn
                    self._store.save(working.to_document())
                    self._state = working
                except BaseException:
                    LOGGER.warning(
                        "[registry] Discarding write section for clip %s (%d created, %d updated)",
                        clip_id,
                        len(txn.created),
                        len(txn.updated),
                    )
                    raise
                finally:
                    self._active = None
            LOGGER.info(
                "[registry] Committed clip %s: %d created, %d updated, %d removed in %.3fs",
                clip_id,
                len(txn.created),
                len(txn.updated),
                len(txn.removed),
                time.monotonic() - started,
            )

    def create(
        self,
        embedding: VectorLike,
        representative_detection: FaceDetection,
        clip_id: Optional[str] = None,
    ) -> Identity:
        with self.write_section(clip_id or representative_detection.clip_id) as txn:
            identity = txn.create(embedding, representative_detection, clip_id)
        return identity.model_copy(deep=True)

    def merge(self, identity_id: str, embedding: VectorLike, detection: FaceDetection) -> MergeResult:
        with self.write_section(detection.clip_id) as txn:
            return txn.merge(identity_id, embedding, detection)

    def set_label(
        self,
        identity_id: str,
        label: Optional[str],
        *,
        aliases: Optional[List[str]] = None,
        attributes: Optional[Dict[str, Any]] = None,
    ) -> Identity:
        """Attach an external label (the labeling system owns its meaning)."""
        with self.write_section() as txn:
            identity = txn.set_label(identity_id, label, aliases=aliases, attributes=attributes)
        return identity.model_copy(deep=True)


__all__ = [
    "ClipContribution",
    "ClipLedgerEntry",
    "IdentityRegistry",
    "RegistryTransaction",
]
