"""Bind resolved identities onto time-ranged atoms.

Each atom covers the half-open range ``[start_time, end_time)``. A detection
at exactly ``start_time`` is inside the atom, one at ``end_time`` is not, and
a zero-length atom never contains anything.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from typing import Any, Dict, Iterable, List, Sequence

import numpy as np

from .models import Atom, FaceDetection, VisibleIdentity

LOGGER = logging.getLogger(__name__)


class TemporalAtomBinder:
    """Produces "who is visible when" for a clip's atoms."""

    def bind(
        self,
        detections: Iterable[FaceDetection],
        atoms: Iterable[Atom | Dict[str, Any]],
    ) -> List[Atom]:
        """Annotate every atom with the identities seen inside its range.

        Detections without an identity are ignored. Atoms come back in input
        order, as copies with ``visible_identities`` filled in (empty when
        nothing falls inside).
        """
        assigned = sorted(
            (d for d in detections if d.identity_id),
            key=lambda d: (d.timestamp, d.detection_id or ""),
        )
        timestamps = np.asarray([d.timestamp for d in assigned], dtype=np.float64)

        bound: List[Atom] = []
        for raw in atoms:
            atom = raw if isinstance(raw, Atom) else Atom.model_validate(raw)
            if atom.end_time < atom.start_time:
                LOGGER.warning(
                    "Atom [%.3f, %.3f) ends before it starts; treating as empty",
                    atom.start_time,
                    atom.end_time,
                )
                inside: Sequence[FaceDetection] = []
            else:
                lo = int(np.searchsorted(timestamps, atom.start_time, side="left"))
                hi = int(np.searchsorted(timestamps, atom.end_time, side="left"))
                inside = assigned[lo:hi]
            bound.append(atom.model_copy(update={"visible_identities": self._aggregate(inside)}))

        LOGGER.info(
            "Bound %d assigned detections onto %d atoms (%d with visible identities)",
            len(assigned),
            len(bound),
            sum(1 for atom in bound if atom.visible_identities),
        )
        return bound

    @staticmethod
    def _aggregate(detections: Sequence[FaceDetection]) -> List[VisibleIdentity]:
        confidences: Dict[str, List[float]] = defaultdict(list)
        for det in detections:
            confidences[det.identity_id].append(det.confidence)
        visible = [
            VisibleIdentity(
                identity_id=identity_id,
                occurrence_count=len(values),
                mean_confidence=float(np.mean(values)),
            )
            for identity_id, values in confidences.items()
        ]
        visible.sort(key=lambda v: (-v.occurrence_count, v.identity_id))
        return visible


def bind_atoms(
    detections: Iterable[FaceDetection],
    atoms: Iterable[Atom | Dict[str, Any]],
) -> List[Atom]:
    return TemporalAtomBinder().bind(detections, atoms)


__all__ = ["TemporalAtomBinder", "bind_atoms"]
