"""Representative detection selection.

The representative is the detection used for an identity's thumbnail. It is
chosen by a deterministic ordering, highest first:

    (detector confidence, quality score, -distance to centroid)

Ties on that key keep the current representative, so a later detection only
takes over when it is strictly better.
"""

from __future__ import annotations

import logging
from typing import Optional, Sequence, Tuple

from py_clipcast.errors import EmptyInput
from py_clipcast.vector_math import VectorLike, cosine_distance

from .models import FaceDetection, RepresentativeRef

LOGGER = logging.getLogger(__name__)

QualityKey = Tuple[float, float, float]

# Worst possible cosine distance, used when a reference has no embedding
_MAX_DISTANCE = 2.0


def quality_key(
    confidence: float,
    quality: float,
    embedding: Optional[VectorLike],
    centroid: Optional[VectorLike],
) -> QualityKey:
    if embedding is None or centroid is None or len(embedding) == 0:
        distance = _MAX_DISTANCE
    else:
        distance = cosine_distance(embedding, centroid)
    return (float(confidence), float(quality), -float(distance))


class RepresentativeSelector:
    """Deterministic total ordering over detections by quality."""

    def key(self, detection: FaceDetection | RepresentativeRef, centroid: Optional[VectorLike]) -> QualityKey:
        return quality_key(detection.confidence, detection.quality, detection.embedding, centroid)

    def select(self, detections: Sequence[FaceDetection], centroid: Optional[VectorLike]) -> FaceDetection:
        """Pick the best detection; earlier timestamp then id break exact ties."""
        if not detections:
            raise EmptyInput("Cannot select a representative from zero detections")

        def _sort_key(det: FaceDetection):
            conf, quality, neg_dist = self.key(det, centroid)
            return (-conf, -quality, -neg_dist, det.timestamp, det.detection_id or "")

        return min(detections, key=_sort_key)

    def should_replace(
        self,
        current: Optional[RepresentativeRef],
        candidate: FaceDetection,
        centroid: Optional[VectorLike],
    ) -> bool:
        """True iff ``candidate`` strictly outranks ``current``."""
        if current is None:
            return True
        replace = self.key(candidate, centroid) > self.key(current, centroid)
        if replace:
            LOGGER.debug(
                "Representative %s replaced by %s",
                current.detection_id,
                candidate.detection_id,
            )
        return replace


__all__ = ["QualityKey", "RepresentativeSelector", "quality_key"]
