"""Per-clip identity summaries (which identities appear in a clip, and when)."""

from __future__ import annotations

import logging
from collections import defaultdict
from typing import Dict, Iterable, List, Optional

import numpy as np

from py_clipcast.intervals import compute_union_duration, timestamps_to_spans

from .identity_registry import IdentityRegistry
from .models import ClipIdentitySummary, FaceDetection, SummaryConfig

LOGGER = logging.getLogger(__name__)


def summarize_clip_identities(
    clip_id: str,
    detections: Iterable[FaceDetection],
    registry: Optional[IdentityRegistry] = None,
    config: Optional[SummaryConfig] = None,
) -> List[ClipIdentitySummary]:
    """Summarize each identity's appearances in one clip.

    Ordered by detection count (descending), then label, then identity id.
    Labels are looked up in ``registry`` when one is given.
    """
    config = config or SummaryConfig()

    by_identity: Dict[str, List[FaceDetection]] = defaultdict(list)
    for det in detections:
        if det.identity_id and det.clip_id == clip_id:
            by_identity[det.identity_id].append(det)

    summaries: List[ClipIdentitySummary] = []
    for identity_id, dets in by_identity.items():
        timestamps = sorted(d.timestamp for d in dets)
        spans = timestamps_to_spans(timestamps, gap_tolerance_s=config.gap_tolerance_s)
        identity = registry.get(identity_id) if registry is not None else None
        summaries.append(
            ClipIdentitySummary(
                clip_id=clip_id,
                identity_id=identity_id,
                label=identity.label if identity else None,
                role=(identity.attributes.get("role") if identity else None),
                first_appearance_seconds=timestamps[0],
                last_appearance_seconds=timestamps[-1],
                detection_count=len(dets),
                mean_confidence=float(np.mean([d.confidence for d in dets])),
                appearance_spans=[[start, end] for start, end in spans],
                screen_time_s=compute_union_duration(spans, min_duration_s=config.min_span_duration_s),
            )
        )

    summaries.sort(key=lambda s: (-s.detection_count, s.label or "", s.identity_id))
    LOGGER.debug("Clip %s: summarized %d identities", clip_id, len(summaries))
    return summaries


__all__ = ["summarize_clip_identities"]
