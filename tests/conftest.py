import os
import sys
from pathlib import Path

import numpy as np
import pytest

PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

os.environ.setdefault("CLIPCAST_DATA_ROOT", str(PROJECT_ROOT / "data" / "test"))

from py_clipcast.faces.models import BoundingBox, FaceDetection  # noqa: E402

EMBEDDING_DIM = 512
# cos(angle) between a detection and its person's base vector
_PERSON_COS = 0.97


@pytest.fixture
def rng():
    return np.random.default_rng(1234)


@pytest.fixture
def person_bases(rng):
    """Factory for mutually orthogonal unit vectors, one per person."""

    def _bases(count: int, dim: int = EMBEDDING_DIM) -> np.ndarray:
        q, _ = np.linalg.qr(rng.normal(size=(dim, count)))
        return q.T

    return _bases


@pytest.fixture
def person_embeddings(rng):
    """Factory for noisy embeddings of one person.

    Same-person embeddings have pairwise cosine similarity around 0.94;
    embeddings of different (orthogonal) persons stay near 0.
    """

    def _embeddings(base: np.ndarray, count: int) -> list[list[float]]:
        sin = float(np.sqrt(1.0 - _PERSON_COS**2))
        out = []
        for _ in range(count):
            noise = rng.normal(size=base.shape[0])
            noise -= float(noise @ base) * base
            noise /= np.linalg.norm(noise)
            out.append((_PERSON_COS * base + sin * noise).tolist())
        return out

    return _embeddings


@pytest.fixture
def make_detection():
    """Factory for a FaceDetection with sensible defaults."""

    def _make(
        clip_id: str,
        timestamp: float,
        embedding,
        *,
        detection_id: str | None = None,
        confidence: float = 0.9,
        identity_id: str | None = None,
        size: float = 0.2,
        quality_score: float | None = None,
    ) -> FaceDetection:
        return FaceDetection(
            detection_id=detection_id,
            clip_id=clip_id,
            timestamp=timestamp,
            bbox=BoundingBox(x=0.1, y=0.1, width=size, height=size),
            embedding=list(embedding),
            confidence=confidence,
            quality_score=quality_score,
            identity_id=identity_id,
        )

    return _make


@pytest.fixture
def make_clip(make_detection, person_embeddings):
    """Factory for one clip's detections: ``{base_index: count}`` persons, interleaved in time."""

    def _clip(clip_id: str, bases: np.ndarray, counts: dict[int, int], *, start: float = 0.0, step: float = 0.1):
        pending = {idx: person_embeddings(bases[idx], n) for idx, n in counts.items()}
        detections = []
        t = start
        ordinal = 0
        while any(pending.values()):
            for idx in sorted(pending):
                if pending[idx]:
                    detections.append(
                        make_detection(
                            clip_id,
                            round(t, 3),
                            pending[idx].pop(0),
                            detection_id=f"{clip_id}_p{idx}_{ordinal:03d}",
                        )
                    )
                    ordinal += 1
                    t += step
        return detections

    return _clip
