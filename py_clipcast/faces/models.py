"""Pydantic models for clip face clustering and identity resolution.

These models define the data structures used throughout the face pipeline:
- Configuration models
- Detection, cluster and identity models
- Atom (timeline segment) models
- Resolution and summary result models
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional

import numpy as np
from pydantic import AliasChoices, BaseModel, ConfigDict, Field

from py_clipcast.pipeline.constants import (
    DEFAULT_EPS,
    DEFAULT_GAP_TOLERANCE_S,
    DEFAULT_MATCH_THRESHOLD,
    DEFAULT_MIN_SAMPLES,
    DEFAULT_MIN_SPAN_DURATION_S,
)


def utcnow_iso() -> str:
    return datetime.now(timezone.utc).replace(microsecond=0).isoformat().replace("+00:00", "Z")


# ============================================================================
# Configuration Models
# ============================================================================


class ClusteringConfig(BaseModel):
    """Configuration for intra-clip face clustering (DBSCAN)."""
    # Max cosine distance for two faces to be directly connected
    eps: float = Field(DEFAULT_EPS, gt=0.0, le=2.0)
    # Detections (including the point itself) needed to seed a cluster
    min_samples: int = Field(DEFAULT_MIN_SAMPLES, ge=1)


class MatchingConfig(BaseModel):
    """Configuration for matching clusters against the identity registry."""
    # Similarity must strictly exceed this to merge into an existing identity
    match_threshold: float = Field(DEFAULT_MATCH_THRESHOLD, ge=-1.0, le=1.0)


class RegistryConfig(BaseModel):
    """Configuration for the identity registry."""
    # None keeps the registry in memory only
    path: Optional[str] = None
    # None means "learn from the first identity created"
    embedding_dim: Optional[int] = Field(None, ge=1)


class SummaryConfig(BaseModel):
    """Configuration for per-clip identity summaries."""
    gap_tolerance_s: float = Field(DEFAULT_GAP_TOLERANCE_S, ge=0.0)
    # Single sightings count as roughly one frame of screen time
    min_span_duration_s: float = Field(DEFAULT_MIN_SPAN_DURATION_S, ge=0.0)


class FaceIdentityConfig(BaseModel):
    """Complete face identity pipeline configuration."""
    clustering: ClusteringConfig = Field(default_factory=ClusteringConfig)
    matching: MatchingConfig = Field(default_factory=MatchingConfig)
    registry: RegistryConfig = Field(default_factory=RegistryConfig)
    summary: SummaryConfig = Field(default_factory=SummaryConfig)
    write_outputs: bool = True
    data_root: Optional[str] = None

    @classmethod
    def from_yaml(cls, yaml_dict: Optional[Dict[str, Any]]) -> "FaceIdentityConfig":
        """Create config from YAML dict (handles nested face_identity key)."""
        yaml_dict = yaml_dict or {}
        pipeline_cfg = yaml_dict.get("face_identity", yaml_dict) or {}
        return cls(**pipeline_cfg)


# ============================================================================
# Detection Models
# ============================================================================


class BoundingBox(BaseModel):
    """Normalized face bounding box (all values in [0, 1])."""
    model_config = ConfigDict(frozen=True)

    x: float = Field(..., ge=0.0, le=1.0)
    y: float = Field(..., ge=0.0, le=1.0)
    width: float = Field(..., ge=0.0, le=1.0, validation_alias=AliasChoices("width", "w"))
    height: float = Field(..., ge=0.0, le=1.0, validation_alias=AliasChoices("height", "h"))

    @property
    def area(self) -> float:
        return self.width * self.height


class FaceDetection(BaseModel):
    """One face found in one frame of a clip.

    Immutable; ``annotate`` returns a copy carrying cluster/identity ids.
    """
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    detection_id: Optional[str] = Field(None, description="Stable detection identifier")
    clip_id: str = Field(..., validation_alias=AliasChoices("clip_id", "clipId"))
    timestamp: float = Field(..., ge=0.0, validation_alias=AliasChoices("timestamp", "timestampSeconds", "ts"))
    bbox: BoundingBox
    embedding: List[float] = Field(..., min_length=1)
    confidence: float = Field(..., ge=0.0, le=1.0)
    sharpness: float = Field(1.0, ge=0.0, description="Crop sharpness multiplier for quality")
    quality_score: Optional[float] = Field(None, ge=0.0, description="Upstream quality; derived when absent")
    cluster_id: Optional[str] = None
    identity_id: Optional[str] = None

    @property
    def quality(self) -> float:
        """Face area x sharpness unless an upstream quality score is given."""
        if self.quality_score is not None:
            return float(self.quality_score)
        return float(self.bbox.area * self.sharpness)

    @property
    def dimension(self) -> int:
        return len(self.embedding)

    def embedding_array(self) -> np.ndarray:
        return np.asarray(self.embedding, dtype=np.float64)

    def annotate(self, **updates: Any) -> "FaceDetection":
        return self.model_copy(update=updates)


def make_detection_id(clip_id: str, ordinal: int) -> str:
    return f"{clip_id}_d{ordinal:05d}"


def normalize_detections(
    clip_id: str,
    detections: Iterable[FaceDetection | Dict[str, Any]],
) -> List[FaceDetection]:
    """Validate a clip's detections and fill in missing detection ids.

    Raises:
        ValueError: on a detection from another clip or a duplicate id.
    """
    normalized: List[FaceDetection] = []
    seen: set[str] = set()
    for ordinal, raw in enumerate(detections):
        if isinstance(raw, FaceDetection):
            det = raw
        else:
            payload = dict(raw)
            payload.setdefault("clip_id", clip_id)
            det = FaceDetection.model_validate(payload)
        if det.clip_id != clip_id:
            raise ValueError(f"Detection {det.detection_id or ordinal} belongs to clip {det.clip_id}, not {clip_id}")
        if not det.detection_id:
            det = det.annotate(detection_id=make_detection_id(clip_id, ordinal))
        if det.detection_id in seen:
            raise ValueError(f"Duplicate detection id {det.detection_id} in clip {clip_id}")
        seen.add(det.detection_id)
        normalized.append(det)
    return normalized


# ============================================================================
# Cluster Models
# ============================================================================


@dataclass
class IntraClipCluster:
    """Faces within one clip believed to be the same person.

    Lives only for the duration of one resolution pass.
    """
    cluster_id: str
    members: List[FaceDetection]
    centroid: np.ndarray
    is_noise: bool = False

    @property
    def size(self) -> int:
        return len(self.members)

    @property
    def earliest_timestamp(self) -> float:
        return min(m.timestamp for m in self.members)

    @property
    def mean_confidence(self) -> float:
        return float(np.mean([m.confidence for m in self.members]))

    @property
    def member_ids(self) -> List[str]:
        return [m.detection_id for m in self.members]


# ============================================================================
# Identity Models
# ============================================================================


class RepresentativeRef(BaseModel):
    """Pointer to the detection chosen to depict an identity."""
    detection_id: str
    clip_id: str
    timestamp: float
    confidence: float
    quality: float
    bbox: Optional[BoundingBox] = None
    embedding: List[float] = Field(default_factory=list)

    @classmethod
    def from_detection(cls, detection: FaceDetection) -> "RepresentativeRef":
        return cls(
            detection_id=detection.detection_id or "",
            clip_id=detection.clip_id,
            timestamp=detection.timestamp,
            confidence=detection.confidence,
            quality=detection.quality,
            bbox=detection.bbox,
            embedding=list(detection.embedding),
        )


class Identity(BaseModel):
    """A long-lived, cross-clip person record."""
    identity_id: str = Field(..., description="Identity ID (e.g., ID_00001)")
    creation_order: int = Field(..., ge=0)
    centroid: List[float] = Field(..., description="Running mean of merged embeddings")
    count: int = Field(1, ge=1, description="Number of detections merged in")
    representative: Optional[RepresentativeRef] = None
    label: Optional[str] = Field(None, description="External label; set by the labeling system")
    aliases: List[str] = Field(default_factory=list)
    attributes: Dict[str, Any] = Field(default_factory=dict)
    first_seen_clip_id: Optional[str] = None
    clip_ids: List[str] = Field(default_factory=list, description="Clips in first-seen order")
    created_at: str = Field(default_factory=utcnow_iso)
    updated_at: str = Field(default_factory=utcnow_iso)

    @property
    def representative_detection_id(self) -> Optional[str]:
        return self.representative.detection_id if self.representative else None

    @property
    def is_labeled(self) -> bool:
        return bool(self.label)


class MergeResult(BaseModel):
    """Outcome of folding one detection into an identity."""
    identity_id: str
    centroid: List[float]
    count: int
    representative_replaced: bool = False


# ============================================================================
# Resolution Models
# ============================================================================


class ResolutionState(str, Enum):
    """Per-cluster resolution states."""
    UNRESOLVED = "unresolved"
    MATCHED = "matched"
    CREATED = "created"
    ASSIGNED = "assigned"


class ClusterResolution(BaseModel):
    """How one candidate cluster was resolved."""
    cluster_id: str
    identity_id: str
    outcome: ResolutionState
    state: ResolutionState = ResolutionState.ASSIGNED
    similarity: Optional[float] = None
    size: int = 0
    member_ids: List[str] = Field(default_factory=list)


class DetectionAssignment(BaseModel):
    """Final per-detection identity assignment."""
    detection_id: str
    clip_id: str
    timestamp: float
    confidence: float
    cluster_id: str
    identity_id: str


@dataclass
class ClipResolution:
    """Result of resolving one clip's detections."""
    clip_id: str
    detections: List[FaceDetection] = field(default_factory=list)
    clusters: List[ClusterResolution] = field(default_factory=list)
    replayed: bool = False

    @property
    def created_identity_ids(self) -> List[str]:
        return [c.identity_id for c in self.clusters if c.outcome == ResolutionState.CREATED]

    @property
    def matched_identity_ids(self) -> List[str]:
        return [c.identity_id for c in self.clusters if c.outcome == ResolutionState.MATCHED]

    @property
    def identity_ids(self) -> List[str]:
        ordered: List[str] = []
        for cluster in self.clusters:
            if cluster.identity_id not in ordered:
                ordered.append(cluster.identity_id)
        return ordered

    def assignments(self) -> List[DetectionAssignment]:
        return [
            DetectionAssignment(
                detection_id=d.detection_id or "",
                clip_id=d.clip_id,
                timestamp=d.timestamp,
                confidence=d.confidence,
                cluster_id=d.cluster_id or "",
                identity_id=d.identity_id or "",
            )
            for d in self.detections
            if d.identity_id
        ]

    def identity_by_detection(self) -> Dict[str, str]:
        return {d.detection_id: d.identity_id for d in self.detections if d.detection_id and d.identity_id}


# ============================================================================
# Atom Models
# ============================================================================


class VisibleIdentity(BaseModel):
    """An identity seen within an atom's time range."""
    identity_id: str
    occurrence_count: int = Field(..., ge=1)
    mean_confidence: float


class Atom(BaseModel):
    """A time-ranged semantic segment; unknown fields pass through untouched."""
    model_config = ConfigDict(extra="allow", populate_by_name=True)

    start_time: float = Field(..., validation_alias=AliasChoices("start_time", "startTimeSeconds", "start"))
    end_time: float = Field(..., validation_alias=AliasChoices("end_time", "endTimeSeconds", "end"))
    visible_identities: List[VisibleIdentity] = Field(default_factory=list)

    @property
    def duration(self) -> float:
        return self.end_time - self.start_time


# ============================================================================
# Summary Models
# ============================================================================


class ClipIdentitySummary(BaseModel):
    """Per-clip appearance record for one identity."""
    clip_id: str
    identity_id: str
    label: Optional[str] = None
    role: Optional[str] = None
    first_appearance_seconds: float
    last_appearance_seconds: float
    detection_count: int
    mean_confidence: float
    appearance_spans: List[List[float]] = Field(default_factory=list)
    screen_time_s: float = 0.0
