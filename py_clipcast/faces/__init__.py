"""CLIPCAST Face Identity Module.

This module turns per-frame face detections into durable identities:
- DBSCAN clustering of one clip's faces
- Cross-clip identity registry (match, create, merge)
- Representative (thumbnail) selection
- Binding identities onto time-ranged atoms
- Per-clip identity summaries
"""

from __future__ import annotations

from .models import (
    Atom,
    BoundingBox,
    ClipIdentitySummary,
    ClipResolution,
    ClusterResolution,
    ClusteringConfig,
    DetectionAssignment,
    FaceDetection,
    FaceIdentityConfig,
    Identity,
    IntraClipCluster,
    MatchingConfig,
    MergeResult,
    RegistryConfig,
    ResolutionState,
    SummaryConfig,
    VisibleIdentity,
)
from .atom_binding import TemporalAtomBinder, bind_atoms
from .clip_pipeline import ClipFaceResult, load_config, run_clip_faces
from .clip_summary import summarize_clip_identities
from .clustering import IntraClipClusterer, cluster_clip_faces
from .identity_registry import IdentityRegistry
from .registry_store import InMemoryIdentityStore, JsonIdentityStore
from .representative import RepresentativeSelector
from .resolver import IdentityResolver, resolve_clip_identities

__all__ = [
    # Config
    "FaceIdentityConfig",
    "ClusteringConfig",
    "MatchingConfig",
    "RegistryConfig",
    "SummaryConfig",
    # Detections and clusters
    "BoundingBox",
    "FaceDetection",
    "IntraClipCluster",
    "IntraClipClusterer",
    "cluster_clip_faces",
    # Registry
    "Identity",
    "MergeResult",
    "IdentityRegistry",
    "InMemoryIdentityStore",
    "JsonIdentityStore",
    "RepresentativeSelector",
    # Resolution
    "ClipResolution",
    "ClusterResolution",
    "DetectionAssignment",
    "ResolutionState",
    "IdentityResolver",
    "resolve_clip_identities",
    # Atoms
    "Atom",
    "VisibleIdentity",
    "TemporalAtomBinder",
    "bind_atoms",
    # Summaries
    "ClipIdentitySummary",
    "summarize_clip_identities",
    # Pipeline
    "ClipFaceResult",
    "load_config",
    "run_clip_faces",
]
