"""Pipeline constants and artifact path definitions.

This module defines the canonical IO contract for clip face artifacts.
Any changes to artifact locations or schemas MUST be reflected here.
"""

from __future__ import annotations

import os
from enum import Enum
from pathlib import Path
from typing import Dict

# Pipeline version - update when making breaking changes to artifact schema
PIPELINE_VERSION = "2026-10-19"

REGISTRY_SCHEMA_VERSION = "identity_registry_v1"

# Default data root - can be overridden via CLIPCAST_DATA_ROOT env var
DEFAULT_DATA_ROOT = Path("data")


def data_root() -> Path:
    """Return the configured data root directory."""
    raw = os.environ.get("CLIPCAST_DATA_ROOT")
    return Path(raw).expanduser() if raw else DEFAULT_DATA_ROOT


class ArtifactKind(str, Enum):
    """Canonical artifact types produced by the clip face pipeline."""

    FACE_ASSIGNMENTS = "face_assignments"
    ATOMS_VISIBLE = "atoms_visible"
    CLIP_IDENTITIES = "clip_identities"
    LOGS_DIR = "logs"
    IDENTITY_REGISTRY = "identity_registry"


# {clip_id} is replaced with the clip identifier
ARTIFACT_PATHS: Dict[ArtifactKind, str] = {
    ArtifactKind.FACE_ASSIGNMENTS: "manifests/{clip_id}/face_assignments.jsonl",
    ArtifactKind.ATOMS_VISIBLE: "manifests/{clip_id}/atoms_visible.json",
    ArtifactKind.CLIP_IDENTITIES: "manifests/{clip_id}/clip_identities.json",
    ArtifactKind.LOGS_DIR: "logs/{clip_id}",
    ArtifactKind.IDENTITY_REGISTRY: "registry/identities.json",
}

ARTIFACT_KINDS: Dict[str, str] = {k.value: v for k, v in ARTIFACT_PATHS.items()}


def get_artifact_path(
    clip_id: str,
    kind: ArtifactKind | str,
    root: Path | str | None = None,
) -> Path:
    """Return the path for a given artifact kind.

    Args:
        clip_id: Clip identifier (ignored for library-wide artifacts)
        kind: Artifact type (ArtifactKind enum or string)
        root: Optional override for data root directory

    Raises:
        ValueError: If kind is not recognized
    """
    base = Path(root) if root else data_root()

    if isinstance(kind, ArtifactKind):
        rel_pattern = ARTIFACT_PATHS[kind]
    else:
        kind_key = str(kind).lower()
        if kind_key not in ARTIFACT_KINDS:
            raise ValueError(f"Unknown artifact kind '{kind}'")
        rel_pattern = ARTIFACT_KINDS[kind_key]

    return base / rel_pattern.format(clip_id=clip_id)


# Clustering defaults
DEFAULT_EPS = 0.35
DEFAULT_MIN_SAMPLES = 2

# Registry matching defaults
DEFAULT_MATCH_THRESHOLD = 0.65
DEFAULT_SIMILAR_THRESHOLD = 0.85
DEFAULT_SIMILAR_MAX_RESULTS = 10

# Appearance span defaults (clip summaries)
DEFAULT_GAP_TOLERANCE_S = 0.5
DEFAULT_MIN_SPAN_DURATION_S = 0.033
