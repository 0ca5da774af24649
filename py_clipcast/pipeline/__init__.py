"""Clip face pipeline constants and artifact layout."""

from __future__ import annotations

from py_clipcast.pipeline.constants import (
    ARTIFACT_KINDS,
    ArtifactKind,
    DEFAULT_EPS,
    DEFAULT_MATCH_THRESHOLD,
    DEFAULT_MIN_SAMPLES,
    PIPELINE_VERSION,
    data_root,
    get_artifact_path,
)

__all__ = [
    "ARTIFACT_KINDS",
    "ArtifactKind",
    "DEFAULT_EPS",
    "DEFAULT_MATCH_THRESHOLD",
    "DEFAULT_MIN_SAMPLES",
    "PIPELINE_VERSION",
    "data_root",
    "get_artifact_path",
]
