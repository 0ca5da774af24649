"""Clip face pipeline orchestrator.

Main entry point for running one clip through the face identity engine:
1. Validate detections
2. Cluster + resolve against the identity registry (single write section)
3. Bind identities onto the clip's atoms
4. Summarize per-identity appearances
5. Write clip manifests
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

import yaml

from py_clipcast.errors import ClipcastError, ClipResolutionFailed
from py_clipcast.file_io import atomic_write_text
from py_clipcast.pipeline.constants import PIPELINE_VERSION, ArtifactKind, data_root, get_artifact_path
from py_clipcast.run_logs import Stage, append_log

from .atom_binding import TemporalAtomBinder
from .clip_summary import summarize_clip_identities
from .identity_registry import IdentityRegistry
from .models import (
    Atom,
    ClipIdentitySummary,
    ClipResolution,
    FaceDetection,
    FaceIdentityConfig,
)
from .resolver import IdentityResolver

LOGGER = logging.getLogger(__name__)


def load_config(config_path: Optional[Path] = None) -> FaceIdentityConfig:
    """Load face identity configuration from YAML."""
    if config_path is None:
        candidates = [
            Path("config/pipeline/face_identity.yaml"),
            Path(__file__).resolve().parents[2] / "config" / "pipeline" / "face_identity.yaml",
        ]
        for candidate in candidates:
            if candidate.exists():
                config_path = candidate
                break

    if config_path is None or not config_path.exists():
        LOGGER.warning("Face identity config not found, using defaults")
        return FaceIdentityConfig()

    with config_path.open("r", encoding="utf-8") as f:
        yaml_data = yaml.safe_load(f) or {}

    return FaceIdentityConfig.from_yaml(yaml_data)


def registry_path(config: FaceIdentityConfig, root: Optional[str] = None) -> Path:
    """Where the pipeline keeps the registry.

    Unset: the registry artifact under the data root. A relative configured
    path is taken from the data root too, so the registry and the clip
    manifests always live under the same root.
    """
    if not config.registry.path:
        return get_artifact_path("", ArtifactKind.IDENTITY_REGISTRY, root)
    path = Path(config.registry.path).expanduser()
    if path.is_absolute():
        return path
    return (Path(root) if root else data_root()) / path


def open_registry(config: FaceIdentityConfig, root: Optional[str] = None) -> IdentityRegistry:
    """Open the durable registry at ``registry_path``."""
    registry_config = config.registry.model_copy(update={"path": str(registry_path(config, root))})
    return IdentityRegistry.from_config(registry_config)


@dataclass
class ClipFaceResult:
    """Result of running one clip through the face pipeline."""
    clip_id: str
    resolution: ClipResolution
    atoms: List[Atom] = field(default_factory=list)
    summaries: List[ClipIdentitySummary] = field(default_factory=list)
    outputs: Dict[str, Path] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "clip_id": self.clip_id,
            "pipeline_version": PIPELINE_VERSION,
            "replayed": self.resolution.replayed,
            "detection_count": len(self.resolution.detections),
            "cluster_count": len(self.resolution.clusters),
            "identity_ids": self.resolution.identity_ids,
            "created_identity_ids": self.resolution.created_identity_ids,
            "matched_identity_ids": self.resolution.matched_identity_ids,
            "atoms": [atom.model_dump() for atom in self.atoms],
            "clip_identities": [summary.model_dump() for summary in self.summaries],
            "outputs": {key: str(path) for key, path in self.outputs.items()},
        }


def run_clip_faces(
    clip_id: str,
    detections: Iterable[FaceDetection | Dict[str, Any]],
    atoms: Iterable[Atom | Dict[str, Any]] = (),
    registry: Optional[IdentityRegistry] = None,
    config: Optional[FaceIdentityConfig] = None,
) -> ClipFaceResult:
    """Resolve, bind and summarize one clip.

    Raises:
        ClipResolutionFailed: any engine error; nothing was committed to the
            registry for this clip and the whole clip should be retried.
    """
    config = config or FaceIdentityConfig()
    root = config.data_root

    append_log(clip_id, Stage.PIPELINE, "info", "Clip face pipeline started", progress=0.0, root=root)

    try:
        if registry is None:
            registry = open_registry(config, root)
        resolver = IdentityResolver(registry, config.clustering, config.matching)
        resolution = resolver.resolve_clip(clip_id, detections)
    except (ClipcastError, ValueError) as exc:
        LOGGER.error("Clip %s face resolution failed: %s", clip_id, exc)
        append_log(
            clip_id,
            Stage.RESOLVE,
            "error",
            str(exc),
            meta={"code": getattr(exc, "code", "INVALID_INPUT")},
            root=root,
        )
        raise ClipResolutionFailed(clip_id, exc) from exc

    append_log(
        clip_id,
        Stage.RESOLVE,
        "info",
        "Replayed stored assignments" if resolution.replayed else "Resolved clusters",
        progress=0.5,
        meta={
            "clusters": len(resolution.clusters),
            "created": resolution.created_identity_ids,
            "matched": resolution.matched_identity_ids,
        },
        root=root,
    )

    bound_atoms = TemporalAtomBinder().bind(resolution.detections, atoms)
    append_log(clip_id, Stage.BIND, "info", f"Bound {len(bound_atoms)} atoms", progress=0.75, root=root)

    summaries = summarize_clip_identities(clip_id, resolution.detections, registry, config.summary)
    append_log(
        clip_id,
        Stage.SUMMARIZE,
        "info",
        f"Summarized {len(summaries)} identities",
        progress=0.9,
        root=root,
    )

    result = ClipFaceResult(
        clip_id=clip_id,
        resolution=resolution,
        atoms=bound_atoms,
        summaries=summaries,
    )
    if config.write_outputs:
        result.outputs = _write_outputs(result, root)

    append_log(
        clip_id,
        Stage.PIPELINE,
        "info",
        "Clip face pipeline finished",
        progress=1.0,
        meta={"identities": len(summaries), "atoms": len(bound_atoms)},
        root=root,
    )
    return result


def _write_outputs(result: ClipFaceResult, root: Optional[str]) -> Dict[str, Path]:
    """Write clip manifests (assignments JSONL, atoms JSON, summaries JSON)."""
    clip_id = result.clip_id
    paths = {
        "face_assignments": get_artifact_path(clip_id, ArtifactKind.FACE_ASSIGNMENTS, root),
        "atoms_visible": get_artifact_path(clip_id, ArtifactKind.ATOMS_VISIBLE, root),
        "clip_identities": get_artifact_path(clip_id, ArtifactKind.CLIP_IDENTITIES, root),
    }
    rows = [json.dumps(assignment.model_dump()) + "\n" for assignment in result.resolution.assignments()]
    atomic_write_text(paths["face_assignments"], "".join(rows))

    _write_json(paths["atoms_visible"], [atom.model_dump() for atom in result.atoms])
    _write_json(paths["clip_identities"], [summary.model_dump() for summary in result.summaries])

    LOGGER.info("Wrote clip %s manifests to %s", clip_id, paths["face_assignments"].parent)
    return paths


def _write_json(path: Path, payload: Any) -> None:
    atomic_write_text(path, json.dumps(payload, indent=2))


__all__ = ["ClipFaceResult", "load_config", "open_registry", "registry_path", "run_clip_faces"]
