from __future__ import annotations

import json
import logging
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any

from py_clipcast.file_io import exclusive_file_lock
from py_clipcast.pipeline.constants import ArtifactKind, get_artifact_path

LOGGER = logging.getLogger(__name__)


class Stage(str, Enum):
    """Stages of one clip's face pass."""

    RESOLVE = "resolve"
    BIND = "bind"
    SUMMARIZE = "summarize"
    PIPELINE = "pipeline"


@dataclass(frozen=True)
class LogEvent:
    """One line of a clip's stage log; unset optional fields are omitted."""

    ts: str
    level: str
    clip_id: str
    stage: str
    msg: str
    progress: float | None = None
    meta: dict[str, Any] | None = None

    def as_dict(self) -> dict[str, Any]:
        return {key: value for key, value in asdict(self).items() if value is not None}


def append_log(
    clip_id: str,
    stage: Stage | str,
    level: str,
    msg: str,
    *,
    progress: float | None = None,
    meta: dict[str, Any] | None = None,
    root: Path | str | None = None,
) -> None:
    stage_key = _coerce_stage_key(stage)
    path = _log_path(clip_id, stage_key, root)
    path.parent.mkdir(parents=True, exist_ok=True)

    event = LogEvent(
        ts=_utcnow_iso(),
        level=str(level).upper(),
        clip_id=clip_id,
        stage=stage_key,
        msg=str(msg),
        progress=progress,
        meta=meta,
    )
    line = json.dumps(event.as_dict(), sort_keys=True, default=str)
    with exclusive_file_lock(path):
        with path.open("a", encoding="utf-8") as handle:
            handle.write(line + "\n")


def read_logs(
    clip_id: str,
    stage: Stage | str,
    *,
    root: Path | str | None = None,
) -> list[dict[str, Any]]:
    path = _log_path(clip_id, _coerce_stage_key(stage), root)
    if not path.exists():
        return []
    events: list[dict[str, Any]] = []
    with path.open("r", encoding="utf-8") as handle:
        for raw in handle:
            raw = raw.strip()
            if not raw:
                continue
            try:
                payload = json.loads(raw)
            except json.JSONDecodeError:
                continue
            if isinstance(payload, dict):
                events.append(payload)
    return events


def _log_path(clip_id: str, stage_key: str, root: Path | str | None) -> Path:
    return get_artifact_path(clip_id, ArtifactKind.LOGS_DIR, root) / f"{stage_key}.jsonl"


def _utcnow_iso() -> str:
    return datetime.now(timezone.utc).replace(microsecond=0).isoformat().replace("+00:00", "Z")


def _coerce_stage_key(stage: Stage | str) -> str:
    if isinstance(stage, Stage):
        return stage.value
    raw = str(stage or "unknown").strip().lower().replace(" ", "_")
    return raw or "unknown"
