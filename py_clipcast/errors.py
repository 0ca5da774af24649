"""Error taxonomy for face clustering and identity resolution.

Every error carries a stable ``code`` so callers (job runners, the review UI)
can branch without string matching on messages.
"""

from __future__ import annotations


class ClipcastError(Exception):
    """Base class for all clipcast errors."""

    code = "CLIPCAST_ERROR"

    def __init__(self, message: str, *, code: str | None = None) -> None:
        super().__init__(message)
        if code:
            self.code = code


class DimensionMismatch(ClipcastError):
    """Embedding lengths disagree (with each other or with the registry)."""

    code = "DIMENSION_MISMATCH"

    def __init__(self, expected: int, actual: int, *, context: str = "") -> None:
        self.expected = int(expected)
        self.actual = int(actual)
        where = f" ({context})" if context else ""
        super().__init__(f"Embedding dimension mismatch{where}: expected {self.expected}, got {self.actual}")


class EmptyInput(ClipcastError):
    """An operation that needs at least one vector received none."""

    code = "EMPTY_INPUT"


class RegistryUnavailable(ClipcastError):
    """The identity registry could not be read or written."""

    code = "REGISTRY_UNAVAILABLE"


class ClipResolutionFailed(ClipcastError):
    """A clip's face resolution pass was aborted and must be retried whole."""

    code = "CLIP_RESOLUTION_FAILED"

    def __init__(self, clip_id: str, cause: BaseException | None = None) -> None:
        self.clip_id = clip_id
        self.cause = cause
        self.cause_code = getattr(cause, "code", None)
        super().__init__(f"clip {clip_id} face resolution failed, retry scheduled")


__all__ = [
    "ClipcastError",
    "DimensionMismatch",
    "EmptyInput",
    "RegistryUnavailable",
    "ClipResolutionFailed",
]
