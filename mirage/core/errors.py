"""Exception types raised by the pipeline."""

from __future__ import annotations


class MirageError(Exception):
    """Base pipeline exception."""


class PipelineConfigError(MirageError):
    """Raised at startup when dimensions or settings cannot produce valid tensors."""


class ModelLoadError(MirageError):
    """Raised when a stage's model artifact is missing or unsupported."""

    def __init__(self, stage: str, reason: str) -> None:
        super().__init__(f"{stage}: failed to initialize model ({reason})")
        self.stage = stage
        self.reason = reason


class StageBusyError(MirageError):
    """Raised when `submit()` is called while a stage still owns a schedule."""


class StageStateError(MirageError):
    """Raised when a stage runner is driven out of order (e.g. consuming before ready)."""
