"""Error taxonomy for the frame pipeline.

Only :class:`ConfigError` is fatal: it aborts the whole batch, because an
unusable amplifier geometry invalidates every later stage. The remaining
classes describe degraded-but-recoverable situations. Stages catch them at
the point of detection, apply the documented fallback and turn them into QC
flags (see :func:`ifsred_pipe.qc.flags.flag_from_issue`), so the condition
always ends up in the per-frame decision record.
"""

from __future__ import annotations

from typing import Any


class ConfigError(RuntimeError):
    """Raised when frame metadata cannot describe a usable detector layout.

    The message is meant to be actionable: it lists the missing header keys
    and a short context (frame name, amplifier count, ...).
    """

    def __init__(
        self,
        message: str,
        *,
        missing_keys: list[str] | None = None,
        context: dict[str, Any] | None = None,
    ):
        self.missing_keys = missing_keys or []
        self.context = context or {}
        base = message
        if self.missing_keys:
            base += f" | missing={self.missing_keys}"
        if self.context:
            ctx = ", ".join(f"{k}={v!r}" for k, v in list(self.context.items())[:8])
            base += f" | ctx: {ctx}"
        super().__init__(base)


class PipelineIssue(Exception):
    """Base class for non-fatal conditions.

    Subclasses define ``severity``; ``code`` is a stable machine-readable
    identifier chosen by the raising stage.
    """

    severity = "WARN"

    def __init__(self, code: str, message: str, *, hint: str = ""):
        self.code = code
        self.hint = hint
        super().__init__(message)

    @property
    def message(self) -> str:
        return str(self.args[0]) if self.args else ""


class PipelineWarning(PipelineIssue, Warning):
    """A fallback was applied; processing continues."""


class MissingResourceWarning(PipelineWarning):
    """A shared calibration resource (master bias, defect table) is absent."""


class DataQualityWarning(PipelineWarning):
    """Input data cannot support the nominal correction (e.g. thin overscan)."""


class ValidationError(PipelineIssue, ValueError):
    """A single correction was rejected as invalid and skipped."""
