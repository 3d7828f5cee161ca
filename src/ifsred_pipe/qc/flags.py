"""QC flag helpers.

Every stage reports non-fatal conditions as a compact list of flags stored in
its :class:`~ifsred_pipe.record.StageDelta`. Each flag **must** include:

- ``code``: stable machine-readable identifier
- ``severity``: one of ``INFO``, ``WARN``, ``ERROR``
- ``message``: short human-readable summary
- ``hint``: actionable suggestion (may be empty)

Extra keys are allowed (e.g. ``stage``, ``amp``) to help reports.
"""

from __future__ import annotations

from typing import Any, Iterable

from ifsred_pipe.errors import PipelineIssue


# Public severities (ordered).
_SEV_ORDER: dict[str, int] = {
    "INFO": 1,
    "WARN": 2,
    "ERROR": 3,
}

_SEV_ALIASES: dict[str, str] = {
    "OK": "INFO",
    "WARNING": "WARN",
    "FAIL": "ERROR",
    "FATAL": "ERROR",
    "CRITICAL": "ERROR",
}


def normalize_severity(sev: str | None) -> str:
    """Normalize a severity string to INFO/WARN/ERROR."""

    s = (sev or "").strip().upper()
    if not s:
        return "INFO"
    if s in _SEV_ORDER:
        return s
    if s in _SEV_ALIASES:
        return _SEV_ALIASES[s]
    return "INFO"


def make_flag(
    code: str,
    severity: str,
    message: str,
    hint: str | None = "",
    **extra: Any,
) -> dict[str, Any]:
    """Create a QC flag dict in the canonical format."""

    d: dict[str, Any] = {
        "code": str(code or "").strip(),
        "severity": normalize_severity(severity),
        "message": str(message or "").strip(),
        "hint": str(hint or "").strip(),
    }
    for k, v in (extra or {}).items():
        if v is None:
            continue
        d[str(k)] = v
    return d


def flag_from_issue(issue: PipelineIssue, **extra: Any) -> dict[str, Any]:
    """Convert a caught non-fatal pipeline issue into a flag."""

    return make_flag(
        issue.code,
        issue.severity,
        issue.message,
        issue.hint,
        kind=type(issue).__name__,
        **extra,
    )


def max_severity(flags: Iterable[dict[str, Any]] | None) -> str:
    """Return the maximum severity among flags (INFO/WARN/ERROR)."""

    best = "INFO"
    for f in flags or []:
        sev = normalize_severity(str((f or {}).get("severity") or ""))
        if _SEV_ORDER.get(sev, 0) > _SEV_ORDER.get(best, 0):
            best = sev
    return best
