"""Batch completion marker (``done.json``).

Contract
--------
- written on success, on partial failure and on abort
- always contains: status, error_code, error_message, frames, n_frames,
  counts (per frame status) and effective_config
- every frame entry carries its status and the full decision record
"""

from __future__ import annotations

import time
from pathlib import Path
from typing import Any, Mapping

from ifsred_pipe.io.atomic import atomic_write_json
from ifsred_pipe.version import as_header_cards


FRAME_STATUSES = ("ok", "warn", "skipped", "fail", "cancelled")


def _utc_now() -> str:
    return time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime())


def norm_status(status: str | None) -> str:
    s = str(status or "ok").strip().lower()
    if s not in FRAME_STATUSES:
        raise ValueError(f"Invalid status {status!r}. Allowed: {list(FRAME_STATUSES)}")
    return s


def batch_status(frame_statuses: list[str], *, aborted: bool) -> str:
    if aborted or "fail" in frame_statuses:
        return "fail"
    if "warn" in frame_statuses:
        return "warn"
    if frame_statuses and all(s == "skipped" for s in frame_statuses):
        return "skipped"
    return "ok"


def write_batch_summary(
    path: str | Path,
    summary: Any,
    *,
    effective_config: Mapping[str, Any] | None = None,
) -> dict[str, Any]:
    """Write the batch summary as ``done.json`` and return the payload.

    ``summary`` is a :class:`~ifsred_pipe.pipeline.BatchSummary` or the dict
    returned by its ``to_dict()``. ``path`` may be a directory.
    """

    body = summary.to_dict() if hasattr(summary, "to_dict") else dict(summary)
    frames = list(body.get("frames") or [])
    statuses = [norm_status(f.get("status")) for f in frames]
    aborted = bool(body.get("aborted"))
    st = batch_status(statuses, aborted=aborted)

    ecode = emsg = None
    if st == "fail":
        ecode = "BATCH_ABORTED" if aborted else "FRAME_FAILED"
        emsg = body.get("error") or next(
            (f.get("error") for f in frames if f.get("error")), "batch failed"
        )

    payload: dict[str, Any] = {
        "schema": "ifsred_pipe.done_json",
        "schema_version": 1,
        "status": st,
        "error_code": ecode,
        "error_message": emsg,
        "created_utc": _utc_now(),
        "aborted": aborted,
        "n_frames": len(frames),
        "counts": {s: statuses.count(s) for s in FRAME_STATUSES},
        "frames": frames,
        "effective_config": dict(effective_config or {}),
        "provenance": as_header_cards(),
    }

    path = Path(path)
    if path.suffix.lower() != ".json":
        path = path / "done.json"
    atomic_write_json(path, payload)
    return payload
