"""Atomic write helpers.

Batch summaries are rewritten at the end of every run. A partial write
(crash, power loss) must never leave a truncated JSON behind, so we write a
temp file in the destination directory and ``os.replace`` it into place.
"""

from __future__ import annotations

import dataclasses
import enum
import json
import os
import tempfile
from pathlib import Path
from typing import Any

import numpy as np


def _json_default(o: Any) -> Any:
    """Serializer for the small objects that end up in decision records."""

    if dataclasses.is_dataclass(o) and not isinstance(o, type):
        return dataclasses.asdict(o)
    if isinstance(o, Path):
        return str(o)
    if isinstance(o, enum.Enum):
        return o.value
    if isinstance(o, np.generic):
        return o.item()
    if isinstance(o, np.ndarray):
        # Arrays don't belong in metadata; keep a stub for large ones.
        if o.size <= 1024:
            return o.tolist()
        return {
            "__ndarray__": True,
            "shape": list(o.shape),
            "dtype": str(o.dtype),
            "size": int(o.size),
        }
    return str(o)


def atomic_write_text(path: str | Path, text: str, *, encoding: str = "utf-8") -> Path:
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)

    fd, tmp = tempfile.mkstemp(prefix=path.name + ".", suffix=".tmp", dir=str(path.parent))
    tmp_path = Path(tmp)
    try:
        with os.fdopen(fd, "w", encoding=encoding, newline="\n") as f:
            f.write(text)
            f.flush()
            os.fsync(f.fileno())
        os.replace(str(tmp_path), str(path))
    finally:
        tmp_path.unlink(missing_ok=True)
    return path


def atomic_write_json(
    path: str | Path,
    obj: Any,
    *,
    indent: int = 2,
    ensure_ascii: bool = False,
) -> Path:
    s = json.dumps(obj, indent=indent, ensure_ascii=ensure_ascii, default=_json_default)
    return atomic_write_text(path, s)
