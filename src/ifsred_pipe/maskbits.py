"""Bitmask conventions for the MASK plane (uint16).

Notes
-----
- A pixel may have multiple flags; masks are combined with bitwise OR.
- Stages only ever *add* bits. Nothing in the pipeline clears a bit that an
  earlier stage has set.
- The schema is versioned; outputs record the schema version in headers.

Keep this stable: changing bit meaning is a breaking change.
"""

from __future__ import annotations

from enum import IntFlag

import numpy as np


MASK_SCHEMA_VERSION = "v1"
MASK_DTYPE = np.uint16


class MaskBits(IntFlag):
    SATURATED = 1 << 0
    BAD_COLUMN = 1 << 1
    COSMIC_RAY = 1 << 2


def empty_mask(shape: tuple[int, ...]) -> np.ndarray:
    return np.zeros(shape, dtype=MASK_DTYPE)


def set_bits(mask: np.ndarray, where: np.ndarray, bit: MaskBits) -> np.ndarray:
    """Return a copy of ``mask`` with ``bit`` OR-ed in where ``where`` is True."""
    out = np.array(mask, dtype=MASK_DTYPE, copy=True)
    out[np.asarray(where, dtype=bool)] |= MASK_DTYPE(int(bit))
    return out


def header_cards(prefix: str = "IFSR") -> dict[str, str]:
    """FITS header cards describing the mask schema."""
    return {
        f"{prefix}_MKV": MASK_SCHEMA_VERSION,
        f"{prefix}_MB0": "SATURATED",
        f"{prefix}_MB1": "BAD_COLUMN",
        f"{prefix}_MB2": "COSMIC_RAY",
    }


def summarize(mask: np.ndarray) -> dict[str, int]:
    """Pixel counts per known bit."""
    m = np.asarray(mask, dtype=MASK_DTYPE)
    return {
        "saturated": int(np.count_nonzero(m & MaskBits.SATURATED)),
        "bad_column": int(np.count_nonzero(m & MaskBits.BAD_COLUMN)),
        "cosmic_ray": int(np.count_nonzero(m & MaskBits.COSMIC_RAY)),
    }
