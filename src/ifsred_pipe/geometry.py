"""Amplifier geometry: per-amplifier rectangles and readout direction.

Header convention
-----------------
For amplifier ``n`` (1-based, ``n = 1..NVIDINP``):

* ``BSECn``: overscan ("bias") section of the raw frame
* ``DSECn``: photosensitive data section of the raw frame
* ``TSECn``: where the data section lands in the trimmed image
* ``AMPDIRn`` (optional): ``+y`` when the first row read out is the lowest
  row of the section, ``-y`` when it is the highest

Sections use the FITS/IRAF notation ``[x1:x2,y1:y2]`` (1-based, inclusive).
Internally everything is a 0-based, half-open :class:`Rect` in numpy
``(row, column)`` order.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
import re
from typing import Any, Iterator, Mapping

import numpy as np

from ifsred_pipe.errors import ConfigError


_SECTION_RE = re.compile(r"^\s*\[\s*(\d+)\s*:\s*(\d+)\s*,\s*(\d+)\s*:\s*(\d+)\s*\]\s*$")


class Readout(str, Enum):
    UP = "+y"
    DOWN = "-y"


@dataclass(frozen=True)
class Rect:
    """0-based half-open rectangle ``[y0:y1, x0:x1]``."""

    y0: int
    y1: int
    x0: int
    x1: int

    @property
    def ny(self) -> int:
        return self.y1 - self.y0

    @property
    def nx(self) -> int:
        return self.x1 - self.x0

    @property
    def shape(self) -> tuple[int, int]:
        return (self.ny, self.nx)

    @property
    def area(self) -> int:
        return self.ny * self.nx

    @property
    def slices(self) -> tuple[slice, slice]:
        return (slice(self.y0, self.y1), slice(self.x0, self.x1))

    def overlaps(self, other: "Rect") -> bool:
        return (
            self.y0 < other.y1
            and other.y0 < self.y1
            and self.x0 < other.x1
            and other.x0 < self.x1
        )

    def inside(self, shape: tuple[int, int]) -> bool:
        ny, nx = shape
        return 0 <= self.y0 < self.y1 <= ny and 0 <= self.x0 < self.x1 <= nx

    def to_section(self) -> str:
        """Back to FITS notation (1-based, inclusive)."""
        return f"[{self.x0 + 1}:{self.x1},{self.y0 + 1}:{self.y1}]"


def parse_section(text: str) -> Rect:
    """Parse ``[x1:x2,y1:y2]`` into a :class:`Rect`.

    Reversed ranges (``x1 > x2``) are accepted; they only describe the
    serial direction and cover the same pixels.
    """
    m = _SECTION_RE.match(str(text))
    if not m:
        raise ValueError(f"Not a FITS section: {text!r}")
    xa, xb, ya, yb = (int(g) for g in m.groups())
    if min(xa, xb, ya, yb) < 1:
        raise ValueError(f"FITS sections are 1-based: {text!r}")
    x0, x1 = min(xa, xb) - 1, max(xa, xb)
    y0, y1 = min(ya, yb) - 1, max(ya, yb)
    return Rect(y0=y0, y1=y1, x0=x0, x1=x1)


@dataclass(frozen=True)
class Amplifier:
    index: int  # 0-based
    overscan: Rect
    data: Rect
    target: Rect
    readout: Readout

    @property
    def number(self) -> int:
        """1-based amplifier number used in header keywords."""
        return self.index + 1


@dataclass(frozen=True)
class AmplifierGeometry:
    amplifiers: tuple[Amplifier, ...]
    raw_shape: tuple[int, int]

    def __post_init__(self) -> None:
        validate_geometry(self)

    def __iter__(self) -> Iterator[Amplifier]:
        return iter(self.amplifiers)

    def __len__(self) -> int:
        return len(self.amplifiers)

    @property
    def n_amps(self) -> int:
        return len(self.amplifiers)

    @property
    def trimmed_shape(self) -> tuple[int, int]:
        """Bounding box of all trim targets (anchored at the origin)."""
        ny = max(a.target.y1 for a in self.amplifiers)
        nx = max(a.target.x1 for a in self.amplifiers)
        return (ny, nx)

    def coverage(self) -> np.ndarray:
        """How many amplifiers write each trimmed pixel (1 everywhere when valid)."""
        cov = np.zeros(self.trimmed_shape, dtype=np.int32)
        for a in self.amplifiers:
            cov[a.target.slices] += 1
        return cov


def validate_geometry(geom: AmplifierGeometry) -> None:
    """Check the structural invariants; raise :class:`ConfigError` if broken."""

    amps = geom.amplifiers
    if not amps:
        raise ConfigError("No resolvable amplifiers", context={"raw_shape": geom.raw_shape})

    for a in amps:
        if a.data.shape != a.target.shape:
            raise ConfigError(
                f"Amplifier {a.number}: data section {a.data.to_section()} and trim "
                f"section {a.target.to_section()} differ in shape",
            )
        if not a.data.inside(geom.raw_shape):
            raise ConfigError(
                f"Amplifier {a.number}: data section {a.data.to_section()} outside raw frame",
                context={"raw_shape": geom.raw_shape},
            )
        if not a.overscan.inside(geom.raw_shape):
            raise ConfigError(
                f"Amplifier {a.number}: overscan section {a.overscan.to_section()} outside raw frame",
                context={"raw_shape": geom.raw_shape},
            )

    for i, a in enumerate(amps):
        for b in amps[i + 1 :]:
            if a.data.overlaps(b.data):
                raise ConfigError(f"Data sections of amplifiers {a.number} and {b.number} overlap")
            if a.target.overlaps(b.target):
                raise ConfigError(f"Trim sections of amplifiers {a.number} and {b.number} overlap")

    ny, nx = geom.trimmed_shape
    if sum(a.target.area for a in amps) != ny * nx:
        raise ConfigError(
            "Trim sections do not tile the trimmed frame",
            context={"trimmed_shape": (ny, nx)},
        )


def _default_readout(data: Rect, raw_ny: int) -> Readout:
    # Amplifiers sit in the detector corners: the lower half reads upwards.
    return Readout.UP if data.y0 < raw_ny / 2 else Readout.DOWN


def geometry_from_header(
    header: Mapping[str, Any],
    raw_shape: tuple[int, int],
    *,
    name: str = "",
) -> AmplifierGeometry:
    """Build and validate the amplifier geometry of a raw frame."""

    try:
        n_amps = int(header.get("NVIDINP", 0) or 0)
    except (TypeError, ValueError):
        n_amps = 0
    if n_amps <= 0:
        raise ConfigError(
            "Amplifier count is missing or zero",
            missing_keys=["NVIDINP"],
            context={"frame": name},
        )

    amps: list[Amplifier] = []
    for i in range(n_amps):
        n = i + 1
        keys = (f"BSEC{n}", f"DSEC{n}", f"TSEC{n}")
        missing = [k for k in keys if k not in header]
        if missing:
            raise ConfigError(
                f"Amplifier {n} has no section definition",
                missing_keys=missing,
                context={"frame": name, "n_amps": n_amps},
            )
        try:
            overscan, data, target = (parse_section(header[k]) for k in keys)
        except ValueError as e:
            raise ConfigError(str(e), context={"frame": name, "amp": n}) from e

        rd = header.get(f"AMPDIR{n}")
        if rd is None:
            readout = _default_readout(data, raw_shape[0])
        else:
            try:
                readout = Readout(str(rd).strip().lower())
            except ValueError as e:
                raise ConfigError(
                    f"Invalid readout direction {rd!r} for amplifier {n}",
                    context={"frame": name},
                ) from e

        amps.append(Amplifier(index=i, overscan=overscan, data=data, target=target, readout=readout))

    return AmplifierGeometry(amplifiers=tuple(amps), raw_shape=(int(raw_shape[0]), int(raw_shape[1])))
