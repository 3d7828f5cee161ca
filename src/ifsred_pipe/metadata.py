"""Header contract: normalize raw-frame metadata.

For strict, reproducible processing we extract a small, typed metadata blob
from the raw header and **fail loudly** when the detector layout cannot be
resolved. Everything that only degrades a correction (missing gain,
missing nod-and-shuffle bands, ...) is tolerated here and handled by the
stage that needs it.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
import math
import re
from typing import Any, Mapping

from ifsred_pipe.errors import ConfigError
from ifsred_pipe.geometry import AmplifierGeometry, geometry_from_header


class ImageType(str, Enum):
    OBJECT = "OBJECT"
    DARK = "DARK"
    BIAS = "BIAS"
    FLATLAMP = "FLATLAMP"
    DOMEFLAT = "DOMEFLAT"
    TWIFLAT = "TWIFLAT"
    CONTBARS = "CONTBARS"
    ARCLAMP = "ARCLAMP"
    UNKNOWN = "UNKNOWN"

    @classmethod
    def parse(cls, value: Any) -> "ImageType":
        s = norm_str(value).upper()
        try:
            return cls(s)
        except ValueError:
            return cls.UNKNOWN

    @property
    def is_flat(self) -> bool:
        return self in _FLAT_TYPES


_FLAT_TYPES = frozenset({ImageType.FLATLAMP, ImageType.DOMEFLAT, ImageType.TWIFLAT, ImageType.CONTBARS})


class AmpMode(str, Enum):
    """Amplifier readout modes.

    Single-amplifier modes are named after the detector corner that is read:
    ``__A`` lower-left, ``__B`` lower-right, ``__C`` upper-left, ``__D``
    upper-right.
    """

    ALL = "ALL"
    L2 = "L2"
    U2 = "U2"
    SINGLE_A = "__A"
    SINGLE_B = "__B"
    SINGLE_C = "__C"
    SINGLE_D = "__D"

    @classmethod
    def parse(cls, value: Any) -> "AmpMode":
        s = norm_str(value).upper()
        try:
            return cls(s)
        except ValueError:
            raise ConfigError(
                f"Unrecognised amplifier mode {s!r}",
                context={"allowed": [m.value for m in cls]},
            ) from None


@dataclass(frozen=True)
class NodShuffleBands:
    """Sky and object row bands (0-based, inclusive) of the trimmed image."""

    sky0: int
    sky1: int
    obj0: int
    obj1: int

    @property
    def sky_height(self) -> int:
        return self.sky1 - self.sky0 + 1

    @property
    def obj_height(self) -> int:
        return self.obj1 - self.obj0 + 1


@dataclass(frozen=True)
class FrameMeta:
    """Normalized metadata extracted from a raw header."""

    name: str
    imtype: ImageType
    amp_mode: AmpMode
    geometry: AmplifierGeometry
    exptime: float
    binning_x: int
    binning_y: int
    masked: bool
    nod_shuffle: bool
    ns_bands: NodShuffleBands | None
    amp_gains: tuple[float | None, ...] = ()
    gain: float | None = None

    @property
    def n_amps(self) -> int:
        return self.geometry.n_amps

    @property
    def binning_key(self) -> str:
        return f"{self.binning_x}x{self.binning_y}"

    @property
    def defect_key(self) -> str:
        """Lookup key of the bad-column table for this readout setup."""
        return f"{self.amp_mode.value}_{self.binning_key}"


# -----------------------------
# Normalization helpers
# -----------------------------


def norm_str(v: Any) -> str:
    """Trim and normalize a string-like header value."""

    if v is None:
        return ""
    s = str(v).strip()
    return re.sub(r"\s+", " ", s)


def norm_bool(v: Any) -> bool:
    if isinstance(v, bool):
        return v
    if v is None:
        return False
    if isinstance(v, (int, float)):
        return bool(v)
    return norm_str(v).upper() in {"T", "TRUE", "YES", "Y", "1", "ON"}


def _parse_float(header: Mapping[str, Any], keys: tuple[str, ...]) -> float | None:
    for k in keys:
        if k in header:
            try:
                return float(header[k])
            except (TypeError, ValueError):
                continue
    return None


def _positive(v: float | None) -> float | None:
    if v is None or not math.isfinite(v) or v <= 0:
        return None
    return v


def parse_binning(header: Mapping[str, Any]) -> tuple[int, int]:
    """Return ``(xbin, ybin)`` from ``BINNING='x,y'`` or ``CCDSUM='x y'``."""

    for key in ("BINNING", "CCDSUM"):
        raw = norm_str(header.get(key))
        if not raw:
            continue
        parts = re.split(r"[,\sx]+", raw.lower())
        try:
            bx, by = int(parts[0]), int(parts[1])
        except (IndexError, ValueError):
            continue
        if bx > 0 and by > 0:
            return bx, by
    return 1, 1


def parse_ns_bands(header: Mapping[str, Any]) -> NodShuffleBands | None:
    keys = ("NSSKYR0", "NSSKYR1", "NSOBJR0", "NSOBJR1")
    if not all(k in header for k in keys):
        return None
    try:
        vals = [int(header[k]) for k in keys]
    except (TypeError, ValueError):
        return None
    return NodShuffleBands(*vals)


def parse_frame_meta(
    header: Mapping[str, Any],
    raw_shape: tuple[int, int],
    *,
    name: str = "",
) -> FrameMeta:
    """Normalize a raw header. Raises :class:`ConfigError` on layout problems."""

    geometry = geometry_from_header(header, raw_shape, name=name)
    if "AMPMODE" not in header:
        raise ConfigError("Amplifier mode is missing", missing_keys=["AMPMODE"], context={"frame": name})
    amp_mode = AmpMode.parse(header.get("AMPMODE"))

    exptime = _parse_float(header, ("TTIME", "EXPTIME", "ELAPTIME"))
    bx, by = parse_binning(header)
    amp_gains = tuple(_positive(_parse_float(header, (f"GAIN{a.number}",))) for a in geometry)

    return FrameMeta(
        name=name,
        imtype=ImageType.parse(header.get("IMTYPE", header.get("IMAGETYP"))),
        amp_mode=amp_mode,
        geometry=geometry,
        exptime=float(exptime) if exptime is not None else 0.0,
        binning_x=bx,
        binning_y=by,
        masked=norm_bool(header.get("NASMASK")),
        nod_shuffle=norm_bool(header.get("NODSHUF")),
        ns_bands=parse_ns_bands(header),
        amp_gains=amp_gains,
        gain=_positive(_parse_float(header, ("GAIN", "EGAIN"))),
    )
