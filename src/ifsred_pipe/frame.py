"""Frame containers passed between stages."""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from typing import Any, Iterator

import numpy as np
from astropy.io import fits

from ifsred_pipe.geometry import Amplifier, Rect
from ifsred_pipe.maskbits import MASK_DTYPE, empty_mask
from ifsred_pipe.metadata import FrameMeta
from ifsred_pipe.record import ProcessingRecord, StageDelta


@dataclass(frozen=True)
class RawFrame:
    """Raw detector counts plus the header they came with. Never mutated."""

    data: np.ndarray
    header: fits.Header = field(default_factory=fits.Header)
    name: str = ""

    def __post_init__(self) -> None:
        if np.ndim(self.data) != 2:
            raise ValueError(f"Raw frame {self.name!r} must be 2-D, got shape {np.shape(self.data)}")

    @property
    def shape(self) -> tuple[int, int]:
        return tuple(np.shape(self.data))  # type: ignore[return-value]


@dataclass(frozen=True)
class FrameState:
    """Intensity, mask and (optional) variance of a frame between two stages.

    Stages return a new state; arrays of the previous state are left alone.
    Before trimming the per-amplifier regions are the raw data sections,
    afterwards they are the trim targets.
    """

    data: np.ndarray
    mask: np.ndarray
    meta: FrameMeta
    var: np.ndarray | None = None
    read_noise: tuple[float, ...] = ()
    trimmed: bool = False
    bias_subtracted: bool = False
    units: str = "count"
    record: ProcessingRecord = field(default_factory=ProcessingRecord)

    @classmethod
    def from_raw(cls, raw: RawFrame, meta: FrameMeta, *, default_read_noise: float) -> "FrameState":
        data = np.asarray(raw.data, dtype=np.float64).copy()
        return cls(
            data=data,
            mask=empty_mask(data.shape),
            meta=meta,
            read_noise=tuple(float(default_read_noise) for _ in range(meta.n_amps)),
        )

    @property
    def shape(self) -> tuple[int, int]:
        return tuple(self.data.shape)  # type: ignore[return-value]

    def region(self, amp: Amplifier) -> Rect:
        return amp.target if self.trimmed else amp.data

    def regions(self) -> Iterator[tuple[Amplifier, Rect]]:
        for amp in self.meta.geometry:
            yield amp, self.region(amp)

    def evolve(self, **changes: Any) -> "FrameState":
        if "mask" in changes:
            changes["mask"] = np.asarray(changes["mask"], dtype=MASK_DTYPE)
        return replace(self, **changes)

    def with_delta(self, delta: StageDelta) -> "FrameState":
        return replace(self, record=self.record.merge(delta))
