"""Canonical orientation.

Depending on which amplifiers read the detector, the trimmed image comes out
mirrored or rotated. A fixed table maps every :class:`AmpMode` to the
transform that restores the canonical orientation; the transform is applied
to data, mask and variance together.
"""

from __future__ import annotations

from enum import Enum
import logging
from typing import Mapping

import numpy as np

from ifsred_pipe.frame import FrameState
from ifsred_pipe.geometry import Rect
from ifsred_pipe.metadata import AmpMode
from ifsred_pipe.record import StageDelta


log = logging.getLogger(__name__)


class Transform(str, Enum):
    IDENTITY = "identity"
    ROT180 = "rot180"
    FLIP_X = "flip_x"  # mirror columns
    FLIP_Y = "flip_y"  # mirror rows


RECTIFY_TABLE: Mapping[AmpMode, Transform] = {
    AmpMode.ALL: Transform.IDENTITY,
    AmpMode.L2: Transform.IDENTITY,
    AmpMode.U2: Transform.FLIP_Y,
    AmpMode.SINGLE_A: Transform.IDENTITY,
    AmpMode.SINGLE_B: Transform.FLIP_X,
    AmpMode.SINGLE_C: Transform.FLIP_Y,
    AmpMode.SINGLE_D: Transform.ROT180,
}


def transform_for(mode: AmpMode) -> Transform:
    return RECTIFY_TABLE[mode]


def apply_transform(arr: np.ndarray, transform: Transform) -> np.ndarray:
    if transform is Transform.IDENTITY:
        return np.array(arr, copy=True)
    if transform is Transform.ROT180:
        return np.rot90(arr, 2).copy()
    if transform is Transform.FLIP_X:
        return np.fliplr(arr).copy()
    if transform is Transform.FLIP_Y:
        return np.flipud(arr).copy()
    raise ValueError(f"Unknown transform {transform!r}")


def transform_rect(rect: Rect, shape: tuple[int, int], transform: Transform) -> Rect:
    """Where ``rect`` ends up after ``transform`` of an image of ``shape``."""
    ny, nx = shape
    y0, y1, x0, x1 = rect.y0, rect.y1, rect.x0, rect.x1
    if transform in (Transform.FLIP_Y, Transform.ROT180):
        y0, y1 = ny - y1, ny - y0
    if transform in (Transform.FLIP_X, Transform.ROT180):
        x0, x1 = nx - x1, nx - x0
    return Rect(y0=y0, y1=y1, x0=x0, x1=x1)


def rectify_planes(
    data: np.ndarray,
    mask: np.ndarray,
    var: np.ndarray | None,
    transform: Transform,
) -> tuple[np.ndarray, np.ndarray, np.ndarray | None]:
    return (
        apply_transform(data, transform),
        apply_transform(mask, transform),
        None if var is None else apply_transform(var, transform),
    )


def rectify(state: FrameState) -> tuple[FrameState, StageDelta]:
    transform = transform_for(state.meta.amp_mode)
    data, mask, var = rectify_planes(state.data, state.mask, state.var, transform)

    cards: dict = {"RECTXFRM": (transform.value, f"Rectification for AMPMODE {state.meta.amp_mode.value}")}
    if state.trimmed:
        for amp in state.meta.geometry:
            r = transform_rect(amp.target, state.shape, transform)
            cards[f"ASEC{amp.number}"] = (r.to_section(), f"Amp {amp.number} section (rectified)")

    log.debug("%s: rectified with %s", state.meta.name, transform.value)
    delta = StageDelta(stage="rectify", applied=transform is not Transform.IDENTITY, cards=cards)
    return state.evolve(data=data, mask=mask, var=var), delta
