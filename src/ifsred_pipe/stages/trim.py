from __future__ import annotations

import logging

import numpy as np

from ifsred_pipe.frame import FrameState
from ifsred_pipe.maskbits import empty_mask
from ifsred_pipe.record import StageDelta


log = logging.getLogger(__name__)


def trim(state: FrameState) -> tuple[FrameState, StageDelta]:
    """Reassemble the amplifier data sections into one gap-free image.

    The canvas is the bounding box of the trim targets; geometry validation
    guarantees that the targets tile it exactly once. Raw section cards
    (``BSECn``/``DSECn``/``TSECn``) no longer describe the product and are
    superseded by ``ASECn`` (amplifier section in the trimmed image).
    """

    if state.trimmed:
        raise RuntimeError("Frame is already trimmed")

    geom = state.meta.geometry
    shape = geom.trimmed_shape
    data = np.zeros(shape, dtype=state.data.dtype)
    mask = empty_mask(shape)
    var = None if state.var is None else np.zeros(shape, dtype=state.var.dtype)

    cards: dict = {}
    removed: list[str] = []
    for amp in geom:
        data[amp.target.slices] = state.data[amp.data.slices]
        mask[amp.target.slices] = state.mask[amp.data.slices]
        if var is not None:
            var[amp.target.slices] = state.var[amp.data.slices]
        removed.extend([f"BSEC{amp.number}", f"DSEC{amp.number}", f"TSEC{amp.number}"])
        cards[f"ASEC{amp.number}"] = (amp.target.to_section(), f"Amp {amp.number} section (trimmed)")

    log.debug("%s: trimmed %s -> %s", state.meta.name, state.shape, shape)
    delta = StageDelta(
        stage="trim",
        cards=cards,
        removed=tuple(removed),
        metrics={"raw_shape": list(state.shape), "trimmed_shape": list(shape)},
    )
    return state.evolve(data=data, mask=mask, var=var, trimmed=True), delta
