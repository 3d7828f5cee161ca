from __future__ import annotations

import logging

import numpy as np

from ifsred_pipe.frame import FrameState
from ifsred_pipe.maskbits import MaskBits, set_bits
from ifsred_pipe.record import StageDelta
from ifsred_pipe.schema import ProcessingParameters


log = logging.getLogger(__name__)


def flag_saturation(state: FrameState, params: ProcessingParameters) -> tuple[FrameState, StageDelta]:
    """Set ``SATURATED`` on raw pixels at or above the saturation level.

    Must run on raw counts, before any offset is removed. ``NSATPIX`` counts
    the pixels inside the data sections (the ones that reach the product);
    saturated overscan pixels are counted separately in ``NSATOSC``.
    """

    level = float(params.saturation_level)
    sat = np.isfinite(state.data) & (state.data >= level)

    in_data = np.zeros_like(sat)
    for _amp, region in state.regions():
        in_data[region.slices] = True
    n_sat = int(np.count_nonzero(sat & in_data))
    n_outside = int(np.count_nonzero(sat & ~in_data))
    if n_sat:
        log.info("%s: %d saturated pixel(s) (>= %g)", state.meta.name, n_sat, level)
    if n_outside:
        log.debug("%s: %d saturated pixel(s) outside the data sections", state.meta.name, n_outside)

    delta = StageDelta(
        stage="saturation",
        cards={
            "NSATPIX": (n_sat, "Saturated pixels in the data sections"),
            "NSATOSC": (n_outside, "Saturated pixels outside the data sections"),
            "SATLEVEL": (level, "Saturation level [counts]"),
        },
        metrics={"n_saturated": n_sat, "n_saturated_outside": n_outside},
    )
    return state.evolve(mask=set_bits(state.mask, sat, MaskBits.SATURATED)), delta
