from __future__ import annotations

import logging

import numpy as np

from ifsred_pipe.frame import FrameState
from ifsred_pipe.record import StageDelta


log = logging.getLogger(__name__)


def build_variance(state: FrameState) -> tuple[FrameState, StageDelta]:
    """Poisson plus read-noise variance, per amplifier region.

    Model (electrons): ``var = max(signal, 0) + rn**2``. Negative signal
    (noise undershoot after offset removal) contributes no Poisson term.
    """

    if state.units != "electron":
        log.warning("%s: variance built on %s data, not electrons", state.meta.name, state.units)

    var = np.zeros(state.shape, dtype=np.float64)
    for (amp, region), rn in zip(state.regions(), state.read_noise):
        var[region.slices] = np.maximum(state.data[region.slices], 0.0) + float(rn) ** 2

    delta = StageDelta(
        stage="variance",
        cards={"VARMODEL": ("poisson+rn2", "Variance model")},
        metrics={"median_var": float(np.median(var)) if var.size else 0.0},
    )
    return state.evolve(var=var), delta
