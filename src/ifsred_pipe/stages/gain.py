from __future__ import annotations

import logging

import numpy as np

from ifsred_pipe.errors import DataQualityWarning
from ifsred_pipe.frame import FrameState
from ifsred_pipe.metadata import FrameMeta
from ifsred_pipe.qc.flags import flag_from_issue
from ifsred_pipe.record import StageDelta
from ifsred_pipe.schema import ProcessingParameters


log = logging.getLogger(__name__)


def resolve_gain(meta: FrameMeta, index: int) -> tuple[float, str]:
    """Gain [e-/count] of amplifier ``index`` (0-based) and where it came from.

    Fallback chain: per-amplifier ``GAINn`` -> detector ``GAIN`` -> 1.0.
    """

    if index < len(meta.amp_gains) and meta.amp_gains[index] is not None:
        return float(meta.amp_gains[index]), "amp"
    if meta.gain is not None:
        return float(meta.gain), "global"
    return 1.0, "default"


def correct_gain(state: FrameState, params: ProcessingParameters) -> tuple[FrameState, StageDelta]:
    """Convert each amplifier region from counts to electrons."""

    data = state.data.copy()
    var = None if state.var is None else state.var.copy()
    cards: dict = {}
    flags: list = []
    gains: list[float] = []

    for amp, region in state.regions():
        gain, source = resolve_gain(state.meta, amp.index)
        if source == "default":
            issue = DataQualityWarning(
                "GAIN_DEFAULTED",
                f"No gain for amplifier {amp.number}; using 1.0",
                hint="Add GAINn or GAIN to the raw header.",
            )
            log.warning("%s: %s", state.meta.name, issue.message)
            flags.append(flag_from_issue(issue, amp=amp.number))

        data[region.slices] *= gain
        if var is not None:
            var[region.slices] *= gain**2
        gains.append(gain)
        cards[f"GAIN{amp.number}"] = (gain, f"Gain applied to amp {amp.number} [e-/count] ({source})")

    cards["BUNIT"] = ("electron", "Pixel unit")
    cards["GAINCOR"] = (True, "Gain correction applied")

    delta = StageDelta(stage="gain", cards=cards, flags=tuple(flags), metrics={"gains": gains})
    return state.evolve(data=data, var=var, units="electron"), delta


def mean_gain(meta: FrameMeta) -> float:
    return float(np.mean([resolve_gain(meta, a.index)[0] for a in meta.geometry]))
