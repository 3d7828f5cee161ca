"""Master-bias subtraction and read-noise bookkeeping.

The master bias is looked up by a string key (normally a file reference from
the configuration). The resolver behind the key returns either a ready
:class:`MasterBias` or the raw bias frames to build one from. Building runs
the frame pipeline itself on every bias input (saturation, overscan; no bias
subtraction, obviously) and median-combines the results, so master bias and
science frames share the same electronic-offset treatment.

Read-noise reconciliation
-------------------------
The bias may have been read with fewer amplifiers than the observation:

* 1 bias amp, N observation amps: broadcast the single value
* 2 bias amps, 4 observation amps: ``[a, b, a, b]`` (the two CCD halves are
  read symmetrically)
* anything else: values as given, padded with the default read noise or
  truncated, and a warning when the counts differ
"""

from __future__ import annotations

from dataclasses import dataclass
import logging
import math
from typing import Callable, Sequence, Union

import numpy as np
from astropy.stats import mad_std

from ifsred_pipe.calib_cache import BuildOnceCache
from ifsred_pipe.errors import DataQualityWarning, MissingResourceWarning
from ifsred_pipe.frame import FrameState, RawFrame
from ifsred_pipe.qc.flags import flag_from_issue
from ifsred_pipe.record import StageDelta
from ifsred_pipe.schema import ProcessingParameters
from ifsred_pipe.stages.gain import resolve_gain


log = logging.getLogger(__name__)


@dataclass(frozen=True)
class MasterBias:
    image: np.ndarray
    read_noise: tuple[float, ...]
    key: str = ""
    n_frames: int = 0

    @property
    def n_amps(self) -> int:
        return len(self.read_noise)


BiasInputs = Union[MasterBias, Sequence[RawFrame]]
BiasResolver = Callable[[str], Union[BiasInputs, None]]


def reconcile_read_noise(
    bias_rn: Sequence[float],
    n_obs: int,
    *,
    default: float,
) -> tuple[tuple[float, ...], DataQualityWarning | None]:
    """Map the master-bias read noise onto the observation's amplifiers."""

    rn = [float(x) for x in bias_rn]
    n_bias = len(rn)

    if n_bias == 1:
        return tuple(rn[0] for _ in range(n_obs)), None
    if n_bias == 2 and n_obs == 4:
        return (rn[0], rn[1], rn[0], rn[1]), None

    issue = None
    if n_bias != n_obs:
        issue = DataQualityWarning(
            "AMP_COUNT_MISMATCH",
            f"Master bias has {n_bias} amplifier(s), observation has {n_obs}",
            hint="Use a master bias taken in the same amplifier mode.",
        )
    out = rn[:n_obs] + [float(default)] * max(0, n_obs - n_bias)
    return tuple(out), issue


def subtract_bias(
    state: FrameState,
    master: MasterBias | None,
    params: ProcessingParameters,
    *,
    key: str | None = None,
) -> tuple[FrameState, StageDelta]:
    """Subtract ``master`` (when usable) and set the per-amplifier read noise."""

    n_obs = state.meta.n_amps
    default_rn = float(params.default_read_noise)
    name = state.meta.name

    issue: MissingResourceWarning | None = None
    if master is None:
        issue = MissingResourceWarning(
            "MISSING_MASTER_BIAS",
            f"No master bias resolvable for key {key!r}; bias not subtracted",
            hint="Set master_bias in the configuration or provide bias frames.",
        )
    elif master.image.shape != state.shape:
        issue = MissingResourceWarning(
            "MASTER_BIAS_SHAPE",
            f"Master bias {master.key!r} has shape {master.image.shape}, frame has {state.shape}",
            hint="Rebuild the master bias with the same readout window.",
        )

    if issue is not None:
        log.warning("%s: %s", name, issue.message)
        delta = StageDelta(
            stage="bias",
            applied=False,
            cards={"BIASSUB": (False, "Master bias subtracted")},
            flags=(flag_from_issue(issue),),
        )
        return state.evolve(read_noise=tuple(default_rn for _ in range(n_obs))), delta

    data = state.data - master.image
    rn, mismatch = reconcile_read_noise(master.read_noise, n_obs, default=default_rn)
    flags = []
    if mismatch is not None:
        log.warning("%s: %s", name, mismatch.message)
        flags.append(flag_from_issue(mismatch))

    cards: dict = {
        "BIASSUB": (True, "Master bias subtracted"),
        "MBFILE": (str(master.key)[-68:], "Master bias used"),
        "MBNAMPS": (master.n_amps, "Amplifiers in master bias"),
    }
    for i, v in enumerate(rn):
        cards[f"BIASRN{i + 1}"] = (float(v), f"Read noise amp {i + 1} from bias [e-]")

    delta = StageDelta(stage="bias", cards=cards, flags=tuple(flags), metrics={"read_noise": list(rn)})
    return state.evolve(data=data, read_noise=rn, bias_subtracted=True), delta


def build_master_bias(
    key: str,
    frames: Sequence[RawFrame],
    process: Callable[[RawFrame], FrameState],
) -> MasterBias:
    """Median-combine overscan-corrected bias frames and measure the read noise.

    With two or more inputs the read noise of each amplifier is the robust
    scatter of the difference of the first two frames, divided by sqrt(2) and
    converted to electrons. With a single input the overscan estimate of that
    frame is used.
    """

    if not frames:
        raise ValueError(f"No bias frames for master bias {key!r}")

    states = [process(f) for f in frames]
    shape = states[0].shape
    bad = [s.meta.name for s in states if s.shape != shape]
    if bad:
        raise ValueError(f"Bias frames for {key!r} differ in shape: {bad[:6]}")

    stacked = np.median(np.stack([s.data for s in states], axis=0), axis=0)

    # Only the residual 2-D structure of the data sections is kept. The
    # overscan columns stay zero so the science frame's own overscan level
    # survives the subtraction and is fitted afterwards.
    ref = states[0]
    image = np.zeros_like(stacked)
    for _amp, region in ref.regions():
        image[region.slices] = stacked[region.slices]

    if len(states) >= 2:
        diff = states[0].data - states[1].data
        rn = []
        for amp, region in ref.regions():
            gain, _ = resolve_gain(ref.meta, amp.index)
            rn.append(float(mad_std(diff[region.slices])) / math.sqrt(2.0) * gain)
        read_noise = tuple(rn)
    else:
        read_noise = tuple(ref.read_noise)

    log.info(
        "Master bias %r: %d frame(s), read noise %s e-",
        key,
        len(states),
        ", ".join(f"{v:.2f}" for v in read_noise),
    )
    return MasterBias(image=image, read_noise=read_noise, key=key, n_frames=len(states))


class MasterBiasProvider:
    """Resolve, build at most once, and serve master biases by key."""

    def __init__(self, resolver: BiasResolver | None, process: Callable[[RawFrame], FrameState]):
        self._resolver = resolver
        self._process = process
        self._cache: BuildOnceCache[str, MasterBias | None] = BuildOnceCache(self._build, name="master-bias")

    @property
    def cache(self) -> BuildOnceCache[str, MasterBias | None]:
        return self._cache

    def get(self, key: str | None) -> MasterBias | None:
        if not key or self._resolver is None:
            return None
        return self._cache.get(key)

    def _build(self, key: str) -> MasterBias | None:
        inputs = self._resolver(key)
        if isinstance(inputs, MasterBias):
            return inputs
        frames = list(inputs or [])
        if not frames:
            return None
        return build_master_bias(key, frames, self._process)
