"""Overscan (row-correlated, 1/f) offset removal.

For every amplifier the overscan columns are collapsed to one robust value
per row (median), a low-order polynomial in row index is fitted to that
vector, and the fitted offset of each row is subtracted from the whole row
of the amplifier's data section.

Notes
-----
- The first rows read out by an amplifier show a settling ramp; they are
  excluded from the fit (``RAMP_SKIP_ROWS``), counted from the readout side.
- ``overscan_buffer`` columns are dropped on both sides of the overscan
  section: the columns next to the data section carry charge-transfer tails.
- The decision to skip is taken per amplifier. A thin overscan on one
  amplifier does not prevent the others from being corrected.
"""

from __future__ import annotations

from dataclasses import dataclass
import logging
from typing import Any, Callable

import numpy as np

from ifsred_pipe.errors import DataQualityWarning
from ifsred_pipe.frame import FrameState
from ifsred_pipe.geometry import Amplifier, Readout
from ifsred_pipe.qc.flags import flag_from_issue
from ifsred_pipe.record import StageDelta
from ifsred_pipe.schema import ProcessingParameters
from ifsred_pipe.stages.gain import resolve_gain


log = logging.getLogger(__name__)

RAMP_SKIP_ROWS = 49


def fit_order(n_amps: int) -> int:
    return 7 if n_amps < 4 else 2


@dataclass(frozen=True)
class OverscanFit:
    rows: np.ndarray  # absolute row index of each overscan sample
    profile: np.ndarray  # row-wise median of the overscan
    used: np.ndarray  # bool, samples that entered the fit
    poly: np.polynomial.Polynomial
    order: int
    residual_std: float

    def evaluate(self, rows: np.ndarray) -> np.ndarray:
        return self.poly(np.asarray(rows, dtype=np.float64))


def overscan_profile(data: np.ndarray, amp: Amplifier, buffer: int) -> tuple[np.ndarray, np.ndarray] | None:
    """Row index and row-wise median of the buffer-trimmed overscan."""

    os_rect = amp.overscan
    x0 = os_rect.x0 + int(buffer)
    x1 = os_rect.x1 - int(buffer)
    if x1 <= x0:
        return None
    block = data[os_rect.y0 : os_rect.y1, x0:x1]
    rows = np.arange(os_rect.y0, os_rect.y1, dtype=np.float64)
    return rows, np.median(block, axis=1)


def fit_overscan(
    rows: np.ndarray,
    profile: np.ndarray,
    *,
    order: int,
    readout: Readout,
) -> OverscanFit:
    """Fit the overscan profile, skipping the readout ramp.

    Raises :class:`DataQualityWarning` when too few rows remain for the
    requested polynomial order.
    """

    n = len(profile)
    used = np.ones(n, dtype=bool)
    skip = min(RAMP_SKIP_ROWS, n)
    if readout is Readout.UP:
        used[:skip] = False
    else:
        used[n - skip :] = False
    used &= np.isfinite(profile)

    if int(used.sum()) < order + 1:
        raise DataQualityWarning(
            "OVERSCAN_TOO_SHORT",
            f"Only {int(used.sum())} usable overscan rows for a degree-{order} fit",
            hint="Overscan correction needs more rows than the readout ramp.",
        )

    poly = np.polynomial.Polynomial.fit(rows[used], profile[used], order)
    resid = profile[used] - poly(rows[used])
    return OverscanFit(
        rows=rows,
        profile=profile,
        used=used,
        poly=poly,
        order=order,
        residual_std=float(np.std(resid)),
    )


def correct_overscan(
    state: FrameState,
    params: ProcessingParameters,
    *,
    observer: Callable[[str, dict[str, Any]], None] | None = None,
) -> tuple[FrameState, StageDelta]:
    if state.trimmed:
        raise RuntimeError("Overscan correction must run before trimming")

    name = state.meta.name
    order = fit_order(state.meta.n_amps)
    default_rn = float(params.default_read_noise)

    data = state.data.copy()
    read_noise = list(state.read_noise)
    cards: dict = {"OSCNDEG": (order, "Overscan polynomial degree")}
    flags: list = []
    n_corrected = 0

    for amp, region in state.regions():
        i = amp.index
        try:
            width = amp.overscan.nx
            if width < int(params.min_overscan_pixels):
                raise DataQualityWarning(
                    "INSUFFICIENT_OVERSCAN",
                    f"Amplifier {amp.number}: overscan width {width} < {params.min_overscan_pixels}",
                    hint="Lower min_overscan_pixels or check BSEC sections.",
                )
            prof = overscan_profile(state.data, amp, params.overscan_buffer)
            if prof is None:
                raise DataQualityWarning(
                    "INSUFFICIENT_OVERSCAN",
                    f"Amplifier {amp.number}: no overscan columns left after a "
                    f"{params.overscan_buffer}-column buffer",
                    hint="Lower overscan_buffer.",
                )
            fit = fit_overscan(*prof, order=order, readout=amp.readout)
        except DataQualityWarning as issue:
            log.warning("%s: %s; overscan not subtracted", name, issue.message)
            flags.append(flag_from_issue(issue, amp=amp.number))
            read_noise[i] = default_rn
            cards[f"OSCNSUB{amp.number}"] = (False, f"Overscan subtracted amp {amp.number}")
            continue

        model = fit.evaluate(np.arange(region.y0, region.y1))
        data[region.slices] -= model[:, None]
        n_corrected += 1

        cards[f"OSCNSUB{amp.number}"] = (True, f"Overscan subtracted amp {amp.number}")
        cards[f"OSCNVAL{amp.number}"] = (float(np.mean(model)), f"Mean overscan amp {amp.number} [counts]")
        cards[f"OSCNRN{amp.number}"] = (fit.residual_std, f"Overscan fit residual amp {amp.number} [counts]")
        if not state.bias_subtracted:
            gain, _ = resolve_gain(state.meta, i)
            read_noise[i] = fit.residual_std * gain

        if observer is not None:
            observer(
                "overscan_fit",
                {
                    "frame": name,
                    "amp": amp.number,
                    "rows": fit.rows,
                    "profile": fit.profile,
                    "used": fit.used,
                    "model": fit.evaluate(fit.rows),
                    "order": order,
                },
            )

    for i, v in enumerate(read_noise):
        cards[f"RDNOISE{i + 1}"] = (float(v), f"Read noise amp {i + 1} [e-]")

    delta = StageDelta(
        stage="overscan",
        applied=n_corrected > 0,
        cards=cards,
        flags=tuple(flags),
        metrics={"n_corrected": n_corrected, "read_noise": list(read_noise)},
    )
    return state.evolve(data=data, read_noise=tuple(read_noise)), delta
