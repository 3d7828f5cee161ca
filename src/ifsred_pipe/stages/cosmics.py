"""Cosmic-ray masking.

The detection itself is delegated to a :class:`CosmicRayDetector`. The
default implementation wraps ``astroscrappy.detect_cosmics`` (the reference
L.A.Cosmic engine); tests and alternative engines can pass any callable with
the same keyword interface. This stage only decides *whether* to run, picks
the sigma-clip threshold and merges the returned mask into ``COSMIC_RAY``.
Pixel values are left untouched: downstream stages work from the mask.
"""

from __future__ import annotations

import logging
from typing import Any, Callable, Protocol

import numpy as np

from ifsred_pipe.frame import FrameState
from ifsred_pipe.maskbits import MaskBits, set_bits
from ifsred_pipe.metadata import FrameMeta, ImageType
from ifsred_pipe.record import StageDelta
from ifsred_pipe.schema import ProcessingParameters, SigmaRule
from ifsred_pipe.stages.gain import mean_gain


log = logging.getLogger(__name__)

# exposures at or below this [s] are not cleaned
CR_MIN_EXPTIME = 2.0

CR_IMAGE_TYPES = frozenset(
    {
        ImageType.OBJECT,
        ImageType.DARK,
        ImageType.FLATLAMP,
        ImageType.DOMEFLAT,
        ImageType.TWIFLAT,
        ImageType.CONTBARS,
    }
)


class CosmicRayDetector(Protocol):
    def __call__(
        self,
        data: np.ndarray,
        *,
        inmask: np.ndarray,
        sigclip: float,
        sigfrac: float,
        objlim: float,
        psfmodel: str,
        psffwhm: float,
        psfsize: int,
        readnoise: float,
        gain: float,
        satlevel: float,
    ) -> np.ndarray: ...


class AstroscrappyDetector:
    """:class:`CosmicRayDetector` backed by ``astroscrappy.detect_cosmics``."""

    def __init__(self, niter: int = 4, cleantype: str = "meanmask"):
        self.niter = int(niter)
        self.cleantype = cleantype

    def __call__(self, data: np.ndarray, **kw: Any) -> np.ndarray:
        import astroscrappy

        crmask, _cleaned = astroscrappy.detect_cosmics(
            np.asarray(data, dtype=np.float32),
            inmask=np.asarray(kw["inmask"], dtype=bool),
            sigclip=float(kw["sigclip"]),
            sigfrac=float(kw["sigfrac"]),
            objlim=float(kw["objlim"]),
            gain=float(kw["gain"]),
            readnoise=float(kw["readnoise"]),
            satlevel=float(kw["satlevel"]),
            niter=self.niter,
            cleantype=self.cleantype,
            psfmodel=str(kw["psfmodel"]),
            psffwhm=float(kw["psffwhm"]),
            psfsize=int(kw["psfsize"]),
            verbose=False,
        )
        return np.asarray(crmask, dtype=bool)


def rule_matches(rule: SigmaRule, meta: FrameMeta) -> bool:
    if rule.image_types and meta.imtype.value not in rule.image_types:
        return False
    if rule.masked is not None and rule.masked != meta.masked:
        return False
    if rule.min_exptime is not None and meta.exptime < rule.min_exptime:
        return False
    if rule.max_exptime is not None and meta.exptime >= rule.max_exptime:
        return False
    return True


def select_sigclip(meta: FrameMeta, params: ProcessingParameters) -> tuple[float, int | None]:
    """Sigma-clip threshold for this frame and the index of the matching rule."""

    for i, rule in enumerate(params.cr_sigma_table):
        if rule_matches(rule, meta):
            return float(rule.sigclip), i
    return float(params.cr_sigclip), None


def skip_reason(meta: FrameMeta, params: ProcessingParameters) -> str | None:
    if not params.cr_enabled:
        return "disabled"
    if meta.imtype not in CR_IMAGE_TYPES:
        return f"image type {meta.imtype.value}"
    if meta.exptime <= CR_MIN_EXPTIME:
        return f"exposure {meta.exptime:g} s <= {CR_MIN_EXPTIME:g} s"
    return None


def mask_cosmics(
    state: FrameState,
    params: ProcessingParameters,
    detector: CosmicRayDetector | None,
    *,
    observer: Callable[[str, dict[str, Any]], None] | None = None,
) -> tuple[FrameState, StageDelta]:
    meta = state.meta
    reason = skip_reason(meta, params)
    if reason is None and detector is None:
        reason = "no detector"
    if reason is not None:
        log.info("%s: cosmic-ray masking skipped (%s)", meta.name, reason)
        delta = StageDelta(
            stage="cosmics",
            applied=False,
            cards={"CRCLEAN": (False, "Cosmic rays masked")},
            metrics={"skip_reason": reason},
        )
        return state, delta

    sigclip, rule = select_sigclip(meta, params)
    gain = mean_gain(meta)
    readnoise = float(np.mean(state.read_noise)) if state.read_noise else float(params.default_read_noise)

    crmask = detector(
        state.data,
        inmask=state.mask != 0,
        sigclip=sigclip,
        sigfrac=float(params.cr_sigfrac),
        objlim=float(params.cr_objlim),
        psfmodel=params.cr_psf_model,
        psffwhm=float(params.cr_psf_fwhm),
        psfsize=int(params.cr_psf_size),
        readnoise=readnoise,
        # data are already in electrons
        gain=1.0,
        satlevel=float(params.saturation_level) * gain,
    )
    crmask = np.asarray(crmask, dtype=bool)
    if crmask.shape != state.shape:
        raise ValueError(f"Cosmic-ray detector returned shape {crmask.shape}, expected {state.shape}")

    n_cr = int(np.count_nonzero(crmask))
    log.info("%s: %d cosmic-ray pixel(s) (sigclip=%g)", meta.name, n_cr, sigclip)

    if observer is not None:
        observer("cosmics", {"frame": meta.name, "mask": crmask, "sigclip": sigclip})

    delta = StageDelta(
        stage="cosmics",
        cards={
            "CRCLEAN": (True, "Cosmic rays masked"),
            "NCRCLEAN": (n_cr, "Number of cosmic-ray pixels"),
            "CRSIGCLP": (sigclip, "Cosmic-ray sigma clip"),
            "CRPSFMOD": (params.cr_psf_model, "Cosmic-ray PSF model"),
            "CRPSFWHM": (float(params.cr_psf_fwhm), "Cosmic-ray PSF FWHM [pix]"),
            "CRPSFSIZ": (int(params.cr_psf_size), "Cosmic-ray PSF kernel size [pix]"),
        },
        metrics={"n_cosmic": n_cr, "sigma_rule": rule},
    )
    return state.evolve(mask=set_bits(state.mask, crmask, MaskBits.COSMIC_RAY)), delta
