"""Nod-and-shuffle sky subtraction.

In nod-and-shuffle mode the charge is shuffled between a sky band and an
object band during the exposure, so one readout holds both. The sky band is
shifted onto the object band and subtracted in-frame.

Layouts
-------
* nominal: the sky band ends before the object band starts. Source = sky
  band, destination = object band.
* aborted: the shuffle sequence was interrupted and the panels are
  inverted; the sky band sits in the middle third of the image. Source and
  destination are swapped.

Products (all zero outside the destination band, in data, variance and
mask):

* sky: source rows shifted into the destination rows
* object: destination rows
* difference: object - sky, ``var = var_obj + var_sky``,
  ``mask = mask_obj | mask_sky``
"""

from __future__ import annotations

from dataclasses import dataclass
import logging
from typing import Any, Callable

import numpy as np

from ifsred_pipe.errors import ValidationError
from ifsred_pipe.frame import FrameState
from ifsred_pipe.maskbits import empty_mask
from ifsred_pipe.metadata import ImageType, NodShuffleBands
from ifsred_pipe.qc.flags import flag_from_issue
from ifsred_pipe.record import StageDelta
from ifsred_pipe.schema import ProcessingParameters


log = logging.getLogger(__name__)

LAYOUT_NOMINAL = "nominal"
LAYOUT_ABORTED = "aborted"


@dataclass(frozen=True)
class NodShuffleProducts:
    difference: FrameState
    sky: FrameState
    obj: FrameState
    source: tuple[int, int]
    destination: tuple[int, int]
    aborted: bool


def classify_layout(bands: NodShuffleBands, ny: int) -> str | None:
    if bands.sky1 < bands.obj0:
        return LAYOUT_NOMINAL
    if bands.sky0 >= ny / 3.0 and bands.sky1 < 2.0 * ny / 3.0:
        return LAYOUT_ABORTED
    return None


def check_bands(bands: NodShuffleBands, ny: int) -> str:
    """Validate the bands against an image of ``ny`` rows and return the layout."""

    for lo, hi in ((bands.sky0, bands.sky1), (bands.obj0, bands.obj1)):
        if not (0 <= lo <= hi < ny):
            raise ValidationError(
                "NS_BAND_RANGE",
                f"Nod-and-shuffle band [{lo}, {hi}] outside image rows [0, {ny - 1}]",
                hint="Check NSSKYR0/NSSKYR1/NSOBJR0/NSOBJR1.",
            )
    if bands.sky_height != bands.obj_height:
        raise ValidationError(
            "NS_BAND_MISMATCH",
            f"Sky band height {bands.sky_height} != object band height {bands.obj_height}",
            hint="Sky and object bands must have the same number of rows.",
        )
    layout = classify_layout(bands, ny)
    if layout is None:
        raise ValidationError(
            "NS_LAYOUT_UNRECOGNIZED",
            f"Sky band [{bands.sky0}, {bands.sky1}] neither precedes the object band "
            f"nor lies in the middle third of {ny} rows",
        )
    return layout


def split_bands(
    state: FrameState,
    source: tuple[int, int],
    destination: tuple[int, int],
    *,
    aborted: bool = False,
) -> NodShuffleProducts:
    s = slice(source[0], source[1] + 1)
    d = slice(destination[0], destination[1] + 1)

    data = state.data
    var = state.var if state.var is not None else np.zeros(state.shape, dtype=np.float64)
    mask = state.mask

    sky = np.zeros(state.shape, dtype=np.float64)
    obj = np.zeros(state.shape, dtype=np.float64)
    sky[d] = data[s]
    obj[d] = data[d]

    sky_var = np.zeros(state.shape, dtype=np.float64)
    obj_var = np.zeros(state.shape, dtype=np.float64)
    sky_var[d] = var[s]
    obj_var[d] = var[d]

    sky_mask = empty_mask(state.shape)
    obj_mask = empty_mask(state.shape)
    sky_mask[d] = mask[s]
    obj_mask[d] = mask[d]

    return NodShuffleProducts(
        difference=state.evolve(data=obj - sky, var=obj_var + sky_var, mask=obj_mask | sky_mask),
        sky=state.evolve(data=sky, var=sky_var, mask=sky_mask),
        obj=state.evolve(data=obj, var=obj_var, mask=obj_mask),
        source=source,
        destination=destination,
        aborted=aborted,
    )


def subtract_nod_shuffle(
    state: FrameState,
    params: ProcessingParameters,
    *,
    observer: Callable[[str, dict[str, Any]], None] | None = None,
) -> tuple[FrameState, StageDelta, NodShuffleProducts | None]:
    meta = state.meta
    not_applied = StageDelta(stage="nodshuffle", applied=False, cards={"NSSUB": (False, "Nod-and-shuffle subtracted")})

    if not (
        params.nod_shuffle_enabled
        and meta.imtype is ImageType.OBJECT
        and meta.masked
        and meta.nod_shuffle
    ):
        return state, not_applied, None

    try:
        if meta.ns_bands is None:
            raise ValidationError(
                "NS_BANDS_MISSING",
                "Nod-and-shuffle exposure without sky/object band rows",
                hint="Header needs NSSKYR0, NSSKYR1, NSOBJR0, NSOBJR1.",
            )
        bands = meta.ns_bands
        layout = check_bands(bands, state.shape[0])
    except ValidationError as issue:
        log.warning("%s: %s; nod-and-shuffle skipped", meta.name, issue.message)
        delta = StageDelta(
            stage="nodshuffle",
            applied=False,
            cards=dict(not_applied.cards),
            flags=(flag_from_issue(issue),),
        )
        return state, delta, None

    sky_band = (bands.sky0, bands.sky1)
    obj_band = (bands.obj0, bands.obj1)
    aborted = layout == LAYOUT_ABORTED
    if aborted:
        log.warning("%s: aborted nod-and-shuffle layout, bands swapped", meta.name)
        products = split_bands(state, source=obj_band, destination=sky_band, aborted=True)
    else:
        products = split_bands(state, source=sky_band, destination=obj_band)

    if observer is not None:
        observer(
            "nodshuffle",
            {
                "frame": meta.name,
                "source": products.source,
                "destination": products.destination,
                "aborted": aborted,
                "difference": products.difference.data,
            },
        )

    log.info(
        "%s: nod-and-shuffle %s, rows %d-%d -> %d-%d",
        meta.name,
        layout,
        products.source[0],
        products.source[1],
        products.destination[0],
        products.destination[1],
    )
    delta = StageDelta(
        stage="nodshuffle",
        cards={
            "NSSUB": (True, "Nod-and-shuffle subtracted"),
            "NSSKYR0": (bands.sky0, "Sky band first row"),
            "NSSKYR1": (bands.sky1, "Sky band last row"),
            "NSOBJR0": (bands.obj0, "Object band first row"),
            "NSOBJR1": (bands.obj1, "Object band last row"),
            "NSABORT": (aborted, "Non-standard (aborted) shuffle layout"),
        },
        metrics={"layout": layout},
    )
    return products.difference, delta, products
