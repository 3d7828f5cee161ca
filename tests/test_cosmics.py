from __future__ import annotations

import numpy as np
import pytest

from ifsred_pipe.frame import FrameState
from ifsred_pipe.maskbits import MaskBits
from ifsred_pipe.metadata import parse_frame_meta
from ifsred_pipe.schema import ProcessingParameters, SigmaRule
from ifsred_pipe.stages.cosmics import mask_cosmics, select_sigclip, skip_reason
from ifsred_pipe.stages.trim import trim

from synth import FakeDetector, make_raw


def _state(**cards):
    raw = make_raw(**cards)
    meta = parse_frame_meta(raw.header, raw.shape, name=raw.name)
    state, _ = trim(FrameState.from_raw(raw, meta, default_read_noise=3.0))
    return state


@pytest.mark.parametrize(
    "cards, expected",
    [
        ({"IMTYPE": "OBJECT", "TTIME": 30.0}, 10.0),
        ({"IMTYPE": "DARK", "TTIME": 59.9}, 10.0),
        ({"IMTYPE": "OBJECT", "TTIME": 60.0}, 4.5),
        ({"IMTYPE": "CONTBARS", "TTIME": 100.0, "NASMASK": True}, 10.0),
        ({"IMTYPE": "FLATLAMP", "TTIME": 100.0, "NASMASK": True}, 10.0),
        ({"IMTYPE": "DOMEFLAT", "TTIME": 100.0, "NASMASK": False}, 7.0),
        ({"IMTYPE": "CONTBARS", "TTIME": 100.0, "NASMASK": False}, 7.0),
        ({"IMTYPE": "TWIFLAT", "TTIME": 100.0, "NASMASK": True}, 4.5),
    ],
)
def test_default_sigma_table(cards, expected):
    state = _state(**cards)
    sigclip, _ = select_sigclip(state.meta, ProcessingParameters())
    assert sigclip == expected


def test_custom_sigma_table_first_match_wins():
    params = ProcessingParameters(
        cr_sigclip=5.0,
        cr_sigma_table=[
            SigmaRule(image_types=["object"], min_exptime=100.0, sigclip=6.0),
            SigmaRule(image_types=["OBJECT"], sigclip=8.0),
        ],
    )
    assert select_sigclip(_state(TTIME=300.0).meta, params) == (6.0, 0)
    assert select_sigclip(_state(TTIME=30.0).meta, params) == (8.0, 1)
    assert select_sigclip(_state(IMTYPE="DARK", TTIME=30.0).meta, params) == (5.0, None)


@pytest.mark.parametrize(
    "cards, params, reason",
    [
        ({"TTIME": 2.0}, {}, "exposure"),
        ({"TTIME": 100.0, "IMTYPE": "ARCLAMP"}, {}, "image type"),
        ({"TTIME": 100.0, "IMTYPE": "BIAS"}, {}, "image type"),
        ({"TTIME": 100.0}, {"cr_enabled": False}, "disabled"),
    ],
)
def test_skip_conditions(cards, params, reason):
    state = _state(**cards)
    detector = FakeDetector([(1, 1)])

    out, delta = mask_cosmics(state, ProcessingParameters(**params), detector)

    assert reason in skip_reason(state.meta, ProcessingParameters(**params))
    assert detector.calls == []
    assert out is state
    assert delta.cards["CRCLEAN"][0] is False
    assert not delta.applied


def test_detector_mask_is_merged_without_clearing_bits():
    state = _state(TTIME=100.0, GAIN=2.0)
    mask = state.mask.copy()
    mask[5, 5] = MaskBits.SATURATED
    state = state.evolve(mask=mask, read_noise=(3.0, 5.0), units="electron")
    detector = FakeDetector([(5, 5), (20, 30), (40, 90)])

    out, delta = mask_cosmics(state, ProcessingParameters(), detector)

    assert out.mask[5, 5] == MaskBits.SATURATED | MaskBits.COSMIC_RAY
    assert out.mask[20, 30] == MaskBits.COSMIC_RAY
    assert int(np.count_nonzero(out.mask & MaskBits.COSMIC_RAY)) == 3
    assert np.array_equal(out.data, state.data)

    assert delta.cards["CRCLEAN"][0] is True
    assert delta.cards["NCRCLEAN"][0] == 3
    assert delta.cards["CRSIGCLP"][0] == 4.5
    assert delta.cards["CRPSFMOD"][0] == "gaussy"

    kw = detector.calls[0]
    assert kw["readnoise"] == pytest.approx(4.0)
    assert kw["gain"] == 1.0
    assert kw["satlevel"] == pytest.approx(65535.0 * 2.0)
    assert kw["psfsize"] == 7
    assert kw["inmask"][5, 5]
    assert not kw["inmask"][20, 30]


def test_detector_shape_mismatch_raises():
    state = _state(TTIME=100.0)
    detector = FakeDetector(shape=(10, 10))
    with pytest.raises(ValueError):
        mask_cosmics(state, ProcessingParameters(), detector)


def test_cosmics_observer_checkpoint():
    state = _state(TTIME=100.0)
    seen = []

    mask_cosmics(state, ProcessingParameters(), FakeDetector([(3, 3)]), observer=lambda cp, p: seen.append((cp, p)))

    assert seen[0][0] == "cosmics"
    assert seen[0][1]["mask"][3, 3]
