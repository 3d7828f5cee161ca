from __future__ import annotations

import numpy as np
import pytest

from ifsred_pipe.errors import DataQualityWarning
from ifsred_pipe.frame import FrameState
from ifsred_pipe.geometry import Readout
from ifsred_pipe.metadata import parse_frame_meta
from ifsred_pipe.schema import ProcessingParameters
from ifsred_pipe.stages.bias import MasterBias, reconcile_read_noise, subtract_bias
from ifsred_pipe.stages.overscan import RAMP_SKIP_ROWS, correct_overscan, fit_order, fit_overscan

from synth import make_raw


def _state(raw, params=None):
    params = params or ProcessingParameters()
    meta = parse_frame_meta(raw.header, raw.shape, name=raw.name)
    return FrameState.from_raw(raw, meta, default_read_noise=params.default_read_noise)


# ------------------------------ bias ------------------------------


def test_reconcile_single_bias_amp_broadcasts():
    rn, issue = reconcile_read_noise([4.2], 4, default=3.0)
    assert rn == (4.2, 4.2, 4.2, 4.2)
    assert issue is None


def test_reconcile_two_bias_amps_mirror_onto_four():
    rn, issue = reconcile_read_noise([4.0, 5.0], 4, default=3.0)
    assert rn == (4.0, 5.0, 4.0, 5.0)
    assert issue is None


def test_reconcile_other_mismatch_pads_and_warns():
    rn, issue = reconcile_read_noise([4.0, 5.0, 6.0], 4, default=3.0)
    assert rn == (4.0, 5.0, 6.0, 3.0)
    assert isinstance(issue, DataQualityWarning)
    assert issue.code == "AMP_COUNT_MISMATCH"

    rn, issue = reconcile_read_noise([4.0, 5.0, 6.0, 7.0], 2, default=3.0)
    assert rn == (4.0, 5.0)
    assert issue is not None


def test_reconcile_equal_counts_is_silent():
    rn, issue = reconcile_read_noise([4.0, 5.0], 2, default=3.0)
    assert rn == (4.0, 5.0)
    assert issue is None


def test_missing_master_bias_keeps_default_read_noise():
    params = ProcessingParameters(default_read_noise=2.5)
    state = _state(make_raw(), params)

    out, delta = subtract_bias(state, None, params, key="mbias.fits")

    assert not out.bias_subtracted
    assert out.read_noise == (2.5, 2.5)
    assert np.array_equal(out.data, state.data)
    assert delta.cards["BIASSUB"][0] is False
    assert [f["code"] for f in delta.flags] == ["MISSING_MASTER_BIAS"]
    assert delta.flags[0]["kind"] == "MissingResourceWarning"


def test_master_bias_with_wrong_shape_is_not_used():
    params = ProcessingParameters()
    state = _state(make_raw(), params)
    master = MasterBias(image=np.zeros((10, 10)), read_noise=(4.0,), key="mb")

    out, delta = subtract_bias(state, master, params)

    assert not out.bias_subtracted
    assert delta.flags[0]["code"] == "MASTER_BIAS_SHAPE"


def test_master_bias_subtracted_and_read_noise_reconciled():
    params = ProcessingParameters()
    raw = make_raw(n_amps=4)
    state = _state(raw, params)
    master = MasterBias(image=np.full(raw.shape, 1000.0), read_noise=(4.0, 5.0), key="mb.fits")

    out, delta = subtract_bias(state, master, params, key="mb.fits")

    assert out.bias_subtracted
    assert np.allclose(out.data, raw.data - 1000.0)
    assert out.read_noise == (4.0, 5.0, 4.0, 5.0)
    assert delta.cards["MBFILE"][0] == "mb.fits"
    assert delta.cards["BIASRN3"][0] == 4.0
    assert delta.flags == ()


# ------------------------------ overscan ------------------------------


def test_fit_order_depends_on_amplifier_count():
    assert fit_order(1) == 7
    assert fit_order(2) == 7
    assert fit_order(4) == 2


@pytest.mark.parametrize("readout", [Readout.UP, Readout.DOWN])
def test_fit_overscan_skips_readout_ramp(readout):
    n = 120
    rows = np.arange(n, dtype=float)
    profile = np.full(n, 500.0)
    ramp = np.zeros(n, dtype=bool)
    if readout is Readout.UP:
        ramp[:RAMP_SKIP_ROWS] = True
    else:
        ramp[n - RAMP_SKIP_ROWS :] = True
    profile[ramp] += 300.0

    fit = fit_overscan(rows, profile, order=2, readout=readout)

    assert not fit.used[ramp].any()
    assert fit.used[~ramp].all()
    assert np.allclose(fit.evaluate(rows), 500.0)
    assert fit.residual_std == pytest.approx(0.0, abs=1e-8)


def test_fit_overscan_too_short_raises():
    rows = np.arange(RAMP_SKIP_ROWS + 3, dtype=float)
    with pytest.raises(DataQualityWarning) as ei:
        fit_overscan(rows, np.zeros_like(rows), order=7, readout=Readout.UP)
    assert ei.value.code == "OVERSCAN_TOO_SHORT"


def test_overscan_removes_row_dependent_offset():
    params = ProcessingParameters()
    raw = make_raw(offset=0.0, signal=100.0)
    # gentle linear 1/f-like drift along the rows, in overscan and data alike
    drift = 1000.0 + 0.5 * np.arange(raw.shape[0])
    state = _state(raw, params).evolve(data=raw.data + drift[:, None])

    out, delta = correct_overscan(state, params)

    for amp, region in out.regions():
        assert np.allclose(out.data[region.slices], 100.0, atol=1e-3)
    assert delta.cards["OSCNDEG"][0] == 7
    assert delta.cards["OSCNVAL1"][0] == pytest.approx(float(np.mean(drift)), rel=1e-5)
    assert delta.flags == ()


def test_overscan_sets_read_noise_without_bias():
    params = ProcessingParameters()
    raw = make_raw(noise=4.0, seed=3, GAIN=2.0)

    out, delta = correct_overscan(_state(raw, params), params)

    for i in range(2):
        residual = delta.cards[f"OSCNRN{i + 1}"][0]
        assert out.read_noise[i] == pytest.approx(residual * 2.0)
        assert delta.cards[f"RDNOISE{i + 1}"][0] == pytest.approx(out.read_noise[i])
    # median of 60 overscan columns: scatter well below the pixel noise
    assert 0.0 < delta.cards["OSCNRN1"][0] < 4.0


def test_overscan_keeps_bias_read_noise():
    params = ProcessingParameters()
    state = _state(make_raw(noise=4.0), params).evolve(read_noise=(5.0, 6.0), bias_subtracted=True)

    out, _ = correct_overscan(state, params)

    assert out.read_noise == (5.0, 6.0)


def test_thin_overscan_skips_only_that_amplifier():
    params = ProcessingParameters(default_read_noise=3.0, min_overscan_pixels=75)
    raw = make_raw(os_nx=100, dnx=60)
    # amp 2 overscan narrowed to 50 columns
    raw.header["BSEC2"] = "[221:270,1:64]"
    state = _state(raw, params)

    out, delta = correct_overscan(state, params)

    amp1, amp2 = state.meta.geometry.amplifiers
    assert np.array_equal(out.data[amp2.data.slices], state.data[amp2.data.slices])
    assert np.allclose(out.data[amp1.data.slices], 100.0)
    assert out.read_noise[1] == 3.0
    assert delta.cards["OSCNSUB1"][0] is True
    assert delta.cards["OSCNSUB2"][0] is False
    assert [(f["code"], f["amp"]) for f in delta.flags] == [("INSUFFICIENT_OVERSCAN", 2)]


def test_overscan_buffer_wider_than_section_skips():
    params = ProcessingParameters(min_overscan_pixels=75, overscan_buffer=60)
    state = _state(make_raw(os_nx=100), params)

    out, delta = correct_overscan(state, params)

    assert np.array_equal(out.data, state.data)
    assert {f["code"] for f in delta.flags} == {"INSUFFICIENT_OVERSCAN"}
    assert not delta.applied


def test_overscan_observer_receives_fit():
    params = ProcessingParameters()
    seen = []

    correct_overscan(_state(make_raw(), params), params, observer=lambda cp, payload: seen.append((cp, payload)))

    assert [cp for cp, _ in seen] == ["overscan_fit", "overscan_fit"]
    assert seen[0][1]["amp"] == 1
    assert seen[0][1]["model"].shape == seen[0][1]["profile"].shape
