from __future__ import annotations

import json

import numpy as np
import pytest
from astropy.io import fits

from ifsred_pipe.errors import DataQualityWarning, MissingResourceWarning, PipelineWarning, ValidationError
from ifsred_pipe.io.done_json import batch_status, norm_status, write_batch_summary
from ifsred_pipe.maskbits import MaskBits, empty_mask, set_bits, summarize
from ifsred_pipe.qc.flags import flag_from_issue, make_flag, max_severity
from ifsred_pipe.record import ProcessingRecord, StageDelta
from ifsred_pipe.version import as_header_cards


def test_issue_taxonomy():
    assert issubclass(MissingResourceWarning, PipelineWarning)
    assert issubclass(DataQualityWarning, PipelineWarning)
    assert issubclass(ValidationError, ValueError)
    assert not issubclass(ValidationError, PipelineWarning)


def test_flag_from_issue_carries_code_and_hint():
    issue = DataQualityWarning("INSUFFICIENT_OVERSCAN", "too thin", hint="lower it")
    f = flag_from_issue(issue, amp=2)
    assert f == {
        "code": "INSUFFICIENT_OVERSCAN",
        "severity": "WARN",
        "message": "too thin",
        "hint": "lower it",
        "kind": "DataQualityWarning",
        "amp": 2,
    }


def test_max_severity():
    assert max_severity([]) == "INFO"
    assert max_severity([make_flag("A", "info", "a"), make_flag("B", "warning", "b")]) == "WARN"
    assert max_severity([make_flag("C", "fatal", "c")]) == "ERROR"


def test_set_bits_only_adds():
    mask = empty_mask((2, 3))
    mask = set_bits(mask, np.array([[True, False, False], [False, False, True]]), MaskBits.SATURATED)
    out = set_bits(mask, np.array([[True, True, False], [False, False, False]]), MaskBits.COSMIC_RAY)

    assert out[0, 0] == MaskBits.SATURATED | MaskBits.COSMIC_RAY
    assert out[1, 2] == MaskBits.SATURATED
    assert mask[0, 1] == 0  # input untouched
    assert summarize(out) == {"saturated": 2, "bad_column": 0, "cosmic_ray": 2}


def test_record_merges_cards_and_removals():
    rec = (
        ProcessingRecord()
        .merge(StageDelta(stage="trim", cards={"ASEC1": ("[1:5,1:5]", "c")}, removed=("DSEC1",)))
        .merge(StageDelta(stage="rectify", cards={"ASEC1": "[5:1,1:5]"}))
        .merge(
            StageDelta(
                stage="defects",
                applied=False,
                flags=(make_flag("DEFECT_TABLE_ABSENT", "WARN", "none"),),
            )
        )
    )

    assert rec.stages == ["trim", "rectify", "defects"]
    assert rec.cards["ASEC1"] == "[5:1,1:5]"
    assert rec.removed == {"DSEC1"}
    assert rec.flags[0]["stage"] == "defects"
    assert rec.severity == "WARN"

    hdr = fits.Header()
    hdr["DSEC1"] = "[1:5,1:5]"
    hdr["OBJECT"] = "NGC 1"
    out = rec.apply_to_header(hdr)
    assert "DSEC1" not in out
    assert out["OBJECT"] == "NGC 1"
    assert out["ASEC1"] == "[5:1,1:5]"
    assert "DSEC1" in hdr
    assert len(out["HISTORY"]) == 3

    d = rec.to_dict()
    assert d["stages"][0]["cards"] == {"ASEC1": "[1:5,1:5]"}
    assert d["severity"] == "WARN"


def test_version_cards_fit_fits_keywords():
    cards = as_header_cards()
    assert set(cards) == {"IFSR_VER", "IFSR_PKG", "IFSR_PY"}
    assert all(len(k) <= 8 for k in cards)


def test_batch_status_rules():
    assert batch_status(["ok", "ok"], aborted=False) == "ok"
    assert batch_status(["ok", "warn"], aborted=False) == "warn"
    assert batch_status(["ok", "fail"], aborted=False) == "fail"
    assert batch_status(["cancelled", "fail"], aborted=True) == "fail"
    assert batch_status(["skipped", "skipped"], aborted=False) == "skipped"
    assert norm_status(" Cancelled ") == "cancelled"
    with pytest.raises(ValueError):
        norm_status("canceled")
    with pytest.raises(ValueError):
        norm_status("blocked")


def test_write_batch_summary_from_dict(tmp_path):
    body = {
        "aborted": True,
        "error": "Amplifier count is missing or zero",
        "frames": [
            {"name": "a", "status": "fail", "error": "Amplifier count is missing or zero"},
            {"name": "b", "status": "cancelled", "error": None},
        ],
    }

    payload = write_batch_summary(tmp_path, body, effective_config={"clobber": False})

    on_disk = json.loads((tmp_path / "done.json").read_text(encoding="utf-8"))
    assert on_disk == payload
    assert payload["status"] == "fail"
    assert payload["error_code"] == "BATCH_ABORTED"
    assert payload["counts"]["cancelled"] == 1
    assert payload["effective_config"] == {"clobber": False}
