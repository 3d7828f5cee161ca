"""Bad-column repair.

Known detector defects are listed per readout setup (amplifier mode and
binning) as column/row ranges in trimmed-image coordinates, 0-based and
inclusive. Each defective pixel is replaced by the median of the ``margin``
columns on either side of the range, in the same row, and flagged
``BAD_COLUMN``.

Defect table files
------------------
``defect_<MODE>_<X>x<Y>.dat``, one range per line::

    # col_start col_end row_start row_end
    100 104 0 49

The correction state is kept tri-state in ``BPSTATE`` so that "no table for
this setup" stays distinguishable from "table found, nothing applicable".
"""

from __future__ import annotations

from dataclasses import dataclass
import logging
from pathlib import Path
from typing import Any, Callable

import numpy as np

from ifsred_pipe.errors import MissingResourceWarning, ValidationError
from ifsred_pipe.frame import FrameState
from ifsred_pipe.maskbits import MaskBits, set_bits
from ifsred_pipe.qc.flags import flag_from_issue
from ifsred_pipe.record import StageDelta
from ifsred_pipe.schema import ProcessingParameters


log = logging.getLogger(__name__)

STATE_ABSENT = "absent"
STATE_APPLIED = "applied"
STATE_NONE_VALID = "none_valid"


@dataclass(frozen=True)
class DefectRange:
    col_start: int
    col_end: int
    row_start: int
    row_end: int

    @property
    def n_pixels(self) -> int:
        return (self.col_end - self.col_start + 1) * (self.row_end - self.row_start + 1)


@dataclass(frozen=True)
class DefectTable:
    key: str
    entries: tuple[DefectRange, ...] = ()


DefectResolver = Callable[[str], "DefectTable | None"]


def defect_file_name(key: str) -> str:
    return f"defect_{key}.dat"


def read_defect_table(path: str | Path, key: str) -> DefectTable:
    arr = np.loadtxt(Path(path), comments="#", dtype=np.int64, ndmin=2)
    if arr.size and arr.shape[1] != 4:
        raise ValueError(f"Defect table {path} must have 4 columns, got {arr.shape[1]}")
    entries = tuple(DefectRange(*(int(v) for v in row)) for row in arr)
    return DefectTable(key=key, entries=entries)


class DefectTableDirectory:
    """Resolve defect tables from ``defect_<key>.dat`` files in one directory."""

    def __init__(self, directory: str | Path):
        self.directory = Path(directory)

    def __call__(self, key: str) -> DefectTable | None:
        p = self.directory / defect_file_name(key)
        if not p.is_file():
            log.debug("No defect table %s", p)
            return None
        table = read_defect_table(p, key)
        log.info("Defect table %s: %d range(s)", p.name, len(table.entries))
        return table


def validate_range(entry: DefectRange, shape: tuple[int, int], margin: int) -> None:
    """Raise :class:`ValidationError` unless ``entry`` and its flanks are on the frame."""

    ny, nx = shape
    ok = (
        entry.col_start <= entry.col_end
        and entry.row_start <= entry.row_end
        and entry.col_start - margin >= 0
        and entry.col_end + margin < nx
        and entry.row_start >= 0
        and entry.row_end < ny
    )
    if not ok:
        raise ValidationError(
            "INVALID_DEFECT_RANGE",
            f"Defect range cols {entry.col_start}-{entry.col_end} rows "
            f"{entry.row_start}-{entry.row_end} (margin {margin}) outside frame {ny}x{nx}",
            hint="Check the defect table for this amplifier mode and binning.",
        )


def repair_range(data: np.ndarray, entry: DefectRange, margin: int) -> np.ndarray:
    """Return the replacement values (rows x cols) for one defect range."""

    rows = slice(entry.row_start, entry.row_end + 1)
    left = data[rows, entry.col_start - margin : entry.col_start]
    right = data[rows, entry.col_end + 1 : entry.col_end + 1 + margin]
    med = np.median(np.concatenate([left, right], axis=1), axis=1)
    ncols = entry.col_end - entry.col_start + 1
    return np.repeat(med[:, None], ncols, axis=1)


def correct_defects(
    state: FrameState,
    table: DefectTable | None,
    params: ProcessingParameters,
    *,
    observer: Callable[[str, dict[str, Any]], None] | None = None,
) -> tuple[FrameState, StageDelta]:
    name = state.meta.name
    key = state.meta.defect_key
    margin = int(params.defect_margin)

    if table is None:
        issue = MissingResourceWarning(
            "DEFECT_TABLE_ABSENT",
            f"No defect table for {key}",
            hint="Provide defect_dir with a matching defect_<mode>_<bin>.dat.",
        )
        log.warning("%s: %s", name, issue.message)
        delta = StageDelta(
            stage="defects",
            applied=False,
            cards={
                "BPCLEAN": (False, "Bad columns corrected"),
                "BPSTATE": (STATE_ABSENT, "Defect correction state"),
                "NBPCLEAN": (0, "Number of corrected bad pixels"),
            },
            flags=(flag_from_issue(issue),),
            metrics={"n_corrected": 0},
        )
        return state, delta

    data = state.data.copy()
    bad = np.zeros(state.shape, dtype=bool)
    flags: list = []
    n_valid = 0

    for entry in table.entries:
        try:
            validate_range(entry, state.shape, margin)
        except ValidationError as issue:
            log.warning("%s: %s; skipped", name, issue.message)
            flags.append(flag_from_issue(issue))
            continue
        block = (slice(entry.row_start, entry.row_end + 1), slice(entry.col_start, entry.col_end + 1))
        data[block] = repair_range(data, entry, margin)
        bad[block] = True
        n_valid += 1

    n_pix = int(np.count_nonzero(bad))
    status = STATE_APPLIED if n_valid else STATE_NONE_VALID
    log.info("%s: %d bad pixel(s) corrected from %d/%d range(s)", name, n_pix, n_valid, len(table.entries))

    if observer is not None:
        observer("defects", {"frame": name, "key": key, "mask": bad, "n_pixels": n_pix})

    delta = StageDelta(
        stage="defects",
        applied=n_valid > 0,
        cards={
            "BPCLEAN": (n_valid > 0, "Bad columns corrected"),
            "BPSTATE": (status, "Defect correction state"),
            "BPTABLE": (table.key, "Defect table key"),
            "NBPCLEAN": (n_pix, "Number of corrected bad pixels"),
        },
        flags=tuple(flags),
        metrics={"n_corrected": n_pix, "n_ranges": n_valid},
    )
    return state.evolve(data=data, mask=set_bits(state.mask, bad, MaskBits.BAD_COLUMN)), delta
