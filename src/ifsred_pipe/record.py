"""Per-frame decision record.

Stages never touch a shared header. Each one returns a :class:`StageDelta`
describing what it did (header cards, removed cards, QC flags, metrics) and
the pipeline folds the deltas into an immutable :class:`ProcessingRecord`.
The record is rendered into the product header only at the very end.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Mapping

from astropy.io import fits

from ifsred_pipe.qc.flags import max_severity


@dataclass(frozen=True)
class StageDelta:
    """What one stage changed.

    ``cards`` values are either plain values or ``(value, comment)`` tuples,
    as accepted by :class:`astropy.io.fits.Header`.
    """

    stage: str
    applied: bool = True
    cards: Mapping[str, Any] = field(default_factory=dict)
    removed: tuple[str, ...] = ()
    flags: tuple[dict[str, Any], ...] = ()
    metrics: Mapping[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class ProcessingRecord:
    deltas: tuple[StageDelta, ...] = ()

    def merge(self, delta: StageDelta) -> "ProcessingRecord":
        return ProcessingRecord(deltas=self.deltas + (delta,))

    def stage(self, name: str) -> StageDelta | None:
        for d in reversed(self.deltas):
            if d.stage == name:
                return d
        return None

    @property
    def stages(self) -> list[str]:
        return [d.stage for d in self.deltas]

    @property
    def flags(self) -> list[dict[str, Any]]:
        out: list[dict[str, Any]] = []
        for d in self.deltas:
            out.extend(dict(f, stage=d.stage) for f in d.flags)
        return out

    @property
    def severity(self) -> str:
        return max_severity(self.flags)

    @property
    def cards(self) -> dict[str, Any]:
        """Effective cards after all deltas (later stages win)."""
        out: dict[str, Any] = {}
        for d in self.deltas:
            for k in d.removed:
                out.pop(k, None)
            out.update(d.cards)
        return out

    @property
    def removed(self) -> set[str]:
        gone: set[str] = set()
        for d in self.deltas:
            gone.update(d.removed)
            gone.difference_update(d.cards.keys())
        return gone

    def apply_to_header(self, header: fits.Header | Mapping[str, Any] | None = None) -> fits.Header:
        """Return a new header: ``header`` minus superseded keys plus record cards."""
        hdr = fits.Header() if header is None else fits.Header(header)
        for k in sorted(self.removed):
            if k in hdr:
                del hdr[k]
        for k, v in self.cards.items():
            hdr[k] = v
        for d in self.deltas:
            hdr.add_history(f"ifsred_pipe {d.stage}: {'applied' if d.applied else 'skipped'}")
        return hdr

    def to_dict(self) -> dict[str, Any]:
        return {
            "stages": [
                {
                    "stage": d.stage,
                    "applied": bool(d.applied),
                    "cards": {k: _card_value(v) for k, v in d.cards.items()},
                    "removed": list(d.removed),
                    "flags": [dict(f) for f in d.flags],
                    "metrics": dict(d.metrics),
                }
                for d in self.deltas
            ],
            "severity": self.severity,
        }


def _card_value(v: Any) -> Any:
    if isinstance(v, tuple) and len(v) == 2:
        return v[0]
    return v

