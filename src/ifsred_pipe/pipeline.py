"""Frame pipeline: run the reduction stages on one frame or a batch.

Stage order (strictly forward, every stage runs exactly once)::

    saturation -> bias -> overscan -> trim -> gain -> defects -> cosmics
               -> variance -> nodshuffle -> rectify

Every stage returns a new :class:`~ifsred_pipe.frame.FrameState` and a
:class:`~ifsred_pipe.record.StageDelta`; the deltas accumulate into the
frame's :class:`~ifsred_pipe.record.ProcessingRecord`, which becomes the
product header at the end.

Batch semantics
---------------
``run_batch`` works in two phases. First the metadata and amplifier
geometry of *all* frames are resolved in input order; a :class:`ConfigError`
there marks that frame ``fail``, every other frame ``cancelled`` and the
batch ``aborted`` before any pixel is touched. Then the frames are reduced
on a thread pool (``n_workers``). Master bias and defect tables are shared
through build-once caches. Any other exception fails only its own frame.
"""

from __future__ import annotations

from concurrent.futures import CancelledError, ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field, replace
from enum import Enum
import logging
from pathlib import Path
from typing import Any, Callable, Iterable, Protocol

import numpy as np
from astropy.io import fits

from ifsred_pipe.calib_cache import BuildOnceCache
from ifsred_pipe.config import load_config_any
from ifsred_pipe.errors import ConfigError
from ifsred_pipe.frame import FrameState, RawFrame
from ifsred_pipe.io.done_json import write_batch_summary
from ifsred_pipe.io.mef import FitsProductSink
from ifsred_pipe.io.raw import FileBiasResolver
from ifsred_pipe.log import setup_logging, timer
from ifsred_pipe.maskbits import header_cards as mask_header_cards
from ifsred_pipe.metadata import FrameMeta, parse_frame_meta
from ifsred_pipe.record import ProcessingRecord, StageDelta
from ifsred_pipe.schema import ProcessingParameters
from ifsred_pipe.stages.bias import BiasResolver, MasterBiasProvider, subtract_bias
from ifsred_pipe.stages.cosmics import AstroscrappyDetector, CosmicRayDetector, mask_cosmics
from ifsred_pipe.stages.defects import DefectResolver, DefectTable, DefectTableDirectory, correct_defects
from ifsred_pipe.stages.gain import correct_gain
from ifsred_pipe.stages.nodshuffle import subtract_nod_shuffle
from ifsred_pipe.stages.overscan import correct_overscan
from ifsred_pipe.stages.rectify import rectify
from ifsred_pipe.stages.saturation import flag_saturation
from ifsred_pipe.stages.trim import trim
from ifsred_pipe.stages.variance import build_variance
from ifsred_pipe.version import as_header_cards


log = logging.getLogger(__name__)

Observer = Callable[[str, dict[str, Any]], None]


class Stage(str, Enum):
    SATURATION = "saturation"
    BIAS = "bias"
    OVERSCAN = "overscan"
    TRIM = "trim"
    GAIN = "gain"
    DEFECTS = "defects"
    COSMICS = "cosmics"
    VARIANCE = "variance"
    NODSHUFFLE = "nodshuffle"
    RECTIFY = "rectify"


# snapshot written after the stage, when save_intermediates is on
INTERMEDIATE_SUFFIX: dict[Stage, str] = {
    Stage.SATURATION: "prebias",
    Stage.BIAS: "bias",
    Stage.OVERSCAN: "oscan",
    Stage.TRIM: "trim",
    Stage.GAIN: "gain",
    Stage.DEFECTS: "defect",
    Stage.COSMICS: "crmask",
}
SKY_SUFFIX = "sky"
OBJ_SUFFIX = "obj"


class ProductSink(Protocol):
    def exists(self, name: str, suffix: str | None = None) -> bool: ...

    def write(
        self,
        name: str,
        suffix: str | None,
        intensity: np.ndarray,
        mask: np.ndarray,
        variance: np.ndarray | None,
        header: fits.Header,
    ) -> Path | None: ...


@dataclass(frozen=True)
class FrameResult:
    name: str
    status: str
    intensity: np.ndarray | None = None
    mask: np.ndarray | None = None
    variance: np.ndarray | None = None
    header: fits.Header | None = None
    record: ProcessingRecord = field(default_factory=ProcessingRecord)
    extras: dict[str, FrameState] = field(default_factory=dict)
    outputs: tuple[str, ...] = ()
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "status": self.status,
            "error": self.error,
            "severity": self.record.severity,
            "flags": self.record.flags,
            "outputs": list(self.outputs),
            "record": self.record.to_dict(),
        }


@dataclass(frozen=True)
class BatchSummary:
    results: tuple[FrameResult, ...]
    aborted: bool = False
    error: str | None = None

    def __iter__(self):
        return iter(self.results)

    def status_of(self, name: str) -> str | None:
        for r in self.results:
            if r.name == name:
                return r.status
        return None

    @property
    def statuses(self) -> dict[str, str]:
        return {r.name: r.status for r in self.results}

    def to_dict(self) -> dict[str, Any]:
        return {
            "aborted": self.aborted,
            "error": self.error,
            "frames": [r.to_dict() for r in self.results],
        }


_DEFAULT_DETECTOR = object()


class FramePipeline:
    """Reduce raw frames to intensity/mask/variance products.

    Parameters
    ----------
    params
        :class:`ProcessingParameters`, a config dict, a YAML path or None
        (defaults).
    bias_resolver
        ``key -> MasterBias | [RawFrame, ...] | None``. Defaults to
        :class:`~ifsred_pipe.io.raw.FileBiasResolver` when ``master_bias``
        is configured.
    defect_resolver
        ``key -> DefectTable | None``. Defaults to
        :class:`~ifsred_pipe.stages.defects.DefectTableDirectory` on
        ``defect_dir``.
    cr_detector
        Cosmic-ray detector; astroscrappy by default, ``None`` disables it.
    sink
        Product writer; FITS files in ``output_dir`` by default.
    observer
        Optional ``observer(checkpoint, payload)`` called at the diagnostic
        checkpoints (``overscan_fit``, ``defects``, ``cosmics``,
        ``nodshuffle``). It has no effect on the products.
    """

    def __init__(
        self,
        params: ProcessingParameters | dict[str, Any] | str | Path | None = None,
        *,
        bias_resolver: BiasResolver | None = None,
        defect_resolver: DefectResolver | None = None,
        cr_detector: CosmicRayDetector | None | object = _DEFAULT_DETECTOR,
        sink: ProductSink | None = None,
        observer: Observer | None = None,
    ):
        self.params = load_config_any(params)
        p = self.params
        if p.log_level:
            setup_logging(p.log_level)

        if bias_resolver is None and p.master_bias:
            bias_resolver = FileBiasResolver()
        if defect_resolver is None and p.defect_dir:
            defect_resolver = DefectTableDirectory(p.defect_dir)
        if cr_detector is _DEFAULT_DETECTOR:
            cr_detector = AstroscrappyDetector()
        if sink is None and p.output_dir:
            sink = FitsProductSink(p.output_dir, clobber=p.clobber)

        self.cr_detector: CosmicRayDetector | None = cr_detector  # type: ignore[assignment]
        self.sink = sink
        self.observer = observer
        self._defect_resolver = defect_resolver
        self._bias = MasterBiasProvider(bias_resolver, self._process_bias_input)
        self._defects: BuildOnceCache[str, DefectTable | None] = BuildOnceCache(
            self._load_defect_table, name="defect-table"
        )

    # ------------------------------------------------------------------
    # shared resources
    # ------------------------------------------------------------------

    @property
    def bias_cache(self) -> BuildOnceCache:
        return self._bias.cache

    @property
    def defect_cache(self) -> BuildOnceCache:
        return self._defects

    def _load_defect_table(self, key: str) -> DefectTable | None:
        if self._defect_resolver is None:
            return None
        return self._defect_resolver(key)

    def _process_bias_input(self, raw: RawFrame) -> FrameState:
        state, _ = self.process(raw, stop_after=Stage.OVERSCAN, use_master_bias=False, emit=False)
        return state

    # ------------------------------------------------------------------
    # single frame
    # ------------------------------------------------------------------

    def resolve_meta(self, raw: RawFrame) -> FrameMeta:
        """Normalize the header; raises :class:`ConfigError` on bad geometry."""
        return parse_frame_meta(raw.header, raw.shape, name=raw.name)

    def process(
        self,
        raw: RawFrame,
        *,
        meta: FrameMeta | None = None,
        stop_after: Stage | None = None,
        use_master_bias: bool = True,
        emit: bool = True,
        outputs: list[str] | None = None,
    ) -> tuple[FrameState, dict[str, FrameState]]:
        """Run the stages on ``raw`` and return the final state and extras.

        ``extras`` holds the rectified nod-and-shuffle ``sky`` and ``obj``
        products when that stage applied. ``use_master_bias=False`` leaves
        the bias stage out entirely (used when building the master bias).
        """

        p = self.params
        meta = meta or self.resolve_meta(raw)
        state = FrameState.from_raw(raw, meta, default_read_noise=p.default_read_noise)
        extras: dict[str, FrameState] = {}

        def nodshuffle(s: FrameState) -> tuple[FrameState, StageDelta]:
            out, delta, products = subtract_nod_shuffle(s, p, observer=self.observer)
            if products is not None:
                for suffix, product in ((SKY_SUFFIX, products.sky), (OBJ_SUFFIX, products.obj)):
                    rectified, rdelta = rectify(product.with_delta(delta))
                    extras[suffix] = rectified.with_delta(rdelta)
            return out, delta

        steps: list[tuple[Stage, Callable[[FrameState], tuple[FrameState, StageDelta]]]] = [
            (Stage.SATURATION, lambda s: flag_saturation(s, p)),
            (Stage.BIAS, self._subtract_master_bias),
            (Stage.OVERSCAN, lambda s: correct_overscan(s, p, observer=self.observer)),
            (Stage.TRIM, trim),
            (Stage.GAIN, lambda s: correct_gain(s, p)),
            (Stage.DEFECTS, self._correct_defects),
            (Stage.COSMICS, lambda s: mask_cosmics(s, p, self.cr_detector, observer=self.observer)),
            (Stage.VARIANCE, build_variance),
            (Stage.NODSHUFFLE, nodshuffle),
            (Stage.RECTIFY, rectify),
        ]

        for stage, step in steps:
            if stage is Stage.BIAS and not use_master_bias:
                continue
            with timer(f"{meta.name}: {stage.value}", log, level=logging.DEBUG) as t:
                state, delta = step(state)
            state = state.with_delta(replace(delta, metrics={**delta.metrics, "seconds": round(t.seconds, 4)}))

            if emit and p.save_intermediates:
                suffix = INTERMEDIATE_SUFFIX.get(stage)
                if suffix is not None:
                    self._emit(raw, suffix, state, outputs)
                if stage is Stage.NODSHUFFLE:
                    for suffix, extra in extras.items():
                        self._emit(raw, suffix, extra, outputs)

            if stage is stop_after:
                break

        return state, extras

    def _subtract_master_bias(self, state: FrameState) -> tuple[FrameState, StageDelta]:
        key = self.params.master_bias
        return subtract_bias(state, self._bias.get(key), self.params, key=key)

    def _correct_defects(self, state: FrameState) -> tuple[FrameState, StageDelta]:
        table = self._defects.get(state.meta.defect_key)
        return correct_defects(state, table, self.params, observer=self.observer)

    def output_header(self, raw: RawFrame, state: FrameState) -> fits.Header:
        hdr = state.record.apply_to_header(raw.header)
        for k, v in {**mask_header_cards(), **as_header_cards()}.items():
            hdr[k] = v
        return hdr

    def _emit(self, raw: RawFrame, suffix: str, state: FrameState, outputs: list[str] | None) -> None:
        if self.sink is None:
            return
        if not self.params.clobber and self.sink.exists(raw.name, suffix):
            log.warning("%s: %s snapshot exists and clobber is off; not rewritten", raw.name, suffix)
            return
        path = self.sink.write(raw.name, suffix, state.data, state.mask, state.var, self.output_header(raw, state))
        if path is not None and outputs is not None:
            outputs.append(str(path))

    def run_frame(self, raw: RawFrame, *, meta: FrameMeta | None = None) -> FrameResult:
        """Reduce one frame.

        :class:`ConfigError` propagates; any other exception is logged and
        returned as a ``fail`` result.
        """

        name = raw.name
        meta = meta or self.resolve_meta(raw)

        if self.sink is not None and not self.params.clobber and self.sink.exists(name):
            log.info("%s: product exists and clobber is off; skipped", name)
            return FrameResult(name=name, status="skipped")

        outputs: list[str] = []
        try:
            with timer(f"frame {name}", log):
                state, extras = self.process(raw, meta=meta, outputs=outputs)
                header = self.output_header(raw, state)
                if self.sink is not None:
                    path = self.sink.write(name, None, state.data, state.mask, state.var, header)
                    if path is not None:
                        outputs.append(str(path))
        except ConfigError:
            raise
        except Exception as e:
            log.error("Frame %s failed: %s", name, e, exc_info=True)
            return FrameResult(name=name, status="fail", outputs=tuple(outputs), error=f"{type(e).__name__}: {e}")

        status = "warn" if state.record.flags else "ok"
        for f in state.record.flags:
            log.debug("%s: [%s] %s", name, f["code"], f["message"])
        return FrameResult(
            name=name,
            status=status,
            intensity=state.data,
            mask=state.mask,
            variance=state.var,
            header=header,
            record=state.record,
            extras=extras,
            outputs=tuple(outputs),
        )

    # ------------------------------------------------------------------
    # batch
    # ------------------------------------------------------------------

    def run_batch(self, frames: Iterable[RawFrame]) -> BatchSummary:
        frames = list(frames)

        metas: list[FrameMeta] = []
        for i, raw in enumerate(frames):
            try:
                metas.append(self.resolve_meta(raw))
            except ConfigError as e:
                log.error("Frame %s: %s; batch aborted", raw.name, e)
                results = [FrameResult(name=f.name, status="cancelled") for f in frames]
                results[i] = FrameResult(name=raw.name, status="fail", error=str(e))
                return self._finish(BatchSummary(results=tuple(results), aborted=True, error=str(e)))

        results: list[FrameResult | None] = [None] * len(frames)
        fatal: ConfigError | None = None

        with ThreadPoolExecutor(max_workers=self.params.n_workers, thread_name_prefix="ifsred") as pool:
            futures = {
                pool.submit(self.run_frame, raw, meta=meta): i
                for i, (raw, meta) in enumerate(zip(frames, metas))
            }
            for fut in as_completed(futures):
                i = futures[fut]
                name = frames[i].name
                try:
                    results[i] = fut.result()
                except CancelledError:
                    results[i] = FrameResult(name=name, status="cancelled")
                except ConfigError as e:
                    log.error("Frame %s: %s; batch aborted", name, e)
                    results[i] = FrameResult(name=name, status="fail", error=str(e))
                    if fatal is None:
                        fatal = e
                        for other in futures:
                            other.cancel()

        final = tuple(
            r if r is not None else FrameResult(name=frames[i].name, status="cancelled")
            for i, r in enumerate(results)
        )
        summary = BatchSummary(
            results=final,
            aborted=fatal is not None,
            error=None if fatal is None else str(fatal),
        )
        return self._finish(summary)

    def _finish(self, summary: BatchSummary) -> BatchSummary:
        counts: dict[str, int] = {}
        for r in summary.results:
            counts[r.status] = counts.get(r.status, 0) + 1
        log.info(
            "Batch %s: %s",
            "aborted" if summary.aborted else "done",
            ", ".join(f"{k}={v}" for k, v in sorted(counts.items())),
        )
        if self.params.output_dir:
            write_batch_summary(
                self.params.output_dir,
                summary,
                effective_config=self.params.model_dump(mode="json"),
            )
        return summary
