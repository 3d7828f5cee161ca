"""Pydantic schema for the pipeline configuration.

Notes
-----
- We intentionally allow extra keys (forward compatibility).
- `find_unknown_keys()` provides user-facing warnings about typos.
- `schema_validate()` returns a small report object (ok/errors/warnings).
"""


from __future__ import annotations


from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator


# ---------------------------- report objects ----------------------------


@dataclass(frozen=True)
class SchemaIssue:
    code: str
    message: str
    hint: str = ""


@dataclass(frozen=True)
class SchemaReport:
    ok: bool
    errors: List[SchemaIssue]
    warnings: List[SchemaIssue]


# ------------------------------ pydantic ------------------------------


class SigmaRule(BaseModel):
    """One row of the cosmic-ray sigma-clip policy table.

    A rule matches when every constraint that is set holds. ``None`` means
    "any". Exposure bounds are half-open: ``min_exptime <= t < max_exptime``.
    """

    model_config = ConfigDict(extra="forbid", frozen=True)

    image_types: List[str] = Field(default_factory=list)
    masked: Optional[bool] = None
    min_exptime: Optional[float] = None
    max_exptime: Optional[float] = None
    sigclip: float

    @field_validator("image_types")
    @classmethod
    def _upper(cls, v: List[str]) -> List[str]:
        return [str(x).strip().upper() for x in v]


def default_sigma_table() -> List[SigmaRule]:
    # Order matters: first match wins.
    return [
        SigmaRule(image_types=["CONTBARS", "FLATLAMP"], masked=True, sigclip=10.0),
        SigmaRule(image_types=["OBJECT", "DARK"], max_exptime=60.0, sigclip=10.0),
        SigmaRule(
            image_types=["FLATLAMP", "DOMEFLAT", "TWIFLAT", "CONTBARS"],
            masked=False,
            sigclip=7.0,
        ),
    ]


class ProcessingParameters(BaseModel):
    """Options recognised by :class:`ifsred_pipe.pipeline.FramePipeline`."""

    model_config = ConfigDict(extra="allow")

    # read noise [e-] used whenever neither bias nor overscan provide one
    default_read_noise: float = Field(3.0, ge=0.0)

    # overscan
    min_overscan_pixels: int = Field(75, ge=1)
    overscan_buffer: int = Field(20, ge=0)

    # saturation / defects
    saturation_level: float = 65535.0
    defect_margin: int = Field(5, ge=1)
    defect_dir: Optional[str] = None

    # master bias key (file reference resolved by the bias resolver)
    master_bias: Optional[str] = None

    # cosmic rays
    cr_enabled: bool = True
    cr_sigclip: float = 4.5
    cr_sigma_table: List[SigmaRule] = Field(default_factory=default_sigma_table)
    cr_sigfrac: float = 0.3
    cr_objlim: float = 4.0
    cr_psf_model: str = "gaussy"
    cr_psf_fwhm: float = Field(2.5, gt=0.0)
    cr_psf_size: int = Field(7, ge=3)

    nod_shuffle_enabled: bool = True

    # products
    save_intermediates: bool = False
    clobber: bool = False
    output_dir: Optional[str] = None

    # runtime
    n_workers: int = Field(1, ge=1)
    # console log level for the package logger; None leaves logging alone
    log_level: Optional[str] = None

    @field_validator("cr_psf_model")
    @classmethod
    def _psf_model(cls, v: str) -> str:
        v = str(v).strip().lower()
        allowed = {"gauss", "gaussx", "gaussy", "moffat"}
        if v not in allowed:
            raise ValueError(f"cr_psf_model must be one of {sorted(allowed)}, got {v!r}")
        return v

    @field_validator("cr_psf_size")
    @classmethod
    def _odd_kernel(cls, v: int) -> int:
        if int(v) % 2 == 0:
            raise ValueError("cr_psf_size must be odd")
        return int(v)


# ------------------------------ helpers ------------------------------


def _known_keys() -> set[str]:
    return set(ProcessingParameters.model_fields.keys())


def find_unknown_keys(cfg: Dict[str, Any]) -> List[str]:
    """Return top-level keys that the schema does not know (likely typos)."""

    known = _known_keys()
    return sorted(str(k) for k in cfg.keys() if str(k) not in known)


def schema_validate(cfg: Dict[str, Any]) -> SchemaReport:
    """Validate a plain config dict and return a report instead of raising."""

    errors: List[SchemaIssue] = []
    warnings: List[SchemaIssue] = []

    try:
        ProcessingParameters.model_validate(cfg)
    except ValidationError as e:
        for err in e.errors():
            loc = ".".join(str(x) for x in err.get("loc", ()))
            errors.append(
                SchemaIssue(
                    code="SCHEMA_INVALID",
                    message=f"{loc}: {err.get('msg')}",
                    hint="Check the value type/range in the configuration file.",
                )
            )

    for k in find_unknown_keys(cfg):
        warnings.append(
            SchemaIssue(
                code="UNKNOWN_KEY",
                message=f"Unknown configuration key: {k!r}",
                hint="Possible typo; the key is ignored by the pipeline.",
            )
        )

    return SchemaReport(ok=not errors, errors=errors, warnings=warnings)
