from __future__ import annotations

from pathlib import Path
from typing import Any

import yaml

import logging

from ifsred_pipe.schema import ProcessingParameters, find_unknown_keys


log = logging.getLogger(__name__)


def _norm_path_str(p: str) -> str:
    """Normalize a path string for cross-platform YAML.

    Path separators are always forward slashes: Python (and Astropy) accept
    them on Windows, while POSIX treats backslashes as literal characters.
    """
    return str(p).replace("\\", "/")


def resolve_path(p: str | Path, *, base_dir: Path) -> Path:
    pp = Path(_norm_path_str(str(p))).expanduser()
    return pp if pp.is_absolute() else (base_dir / pp).resolve()


def _section(raw: dict[str, Any]) -> dict[str, Any]:
    """Accept both a flat mapping and one nested under ``pipeline:``."""
    sec = raw.get("pipeline")
    if isinstance(sec, dict):
        return dict(sec)
    return dict(raw)


def load_config(cfg_path: str | Path) -> ProcessingParameters:
    """Load YAML config, resolve relative paths and validate it.

    Relative ``defect_dir``/``output_dir``/``master_bias`` entries are
    resolved against the directory of the config file.
    """
    cfg_path = Path(cfg_path).expanduser().resolve()
    cfg_dir = cfg_path.parent
    raw = yaml.safe_load(cfg_path.read_text(encoding="utf-8")) or {}
    if not isinstance(raw, dict):
        raise TypeError(f"Config root must be a mapping: {cfg_path}")

    cfg = _section(raw)
    for key in ("defect_dir", "output_dir", "master_bias"):
        if cfg.get(key):
            cfg[key] = str(resolve_path(cfg[key], base_dir=cfg_dir))

    params = load_config_any(cfg)
    log.debug("Loaded config %s", cfg_path)
    return params


def load_config_any(cfg: Any) -> ProcessingParameters:
    """Load parameters from a path, a plain dict or an existing model.

    Unknown keys are kept (the model allows extras) but reported, since they
    are most likely typos.
    """
    if isinstance(cfg, ProcessingParameters):
        return cfg
    if isinstance(cfg, (str, Path)):
        return load_config(cfg)
    if isinstance(cfg, dict):
        for k in find_unknown_keys(cfg):
            log.warning("Unknown configuration key %r (ignored)", k)
        return ProcessingParameters.model_validate(cfg)
    if cfg is None:
        return ProcessingParameters()

    raise TypeError(f"Unsupported config type: {type(cfg)}")


def dump_config(params: ProcessingParameters, path: str | Path) -> Path:
    """Write the effective parameters as YAML (paths normalised)."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    data = params.model_dump(mode="json")
    for key in ("defect_dir", "output_dir", "master_bias"):
        if data.get(key):
            data[key] = _norm_path_str(data[key])
    path.write_text(yaml.safe_dump({"pipeline": data}, sort_keys=False), encoding="utf-8")
    return path
