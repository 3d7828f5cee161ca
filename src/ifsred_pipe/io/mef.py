from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

import numpy as np
from astropy.io import fits

from ifsred_pipe.maskbits import MASK_DTYPE, header_cards
from ifsred_pipe.version import as_header_cards


log = logging.getLogger(__name__)


def _apply_cards(hdr: fits.Header, cards: dict[str, Any]) -> None:
    for k, v in cards.items():
        try:
            hdr[k] = v
        except (ValueError, KeyError) as e:
            log.warning("Card %s not written: %s", k, e)


def write_sci_var_mask(
    path: str | Path,
    sci: np.ndarray,
    *,
    var: np.ndarray | None = None,
    mask: np.ndarray | None = None,
    header: fits.Header | None = None,
    overwrite: bool = True,
) -> Path:
    """Write a multi-extension FITS (MEF): PRIMARY + SCI [+VAR] [+MASK].

    The primary HDU keeps the decision record and provenance; the pixel
    planes live in EXTNAME=SCI/VAR/MASK.

    Notes
    -----
    - `mask` is stored as the uint16 bitmask of :mod:`ifsred_pipe.maskbits`.
    - `var` is variance in the unit of `sci` squared.
    """
    path = Path(path).expanduser().resolve()
    path.parent.mkdir(parents=True, exist_ok=True)

    sci = np.asarray(sci)
    if var is not None:
        var = np.asarray(var)
        if var.shape != sci.shape:
            raise ValueError(f"VAR shape {var.shape} != SCI shape {sci.shape}")
    if mask is not None:
        mask = np.asarray(mask)
        if mask.shape != sci.shape:
            raise ValueError(f"MASK shape {mask.shape} != SCI shape {sci.shape}")

    phdr = fits.Header() if header is None else fits.Header(header)
    _apply_cards(phdr, as_header_cards())
    if mask is not None:
        _apply_cards(phdr, header_cards())

    hdus: list[fits.HDUBase] = [fits.PrimaryHDU(header=phdr)]
    hdus.append(fits.ImageHDU(data=np.asarray(sci, dtype=np.float32), name="SCI"))
    if var is not None:
        hdus.append(fits.ImageHDU(data=np.asarray(var, dtype=np.float32), name="VAR"))
    if mask is not None:
        hdus.append(fits.ImageHDU(data=np.asarray(mask, dtype=MASK_DTYPE), name="MASK"))

    fits.HDUList(hdus).writeto(path, overwrite=overwrite)
    return path


def read_sci_var_mask(
    path: str | Path,
) -> tuple[np.ndarray, np.ndarray | None, np.ndarray | None, fits.Header]:
    """Read a MEF product with SCI/VAR/MASK extensions."""
    path = Path(path).expanduser().resolve()
    with fits.open(path) as hdul:
        hdr = fits.Header(hdul[0].header)
        sci = np.asarray(hdul["SCI"].data, dtype=float)
        var = None
        mask = None
        if "VAR" in hdul:
            var = np.asarray(hdul["VAR"].data, dtype=float)
        if "MASK" in hdul:
            mask = np.asarray(hdul["MASK"].data, dtype=MASK_DTYPE)
    return sci, var, mask, hdr


class FitsProductSink:
    """Write final products and intermediate snapshots as MEF files.

    Final product: ``<output_dir>/<name>.fits``; snapshots:
    ``<output_dir>/<name>_<suffix>.fits``.
    """

    def __init__(self, output_dir: str | Path, *, clobber: bool = False):
        self.output_dir = Path(output_dir)
        self.clobber = bool(clobber)

    def path_for(self, name: str, suffix: str | None = None) -> Path:
        stem = f"{name}_{suffix}" if suffix else name
        return self.output_dir / f"{stem}.fits"

    def exists(self, name: str, suffix: str | None = None) -> bool:
        return self.path_for(name, suffix).is_file()

    def write(
        self,
        name: str,
        suffix: str | None,
        intensity: np.ndarray,
        mask: np.ndarray,
        variance: np.ndarray | None,
        header: fits.Header,
    ) -> Path:
        path = self.path_for(name, suffix)
        if path.exists() and not self.clobber:
            raise FileExistsError(f"{path} exists and clobber is off")
        write_sci_var_mask(path, intensity, var=variance, mask=mask, header=header, overwrite=self.clobber)
        log.debug("Wrote %s", path)
        return path
