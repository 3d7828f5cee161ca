"""Reading raw frames and persisting master biases.

A master bias on disk is a plain FITS image in raw-frame geometry with one
``MBRNn`` card per amplifier (read noise in electrons) and ``MBNFRAME``
(number of inputs). It holds the overscan-corrected bias structure of the
data sections; the overscan columns are zero.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Sequence

import numpy as np
from astropy.io import fits

from ifsred_pipe.frame import RawFrame
from ifsred_pipe.stages.bias import MasterBias
from ifsred_pipe.version import as_header_cards


log = logging.getLogger(__name__)

_FITS_SUFFIXES = (".fits", ".fit", ".fts", ".fits.gz")
_STRUCTURAL_KEYS = ("XTENSION", "PCOUNT", "GCOUNT", "EXTNAME", "EXTVER")


def _is_fits(p: Path) -> bool:
    return p.name.lower().endswith(_FITS_SUFFIXES)


def _frame_name(p: Path) -> str:
    name = p.name
    for suf in _FITS_SUFFIXES:
        if name.lower().endswith(suf):
            return name[: -len(suf)]
    return p.stem


def read_raw_frame(path: str | Path, *, name: str | None = None) -> RawFrame:
    """Read the first 2-D image HDU of a FITS file.

    The primary header is merged into the image header when the data live
    in an extension, so detector keywords written in either place are seen.
    """
    path = Path(path).expanduser()
    with fits.open(path, memmap=False) as hdul:
        for i, hdu in enumerate(hdul):
            if hdu.data is not None and np.ndim(hdu.data) == 2:
                hdr = fits.Header(hdul[0].header)
                if i > 0:
                    ext = hdu.header.copy()
                    for k in _STRUCTURAL_KEYS:
                        ext.remove(k, ignore_missing=True)
                    hdr.update(ext)
                data = np.asarray(hdu.data, dtype=np.float64)
                break
        else:
            raise ValueError(f"No 2-D image in {path}")
    return RawFrame(data=data, header=hdr, name=name or _frame_name(path))


def read_raw_frames(paths: Sequence[str | Path]) -> list[RawFrame]:
    return [read_raw_frame(p) for p in paths]


def write_master_bias(path: str | Path, master: MasterBias, *, overwrite: bool = True) -> Path:
    path = Path(path).expanduser()
    path.parent.mkdir(parents=True, exist_ok=True)
    hdr = fits.Header()
    hdr["IMTYPE"] = ("MBIAS", "Master bias")
    hdr["MBNFRAME"] = (int(master.n_frames), "Frames combined")
    hdr["MBNAMPS"] = (master.n_amps, "Amplifiers in master bias")
    for i, v in enumerate(master.read_noise):
        hdr[f"MBRN{i + 1}"] = (float(v), f"Read noise amp {i + 1} [e-]")
    for k, v in as_header_cards().items():
        hdr[k] = v
    fits.PrimaryHDU(data=np.asarray(master.image, dtype=np.float32), header=hdr).writeto(path, overwrite=overwrite)
    return path


def read_master_bias(path: str | Path, *, key: str | None = None) -> MasterBias:
    path = Path(path).expanduser()
    with fits.open(path, memmap=False) as hdul:
        hdr = hdul[0].header
        image = np.asarray(hdul[0].data, dtype=np.float64)
    n = int(hdr.get("MBNAMPS", 0) or 0)
    if n <= 0:
        n = sum(1 for k in hdr.keys() if str(k).startswith("MBRN"))
    read_noise = tuple(float(hdr[f"MBRN{i + 1}"]) for i in range(n) if f"MBRN{i + 1}" in hdr)
    if not read_noise:
        raise ValueError(f"{path} has no MBRNn read-noise cards; not a master bias")
    return MasterBias(
        image=image,
        read_noise=read_noise,
        key=key or str(path),
        n_frames=int(hdr.get("MBNFRAME", 0) or 0),
    )


class FileBiasResolver:
    """Resolve a master-bias key that names a file or a directory.

    * a FITS file with ``MBRNn`` cards: a ready master bias
    * a directory (or a ``.lst`` file listing paths): raw bias frames to be
      combined by the pipeline
    * anything that does not exist: ``None``
    """

    def __call__(self, key: str) -> MasterBias | list[RawFrame] | None:
        p = Path(key).expanduser()
        if p.is_dir():
            files = sorted(x for x in p.iterdir() if x.is_file() and _is_fits(x))
            log.info("Master bias %s: %d raw bias frame(s)", p, len(files))
            return read_raw_frames(files)
        if p.is_file() and p.suffix.lower() == ".lst":
            lines = [ln.strip() for ln in p.read_text(encoding="utf-8").splitlines()]
            files = [(p.parent / ln) for ln in lines if ln and not ln.startswith("#")]
            log.info("Master bias %s: %d raw bias frame(s)", p, len(files))
            return read_raw_frames(files)
        if p.is_file():
            return read_master_bias(p, key=key)
        log.debug("Master bias %s not found", p)
        return None
