"""Version helpers.

This project keeps *two* version identifiers:

- ``__version__``: Python package version (PEP 440). This is what pip/packaging sees.
- ``PIPELINE_VERSION``: user-facing pipeline release, stamped into products.

They are maintained together in this single module.
"""

from __future__ import annotations

from dataclasses import dataclass
import platform
import sys


__version__ = "1.4.0"
PIPELINE_VERSION = "v1.4.0"


@dataclass(frozen=True)
class VersionInfo:
    package_version: str
    pipeline_version: str
    python: str
    platform: str


def get_version_info() -> VersionInfo:
    return VersionInfo(
        package_version=__version__,
        pipeline_version=PIPELINE_VERSION,
        python=sys.version.split()[0],
        platform=f"{platform.system()} {platform.release()} ({platform.machine()})",
    )


def as_header_cards(prefix: str = "IFSR") -> dict[str, str]:
    """Key-value cards to store in FITS/JSON provenance.

    Keywords stay within the 8-character FITS limit (``IFSR_VER`` etc.).
    """
    v = get_version_info()
    return {
        f"{prefix}_VER": v.pipeline_version,
        f"{prefix}_PKG": v.package_version,
        f"{prefix}_PY": v.python,
    }
