"""ifsred-pipe package.

Raw-frame reduction for multi-amplifier imaging-spectrograph detectors.
The public entry point is :class:`ifsred_pipe.pipeline.FramePipeline`.
"""

from .version import __version__, PIPELINE_VERSION

__all__ = ["__version__", "PIPELINE_VERSION"]
