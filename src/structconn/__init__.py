"""
structconn - structural connectomes from diffusion MRI.

Builds tracking masks and graph nodes from anatomical labels, runs streamline
tractography, maps the streamlines into a reference space and aggregates them
into connectivity matrices.
"""

try:
    from ._version import __version__
except ImportError:
    # Fallback for development installations without setuptools-scm
    __version__ = "0.0.0+unknown"

from .core.config import PipelineConfig, load_config
from .pipeline import ConnectomePipeline, PipelineResult, SessionInputs

__all__ = [
    "__version__",
    "ConnectomePipeline",
    "PipelineConfig",
    "PipelineResult",
    "SessionInputs",
    "load_config",
]
