"""Data model, configuration, errors and provenance."""

from .config import PipelineConfig, load_config
from .data_types import ConnectivityMatrix
from .exceptions import (
    ConfigurationError,
    DegenerateMaskError,
    GeometryMismatchError,
    MissingInputError,
    ProvenanceError,
    StructConnError,
    TractographyError,
    TransformNotAvailableError,
    WorkspaceExistsError,
)
from .labels import LabelDefinition, LabelMap, load_label_definition
from .streamlines import Streamline, StreamlineSet, load_streamlines
from .volume import VolumeGrid, check_same_geometry, load_volume, save_volume

__all__ = [
    "ConfigurationError",
    "ConnectivityMatrix",
    "DegenerateMaskError",
    "GeometryMismatchError",
    "LabelDefinition",
    "LabelMap",
    "MissingInputError",
    "PipelineConfig",
    "ProvenanceError",
    "Streamline",
    "StreamlineSet",
    "StructConnError",
    "TractographyError",
    "TransformNotAvailableError",
    "VolumeGrid",
    "WorkspaceExistsError",
    "check_same_geometry",
    "load_config",
    "load_label_definition",
    "load_streamlines",
    "load_volume",
    "save_volume",
]
