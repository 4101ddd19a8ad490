"""
Pipeline configuration.

Every threshold and radius used by the mask, tracking and aggregation stages
lives in one PipelineConfig object that is passed to each stage. Values can
be loaded from a YAML file; unspecified keys keep their defaults.

Classes:
    PipelineConfig: Parameters for one connectome run.

Functions:
    load_yaml_config: Load a configuration mapping from a YAML file.
    load_config: Build a validated PipelineConfig from a YAML file.
"""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass, field, fields, replace
from pathlib import Path
from typing import Any

import yaml

from .exceptions import ConfigurationError, MissingInputError

logger = logging.getLogger(__name__)

SCALAR_NAMES = ("FA", "MD", "AD", "RD")
TARGET_SPACES = ("session", "template")
EDGE_AGGREGATIONS = ("mean", "median")


def load_yaml_config(config_path: Path) -> dict[str, Any]:
    """
    Load configuration from a YAML file.

    Parameters
    ----------
    config_path : Path
        Path to the YAML configuration file.

    Returns
    -------
    dict
        Parsed configuration dictionary.

    Raises
    ------
    MissingInputError
        If config file doesn't exist.
    ConfigurationError
        If YAML parsing fails or the top level is not a mapping.
    """
    config_path = Path(config_path)
    if not config_path.exists():
        raise MissingInputError(config_path, "config file")

    with open(config_path) as f:
        try:
            config = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Invalid YAML in config file: {e}") from e

    if not isinstance(config, dict):
        raise ConfigurationError(
            f"Config file {config_path} must contain a mapping, got {type(config).__name__}"
        )
    return config


@dataclass(frozen=True)
class PipelineConfig:
    """
    Parameters for building one connectivity graph.

    Attributes
    ----------
    mask_fa_threshold : float
        FA at or above which a voxel may be added to the WM mask.
    wm_dilation_radius : int
        Radius (voxels) of the WM label dilation bounding FA-based additions.
    erosion_radius : int
        Radius (voxels) of the GM+WM erosion that keeps additions off the
        outer boundary of the brain tissue.
    min_cluster_voxels_fa : int
        Minimum size of 26-connected FA clusters kept as WM candidates.
    min_cluster_voxels_final : int
        Minimum size of 26-connected components kept in the final WM mask.
    propagation_iterations : int
        Maximum number of label propagation passes when filling graph nodes.
    face_neighbours_only : bool
        Propagate labels through the 6-neighbourhood only (26 otherwise).
        A connectivity restriction; no topology test is made.
    seed_fa_threshold : float
        FA threshold defining the tracking seed mask.
    seed_spacing : float
        Isotropic spacing (mm) of the seed grid.
    tracking_anisotropy_threshold : float
        Threshold the tracker applies to its anisotropy/termination image.
    curvature_threshold : float
        Maximum bend (degrees) allowed over 5 mm of streamline.
    step_size : float
        Tracking step size in mm.
    min_length : float
        Minimum streamline length (mm) after truncation.
    count_longest_path : bool
        Credit the pair of nodes furthest apart along each streamline
        instead of the first nodes reached from the seed.
    compute_scalars : bool
        Also build per-edge FA/MD/AD/RD matrices.
    scalars : tuple of str
        Scalar maps to aggregate when ``compute_scalars`` is set.
    edge_aggregation : str
        How per-streamline medians are combined per edge ("mean" or "median").
    exclusion_threshold : float
        Value at or above which the exclusion image terminates streamlines.
    target_space : str
        Reference space for the graph: "session" or "template".
    cleanup : bool
        Remove the scratch workspace after a run.
    """

    # Tracking masks
    mask_fa_threshold: float = 0.25
    wm_dilation_radius: int = 2
    erosion_radius: int = 1
    min_cluster_voxels_fa: int = 10000
    min_cluster_voxels_final: int = 20000

    # Graph nodes
    propagation_iterations: int = 100
    face_neighbours_only: bool = True

    # Tractography
    seed_fa_threshold: float = 0.25
    seed_spacing: float = 1.0
    tracking_anisotropy_threshold: float = 0.5
    curvature_threshold: float = 90.0
    step_size: float = 0.5

    # Aggregation
    min_length: float = 10.0
    count_longest_path: bool = False
    compute_scalars: bool = False
    scalars: tuple[str, ...] = field(default=SCALAR_NAMES)
    edge_aggregation: str = "mean"
    exclusion_threshold: float = 0.5

    # Run
    target_space: str = "session"
    cleanup: bool = True

    def __post_init__(self):
        if isinstance(self.scalars, str):
            object.__setattr__(self, "scalars", (self.scalars,))
        else:
            object.__setattr__(self, "scalars", tuple(self.scalars))

    @classmethod
    def cortical(cls, **overrides) -> PipelineConfig:
        """
        Settings used for cortical graphs.

        Seeds are placed at FA >= 0.2, curvature is limited to 80 degrees and
        scalar matrices are computed.
        """
        defaults = {"seed_fa_threshold": 0.2, "curvature_threshold": 80.0, "compute_scalars": True}
        defaults.update(overrides)
        return cls(**defaults)

    @classmethod
    def from_dict(cls, values: dict[str, Any]) -> PipelineConfig:
        """
        Create a config from a mapping, rejecting unknown keys.

        Raises
        ------
        ConfigurationError
            If a key is not a config field or a value has the wrong type.
        """
        known = {f.name for f in fields(cls)}
        unknown = sorted(set(values) - known)
        if unknown:
            raise ConfigurationError(
                f"Unknown configuration keys: {', '.join(unknown)}. "
                f"Valid keys: {', '.join(sorted(known))}"
            )
        try:
            return cls(**values)
        except TypeError as e:
            raise ConfigurationError(f"Invalid configuration: {e}") from e

    def with_overrides(self, **overrides) -> PipelineConfig:
        return replace(self, **overrides)

    def to_dict(self) -> dict[str, Any]:
        """JSON/YAML-serialisable view of the config."""
        values = asdict(self)
        values["scalars"] = list(self.scalars)
        return values

    def validate(self) -> None:
        """
        Validate configuration.

        Raises
        ------
        ConfigurationError
            If any value is out of range.
        """
        positive_floats = {
            "mask_fa_threshold": self.mask_fa_threshold,
            "seed_fa_threshold": self.seed_fa_threshold,
            "seed_spacing": self.seed_spacing,
            "tracking_anisotropy_threshold": self.tracking_anisotropy_threshold,
            "curvature_threshold": self.curvature_threshold,
            "step_size": self.step_size,
            "min_length": self.min_length,
            "exclusion_threshold": self.exclusion_threshold,
        }
        for name, value in positive_floats.items():
            if not isinstance(value, (int, float)) or isinstance(value, bool) or value <= 0:
                raise ConfigurationError(f"'{name}' must be a positive number, got {value!r}")

        positive_ints = {
            "wm_dilation_radius": self.wm_dilation_radius,
            "erosion_radius": self.erosion_radius,
            "min_cluster_voxels_fa": self.min_cluster_voxels_fa,
            "min_cluster_voxels_final": self.min_cluster_voxels_final,
            "propagation_iterations": self.propagation_iterations,
        }
        for name, value in positive_ints.items():
            if not isinstance(value, int) or isinstance(value, bool) or value < 1:
                raise ConfigurationError(f"'{name}' must be a positive integer, got {value!r}")

        if self.mask_fa_threshold > 1 or self.seed_fa_threshold > 1:
            raise ConfigurationError("FA thresholds must lie in (0, 1]")
        if self.curvature_threshold > 180:
            raise ConfigurationError(
                f"'curvature_threshold' must be at most 180 degrees, got {self.curvature_threshold}"
            )

        invalid_scalars = [s for s in self.scalars if s not in SCALAR_NAMES]
        if invalid_scalars:
            raise ConfigurationError(
                f"Unknown scalars {invalid_scalars}. Supported: {list(SCALAR_NAMES)}"
            )
        if self.edge_aggregation not in EDGE_AGGREGATIONS:
            raise ConfigurationError(
                f"'edge_aggregation' must be one of {list(EDGE_AGGREGATIONS)}, "
                f"got '{self.edge_aggregation}'"
            )
        if self.target_space not in TARGET_SPACES:
            raise ConfigurationError(
                f"'target_space' must be one of {list(TARGET_SPACES)}, got '{self.target_space}'"
            )


def load_config(config_path: Path, **overrides) -> PipelineConfig:
    """
    Build a validated PipelineConfig from a YAML file.

    Keyword overrides take precedence over values in the file.

    Examples
    --------
    >>> config = load_config(Path("connectome.yaml"), count_longest_path=True)
    """
    values = load_yaml_config(config_path)
    values.update(overrides)
    config = PipelineConfig.from_dict(values)
    config.validate()
    logger.debug(f"Loaded configuration from {config_path}")
    return config
