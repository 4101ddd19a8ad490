"""
Tractography engine interface and seed mask construction.

The engine that turns a tensor volume and a seed mask into streamlines is an
external collaborator. Implementations wrap a command-line tracker or a
native library behind :class:`TractographyEngine`.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import asdict, dataclass

import numpy as np
from nilearn.image import resample_img

from structconn.analysis.tensor import (
    scalars_from_eigenvalues,
    tensor_components,
    tensor_eigenvalues,
)
from structconn.core.config import PipelineConfig
from structconn.core.exceptions import DegenerateMaskError
from structconn.core.streamlines import StreamlineSet
from structconn.core.volume import VolumeGrid

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TrackingParameters:
    """
    Parameters passed to the tracker.

    Attributes
    ----------
    anisotropy_threshold : float
        Tracking stops where the anisotropy image falls below this value.
    curvature_threshold : float
        Maximum bend in degrees over 5 mm.
    step_size : float
        Step size in mm.
    tracker : str
        Integration scheme.
    interpolator : str
        Tensor interpolation scheme.
    """

    anisotropy_threshold: float = 0.5
    curvature_threshold: float = 90.0
    step_size: float = 0.5
    tracker: str = "euler"
    interpolator: str = "linear"

    @classmethod
    def from_config(cls, config: PipelineConfig) -> TrackingParameters:
        return cls(
            anisotropy_threshold=config.tracking_anisotropy_threshold,
            curvature_threshold=config.curvature_threshold,
            step_size=config.step_size,
        )

    def to_dict(self) -> dict:
        return asdict(self)


class TractographyEngine(ABC):
    """Produces raw streamlines in diffusion world coordinates."""

    #: Short identifier recorded in provenance
    name: str = "engine"

    @abstractmethod
    def track(
        self,
        tensor: VolumeGrid,
        seed_mask: VolumeGrid,
        parameters: TrackingParameters,
        anisotropy_image: VolumeGrid | None = None,
    ) -> StreamlineSet:
        """
        Track streamlines from every seed voxel.

        Parameters
        ----------
        tensor : VolumeGrid
            Diffusion tensor volume.
        seed_mask : VolumeGrid
            Seed voxels (may be on a finer grid than the tensor).
        parameters : TrackingParameters
            Thresholds and step settings.
        anisotropy_image : VolumeGrid, optional
            Image the anisotropy threshold is applied to; typically the
            diffusion brain mask, so tracking stays inside the brain.

        Returns
        -------
        StreamlineSet
            Streamlines in ``"diffusion"`` space with seed indices set.
        """


def isotropic_affine(affine: np.ndarray, spacing: float) -> np.ndarray:
    """Affine with the same origin and orientation as ``affine`` and isotropic voxels."""
    affine = np.asarray(affine, dtype=np.float64)
    directions = affine[:3, :3] / np.sqrt((affine[:3, :3] ** 2).sum(axis=0))
    target = np.eye(4)
    target[:3, :3] = directions * spacing
    target[:3, 3] = affine[:3, 3]
    return target


def build_seed_mask(
    tensor: VolumeGrid,
    fa_threshold: float,
    spacing: float = 1.0,
    brain_mask: VolumeGrid | None = None,
) -> VolumeGrid:
    """
    Seed mask on an isotropic grid from the FA of the resampled tensor.

    The tensor is resampled to ``spacing`` mm with nilearn (trilinear, per
    component), FA is computed on the new grid and thresholded.

    Parameters
    ----------
    tensor : VolumeGrid
        Tensor volume in diffusion space.
    fa_threshold : float
        Seeds are voxels with FA at or above this value.
    spacing : float, default=1.0
        Seed grid spacing in mm.
    brain_mask : VolumeGrid, optional
        Diffusion brain mask; seeds outside it are removed.

    Returns
    -------
    VolumeGrid
        Boolean seed mask named ``SeedMask``.

    Raises
    ------
    DegenerateMaskError
        If no voxel reaches the threshold.
    """
    components = tensor_components(tensor)
    extent = np.array(tensor.shape) * np.array(tensor.zooms)
    target_shape = tuple(int(max(1, round(e / spacing))) for e in extent)
    target_affine = isotropic_affine(tensor.affine, spacing)

    resampled = resample_img(
        VolumeGrid(components.astype(np.float32), tensor.affine).to_nifti(),
        target_affine=target_affine,
        target_shape=target_shape,
        interpolation="continuous",
        force_resample=True,
        copy_header=True,
    )
    seed_components = np.asarray(resampled.get_fdata(), dtype=np.float64)

    fa = np.zeros(target_shape, dtype=np.float64)
    foreground = np.any(seed_components != 0, axis=-1)
    if foreground.any():
        fa[foreground] = scalars_from_eigenvalues(tensor_eigenvalues(seed_components[foreground]))[
            "FA"
        ]
    seeds = fa >= fa_threshold

    if brain_mask is not None:
        mask_img = resample_img(
            brain_mask.to_nifti(dtype=np.uint8),
            target_affine=target_affine,
            target_shape=target_shape,
            interpolation="nearest",
            force_resample=True,
            copy_header=True,
        )
        seeds &= np.asarray(mask_img.dataobj) > 0

    if not seeds.any():
        raise DegenerateMaskError("seed_mask", f"no voxel with FA >= {fa_threshold}")

    logger.info(
        f"Seed mask: {int(seeds.sum())} seeds at {spacing} mm spacing, FA >= {fa_threshold}"
    )
    return VolumeGrid(seeds, target_affine, name="SeedMask")
