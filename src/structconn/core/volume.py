"""
Volume containers shared by every processing stage.

A VolumeGrid couples a voxel array with the voxel-to-world affine of the grid
it lives on. Masks and label maps are VolumeGrids with boolean or integer
data. All grids taking part in one computation must share geometry.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path

import nibabel as nib
import numpy as np
from nibabel.affines import apply_affine

from .exceptions import GeometryMismatchError, MissingInputError

logger = logging.getLogger(__name__)

#: Absolute tolerance when comparing affines of two grids (mm)
AFFINE_ATOL = 1e-4


@dataclass(frozen=True, eq=False)
class VolumeGrid:
    """
    A 3D (or 4D, for tensor/vector data) voxel array on a world grid.

    Attributes
    ----------
    data : np.ndarray
        Voxel data. The first three axes are spatial. The array is made
        read-only on construction.
    affine : np.ndarray
        4x4 voxel-to-world (RAS+, mm) matrix.
    name : str, optional
        Identifier used in log and error messages.

    Examples
    --------
    >>> grid = VolumeGrid(np.zeros((10, 10, 10)), np.eye(4), name="fa")
    >>> grid.shape
    (10, 10, 10)
    >>> grid.zooms
    (1.0, 1.0, 1.0)
    """

    data: np.ndarray
    affine: np.ndarray
    name: str | None = None

    def __post_init__(self):
        data = np.asarray(self.data)
        affine = np.asarray(self.affine, dtype=np.float64)

        if data.ndim < 3:
            raise ValueError(f"Volume data must be at least 3D, got shape {data.shape}")
        if affine.shape != (4, 4):
            raise ValueError(f"Affine must be 4x4, got shape {affine.shape}")

        data = data.view()
        data.flags.writeable = False
        affine = affine.copy()
        affine.flags.writeable = False

        object.__setattr__(self, "data", data)
        object.__setattr__(self, "affine", affine)

    @property
    def shape(self) -> tuple[int, int, int]:
        """Spatial shape of the grid."""
        return tuple(int(s) for s in self.data.shape[:3])

    @property
    def zooms(self) -> tuple[float, float, float]:
        """Voxel spacing in mm, derived from the affine columns."""
        return tuple(float(z) for z in np.sqrt((self.affine[:3, :3] ** 2).sum(axis=0)))

    @property
    def origin(self) -> np.ndarray:
        """World coordinate of voxel (0, 0, 0)."""
        return self.affine[:3, 3].copy()

    def with_data(self, data: np.ndarray, name: str | None = None) -> VolumeGrid:
        """Return a new VolumeGrid with the same geometry and different data."""
        data = np.asarray(data)
        if data.shape[:3] != self.shape:
            raise GeometryMismatchError(
                f"Data shape {data.shape[:3]} does not match grid shape {self.shape}"
            )
        return VolumeGrid(data, self.affine, name=name or self.name)

    def world_to_voxel(self, points: np.ndarray) -> np.ndarray:
        """Map world coordinates (N x 3) to continuous voxel indices."""
        inverse = np.linalg.inv(self.affine)
        return apply_affine(inverse, np.asarray(points, dtype=np.float64))

    def voxel_to_world(self, indices: np.ndarray) -> np.ndarray:
        """Map voxel indices (N x 3) to world coordinates."""
        return apply_affine(self.affine, np.asarray(indices, dtype=np.float64))

    def same_geometry(self, other: VolumeGrid) -> bool:
        """Check whether ``other`` lives on the same grid."""
        return self.shape == other.shape and np.allclose(
            self.affine, other.affine, atol=AFFINE_ATOL
        )

    def to_nifti(self, dtype=None) -> nib.Nifti1Image:
        """Convert to a nibabel Nifti1Image."""
        data = np.asarray(self.data)
        if data.dtype == bool:
            data = data.astype(np.uint8)
        elif data.dtype in (np.int64, np.uint64):
            # NIfTI readers commonly reject 64-bit integer images
            data = data.astype(np.int32)
        if dtype is not None:
            data = data.astype(dtype)
        img = nib.Nifti1Image(data, self.affine)
        img.header.set_xyzt_units("mm")
        return img

    @classmethod
    def from_nifti(cls, img: nib.Nifti1Image, name: str | None = None) -> VolumeGrid:
        """Create a VolumeGrid from a nibabel image.

        Integer images keep their on-disk integer type. Float images are
        read with scaling applied.
        """
        if np.issubdtype(img.get_data_dtype(), np.integer) and not _has_scaling(img):
            data = np.asanyarray(img.dataobj)
        else:
            data = img.get_fdata(dtype=np.float32)
        return cls(data, img.affine, name=name)

    def __repr__(self) -> str:
        name = f"'{self.name}', " if self.name else ""
        return f"VolumeGrid({name}shape={self.data.shape}, zooms={self.zooms})"


def _has_scaling(img: nib.Nifti1Image) -> bool:
    slope, inter = img.header.get_slope_inter()
    return (slope is not None and slope != 1) or (inter is not None and inter != 0)


def load_volume(path: str | Path, name: str | None = None) -> VolumeGrid:
    """
    Load a NIfTI file into a VolumeGrid.

    Parameters
    ----------
    path : str or Path
        Path to a NIfTI image.
    name : str, optional
        Name for the volume. Defaults to the file name.

    Returns
    -------
    VolumeGrid

    Raises
    ------
    MissingInputError
        If the file does not exist.
    """
    path = Path(path)
    if not path.exists():
        raise MissingInputError(path, name or "volume")

    logger.debug(f"Loading volume {path}")
    img = nib.load(path)
    return VolumeGrid.from_nifti(img, name=name or path.name)


def save_volume(volume: VolumeGrid, path: str | Path, dtype=None) -> Path:
    """Write a VolumeGrid to a NIfTI file and return the path."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    nib.save(volume.to_nifti(dtype=dtype), path)
    logger.debug(f"Saved {volume!r} to {path}")
    return path


def check_same_geometry(*volumes: VolumeGrid) -> None:
    """
    Check that all volumes share one grid.

    Raises
    ------
    GeometryMismatchError
        If any volume differs in spatial shape or affine from the first.
    """
    if len(volumes) < 2:
        return

    reference = volumes[0]
    for other in volumes[1:]:
        if other.shape != reference.shape:
            raise GeometryMismatchError(
                f"Grid shape mismatch: '{reference.name}' has shape {reference.shape}, "
                f"'{other.name}' has shape {other.shape}"
            )
        if not np.allclose(other.affine, reference.affine, atol=AFFINE_ATOL):
            max_diff = float(np.abs(other.affine - reference.affine).max())
            raise GeometryMismatchError(
                f"Grid affine mismatch between '{reference.name}' and '{other.name}' "
                f"(max difference {max_diff:.6f})"
            )
