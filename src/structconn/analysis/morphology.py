"""
Binary morphology on voxel masks.

Dilation and erosion use a ball structuring element (voxels within the given
radius of the centre, so radius 1 is the 6-neighbour cross). Connected
components are always 26-connected.
"""

from __future__ import annotations

import numpy as np
from scipy import ndimage

#: 3x3x3 structure for 26-connected component labelling
FULL_CONNECTIVITY = np.ones((3, 3, 3), dtype=bool)


def ball(radius: int) -> np.ndarray:
    """
    Ball structuring element of the given voxel radius.

    Examples
    --------
    >>> ball(1).sum()
    7
    """
    if radius < 0:
        raise ValueError(f"Radius must be non-negative, got {radius}")
    span = np.arange(-radius, radius + 1)
    x, y, z = np.meshgrid(span, span, span, indexing="ij")
    return (x**2 + y**2 + z**2) <= radius**2


def dilate(mask: np.ndarray, radius: int) -> np.ndarray:
    """Binary dilation by a ball of ``radius`` voxels."""
    mask = np.asarray(mask, dtype=bool)
    if radius == 0:
        return mask.copy()
    return ndimage.binary_dilation(mask, structure=ball(radius))


def erode(mask: np.ndarray, radius: int) -> np.ndarray:
    """Binary erosion by a ball of ``radius`` voxels.

    Voxels outside the grid count as background.
    """
    mask = np.asarray(mask, dtype=bool)
    if radius == 0:
        return mask.copy()
    return ndimage.binary_erosion(mask, structure=ball(radius), border_value=0)


def keep_large_components(mask: np.ndarray, min_voxels: int) -> np.ndarray:
    """
    Keep 26-connected components with at least ``min_voxels`` voxels.

    Parameters
    ----------
    mask : np.ndarray
        Binary mask.
    min_voxels : int
        Minimum component size.

    Returns
    -------
    np.ndarray
        Boolean mask of the surviving components.
    """
    components, n_components = ndimage.label(np.asarray(mask, dtype=bool), FULL_CONNECTIVITY)
    if n_components == 0:
        return np.zeros(components.shape, dtype=bool)

    sizes = np.bincount(components.ravel())
    keep = sizes >= min_voxels
    keep[0] = False
    return keep[components]
