"""
Streamline density maps.

A density map counts, for every voxel of a grid, how many streamlines pass
through it. Each streamline contributes at most once per voxel.
"""

from __future__ import annotations

import logging

import numpy as np

from structconn.core.streamlines import StreamlineSet
from structconn.core.volume import VolumeGrid

logger = logging.getLogger(__name__)


def _linear_voxels(points: np.ndarray, grid: VolumeGrid) -> np.ndarray:
    voxels = np.rint(grid.world_to_voxel(points)).astype(np.intp)
    inside = np.all((voxels >= 0) & (voxels < np.array(grid.shape)), axis=1)
    return np.ravel_multi_index(tuple(voxels[inside].T), grid.shape)


def streamline_density(
    streamlines: StreamlineSet, grid: VolumeGrid, name: str | None = None
) -> VolumeGrid:
    """
    Number of streamlines visiting each voxel of ``grid``.

    Parameters
    ----------
    streamlines : StreamlineSet
        Streamlines in the space of ``grid``.
    grid : VolumeGrid
        Output geometry.
    name : str, optional
        Name of the returned volume.

    Returns
    -------
    VolumeGrid
        Integer counts on ``grid``.
    """
    size = int(np.prod(grid.shape))
    visited = [np.unique(_linear_voxels(s.points, grid)) for s in streamlines]
    if visited:
        counts = np.bincount(np.concatenate(visited), minlength=size)
    else:
        counts = np.zeros(size, dtype=np.intp)

    logger.debug(f"Density map {name}: {int(np.count_nonzero(counts))} voxels visited")
    return grid.with_data(counts.reshape(grid.shape).astype(np.int32), name=name)


def seed_density(
    streamlines: StreamlineSet, grid: VolumeGrid, name: str | None = None
) -> VolumeGrid:
    """Number of streamline seed points falling in each voxel of ``grid``."""
    size = int(np.prod(grid.shape))
    seeds = _linear_voxels(streamlines.seed_points(), grid)
    counts = np.bincount(seeds, minlength=size)
    return grid.with_data(counts.reshape(grid.shape).astype(np.int32), name=name)
