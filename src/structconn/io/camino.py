"""
Camino raw streamline (Bfloat) format.

Each streamline is stored as big-endian float32 values::

    N, seed_index, x1, y1, z1, ..., xN, yN, zN

Coordinates are in mm relative to the corner of voxel (0, 0, 0) of the grid
the tracking ran on, along the voxel axes, so the centre of voxel (i, j, k)
is at ``((i + 0.5) * dx, (j + 0.5) * dy, (k + 0.5) * dz)``.
"""

from __future__ import annotations

import logging
from pathlib import Path

import numpy as np

from structconn.core.exceptions import MissingInputError, TractographyError
from structconn.core.streamlines import Streamline, StreamlineSet
from structconn.core.volume import VolumeGrid

logger = logging.getLogger(__name__)

BFLOAT_DTYPE = np.dtype(">f4")


def camino_to_world(points: np.ndarray, grid: VolumeGrid) -> np.ndarray:
    """Convert Camino mm coordinates on ``grid`` to world (RAS+) mm."""
    voxels = np.asarray(points, dtype=np.float64) / np.array(grid.zooms) - 0.5
    return grid.voxel_to_world(voxels)


def world_to_camino(points: np.ndarray, grid: VolumeGrid) -> np.ndarray:
    """Convert world (RAS+) mm to Camino mm coordinates on ``grid``."""
    return (grid.world_to_voxel(points) + 0.5) * np.array(grid.zooms)


def decode_bfloat(values: np.ndarray, grid: VolumeGrid, space: str = "diffusion") -> StreamlineSet:
    """
    Decode a flat array of Bfloat values into streamlines.

    Raises
    ------
    TractographyError
        If the stream is truncated or a record is malformed.
    """
    values = np.asarray(values, dtype=np.float64)
    streamlines = []
    position = 0
    n_short = 0

    while position < values.size:
        if position + 2 > values.size:
            raise TractographyError(f"Truncated streamline header at value {position}")
        n_points = int(values[position])
        seed_index = int(values[position + 1])
        start = position + 2
        stop = start + 3 * n_points
        if n_points < 0 or stop > values.size:
            raise TractographyError(
                f"Malformed streamline record at value {position}: {n_points} points"
            )

        if n_points >= 2:
            points = camino_to_world(values[start:stop].reshape(n_points, 3), grid)
            seed = seed_index if 0 <= seed_index < n_points else None
            streamlines.append(Streamline(points, seed_index=seed))
        else:
            n_short += 1
        position = stop

    if n_short:
        logger.debug(f"Skipped {n_short} streamlines with fewer than 2 points")
    return StreamlineSet(streamlines, space=space)


def read_bfloat(path: str | Path, grid: VolumeGrid, space: str = "diffusion") -> StreamlineSet:
    """
    Read a Camino Bfloat streamline file.

    Parameters
    ----------
    path : str or Path
        Bfloat file written by Camino ``track`` or ``procstreamlines``.
    grid : VolumeGrid
        Grid the streamlines were tracked on (defines the Camino frame).
    space : str, default="diffusion"
        Space name attached to the returned set.
    """
    path = Path(path)
    if not path.exists():
        raise MissingInputError(path, "Camino streamline file")

    values = np.fromfile(path, dtype=BFLOAT_DTYPE)
    streamlines = decode_bfloat(values, grid, space=space)
    logger.info(f"Read {len(streamlines)} streamlines from {path.name}")
    return streamlines


def write_bfloat(streamlines: StreamlineSet, path: str | Path, grid: VolumeGrid) -> Path:
    """Write streamlines as a Camino Bfloat file on ``grid``."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)

    records = []
    for streamline in streamlines:
        header = np.array([len(streamline), streamline.seed], dtype=np.float64)
        records.append(header)
        records.append(world_to_camino(streamline.points, grid).ravel())

    values = np.concatenate(records) if records else np.zeros(0)
    values.astype(BFLOAT_DTYPE).tofile(path)
    return path
