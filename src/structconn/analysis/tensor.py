"""
Diffusion tensor scalar maps.

Tensors are stored with six components per voxel in upper-triangular order
(xx, xy, xz, yy, yz, zz), either as (X, Y, Z, 6) or in the ANTs layout
(X, Y, Z, 1, 6).
"""

from __future__ import annotations

import logging

import numpy as np

from structconn.core.exceptions import ConfigurationError, GeometryMismatchError
from structconn.core.volume import VolumeGrid

logger = logging.getLogger(__name__)

SCALAR_FUNCTIONS = ("FA", "MD", "AD", "RD")


def tensor_components(tensor: VolumeGrid) -> np.ndarray:
    """Tensor data as an (X, Y, Z, 6) float array."""
    data = np.asarray(tensor.data, dtype=np.float64)
    if data.ndim == 5 and data.shape[3] == 1:
        data = data[:, :, :, 0, :]
    if data.ndim != 4 or data.shape[3] != 6:
        raise GeometryMismatchError(
            "Tensor volume must have shape (X, Y, Z, 6) or (X, Y, Z, 1, 6), "
            f"got {tensor.data.shape}"
        )
    return data


def tensor_eigenvalues(components: np.ndarray) -> np.ndarray:
    """
    Eigenvalues of every tensor, ascending, shape (..., 3).

    Parameters
    ----------
    components : np.ndarray
        Array of shape (..., 6) in upper-triangular order.
    """
    xx, xy, xz, yy, yz, zz = np.moveaxis(components, -1, 0)
    matrices = np.stack(
        [
            np.stack([xx, xy, xz], axis=-1),
            np.stack([xy, yy, yz], axis=-1),
            np.stack([xz, yz, zz], axis=-1),
        ],
        axis=-2,
    )
    return np.linalg.eigvalsh(matrices)


def scalars_from_eigenvalues(eigenvalues: np.ndarray) -> dict[str, np.ndarray]:
    """FA, MD, AD and RD from ascending eigenvalues (..., 3)."""
    l1, l2, l3 = eigenvalues[..., 2], eigenvalues[..., 1], eigenvalues[..., 0]
    md = (l1 + l2 + l3) / 3.0

    norm = np.sqrt(l1**2 + l2**2 + l3**2)
    deviation = np.sqrt((l1 - md) ** 2 + (l2 - md) ** 2 + (l3 - md) ** 2)
    with np.errstate(invalid="ignore", divide="ignore"):
        fa = np.where(norm > 0, np.sqrt(1.5) * deviation / norm, 0.0)

    return {
        "FA": np.clip(fa, 0.0, 1.0),
        "MD": md,
        "AD": l1,
        "RD": (l2 + l3) / 2.0,
    }


def tensor_scalars(tensor: VolumeGrid, names=SCALAR_FUNCTIONS) -> dict[str, VolumeGrid]:
    """
    Compute scalar maps from a tensor volume.

    Voxels with an all-zero tensor (background) are 0 in every map.

    Parameters
    ----------
    tensor : VolumeGrid
        Tensor volume.
    names : sequence of str
        Which of FA, MD, AD, RD to return.

    Returns
    -------
    dict
        Scalar name to VolumeGrid on the tensor grid.

    Examples
    --------
    >>> maps = tensor_scalars(dt, names=("FA",))
    >>> maps["FA"].data.max() <= 1.0
    True
    """
    unknown = [n for n in names if n not in SCALAR_FUNCTIONS]
    if unknown:
        raise ConfigurationError(
            f"Unknown tensor scalars {unknown}. Supported: {list(SCALAR_FUNCTIONS)}"
        )

    components = tensor_components(tensor)
    foreground = np.any(components != 0, axis=-1) & np.all(np.isfinite(components), axis=-1)

    values = {name: np.zeros(tensor.shape, dtype=np.float32) for name in names}
    if foreground.any():
        computed = scalars_from_eigenvalues(tensor_eigenvalues(components[foreground]))
        for name in names:
            values[name][foreground] = computed[name]

    logger.debug(f"Computed {', '.join(names)} for {int(foreground.sum())} tensor voxels")
    return {name: tensor.with_data(values[name], name=name) for name in names}
