"""
Export utilities for session outputs.

Every output file of a session is named ``{subject}_{timepoint}_{stem}``.
Matrices are written as CSV with one header row of label IDs, in the order
given by the accompanying ``LabelOrder.csv``.
"""

from __future__ import annotations

import logging
from pathlib import Path

import numpy as np

from structconn.core.data_types import ConnectivityMatrix
from structconn.core.labels import LabelDefinition
from structconn.core.volume import VolumeGrid, save_volume

logger = logging.getLogger(__name__)

LABEL_ORDER = "LabelOrder"


def session_prefix(subject: str, timepoint: str) -> str:
    """File name prefix shared by all outputs of a session."""
    return f"{subject}_{timepoint}_"


def export_matrix(matrix: ConnectivityMatrix, output_dir: str | Path, prefix: str = "") -> Path:
    """
    Write a connectivity matrix to ``{prefix}{matrix.name}.csv``.

    Parameters
    ----------
    matrix : ConnectivityMatrix
        Matrix to export.
    output_dir : str or Path
        Output directory, created if needed.
    prefix : str, default=""
        File name prefix (see :func:`session_prefix`).

    Returns
    -------
    Path
        Path to the CSV file.
    """
    output_dir = Path(output_dir)
    output_dir.mkdir(parents=True, exist_ok=True)

    path = output_dir / f"{prefix}{matrix.name}.csv"
    matrix.to_dataframe().to_csv(path, index=False)
    logger.debug(f"Wrote {matrix.summary()} to {path}")
    return path


def export_label_order(labels: LabelDefinition, output_dir: str | Path, prefix: str = "") -> Path:
    """Write the row/column order of the matrices as ``{prefix}LabelOrder.csv``."""
    output_dir = Path(output_dir)
    output_dir.mkdir(parents=True, exist_ok=True)

    path = output_dir / f"{prefix}{LABEL_ORDER}.csv"
    labels.to_dataframe().to_csv(path, index=False)
    return path


def export_volume(
    volume: VolumeGrid,
    output_dir: str | Path,
    prefix: str = "",
    stem: str | None = None,
) -> Path:
    """
    Write a volume to ``{prefix}{stem}.nii.gz``.

    Boolean masks are stored as uint8 and label or count volumes as int32.
    ``stem`` defaults to the volume name.
    """
    stem = stem or volume.name
    if not stem:
        raise ValueError("Volume has no name; pass stem explicitly")

    dtype = None
    if volume.data.dtype == bool:
        dtype = np.uint8
    elif np.issubdtype(volume.data.dtype, np.integer):
        dtype = np.int32
    return save_volume(volume, Path(output_dir) / f"{prefix}{stem}.nii.gz", dtype=dtype)


def load_matrix_csv(path: str | Path, labels: LabelDefinition, name: str | None = None):
    """
    Read a matrix written by :func:`export_matrix` back into a ConnectivityMatrix.

    Raises
    ------
    ValueError
        If the header does not match ``labels``.
    """
    import pandas as pd

    path = Path(path)
    table = pd.read_csv(path)
    header = tuple(int(c) for c in table.columns)
    if header != labels.ids:
        raise ValueError(f"Matrix header in {path} does not match the label order")

    name = name or path.stem
    return ConnectivityMatrix(name, table.to_numpy(dtype=float), labels, statistic=name)
