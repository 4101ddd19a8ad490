"""Result containers for connectivity outputs.

Matrices are indexed by graph-node label in the order of the label
definition used to build them, and are immutable once constructed.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

import numpy as np
import pandas as pd

from .labels import LabelDefinition

logger = logging.getLogger(__name__)

#: Statistic names used for matrix file names
COUNT = "sc"
MEAN_LENGTH = "MeanTractLength"


def scalar_statistic_name(scalar: str) -> str:
    """File/statistic name for a per-edge scalar matrix, e.g. ``MeanTractMedianFA``."""
    return f"MeanTractMedian{scalar}"


@dataclass(frozen=True, eq=False)
class ConnectivityMatrix:
    """Symmetric node x node table of streamline statistics.

    Attributes
    ----------
    name : str
        Name/identifier for this matrix
    matrix : np.ndarray
        Connectivity values (N x N). Stored read-only.
    labels : LabelDefinition
        Graph nodes; row/column ``k`` is ``labels.ids[k]``
    statistic : str
        What the entries hold ("sc" for streamline counts,
        "MeanTractLength", "MeanTractMedianFA", ...)
    metadata : dict
        Additional metadata about the output

    Examples
    --------
    >>> labels = LabelDefinition([(1, "A"), (2, "B")])
    >>> conn = ConnectivityMatrix(
    ...     name="sc",
    ...     matrix=np.array([[0, 3], [3, 0]]),
    ...     labels=labels,
    ...     statistic="sc",
    ... )
    >>> conn.edge(1, 2)
    3.0
    >>> print(conn.summary())
    sc: 2x2, statistic=sc, edges=1
    """

    name: str
    matrix: np.ndarray
    labels: LabelDefinition
    statistic: str
    metadata: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        """Validate and freeze the matrix."""
        matrix = np.array(self.matrix, dtype=np.float64)

        if matrix.ndim != 2:
            raise ValueError(f"Matrix must be 2D, got shape {matrix.shape}")
        if matrix.shape[0] != matrix.shape[1]:
            raise ValueError(f"Matrix must be square, got shape {matrix.shape}")
        if len(self.labels) != matrix.shape[0]:
            raise ValueError(
                f"Number of labels ({len(self.labels)}) "
                f"must match matrix size ({matrix.shape[0]})"
            )
        if not np.allclose(matrix, matrix.T, equal_nan=True):
            raise ValueError(f"Connectivity matrix '{self.name}' is not symmetric")

        matrix.flags.writeable = False
        object.__setattr__(self, "matrix", matrix)

    @property
    def label_ids(self) -> tuple[int, ...]:
        return self.labels.ids

    @property
    def n_edges(self) -> int:
        """Number of node pairs with a non-zero entry (upper triangle)."""
        return int(np.count_nonzero(np.triu(self.matrix, k=1)))

    def edge(self, label_i: int, label_j: int) -> float:
        """Entry for the node pair (label_i, label_j)."""
        return float(self.matrix[self.labels.index_of(label_i), self.labels.index_of(label_j)])

    def to_dataframe(self, use_names: bool = False) -> pd.DataFrame:
        """Matrix as a DataFrame indexed by label ID (or region name)."""
        index = list(self.labels.names) if use_names else list(self.labels.ids)
        return pd.DataFrame(self.matrix, index=index, columns=index)

    def summary(self) -> str:
        """Get a summary description of this result."""
        n_regions = self.matrix.shape[0]
        return (
            f"{self.name}: {n_regions}x{n_regions}, "
            f"statistic={self.statistic}, edges={self.n_edges}"
        )

    def __repr__(self) -> str:
        return (
            f"ConnectivityMatrix(name='{self.name}', shape={self.matrix.shape}, "
            f"statistic='{self.statistic}')"
        )
