"""
Label definitions and label maps.

A LabelDefinition is the ordered list of (ID, name) pairs that make up the
nodes of a connectivity graph. Any label ID in a volume that is not part of
the definition is treated as background.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Iterator, Mapping
from dataclasses import dataclass
from pathlib import Path

import numpy as np
import pandas as pd

from .exceptions import ConfigurationError, MissingInputError
from .volume import VolumeGrid

logger = logging.getLogger(__name__)

ID_COLUMN = "Label.ID"
NAME_COLUMN = "Label.Name"


class LabelDefinition(Mapping):
    """
    Ordered, immutable mapping from label ID to region name.

    Parameters
    ----------
    entries : iterable of (int, str)
        Label IDs and names, in matrix order.
    name : str, optional
        Name of the label system (for example the parcellation name).

    Raises
    ------
    ConfigurationError
        If the definition is empty, contains duplicate IDs, or contains
        IDs that are not positive integers.

    Examples
    --------
    >>> labels = LabelDefinition([(101, "precentral"), (102, "postcentral")])
    >>> labels.ids
    (101, 102)
    >>> labels.index_of(102)
    1
    """

    def __init__(self, entries: Iterable[tuple[int, str]], name: str | None = None):
        ids: list[int] = []
        names: list[str] = []

        for raw_id, raw_name in entries:
            label_id = _as_label_id(raw_id)
            if label_id in ids:
                raise ConfigurationError(
                    f"Duplicate label ID {label_id} in label definition"
                    + (f" '{name}'" if name else "")
                )
            ids.append(label_id)
            names.append(str(raw_name))

        if not ids:
            raise ConfigurationError(
                "Label definition is empty" + (f": '{name}'" if name else "")
            )

        self._ids = tuple(ids)
        self._names = tuple(names)
        self._index = {label_id: i for i, label_id in enumerate(ids)}
        self.name = name

    def __getitem__(self, label_id: int) -> str:
        return self._names[self._index[label_id]]

    def __iter__(self) -> Iterator[int]:
        return iter(self._ids)

    def __len__(self) -> int:
        return len(self._ids)

    @property
    def ids(self) -> tuple[int, ...]:
        """Label IDs in definition order."""
        return self._ids

    @property
    def names(self) -> tuple[str, ...]:
        """Region names in definition order."""
        return self._names

    def index_of(self, label_id: int) -> int:
        """Row/column of ``label_id`` in matrices built from this definition."""
        return self._index[label_id]

    def node_mask(self, labels: np.ndarray) -> np.ndarray:
        """Boolean mask of voxels whose label is part of this definition."""
        return np.isin(labels, np.asarray(self._ids))

    def restrict(self, labels: np.ndarray) -> np.ndarray:
        """Copy of ``labels`` with every undefined ID set to 0."""
        labels = np.asarray(labels)
        return np.where(self.node_mask(labels), labels, 0).astype(np.int32)

    def to_dataframe(self) -> pd.DataFrame:
        """Label IDs and names as a two-column DataFrame."""
        return pd.DataFrame({ID_COLUMN: list(self._ids), NAME_COLUMN: list(self._names)})

    def __repr__(self) -> str:
        name = f"'{self.name}', " if self.name else ""
        return f"LabelDefinition({name}n_labels={len(self)})"


def _as_label_id(value) -> int:
    try:
        as_float = float(value)
    except (TypeError, ValueError) as e:
        raise ConfigurationError(f"Label ID '{value}' is not an integer") from e

    if not as_float.is_integer():
        raise ConfigurationError(f"Label ID '{value}' is not an integer")
    if as_float <= 0:
        raise ConfigurationError(f"Label ID must be positive, got {value}")
    return int(as_float)


def load_label_definition(path: str | Path, name: str | None = None) -> LabelDefinition:
    """
    Load a label definition from a CSV file.

    The file holds one row per graph node with columns ``Label.ID`` and
    ``Label.Name``. Header names are matched case-insensitively; if they are
    absent the first two columns are used.

    Parameters
    ----------
    path : str or Path
        Path to the CSV file.
    name : str, optional
        Name of the label system. Defaults to the file stem.

    Returns
    -------
    LabelDefinition

    Raises
    ------
    MissingInputError
        If the file does not exist.
    ConfigurationError
        If the file cannot be parsed or the definition is invalid.
    """
    path = Path(path)
    if not path.exists():
        raise MissingInputError(path, "label definition")

    try:
        table = pd.read_csv(path, skipinitialspace=True)
        # Headerless file: the first row is already a label
        if _is_integer(table.columns[0]):
            table = pd.read_csv(path, skipinitialspace=True, header=None)
    except (pd.errors.ParserError, pd.errors.EmptyDataError, UnicodeDecodeError) as e:
        raise ConfigurationError(f"Could not parse label definition '{path}': {e}") from e

    columns = {str(c).strip().lower(): c for c in table.columns}
    id_column = columns.get(ID_COLUMN.lower())
    name_column = columns.get(NAME_COLUMN.lower())

    if id_column is None or name_column is None:
        if table.shape[1] < 2:
            raise ConfigurationError(
                f"Label definition '{path}' needs '{ID_COLUMN}' and '{NAME_COLUMN}' columns"
            )
        id_column, name_column = table.columns[0], table.columns[1]

    table = table.dropna(subset=[id_column])
    labels = LabelDefinition(
        zip(table[id_column].tolist(), table[name_column].tolist()),
        name=name or path.stem,
    )
    logger.debug(f"Loaded {len(labels)} labels from {path}")
    return labels


def _is_integer(value) -> bool:
    try:
        int(str(value).strip())
    except ValueError:
        return False
    return True


@dataclass(frozen=True, eq=False)
class LabelMap:
    """
    Integer label volume paired with the definition of its graph nodes.

    Attributes
    ----------
    volume : VolumeGrid
        Integer label volume.
    definition : LabelDefinition
        Labels that count as graph nodes.
    """

    volume: VolumeGrid
    definition: LabelDefinition

    def __post_init__(self):
        if not np.issubdtype(self.volume.data.dtype, np.integer):
            data = np.asarray(self.volume.data)
            if not np.allclose(data, np.round(data)):
                raise ConfigurationError(
                    f"Label volume '{self.volume.name}' contains non-integer values"
                )
            object.__setattr__(
                self, "volume", self.volume.with_data(np.round(data).astype(np.int32))
            )

    @property
    def labels(self) -> np.ndarray:
        return self.volume.data

    def node_mask(self) -> np.ndarray:
        """Voxels carrying a defined label."""
        return self.definition.node_mask(self.volume.data)

    def restricted(self) -> np.ndarray:
        """Label array with undefined IDs set to background."""
        return self.definition.restrict(self.volume.data)

    def present_ids(self) -> list[int]:
        """Defined label IDs that occur in the volume, in definition order."""
        present = set(np.unique(self.volume.data).tolist())
        return [label_id for label_id in self.definition.ids if label_id in present]
