"""
Streamline containers.

Streamlines are never modified in place. Every filtering or truncation step
produces new Streamline and StreamlineSet instances, so a set can be dropped
as soon as its successor exists.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable, Iterator
from dataclasses import dataclass
from pathlib import Path

import nibabel as nib
import numpy as np

from .exceptions import MissingInputError
from .volume import VolumeGrid

logger = logging.getLogger(__name__)


@dataclass(frozen=True, eq=False)
class Streamline:
    """
    Ordered sequence of 3D points traced by tractography.

    Attributes
    ----------
    points : np.ndarray
        World coordinates in mm, shape (N, 3) with N >= 2. Read-only.
    seed_index : int, optional
        Index of the vertex the streamline was seeded from. Tracking
        propagates in both directions from the seed.
    scalars : np.ndarray, optional
        Per-vertex scalar samples, shape (N,).
    """

    points: np.ndarray
    seed_index: int | None = None
    scalars: np.ndarray | None = None

    def __post_init__(self):
        points = np.array(self.points, dtype=np.float64)
        if points.ndim != 2 or points.shape[1] != 3:
            raise ValueError(f"Streamline points must be N x 3, got shape {points.shape}")
        if points.shape[0] < 2:
            raise ValueError(f"Streamline needs at least 2 points, got {points.shape[0]}")
        points.flags.writeable = False
        object.__setattr__(self, "points", points)

        if self.seed_index is not None:
            seed = int(self.seed_index)
            if not 0 <= seed < points.shape[0]:
                raise ValueError(f"Seed index {seed} outside streamline of {len(points)} points")
            object.__setattr__(self, "seed_index", seed)

        if self.scalars is not None:
            scalars = np.array(self.scalars, dtype=np.float64)
            if scalars.shape != (points.shape[0],):
                raise ValueError(
                    f"Scalars must have one value per point ({points.shape[0]}), "
                    f"got shape {scalars.shape}"
                )
            scalars.flags.writeable = False
            object.__setattr__(self, "scalars", scalars)

    def __len__(self) -> int:
        return self.points.shape[0]

    @property
    def step_lengths(self) -> np.ndarray:
        """Euclidean distance between consecutive points."""
        return np.linalg.norm(np.diff(self.points, axis=0), axis=1)

    @property
    def length(self) -> float:
        """Arclength in mm."""
        return float(self.step_lengths.sum())

    @property
    def seed(self) -> int:
        """Seed vertex, falling back to the first point when unknown."""
        return 0 if self.seed_index is None else self.seed_index

    def segment(self, start: int, stop: int) -> Streamline:
        """
        Return the sub-streamline of points ``start`` to ``stop`` inclusive.

        The seed index is re-based onto the segment, or dropped if the seed
        lies outside it.
        """
        if not 0 <= start < stop < len(self):
            raise ValueError(f"Invalid segment [{start}, {stop}] for {len(self)} points")

        seed_index = None
        if self.seed_index is not None and start <= self.seed_index <= stop:
            seed_index = self.seed_index - start

        scalars = None if self.scalars is None else self.scalars[start : stop + 1]
        return Streamline(self.points[start : stop + 1], seed_index=seed_index, scalars=scalars)

    def with_points(self, points: np.ndarray) -> Streamline:
        """Same streamline (seed, scalars) with new coordinates, e.g. after warping."""
        return Streamline(points, seed_index=self.seed_index, scalars=self.scalars)

    def with_scalars(self, scalars: np.ndarray) -> Streamline:
        return Streamline(self.points, seed_index=self.seed_index, scalars=scalars)


class StreamlineSet:
    """
    Immutable collection of streamlines from one tractography run.

    Parameters
    ----------
    streamlines : iterable of Streamline
        Streamlines in the set.
    space : str, default="diffusion"
        Name of the space the coordinates are expressed in.

    Examples
    --------
    >>> sl = Streamline(np.array([[0, 0, 0], [0, 0, 5.0]]))
    >>> tracts = StreamlineSet([sl], space="diffusion")
    >>> tracts.lengths()
    array([5.])
    """

    def __init__(self, streamlines: Iterable[Streamline] = (), space: str = "diffusion"):
        self._streamlines = tuple(streamlines)
        self.space = space

    def __len__(self) -> int:
        return len(self._streamlines)

    def __iter__(self) -> Iterator[Streamline]:
        return iter(self._streamlines)

    def __getitem__(self, index: int) -> Streamline:
        return self._streamlines[index]

    def __repr__(self) -> str:
        return f"StreamlineSet(n_streamlines={len(self)}, space='{self.space}')"

    def lengths(self) -> np.ndarray:
        """Arclength of every streamline in mm."""
        return np.array([s.length for s in self._streamlines], dtype=np.float64)

    def total_points(self) -> int:
        return int(sum(len(s) for s in self._streamlines))

    def filter(self, predicate: Callable[[Streamline], bool]) -> StreamlineSet:
        """New set with the streamlines for which ``predicate`` is true."""
        return StreamlineSet((s for s in self._streamlines if predicate(s)), space=self.space)

    def map(
        self,
        func: Callable[[Streamline], Streamline | None],
        space: str | None = None,
    ) -> StreamlineSet:
        """New set from ``func`` applied to each streamline; ``None`` results are dropped."""
        mapped = (func(s) for s in self._streamlines)
        return StreamlineSet(
            (s for s in mapped if s is not None), space=space or self.space
        )

    def all_points(self) -> np.ndarray:
        """All vertices stacked into one (M, 3) array."""
        if not self._streamlines:
            return np.zeros((0, 3))
        return np.concatenate([s.points for s in self._streamlines], axis=0)

    def seed_points(self) -> np.ndarray:
        """Seed vertex of every streamline, shape (N, 3)."""
        if not self._streamlines:
            return np.zeros((0, 3))
        return np.array([s.points[s.seed] for s in self._streamlines])

    def to_tractogram(self) -> nib.streamlines.Tractogram:
        """Convert to a nibabel Tractogram in RAS+ mm."""
        seeds = np.array(
            [[-1 if s.seed_index is None else s.seed_index] for s in self._streamlines],
            dtype=np.float32,
        ).reshape(-1, 1)
        return nib.streamlines.Tractogram(
            [s.points.astype(np.float32) for s in self._streamlines],
            data_per_streamline={"seed_index": seeds},
            affine_to_rasmm=np.eye(4),
        )

    def save(self, path: str | Path, reference: VolumeGrid | None = None) -> Path:
        """
        Save to a ``.tck`` or ``.trk`` file.

        Parameters
        ----------
        path : str or Path
            Output file. The format follows the extension.
        reference : VolumeGrid, optional
            Grid defining the TrackVis header; required for ``.trk``.
        """
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        tractogram = self.to_tractogram()

        if path.suffix == ".trk":
            if reference is None:
                raise ValueError("Saving .trk streamlines requires a reference grid")
            header = {
                nib.streamlines.Field.VOXEL_TO_RASMM: reference.affine,
                nib.streamlines.Field.VOXEL_SIZES: np.array(reference.zooms, dtype=np.float32),
                nib.streamlines.Field.DIMENSIONS: np.array(reference.shape, dtype=np.int16),
                nib.streamlines.Field.VOXEL_ORDER: "".join(nib.aff2axcodes(reference.affine)),
            }
            nib.streamlines.save(tractogram, str(path), header=header)
        else:
            # TCK has no per-streamline data; seed indices are dropped
            tractogram.data_per_streamline.clear()
            nib.streamlines.save(tractogram, str(path))

        logger.debug(f"Saved {len(self)} streamlines to {path}")
        return path


def load_streamlines(path: str | Path, space: str = "diffusion") -> StreamlineSet:
    """
    Load streamlines from a ``.tck`` or ``.trk`` file.

    Seed indices are restored when the file carries a ``seed_index``
    per-streamline field.

    Raises
    ------
    MissingInputError
        If the file does not exist.
    """
    path = Path(path)
    if not path.exists():
        raise MissingInputError(path, "streamline file")

    tractogram = nib.streamlines.load(str(path)).tractogram
    seeds = None
    if "seed_index" in tractogram.data_per_streamline:
        seeds = tractogram.data_per_streamline["seed_index"]

    streamlines = []
    for i, points in enumerate(tractogram.streamlines):
        if len(points) < 2:
            continue
        seed_index = None
        if seeds is not None and seeds[i][0] >= 0:
            seed_index = int(seeds[i][0])
        streamlines.append(Streamline(np.asarray(points), seed_index=seed_index))

    logger.debug(f"Loaded {len(streamlines)} streamlines from {path}")
    return StreamlineSet(streamlines, space=space)
