"""Geometric transforms between diffusion and reference spaces.

Transform chains follow the ANTs convention: links are listed in the order
they are passed to ``antsApplyTransforms -t`` when resampling an image from
the moving (diffusion) space onto a reference grid. The first link acts on
the reference point first, so ``x_moving = Lk(...L2(L1(x)))`` (for ``-t 1Warp
-t 0GenericAffine.mat`` the warp, which lives on the reference grid, comes
before the affine). Moving points the other way, from diffusion space into
the reference space, therefore needs the *inverse* of every link, applied in
reverse order.

Links wrap nitransforms objects; mapping and resampling are delegated to
``nitransforms.manip.TransformChain`` and ``nitransforms.resampling.apply``.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from collections.abc import Sequence
from pathlib import Path

import numpy as np
from nitransforms import linear as nitl
from nitransforms import manip as nitm
from nitransforms import nonlinear as nitnl
from nitransforms.base import TransformBase
from nitransforms.resampling import apply as apply_transform
from tqdm import tqdm

from structconn.core.exceptions import MissingInputError, TransformNotAvailableError
from structconn.core.streamlines import StreamlineSet
from structconn.core.volume import VolumeGrid

logger = logging.getLogger(__name__)

TO_REFERENCE = "to_reference"
TO_MOVING = "to_moving"
DIRECTIONS = (TO_REFERENCE, TO_MOVING)


class TransformLink(ABC):
    """One geometric transform in a chain.

    ``to_moving`` maps reference-side points to the moving side (the
    direction used to pull image intensities). ``to_reference`` maps moving
    points back to the reference side.
    """

    name: str = "transform"
    source_files: tuple[str, ...] = ()

    @abstractmethod
    def as_nitransform(self, direction: str) -> TransformBase | None:
        """nitransforms object mapping points in ``direction``, or None if unavailable."""

    def supports(self, direction: str) -> bool:
        _check_direction(direction)
        return self.as_nitransform(direction) is not None

    def map_forward(self, points: np.ndarray) -> np.ndarray:
        """Map reference points (N x 3, mm) to moving space."""
        return _map(self._require(TO_MOVING), points)

    def map_inverse(self, points: np.ndarray) -> np.ndarray:
        """Map moving points (N x 3, mm) to reference space."""
        return _map(self._require(TO_REFERENCE), points)

    def _require(self, direction: str) -> TransformBase:
        xfm = self.as_nitransform(direction)
        if xfm is None:
            kind = "forward" if direction == TO_MOVING else "inverse"
            raise TransformNotAvailableError(
                "reference" if direction == TO_MOVING else "moving",
                "moving" if direction == TO_MOVING else "reference",
                f"'{self.name}' has no {kind} transform",
            )
        return xfm


class AffineLink(TransformLink):
    """Affine transform backed by a nitransforms Affine.

    Args:
        matrix: 4x4 RAS+ matrix mapping reference points to moving points,
            or a ``nitransforms.linear.Affine``
        name: Identifier for logs and provenance
    """

    def __init__(self, matrix: np.ndarray | nitl.Affine, name: str = "affine"):
        if isinstance(matrix, nitl.Affine):
            self._affine = matrix
        else:
            matrix = np.asarray(matrix, dtype=np.float64)
            if matrix.shape != (4, 4):
                raise ValueError(f"Affine matrix must be 4x4, got shape {matrix.shape}")
            self._affine = nitl.Affine(matrix)
        self.name = name
        self.source_files = ()

    @classmethod
    def from_file(cls, path: str | Path) -> AffineLink:
        """Load an ITK/ANTs affine (e.g. ``0GenericAffine.mat``)."""
        path = Path(path)
        if not path.exists():
            raise MissingInputError(path, "affine transform")
        xfm = nitl.load(str(path), fmt="itk")
        link = cls(xfm, name=path.name)
        link.source_files = (str(path),)
        return link

    @property
    def matrix(self) -> np.ndarray:
        return np.asarray(self._affine.matrix)

    def as_nitransform(self, direction: str) -> nitl.Affine:
        return self._affine if direction == TO_MOVING else ~self._affine


class DisplacementFieldLink(TransformLink):
    """Dense displacement field transform.

    ANTs writes the two directions of a warp to separate files
    (``1Warp.nii.gz`` and ``1InverseWarp.nii.gz``), so each direction is
    its own ``nitransforms.nonlinear.DenseFieldTransform``. Points outside a
    field's grid are left unchanged.

    Args:
        forward: Field mapping reference points to moving space, either a
            VolumeGrid of RAS+ displacements with shape (X, Y, Z, 3) or a
            DenseFieldTransform
        inverse: Field mapping moving points to reference space
        name: Identifier for logs and provenance
    """

    def __init__(
        self,
        forward: VolumeGrid | nitnl.DenseFieldTransform | None = None,
        inverse: VolumeGrid | nitnl.DenseFieldTransform | None = None,
        name: str = "displacement",
    ):
        if forward is None and inverse is None:
            raise ValueError("A displacement link needs at least one field")
        self.forward = _as_field_transform(forward)
        self.inverse = _as_field_transform(inverse)
        self.name = name
        self.source_files = ()

    @classmethod
    def from_files(
        cls, forward: str | Path | None = None, inverse: str | Path | None = None
    ) -> DisplacementFieldLink:
        """Load ANTs displacement fields with nitransforms (LPS is converted to RAS)."""
        fields = []
        files = []
        for path in (forward, inverse):
            if path is None:
                fields.append(None)
                continue
            path = Path(path)
            if not path.exists():
                raise MissingInputError(path, "displacement field")
            fields.append(nitnl.DenseFieldTransform.from_filename(str(path), fmt="itk"))
            files.append(str(path))

        link = cls(fields[0], fields[1], name=Path(files[0]).name)
        link.source_files = tuple(files)
        return link

    def as_nitransform(self, direction: str) -> nitnl.DenseFieldTransform | None:
        return self.forward if direction == TO_MOVING else self.inverse


def _as_field_transform(field):
    if field is None or isinstance(field, nitnl.DenseFieldTransform):
        return field
    if field.data.ndim != 4 or field.data.shape[3] != 3:
        raise ValueError(
            f"Displacement field must have shape (X, Y, Z, 3), got {field.data.shape}"
        )
    return nitnl.DenseFieldTransform(field.to_nifti(dtype=np.float32), is_deltas=True)


def _map(xfm: TransformBase, points: np.ndarray) -> np.ndarray:
    points = np.atleast_2d(np.asarray(points, dtype=np.float64))
    return np.asarray(xfm.map(points), dtype=np.float64)


class TransformChain:
    """
    Ordered chain of transforms from a moving space to a reference space.

    Parameters
    ----------
    links : sequence of TransformLink
        Links in image-resampling (``antsApplyTransforms -t``) order.
    source_space : str
        Moving space (where streamlines are tracked), e.g. "diffusion".
    target_space : str
        Reference space, e.g. "session" or "template".

    Raises
    ------
    TransformNotAvailableError
        If ``links`` is empty.
    """

    def __init__(self, links: Sequence[TransformLink], source_space: str, target_space: str):
        if not links:
            raise TransformNotAvailableError(source_space, target_space, "Transform chain is empty")
        self.links = tuple(links)
        self.source_space = source_space
        self.target_space = target_space

    def __repr__(self) -> str:
        names = ", ".join(link.name for link in self.links)
        return f"TransformChain({self.source_space} -> {self.target_space}: [{names}])"

    @property
    def source_files(self) -> list[str]:
        return [f for link in self.links for f in link.source_files]

    def supports(self, direction: str) -> bool:
        """Whether every link can map points in ``direction``."""
        _check_direction(direction)
        return all(link.supports(direction) for link in self.links)

    def require(self, direction: str) -> None:
        """
        Check that the chain can be applied in ``direction``.

        Raises
        ------
        TransformNotAvailableError
            If a link lacks the transform for that direction (e.g. a warp
            loaded without its inverse).
        """
        _check_direction(direction)
        missing = [link.name for link in self.links if not link.supports(direction)]
        if missing:
            use = "resampling images" if direction == TO_MOVING else "mapping streamlines"
            raise TransformNotAvailableError(
                self.source_space,
                self.target_space,
                f"No {direction} transform for {use} in {missing}",
            )

    def as_nitransform(self, direction: str = TO_REFERENCE) -> nitm.TransformChain:
        """
        The chain as a ``nitransforms.manip.TransformChain`` for ``direction``.

        ``to_moving`` keeps the link order; ``to_reference`` takes the
        inverse of every link in reverse order.
        """
        self.require(direction)
        links = self.links if direction == TO_MOVING else tuple(reversed(self.links))
        return nitm.TransformChain([link.as_nitransform(direction) for link in links])

    def map_points(self, points: np.ndarray, direction: str = TO_REFERENCE) -> np.ndarray:
        """
        Map world points (N x 3, mm) through the chain.

        ``to_reference`` moves diffusion-space points into the reference
        space; ``to_moving`` is the image-resampling direction.
        """
        return _map(self.as_nitransform(direction), points)

    def resample_image(
        self, volume: VolumeGrid, reference: VolumeGrid, order: int = 1
    ) -> VolumeGrid:
        """
        Resample a moving-space volume onto the reference grid.

        4D volumes (tensor components) are resampled one component at a
        time; no reorientation is applied.

        Parameters
        ----------
        volume : VolumeGrid
            Volume in the moving space.
        reference : VolumeGrid
            Grid to resample onto.
        order : int, default=1
            Spline order (0 = nearest neighbour, 1 = trilinear).

        Returns
        -------
        VolumeGrid
            Volume on the reference grid.
        """
        xfm = self.as_nitransform(TO_MOVING)
        reference_img = VolumeGrid(
            np.zeros(reference.shape, dtype=np.uint8), reference.affine
        ).to_nifti()

        data = np.asarray(volume.data)
        if order > 0:
            data = data.astype(np.float32)
        channels = data.reshape(data.shape[:3] + (-1,))

        resampled = []
        for c in range(channels.shape[3]):
            img = VolumeGrid(channels[..., c], volume.affine).to_nifti()
            moved = apply_transform(
                xfm, img, reference=reference_img, order=order, mode="constant", cval=0.0
            )
            resampled.append(np.asarray(moved.dataobj))

        out = np.stack(resampled, axis=-1).reshape(reference.shape + data.shape[3:])
        logger.debug(f"Resampled {volume!r} onto {reference!r} through {self!r}")
        return reference.with_data(out, name=volume.name)

    def precompute(
        self, grid: VolumeGrid, direction: str = TO_REFERENCE, padding: int = 4
    ) -> TransformChain:
        """
        Sample the composed point mapping once on ``grid``.

        The result is a single deformation-field link, so mapping a point
        costs one field lookup however long the chain is. ``grid`` should
        cover the region the points live in (the diffusion grid for
        ``to_reference``); it is extended by ``padding`` voxels on every
        side.

        Returns
        -------
        TransformChain
            Chain between the same spaces that supports ``direction`` only.
        """
        self.require(direction)
        domain = _padded_grid(grid, padding)
        voxels = np.indices(domain.shape).reshape(3, -1).T
        mapped = self.map_points(domain.voxel_to_world(voxels), direction)
        deformation = domain.with_data(
            mapped.reshape(domain.shape + (3,)).astype(np.float32), name=f"composed_{direction}"
        )
        field = nitnl.DenseFieldTransform(deformation.to_nifti(), is_deltas=False)

        if direction == TO_REFERENCE:
            link = DisplacementFieldLink(inverse=field, name="composed point warp")
        else:
            link = DisplacementFieldLink(forward=field, name="composed image warp")
        link.source_files = tuple(self.source_files)

        logger.info(f"Precomputed {direction} warp for {self!r} on a {domain.shape} grid")
        return TransformChain([link], self.source_space, self.target_space)


def _padded_grid(grid: VolumeGrid, padding: int) -> VolumeGrid:
    shift = np.eye(4)
    shift[:3, 3] = -padding
    shape = tuple(n + 2 * padding for n in grid.shape)
    return VolumeGrid(np.zeros(shape, dtype=np.uint8), grid.affine @ shift)


def _check_direction(direction: str) -> None:
    if direction not in DIRECTIONS:
        raise ValueError(f"direction must be one of {DIRECTIONS}, got '{direction}'")


class StreamlineTransformer:
    """
    Map streamlines between spaces vertex by vertex.

    Parameters
    ----------
    batch_size : int, default=10000
        Number of streamlines whose points are mapped in one call.
    show_progress : bool, default=False
        Display a tqdm progress bar.
    """

    def __init__(self, batch_size: int = 10000, show_progress: bool = False):
        self.batch_size = batch_size
        self.show_progress = show_progress

    def transform(
        self, streamlines: StreamlineSet, chain: TransformChain, direction: str = TO_REFERENCE
    ) -> StreamlineSet:
        """
        Transform every vertex of every streamline.

        Vertex order, seed indices and scalars are preserved.

        Parameters
        ----------
        streamlines : StreamlineSet
            Streamlines in the chain's source space (``to_reference``) or
            target space (``to_moving``).
        chain : TransformChain
            Transform chain; precompute it when mapping many streamlines.
        direction : str, default="to_reference"
            ``to_reference`` or ``to_moving``.

        Returns
        -------
        StreamlineSet
            New set in the destination space.
        """
        xfm = chain.as_nitransform(direction)
        space = chain.target_space if direction == TO_REFERENCE else chain.source_space

        mapped = []
        batches = range(0, len(streamlines), self.batch_size)
        for start in tqdm(batches, desc="Transforming streamlines", disable=not self.show_progress):
            stop = min(start + self.batch_size, len(streamlines))
            batch = [streamlines[i] for i in range(start, stop)]
            points = _map(xfm, np.concatenate([s.points for s in batch]))
            offsets = np.cumsum([0] + [len(s) for s in batch])
            mapped.extend(
                s.with_points(points[offsets[i] : offsets[i + 1]]) for i, s in enumerate(batch)
            )

        logger.info(f"Transformed {len(mapped)} streamlines {streamlines.space} -> {space}")
        return StreamlineSet(mapped, space=space)
