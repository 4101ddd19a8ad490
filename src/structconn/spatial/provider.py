"""
Transform providers.

A TransformProvider hands out the transform chain between two named spaces.
The registration that produced the transforms happens elsewhere; providers
only locate and load its output.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from collections.abc import Callable, Sequence
from pathlib import Path

from structconn.core.exceptions import MissingInputError, TransformNotAvailableError
from structconn.spatial.transform import (
    AffineLink,
    DisplacementFieldLink,
    TransformChain,
    TransformLink,
)

logger = logging.getLogger(__name__)

#: Suffixes of the files written by antsRegistration for an output root
ANTS_AFFINE_SUFFIX = "0GenericAffine.mat"
ANTS_WARP_SUFFIX = "1Warp.nii.gz"
ANTS_INVERSE_WARP_SUFFIX = "1InverseWarp.nii.gz"


class TransformProvider(ABC):
    """Source of transform chains between named spaces."""

    @abstractmethod
    def chain(self, source_space: str, target_space: str) -> TransformChain:
        """
        Return the chain mapping ``source_space`` (moving) to ``target_space``.

        Raises
        ------
        TransformNotAvailableError
            If no transform between the spaces is known.
        MissingInputError
            If a transform file is missing.
        """

    def available(self) -> list[tuple[str, str]]:
        """Space pairs this provider can serve."""
        return []


class StaticTransformProvider(TransformProvider):
    """Provider serving chains built in memory, e.g. from known affines."""

    def __init__(self, chains: dict[tuple[str, str], Sequence[TransformLink]] | None = None):
        self._chains: dict[tuple[str, str], tuple[TransformLink, ...]] = {}
        for (source, target), links in (chains or {}).items():
            self.register(source, target, links)

    def register(
        self, source_space: str, target_space: str, links: Sequence[TransformLink]
    ) -> None:
        self._chains[(source_space, target_space)] = tuple(links)

    def available(self) -> list[tuple[str, str]]:
        return sorted(self._chains)

    def chain(self, source_space: str, target_space: str) -> TransformChain:
        try:
            links = self._chains[(source_space, target_space)]
        except KeyError as e:
            raise TransformNotAvailableError(
                source_space, target_space, f"Registered pairs: {self.available()}"
            ) from e
        return TransformChain(links, source_space, target_space)


class FileTransformProvider(TransformProvider):
    """
    Provider loading ANTs transform files from disk.

    Files are checked when registered and loaded when a chain is first
    requested.

    Examples
    --------
    >>> provider = FileTransformProvider()
    >>> provider.register_ants_root("diffusion", "session", "/data/sub01/tp1/dtToT1_")
    >>> provider.register_composed(
    ...     "diffusion",
    ...     "template",
    ...     image_warp="/data/sub01/tp1/dtToSSTComposedWarp.nii.gz",
    ...     point_warp="/data/sub01/tp1/dtToSSTComposedInverseWarp.nii.gz",
    ... )
    >>> chain = provider.chain("diffusion", "template")
    """

    def __init__(self):
        self._loaders: dict[tuple[str, str], Callable[[], list[TransformLink]]] = {}
        self._cache: dict[tuple[str, str], TransformChain] = {}

    def available(self) -> list[tuple[str, str]]:
        return sorted(self._loaders)

    def register_ants_root(self, source_space: str, target_space: str, root: str | Path) -> None:
        """
        Register the output of ``antsRegistration`` with output prefix ``root``.

        ``{root}0GenericAffine.mat`` is required. ``{root}1Warp.nii.gz`` is
        optional; when present, ``{root}1InverseWarp.nii.gz`` is required so
        points can be mapped into the reference space.

        Raises
        ------
        MissingInputError
            If a required file does not exist.
        """
        root = str(root)
        affine = Path(root + ANTS_AFFINE_SUFFIX)
        warp = Path(root + ANTS_WARP_SUFFIX)
        inverse_warp = Path(root + ANTS_INVERSE_WARP_SUFFIX)

        _require_file(affine, "affine transform")
        has_warp = warp.exists()
        if has_warp:
            _require_file(inverse_warp, "inverse warp")

        def load() -> list[TransformLink]:
            links: list[TransformLink] = []
            if has_warp:
                links.append(DisplacementFieldLink.from_files(warp, inverse_warp))
            links.append(AffineLink.from_file(affine))
            return links

        self._loaders[(source_space, target_space)] = load
        logger.debug(
            f"Registered {source_space} -> {target_space}: {affine.name}"
            + (f" + {warp.name}" if has_warp else "")
        )

    def register_composed(
        self,
        source_space: str,
        target_space: str,
        image_warp: str | Path | None = None,
        point_warp: str | Path | None = None,
    ) -> None:
        """
        Register single composed displacement fields.

        Parameters
        ----------
        image_warp : str or Path, optional
            Composed warp for resampling images into the reference space.
        point_warp : str or Path, optional
            Composed warp for moving points into the reference space.
        """
        if image_warp is None and point_warp is None:
            raise ValueError("At least one of image_warp and point_warp is required")
        warps = ((image_warp, "composed image warp"), (point_warp, "composed point warp"))
        for path, description in warps:
            if path is not None:
                _require_file(Path(path), description)

        def load() -> list[TransformLink]:
            return [DisplacementFieldLink.from_files(image_warp, point_warp)]

        self._loaders[(source_space, target_space)] = load

    def chain(self, source_space: str, target_space: str) -> TransformChain:
        key = (source_space, target_space)
        if key in self._cache:
            return self._cache[key]
        if key not in self._loaders:
            raise TransformNotAvailableError(
                source_space, target_space, f"Registered pairs: {self.available()}"
            )

        chain = TransformChain(self._loaders[key](), source_space, target_space)
        logger.info(f"Loaded {chain!r}")
        self._cache[key] = chain
        return chain


def _require_file(path: Path, description: str) -> None:
    if not path.exists():
        raise MissingInputError(path, description)
