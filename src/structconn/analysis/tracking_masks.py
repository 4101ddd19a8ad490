"""
Tracking masks derived from an anatomical label volume and an FA map.

The label volume provides a cortical and a white-matter (WM) mask. Strongly
anisotropic voxels next to the labelled WM are added to it, which places the
WM/cortex boundary where tractography can actually reach. Streamlines are
allowed one voxel beyond the final WM mask. Cortical voxels in that margin
become the targets of the connectivity graph.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

import numpy as np

from structconn.analysis.morphology import dilate, erode, keep_large_components
from structconn.core.config import PipelineConfig
from structconn.core.exceptions import DegenerateMaskError
from structconn.core.labels import LabelDefinition
from structconn.core.volume import VolumeGrid, check_same_geometry

logger = logging.getLogger(__name__)

#: Width (voxels) of the margin around WM that streamlines may enter
BOUNDARY_WIDTH = 1


@dataclass(frozen=True, eq=False)
class TrackingMasks:
    """
    Masks produced by :class:`MorphologicalMaskBuilder`.

    Attributes
    ----------
    wm_mask : VolumeGrid
        Final white-matter mask.
    cortical_mask : VolumeGrid
        Final cortical mask, disjoint from ``wm_mask``.
    exclusion_mask : VolumeGrid
        Voxels where streamlines are terminated (everything outside the WM
        mask dilated by one voxel).
    cortical_mask_edits : VolumeGrid
        QC image: 1 = only in the labelled cortex, 2 = only in the final
        cortical mask, 3 = in both.
    cortical_label_mask : VolumeGrid
        Cortex as given by the label volume.
    wm_label_mask : VolumeGrid
        WM as given by the label volume.
    """

    wm_mask: VolumeGrid
    cortical_mask: VolumeGrid
    exclusion_mask: VolumeGrid
    cortical_mask_edits: VolumeGrid
    cortical_label_mask: VolumeGrid
    wm_label_mask: VolumeGrid

    def summary(self) -> dict[str, int]:
        """Voxel counts per mask."""
        return {
            "wm_label_voxels": int(np.count_nonzero(self.wm_label_mask.data)),
            "wm_voxels": int(np.count_nonzero(self.wm_mask.data)),
            "cortical_label_voxels": int(np.count_nonzero(self.cortical_label_mask.data)),
            "cortical_voxels": int(np.count_nonzero(self.cortical_mask.data)),
            "exclusion_voxels": int(np.count_nonzero(self.exclusion_mask.data)),
        }


class MorphologicalMaskBuilder:
    """
    Derive WM, cortical and exclusion masks for tractography.

    Parameters
    ----------
    fa_threshold : float, default=0.25
        FA at or above which a voxel is a WM candidate.
    dilation_radius : int, default=2
        Candidates must lie within this many voxels of the labelled WM.
    erosion_radius : int, default=1
        Candidates must lie inside the labelled GM+WM eroded by this radius.
    min_cluster_voxels_fa : int, default=10000
        FA clusters smaller than this are treated as noise.
    min_cluster_voxels_final : int, default=20000
        WM components smaller than this are dropped from the final mask.

    Notes
    -----
    Candidate WM voxels are those with high FA that lie close to the labelled
    WM and deep inside the labelled tissue. Only candidates that carry a
    cortical label are reclaimed as WM, and the cortical mask is the labelled
    cortex minus the final WM. A one-voxel shell around the WM is the
    tracking margin. Cortical voxels in that shell that touch the remaining
    cortex are added back, so cortex next to the WM never ends up as an
    unreachable hole.

    Examples
    --------
    >>> builder = MorphologicalMaskBuilder(fa_threshold=0.25)
    >>> masks = builder.build(labels, cortical_def, wm_def, fa)
    >>> masks.cortical_mask.data.sum()
    """

    def __init__(
        self,
        fa_threshold: float = 0.25,
        dilation_radius: int = 2,
        erosion_radius: int = 1,
        min_cluster_voxels_fa: int = 10000,
        min_cluster_voxels_final: int = 20000,
    ):
        self.fa_threshold = fa_threshold
        self.dilation_radius = dilation_radius
        self.erosion_radius = erosion_radius
        self.min_cluster_voxels_fa = min_cluster_voxels_fa
        self.min_cluster_voxels_final = min_cluster_voxels_final

    @classmethod
    def from_config(cls, config: PipelineConfig) -> MorphologicalMaskBuilder:
        return cls(
            fa_threshold=config.mask_fa_threshold,
            dilation_radius=config.wm_dilation_radius,
            erosion_radius=config.erosion_radius,
            min_cluster_voxels_fa=config.min_cluster_voxels_fa,
            min_cluster_voxels_final=config.min_cluster_voxels_final,
        )

    def get_parameters(self) -> dict:
        return {
            "fa_threshold": self.fa_threshold,
            "dilation_radius": self.dilation_radius,
            "erosion_radius": self.erosion_radius,
            "min_cluster_voxels_fa": self.min_cluster_voxels_fa,
            "min_cluster_voxels_final": self.min_cluster_voxels_final,
        }

    def build(
        self,
        label_volume: VolumeGrid,
        cortical_labels: LabelDefinition,
        wm_labels: LabelDefinition,
        anisotropy: VolumeGrid,
        brain_mask: VolumeGrid | None = None,
    ) -> TrackingMasks:
        """
        Build the tracking masks.

        Parameters
        ----------
        label_volume : VolumeGrid
            Integer anatomical labels (e.g. joint label fusion output).
        cortical_labels : LabelDefinition
            Labels that make up the cortex.
        wm_labels : LabelDefinition
            Labels that make up the cerebral WM.
        anisotropy : VolumeGrid
            FA on the same grid as ``label_volume``.
        brain_mask : VolumeGrid, optional
            Derived WM and cortical masks are restricted to this mask.

        Returns
        -------
        TrackingMasks

        Raises
        ------
        GeometryMismatchError
            If the inputs are not on the same grid.
        DegenerateMaskError
            If a required mask is empty.
        """
        volumes = [label_volume, anisotropy] + ([brain_mask] if brain_mask is not None else [])
        check_same_geometry(*volumes)

        labels = np.asarray(label_volume.data)
        brain = (
            np.asarray(brain_mask.data) > 0
            if brain_mask is not None
            else np.ones(label_volume.shape, dtype=bool)
        )

        cortical_label_mask = cortical_labels.node_mask(labels) & brain
        wm_label_mask = wm_labels.node_mask(labels) & brain
        _require(cortical_label_mask, "cortical_label_mask", "no voxel carries a cortical label")
        _require(wm_label_mask, "wm_label_mask", "no voxel carries a WM label")

        candidate = self._wm_candidates(
            np.asarray(anisotropy.data), cortical_label_mask, wm_label_mask, brain
        )

        wm_mask = keep_large_components(candidate | wm_label_mask, self.min_cluster_voxels_final)
        _require(
            wm_mask,
            "wm_mask",
            f"no WM component has at least {self.min_cluster_voxels_final} voxels",
        )

        cortical_tmp = cortical_label_mask & ~wm_mask

        wm_dilated = dilate(wm_mask, BOUNDARY_WIDTH)
        exclusion_mask = ~(wm_dilated & brain)
        _require(exclusion_mask, "exclusion_mask", "WM margin covers the whole grid")

        shell = wm_dilated & ~wm_mask
        holes = dilate(cortical_tmp, BOUNDARY_WIDTH) & shell
        cortical_mask = (cortical_tmp | holes) & brain
        _require(cortical_mask, "cortical_mask", "the final WM mask covers all cortex")

        edits = 2 * cortical_mask.astype(np.uint8) + cortical_label_mask.astype(np.uint8)

        logger.info(
            f"Tracking masks: WM {int(wm_label_mask.sum())} -> {int(wm_mask.sum())} voxels, "
            f"cortex {int(cortical_label_mask.sum())} -> {int(cortical_mask.sum())} voxels "
            f"({int(holes.sum())} boundary voxels recovered)"
        )

        return TrackingMasks(
            wm_mask=label_volume.with_data(wm_mask, name="WMMask"),
            cortical_mask=label_volume.with_data(cortical_mask, name="CorticalMask"),
            exclusion_mask=label_volume.with_data(exclusion_mask, name="ExclusionMask"),
            cortical_mask_edits=label_volume.with_data(edits, name="CorticalMaskEdits"),
            cortical_label_mask=label_volume.with_data(
                cortical_label_mask, name="CorticalLabelMask"
            ),
            wm_label_mask=label_volume.with_data(wm_label_mask, name="WMLabelMask"),
        )

    def _wm_candidates(
        self,
        fa: np.ndarray,
        cortical_label_mask: np.ndarray,
        wm_label_mask: np.ndarray,
        brain: np.ndarray,
    ) -> np.ndarray:
        """Cortically labelled voxels that should become WM on FA grounds."""
        if fa.ndim > 3:
            fa = fa.reshape(fa.shape[:3])
        fa_mask = (np.nan_to_num(fa, nan=0.0) >= self.fa_threshold) & brain

        # Edge-of-brain FA noise forms small clusters
        fa_mask = keep_large_components(fa_mask, self.min_cluster_voxels_fa)

        candidate = fa_mask & dilate(wm_label_mask, self.dilation_radius)
        candidate &= erode(wm_label_mask | cortical_label_mask, self.erosion_radius)
        candidate &= cortical_label_mask

        if not candidate.any():
            logger.warning(
                f"No cortical voxels with FA >= {self.fa_threshold} qualify as WM; "
                f"WM mask follows the labels"
            )
        else:
            logger.debug(f"{int(candidate.sum())} cortical voxels reassigned to WM by FA")
        return candidate


def _require(mask: np.ndarray, name: str, detail: str) -> None:
    if not np.any(mask):
        raise DegenerateMaskError(name, detail)


def build_tracking_extent(graph_nodes: VolumeGrid, exclusion_mask: VolumeGrid) -> VolumeGrid:
    """
    Label every voxel streamlines can reach (QC image).

    Reachable voxels (exclusion mask == 0) that are graph nodes keep their
    node label; all other reachable voxels get ``max(node label) + 1``.
    Unreachable voxels are 0. Viewing this image shows whether tracts can
    reach every node.

    Parameters
    ----------
    graph_nodes : VolumeGrid
        Graph node labels.
    exclusion_mask : VolumeGrid
        Streamline termination mask.

    Returns
    -------
    VolumeGrid
        Integer image named ``LabeledTractInclusionMask``.
    """
    check_same_geometry(graph_nodes, exclusion_mask)

    extent = np.asarray(exclusion_mask.data) == 0
    nodes = np.asarray(graph_nodes.data).astype(np.int32)
    boundary = np.where(extent, nodes, 0)
    wm_label = int(boundary.max()) + 1

    labeled = np.where(boundary > 0, boundary, np.where(extent, wm_label, 0)).astype(np.int32)
    return graph_nodes.with_data(labeled, name="LabeledTractInclusionMask")
