"""
Graph node assignment.

A parcellation is mapped onto the cortical mask: voxels that already carry a
node label keep it, and labels are propagated through the mask to cover the
voxels that have none (typically the boundary voxels recovered when the
cortical mask was built). Any parcellation can be used, so several label
systems share one WM/cortex boundary.
"""

from __future__ import annotations

import itertools
import logging

import numpy as np
from scipy import ndimage

from structconn.core.config import PipelineConfig
from structconn.core.exceptions import DegenerateMaskError
from structconn.core.labels import LabelDefinition
from structconn.core.volume import VolumeGrid, check_same_geometry

logger = logging.getLogger(__name__)


def neighbour_offsets(face_only: bool) -> np.ndarray:
    """Offsets of the 6 face neighbours, or of all 26 neighbours."""
    offsets = [
        offset
        for offset in itertools.product((-1, 0, 1), repeat=3)
        if any(offset) and (not face_only or sum(map(abs, offset)) == 1)
    ]
    return np.array(offsets, dtype=np.intp)


def _majority_label(neighbours: np.ndarray) -> np.ndarray:
    """
    Most frequent non-zero value per row; ties go to the smallest label.

    Rows without any non-zero value give 0.
    """
    labelled = neighbours > 0
    # counts[r, k]: how often neighbours[r, k] occurs in row r
    counts = (neighbours[:, :, None] == neighbours[:, None, :]).sum(axis=2)
    counts = np.where(labelled, counts, 0)
    best = counts.max(axis=1)

    winners = np.where(labelled & (counts == best[:, None]), neighbours, np.iinfo(np.int32).max)
    majority = winners.min(axis=1)
    return np.where(best > 0, majority, 0).astype(np.int32)


class GraphNodeAssigner:
    """
    Propagate a parcellation onto the cortical mask.

    Parameters
    ----------
    max_iterations : int, default=100
        Maximum number of propagation passes. Each pass grows labelled
        regions by one voxel into the unlabelled part of the mask.
    face_neighbours_only : bool, default=True
        Grow labels through the 6-neighbourhood instead of the 26-neighbourhood.
        Every grown voxel then shares a face with its region, and a label
        cannot pass through an edge or corner contact. Labelled voxels are
        never relabelled; no simple-point (digital topology) test is made.

    Examples
    --------
    >>> assigner = GraphNodeAssigner()
    >>> graph_nodes, diff_mask = assigner.assign(parcellation, label_def, cortical_mask)
    """

    def __init__(self, max_iterations: int = 100, face_neighbours_only: bool = True):
        self.max_iterations = max_iterations
        self.face_neighbours_only = face_neighbours_only

    @classmethod
    def from_config(cls, config: PipelineConfig) -> GraphNodeAssigner:
        return cls(
            max_iterations=config.propagation_iterations,
            face_neighbours_only=config.face_neighbours_only,
        )

    def get_parameters(self) -> dict:
        return {
            "max_iterations": self.max_iterations,
            "face_neighbours_only": self.face_neighbours_only,
        }

    def assign(
        self,
        target_labels: VolumeGrid,
        label_definition: LabelDefinition,
        cortical_mask: VolumeGrid,
    ) -> tuple[VolumeGrid, VolumeGrid]:
        """
        Label every cortical mask voxel with a node from ``label_definition``.

        Parameters
        ----------
        target_labels : VolumeGrid
            Parcellation on the same grid as the mask.
        label_definition : LabelDefinition
            Labels that become graph nodes.
        cortical_mask : VolumeGrid
            Final cortical mask.

        Returns
        -------
        graph_nodes : VolumeGrid
            Node labels inside the mask, 0 elsewhere.
        diff_mask : VolumeGrid
            QC image: 1 = labelled in the parcellation only, 2 = graph node
            only, 3 = both.

        Raises
        ------
        DegenerateMaskError
            If the mask is empty or holds no node label to propagate from.
        """
        check_same_geometry(target_labels, cortical_mask)

        mask = np.asarray(cortical_mask.data) > 0
        if not mask.any():
            raise DegenerateMaskError("cortical_mask", "nothing to assign graph nodes to")

        original_nodes = label_definition.node_mask(np.asarray(target_labels.data))
        labels = np.where(mask & original_nodes, np.asarray(target_labels.data), 0).astype(np.int32)

        if not labels.any():
            raise DegenerateMaskError(
                "graph_nodes",
                f"no label from '{label_definition.name}' overlaps the cortical mask",
            )

        n_seeded = int(np.count_nonzero(labels))
        labels, n_passes = self._propagate(labels, mask)

        unreached = mask & (labels == 0)
        if unreached.any():
            logger.warning(
                f"{int(unreached.sum())} cortical voxels are not connected to any labelled "
                f"region; assigning the nearest label"
            )
            labels = _fill_nearest(labels, unreached, cortical_mask.zooms)

        logger.info(
            f"Graph nodes: {n_seeded} labelled voxels propagated to {int(mask.sum())} mask voxels "
            f"in {n_passes} passes"
        )

        diff = 2 * mask.astype(np.uint8) + original_nodes.astype(np.uint8)
        return (
            cortical_mask.with_data(labels, name="GraphNodes"),
            cortical_mask.with_data(diff, name="CorticalLabelSystemDiffMask"),
        )

    def _propagate(self, labels: np.ndarray, mask: np.ndarray) -> tuple[np.ndarray, int]:
        labels = labels.copy()
        offsets = neighbour_offsets(face_only=self.face_neighbours_only)
        n_passes = 0

        for _ in range(self.max_iterations):
            unlabelled = np.nonzero(mask & (labels == 0))
            if unlabelled[0].size == 0:
                break

            padded = np.pad(labels, 1)
            neighbours = np.stack(
                [
                    padded[unlabelled[0] + 1 + dx, unlabelled[1] + 1 + dy, unlabelled[2] + 1 + dz]
                    for dx, dy, dz in offsets
                ],
                axis=1,
            )
            assigned = _majority_label(neighbours)
            if not assigned.any():
                break

            # Synchronous update: every voxel in this pass sees the previous pass only
            labels[unlabelled] = assigned
            n_passes += 1

        return labels, n_passes


def _fill_nearest(labels: np.ndarray, targets: np.ndarray, zooms) -> np.ndarray:
    _, nearest = ndimage.distance_transform_edt(labels == 0, sampling=zooms, return_indices=True)
    filled = labels.copy()
    filled[targets] = labels[tuple(index[targets] for index in nearest)]
    return filled
