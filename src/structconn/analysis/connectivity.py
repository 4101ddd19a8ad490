"""
Streamline filtering and connectivity aggregation.

Streamlines in the reference space are truncated where they enter the
exclusion region. Their contacts with graph nodes are then found, and each
surviving streamline credits one edge of the graph. Each stage produces a new
StreamlineSet; counts of the streamlines dropped at every stage are kept for
reporting.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import dataclass, field
from typing import NamedTuple

import numpy as np
from scipy import ndimage
from tqdm import tqdm

from structconn.core.config import EDGE_AGGREGATIONS, PipelineConfig
from structconn.core.data_types import (
    COUNT,
    MEAN_LENGTH,
    ConnectivityMatrix,
    scalar_statistic_name,
)
from structconn.core.exceptions import ConfigurationError
from structconn.core.labels import LabelDefinition
from structconn.core.streamlines import Streamline, StreamlineSet
from structconn.core.volume import VolumeGrid, check_same_geometry

logger = logging.getLogger(__name__)


class Contact(NamedTuple):
    """A maximal run of consecutive vertices inside one graph node."""

    label: int
    start: int
    end: int


@dataclass(frozen=True, eq=False)
class AggregationResult:
    """
    Output of :meth:`StreamlineFilterAndAggregator.aggregate`.

    Attributes
    ----------
    count : ConnectivityMatrix
        Number of streamlines per edge.
    mean_length : ConnectivityMatrix
        Mean length (mm) of the credited streamline segments per edge.
    scalars : dict
        Scalar name to per-edge matrix of streamline median values.
    graph_streamlines : StreamlineSet
        Credited segments of the streamlines that contribute to the graph.
    filtered_streamlines : StreamlineSet
        All streamlines after exclusion truncation and the length check.
    stats : dict
        Number of streamlines entering and leaving each stage.
    """

    count: ConnectivityMatrix
    mean_length: ConnectivityMatrix
    scalars: dict[str, ConnectivityMatrix]
    graph_streamlines: StreamlineSet
    filtered_streamlines: StreamlineSet
    stats: dict[str, int] = field(default_factory=dict)

    def matrices(self) -> list[ConnectivityMatrix]:
        """All matrices: count, mean length, then scalars."""
        return [self.count, self.mean_length] + list(self.scalars.values())


def find_contacts(labels: np.ndarray) -> list[Contact]:
    """
    Runs of identical non-zero labels along a streamline.

    Parameters
    ----------
    labels : np.ndarray
        Node label at every vertex (0 = not in a node).

    Examples
    --------
    >>> find_contacts(np.array([5, 5, 0, 0, 7, 7, 7]))
    [Contact(label=5, start=0, end=1), Contact(label=7, start=4, end=6)]
    """
    labels = np.asarray(labels)
    if labels.size == 0:
        return []
    change = np.flatnonzero(np.diff(labels)) + 1
    starts = np.concatenate([[0], change])
    ends = np.concatenate([change - 1, [labels.size - 1]])
    return [
        Contact(int(labels[s]), int(s), int(e)) for s, e in zip(starts, ends) if labels[s] != 0
    ]


def first_contact_pair(contacts: list[Contact], seed: int) -> tuple[Contact, Contact] | None:
    """
    The nodes reached first when following the streamline out of its seed.

    If the seed lies inside a node, that node is one end and the nearest
    node with a different label is the other. Otherwise the nearest node on
    each side of the seed is used. When nodes lie on one side of the seed
    only, the two nearest distinct nodes on that side are used.

    Returns
    -------
    tuple of Contact or None
        Endpoint contacts ordered along the streamline, or None when fewer
        than two distinct nodes are touched.
    """

    def distance(contact: Contact) -> int:
        if contact.start <= seed <= contact.end:
            return 0
        return min(abs(contact.start - seed), abs(contact.end - seed))

    containing = [c for c in contacts if c.start <= seed <= c.end]
    before = sorted((c for c in contacts if c.end < seed), key=distance)
    after = sorted((c for c in contacts if c.start > seed), key=distance)

    if containing:
        first = containing[0]
        others = sorted(
            (c for c in after + before if c.label != first.label),
            key=lambda c: (distance(c), c.start < seed),
        )
        if not others:
            return None
        second = others[0]
    elif before and after:
        first, second = before[0], after[0]
    else:
        side = before or after
        if not side:
            return None
        first = side[0]
        distinct = [c for c in side[1:] if c.label != first.label]
        if not distinct:
            return None
        second = distinct[0]

    if first.label == second.label:
        return None
    return (first, second) if first.start < second.start else (second, first)


def longest_contact_pair(
    contacts: list[Contact], cumulative_length: np.ndarray
) -> tuple[Contact, Contact] | None:
    """
    The pair of distinct nodes furthest apart along the streamline.

    Parameters
    ----------
    contacts : list of Contact
        Contacts in streamline order.
    cumulative_length : np.ndarray
        Arclength from the first vertex to every vertex.
    """
    best = None
    best_length = -1.0
    for i, first in enumerate(contacts):
        for second in contacts[i + 1 :]:
            if second.label == first.label:
                continue
            length = cumulative_length[second.start] - cumulative_length[first.end]
            if length > best_length:
                best, best_length = (first, second), length
    return best


class StreamlineFilterAndAggregator:
    """
    Filter streamlines and aggregate them into connectivity matrices.

    Parameters
    ----------
    min_length : float, default=10.0
        Minimum length (mm). Checked after exclusion truncation and again on
        the credited segment between the two endpoint nodes.
    count_longest_path : bool, default=False
        Credit the pair of nodes furthest apart along each streamline instead
        of the first nodes reached from the seed.
    exclusion_threshold : float, default=0.5
        Exclusion image values at or above this terminate streamlines, so
        probability maps can be used as well as binary masks.
    edge_aggregation : str, default="mean"
        How the per-streamline scalar medians of one edge are combined
        ("mean" or "median").
    show_progress : bool, default=False
        Display a tqdm progress bar.

    Examples
    --------
    >>> aggregator = StreamlineFilterAndAggregator(min_length=10.0)
    >>> result = aggregator.aggregate(tracts, exclusion, graph_nodes, labels)
    >>> result.count.edge(101, 102)
    1.0
    """

    def __init__(
        self,
        min_length: float = 10.0,
        count_longest_path: bool = False,
        exclusion_threshold: float = 0.5,
        edge_aggregation: str = "mean",
        show_progress: bool = False,
    ):
        if min_length < 0:
            raise ConfigurationError(f"min_length must be non-negative, got {min_length}")
        if edge_aggregation not in EDGE_AGGREGATIONS:
            raise ConfigurationError(
                f"edge_aggregation must be one of {list(EDGE_AGGREGATIONS)}, "
                f"got '{edge_aggregation}'"
            )
        self.min_length = min_length
        self.count_longest_path = count_longest_path
        self.exclusion_threshold = exclusion_threshold
        self.edge_aggregation = edge_aggregation
        self.show_progress = show_progress

    @classmethod
    def from_config(cls, config: PipelineConfig, show_progress: bool = False):
        return cls(
            min_length=config.min_length,
            count_longest_path=config.count_longest_path,
            exclusion_threshold=config.exclusion_threshold,
            edge_aggregation=config.edge_aggregation,
            show_progress=show_progress,
        )

    def get_parameters(self) -> dict:
        return {
            "min_length": self.min_length,
            "count_longest_path": self.count_longest_path,
            "exclusion_threshold": self.exclusion_threshold,
            "edge_aggregation": self.edge_aggregation,
        }

    def truncate_at_exclusion(
        self, streamline: Streamline, excluded: np.ndarray
    ) -> Streamline | None:
        """
        Keep the part of ``streamline`` reachable from its seed without
        entering the exclusion region.

        Parameters
        ----------
        streamline : Streamline
            Streamline to truncate.
        excluded : np.ndarray
            Boolean flag per vertex.

        Returns
        -------
        Streamline or None
            The truncated streamline, or None if the seed itself is
            excluded or fewer than two vertices remain.
        """
        seed = streamline.seed
        if excluded[seed]:
            return None
        if not excluded.any():
            return streamline

        blocked_before = np.flatnonzero(excluded[:seed])
        blocked_after = np.flatnonzero(excluded[seed + 1 :])
        start = blocked_before[-1] + 1 if blocked_before.size else 0
        stop = seed + blocked_after[0] if blocked_after.size else len(streamline) - 1

        if stop <= start:
            return None
        return streamline.segment(int(start), int(stop))

    def select_endpoints(
        self, streamline: Streamline, node_labels: np.ndarray
    ) -> tuple[Contact, Contact] | None:
        """Endpoint node contacts of ``streamline`` under the configured policy."""
        contacts = find_contacts(node_labels)
        if len({c.label for c in contacts}) < 2:
            return None

        if self.count_longest_path:
            cumulative = np.concatenate([[0.0], np.cumsum(streamline.step_lengths)])
            return longest_contact_pair(contacts, cumulative)
        return first_contact_pair(contacts, streamline.seed)

    def aggregate(
        self,
        streamlines: StreamlineSet,
        exclusion_mask: VolumeGrid,
        graph_nodes: VolumeGrid,
        label_definition: LabelDefinition,
        scalar_volumes: dict[str, VolumeGrid] | None = None,
    ) -> AggregationResult:
        """
        Build connectivity matrices from reference-space streamlines.

        Parameters
        ----------
        streamlines : StreamlineSet
            Streamlines in the reference space.
        exclusion_mask : VolumeGrid
            Streamline termination region (binary or probability).
        graph_nodes : VolumeGrid
            Node labels on the reference grid.
        label_definition : LabelDefinition
            Graph nodes and matrix order. Labels in ``graph_nodes`` not in
            the definition are background.
        scalar_volumes : dict, optional
            Scalar name to map on the reference grid (e.g. FA, MD).

        Returns
        -------
        AggregationResult

        Raises
        ------
        GeometryMismatchError
            If the masks or scalar maps are on different grids.
        """
        scalar_volumes = scalar_volumes or {}
        check_same_geometry(graph_nodes, exclusion_mask, *scalar_volumes.values())

        excluded = np.nan_to_num(np.asarray(exclusion_mask.data, dtype=np.float64)) >= (
            self.exclusion_threshold
        )
        nodes = label_definition.restrict(np.asarray(graph_nodes.data))
        grid = graph_nodes

        stats = defaultdict(int)
        stats["input"] = len(streamlines)
        filtered: list[Streamline] = []
        credited: list[Streamline] = []
        edges: list[tuple[int, int]] = []

        for streamline in tqdm(
            streamlines, desc="Filtering streamlines", disable=not self.show_progress
        ):
            voxels, inside = _voxel_indices(streamline.points, grid)
            flags = np.ones(len(streamline), dtype=bool)
            flags[inside] = excluded[tuple(voxels[inside].T)]

            truncated = self.truncate_at_exclusion(streamline, flags)
            if truncated is None:
                stats["seed_excluded"] += 1
                continue
            if truncated.length < self.min_length:
                stats["short_after_exclusion"] += 1
                continue
            filtered.append(truncated)

            voxels, inside = _voxel_indices(truncated.points, grid)
            labels = np.zeros(len(truncated), dtype=np.int32)
            labels[inside] = nodes[tuple(voxels[inside].T)]

            endpoints = self.select_endpoints(truncated, labels)
            if endpoints is None:
                stats["no_endpoints"] += 1
                continue

            first, second = endpoints
            segment = truncated.segment(first.end, second.start)
            if segment.length < self.min_length:
                stats["short_after_endpoints"] += 1
                continue

            credited.append(segment)
            edges.append((first.label, second.label))

        stats["filtered"] = len(filtered)
        stats["accepted"] = len(credited)
        logger.info(
            f"Aggregation: {stats['input']} streamlines in, {len(filtered)} after exclusion, "
            f"{len(credited)} credited to {len(set(map(frozenset, edges)))} edges"
        )

        graph_streamlines = StreamlineSet(credited, space=streamlines.space)
        count, mean_length = self._count_and_length(credited, edges, label_definition)

        scalar_matrices = {}
        for name, volume in scalar_volumes.items():
            scalar_matrices[name] = self._scalar_matrix(
                name, volume, credited, edges, label_definition
            )

        return AggregationResult(
            count=count,
            mean_length=mean_length,
            scalars=scalar_matrices,
            graph_streamlines=graph_streamlines,
            filtered_streamlines=StreamlineSet(filtered, space=streamlines.space),
            stats=dict(stats),
        )

    def _count_and_length(
        self,
        credited: list[Streamline],
        edges: list[tuple[int, int]],
        labels: LabelDefinition,
    ) -> tuple[ConnectivityMatrix, ConnectivityMatrix]:
        n = len(labels)
        counts = np.zeros((n, n))
        total_length = np.zeros((n, n))
        for streamline, (label_i, label_j) in zip(credited, edges):
            i, j = labels.index_of(label_i), labels.index_of(label_j)
            length = streamline.length
            counts[i, j] += 1
            counts[j, i] += 1
            total_length[i, j] += length
            total_length[j, i] += length

        with np.errstate(invalid="ignore", divide="ignore"):
            mean_length = np.where(counts > 0, total_length / counts, 0.0)

        metadata = self.get_parameters()
        return (
            ConnectivityMatrix(COUNT, counts, labels, statistic=COUNT, metadata=metadata),
            ConnectivityMatrix(
                MEAN_LENGTH, mean_length, labels, statistic=MEAN_LENGTH, metadata=metadata
            ),
        )

    def _scalar_matrix(
        self,
        name: str,
        volume: VolumeGrid,
        credited: list[Streamline],
        edges: list[tuple[int, int]],
        labels: LabelDefinition,
    ) -> ConnectivityMatrix:
        data = np.asarray(volume.data, dtype=np.float64)
        per_edge: dict[tuple[int, int], list[float]] = defaultdict(list)

        for streamline, (label_i, label_j) in zip(credited, edges):
            samples = sample_along(streamline, data, volume)
            i, j = sorted((labels.index_of(label_i), labels.index_of(label_j)))
            per_edge[(i, j)].append(float(np.median(samples)))

        combine = np.mean if self.edge_aggregation == "mean" else np.median
        matrix = np.zeros((len(labels), len(labels)))
        for (i, j), medians in per_edge.items():
            matrix[i, j] = matrix[j, i] = combine(medians)

        statistic = scalar_statistic_name(name)
        return ConnectivityMatrix(
            statistic,
            matrix,
            labels,
            statistic=statistic,
            metadata={**self.get_parameters(), "scalar": name},
        )


def _voxel_indices(points: np.ndarray, grid: VolumeGrid) -> tuple[np.ndarray, np.ndarray]:
    """Nearest voxel of every point and whether it lies inside the grid."""
    voxels = np.rint(grid.world_to_voxel(points)).astype(np.intp)
    inside = np.all((voxels >= 0) & (voxels < np.array(grid.shape)), axis=1)
    return voxels, inside


def sample_along(streamline: Streamline, data: np.ndarray, grid: VolumeGrid) -> np.ndarray:
    """Trilinear samples of ``data`` at every vertex of ``streamline``."""
    coords = grid.world_to_voxel(streamline.points).T
    return ndimage.map_coordinates(data, coords, order=1, mode="nearest")
