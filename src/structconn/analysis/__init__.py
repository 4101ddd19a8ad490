"""
Mask, graph node and connectivity computations.

Classes
-------
MorphologicalMaskBuilder
    WM, cortical and exclusion masks from labels and FA.
GraphNodeAssigner
    Propagates a parcellation onto the cortical mask.
StreamlineFilterAndAggregator
    Truncates streamlines and aggregates them into matrices.
"""

from structconn.analysis.connectivity import AggregationResult, StreamlineFilterAndAggregator
from structconn.analysis.density import seed_density, streamline_density
from structconn.analysis.graph_nodes import GraphNodeAssigner
from structconn.analysis.tensor import tensor_scalars
from structconn.analysis.tracking_masks import (
    MorphologicalMaskBuilder,
    TrackingMasks,
    build_tracking_extent,
)

__all__ = [
    "AggregationResult",
    "GraphNodeAssigner",
    "MorphologicalMaskBuilder",
    "StreamlineFilterAndAggregator",
    "TrackingMasks",
    "build_tracking_extent",
    "seed_density",
    "streamline_density",
    "tensor_scalars",
]
