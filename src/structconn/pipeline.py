"""
Session pipeline: from anatomical labels and a tensor volume to connectivity
matrices for one (subject, timepoint) and one reference space.

The stages only communicate through the data model (VolumeGrid,
StreamlineSet, ConnectivityMatrix). The transform provider and the
tractography engine are injected, so either can be replaced by a native
implementation or a test double.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path

from structconn.analysis.connectivity import AggregationResult, StreamlineFilterAndAggregator
from structconn.analysis.density import seed_density, streamline_density
from structconn.analysis.graph_nodes import GraphNodeAssigner
from structconn.analysis.tensor import tensor_scalars
from structconn.analysis.tracking_masks import (
    MorphologicalMaskBuilder,
    TrackingMasks,
    build_tracking_extent,
)
from structconn.core.config import PipelineConfig
from structconn.core.exceptions import MissingInputError, StructConnError
from structconn.core.labels import LabelDefinition, LabelMap, load_label_definition
from structconn.core.provenance import SessionProvenance, TransformationRecord
from structconn.core.volume import VolumeGrid, check_same_geometry, load_volume
from structconn.io.export import (
    export_label_order,
    export_matrix,
    export_volume,
    session_prefix,
)
from structconn.spatial.provider import TransformProvider
from structconn.spatial.transform import TO_MOVING, TO_REFERENCE, StreamlineTransformer
from structconn.tractography.base import TrackingParameters, TractographyEngine, build_seed_mask
from structconn.tractography.camino import CaminoTrackEngine
from structconn.utils.logging import ConsoleLogger
from structconn.utils.workspace import exclusive_workspace, workspace_name

logger = logging.getLogger(__name__)

DIFFUSION_SPACE = "diffusion"

#: Output stems of the density maps
ALL_TRACTS_ACM = "AllTractsACM"
FILTERED_TRACTS_ACM = "AllTractsACMWithExclusion"
GRAPH_TRACTS_ACM = "GraphTractsACM"
SEED_DENSITY = "SeedDensityDeformed"

N_STAGES = 7


@dataclass(frozen=True)
class SessionInputs:
    """
    Input files of one session.

    Attributes
    ----------
    subject : str
        Subject identifier.
    timepoint : str
        Timepoint (session) identifier.
    output_dir : Path
        Directory receiving the outputs.
    label_volume : Path
        Anatomical labels in the reference space (e.g. joint label fusion).
    cortical_labels : Path
        CSV definition of the cortical labels of ``label_volume``.
    wm_labels : Path
        CSV definition of the white matter labels of ``label_volume``.
    anisotropy : Path
        FA in the reference space.
    tensor : Path
        Diffusion tensor volume in diffusion space.
    node_labels : Path
        CSV definition of the graph nodes (matrix order).
    node_volume : Path, optional
        Parcellation providing the graph nodes. Defaults to ``label_volume``.
    brain_mask : Path, optional
        Brain mask in the reference space.
    diffusion_mask : Path, optional
        Brain mask in diffusion space; restricts seeds and is passed to the
        tracker as its termination image.
    """

    subject: str
    timepoint: str
    output_dir: Path
    label_volume: Path
    cortical_labels: Path
    wm_labels: Path
    anisotropy: Path
    tensor: Path
    node_labels: Path
    node_volume: Path | None = None
    brain_mask: Path | None = None
    diffusion_mask: Path | None = None

    def required_files(self) -> dict[str, Path]:
        """Description to path of every input file that must exist."""
        files = {
            "label volume": self.label_volume,
            "cortical label definition": self.cortical_labels,
            "WM label definition": self.wm_labels,
            "anisotropy volume": self.anisotropy,
            "tensor volume": self.tensor,
            "graph node label definition": self.node_labels,
            "graph node volume": self.node_volume,
            "brain mask": self.brain_mask,
            "diffusion brain mask": self.diffusion_mask,
        }
        return {name: Path(path) for name, path in files.items() if path is not None}


@dataclass
class PipelineResult:
    """Everything produced by one pipeline run."""

    subject: str
    timepoint: str
    target_space: str
    masks: TrackingMasks
    graph_nodes: VolumeGrid
    aggregation: AggregationResult
    density_maps: dict[str, VolumeGrid] = field(default_factory=dict)
    output_files: dict[str, Path] = field(default_factory=dict)

    @property
    def matrices(self):
        return self.aggregation.matrices()

    def summary(self) -> dict:
        return {
            "streamlines tracked": self.aggregation.stats.get("input", 0),
            "after exclusion": self.aggregation.stats.get("filtered", 0),
            "in graph": self.aggregation.stats.get("accepted", 0),
            "edges": self.aggregation.count.n_edges,
        }


class ConnectomePipeline:
    """
    Build the structural connectome of one session.

    Parameters
    ----------
    config : PipelineConfig
        Run parameters. Validated before any input is read.
    transform_provider : TransformProvider
        Source of the diffusion to reference space chain.
    engine : TractographyEngine, optional
        Tractography engine. Defaults to Camino ``track`` running in the
        run's scratch workspace.
    scratch_root : str or Path, optional
        Parent of the scratch workspace (see :func:`get_scratch_root`).
    log_level : int, default=1
        Console verbosity (0 = silent, 1 = stages, 2 = details).

    Examples
    --------
    >>> pipeline = ConnectomePipeline(PipelineConfig.cortical(), provider)
    >>> result = pipeline.run(session)
    >>> result.aggregation.count.edge(1001, 1002)
    """

    def __init__(
        self,
        config: PipelineConfig,
        transform_provider: TransformProvider,
        engine: TractographyEngine | None = None,
        scratch_root: str | Path | None = None,
        log_level: int = 1,
    ):
        self.config = config
        self.transform_provider = transform_provider
        self.engine = engine
        self.scratch_root = scratch_root
        self.console = ConsoleLogger(log_level=log_level)

    def run(self, session: SessionInputs) -> PipelineResult:
        """
        Run every stage for ``session`` and write the outputs.

        Raises
        ------
        StructConnError
            Any stage failure, tagged with the subject and timepoint. No
            matrix is written when a stage fails.
        """
        try:
            return self._run(session)
        except StructConnError as err:
            err.add_session_context(session.subject, session.timepoint)
            logger.error(f"Session failed: {err}")
            raise

    def _run(self, session: SessionInputs) -> PipelineResult:
        config = self.config
        target_space = config.target_space
        self.console.section(f"{session.subject} {session.timepoint} -> {target_space}")

        # 1. Inputs
        self.console.stage("Validating inputs", 1, N_STAGES)
        config.validate()
        cortical_labels = load_label_definition(session.cortical_labels, name="cortical")
        wm_labels = load_label_definition(session.wm_labels, name="wm")
        node_labels = load_label_definition(session.node_labels)

        for description, path in session.required_files().items():
            if not path.exists():
                raise MissingInputError(path, description)

        label_volume = load_volume(session.label_volume, name="label_volume")
        anisotropy = load_volume(session.anisotropy, name="anisotropy")
        node_volume = (
            load_volume(session.node_volume, name="node_volume")
            if session.node_volume is not None
            else label_volume
        )
        brain_mask = (
            load_volume(session.brain_mask, name="brain_mask")
            if session.brain_mask is not None
            else None
        )
        reference = [label_volume, anisotropy, node_volume]
        check_same_geometry(*(reference + ([brain_mask] if brain_mask is not None else [])))

        tensor = load_volume(session.tensor, name="tensor")
        diffusion_mask = (
            load_volume(session.diffusion_mask, name="diffusion_mask")
            if session.diffusion_mask is not None
            else None
        )
        if diffusion_mask is not None:
            check_same_geometry(tensor, diffusion_mask)

        # Fail on a missing transform before any expensive stage
        chain = self.transform_provider.chain(DIFFUSION_SPACE, target_space)
        chain.require(TO_REFERENCE)
        if config.compute_scalars:
            chain.require(TO_MOVING)

        from structconn import __version__

        provenance = SessionProvenance(
            session.subject, session.timepoint, target_space, version=__version__
        )

        # 2. Tracking masks
        self.console.stage("Tracking masks", 2, N_STAGES)
        mask_builder = MorphologicalMaskBuilder.from_config(config)
        masks = mask_builder.build(
            label_volume, cortical_labels, wm_labels, anisotropy, brain_mask=brain_mask
        )
        provenance.add_stage(
            "tracking_masks",
            mask_builder,
            mask_builder.get_parameters(),
            target_space,
            outputs=[masks.wm_mask.name, masks.cortical_mask.name, masks.exclusion_mask.name],
        )
        self.console.success("Masks built", details=masks.summary(), indent_level=1)

        # 3. Graph nodes
        self.console.stage("Graph nodes", 3, N_STAGES)
        node_map = LabelMap(node_volume, node_labels)
        assigner = GraphNodeAssigner.from_config(config)
        graph_nodes, diff_mask = assigner.assign(
            node_map.volume, node_labels, masks.cortical_mask
        )
        extent = build_tracking_extent(graph_nodes, masks.exclusion_mask)
        provenance.add_stage(
            "graph_nodes",
            assigner,
            assigner.get_parameters(),
            target_space,
            outputs=[graph_nodes.name, diff_mask.name, extent.name],
        )

        name = workspace_name(session.subject, session.timepoint, target_space)
        with exclusive_workspace(name, root=self.scratch_root, cleanup=config.cleanup) as workspace:
            # 4. Tractography
            self.console.stage("Tractography", 4, N_STAGES)
            seed_mask = build_seed_mask(
                tensor,
                config.seed_fa_threshold,
                spacing=config.seed_spacing,
                brain_mask=diffusion_mask,
            )
            engine = self.engine or CaminoTrackEngine(workspace / "tracking")
            parameters = TrackingParameters.from_config(config)
            raw = engine.track(tensor, seed_mask, parameters, anisotropy_image=diffusion_mask)
            tracking_parameters = {
                "engine": engine.name,
                "seed_fa_threshold": config.seed_fa_threshold,
                "seed_spacing": config.seed_spacing,
                "n_seeds": int(seed_mask.data.sum()),
                **parameters.to_dict(),
            }
            provenance.add_stage(
                "tractography",
                engine,
                tracking_parameters,
                DIFFUSION_SPACE,
                outputs=[f"{len(raw)} streamlines"],
            )
            self.console.info(f"{len(raw)} streamlines tracked", indent_level=1)

            # 5. Space transformation
            self.console.stage(f"Transforming streamlines to {target_space}", 5, N_STAGES)
            point_chain = chain.precompute(tensor, TO_REFERENCE)
            transformer = StreamlineTransformer(show_progress=self.console.log_level >= 2)
            tracts = transformer.transform(raw, point_chain, TO_REFERENCE)
            provenance.add_transformation(
                TransformationRecord(
                    source_space=DIFFUSION_SPACE,
                    target_space=target_space,
                    data_kind="streamlines",
                    method="nitransforms",
                    interpolation="cubic",
                    transform_files=chain.source_files,
                )
            )
            # Raw streamlines are not needed past this point
            del raw

        # 6. Aggregation
        self.console.stage("Connectivity", 6, N_STAGES)
        scalar_volumes = {}
        if config.compute_scalars:
            tensor_reference = chain.resample_image(tensor, graph_nodes, order=1)
            scalar_volumes = tensor_scalars(tensor_reference, names=config.scalars)
            provenance.add_transformation(
                TransformationRecord(
                    source_space=DIFFUSION_SPACE,
                    target_space=target_space,
                    data_kind="image",
                    method="nitransforms",
                    interpolation="linear",
                    transform_files=chain.source_files,
                )
            )

        # Maps over the whole transformed set; the set itself is dropped after aggregation
        density_maps = {
            ALL_TRACTS_ACM: streamline_density(tracts, graph_nodes, name=ALL_TRACTS_ACM),
            SEED_DENSITY: seed_density(tracts, graph_nodes, name=SEED_DENSITY),
        }

        aggregator = StreamlineFilterAndAggregator.from_config(
            config, show_progress=self.console.log_level >= 2
        )
        aggregation = aggregator.aggregate(
            tracts, masks.exclusion_mask, graph_nodes, node_labels, scalar_volumes
        )
        del tracts

        density_maps[FILTERED_TRACTS_ACM] = streamline_density(
            aggregation.filtered_streamlines, graph_nodes, name=FILTERED_TRACTS_ACM
        )
        density_maps[GRAPH_TRACTS_ACM] = streamline_density(
            aggregation.graph_streamlines, graph_nodes, name=GRAPH_TRACTS_ACM
        )
        provenance.add_stage(
            "aggregation",
            aggregator,
            aggregator.get_parameters(),
            target_space,
            outputs=[m.name for m in aggregation.matrices()] + list(density_maps),
        )

        result = PipelineResult(
            subject=session.subject,
            timepoint=session.timepoint,
            target_space=target_space,
            masks=masks,
            graph_nodes=graph_nodes,
            aggregation=aggregation,
            density_maps=density_maps,
        )

        # 7. Outputs
        self.console.stage("Writing outputs", 7, N_STAGES)
        volumes = [
            masks.wm_mask,
            masks.cortical_mask,
            masks.exclusion_mask,
            masks.cortical_mask_edits,
            graph_nodes,
            diff_mask,
            extent,
        ] + list(density_maps.values())
        result.output_files = self._write_outputs(
            session, volumes, aggregation, node_labels, provenance
        )

        self.console.result_summary("Streamlines", result.summary())
        self.console.success(f"Outputs written to {session.output_dir}")
        return result

    def _write_outputs(
        self,
        session: SessionInputs,
        volumes: list[VolumeGrid],
        aggregation: AggregationResult,
        node_labels: LabelDefinition,
        provenance: SessionProvenance,
    ) -> dict[str, Path]:
        output_dir = Path(session.output_dir)
        prefix = session_prefix(session.subject, session.timepoint)
        files = {}

        for volume in volumes:
            files[volume.name] = export_volume(volume, output_dir, prefix)
        for matrix in aggregation.matrices():
            files[matrix.name] = export_matrix(matrix, output_dir, prefix)
        files["LabelOrder"] = export_label_order(node_labels, output_dir, prefix)

        provenance.add_stage(
            "pipeline", self, self.config.to_dict(), self.config.target_space, outputs=list(files)
        )
        provenance.output_files = {name: path.name for name, path in files.items()}
        files["provenance"] = provenance.write(output_dir / f"{prefix}provenance.json")

        logger.info(f"Wrote {len(files)} files to {output_dir}")
        return files
