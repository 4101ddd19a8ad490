"""
Integration tests for the session pipeline.

The phantom session runs end to end with a fake tractography engine and an
in-memory transform provider.
"""

import json
from dataclasses import replace

import numpy as np
import pytest
from phantoms import LEFT_NODE, RIGHT_NODE, FakeEngine, phantom_streamlines, write_label_csv

from structconn import ConnectomePipeline, PipelineConfig
from structconn.core.exceptions import (
    ConfigurationError,
    GeometryMismatchError,
    MissingInputError,
    TransformNotAvailableError,
    WorkspaceExistsError,
)
from structconn.core.streamlines import Streamline
from structconn.core.volume import VolumeGrid, save_volume
from structconn.io.export import load_matrix_csv
from structconn.spatial.provider import StaticTransformProvider
from structconn.spatial.transform import AffineLink, DisplacementFieldLink

WORKSPACE = "structconn_sub-01_tp1_session"


@pytest.fixture
def config():
    return PipelineConfig(
        min_cluster_voxels_fa=10, min_cluster_voxels_final=10, compute_scalars=True
    )


@pytest.fixture
def identity_provider():
    return StaticTransformProvider({("diffusion", "session"): [AffineLink(np.eye(4))]})


@pytest.fixture
def make_pipeline(config, identity_provider, fake_engine, tmp_path):
    def _make(**overrides):
        kwargs = {
            "config": config,
            "transform_provider": identity_provider,
            "engine": fake_engine,
            "scratch_root": tmp_path / "scratch",
            "log_level": 0,
        }
        kwargs.update(overrides)
        return ConnectomePipeline(**kwargs)

    return _make


class TestPipelineRun:
    """Full runs on the phantom session."""

    def test_connectivity(self, make_pipeline, session_inputs):
        """The three crossing streamlines connect the two hemispheres."""
        result = make_pipeline().run(session_inputs)

        assert result.aggregation.count.edge(LEFT_NODE, RIGHT_NODE) == 3
        assert result.aggregation.mean_length.edge(LEFT_NODE, RIGHT_NODE) == pytest.approx(12.5)
        assert result.aggregation.scalars["FA"].edge(LEFT_NODE, RIGHT_NODE) > 0.8
        assert result.aggregation.stats["seed_excluded"] == 1
        assert result.aggregation.stats["short_after_exclusion"] == 1
        assert result.summary()["in graph"] == 3
        assert result.summary()["edges"] == 1

    def test_output_files(self, make_pipeline, session_inputs):
        result = make_pipeline().run(session_inputs)
        out = session_inputs.output_dir

        for stem in (
            "WMMask",
            "CorticalMask",
            "ExclusionMask",
            "CorticalMaskEdits",
            "GraphNodes",
            "CorticalLabelSystemDiffMask",
            "LabeledTractInclusionMask",
            "AllTractsACM",
            "AllTractsACMWithExclusion",
            "GraphTractsACM",
            "SeedDensityDeformed",
        ):
            assert (out / f"sub-01_tp1_{stem}.nii.gz").exists(), stem
        for stem in ("sc", "MeanTractLength", "MeanTractMedianFA", "MeanTractMedianRD"):
            assert (out / f"sub-01_tp1_{stem}.csv").exists(), stem
        assert (out / "sub-01_tp1_LabelOrder.csv").exists()
        assert result.output_files["sc"] == out / "sub-01_tp1_sc.csv"

    def test_matrix_file_matches_result(self, make_pipeline, session_inputs, phantom):
        result = make_pipeline().run(session_inputs)
        loaded = load_matrix_csv(
            session_inputs.output_dir / "sub-01_tp1_sc.csv", phantom.node_labels
        )
        np.testing.assert_array_equal(loaded.matrix, result.aggregation.count.matrix)

    def test_provenance(self, make_pipeline, session_inputs):
        make_pipeline().run(session_inputs)
        payload = json.loads(
            (session_inputs.output_dir / "sub-01_tp1_provenance.json").read_text()
        )

        assert payload["session"]["subject"] == "sub-01"
        stages = [stage["stage"] for stage in payload["stages"]]
        assert stages == [
            "tracking_masks",
            "graph_nodes",
            "tractography",
            "aggregation",
            "pipeline",
        ]
        masks = payload["stages"][0]
        assert masks["implementation"].endswith("MorphologicalMaskBuilder")
        assert "WMMask" in masks["outputs"]
        tracking = payload["stages"][2]
        assert tracking["implementation"].endswith("FakeEngine")
        assert tracking["parameters"]["engine"] == "fake"
        assert tracking["space"] == "diffusion"
        assert {t["data_kind"] for t in payload["transformations"]} == {"streamlines", "image"}
        assert payload["output_files"]["sc"] == "sub-01_tp1_sc.csv"

    def test_density_maps(self, make_pipeline, session_inputs):
        """Maps over the full tracked set are kept alongside the filtered ones."""
        result = make_pipeline().run(session_inputs)
        maps = result.density_maps

        assert set(maps) == {
            "AllTractsACM",
            "AllTractsACMWithExclusion",
            "GraphTractsACM",
            "SeedDensityDeformed",
        }
        # The streamline seeded outside the WM is only in the unfiltered map
        assert maps["AllTractsACM"].data[1, 1, 1] == 1
        assert maps["GraphTractsACM"].data[1, 1, 1] == 0
        assert maps["AllTractsACM"].data[12, 12, 12] == 1
        assert maps["SeedDensityDeformed"].data.sum() == 5

    def test_workspace_removed(self, make_pipeline, session_inputs, tmp_path):
        make_pipeline().run(session_inputs)
        assert not (tmp_path / "scratch" / WORKSPACE).exists()

    def test_engine_receives_seed_mask(self, make_pipeline, session_inputs, fake_engine):
        make_pipeline().run(session_inputs)

        assert len(fake_engine.calls) == 1
        call = fake_engine.calls[0]
        assert call["seed_mask"].data[12, 12, 12]
        assert call["parameters"].curvature_threshold == 90.0

    def test_streamlines_mapped_through_transform(self, config, session_inputs, tmp_path):
        """Streamlines tracked 3 mm off along x are brought back by the chain."""
        shifted = [
            s.with_points(s.points + [3.0, 0.0, 0.0]) for s in phantom_streamlines()
        ]
        link = AffineLink(np.array([[1, 0, 0, 3], [0, 1, 0, 0], [0, 0, 1, 0], [0, 0, 0, 1.0]]))
        pipeline = ConnectomePipeline(
            replace(config, compute_scalars=False),
            StaticTransformProvider({("diffusion", "session"): [link]}),
            engine=FakeEngine(shifted),
            scratch_root=tmp_path / "scratch",
            log_level=0,
        )
        result = pipeline.run(session_inputs)

        assert result.aggregation.count.edge(LEFT_NODE, RIGHT_NODE) == 3
        assert result.aggregation.scalars == {}

    def test_longest_path_config(self, config, make_pipeline, session_inputs):
        result = make_pipeline(config=replace(config, count_longest_path=True)).run(
            session_inputs
        )
        assert result.aggregation.count.edge(LEFT_NODE, RIGHT_NODE) == 3

    def test_console_output(self, make_pipeline, session_inputs, capsys):
        make_pipeline(log_level=1).run(session_inputs)
        out = capsys.readouterr().out

        assert "sub-01 tp1 -> session" in out
        assert "[7/7] Writing outputs" in out


class TestPipelineFailures:
    """Failures stop the run before any matrix is written."""

    def _assert_no_matrices(self, session_inputs):
        assert not (session_inputs.output_dir / "sub-01_tp1_sc.csv").exists()

    def test_existing_workspace(self, make_pipeline, session_inputs, tmp_path, fake_engine):
        (tmp_path / "scratch" / WORKSPACE).mkdir(parents=True)

        with pytest.raises(WorkspaceExistsError) as excinfo:
            make_pipeline().run(session_inputs)

        assert "[sub-01 tp1]" in str(excinfo.value)
        assert fake_engine.calls == []
        assert (tmp_path / "scratch" / WORKSPACE).exists()
        self._assert_no_matrices(session_inputs)

    def test_missing_input(self, make_pipeline, session_inputs, fake_engine):
        session_inputs.anisotropy.unlink()

        with pytest.raises(MissingInputError, match="anisotropy volume") as excinfo:
            make_pipeline().run(session_inputs)

        assert excinfo.value.subject == "sub-01"
        assert fake_engine.calls == []
        self._assert_no_matrices(session_inputs)

    def test_missing_transform(self, make_pipeline, session_inputs, fake_engine):
        with pytest.raises(TransformNotAvailableError):
            make_pipeline(transform_provider=StaticTransformProvider()).run(session_inputs)

        assert fake_engine.calls == []
        self._assert_no_matrices(session_inputs)

    def test_missing_image_warp(self, make_pipeline, session_inputs, fake_engine, tmp_path):
        """Scalars need the forward warp; its absence stops the run before tracking."""
        field = VolumeGrid(np.zeros((24, 24, 24, 3), dtype=np.float32), np.eye(4))
        provider = StaticTransformProvider(
            {("diffusion", "session"): [DisplacementFieldLink(inverse=field, name="1Warp")]}
        )

        with pytest.raises(TransformNotAvailableError, match="resampling images") as excinfo:
            make_pipeline(transform_provider=provider).run(session_inputs)

        assert "[sub-01 tp1]" in str(excinfo.value)
        assert fake_engine.calls == []
        assert not (tmp_path / "scratch" / WORKSPACE).exists()
        self._assert_no_matrices(session_inputs)

    def test_inverse_warp_enough_without_scalars(self, config, make_pipeline, session_inputs):
        field = VolumeGrid(np.zeros((24, 24, 24, 3), dtype=np.float32), np.eye(4))
        provider = StaticTransformProvider(
            {("diffusion", "session"): [DisplacementFieldLink(inverse=field)]}
        )
        result = make_pipeline(
            config=replace(config, compute_scalars=False), transform_provider=provider
        ).run(session_inputs)

        assert result.aggregation.count.edge(LEFT_NODE, RIGHT_NODE) == 3

    def test_bad_tensor_layout(self, make_pipeline, session_inputs, fake_engine):
        save_volume(
            VolumeGrid(np.zeros((24, 24, 24, 3), dtype=np.float32), np.eye(4)),
            session_inputs.tensor,
        )

        with pytest.raises(GeometryMismatchError, match="Tensor volume") as excinfo:
            make_pipeline().run(session_inputs)

        assert "[sub-01 tp1]" in str(excinfo.value)
        assert fake_engine.calls == []
        self._assert_no_matrices(session_inputs)

    def test_template_space_without_transform(self, config, make_pipeline, session_inputs):
        with pytest.raises(TransformNotAvailableError, match="template"):
            make_pipeline(config=replace(config, target_space="template")).run(session_inputs)

    def test_duplicate_node_ids(self, make_pipeline, session_inputs, fake_engine):
        write_label_csv(session_inputs.node_labels, [(LEFT_NODE, "a"), (LEFT_NODE, "b")])

        with pytest.raises(ConfigurationError, match="Duplicate"):
            make_pipeline().run(session_inputs)

        assert fake_engine.calls == []
        self._assert_no_matrices(session_inputs)

    def test_invalid_config(self, config, make_pipeline, session_inputs, fake_engine):
        with pytest.raises(ConfigurationError):
            make_pipeline(config=replace(config, min_length=-5.0)).run(session_inputs)
        assert fake_engine.calls == []

    def test_geometry_mismatch(self, make_pipeline, session_inputs, fake_engine):
        save_volume(
            VolumeGrid(np.zeros((10, 10, 10), dtype=np.float32), np.eye(4)),
            session_inputs.anisotropy,
        )
        with pytest.raises(GeometryMismatchError):
            make_pipeline().run(session_inputs)
        assert fake_engine.calls == []

    def test_no_streamlines_in_graph(self, make_pipeline, session_inputs):
        """A run where nothing connects still writes an all-zero matrix."""
        engine = FakeEngine([Streamline([[12.0, 12, 12], [12.0, 13, 12]], seed_index=0)])
        result = make_pipeline(engine=engine).run(session_inputs)

        assert result.aggregation.count.matrix.sum() == 0
        assert (session_inputs.output_dir / "sub-01_tp1_sc.csv").exists()
