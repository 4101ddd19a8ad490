"""Unit tests for the Camino streamline format and track wrapper."""

from pathlib import Path

import numpy as np
import pytest

from structconn.core.exceptions import MissingInputError, TractographyError
from structconn.core.streamlines import Streamline, StreamlineSet
from structconn.core.volume import VolumeGrid
from structconn.io.camino import (
    BFLOAT_DTYPE,
    camino_to_world,
    decode_bfloat,
    read_bfloat,
    world_to_camino,
    write_bfloat,
)
from structconn.tractography import camino
from structconn.tractography.base import TrackingParameters
from structconn.tractography.camino import CaminoError, CaminoTrackEngine, check_camino_available


@pytest.fixture
def grid():
    """2 mm grid with its origin at (-10, 0, 5)."""
    affine = np.diag([2.0, 2.0, 2.0, 1.0])
    affine[:3, 3] = (-10.0, 0.0, 5.0)
    return VolumeGrid(np.zeros((8, 8, 8), dtype=np.float32), affine, name="dt")


class TestCoordinates:
    """Tests for Camino <-> world coordinate conversion."""

    def test_voxel_centre(self, grid):
        """Camino (1, 1, 1) mm is the centre of voxel (0, 0, 0) on a 2 mm grid."""
        np.testing.assert_allclose(camino_to_world([[1.0, 1.0, 1.0]], grid), [[-10, 0, 5]])

    def test_inverse(self, grid):
        points = np.array([[-3.0, 4.5, 9.0], [0.0, 0.0, 6.0]])
        np.testing.assert_allclose(camino_to_world(world_to_camino(points, grid), grid), points)


class TestBfloat:
    """Tests for Bfloat decoding and file IO."""

    def test_decode(self, grid):
        values = np.array([2, 1, 1, 1, 1, 3, 1, 1], dtype=np.float64)
        tracts = decode_bfloat(values, grid)

        assert len(tracts) == 1
        assert tracts.space == "diffusion"
        assert tracts[0].seed_index == 1
        np.testing.assert_allclose(tracts[0].points, [[-10, 0, 5], [-8, 0, 5]])

    def test_short_records_skipped(self, grid):
        values = np.array([1, 0, 1, 1, 1, 2, 0, 1, 1, 1, 3, 3, 3], dtype=np.float64)
        tracts = decode_bfloat(values, grid)
        assert len(tracts) == 1
        assert tracts[0].seed_index == 0

    def test_seed_out_of_range_dropped(self, grid):
        values = np.array([2, 7, 1, 1, 1, 3, 1, 1], dtype=np.float64)
        assert decode_bfloat(values, grid)[0].seed_index is None

    def test_truncated_record(self, grid):
        values = np.array([3, 0, 1, 1, 1, 2, 2], dtype=np.float64)
        with pytest.raises(TractographyError, match="Malformed"):
            decode_bfloat(values, grid)

    def test_truncated_header(self, grid):
        values = np.array([2, 0, 1, 1, 1, 2, 2, 2, 5], dtype=np.float64)
        with pytest.raises(TractographyError, match="Truncated"):
            decode_bfloat(values, grid)

    def test_file_round_trip(self, grid, tmp_path):
        tracts = StreamlineSet(
            [
                Streamline([[-10.0, 0, 5], [-8.0, 0, 5], [-6.0, 2, 5]], seed_index=2),
                Streamline([[0.0, 4, 9], [0.0, 6, 9]], seed_index=0),
            ]
        )
        path = write_bfloat(tracts, tmp_path / "tracts.Bfloat", grid)

        assert np.fromfile(path, dtype=BFLOAT_DTYPE)[:2].tolist() == [3.0, 2.0]
        loaded = read_bfloat(path, grid)
        assert [s.seed_index for s in loaded] == [2, 0]
        np.testing.assert_allclose(loaded[0].points, tracts[0].points, atol=1e-5)

    def test_missing_file(self, grid, tmp_path):
        with pytest.raises(MissingInputError):
            read_bfloat(tmp_path / "missing.Bfloat", grid)


class TestCaminoTrackEngine:
    """Tests for the Camino track wrapper."""

    def test_build_command(self, tmp_path):
        engine = CaminoTrackEngine(tmp_path)
        parameters = TrackingParameters(curvature_threshold=80.0, step_size=0.5)
        command = engine.build_command(
            Path("dt.nii.gz"),
            Path("seeds.nii.gz"),
            Path("out.Bfloat"),
            parameters,
            anisotropy_path=Path("mask.nii.gz"),
        )

        assert command[0] == "track"
        assert command[command.index("-inputmodel") + 1] == "dt"
        assert command[command.index("-curvethresh") + 1] == "80.0"
        assert command[command.index("-anisfile") + 1] == "mask.nii.gz"
        assert command[command.index("-anisthresh") + 1] == "0.5"
        assert command[command.index("-seedfile") + 1] == "seeds.nii.gz"
        assert command[-1] == "-silent"

    def test_build_command_without_anisotropy(self, tmp_path):
        command = CaminoTrackEngine(tmp_path).build_command(
            Path("dt.nii.gz"), Path("seeds.nii.gz"), Path("out.Bfloat"), TrackingParameters()
        )
        assert "-anisfile" not in command

    def test_camino_not_installed(self, monkeypatch):
        monkeypatch.setattr(camino.shutil, "which", lambda cmd: None)
        with pytest.raises(CaminoError, match="track"):
            check_camino_available()

    def test_track_reads_and_discards_output(self, grid, tmp_path, monkeypatch):
        """Raw Camino output is decoded and removed from the workspace."""
        expected = StreamlineSet([Streamline([[-10.0, 0, 5], [-6.0, 0, 5]], seed_index=0)])
        commands = []

        def fake_run(command, verbose=False):
            commands.append(command)
            output = Path(command[command.index("-outputfile") + 1])
            write_bfloat(expected, output, grid)

        monkeypatch.setattr(camino.shutil, "which", lambda cmd: f"/usr/bin/{cmd}")
        monkeypatch.setattr(camino, "run_camino_command", fake_run)

        seeds = VolumeGrid(np.ones((4, 4, 4), dtype=bool), np.eye(4))
        tracts = CaminoTrackEngine(tmp_path).track(grid, seeds, TrackingParameters())

        assert len(commands) == 1
        assert len(tracts) == 1
        np.testing.assert_allclose(tracts[0].points, expected[0].points, atol=1e-5)
        assert not (tmp_path / "rawTracts.Bfloat").exists()
        assert (tmp_path / "seedMask.nii.gz").exists()

    def test_track_without_streamlines(self, grid, tmp_path, monkeypatch):
        def fake_run(command, verbose=False):
            write_bfloat(StreamlineSet([]), Path(command[command.index("-outputfile") + 1]), grid)

        monkeypatch.setattr(camino.shutil, "which", lambda cmd: f"/usr/bin/{cmd}")
        monkeypatch.setattr(camino, "run_camino_command", fake_run)

        seeds = VolumeGrid(np.ones((4, 4, 4), dtype=bool), np.eye(4))
        with pytest.raises(TractographyError, match="no streamlines"):
            CaminoTrackEngine(tmp_path).track(grid, seeds, TrackingParameters())

    @pytest.mark.requires_camino
    def test_track_with_camino(self, phantom, tmp_path):
        """Real tracking through the phantom WM."""
        from structconn.tractography.base import build_seed_mask

        seeds = build_seed_mask(phantom.tensor, fa_threshold=0.5, spacing=2.0)
        tracts = CaminoTrackEngine(tmp_path).track(
            phantom.tensor, seeds, TrackingParameters(anisotropy_threshold=0.2), phantom.fa
        )
        assert len(tracts) > 0
        assert all(s.seed_index is not None for s in tracts)
