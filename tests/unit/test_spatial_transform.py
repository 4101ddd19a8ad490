"""Unit tests for transform chains and streamline transformation."""

import numpy as np
import pytest
from nitransforms import linear as nitl
from nitransforms import manip as nitm
from nitransforms.io.itk import ITKDisplacementsField

from structconn.core.exceptions import TransformNotAvailableError
from structconn.core.streamlines import Streamline, StreamlineSet
from structconn.core.volume import VolumeGrid
from structconn.spatial.transform import (
    TO_MOVING,
    TO_REFERENCE,
    AffineLink,
    DisplacementFieldLink,
    StreamlineTransformer,
    TransformChain,
)


def _translation(dx=0.0, dy=0.0, dz=0.0):
    matrix = np.eye(4)
    matrix[:3, 3] = (dx, dy, dz)
    return matrix


def _scaling(factor):
    matrix = np.eye(4)
    matrix[:3, :3] *= factor
    return matrix


class TestAffineLink:
    """Tests for AffineLink."""

    def test_forward_and_inverse(self):
        link = AffineLink(_translation(5, -2, 1))
        point = np.array([[1.0, 1.0, 1.0]])
        np.testing.assert_allclose(link.map_forward(point), [[6.0, -1.0, 2.0]])
        np.testing.assert_allclose(link.map_inverse(link.map_forward(point)), point)

    def test_rejects_non_4x4(self):
        with pytest.raises(ValueError, match="4x4"):
            AffineLink(np.eye(3))

    def test_itk_file_round_trip(self, tmp_path):
        """An affine written in ITK format maps points the same after loading."""
        matrix = _translation(3, 4, 5) @ _scaling(1.5)
        path = tmp_path / "dtToT1_0GenericAffine.mat"
        nitl.Affine(matrix).to_filename(str(path), fmt="itk")

        link = AffineLink.from_file(path)
        points = np.array([[0.0, 0.0, 0.0], [10.0, -4.0, 2.0]])
        expected = AffineLink(matrix).map_forward(points)
        np.testing.assert_allclose(link.map_forward(points), expected, atol=1e-6)
        assert link.source_files == (str(path),)


class TestDisplacementFieldLink:
    """Tests for DisplacementFieldLink."""

    @pytest.fixture
    def shift_field(self):
        """Field adding 2 mm along x everywhere."""
        data = np.zeros((16, 16, 16, 3), dtype=np.float32)
        data[..., 0] = 2.0
        return VolumeGrid(data, np.eye(4), name="1Warp.nii.gz")

    def test_forward(self, shift_field):
        link = DisplacementFieldLink(forward=shift_field)
        np.testing.assert_allclose(link.map_forward(np.array([[1.0, 1.0, 1.0]])), [[3, 1, 1]])

    def test_missing_inverse(self, shift_field):
        link = DisplacementFieldLink(forward=shift_field)
        with pytest.raises(TransformNotAvailableError, match="no inverse"):
            link.map_inverse(np.zeros((1, 3)))

    def test_requires_a_field(self):
        with pytest.raises(ValueError):
            DisplacementFieldLink()

    def test_rejects_scalar_field(self):
        with pytest.raises(ValueError, match="X, Y, Z, 3"):
            DisplacementFieldLink(forward=VolumeGrid(np.zeros((4, 4, 4)), np.eye(4)))

    def test_interpolates_between_voxels(self, shift_field):
        link = DisplacementFieldLink(forward=shift_field)
        point = np.array([[7.3, 8.7, 7.2]])
        np.testing.assert_allclose(link.map_forward(point), point + [2.0, 0, 0], atol=1e-4)

    def test_points_outside_field_unchanged(self, shift_field):
        link = DisplacementFieldLink(forward=shift_field)
        point = np.array([[20.5, 20.2, 20.1]])
        np.testing.assert_allclose(link.map_forward(point), point)

    def test_supports(self, shift_field):
        link = DisplacementFieldLink(forward=shift_field)
        assert link.supports(TO_MOVING)
        assert not link.supports(TO_REFERENCE)

    def test_itk_file_round_trip(self, tmp_path, shift_field):
        """ANTs warps are read through nitransforms with LPS converted to RAS."""
        path = tmp_path / "dtToT1_1Warp.nii.gz"
        ITKDisplacementsField.to_image(shift_field.to_nifti()).to_filename(str(path))

        link = DisplacementFieldLink.from_files(path)

        np.testing.assert_allclose(
            link.map_forward(np.array([[1.0, 1.0, 1.0]])), [[3, 1, 1]], atol=1e-5
        )
        assert link.source_files == (str(path),)
        assert link.name == "dtToT1_1Warp.nii.gz"


class TestTransformChain:
    """Tests for TransformChain."""

    @pytest.fixture
    def chain(self):
        """Translate by 10 mm along x, then scale by 2 (resampling order)."""
        links = [AffineLink(_translation(10), name="shift"), AffineLink(_scaling(2), name="scale")]
        return TransformChain(links, "diffusion", "session")

    def test_to_moving_applies_links_in_order(self, chain):
        np.testing.assert_allclose(chain.map_points([[1.0, 0.0, 0.0]], TO_MOVING), [[22, 0, 0]])

    def test_to_reference_applies_inverses_in_reverse(self, chain):
        np.testing.assert_allclose(
            chain.map_points([[22.0, 0.0, 0.0]], TO_REFERENCE), [[1, 0, 0]]
        )

    def test_round_trip(self, chain):
        points = np.random.default_rng(0).uniform(-20, 20, size=(50, 3))
        back = chain.map_points(chain.map_points(points, TO_REFERENCE), TO_MOVING)
        np.testing.assert_allclose(back, points, atol=1e-9)

    def test_invalid_direction(self, chain):
        with pytest.raises(ValueError, match="direction"):
            chain.map_points(np.zeros((1, 3)), "sideways")

    def test_empty_chain(self):
        with pytest.raises(TransformNotAvailableError):
            TransformChain([], "diffusion", "session")

    def test_as_nitransform(self, chain):
        to_moving = chain.as_nitransform(TO_MOVING)
        to_reference = chain.as_nitransform(TO_REFERENCE)

        assert isinstance(to_moving, nitm.TransformChain)
        assert len(to_moving) == 2
        np.testing.assert_allclose(to_moving.transforms[0].matrix, _translation(10))
        np.testing.assert_allclose(to_reference.transforms[0].matrix, _scaling(0.5))

    def test_warp_without_forward_field(self):
        """A chain loaded with only the inverse warp maps points but not images."""
        field = np.zeros((6, 6, 6, 3), dtype=np.float32)
        link = DisplacementFieldLink(inverse=VolumeGrid(field, np.eye(4)), name="1Warp")
        chain = TransformChain([link, AffineLink(np.eye(4))], "diffusion", "session")

        assert chain.supports(TO_REFERENCE)
        assert not chain.supports(TO_MOVING)
        chain.require(TO_REFERENCE)
        with pytest.raises(TransformNotAvailableError, match="resampling images in \\['1Warp'\\]"):
            chain.require(TO_MOVING)
        volume = VolumeGrid(np.zeros((6, 6, 6)), np.eye(4))
        with pytest.raises(TransformNotAvailableError):
            chain.resample_image(volume, volume)

    def test_precompute_matches_direct_mapping(self):
        """The composed field reproduces the chain inside the grid."""
        chain = TransformChain(
            [AffineLink(_translation(1.5, -0.5, 2)), AffineLink(_scaling(1.2))],
            "diffusion",
            "session",
        )
        grid = VolumeGrid(np.zeros((12, 12, 12)), np.eye(4))
        composed = chain.precompute(grid, TO_REFERENCE)

        points = np.random.default_rng(1).uniform(1, 10, size=(40, 3))
        np.testing.assert_allclose(
            composed.map_points(points, TO_REFERENCE),
            chain.map_points(points, TO_REFERENCE),
            atol=1e-3,
        )
        assert composed.target_space == "session"
        assert composed.supports(TO_REFERENCE)
        assert not composed.supports(TO_MOVING)

    def test_precompute_supports_one_direction(self):
        chain = TransformChain([AffineLink(_translation(1))], "diffusion", "session")
        composed = chain.precompute(VolumeGrid(np.zeros((4, 4, 4)), np.eye(4)), TO_REFERENCE)
        with pytest.raises(TransformNotAvailableError):
            composed.map_points(np.zeros((1, 3)), TO_MOVING)

    def test_resample_image_shift(self):
        """A 1 mm shift moves the image content by one voxel."""
        ramp = np.broadcast_to(np.arange(6, dtype=np.float32)[:, None, None], (6, 6, 6))
        volume = VolumeGrid(ramp, np.eye(4), name="ramp")
        chain = TransformChain([AffineLink(_translation(1))], "diffusion", "session")

        resampled = chain.resample_image(volume, volume)

        np.testing.assert_allclose(resampled.data[:5], ramp[1:])
        assert resampled.name == "ramp"

    def test_resample_through_warp(self):
        """Images are pulled through the forward displacement field."""
        ramp = np.broadcast_to(np.arange(8, dtype=np.float32)[:, None, None], (8, 8, 8))
        volume = VolumeGrid(ramp, np.eye(4), name="ramp")
        field = np.zeros((8, 8, 8, 3), dtype=np.float32)
        field[..., 0] = 1.0
        link = DisplacementFieldLink(forward=VolumeGrid(field, np.eye(4)))
        chain = TransformChain([link], "diffusion", "session")

        resampled = chain.resample_image(volume, volume)

        np.testing.assert_allclose(resampled.data[:7], ramp[1:], atol=1e-4)

    def test_resample_4d_volume(self):
        data = np.zeros((4, 4, 4, 6), dtype=np.float32)
        data[..., 0] = 1.0
        data[..., 5] = 3.0
        volume = VolumeGrid(data, np.eye(4))
        chain = TransformChain([AffineLink(np.eye(4))], "diffusion", "session")

        resampled = chain.resample_image(volume, VolumeGrid(np.zeros((4, 4, 4)), np.eye(4)))

        assert resampled.data.shape == (4, 4, 4, 6)
        np.testing.assert_allclose(resampled.data, data)


class TestStreamlineTransformer:
    """Tests for StreamlineTransformer."""

    @pytest.fixture
    def chain(self):
        return TransformChain([AffineLink(_translation(10))], "diffusion", "session")

    @pytest.fixture
    def tracts(self):
        return StreamlineSet(
            [
                Streamline([[11.0, 0, 0], [12.0, 0, 0], [13.0, 0, 0]], seed_index=1),
                Streamline([[10.0, 1, 0], [10.0, 2, 0]]),
                Streamline([[20.0, 0, 0], [20.0, 0, 5]], seed_index=0),
            ],
            space="diffusion",
        )

    def test_to_reference(self, chain, tracts):
        mapped = StreamlineTransformer(batch_size=2).transform(tracts, chain)

        assert mapped.space == "session"
        assert len(mapped) == 3
        np.testing.assert_allclose(mapped[0].points[:, 0], [1, 2, 3])
        np.testing.assert_allclose(mapped[2].points, [[10, 0, 0], [10, 0, 5]])

    def test_seed_and_order_preserved(self, chain, tracts):
        mapped = StreamlineTransformer(batch_size=1).transform(tracts, chain)
        assert [s.seed_index for s in mapped] == [1, None, 0]
        assert [len(s) for s in mapped] == [3, 2, 2]

    def test_to_moving(self, chain, tracts):
        mapped = StreamlineTransformer().transform(tracts, chain, TO_MOVING)
        assert mapped.space == "diffusion"
        np.testing.assert_allclose(mapped[0].points[:, 0], [21, 22, 23])

    def test_empty_set(self, chain):
        mapped = StreamlineTransformer().transform(StreamlineSet([]), chain)
        assert len(mapped) == 0
        assert mapped.space == "session"
