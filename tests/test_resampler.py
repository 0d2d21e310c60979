"""
Unit tests for inverse-warp resampling
"""

import numpy as np
import pytest

from multilandmark.align import resampler
from multilandmark.align.fitter import TransformModel
from multilandmark.align.pairwise import PairwiseRegistration
from multilandmark.errors import NoninvertibleModel
from multilandmark.models import InterpolationMethod, LandmarkImage, ModelFamily


def _registration(source, target, matrix, family=ModelFamily.AFFINE):
    return PairwiseRegistration.create(
        [source, target], 0, 1, TransformModel(family, matrix)
    )


def _spike_plane():
    plane = np.full((5, 5), 10, dtype="float32")
    plane[3, 3] = 200
    return plane


class TestResample:
    @pytest.mark.parametrize("method", list(InterpolationMethod))
    @pytest.mark.parametrize("stop", [False, True])
    def test_identity_round_trip(self, method, stop):
        rng = np.random.default_rng(0)
        data = rng.integers(0, 256, size=(2, 6, 7)).astype("uint8")
        source = LandmarkImage("S", data, landmarks=[[1.0, 2.0], [3.0, 4.0]])
        target = LandmarkImage("T", np.zeros((2, 6, 7), dtype="uint8"))
        reg = _registration(source, target, np.eye(3))

        out = resampler.resample(reg, method, stop, 20.0)
        np.testing.assert_array_equal(out.data, data)
        np.testing.assert_array_equal(out.landmarks, source.landmarks)

    @pytest.mark.parametrize("method", list(InterpolationMethod))
    def test_out_of_bounds_pixels_stay_zero(self, method):
        source = LandmarkImage("S", np.full((4, 4), 7, dtype="uint8"))
        target = LandmarkImage("T", np.zeros((4, 4), dtype="uint8"))
        reg = _registration(source, target, [[1, 0, 2], [0, 1, 0]])

        out = resampler.resample(reg, method)
        np.testing.assert_array_equal(out.data[0, :, :2], 0)
        np.testing.assert_array_equal(out.data[0, :, 2:], 7)

    def test_half_pixel_right_edge_is_out_of_bounds(self):
        source = LandmarkImage("S", np.full((4, 4), 7.0))
        target = LandmarkImage("T", np.zeros((4, 4)))
        # target x maps to source x + 0.6
        reg = _registration(source, target, [[1, 0, -0.6], [0, 1, 0]])

        out = resampler.resample(reg, InterpolationMethod.BILINEAR)
        np.testing.assert_array_equal(out.data[0, :, 3], 0)
        np.testing.assert_allclose(out.data[0, :, :3], 7.0)

    def test_bilinear_blends_across_spike(self):
        source = LandmarkImage("S", _spike_plane())
        target = LandmarkImage("T", np.zeros((1, 1)))
        reg = _registration(
            source, target, [[1, 0, -2.3], [0, 1, -2.2]], ModelFamily.TRANSLATION
        )

        out = resampler.resample(reg, InterpolationMethod.BILINEAR)
        assert out.data[0, 0, 0] == pytest.approx(21.4, rel=1e-5)

    @pytest.mark.parametrize("method", list(InterpolationMethod))
    def test_discontinuity_keeps_nearest_pixel(self, method):
        source = LandmarkImage("S", _spike_plane())
        target = LandmarkImage("T", np.zeros((1, 1)))
        reg = _registration(
            source, target, [[1, 0, -2.3], [0, 1, -2.2]], ModelFamily.TRANSLATION
        )

        out = resampler.resample(reg, method, True, 50.0)
        assert out.data[0, 0, 0] == pytest.approx(10.0)

    def test_discontinuity_below_threshold_interpolates(self):
        source = LandmarkImage("S", _spike_plane())
        target = LandmarkImage("T", np.zeros((1, 1)))
        reg = _registration(
            source, target, [[1, 0, -2.3], [0, 1, -2.2]], ModelFamily.TRANSLATION
        )

        out = resampler.resample(reg, InterpolationMethod.BILINEAR, True, 200.0)
        assert out.data[0, 0, 0] == pytest.approx(21.4, rel=1e-5)

    @pytest.mark.parametrize(
        "method", [InterpolationMethod.NONE, InterpolationMethod.NEAREST_NEIGHBOR]
    )
    def test_unsampled_methods_pick_nearest_pixel(self, method):
        source = LandmarkImage("S", np.array([[0.0, 100.0, 200.0]]))
        target = LandmarkImage("T", np.zeros((1, 1)))
        # target x maps to source x + 0.9
        reg = _registration(source, target, [[1, 0, -0.9], [0, 1, 0]])

        out = resampler.resample(reg, method)
        assert out.data[0, 0, 0] == 100.0

    def test_output_layout(self):
        data = np.arange(3 * 4 * 5, dtype="uint16").reshape(3, 4, 5)
        source = LandmarkImage("S", data, slice_labels=["a", "b", "c"])
        target = LandmarkImage("T", np.zeros((2, 6, 8), dtype="float32"))
        reg = _registration(source, target, np.eye(3))

        out = resampler.resample(reg, InterpolationMethod.NEAREST_NEIGHBOR)
        assert out.name == "S final"
        assert out.data.shape == (2, 6, 8)
        assert out.data.dtype == np.uint16
        assert out.slice_labels == ["a", "b"]
        np.testing.assert_array_equal(out.data[:, :4, :5], data[:2])
        np.testing.assert_array_equal(out.data[:, 4:, :], 0)

    def test_integer_output_is_rounded_and_clipped(self):
        source = LandmarkImage("S", np.array([[0, 255]], dtype="uint8"))
        target = LandmarkImage("T", np.zeros((1, 1), dtype="uint8"))
        # samples halfway between 0 and 255
        reg = _registration(source, target, [[1, 0, -0.5], [0, 1, 0]])

        out = resampler.resample(reg, InterpolationMethod.BILINEAR)
        assert out.data[0, 0, 0] == 128

    def test_landmarks_are_mapped_into_target_frame(self):
        source = LandmarkImage("S", np.zeros((10, 10)), landmarks=[[1.0, 1.0]])
        target = LandmarkImage("T", np.zeros((20, 20)))
        reg = _registration(source, target, [[2, 0, 1], [0, 2, 3]])

        out = resampler.resample(reg, InterpolationMethod.NONE)
        np.testing.assert_allclose(out.landmarks, [[3.0, 5.0]])

    def test_noninvertible_model_raises(self):
        source = LandmarkImage("S", np.zeros((4, 4)))
        target = LandmarkImage("T", np.zeros((4, 4)))
        reg = _registration(source, target, [[1, 1, 0], [1, 1, 0]])
        with pytest.raises(NoninvertibleModel) as excinfo:
            resampler.resample(reg)
        assert excinfo.value.source == "S"


class TestDiscontinuityMask:
    def test_marks_neighbours_of_outlier(self):
        plane = np.zeros((3, 3))
        plane[0, 0] = 100
        mask = resampler.discontinuity_mask(plane, 50.0)
        np.testing.assert_array_equal(
            mask, [[True, True, False], [True, True, False], [False, False, False]]
        )

    def test_threshold_is_strict(self):
        plane = np.array([[0.0, 50.0]])
        assert not resampler.discontinuity_mask(plane, 50.0).any()
        assert resampler.discontinuity_mask(plane, 49.9).all()


class TestInBounds:
    def test_bounds(self):
        sx = np.array([-0.1, 0.0, 3.49, 3.5])
        valid = resampler.in_bounds(sx, np.zeros(4), (4, 4))
        np.testing.assert_array_equal(valid, [False, True, True, False])
