"""
Unit tests for image and landmark file I/O
"""

import numpy as np
import pytest
import tifffile

from multilandmark import image_handler
from multilandmark.models import LandmarkImage


class TestLandmarkCsv:
    def test_header_with_x_and_y(self, tmp_path):
        path = tmp_path / "pts.csv"
        path.write_text("x,y\n1.5,2\n3,4.25\n")
        np.testing.assert_array_equal(
            image_handler.read_landmarks_csv(path), [[1.5, 2.0], [3.0, 4.25]]
        )

    def test_imagej_results_table(self, tmp_path):
        path = tmp_path / "pts.csv"
        path.write_text(" ,X,Y\n1,10,20\n2,30,40\n")
        np.testing.assert_array_equal(
            image_handler.read_landmarks_csv(path), [[10.0, 20.0], [30.0, 40.0]]
        )

    def test_headerless_with_comments_and_blank_lines(self, tmp_path):
        path = tmp_path / "pts.csv"
        path.write_text("# exported points\n1,2\n\n3,4\n")
        np.testing.assert_array_equal(
            image_handler.read_landmarks_csv(path), [[1.0, 2.0], [3.0, 4.0]]
        )

    def test_empty_file_has_no_landmarks(self, tmp_path):
        path = tmp_path / "pts.csv"
        path.write_text("x,y\n")
        assert image_handler.read_landmarks_csv(path).shape == (0, 2)

    def test_header_without_y_is_rejected(self, tmp_path):
        path = tmp_path / "pts.csv"
        path.write_text("x,z\n1,2\n")
        with pytest.raises(ValueError):
            image_handler.read_landmarks_csv(path)

    def test_invalid_row_is_rejected(self, tmp_path):
        path = tmp_path / "pts.csv"
        path.write_text("x,y\n1,2\n3,abc\n")
        with pytest.raises(ValueError):
            image_handler.read_landmarks_csv(path)

    def test_write_then_read(self, tmp_path):
        landmarks = np.array([[1.25, 2.5], [10.0, 20.0]])
        path = image_handler.write_landmarks_csv(tmp_path / "pts.csv", landmarks)
        np.testing.assert_array_equal(image_handler.read_landmarks_csv(path), landmarks)


class TestImageHandler:
    def test_default_landmarks_path(self):
        assert image_handler.default_landmarks_path("/data/img.ome.tif").name == "img.csv"
        assert image_handler.default_landmarks_path("/data/img.tiff").name == "img.csv"

    def test_reads_stack_labels_and_landmarks(self, tmp_path):
        data = np.arange(2 * 5 * 6, dtype="uint16").reshape(2, 5, 6)
        tifffile.imwrite(
            tmp_path / "stack.tif",
            data,
            imagej=True,
            metadata={"axes": "ZYX", "Labels": ["dapi", "cd45"]},
        )
        (tmp_path / "stack.csv").write_text("x,y\n1,1\n4,3\n")

        image = image_handler.load_landmark_image(tmp_path / "stack.tif")
        assert image.name == "stack"
        np.testing.assert_array_equal(image.data, data)
        assert image.slice_labels == ["dapi", "cd45"]
        assert image.num_landmarks == 2

    def test_plain_2d_tiff_without_landmarks(self, tmp_path):
        tifffile.imwrite(tmp_path / "plain.tif", np.ones((4, 3), dtype="uint8"))
        handler = image_handler.ImageHandler(tmp_path / "plain.tif")
        assert handler.data.shape == (1, 4, 3)
        assert handler.slice_labels == [None]
        assert handler.landmarks.shape == (0, 2)

    def test_missing_file(self, tmp_path):
        handler = image_handler.ImageHandler(tmp_path / "missing.tif")
        assert not handler.is_valid()
        with pytest.raises(FileNotFoundError):
            handler.data

    def test_rgb_is_rejected(self, tmp_path):
        tifffile.imwrite(
            tmp_path / "rgb.tif", np.zeros((4, 4, 3), dtype="uint8"), photometric="rgb"
        )
        with pytest.raises(ValueError):
            image_handler.ImageHandler(tmp_path / "rgb.tif").data


class TestWriteImage:
    def test_imagej_round_trip(self, tmp_path):
        image = LandmarkImage(
            "A final",
            np.arange(2 * 3 * 4, dtype="uint8").reshape(2, 3, 4),
            slice_labels=["one", "two"],
        )
        path = image_handler.write_image(image, tmp_path / "out")
        assert path.name == "A final.tif"

        handler = image_handler.ImageHandler(path)
        assert handler.name == "A final"
        np.testing.assert_array_equal(handler.data, image.data)
        assert handler.slice_labels == ["one", "two"]

    def test_non_imagej_dtype(self, tmp_path):
        image = LandmarkImage("F", np.linspace(0, 1, 12).reshape(3, 4))
        path = image_handler.write_image(image, tmp_path)
        np.testing.assert_array_equal(
            tifffile.imread(path).reshape(image.data.shape), image.data
        )
