import numpy as np
import pytest

from multilandmark.models import LandmarkImage

BASE_LANDMARKS = np.array([[10.0, 10.0], [90.0, 10.0], [50.0, 80.0]])


def make_image(name, size, scale, dtype="uint8", num_slices=1):
    yy, xx = np.mgrid[:size, :size]
    plane = ((xx + 2 * yy) % 256).astype(dtype)
    data = np.stack([plane] * num_slices)
    return LandmarkImage(name=name, data=data, landmarks=BASE_LANDMARKS * scale)


@pytest.fixture
def abc_images():
    """A (100px), B (200px, landmarks x2) and C (50px, landmarks x0.5)."""
    return [
        make_image("A", 100, 1.0),
        make_image("B", 200, 2.0),
        make_image("C", 50, 0.5),
    ]
