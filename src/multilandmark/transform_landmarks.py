"""Functions for mapping landmark points through fitted registrations."""

import numpy as np
import skimage.transform

from .align.correspondence import PointCorrespondenceSet


def _tform(model) -> skimage.transform.AffineTransform:
    """Converts a TransformModel to a skimage AffineTransform."""
    return skimage.transform.AffineTransform(matrix=model.params)


def map_points(model, points_xy) -> np.ndarray:
    points = np.asarray(points_xy, dtype="float64").reshape(-1, 2)
    if len(points) == 0:
        return np.empty((0, 2))
    return _tform(model)(points)


def map_landmarks(registration) -> np.ndarray:
    """Source landmarks expressed in the target image's pixel frame."""
    return map_points(registration.model, registration.source.landmarks)


def landmark_residuals(registration) -> np.ndarray:
    """
    Distance, in target pixels, between each mapped source landmark and its
    corresponding target landmark.
    """
    matches = PointCorrespondenceSet.from_landmarks(
        registration.source.landmarks, registration.target.landmarks
    )
    mapped = map_points(registration.model, matches.source_points)
    return np.linalg.norm(mapped - matches.target_points, axis=1)


def residual_rms(registration) -> float:
    residuals = landmark_residuals(registration)
    if residuals.size == 0:
        return 0.0
    return float(np.sqrt(np.mean(residuals**2)))
