"""Closed-form least-squares fits of 2D transform families from landmarks.

Every family is a linear map y = A @ x + b stored as a 2x3 matrix. Fitting
and inversion are dispatched per family through the `_FITTERS` and
`_INVERTERS` tables; the set of families is fixed by `ModelFamily`.
"""

import logging
import math
from dataclasses import dataclass

import numpy as np

from ..errors import IllDefinedDataPoints, NoninvertibleModel, NotEnoughDataPoints
from ..models import ModelFamily
from .correspondence import PointCorrespondenceSet

log = logging.getLogger(__name__)

MIN_NUM_MATCHES = {
    ModelFamily.TRANSLATION: 1,
    ModelFamily.RIGID: 2,
    ModelFamily.SIMILARITY: 2,
    ModelFamily.AFFINE: 3,
}

_TOLERANCE = 1e-10


@dataclass(frozen=True, eq=False)
class TransformModel:
    """A fitted 2D transform mapping (x, y) points of one image to another."""

    family: ModelFamily
    matrix: np.ndarray

    def __post_init__(self):
        mx = np.array(self.matrix, dtype="float64")
        if mx.shape == (3, 3):
            mx = mx[:2]
        if mx.shape != (2, 3):
            raise ValueError(f"Transform matrix must be 2x3 or 3x3, got {mx.shape}")
        mx.flags.writeable = False
        object.__setattr__(self, "matrix", mx)

    @classmethod
    def identity(cls, family: ModelFamily = ModelFamily.AFFINE) -> "TransformModel":
        return cls(family, np.eye(3))

    @property
    def linear(self) -> np.ndarray:
        return self.matrix[:, :2]

    @property
    def translation(self) -> np.ndarray:
        return self.matrix[:, 2]

    @property
    def determinant(self) -> float:
        mx = self.matrix
        return float(mx[0, 0] * mx[1, 1] - mx[0, 1] * mx[1, 0])

    @property
    def params(self) -> np.ndarray:
        """3x3 homogeneous matrix, as used by skimage.transform."""
        return np.vstack([self.matrix, [0, 0, 1]])

    def __call__(self, points_xy) -> np.ndarray:
        points = np.asarray(points_xy, dtype="float64").reshape(-1, 2)
        return points @ self.linear.T + self.translation

    def inverse(self) -> "TransformModel":
        return invert_model(self)

    def apply_inverse(self, points_xy) -> np.ndarray:
        return self.inverse()(points_xy)


def fit_model(
    family: ModelFamily, correspondences: PointCorrespondenceSet
) -> TransformModel:
    """Fits `family` so it maps source points onto target points.

    Raises NotEnoughDataPoints when there are fewer correspondences than the
    family needs, and IllDefinedDataPoints when the points are too degenerate
    to define a unique solution.
    """
    n_matches = len(correspondences)
    min_matches = MIN_NUM_MATCHES[family]
    if n_matches < min_matches:
        raise NotEnoughDataPoints(
            f"{family.value.capitalize()} model needs at least {min_matches} "
            f"correspondences, got {n_matches}"
        )
    matrix = _FITTERS[family](
        correspondences.source_points, correspondences.target_points
    )
    log.debug(f"Fitted {family.value} model from {n_matches} correspondences")
    return TransformModel(family, matrix)


def invert_model(model: TransformModel) -> TransformModel:
    """Returns the model mapping target points back onto source points."""
    return TransformModel(model.family, _INVERTERS[model.family](model.matrix))


# --- Fitting ---
def _centered(src, dst):
    src_center = src.mean(axis=0)
    dst_center = dst.mean(axis=0)
    return src - src_center, dst - dst_center, src_center, dst_center


def _compose(linear, src_center, dst_center):
    # pick b so that the source centroid lands on the target centroid
    return np.hstack([linear, (dst_center - linear @ src_center)[:, np.newaxis]])


def _rotation_sums(p, q):
    cos_sum = np.sum(p * q)
    sin_sum = np.sum(p[:, 0] * q[:, 1] - p[:, 1] * q[:, 0])
    return cos_sum, sin_sum


def _fit_translation(src, dst):
    shift = (dst - src).mean(axis=0)
    return np.array([[1.0, 0.0, shift[0]], [0.0, 1.0, shift[1]]])


def _fit_rigid(src, dst):
    p, q, src_center, dst_center = _centered(src, dst)
    cos_sum, sin_sum = _rotation_sums(p, q)
    if math.hypot(cos_sum, sin_sum) < _TOLERANCE:
        raise IllDefinedDataPoints(
            "Landmarks coincide; the rotation of a rigid model is undefined"
        )
    theta = math.atan2(sin_sum, cos_sum)
    cos, sin = math.cos(theta), math.sin(theta)
    linear = np.array([[cos, -sin], [sin, cos]])
    return _compose(linear, src_center, dst_center)


def _fit_similarity(src, dst):
    p, q, src_center, dst_center = _centered(src, dst)
    spread = np.sum(p * p)
    if spread < _TOLERANCE:
        raise IllDefinedDataPoints(
            "Source landmarks coincide; scale and rotation of a similarity model are undefined"
        )
    cos_sum, sin_sum = _rotation_sums(p, q)
    scos = cos_sum / spread
    ssin = sin_sum / spread
    linear = np.array([[scos, -ssin], [ssin, scos]])
    return _compose(linear, src_center, dst_center)


def _fit_affine(src, dst):
    p, q, src_center, dst_center = _centered(src, dst)
    covariance = p.T @ p
    det = covariance[0, 0] * covariance[1, 1] - covariance[0, 1] ** 2
    if det <= _TOLERANCE * covariance[0, 0] * covariance[1, 1]:
        raise IllDefinedDataPoints(
            "Source landmarks are colinear; an affine model is undefined"
        )
    cross_covariance = q.T @ p
    linear = np.linalg.solve(covariance, cross_covariance.T).T
    return _compose(linear, src_center, dst_center)


_FITTERS = {
    ModelFamily.TRANSLATION: _fit_translation,
    ModelFamily.RIGID: _fit_rigid,
    ModelFamily.SIMILARITY: _fit_similarity,
    ModelFamily.AFFINE: _fit_affine,
}


# --- Inversion ---
def _inverse_from_linear(linear_inv, translation):
    return np.hstack([linear_inv, (-linear_inv @ translation)[:, np.newaxis]])


def _invert_translation(mx):
    return np.array([[1.0, 0.0, -mx[0, 2]], [0.0, 1.0, -mx[1, 2]]])


def _invert_rigid(mx):
    # rotation matrices are orthonormal
    return _inverse_from_linear(mx[:, :2].T, mx[:, 2])


def _invert_similarity(mx):
    scos, ssin = mx[0, 0], mx[1, 0]
    scale_sq = scos**2 + ssin**2
    if scale_sq < _TOLERANCE:
        raise NoninvertibleModel("Similarity model has zero scale")
    linear_inv = np.array([[scos, ssin], [-ssin, scos]]) / scale_sq
    return _inverse_from_linear(linear_inv, mx[:, 2])


def _invert_affine(mx):
    linear = mx[:, :2]
    det = linear[0, 0] * linear[1, 1] - linear[0, 1] * linear[1, 0]
    if abs(det) < _TOLERANCE:
        raise NoninvertibleModel(f"Affine model is singular (determinant {det:g})")
    linear_inv = np.array([[linear[1, 1], -linear[0, 1]], [-linear[1, 0], linear[0, 0]]])
    return _inverse_from_linear(linear_inv / det, mx[:, 2])


_INVERTERS = {
    ModelFamily.TRANSLATION: _invert_translation,
    ModelFamily.RIGID: _invert_rigid,
    ModelFamily.SIMILARITY: _invert_similarity,
    ModelFamily.AFFINE: _invert_affine,
}
