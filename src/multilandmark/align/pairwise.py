"""Builds direction-normalised registrations between two landmark images."""

import logging
from dataclasses import dataclass
from functools import cached_property
from typing import Sequence, Tuple

import numpy as np

from ..errors import RegistrationError
from ..models import LandmarkImage, ModelFamily, ScaleMode
from .correspondence import PointCorrespondenceSet
from .fitter import TransformModel, fit_model

log = logging.getLogger(__name__)


@dataclass(frozen=True, eq=False)
class PairwiseRegistration:
    """A fitted model mapping `source` pixel coordinates onto `target`.

    Instances are built already normalised (see `build_registration`) and
    are never modified afterwards.
    """

    source: LandmarkImage
    target: LandmarkImage
    model: TransformModel
    source_index: int
    target_index: int
    source_shape: Tuple[int, int]
    target_shape: Tuple[int, int]
    swapped: bool = False

    @classmethod
    def create(
        cls,
        images: Sequence[LandmarkImage],
        source_index: int,
        target_index: int,
        model: TransformModel,
        swapped: bool = False,
    ) -> "PairwiseRegistration":
        source, target = images[source_index], images[target_index]
        return cls(
            source=source,
            target=target,
            model=model,
            source_index=source_index,
            target_index=target_index,
            source_shape=tuple(source.shape),
            target_shape=tuple(target.shape),
            swapped=swapped,
        )

    @property
    def source_width(self) -> int:
        return self.source_shape[1]

    @property
    def source_height(self) -> int:
        return self.source_shape[0]

    @property
    def target_width(self) -> int:
        return self.target_shape[1]

    @property
    def target_height(self) -> int:
        return self.target_shape[0]

    @property
    def pair_label(self) -> str:
        return f"from_{self.source.name}_to_{self.target.name}"

    @cached_property
    def inverse_model(self) -> TransformModel:
        """Model mapping target pixel coordinates back into the source."""
        try:
            return self.model.inverse()
        except RegistrationError as e:
            e.for_pair(self.source.name, self.target.name)
            raise

    def map_to_source(self, points_xy) -> np.ndarray:
        return self.inverse_model(points_xy)

    def reversed(self) -> "PairwiseRegistration":
        """The same pair with source and target exchanged."""
        return PairwiseRegistration(
            source=self.target,
            target=self.source,
            model=self.inverse_model,
            source_index=self.target_index,
            target_index=self.source_index,
            source_shape=self.target_shape,
            target_shape=self.source_shape,
            swapped=not self.swapped,
        )

    def format_matrix(self) -> str:
        mx = self.model.matrix
        return (
            f"Transforming from {self.source.name} to {self.target.name} "
            f"has the following matrix:\n"
            f"[{mx[0, 0]}, {mx[0, 1]}]\n"
            f"[{mx[1, 0]}, {mx[1, 1]}]\n"
            f"[{mx[0, 2]}, {mx[1, 2]}]"
        )


def needs_swap(determinant: float, orientation: ScaleMode) -> bool:
    """Whether a fitted A->B model should be flipped to B->A.

    The signed determinant is compared: under `BIGGEST` a model with det < 1
    is flipped, under `SMALLEST` one with det > 1. A reflected fit (det < 0)
    is therefore always flipped under `BIGGEST` and never under `SMALLEST`.
    An explicit target keeps the input order so that every pair ends at the
    chosen image.
    """
    if orientation is ScaleMode.BIGGEST:
        return determinant < 1
    if orientation is ScaleMode.SMALLEST:
        return determinant > 1
    return False


def build_registration(
    images: Sequence[LandmarkImage],
    index_a: int,
    index_b: int,
    family: ModelFamily,
    orientation: ScaleMode,
    show_matrices: bool = False,
) -> PairwiseRegistration:
    """Fits `family` from image `index_a` to image `index_b` and normalises it.

    The returned registration may have source and target exchanged relative
    to the arguments, according to `orientation`. Fitting and inversion
    errors propagate with the image pair attached.
    """
    image_a, image_b = images[index_a], images[index_b]
    correspondences = PointCorrespondenceSet.from_landmarks(
        image_a.landmarks, image_b.landmarks
    )
    try:
        model = fit_model(family, correspondences)
    except RegistrationError as e:
        e.for_pair(image_a.name, image_b.name)
        raise

    registration = PairwiseRegistration.create(images, index_a, index_b, model)
    if needs_swap(model.determinant, orientation):
        log.debug(
            f"Determinant {model.determinant:.4g} of {registration.pair_label}; "
            f"swapping source and target"
        )
        registration = registration.reversed()

    if show_matrices:
        log.info(registration.format_matrix())
    return registration
