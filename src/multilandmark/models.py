"""Core data structures for the multilandmark application."""

import dataclasses
import enum
from typing import List, Optional, Sequence

import numpy as np


class ModelFamily(enum.Enum):
    """Transform families that can be fit from landmark correspondences."""

    TRANSLATION = "translation"
    RIGID = "rigid"
    SIMILARITY = "similarity"
    AFFINE = "affine"


class InterpolationMethod(enum.Enum):
    """How a non-integer source coordinate is turned into a pixel value."""

    NONE = "none"
    NEAREST_NEIGHBOR = "nearest-neighbor"
    BILINEAR = "bilinear"
    BICUBIC = "bicubic"


class ScaleMode(enum.Enum):
    BIGGEST = "biggest"
    SMALLEST = "smallest"
    EXPLICIT = "explicit"


@dataclasses.dataclass(frozen=True)
class ScaleSelection:
    """Which image every other image is scaled onto.

    Either an explicit index into the image list, or the "biggest" /
    "smallest" image as decided by pairwise size ranking.
    """

    mode: ScaleMode
    index: Optional[int] = None

    def __post_init__(self):
        if self.mode is ScaleMode.EXPLICIT:
            if self.index is None or self.index < 0:
                raise ValueError(
                    f"An explicit scale target needs a non-negative index, got {self.index}"
                )
        elif self.index is not None:
            raise ValueError(f"Scale mode '{self.mode.value}' does not take an index")

    @classmethod
    def biggest(cls) -> "ScaleSelection":
        return cls(ScaleMode.BIGGEST)

    @classmethod
    def smallest(cls) -> "ScaleSelection":
        return cls(ScaleMode.SMALLEST)

    @classmethod
    def explicit(cls, index: int) -> "ScaleSelection":
        return cls(ScaleMode.EXPLICIT, int(index))

    @classmethod
    def parse(cls, value: str) -> "ScaleSelection":
        """Parses 'biggest', 'smallest' or an integer image index."""
        value = str(value).strip().lower()
        if value == ScaleMode.BIGGEST.value:
            return cls.biggest()
        if value == ScaleMode.SMALLEST.value:
            return cls.smallest()
        try:
            return cls.explicit(int(value))
        except ValueError as e:
            raise ValueError(
                f"Invalid scale target '{value}': expected 'biggest', 'smallest' "
                f"or an image index"
            ) from e

    @property
    def is_explicit(self) -> bool:
        return self.mode is ScaleMode.EXPLICIT

    def __str__(self):
        if self.is_explicit:
            return f"image #{self.index}"
        return self.mode.value


@dataclasses.dataclass(eq=False)
class LandmarkImage:
    """A stack of 2D slices with an ordered list of (x, y) landmarks.

    `data` is stored as (slices, height, width); a plain 2D array is taken as
    a single slice. Landmark order defines correspondence between images.
    """

    name: str
    data: np.ndarray
    landmarks: np.ndarray = dataclasses.field(
        default_factory=lambda: np.empty((0, 2))
    )
    slice_labels: Optional[List[Optional[str]]] = None

    def __post_init__(self):
        data = np.asarray(self.data)
        if data.ndim == 2:
            data = data[np.newaxis]
        if data.ndim != 3:
            raise ValueError(
                f"Image '{self.name}' must be 2D or a stack of 2D slices, got shape {data.shape}"
            )
        self.data = data

        landmarks = np.asarray(self.landmarks, dtype="float64")
        if landmarks.size == 0:
            landmarks = np.empty((0, 2))
        if landmarks.ndim != 2 or landmarks.shape[1] != 2:
            raise ValueError(
                f"Landmarks of '{self.name}' must have shape (N, 2), got {landmarks.shape}"
            )
        self.landmarks = landmarks

        if self.slice_labels is None:
            self.slice_labels = [None] * self.num_slices
        elif len(self.slice_labels) != self.num_slices:
            raise ValueError(
                f"Image '{self.name}' has {self.num_slices} slices but "
                f"{len(self.slice_labels)} slice labels"
            )
        else:
            self.slice_labels = list(self.slice_labels)

    @property
    def num_slices(self) -> int:
        return self.data.shape[0]

    @property
    def height(self) -> int:
        return self.data.shape[1]

    @property
    def width(self) -> int:
        return self.data.shape[2]

    @property
    def shape(self):
        """(height, width) of every slice."""
        return self.data.shape[1:]

    @property
    def num_landmarks(self) -> int:
        return len(self.landmarks)

    def duplicate(self, name: Optional[str] = None) -> "LandmarkImage":
        return LandmarkImage(
            name=self.name if name is None else name,
            data=self.data.copy(),
            landmarks=self.landmarks.copy(),
            slice_labels=list(self.slice_labels),
        )


@dataclasses.dataclass
class RegistrationTask:
    """Parameters for a single multi-image registration run."""

    interpolation: InterpolationMethod = InterpolationMethod.BILINEAR
    model_family: ModelFamily = ModelFamily.SIMILARITY
    stop_at_discontinuity: bool = True
    discontinuity_threshold: float = 128.0
    scale_to: ScaleSelection = dataclasses.field(default_factory=ScaleSelection.biggest)
    show_matrices: bool = False
    n_workers: Optional[int] = None
    qc_out_dir: Optional[str] = None

    def __post_init__(self):
        if self.discontinuity_threshold < 0:
            raise ValueError(
                f"Discontinuity threshold must be non-negative, got {self.discontinuity_threshold}"
            )


@dataclasses.dataclass
class RegistrationResult:
    """Result of a registration run, index-aligned with the input images."""

    images: List[LandmarkImage]
    reference_index: int
    registrations: Sequence = ()
    win_counts: Optional[np.ndarray] = None
    qc_plot_paths: List[str] = dataclasses.field(default_factory=list)
