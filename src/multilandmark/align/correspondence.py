"""Pairs two ordered landmark lists into point correspondences."""

from dataclasses import dataclass

import numpy as np


@dataclass(frozen=True, eq=False)
class PointCorrespondenceSet:
    """Landmark i of the source corresponds to landmark i of the target."""

    source_points: np.ndarray
    target_points: np.ndarray

    def __post_init__(self):
        src = np.array(self.source_points, dtype="float64").reshape(-1, 2)
        dst = np.array(self.target_points, dtype="float64").reshape(-1, 2)
        if src.shape != dst.shape:
            raise ValueError(
                f"Source and target points must have the same shape, "
                f"got {src.shape} and {dst.shape}"
            )
        src.flags.writeable = False
        dst.flags.writeable = False
        object.__setattr__(self, "source_points", src)
        object.__setattr__(self, "target_points", dst)

    @classmethod
    def from_landmarks(cls, source_landmarks, target_landmarks) -> "PointCorrespondenceSet":
        # excess points on the longer list have no partner and are dropped
        src = np.asarray(source_landmarks, dtype="float64").reshape(-1, 2)
        dst = np.asarray(target_landmarks, dtype="float64").reshape(-1, 2)
        n = min(len(src), len(dst))
        return cls(src[:n], dst[:n])

    def __len__(self):
        return len(self.source_points)
