"""Picks an implicit reference image by majority vote over pairwise fits.

Every normalised registration names one image of its pair as the target,
i.e. the locally "bigger" (or "smaller") one. That image gets a win; the
image with the most wins becomes the reference. This is a vote, not a total
order, and can be non-transitive across three or more images.
"""

import functools
from typing import Iterable

import numpy as np

from .pairwise import PairwiseRegistration


def add_win(win_counts: np.ndarray, registration: PairwiseRegistration) -> np.ndarray:
    counts = win_counts.copy()
    counts[registration.target_index] += 1
    return counts


def count_wins(
    registrations: Iterable[PairwiseRegistration], num_images: int
) -> np.ndarray:
    return functools.reduce(
        add_win, registrations, np.zeros(num_images, dtype="int64")
    )


def merge_wins(*partial_counts: np.ndarray) -> np.ndarray:
    """Sums win tallies collected separately, e.g. by different workers."""
    return functools.reduce(np.add, partial_counts)


def select_reference(win_counts: np.ndarray) -> int:
    # argmax returns the first of several equal maxima
    return int(np.argmax(win_counts))
