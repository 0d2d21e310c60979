"""Inverse-warps a source image into the frame of its registration target.

Every target pixel is mapped back through the inverse model and sampled from
the source, so each output pixel is written at most once. Pixels that map
outside the source keep the background value 0.
"""

import logging

import numpy as np
import scipy.ndimage as ndi
import skimage.transform
import tqdm

from .. import transform_landmarks
from ..models import InterpolationMethod, LandmarkImage
from .pairwise import PairwiseRegistration

log = logging.getLogger(__name__)

# Spline order handed to skimage.transform.warp. Order 3 is a cubic B-spline
# with prefiltering, not the cubic-convolution kernel some image tools call
# "bicubic"; both pass through the samples but differ between them.
_SPLINE_ORDER = {
    InterpolationMethod.BILINEAR: 1,
    InterpolationMethod.BICUBIC: 3,
}

# Mapped coordinates are snapped to this many decimals so that float noise in
# the inverse model cannot push an on-grid sample off the grid or out of bounds.
_COORDINATE_DECIMALS = 9


def source_coordinates(registration: PairwiseRegistration):
    """(sx, sy) source coordinates for every pixel of the target frame."""
    height, width = registration.target_shape
    yy, xx = np.mgrid[:height, :width]
    points = np.column_stack([xx.ravel(), yy.ravel()]).astype("float64")
    mapped = np.round(registration.map_to_source(points), _COORDINATE_DECIMALS)
    return mapped[:, 0].reshape(height, width), mapped[:, 1].reshape(height, width)


def in_bounds(sx: np.ndarray, sy: np.ndarray, source_shape) -> np.ndarray:
    height, width = source_shape
    return (sx >= 0) & (sx + 0.5 < width) & (sy >= 0) & (sy + 0.5 < height)


def discontinuity_mask(plane: np.ndarray, threshold: float) -> np.ndarray:
    """True where any 8-connected neighbour differs by more than `threshold`.

    Neighbours outside the image are ignored; the "nearest" border mode only
    repeats pixels that are already part of the clipped neighbourhood.
    """
    plane = plane.astype("float64")
    footprint = np.ones((3, 3), dtype=bool)
    upper = ndi.maximum_filter(plane, footprint=footprint, mode="nearest")
    lower = ndi.minimum_filter(plane, footprint=footprint, mode="nearest")
    return np.maximum(upper - plane, plane - lower) > threshold


def interpolate(
    plane: np.ndarray,
    sx: np.ndarray,
    sy: np.ndarray,
    valid: np.ndarray,
    method: InterpolationMethod,
) -> np.ndarray:
    """Samples `plane` at the `valid` entries of the coordinate grid (sx, sy)."""
    xs, ys = sx[valid], sy[valid]
    # no sub-pixel sampling: both pick the nearest pixel
    if method in (InterpolationMethod.NONE, InterpolationMethod.NEAREST_NEIGHBOR):
        return plane[_round_half_up(ys), _round_half_up(xs)].astype("float64")
    warped = skimage.transform.warp(
        plane.astype("float64"),
        np.array([sy, sx]),
        order=_SPLINE_ORDER[method],
        mode="edge",
        clip=False,
        preserve_range=True,
    )
    return warped[valid]


def resample_plane(
    plane: np.ndarray,
    sx: np.ndarray,
    sy: np.ndarray,
    valid: np.ndarray,
    method: InterpolationMethod,
    discontinuities: np.ndarray = None,
) -> np.ndarray:
    """Resamples one source slice onto the target grid described by (sx, sy)."""
    out = np.zeros(sx.shape, dtype="float64")
    if not valid.any():
        return out
    values = interpolate(plane, sx, sy, valid, method)
    if discontinuities is not None:
        xs, ys = sx[valid], sy[valid]
        xp, yp = _round_half_up(xs), _round_half_up(ys)
        values = np.where(
            discontinuities[yp, xp], plane[yp, xp].astype("float64"), values
        )
    out[valid] = values
    return out


def resample(
    registration: PairwiseRegistration,
    interpolation: InterpolationMethod = InterpolationMethod.BILINEAR,
    stop_at_discontinuity: bool = False,
    discontinuity_threshold: float = 128.0,
    progress: bool = False,
) -> LandmarkImage:
    """Warps `registration.source` into the frame of `registration.target`.

    The result has the target's width and height, min(source, target) slices,
    the source's dtype and slice labels, and carries the source landmarks
    mapped into the target frame. Raises NoninvertibleModel (with the pair
    attached) when the model cannot be inverted.
    """
    source, target = registration.source, registration.target
    num_slices = min(source.num_slices, target.num_slices)

    sx, sy = source_coordinates(registration)
    valid = in_bounds(sx, sy, registration.source_shape)
    log.debug(
        f"Resampling {registration.pair_label}: {valid.sum()} of {valid.size} "
        f"target pixels map inside the source"
    )

    out = np.zeros((num_slices, *registration.target_shape), dtype=source.data.dtype)
    slices = tqdm.tqdm(
        range(num_slices),
        desc=f"Transforming {source.name}",
        unit="slice",
        disable=not progress or num_slices <= 1,
    )
    for idx in slices:
        plane = source.data[idx]
        discontinuities = None
        if stop_at_discontinuity:
            discontinuities = discontinuity_mask(plane, discontinuity_threshold)
        values = resample_plane(plane, sx, sy, valid, interpolation, discontinuities)
        out[idx] = _cast_like(values, source.data.dtype)

    return LandmarkImage(
        name=f"{source.name} final",
        data=out,
        landmarks=transform_landmarks.map_landmarks(registration),
        slice_labels=source.slice_labels[:num_slices],
    )


def _round_half_up(coords: np.ndarray) -> np.ndarray:
    return np.floor(coords + 0.5).astype("int64")


def _cast_like(values: np.ndarray, dtype) -> np.ndarray:
    dtype = np.dtype(dtype)
    if dtype == np.bool_:
        return values >= 0.5
    if np.issubdtype(dtype, np.integer):
        info = np.iinfo(dtype)
        return np.clip(np.round(values), info.min, info.max).astype(dtype)
    return values.astype(dtype)
