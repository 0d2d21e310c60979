"""Reads images and landmark files from disk and writes registered images."""

import csv
import logging
import pathlib
from functools import cached_property
from typing import List, Optional, Union

import numpy as np
import tifffile

from .models import LandmarkImage

log = logging.getLogger(__name__)

PathLike = Union[str, pathlib.Path]


def default_landmarks_path(image_path: PathLike) -> pathlib.Path:
    """`<image stem>.csv` next to the image."""
    image_path = pathlib.Path(image_path)
    return image_path.with_name(f"{_stem(image_path)}.csv")


def _stem(path: pathlib.Path) -> str:
    name = path.name
    for suffix in (".ome.tiff", ".ome.tif", ".tiff", ".tif"):
        if name.lower().endswith(suffix):
            return name[: -len(suffix)]
    return path.stem


def _is_number(value: str) -> bool:
    try:
        float(value)
    except ValueError:
        return False
    return True


def read_landmarks_csv(path: PathLike) -> np.ndarray:
    """
    Reads ordered (x, y) landmarks from a CSV file.

    The file either has a header naming `x` and `y` columns (case-insensitive,
    other columns such as an ImageJ row index are ignored) or no header, in
    which case the first two columns are x and y. Blank lines and lines
    starting with '#' are skipped.
    """
    points = []
    x_col, y_col = 0, 1
    with open(path, mode="r", encoding="utf-8-sig", newline="") as infile:
        rows = (
            row
            for row in csv.reader(infile)
            if any(cc.strip() for cc in row) and not row[0].lstrip().startswith("#")
        )
        for line_num, row in enumerate(rows):
            cells = [cc.strip() for cc in row]
            if line_num == 0 and not all(_is_number(cc) for cc in cells[:2]):
                header = [cc.lower() for cc in cells]
                if "x" not in header or "y" not in header:
                    raise ValueError(
                        f"Landmark file {path} has a header without 'x' and 'y' columns"
                    )
                x_col, y_col = header.index("x"), header.index("y")
                continue
            try:
                points.append((float(cells[x_col]), float(cells[y_col])))
            except (IndexError, ValueError) as e:
                raise ValueError(f"Invalid landmark row in {path}: {row}") from e
    log.debug(f"Read {len(points)} landmarks from {path}")
    return np.array(points, dtype="float64").reshape(-1, 2)


def write_landmarks_csv(path: PathLike, landmarks: np.ndarray) -> pathlib.Path:
    path = pathlib.Path(path)
    with open(path, mode="w", newline="") as outfile:
        writer = csv.writer(outfile)
        writer.writerow(["x", "y"])
        writer.writerows(np.asarray(landmarks).reshape(-1, 2).tolist())
    return path


class ImageHandler:
    """
    Represents an image file on disk together with its landmark file and
    provides access to its slices, slice labels and landmarks.
    """

    def __init__(self, path: PathLike, landmarks_path: Optional[PathLike] = None):
        self.path = pathlib.Path(path)
        self.landmarks_path = (
            pathlib.Path(landmarks_path)
            if landmarks_path
            else default_landmarks_path(self.path)
        )

    def is_valid(self) -> bool:
        return self.path.is_file()

    @cached_property
    def name(self) -> str:
        return _stem(self.path)

    @cached_property
    def _tiff(self):
        if not self.is_valid():
            raise FileNotFoundError(f"Image file not found: {self.path}")
        with tifffile.TiffFile(self.path) as tif:
            series = tif.series[0]
            axes = series.axes
            data = series.asarray()
            metadata = tif.imagej_metadata or {}
        return axes, data, metadata

    @cached_property
    def data(self) -> np.ndarray:
        """Image slices as (slices, height, width)."""
        axes, data, _ = self._tiff
        if "S" in axes:
            raise ValueError(
                f"Image {self.path} has {axes} axes; multi-sample (RGB) images are not supported"
            )
        if data.ndim < 2:
            raise ValueError(f"Image {self.path} is not 2D (shape {data.shape})")
        return data.reshape(-1, *data.shape[-2:])

    @cached_property
    def slice_labels(self) -> List[Optional[str]]:
        _, _, metadata = self._tiff
        labels = metadata.get("Labels")
        num_slices = self.data.shape[0]
        if not labels or len(labels) != num_slices:
            return [None] * num_slices
        return [str(ll) if ll else None for ll in labels]

    @cached_property
    def landmarks(self) -> np.ndarray:
        if not self.landmarks_path.is_file():
            log.warning(f"No landmark file for {self.path} (looked for {self.landmarks_path})")
            return np.empty((0, 2))
        return read_landmarks_csv(self.landmarks_path)

    def to_landmark_image(self) -> LandmarkImage:
        log.info(
            f"Loaded {self.name}: {self.data.shape[0]} slice(s) of "
            f"{self.data.shape[2]}x{self.data.shape[1]}, {len(self.landmarks)} landmarks"
        )
        return LandmarkImage(
            name=self.name,
            data=self.data,
            landmarks=self.landmarks,
            slice_labels=self.slice_labels,
        )


def load_landmark_image(
    path: PathLike, landmarks_path: Optional[PathLike] = None
) -> LandmarkImage:
    return ImageHandler(path, landmarks_path).to_landmark_image()


_IMAGEJ_DTYPES = (np.uint8, np.uint16, np.float32)


def write_image(image: LandmarkImage, out_dir: PathLike) -> pathlib.Path:
    """Writes `image` to `<out_dir>/<name>.tif`, ImageJ-flavoured when possible."""
    out_dir = pathlib.Path(out_dir)
    out_dir.mkdir(parents=True, exist_ok=True)
    out_path = out_dir / f"{image.name}.tif"

    data = image.data
    if data.dtype.type in _IMAGEJ_DTYPES:
        metadata = {"axes": "ZYX"}
        if any(image.slice_labels):
            metadata["Labels"] = [ll or "" for ll in image.slice_labels]
        tifffile.imwrite(out_path, data, imagej=True, metadata=metadata)
    else:
        tifffile.imwrite(out_path, data)
    log.debug(f"Wrote {out_path}")
    return out_path
