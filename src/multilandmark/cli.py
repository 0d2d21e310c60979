"""Command-line interface for multilandmark."""

import argparse
import csv
import logging
import os
import pathlib
import sys
import time
from typing import List, Optional, Tuple

import tqdm

from . import __version__, image_handler
from .align.aligner import MultiLandmarkAligner
from .errors import RegistrationError
from .models import (
    InterpolationMethod,
    LandmarkImage,
    ModelFamily,
    RegistrationResult,
    RegistrationTask,
    ScaleSelection,
)

log = logging.getLogger(__name__)

ImageEntry = Tuple[pathlib.Path, Optional[pathlib.Path]]


def create_parser() -> argparse.ArgumentParser:
    """Creates the argument parser for the CLI."""
    os.environ["COLUMNS"] = "80"
    parser = argparse.ArgumentParser(
        prog="multilandmark",
        description=(
            "Register images onto a common frame using landmark "
            "correspondences and resample them into it."
        ),
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )
    parser.add_argument(
        "images",
        nargs="*",
        metavar="IMAGE",
        help="TIFF images to register, in landmark order.",
    )
    parser.add_argument(
        "--batch-csv",
        metavar="FILE",
        help="CSV file with an 'image' column and an optional 'landmarks' column.",
    )
    parser.add_argument(
        "--landmarks",
        nargs="+",
        metavar="CSV",
        help="Landmark CSV per image (default: <image stem>.csv next to each image).",
    )
    parser.add_argument(
        "--model",
        choices=[mm.value for mm in ModelFamily],
        default=ModelFamily.SIMILARITY.value,
        help="Transform family fit from the landmarks.",
    )
    parser.add_argument(
        "--interpolation",
        choices=[mm.value for mm in InterpolationMethod],
        default=InterpolationMethod.BILINEAR.value,
        help="Interpolation used when resampling.",
    )
    parser.add_argument(
        "--no-stop-at-discontinuity",
        dest="stop_at_discontinuity",
        action="store_false",
        help="Interpolate across discontinuities instead of falling back to the nearest pixel.",
    )
    parser.add_argument(
        "--discontinuity-threshold",
        type=float,
        default=128.0,
        metavar="VALUE",
        help="Neighbouring pixel difference that counts as a discontinuity.",
    )
    parser.add_argument(
        "--scale-to",
        type=ScaleSelection.parse,
        default="biggest",
        metavar="TARGET",
        help="'biggest', 'smallest', or the index of the IMAGE to scale everything to.",
    )
    parser.add_argument(
        "--show-matrices",
        action="store_true",
        help="Log the matrix of every fitted transform.",
    )
    parser.add_argument(
        "--out-dir",
        type=str,
        default="multilandmark-out",
        metavar="DIR",
        help="Output directory for registered images.",
    )
    parser.add_argument(
        "--qc-out-dir",
        type=str,
        default=None,
        metavar="DIR",
        help="Output directory for QC plots (no plots when omitted).",
    )
    parser.add_argument(
        "--workers",
        type=int,
        default=None,
        metavar="N",
        help="Number of worker threads (default: dask's default).",
    )
    parser.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="Enable verbose logging.",
    )
    parser.add_argument(
        "-V",
        "--version",
        action="version",
        version=f"%(prog)s {__version__}",
    )
    return parser


def prepare_batch_entries(batch_csv: str) -> List[ImageEntry]:
    """Reads the batch CSV into (image path, landmark path) entries."""
    log.info(f"Reading batch images from: {batch_csv}")
    entries: List[ImageEntry] = []
    base_dir = pathlib.Path(batch_csv).parent
    try:
        with open(batch_csv, mode="r", encoding="utf-8-sig") as infile:
            reader = csv.DictReader(infile)
            if not reader.fieldnames:
                raise ValueError("CSV file appears to be empty or has no header.")
            reader.fieldnames = [
                ff.strip().lower().replace("-", "_") for ff in reader.fieldnames
            ]
            if "image" not in reader.fieldnames:
                raise ValueError("CSV missing required header: image")

            for row in reader:
                image = (row.get("image") or "").strip()
                if not image:
                    continue
                landmarks = (row.get("landmarks") or "").strip()
                entries.append(
                    (
                        base_dir / image,
                        base_dir / landmarks if landmarks else None,
                    )
                )
        log.info(f"Prepared {len(entries)} images from CSV file.")
        return entries
    except FileNotFoundError:
        log.error(f"Batch CSV file not found: {batch_csv}")
        raise


def prepare_entries(
    args: argparse.Namespace, parser: argparse.ArgumentParser
) -> List[ImageEntry]:
    if bool(args.images) == bool(args.batch_csv):
        parser.error("Provide either IMAGE paths or --batch-csv, but not both.")
    if args.batch_csv:
        if args.landmarks:
            parser.error("--landmarks cannot be combined with --batch-csv.")
        return prepare_batch_entries(args.batch_csv)

    landmarks = args.landmarks or [None] * len(args.images)
    if len(landmarks) != len(args.images):
        parser.error(
            f"Got {len(args.images)} images but {len(landmarks)} landmark files."
        )
    return [
        (pathlib.Path(ii), pathlib.Path(ll) if ll else None)
        for ii, ll in zip(args.images, landmarks)
    ]


def select_landmark_images(
    images: List[LandmarkImage], scale_to: ScaleSelection
) -> Tuple[List[LandmarkImage], ScaleSelection]:
    """Keeps the images that have landmarks and re-indexes an explicit target."""
    kept = [idx for idx, image in enumerate(images) if image.num_landmarks]
    for image in images:
        if not image.num_landmarks:
            log.warning(f"Skipping {image.name}: it has no landmarks.")
    if len(kept) <= 1:
        raise ValueError("There must be at least two images that have landmarks.")
    # outputs are written as "<name> final.tif" into one directory
    names = [images[idx].name for idx in kept]
    duplicates = sorted({nn for nn in names if names.count(nn) > 1})
    if duplicates:
        raise ValueError(
            f"Image names must be unique, got duplicates: {', '.join(duplicates)}"
        )
    if scale_to.is_explicit:
        if scale_to.index >= len(images):
            raise ValueError(
                f"Scale target {scale_to.index} out of bounds (0-{len(images) - 1})."
            )
        if scale_to.index not in kept:
            raise ValueError(
                f"Scale target {images[scale_to.index].name} has no landmarks."
            )
        scale_to = ScaleSelection.explicit(kept.index(scale_to.index))
    return [images[idx] for idx in kept], scale_to


def build_task(args: argparse.Namespace, scale_to: ScaleSelection) -> RegistrationTask:
    interpolation = InterpolationMethod(args.interpolation)
    stop_at_discontinuity = args.stop_at_discontinuity
    if interpolation is InterpolationMethod.NONE and stop_at_discontinuity:
        log.debug("Interpolation is 'none'; ignoring discontinuity options.")
        stop_at_discontinuity = False
    return RegistrationTask(
        interpolation=interpolation,
        model_family=ModelFamily(args.model),
        stop_at_discontinuity=stop_at_discontinuity,
        discontinuity_threshold=args.discontinuity_threshold,
        scale_to=scale_to,
        show_matrices=args.show_matrices,
        n_workers=args.workers,
        qc_out_dir=args.qc_out_dir,
    )


def write_outputs(result: RegistrationResult, out_dir: str) -> List[pathlib.Path]:
    written = []
    for image in tqdm.tqdm(result.images, desc="Writing images", unit="image"):
        path = image_handler.write_image(image, out_dir)
        image_handler.write_landmarks_csv(path.with_suffix(".csv"), image.landmarks)
        written.append(path)
    return written


def report_summary(
    result: RegistrationResult, written: List[pathlib.Path], duration: float
):
    """Prints the final summary to the console."""
    reference = result.images[result.reference_index]
    print("\n--- Registration Summary ---")
    print(f"Images registered: {len(result.images)}")
    print(f"Reference image: {reference.name} (#{result.reference_index})")
    if result.win_counts is not None:
        print(f"Size ranking wins: {result.win_counts.tolist()}")
    for path in written:
        print(f"  - {path}")
    for path in result.qc_plot_paths:
        print(f"  - QC plot: {path}")
    print(f"\nTotal execution time: {duration:.2f} seconds")


def main(argv: Optional[List[str]] = None):
    """Main entry point for the CLI."""
    parser = create_parser()
    args = parser.parse_args(argv)

    log_level = logging.DEBUG if args.verbose else logging.INFO
    logging.basicConfig(
        level=log_level,
        format="%(asctime)s - %(levelname)s - %(name)s - %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
        force=True,
    )

    if args.discontinuity_threshold < 0:
        parser.error("--discontinuity-threshold must be non-negative.")
    if args.workers is not None and args.workers < 1:
        parser.error("--workers must be at least 1.")

    start_time = time.time()
    try:
        entries = prepare_entries(args, parser)
        images = [image_handler.load_landmark_image(ii, ll) for ii, ll in entries]
    except (OSError, ValueError) as e:
        log.critical(f"Failed to load inputs: {e}", exc_info=True)
        print(f"\nError: {e}", file=sys.stderr)
        sys.exit(1)

    try:
        images, scale_to = select_landmark_images(images, args.scale_to)
    except ValueError as e:
        parser.error(str(e))

    try:
        task = build_task(args, scale_to)
        result = MultiLandmarkAligner(task, progress=True).execute(images)
        written = write_outputs(result, args.out_dir)
    except RegistrationError as e:
        log.error(f"Registration failed: {e}")
        print(f"\nError: {e}", file=sys.stderr)
        sys.exit(1)
    except (OSError, ValueError) as e:
        log.critical(f"A critical error occurred: {e}", exc_info=True)
        print(f"\nError: {e}", file=sys.stderr)
        sys.exit(1)

    duration = time.time() - start_time
    report_summary(result, written, duration)
    sys.exit(0)


if __name__ == "__main__":
    main()
