"""Main registration orchestrator class."""

import enum
import itertools
import logging
import pathlib
from typing import List, Optional, Sequence, Tuple

import dask
import dask.diagnostics
import numpy as np
import skimage.exposure

from .. import transform_landmarks
from ..models import LandmarkImage, RegistrationResult, RegistrationTask, ScaleMode
from . import ranking, resampler
from .pairwise import PairwiseRegistration, build_registration

log = logging.getLogger(__name__)


class PipelineState(enum.Enum):
    INIT = "init"
    BUILD_PAIRS = "build_pairs"
    RANK_SIZES = "rank_sizes"
    SELECT_REFERENCE = "select_reference"
    RESAMPLE = "resample"
    ASSEMBLE = "assemble"
    DONE = "done"
    ERROR = "error"


def _build_chunk(images, pairs, family, orientation, show_matrices):
    """Builds the registrations of `pairs` and tallies their target wins."""
    registrations = [
        build_registration(images, ii, jj, family, orientation, show_matrices)
        for ii, jj in pairs
    ]
    return registrations, ranking.count_wins(registrations, len(images))


# --- QC Plotter ---
class QcPlotter:
    def __init__(self, task: RegistrationTask):
        self.task = task
        self.figures = []

    def plot_registration(
        self, registration: PairwiseRegistration, registered: LandmarkImage
    ):
        import matplotlib.pyplot as plt

        reference = registration.target
        fig, (ax1, ax2) = plt.subplots(1, 2, sharex=True, sharey=True)
        name1, name2 = self._get_truncated_names(reference.name, registration.source.name)

        ax1.imshow(_get_viz_img(reference.data[0]), cmap="Greys_r")
        ax2.imshow(_get_viz_img(registered.data[0]), cmap="Greys_r")
        ax1.set_title(f"Reference: {name1}", fontsize=8)
        ax2.set_title(f"Registered: {name2}", fontsize=8)

        for ax in (ax1, ax2):
            if reference.num_landmarks:
                ax.plot(*reference.landmarks.T, "o", alpha=0.7, color="lime", ms=4)
            if registered.num_landmarks:
                ax.plot(*registered.landmarks.T, "+", alpha=0.9, color="magenta", ms=6)

        rms = transform_landmarks.residual_rms(registration)
        log.info(f"Landmark RMS of {registration.pair_label}: {rms:.3f} px")
        fig.suptitle(
            f"{self.task.model_family.value.capitalize()} registration "
            f"(landmark RMS {rms:.2f} px)",
            fontsize=10,
        )
        self._set_figure_size(fig, reference.shape, 2)
        self._add_figure(fig, registration)

    def save_figures(self) -> List[pathlib.Path]:
        paths = []
        if len(self.figures) and (self.task.qc_out_dir is not None):
            import matplotlib.pyplot as plt

            qc_dir = pathlib.Path(self.task.qc_out_dir)
            qc_dir.mkdir(parents=True, exist_ok=True)
            for fig in self.figures:
                path = qc_dir / f"{fig.name}.jpg"
                fig.savefig(path, dpi=144, bbox_inches="tight")
                plt.close(fig)
                paths.append(path)
            self.figures = []
        return paths

    def _add_figure(self, fig, registration: PairwiseRegistration):
        fig.name = f"qc_registration-{registration.pair_label}"
        self.figures.append(fig)

    @staticmethod
    def _get_truncated_names(name1, name2):
        name1 = str(name1)
        name2 = str(name2)
        if len(name1) > 23:
            name1 = name1[:20] + "..."
        if len(name2) > 23:
            name2 = name2[:20] + "..."
        return name1, name2

    @staticmethod
    def _set_figure_size(fig, shape, num_subplots):
        im_h, im_w = shape
        if im_w < 500:
            im_h *= 500 / im_w
            im_w = 500
        _size_factor = np.divide([im_h, im_w], 2500).max()
        if _size_factor > 1:
            im_h, im_w = np.divide([im_h, im_w], _size_factor)
        fig.set_size_inches(im_w * num_subplots / 144, (im_h + 50) / 144)
        fig.tight_layout(pad=1.5)


def _get_viz_img(img):
    img = np.asarray(img, dtype="float64")
    in_range = np.percentile(img, [0.1, 99.9])
    if in_range[0] == in_range[1]:
        return np.zeros(img.shape, dtype="uint8")
    return (
        skimage.exposure.rescale_intensity(
            img, in_range=tuple(in_range), out_range="uint8"
        )
        .round()
        .astype("uint8")
    )


# --- Main Orchestrator ---
class MultiLandmarkAligner:
    """Registers every image of a list onto one reference image.

    One `execute` call walks BUILD_PAIRS -> [RANK_SIZES] -> SELECT_REFERENCE
    -> RESAMPLE -> ASSEMBLE -> DONE. Any failure moves to ERROR and the
    exception propagates; no partial output is returned.
    """

    def __init__(self, task: RegistrationTask, progress: bool = False):
        self.task = task
        self.progress = progress
        self.state = PipelineState.INIT
        self.plotter = QcPlotter(self.task)

    def execute(self, images: Sequence[LandmarkImage]) -> RegistrationResult:
        self.state = PipelineState.INIT
        try:
            return self._execute(list(images))
        except Exception:
            log.error(f"Registration aborted during '{self.state.value}'")
            self.state = PipelineState.ERROR
            raise

    def _execute(self, images: List[LandmarkImage]) -> RegistrationResult:
        task = self.task
        num_images = len(images)
        if num_images == 0:
            raise ValueError("No images provided for registration.")
        if task.scale_to.is_explicit and task.scale_to.index >= num_images:
            raise IndexError(
                f"Scale target index {task.scale_to.index} out of bounds "
                f"(0-{num_images - 1})"
            )

        self._enter(PipelineState.BUILD_PAIRS)
        log.info("Calculating transforms...")
        pairs = self._pairs(num_images)
        registrations, partial_wins = self._build_pairs(images, pairs)

        win_counts = None
        if task.scale_to.is_explicit:
            self._enter(PipelineState.SELECT_REFERENCE)
            reference_index = task.scale_to.index
        else:
            self._enter(PipelineState.RANK_SIZES)
            win_counts = ranking.merge_wins(
                np.zeros(num_images, dtype="int64"), *partial_wins
            )
            self._enter(PipelineState.SELECT_REFERENCE)
            reference_index = ranking.select_reference(win_counts)
            log.info(
                f"Scaling to the {task.scale_to.mode.value} image "
                f"'{images[reference_index].name}' (wins: {win_counts.tolist()})"
            )

        self._enter(PipelineState.RESAMPLE)
        log.info("Performing transforms...")
        to_reference = self._registrations_to(registrations, reference_index)
        resampled = self._compute(
            [
                dask.delayed(resampler.resample)(
                    reg,
                    task.interpolation,
                    task.stop_at_discontinuity,
                    task.discontinuity_threshold,
                    self.progress,
                )
                for reg in to_reference
            ]
        )

        self._enter(PipelineState.ASSEMBLE)
        outputs: List[Optional[LandmarkImage]] = [None] * num_images
        for reg, image in zip(to_reference, resampled):
            outputs[reg.source_index] = image
        reference = images[reference_index]
        outputs[reference_index] = reference.duplicate(f"{reference.name} final")

        qc_plot_paths = []
        if task.qc_out_dir is not None:
            for reg in to_reference:
                self.plotter.plot_registration(reg, outputs[reg.source_index])
            qc_plot_paths = [str(pp) for pp in self.plotter.save_figures()]

        self._enter(PipelineState.DONE)
        return RegistrationResult(
            images=outputs,
            reference_index=reference_index,
            registrations=registrations,
            win_counts=win_counts,
            qc_plot_paths=qc_plot_paths,
        )

    def _enter(self, state: PipelineState):
        log.debug(f"Pipeline state: {self.state.value} -> {state.value}")
        self.state = state

    def _pairs(self, num_images: int) -> List[Tuple[int, int]]:
        scale_to = self.task.scale_to
        if scale_to.is_explicit:
            return [(kk, scale_to.index) for kk in range(num_images) if kk != scale_to.index]
        return list(itertools.combinations(range(num_images), 2))

    def _build_pairs(self, images, pairs):
        """Builds all registrations in parallel chunks.

        Each chunk returns its registrations together with its own win
        tally; tallies are only merged after every chunk has finished.
        """
        if not pairs:
            return [], []
        n_chunks = min(len(pairs), self.task.n_workers or len(pairs))
        chunks = [pairs[ii::n_chunks] for ii in range(n_chunks)]
        results = self._compute(
            [
                dask.delayed(_build_chunk)(
                    images,
                    chunk,
                    self.task.model_family,
                    self.task.scale_to.mode,
                    self.task.show_matrices,
                )
                for chunk in chunks
            ]
        )
        registrations = [reg for regs, _ in results for reg in regs]
        # restore the order the pairs were requested in
        order = {pair: idx for idx, pair in enumerate(pairs)}
        registrations.sort(
            key=lambda reg: order[
                (reg.target_index, reg.source_index)
                if reg.swapped
                else (reg.source_index, reg.target_index)
            ]
        )
        return registrations, [wins for _, wins in results]

    def _registrations_to(self, registrations, reference_index):
        """Registrations ending at the reference, one per other image.

        A size vote is not transitive, so the reference may still be the
        source of some of its pairs; those pairs are turned around.
        """
        to_reference = []
        for reg in registrations:
            if reg.target_index == reference_index:
                to_reference.append(reg)
            elif reg.source_index == reference_index:
                log.warning(
                    f"{reg.target.name} ranked above the reference {reg.source.name}; "
                    f"registering it onto the reference with the inverse model"
                )
                to_reference.append(reg.reversed())
        return to_reference

    def _compute(self, delayed_tasks):
        if not delayed_tasks:
            return []
        kwargs = dict(scheduler="threads")
        if self.task.n_workers:
            kwargs["num_workers"] = self.task.n_workers
        if self.progress:
            with dask.diagnostics.ProgressBar():
                return list(dask.compute(*delayed_tasks, **kwargs))
        return list(dask.compute(*delayed_tasks, **kwargs))


def register_images(
    images: Sequence[LandmarkImage], task: Optional[RegistrationTask] = None
) -> List[LandmarkImage]:
    """Registers `images` with `task` and returns the index-aligned outputs."""
    task = task or RegistrationTask()
    return MultiLandmarkAligner(task).execute(images).images
