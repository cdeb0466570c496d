"""Building images of a forest, reusing cached image files where possible."""

from __future__ import annotations

import logging
import os
import stat
from dataclasses import dataclass, field

from lvh.images.forest import ImageForest
from lvh.images.steps import ChdirStep, CreateImage, StepConf
from lvh.step import Step, do_steps


class BuildError(Exception):
    """Summary of failures while building images."""


@dataclass
class BuildConf:
    """How a set of images is built.

    dry_run creates empty files instead of images; force_rebuild ignores
    existing images; merge_steps combines consecutive steps where possible.
    """

    log: logging.Logger = field(default_factory=lambda: logging.getLogger("lvh.images"))
    dry_run: bool = False
    force_rebuild: bool = False
    merge_steps: bool = False


@dataclass
class BuildImageResult:
    """Outcome of building one image."""

    error: Exception | None = None
    cached_image_used: bool = False
    # why an existing image file was deleted, or ""
    cached_image_deleted: str = ""


@dataclass
class BuilderResult:
    """Outcome of building a set of images."""

    error: Exception | None = None
    image_results: dict[str, BuildImageResult] = field(default_factory=dict)

    def err(self) -> Exception | None:
        """A summary error, or None if nothing failed."""
        failures = [
            f"{image}: {res.error}"
            for image, res in self.image_results.items()
            if res.error is not None
        ]
        if not failures:
            return self.error
        summary = "images errors:" + "; ".join(failures)
        if self.error is None:
            return BuildError(summary)
        return BuildError(f"builder error:{self.error} {summary}")


def merge_steps(step1: Step, step2: Step) -> None:
    """Merge step2 into step1; raise if they cannot be merged."""
    merge = getattr(step1, "merge", None)
    if merge is None:
        raise TypeError(f"step1 ({step1!r}) not mergable")
    merge(step2)


def _build_dry_run(forest: ImageForest, image: str) -> None:
    if image not in forest.confs:
        raise LookupError(f"building image '{image}' failed, configuration not found")
    with open(os.path.join(forest.images_dir, image), "w"):
        pass


def _build_real(forest: ImageForest, log: logging.Logger, image: str, merge: bool) -> None:
    cnf = forest.confs.get(image)
    if cnf is None:
        raise LookupError(f"building image '{image}' failed, configuration not found")

    step_conf = StepConf(images_dir=forest.images_dir, img_conf=cnf, log=log)
    base_dir, path = os.path.split(forest.images_dir)
    steps: list[Step] = [CreateImage(step_conf), ChdirStep(step_conf, base_dir or ".")]

    # after the chdir a relative images dir must be taken from the new location
    if not os.path.isabs(step_conf.images_dir):
        step_conf = StepConf(images_dir=path, img_conf=cnf, log=log)

    for action in cnf.actions:
        try:
            next_steps = action.op.to_steps(step_conf)
        except Exception as exc:
            raise RuntimeError(
                f"action {action.comment} ('{type(action.op).__name__}') failed: {exc}"
            ) from exc
        for nxt in next_steps:
            if merge:
                try:
                    merge_steps(steps[-1], nxt)
                    continue
                except (TypeError, ValueError):
                    pass
            steps.append(nxt)

    try:
        do_steps(steps)
    except Exception:
        log.warning(
            "image file '%s' not deleted so that it can be inspected",
            os.path.join(forest.images_dir, image),
        )
        raise


class _BuildState:
    def __init__(self, forest: ImageForest, conf: BuildConf) -> None:
        self.forest = forest
        self.conf = conf
        self.result = BuilderResult()

    def build_image(self, image: str) -> BuildImageResult:
        res = self._do_build_image(image)
        self.result.image_results[image] = res
        return res

    def _skip_rebuild(self, image: str) -> BuildImageResult:
        try:
            fname = self.forest.image_filename(image)
        except LookupError as exc:
            return BuildImageResult(error=exc)

        try:
            st = os.stat(fname)
        except OSError:
            return BuildImageResult()

        if not stat.S_ISREG(st.st_mode):
            return BuildImageResult(
                error=OSError(f"'{fname}' is not a regular file. Bailing out.")
            )

        if self.conf.force_rebuild:
            _remove_quietly(fname)
            return BuildImageResult(
                cached_image_deleted=f"image '{fname}' was deleted because a rebuild was forced"
            )

        if not self.conf.dry_run and st.st_size == 0:
            _remove_quietly(fname)
            return BuildImageResult(
                cached_image_deleted=f"image '{fname}' was an empty file, and this was not a dry run"
            )

        parent = self.forest.parent_of(image)
        if parent:
            parent_res = self.result.image_results.get(parent)
            if parent_res is None or not parent_res.cached_image_used:
                _remove_quietly(fname)
                return BuildImageResult(
                    cached_image_deleted=(
                        f"image '{fname}' existed, but parent '{parent}' did not use the cache"
                    )
                )

        return BuildImageResult(cached_image_used=True)

    def _do_build_image(self, image: str) -> BuildImageResult:
        res = self._skip_rebuild(image)
        if res.error is not None or res.cached_image_used:
            return res
        try:
            if self.conf.dry_run:
                _build_dry_run(self.forest, image)
            else:
                _build_real(self.forest, self.conf.log, image, self.conf.merge_steps)
        except Exception as exc:
            res.error = exc
        return res


def _remove_quietly(fname: str) -> None:
    try:
        os.remove(fname)
    except OSError:
        pass


def build_image(forest: ImageForest, conf: BuildConf, image: str) -> BuilderResult:
    """Build an image after all of its ancestors, stopping at the first failure."""
    deps = forest.dependencies(image)
    state = _BuildState(forest, conf)
    images = [*deps, image]
    for name in images:
        res = state.build_image(name)
        if res.error is None:
            conf.log.info("image built successfully: %s (all deps: %s) %s", name, images, res)
        else:
            conf.log.warning("image build failed: %s (all deps: %s) %s", name, images, res)
            break
    return state.result


def build_all_images(forest: ImageForest, conf: BuildConf) -> BuilderResult:
    """Build every image, from the roots down."""
    return build_images(forest, conf, forest.root_images())


def build_images(forest: ImageForest, conf: BuildConf, queue: list[str]) -> BuilderResult:
    """Build the queued images and, after each success, its children."""
    state = _BuildState(forest, conf)
    pending = list(queue)
    conf.log.info("starting to build images: %s", ",".join(pending))
    while pending:
        image = pending.pop(0)
        res = state.build_image(image)
        if res.error is None:
            pending.extend(forest.children_of(image))
            conf.log.info(
                "image built successfully: %s (queue: %s) %s", image, ",".join(pending), res
            )
        else:
            conf.log.warning(
                "image build failed: %s (queue: %s) %s", image, ",".join(pending), res
            )
    return state.result