"""Steps that create and customise VM images with libguestfs tools."""

from __future__ import annotations

import logging
import os
import tempfile
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from lvh.arch import native_arch
from lvh.logcmd import run_and_log_command
from lvh.step import Result, Step

if TYPE_CHECKING:
    from lvh.images.config import ImgConf

# Tools used to build images.
MMDEBSTRAP = "mmdebstrap"
QEMU_IMG = "qemu-img"
VIRT_CUSTOMIZE = "virt-customize"
GUESTFISH = "guestfish"

BINARIES = (MMDEBSTRAP, QEMU_IMG, VIRT_CUSTOMIZE, GUESTFISH)

DEFAULT_CONF_FILE = "images.json"
DEFAULT_IMAGE_SIZE = "8G"

# Marker meaning the image should be deleted at cleanup if it exists.
DEL_IMAGE_IF_EXISTS = "DelImageIfExist"

ROOT_DEV = "/dev/vda"
ROOT_FS_TYPE = "ext4"
RESIZE_FS = "resize2fs"

EXT_LINUX_CONF = f"""
default linux
timeout 0

label linux
kernel /vmlinuz
append initrd=initrd.img root={ROOT_DEV} rw console=ttyS0
"""


def image_format_from_fname(fname: str) -> str:
    """Image format implied by a file name: qcow2 for .qcow2, raw otherwise."""
    ext = os.path.splitext(fname)[1]
    return "qcow2" if ext == ".qcow2" else "raw"


def resize_image(log: logging.Logger, img_fname: str, size: str) -> None:
    """Grow an image file and the root filesystem inside it."""
    run_and_log_command(log, [QEMU_IMG, "resize", img_fname, size])
    run_and_log_command(
        log,
        [GUESTFISH, "-a", img_fname, "--", "run", ":", RESIZE_FS, ROOT_DEV],
    )


@dataclass(eq=False)
class StepConf:
    """Configuration shared by the steps that build one image."""

    images_dir: str
    img_conf: ImgConf | None = None
    log: logging.Logger = field(
        default_factory=lambda: logging.getLogger("lvh.images")
    )


@dataclass
class ChdirStep(Step):
    """Change the working directory; cleanup changes back."""

    conf: StepConf
    dir: str
    old_dir: str | None = field(default=None, init=False)

    def do(self) -> Result:
        log = self.conf.log
        try:
            self.old_dir = os.getcwd()
        except OSError as exc:
            log.warning("failed to get current directory: %s", exc)
            raise
        try:
            os.chdir(self.dir)
        except OSError as exc:
            log.warning("failed to change directory: %s", exc)
            raise
        log.info("set current working dir to '%s'", self.dir)
        return Result.CONTINUE

    def cleanup(self) -> None:
        if self.old_dir is None:
            return
        try:
            os.chdir(self.old_dir)
        except OSError as exc:
            self.conf.log.warning("failed to change to old directory: %s", exc)


@dataclass
class VirtCustomizeStep(Step):
    """Run virt-customize on the image with the given arguments.

    virt-customize applies its operations in order, so consecutive steps on
    the same image can be merged into a single invocation.
    """

    conf: StepConf
    args: list[str] = field(default_factory=list)

    def do(self) -> Result:
        conf = self.conf
        img_fname = os.path.join(conf.images_dir, conf.img_conf.name)
        try:
            run_and_log_command(conf.log, [VIRT_CUSTOMIZE, "-a", img_fname, *self.args])
        except Exception as exc:
            conf.log.error(
                "error executing command for image %s: %s", conf.img_conf.name, exc
            )
            raise
        return Result.CONTINUE

    def cleanup(self) -> None:
        pass

    def merge(self, other: Step) -> None:
        """Append another step's arguments to this one."""
        if not isinstance(other, VirtCustomizeStep):
            raise TypeError(
                f"type {type(other).__name__} cannot be merged to a VirtCustomizeStep"
            )
        if other.conf is not self.conf:
            raise ValueError(
                "actions with different step configurations cannot be merged "
                f"({self.conf!r} vs {other.conf!r})"
            )
        self.args.extend(other.args)


@dataclass
class CreateImage(Step):
    """Create an image: from scratch for root images, from the parent otherwise."""

    conf: StepConf

    def _make_root_image(self) -> None:
        conf = self.conf
        img = conf.img_conf
        if img is None:
            raise ValueError("step configuration or image configuration is nil")
        log = conf.log
        img_fname = os.path.join(conf.images_dir, img.name)
        tar_fname = os.path.join(conf.images_dir, f"{img.name}.tar")
        bootable = native_arch().bootable(img.bootable)

        packages = (["linux-image-amd64"] if bootable else []) + list(img.packages or [])
        run_and_log_command(
            log, [MMDEBSTRAP, "sid", "--include", ",".join(packages), tar_fname]
        )
        try:
            img_size = img.image_size or DEFAULT_IMAGE_SIZE
            disk = f"{img_fname}=disk:{img_size}"
            if bootable:
                with tempfile.TemporaryDirectory(prefix="extlinux-") as tmpdir:
                    fname = os.path.join(tmpdir, "extlinux.conf")
                    with open(fname, "w", encoding="utf-8") as f:
                        f.write(EXT_LINUX_CONF)
                    os.chmod(fname, 0o722)
                    run_and_log_command(
                        log,
                        [
                            GUESTFISH, "-N", disk, "--",
                            "part-disk", ROOT_DEV, "mbr", ":",
                            "part-set-bootable", ROOT_DEV, "1", "true", ":",
                            "mkfs", ROOT_FS_TYPE, ROOT_DEV, ":",
                            "mount", ROOT_DEV, "/", ":",
                            "tar-in", tar_fname, "/", ":",
                            "extlinux", "/", ":",
                            "copy-in", fname, "/",
                        ],
                    )
            else:
                run_and_log_command(
                    log,
                    [
                        GUESTFISH, "-N", disk, "--",
                        "mkfs", ROOT_FS_TYPE, ROOT_DEV, ":",
                        "mount", ROOT_DEV, "/", ":",
                        "tar-in", tar_fname, "/",
                    ],
                )
        finally:
            try:
                os.remove(tar_fname)
            except OSError as exc:
                log.info("failed to remove tarfile: %s", exc)

        if image_format_from_fname(img_fname) == "qcow2":
            tmp_image = f"{img_fname}.img"
            os.rename(img_fname, tmp_image)
            try:
                run_and_log_command(
                    log,
                    [QEMU_IMG, "convert", "-f", "raw", "-O", "qcow2", tmp_image, img_fname],
                )
            finally:
                try:
                    os.remove(tmp_image)
                except OSError:
                    pass

    def _make_derived_image(self) -> None:
        conf = self.conf
        img = conf.img_conf
        log = conf.log
        par_fname = os.path.join(conf.images_dir, img.parent)
        img_fname = os.path.join(conf.images_dir, img.name)

        run_and_log_command(
            log,
            [
                QEMU_IMG, "convert",
                "-f", image_format_from_fname(par_fname),
                "-O", image_format_from_fname(img_fname),
                par_fname, img_fname,
            ],
        )

        # the parent's size is not always known, so resize whenever a size is set
        if img.image_size:
            resize_image(log, img_fname, img.image_size)

        if img.packages:
            run_and_log_command(
                log,
                [VIRT_CUSTOMIZE, "-a", img_fname, "--install", ",".join(img.packages)],
            )

    def do(self) -> Result:
        img = self.conf.img_conf
        try:
            if img is None or not img.parent:
                self._make_root_image()
            else:
                self._make_derived_image()
        except Exception as exc:
            name = img.name if img is not None else "?"
            self.conf.log.error("error building image %s: %s", name, exc)
            raise
        return Result.CONTINUE

    def cleanup(self) -> None:
        pass