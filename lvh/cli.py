"""Command line interface: build images and kernels, and run VMs."""

from __future__ import annotations

import argparse
import json
import logging
import os
import sys
import time
from importlib.metadata import PackageNotFoundError, version as _dist_version
from typing import Callable, Sequence

from lvh.arch import native_arch
from lvh.images.build import BuildConf, build_all_images, build_images
from lvh.images.config import ImagesConf, ImgConf, example_images_conf
from lvh.images.forest import ImageForest
from lvh.images.steps import DEFAULT_CONF_FILE
from lvh.kernels.conf import (
    DEFAULT_CONFIG_GROUPS,
    Conf,
    KernelConf,
    get_config_group_names,
)
from lvh.kernels.manage import (
    add_kernel,
    build_kernel,
    fetch_kernel,
    init_dir,
    load_dir,
    remove_kernel,
)
from lvh.kernels.url_examples import get_examples_text
from lvh.runner import RunConf, parse_port_forward, start_qemu

try:
    VERSION = _dist_version("lvh")
except PackageNotFoundError:
    VERSION = ""

_DIR_HELP = "directory to place kernels"
_ARCH_HELP = (
    "target architecture to configure the kernel, e.g. 'amd64' or 'arm64' "
    "(default to native architecture)"
)


class _StderrHandler(logging.StreamHandler):
    """A stream handler that always writes to the current sys.stderr."""

    @property
    def stream(self):  # type: ignore[override]
        return sys.stderr

    @stream.setter
    def stream(self, value) -> None:
        pass


class _CommaList(argparse.Action):
    """Collect comma separated values; repeated flags accumulate."""

    def __call__(self, parser, namespace, values, option_string=None):
        current = getattr(namespace, self.dest, None) or []
        setattr(namespace, self.dest, [*current, *(v for v in values.split(",") if v)])


def _default_arch() -> str:
    try:
        return native_arch().value
    except ValueError:
        return "amd64"


def _logger() -> logging.Logger:
    log = logging.getLogger("lvh")
    if not any(isinstance(h, _StderrHandler) for h in log.handlers):
        handler = _StderrHandler()
        handler.setFormatter(logging.Formatter("%(levelname)s %(message)s"))
        log.addHandler(handler)
    log.setLevel(logging.INFO)
    return log


# --- images -----------------------------------------------------------------


def _images_build(args: argparse.Namespace) -> int:
    log = _logger()
    config_fname = os.path.join(args.dir, DEFAULT_CONF_FILE)
    with open(config_fname, encoding="utf-8") as f:
        data = json.load(f)
    if not isinstance(data, list):
        raise ValueError(f"'{config_fname}' must hold a list of image configurations")

    cnf = ImagesConf(
        dir=os.path.abspath(os.path.join(args.dir, "images")),
        images=[ImgConf.from_dict(item) for item in data],
    )
    forest = ImageForest(cnf, False)
    bld_conf = BuildConf(
        log=log,
        dry_run=args.dry_run,
        force_rebuild=args.force_rebuild,
        merge_steps=args.merge_steps,
    )

    start = time.monotonic()
    if args.image is None:
        res = build_all_images(forest, bld_conf)
    else:
        res = build_images(forest, bld_conf, list(args.image))
    elapsed = time.monotonic() - start

    err = res.err()
    if err is not None:
        log.error("building images failed: %s", err)
    else:
        log.info("images built successfully (time elapsed: %.3fs)", elapsed)

    for img, ir in res.image_results.items():
        if ir.error is None:
            print(
                f"image:{img:<10} cachedImageUsed:{str(ir.cached_image_used).lower()} "
                f"cachedImageDeleted:{ir.cached_image_deleted}"
            )

    if err is not None:
        raise err
    return 0


def _images_example(args: argparse.Namespace) -> int:
    confs = [img.to_dict() for img in example_images_conf()]
    sys.stdout.write(json.dumps(confs, indent=4))
    return 0


# --- kernels ----------------------------------------------------------------


def _kernels_init(args: argparse.Namespace) -> int:
    groups = args.config_groups if args.config_groups is not None else DEFAULT_CONFIG_GROUPS
    conf = Conf()
    try:
        conf.add_groups_common_opts(*groups)
    except ValueError:
        # unknown groups leave the common options untouched
        pass
    init_dir(_logger(), args.dir, conf, force=args.force, backup_conf=args.backup_conf)
    return 0


def _kernels_list(args: argparse.Namespace) -> int:
    kd = load_dir(args.dir)
    for k in kd.conf.kernels:
        print(f"{k.name:<13} {k.url}")
    return 0


def _kernels_add(args: argparse.Namespace) -> int:
    kconf = KernelConf(name=args.name, url=args.url)
    kconf.add_groups_opts(*(args.config_groups or []))
    kconf.validate()

    if args.just_print_config:
        sys.stdout.write(json.dumps(kconf.to_dict(), indent=4))
        return 0

    add_kernel(_logger(), args.dir, kconf, backup_conf=args.backup_conf, fetch=args.fetch)
    return 0


def _kernels_remove(args: argparse.Namespace) -> int:
    remove_kernel(_logger(), args.dir, args.kernel, backup_conf=args.backup_conf)
    return 0


def _kernels_configure(args: argparse.Namespace) -> int:
    kd = load_dir(args.dir)
    kd.configure_kernel(_logger(), args.kernel, args.arch)
    return 0


def _kernels_raw_configure(args: argparse.Namespace) -> int:
    kd = load_dir(args.dir)
    kd.raw_configure(_logger(), args.kernel_dir, args.kernel_name or None, args.arch)
    return 0


def _kernels_build(args: argparse.Namespace) -> int:
    build_kernel(_logger(), args.dir, args.kernel, fetch=False, arch=args.arch)
    return 0


def _kernels_fetch(args: argparse.Namespace) -> int:
    fetch_kernel(_logger(), args.dir, args.kernel)
    return 0


# --- run --------------------------------------------------------------------


def _run(args: argparse.Namespace) -> int:
    log = _logger()
    try:
        forwards = parse_port_forward(args.port or [])
    except ValueError as exc:
        raise ValueError(f"Port flags: {exc}") from exc

    rcnf = RunConf(
        image=args.image,
        kernel_fname=args.kernel,
        qemu_print=args.qemu_cmd_print,
        disable_hardware_accel=args.no_hw_accel,
        daemonize=args.daemonize,
        console_log_file=args.console_log_file,
        verbose=args.verbose,
        forwarded_ports=forwards,
        logger=log,
        host_mount=args.host_mount,
        serial_port=args.serial_port,
        cpu=args.cpu,
        mem=args.mem,
        cpu_kind=args.cpu_kind,
        root_dev=args.root_dev,
        qemu_monitor_port=args.qemu_monitor_port,
        qemu_arch=args.qemu_arch,
    )

    start = time.monotonic()
    try:
        start_qemu(rcnf)
    except Exception as exc:
        print(f"Execution took {time.monotonic() - start:.3f}s")
        raise RuntimeError(f"Qemu exited with an error: {exc}") from exc
    print(f"Execution took {time.monotonic() - start:.3f}s")
    return 0


def _version(args: argparse.Namespace) -> int:
    print(VERSION)
    return 0


# --- parser -----------------------------------------------------------------


def _add_dir(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--dir", required=True, help=_DIR_HELP)


def _add_parser(
    subparsers, name: str, func: Callable[[argparse.Namespace], int], **kwargs
) -> argparse.ArgumentParser:
    parser = subparsers.add_parser(name, **kwargs)
    parser.set_defaults(func=func)
    return parser


def _build_images_parser(subparsers) -> None:
    images = subparsers.add_parser("images", help="Build VM images")
    sub = images.add_subparsers(dest="images_command", required=True)

    build = _add_parser(sub, "build", _images_build, help="Build VM images")
    build.add_argument(
        "--dir",
        required=True,
        help="directory to keep the images (configuration will be saved in "
        "<dir>/images.json and images in <dir>/images)",
    )
    build.add_argument(
        "-i", "--image", action="append", default=None,
        help="images to build. If empty, all images will be built.",
    )
    build.add_argument(
        "--force-rebuild", action="store_true",
        help="rebuild all images, even if they exist",
    )
    build.add_argument(
        "--dry-run", action="store_true",
        help="do the whole thing, but instead of building actual images create empty files",
    )
    build.add_argument(
        "--merge-steps", action=argparse.BooleanOptionalAction, default=True,
        help="Merge steps when possible to improve performance.",
    )

    _add_parser(sub, "example-config", _images_example, help="Print an example config")


def _build_kernels_parser(subparsers) -> None:
    group_help = (
        "add configuration options based on the following predefined groups: "
        + ",".join(get_config_group_names())
    )
    kernels = subparsers.add_parser(
        "kernels", aliases=["kernel", "k"], help="build and pull kernels"
    )
    sub = kernels.add_subparsers(dest="kernels_command", required=True)

    init = _add_parser(
        sub, "init", _kernels_init, help="initialize a directory for the kernel builder"
    )
    init.add_argument("--force", action="store_true", help="force init")
    init.add_argument("--backup-conf", action="store_true", help="backup configuration")
    init.add_argument("--config-groups", action=_CommaList, default=None, help=group_help)
    _add_dir(init)

    lst = _add_parser(
        sub, "list", _kernels_list,
        help="list available kernels (by reading config file in directory)",
    )
    _add_dir(lst)

    add = _add_parser(
        sub, "add", _kernels_add,
        help="add kernel (by updating config file in directory)",
        epilog=get_examples_text(),
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    add.add_argument("name")
    add.add_argument("url")
    add.add_argument("--config-groups", action=_CommaList, default=None, help=group_help)
    add.add_argument(
        "--just-print-config", action="store_true",
        help="do not actually add the kernel. Just print its config.",
    )
    add.add_argument("--fetch", action="store_true", help="fetch URL")
    add.add_argument("--backup-conf", action="store_true", help="backup configuration")
    _add_dir(add)

    remove = _add_parser(sub, "remove", _kernels_remove, help="remove kernel")
    remove.add_argument("kernel")
    remove.add_argument("--backup-conf", action="store_true", help="backup configuration")
    _add_dir(remove)

    configure = _add_parser(sub, "configure", _kernels_configure, help="configure kernel")
    configure.add_argument("kernel")
    configure.add_argument("--arch", default=_default_arch(), help=_ARCH_HELP)
    _add_dir(configure)

    raw = _add_parser(
        sub, "raw_configure", _kernels_raw_configure,
        help="configure a kernel prepared by means other than lvh",
    )
    raw.add_argument("kernel_dir")
    raw.add_argument("kernel_name", nargs="?", default="")
    raw.add_argument("--arch", default=_default_arch(), help=_ARCH_HELP)
    _add_dir(raw)

    build = _add_parser(sub, "build", _kernels_build, help="build kernel")
    build.add_argument("kernel")
    build.add_argument("--arch", default=_default_arch(), help=_ARCH_HELP)
    _add_dir(build)

    fetch = _add_parser(sub, "fetch", _kernels_fetch, help="fetch kernel")
    fetch.add_argument("kernel")
    _add_dir(fetch)


def _build_run_parser(subparsers) -> None:
    run = _add_parser(
        subparsers, "run", _run,
        help="run/start VMs based on generated base images and kernels",
    )
    run.add_argument("--image", required=True, help="VM image file path")
    run.add_argument(
        "--kernel", default="",
        help="kernel filename to boot with. (if empty no -kernel option will be passed to qemu)",
    )
    run.add_argument(
        "--qemu-cmd-print", action="store_true",
        help="Do not run the qemu command, just print it",
    )
    run.add_argument(
        "--no-hw-accel", "--qemu-disable-kvm", dest="no_hw_accel", action="store_true",
        help="Do not use hardware acceleration, KVM for Linux or HVF for macOS",
    )
    run.add_argument("--daemonize", action="store_true", help="daemonize QEMU after initializing")
    run.add_argument(
        "--console-log-file", default="", help="Save VM console output to given file"
    )
    run.add_argument(
        "--host-mount", default="",
        help="Mount the specified host directory in the VM using a 'host_mount' tag",
    )
    run.add_argument(
        "-p", "--port", action="append", default=None,
        help="Forward a port (hostport[:vmport[:tcp|udp]])",
    )
    run.add_argument("--serial-port", type=int, default=0, help="Port for serial console")
    run.add_argument("--cpu", type=int, default=2, help="CPU count (-smp)")
    run.add_argument("--mem", default="4G", help="RAM size (-m)")
    run.add_argument(
        "--cpu-kind", default="",
        help="CPU kind to use (-cpu) (default 'kvm64' on amd64 and 'max' on arm64)",
    )
    run.add_argument(
        "--qemu-monitor-port", type=int, default=0, help="Port for QEMU monitor"
    )
    run.add_argument("--root-dev", default="vda", help="type of root device (hda or vda)")
    run.add_argument(
        "-v", "--verbose", action="store_true", help="Print qemu command before running it"
    )
    run.add_argument("--qemu-arch", default=_default_arch(), help="specify qemu arch to use")


def build_parser() -> argparse.ArgumentParser:
    """The argument parser for the lvh command."""
    parser = argparse.ArgumentParser(
        prog="lvh", description="little-vm-helper -- helper to build and run VMs"
    )
    subparsers = parser.add_subparsers(dest="command", required=True)
    _build_images_parser(subparsers)
    _build_kernels_parser(subparsers)
    _build_run_parser(subparsers)
    _add_parser(subparsers, "version", _version, help="version")
    return parser


def main(argv: Sequence[str] | None = None) -> int:
    """Run the lvh command; return the exit status."""
    args = build_parser().parse_args(argv)
    try:
        return args.func(args)
    except Exception as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())