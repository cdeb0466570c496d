"""Managing a kernels directory: initialise, add, remove, fetch and build."""

from __future__ import annotations

import json
import logging
import os
import shutil

from lvh.arch import native_arch
from lvh.kernels.conf import CONFIG_FNAME, Conf, KernelConf
from lvh.kernels.kdir import KernelsDir
from lvh.kernels.url import KernelURL, parse_url

KERNELS_DIR_NAME = "kernels"


def init_dir(
    log: logging.Logger,
    dir: str,
    conf: Conf | None = None,
    force: bool = False,
    backup_conf: bool = False,
) -> None:
    """Create a kernels directory and save conf (or an empty one) in it."""
    try:
        os.makedirs(dir, exist_ok=True)
    except OSError as exc:
        raise OSError(f"failed to create directory '{dir}': {exc}") from exc

    conf_fname = os.path.join(dir, CONFIG_FNAME)
    if not force and os.path.exists(conf_fname):
        raise FileExistsError(f"config file `{conf_fname}` already exists")

    if conf is None:
        conf = Conf()
    conf.save_to(log, dir, backup_conf)


def load_dir(dir: str) -> KernelsDir:
    """Load the configuration of a kernels directory."""
    with open(os.path.join(dir, CONFIG_FNAME), encoding="utf-8") as f:
        data = json.load(f)
    return KernelsDir(dir=os.path.join(dir, KERNELS_DIR_NAME), conf=Conf.from_dict(data))


def add_kernel(
    log: logging.Logger,
    dir: str,
    conf: KernelConf,
    backup_conf: bool = False,
    fetch: bool = False,
) -> None:
    """Add a kernel to the directory's configuration, optionally fetching it."""
    kd = load_dir(dir)
    if kd.kernel_config(conf.name) is not None:
        raise ValueError(f"kernel `{conf.name}` already exists")

    kd.conf.kernels.append(conf)
    kd.conf.save_to(log, dir, backup_conf)

    if fetch:
        parse_url(conf.url).fetch(log, kd.dir, conf.name)


def _remove_path(log: logging.Logger, path: str, name: str) -> None:
    try:
        if os.path.isdir(path) and not os.path.islink(path):
            shutil.rmtree(path)
        elif os.path.lexists(path):
            os.remove(path)
    except OSError as exc:
        log.warning("removing path failed: %s", exc)
        raise OSError(f"failed to remove kernel `{name}`: {exc}") from exc


def remove_kernel(
    log: logging.Logger, dir: str, name: str, backup_conf: bool = False
) -> None:
    """Remove a kernel, carrying on past errors where it can."""
    kd = load_dir(dir)
    path = os.path.join(dir, name)

    cnf = kd.remove_kernel_config(name)
    if cnf is None:
        log.warning("kernel %s does not exist, will try to remove path %s", name, path)
        _remove_path(log, path, name)
        raise LookupError(f"kernel `{name}` does not exist in configuration")

    try:
        try:
            kurl = parse_url(cnf.url)
        except ValueError:
            log.warning(
                "kernel %s has invalid URL %s, will try to remove path %s",
                name, cnf.url, path,
            )
            _remove_path(log, path, name)
            raise ValueError(f"kernel `{name}` has invalid URL `{cnf.url}`") from None
        kurl.remove(log, kd.dir, name)
    finally:
        try:
            kd.conf.save_to(log, dir, backup_conf)
        except OSError as exc:
            log.warning("failed to save configuration: %s", exc)


def _get_kernel_info(dir: str, name: str) -> tuple[KernelsDir, KernelConf, KernelURL]:
    kd = load_dir(dir)
    kconf = kd.kernel_config(name)
    if kconf is None:
        raise LookupError(f"kernel `{name}` not found")
    return kd, kconf, kconf.kernel_url()


def fetch_kernel(log: logging.Logger, dir: str, name: str) -> None:
    """Fetch the source of a configured kernel."""
    kd, kc, kurl = _get_kernel_info(dir, name)
    kurl.fetch(log, kd.dir, kc.name)


def build_kernel(
    log: logging.Logger,
    dir: str,
    name: str,
    fetch: bool = False,
    arch: str | None = None,
) -> None:
    """Build a configured kernel, fetching its source first if asked to."""
    kd, kc, kurl = _get_kernel_info(dir, name)
    if fetch:
        kurl.fetch(log, kd.dir, kc.name)
    kd.build_kernel(log, kc, arch or native_arch().value)