"""A directory of kernel sources, and configuring and building them."""

from __future__ import annotations

import logging
import os
import re
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Iterable, Iterator, Sequence

from lvh.arch import new_arch
from lvh.kernels.conf import Conf, KernelConf
from lvh.kernels.utils import MAKE_BINARY, check_environment, regular_file_exists
from lvh.logcmd import CommandError, run_and_log_command

_ENABLED_OR_MODULE_RE = re.compile(r"([a-zA-Z0-9_]+)=(y|m)")
_DISABLED_RE = re.compile(r"# ([a-zA-Z0-9_]+) is not set")

_OPTION_STATES = {"--enable": "y", "--disable": "n", "--module": "m"}


def kconfig_validate(opts: Iterable[Sequence[str]], config_file: str = ".config") -> None:
    """Check that a kernel .config file reflects the given config options.

    Raises ValueError listing every discrepancy, or for an unknown option.
    """
    expected: dict[str, str] = {}
    for opt in opts:
        try:
            expected[opt[1]] = _OPTION_STATES[opt[0]]
        except KeyError:
            raise ValueError(f"Unknown option: {opt[0]}") from None

    try:
        with open(config_file, encoding="utf-8", errors="replace") as f:
            lines = f.read().splitlines()
    except OSError as exc:
        raise OSError(f"failed to open config file: {exc}") from exc

    problems: list[str] = []
    checked: set[str] = set()
    for line in lines:
        match = _ENABLED_OR_MODULE_RE.search(line)
        if match:
            name, state = match.group(1), match.group(2)
        else:
            match = _DISABLED_RE.search(line)
            if not match:
                continue
            name, state = match.group(1), "n"

        if name not in expected:
            continue
        checked.add(name)
        if expected[name] != state:
            problems.append(
                f'value {name} misconfigured: expected: "{expected[name]}" '
                f'but seems to be "{state}" based on "{line}"'
            )

    for name, state in expected.items():
        if name in checked:
            continue
        if state == "y":
            problems.append(f"value {name} enabled but not found")
        elif state == "m":
            problems.append(f"value {name} configured as module but not found")

    if problems:
        raise ValueError("\n".join(problems))


@contextmanager
def _working_dir(path: str) -> Iterator[None]:
    old = os.getcwd()
    try:
        os.chdir(path)
    except OSError as exc:
        raise OSError(f'failed to chdir into "{path}": {exc}') from exc
    try:
        yield
    finally:
        os.chdir(old)


def _run_make(log: logging.Logger, kc: KernelConf | None, args: Sequence[str]) -> None:
    extra = kc.extra_make_args if kc is not None else []
    run_and_log_command(log, [MAKE_BINARY, *args, *extra])


@dataclass
class KernelsDir:
    """The directory holding kernel sources, with its configuration."""

    dir: str
    conf: Conf = field(default_factory=Conf)

    def kernel_config(self, name: str) -> KernelConf | None:
        """The configuration of the kernel called name, or None."""
        return next((k for k in self.conf.kernels if k.name == name), None)

    def remove_kernel_config(self, name: str) -> KernelConf | None:
        """Remove and return the kernel called name, or None if absent."""
        for index, kernel in enumerate(self.conf.kernels):
            if kernel.name == name:
                return self.conf.kernels.pop(index)
        return None

    def configure_kernel(self, log: logging.Logger, name: str, target_arch: str) -> None:
        """Configure the named kernel's source tree for target_arch."""
        kc = self.kernel_config(name)
        if kc is None:
            raise LookupError(f"kernel '{name}' not found")
        self._configure_kernel(log, kc, target_arch)

    def raw_configure(
        self,
        log: logging.Logger,
        kern_dir: str,
        name: str | None,
        target_arch: str,
    ) -> None:
        """Configure a kernel tree in kern_dir that lvh did not prepare."""
        kc = self.kernel_config(name) if name else None
        self._raw_configure_kernel(log, kc, kern_dir, target_arch, [])

    def _configure_kernel(
        self, log: logging.Logger, kc: KernelConf, target_arch: str
    ) -> None:
        src_dir = os.path.join(self.dir, kc.name)
        tarch = new_arch(target_arch)
        prepare_args = ["defconfig", "prepare", *tarch.cross_compile_make_args()]
        self._raw_configure_kernel(log, kc, src_dir, target_arch, prepare_args)

    def _raw_configure_kernel(
        self,
        log: logging.Logger,
        kc: KernelConf | None,
        src_dir: str,
        target_arch: str,
        make_prepare_args: Sequence[str],
    ) -> None:
        if not os.path.exists(src_dir):
            if kc is None:
                raise ValueError(f"kernel source directory '{src_dir}' does not exist")
            log.info(
                "src directory does not exist, fetching kernel",
                extra={"kernel": kc.name, "src_dir": src_dir},
            )
            kc.kernel_url().fetch(log, self.dir, kc.name)

        with _working_dir(src_dir):
            options = self.conf.get_options(kc)

            if make_prepare_args:
                _run_make(log, kc, make_prepare_args)

            config_cmd = os.path.join(".", "scripts", "config")
            # one call per option makes failures easier to track down
            for opt in options:
                run_and_log_command(log, [config_cmd, *opt])

            tarch = new_arch(target_arch)
            _run_make(log, kc, ["olddefconfig", *tarch.cross_compile_make_args()])

            # some options only exist in some kernels, so this only warns
            try:
                kconfig_validate(options, ".config")
            except (ValueError, OSError) as exc:
                log.warning("discrepancies in generated config: %s", exc)

        log.info("configuration completed")

    def build_kernel(self, log: logging.Logger, kc: KernelConf, target_arch: str) -> None:
        """Configure the kernel if needed, then build it and its tar package."""
        check_environment()

        src_dir = os.path.join(self.dir, kc.name)
        if not regular_file_exists(os.path.join(src_dir, ".config")):
            log.info("Configuring kernel")
            try:
                self._configure_kernel(log, kc, target_arch)
            except Exception:
                log.error("failed to configure kernel")
                raise

        tarch = new_arch(target_arch)
        cross_args = tarch.cross_compile_make_args()
        ncpus = str(os.cpu_count() or 1)

        build_args = ["-C", src_dir, "-j", ncpus, tarch.target(), "modules", *cross_args]
        try:
            _run_make(log, kc, build_args)
        except CommandError as exc:
            raise CommandError(
                f"building {tarch.target()} && modules failed: {exc}", exc.cmd, exc.returncode
            ) from exc

        archive_args = ["-C", src_dir, "tar-pkg", *cross_args]
        try:
            _run_make(log, kc, archive_args)
        except CommandError as exc:
            raise CommandError(
                f"build dir failed: {exc}", exc.cmd, exc.returncode
            ) from exc