"""Kernel build configuration: kernels, their sources and config options."""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Iterable

from lvh.kernels.url import KernelURL, parse_url
from lvh.kernels.utils import regular_file_exists

# A config option is a list of arguments for the kernel's scripts/config,
# e.g. ["--enable", "CONFIG_BPF"].
ConfigOption = list

CONFIG_FNAME = "kernels.json"

CONFIG_OPT_GROUPS: dict[str, list[list[str]]] = {
    "basic": [
        ["--enable", "CONFIG_LOCALVERSION_AUTO"],
        ["--enable", "CONFIG_DEBUG_INFO"],
        ["--enable", "CONFIG_DEBUG_INFO_DWARF_TOOLCHAIN_DEFAULT"],
        ["--disable", "CONFIG_WERROR"],
    ],
    "minimize": [
        ["--disable", "CONFIG_DRM"],
        ["--disable", "CONFIG_GPU"],
        ["--disable", "CONFIG_ISO9669_FS"],
        ["--disable", "CONFIG_CFG80211"],
        ["--disable", "CONFIG_WIRELESS"],
        ["--disable", "CONFIG_RFKILL"],
        ["--disable", "CONFIG_MACINTOSH_DRIVERS"],
        ["--disable", "CONFIG_SOUND"],
        ["--disable", "CONFIG_AGP"],
        ["--disable", "CONFIG_USB_SUPPORT"],
        ["--disable", "CONFIG_USB"],
        ["--disable", "CONFIG_WLAN"],
        ["--disable", "CONFIG_HID"],
        ["--disable", "CONFIG_I2C"],
        ["--disable", "CONFIG_PCMCIA"],
        ["--disable", "CONFIG_MD"],
        ["--disable", "CONFIG_DMADEVICES"],
        ["--disable", "CONFIG_THERMAL"],
    ],
    "bpf": [
        ["--enable", "CONFIG_BPF"],
        ["--enable", "CONFIG_BPF_SYSCALL"],
        ["--enable", "CONFIG_NET_CLS_BPF"],
        ["--enable", "CONFIG_NET_ACT_BPF"],
        ["--enable", "CONFIG_BPF_JIT"],
        ["--enable", "CONFIG_BPF_JIT_DEFAULT_ON"],
        ["--enable", "CONFIG_BPF_EVENTS"],
        ["--enable", "CONFIG_BPF_STREAM_PARSER"],
        ["--enable", "CONFIG_DEBUG_INFO_BTF"],
        ["--enable", "CONFIG_DEBUG_INFO_BTF_MODULES"],
        ["--enable", "CONFIG_BPF_LSM"],
        ["--enable", "CONFIG_CGROUP_BPF"],
        ["--enable", "CONFIG_FTRACE_SYSCALLS"],
        ["--enable", "CONFIG_SKB_EXTENSIONS"],
        ["--enable", "CONFIG_NET_TC_SKB_EXT"],
    ],
    "virtio": [
        ["--enable", "CONFIG_VIRTIO"],
        ["--enable", "CONFIG_VIRTIO_MENU"],
        ["--enable", "CONFIG_VIRTIO_PCI_LIB"],
        ["--enable", "CONFIG_VIRTIO_PCI"],
        ["--enable", "CONFIG_VIRTIO_NET"],
        ["--enable", "CONFIG_NET_9P"],
        ["--enable", "CONFIG_9P_FS"],
        ["--enable", "CONFIG_NET_9P_VIRTIO"],
        ["--enable", "CONFIG_VIRTIO_BLK"],
    ],
    "namespaces": [
        ["--enable", "CONFIG_NAMESPACES"],
        ["--enable", "CONFIG_UTS_NS"],
        ["--enable", "CONFIG_TIME_NS"],
        ["--enable", "CONFIG_IPC_NS"],
        ["--enable", "CONFIG_USER_NS"],
        ["--enable", "CONFIG_PID_NS"],
        ["--enable", "CONFIG_NET_NS"],
    ],
}

DEFAULT_CONFIG_GROUPS = ["basic", "bpf", "virtio", "minimize", "namespaces"]


def get_config_group_names() -> list[str]:
    """Names of the predefined config option groups."""
    return list(CONFIG_OPT_GROUPS)


def _with_groups(opts: Iterable[list[str]], groups: Iterable[str]) -> list[list[str]]:
    added: list[list[str]] = []
    for group in groups:
        try:
            group_opts = CONFIG_OPT_GROUPS[group]
        except KeyError:
            raise ValueError(f"unknown group {group}") from None
        added.extend(list(opt) for opt in group_opts)
    return [*opts, *added]


@dataclass
class KernelConf:
    """A kernel to build from source."""

    name: str
    url: str
    opts: list[list[str]] = field(default_factory=list)
    extra_make_args: list[str] = field(default_factory=list)
    _parsed_url: KernelURL | None = field(
        default=None, init=False, repr=False, compare=False
    )

    def validate(self) -> None:
        """Raise ValueError if the kernel's URL cannot be used."""
        self.kernel_url()

    def kernel_url(self) -> KernelURL:
        """The parsed URL, parsed once and then cached."""
        if self._parsed_url is None:
            self._parsed_url = parse_url(self.url)
        return self._parsed_url

    def add_groups_opts(self, *groups: str) -> None:
        """Append the options of the named groups to this kernel's options."""
        self.opts = _with_groups(self.opts, groups)

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"name": self.name, "url": self.url}
        if self.opts:
            data["opts"] = [list(opt) for opt in self.opts]
        if self.extra_make_args:
            data["extra_make_args"] = list(self.extra_make_args)
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> KernelConf:
        return cls(
            name=data.get("name", ""),
            url=data.get("url", ""),
            opts=[list(opt) for opt in data.get("opts") or []],
            extra_make_args=list(data.get("extra_make_args") or []),
        )


@dataclass
class Conf:
    """Configuration of a kernels directory."""

    kernels: list[KernelConf] = field(default_factory=list)
    common_opts: list[list[str]] = field(default_factory=list)

    def add_groups_common_opts(self, *groups: str) -> None:
        """Append the options of the named groups to the common options."""
        self.common_opts = _with_groups(self.common_opts, groups)

    def get_options(self, kernel: KernelConf | None) -> list[list[str]]:
        """Common options first, then the kernel's own."""
        opts = [list(opt) for opt in self.common_opts]
        if kernel is not None:
            opts.extend(list(opt) for opt in kernel.opts)
        return opts

    def save_to(self, log: logging.Logger, dir: str, backup: bool) -> None:
        """Write the configuration to <dir>/kernels.json.

        With backup, an existing file is first renamed with a timestamp suffix.
        """
        fname = os.path.join(dir, CONFIG_FNAME)
        text = json.dumps(self.to_dict(), indent=4)

        if backup:
            try:
                exists = regular_file_exists(fname)
            except OSError:
                exists = False
            if exists:
                stamp = datetime.now().strftime("%Y%m%d.%H%M%S") + "000000"
                fname_old = f"{fname}.{stamp}"
                try:
                    os.rename(fname, fname_old)
                except OSError:
                    log.info("failed to rename %s to %s", fname, fname_old)
                else:
                    log.info("renamed %s to %s", fname, fname_old)

        try:
            with open(fname, "w", encoding="utf-8") as f:
                f.write(text)
        except OSError as exc:
            raise OSError(f"error writing configuration: {exc}") from exc

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"kernels": [k.to_dict() for k in self.kernels]}
        if self.common_opts:
            data["common_opts"] = [list(opt) for opt in self.common_opts]
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Conf:
        return cls(
            kernels=[KernelConf.from_dict(k) for k in data.get("kernels") or []],
            common_opts=[list(opt) for opt in data.get("common_opts") or []],
        )