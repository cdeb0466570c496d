"""Target architectures and their kernel, cross-compilation and QEMU specifics."""

from __future__ import annotations

import platform
from enum import Enum

_MACHINE_ALIASES = {
    "x86_64": "amd64",
    "amd64": "amd64",
    "aarch64": "arm64",
    "arm64": "arm64",
    "i386": "386",
    "i686": "386",
    "armv7l": "arm",
    "armv6l": "arm",
}


def _host_arch_name() -> str:
    """Name of the host architecture, using amd64/arm64 style names."""
    machine = platform.machine().lower()
    return _MACHINE_ALIASES.get(machine, machine)


class Arch(str, Enum):
    """A supported CPU architecture."""

    AMD64 = "amd64"
    ARM64 = "arm64"

    def __str__(self) -> str:
        return self.value

    def target(self) -> str:
        """Kernel Makefile target that produces the boot image."""
        return {Arch.AMD64: "bzImage", Arch.ARM64: "Image.gz"}[self]

    def is_native(self) -> bool:
        return self.value == _host_arch_name()

    def cross_compiling(self) -> bool:
        return not self.is_native()

    def cross_compile_make_args(self) -> list[str]:
        """Extra make arguments needed to build for this architecture."""
        if not self.cross_compiling():
            return []
        if self is Arch.ARM64:
            return ["ARCH=arm64", "CROSS_COMPILE=aarch64-linux-gnu-"]
        return ["ARCH=x86_64", "CROSS_COMPILE=x86_64-linux-gnu-"]

    def qemu_binary(self) -> str:
        return {
            Arch.AMD64: "qemu-system-x86_64",
            Arch.ARM64: "qemu-system-aarch64",
        }[self]

    def console(self) -> str:
        """Device name of the first serial port."""
        return {Arch.AMD64: "ttyS0", Arch.ARM64: "ttyAMA0"}[self]

    def append_arch_specific_qemu_args(self, qemu_args: list[str]) -> list[str]:
        """Return qemu_args extended with arguments this architecture needs."""
        if self is Arch.ARM64:
            return [*qemu_args, "-machine", "virt"]
        return list(qemu_args)

    def append_cpu_kind(
        self, qemu_args: list[str], kvm_enabled: bool, cpu_kind: str
    ) -> list[str]:
        """Return qemu_args extended with a -cpu option where one is needed."""
        if cpu_kind:
            return [*qemu_args, "-cpu", cpu_kind]
        if self is Arch.AMD64:
            if kvm_enabled:
                return [*qemu_args, "-cpu", "kvm64"]
            return list(qemu_args)
        return [*qemu_args, "-cpu", "max"]

    def bootable(self, bootable: bool | None) -> bool:
        """Resolve an unset bootable option to the architecture default."""
        if bootable is None:
            return self is Arch.AMD64
        return bootable


def new_arch(name: str) -> Arch:
    """Parse an architecture name, raising ValueError if unsupported."""
    try:
        return Arch(name)
    except ValueError:
        raise ValueError(f"unsupported architecture {name}") from None


def native_arch() -> Arch:
    """The architecture of the running host."""
    return new_arch(_host_arch_name())