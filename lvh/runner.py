"""Build QEMU command lines and start virtual machines."""

from __future__ import annotations

import logging
import os
import re
import shutil
import sys
from dataclasses import dataclass, field
from typing import Iterable, Sequence

from lvh.arch import Arch, native_arch, new_arch

_log = logging.getLogger(__name__)

_INT_RE = re.compile(r"[+-]?[0-9]+")


@dataclass(frozen=True)
class PortForward:
    """A host port forwarded to a port in the VM."""

    host_port: int
    vm_port: int
    protocol: str = "tcp"


@dataclass
class RunConf:
    """Configuration for running a VM."""

    image: str
    kernel_fname: str = ""
    kernel_append_args: list[str] = field(default_factory=list)
    qemu_print: bool = False
    disable_hardware_accel: bool = False
    daemonize: bool = False
    console_log_file: str = ""
    verbose: bool = False
    disable_network: bool = False
    forwarded_ports: list[PortForward] = field(default_factory=list)
    logger: logging.Logger | None = None
    host_mount: str = ""
    serial_port: int = 0
    cpu: int = 2
    mem: str = "4G"
    cpu_kind: str = ""
    root_dev: str = "vda"
    qemu_monitor_port: int = 0
    qemu_arch: str = ""


def _port(text: str) -> int:
    if not _INT_RE.fullmatch(text):
        raise ValueError(f"'{text}' is not a valid port number")
    return int(text)


def parse_port_forward(flags: Iterable[str]) -> list[PortForward]:
    """Parse hostport[:vmport[:tcp|udp]] specifications."""
    forwards = []
    for flag in flags:
        host_str, sep, rest = flag.partition(":")
        if not sep:
            port = _port(flag)
            forwards.append(PortForward(port, port, "tcp"))
            continue
        host_port = _port(host_str)
        vm_str, sep, proto = rest.partition(":")
        if not sep:
            forwards.append(PortForward(host_port, _port(rest), "tcp"))
            continue
        vm_port = _port(vm_str)
        proto = proto.lower()
        if proto not in ("tcp", "udp"):
            raise ValueError("port forward protocol must be tcp or udp")
        forwards.append(PortForward(host_port, vm_port, proto))
    return forwards


def port_forward_qemu_args(forwards: Iterable[PortForward]) -> list[str]:
    """QEMU user-network arguments carrying the given port forwards."""
    netdev = "user,id=user.0" + "".join(
        f",hostfwd={fwd.protocol}::{fwd.host_port}-:{fwd.vm_port}" for fwd in forwards
    )
    return ["-netdev", netdev, "-device", "virtio-net-pci,netdev=user.0"]


def _run_arch(rcnf: RunConf) -> Arch:
    return new_arch(rcnf.qemu_arch) if rcnf.qemu_arch else native_arch()


def _kvm_available() -> bool:
    try:
        fd = os.open("/dev/kvm", os.O_RDWR)
    except OSError:
        return False
    os.close(fd)
    return True


def build_qemu_args(log: logging.Logger | None, rcnf: RunConf) -> list[str]:
    """Build the QEMU argument list (without the binary) for a run."""
    log = log or _log
    qemu_args = [
        "-nodefaults",
        "-display", "none",
        "-no-reboot",
        "-smp", str(rcnf.cpu),
        "-m", rcnf.mem,
    ]

    qarch = _run_arch(rcnf)
    qemu_args = qarch.append_arch_specific_qemu_args(qemu_args)

    kvm_enabled = False
    if not rcnf.disable_hardware_accel and qarch.is_native():
        if sys.platform.startswith("linux"):
            if _kvm_available():
                qemu_args.append("-enable-kvm")
                kvm_enabled = True
            else:
                log.info("KVM disabled")
        elif sys.platform == "darwin":
            qemu_args += ["-accel", "hvf"]

    qemu_args = qarch.append_cpu_kind(qemu_args, kvm_enabled, rcnf.cpu_kind)

    if rcnf.serial_port:
        qemu_args += ["-serial", f"telnet:localhost:{rcnf.serial_port},server,nowait"]

    if rcnf.console_log_file:
        qemu_args += ["-serial", f"file:{rcnf.console_log_file}"]

    if rcnf.root_dev == "hda":
        qemu_args += ["-hda", rcnf.image]
        kernel_root = "/dev/sda"
    elif rcnf.root_dev == "vda":
        qemu_args += [
            "-drive",
            f"file={rcnf.image},if=virtio,index=0,media=disk",
        ]
        kernel_root = "/dev/vda"
    else:
        raise ValueError(f"invalid root device: {rcnf.root_dev}")

    if rcnf.kernel_fname:
        append_args = [
            f"root={kernel_root}",
            f"console={qarch.console()}",
            "earlyprintk=ttyS0",
            "panic=-1",
            *rcnf.kernel_append_args,
        ]
        qemu_args += ["-kernel", rcnf.kernel_fname, "-append", " ".join(append_args)]

    if not rcnf.disable_network:
        qemu_args += port_forward_qemu_args(rcnf.forwarded_ports)

    if not rcnf.daemonize:
        qemu_args += ["-serial", "mon:stdio", "-device", "virtio-serial-pci"]
    else:
        qemu_args.append("-daemonize")

    if rcnf.qemu_monitor_port:
        qemu_args += [
            "-monitor",
            f"tcp:localhost:{rcnf.qemu_monitor_port},server,nowait",
        ]

    if rcnf.host_mount:
        qemu_args += [
            "-fsdev",
            f"local,id=host_id,path={rcnf.host_mount},security_model=none",
            "-device",
            "virtio-9p-pci,fsdev=host_id,mount_tag=host_mount",
        ]

    return qemu_args


def format_qemu_command(qemu_bin: str, qemu_args: Sequence[str]) -> str:
    """Render a QEMU command line, breaking the line before each option."""
    parts = [qemu_bin]
    for arg in qemu_args:
        parts.append("\\\n\t" + arg if arg.startswith("-") else arg)
    return " ".join(parts)


def start_qemu(rcnf: RunConf) -> None:
    """Replace the current process with QEMU, or just print the command."""
    qarch = _run_arch(rcnf)
    qemu_bin = qarch.qemu_binary()
    qemu_args = build_qemu_args(rcnf.logger, rcnf)

    if rcnf.qemu_print or rcnf.verbose:
        print(format_qemu_command(qemu_bin, qemu_args))
        if rcnf.qemu_print:
            return

    qemu_path = shutil.which(qemu_bin)
    if qemu_path is None:
        raise FileNotFoundError(f"executable file not found in $PATH: {qemu_bin}")
    os.execve(qemu_path, [qemu_bin, *qemu_args], {})