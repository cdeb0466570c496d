"""Image build actions and their JSON form."""

from __future__ import annotations

import os
from abc import ABC, abstractmethod
from dataclasses import dataclass, field, fields
from typing import Any, ClassVar

from lvh.images.steps import StepConf, VirtCustomizeStep
from lvh.kernels.utils import find_kernel
from lvh.step import Step


def _get_ci(data: dict[str, Any], key: str, default: Any = None) -> Any:
    """Look a key up case-insensitively, preferring an exact match."""
    if key in data:
        return data[key]
    lowered = key.lower()
    for k, v in data.items():
        if isinstance(k, str) and k.lower() == lowered:
            return v
    return default


def _json_name(name: str) -> Any:
    return field(default="", metadata={"json": name})


class ActionOp(ABC):
    """An operation that turns into one or more image build steps."""

    op_name: ClassVar[str]

    @abstractmethod
    def to_steps(self, conf: StepConf) -> list[Step]:
        """The steps that carry out this operation."""

    def to_json(self) -> dict[str, Any]:
        return {f.metadata["json"]: getattr(self, f.name) for f in fields(self)}

    @classmethod
    def from_json(cls, data: dict[str, Any] | None) -> ActionOp:
        data = data or {}
        if not isinstance(data, dict):
            raise ValueError(f"invalid op for {cls.op_name}: {data!r}")
        values = {}
        for f in fields(cls):
            value = _get_ci(data, f.metadata["json"], "")
            if value is None:
                value = ""
            if not isinstance(value, str):
                raise ValueError(
                    f"invalid value for {f.metadata['json']} in {cls.op_name}: {value!r}"
                )
            values[f.name] = value
        return cls(**values)


def _vc(conf: StepConf, *args: str) -> list[Step]:
    return [VirtCustomizeStep(conf, list(args))]


@dataclass
class RunCommand(ActionOp):
    """Run a command inside the image."""

    op_name: ClassVar[str] = "run-command"
    cmd: str = _json_name("Cmd")

    def to_steps(self, conf: StepConf) -> list[Step]:
        return _vc(conf, "--run-command", self.cmd)


@dataclass
class CopyInCommand(ActionOp):
    """Copy local files into the image, recursively."""

    op_name: ClassVar[str] = "copy-in"
    local_path: str = _json_name("LocalPath")
    remote_dir: str = _json_name("RemoteDir")

    def to_steps(self, conf: StepConf) -> list[Step]:
        return _vc(conf, "--copy-in", f"{self.local_path}:{self.remote_dir}")


@dataclass
class SetHostnameCommand(ActionOp):
    """Set the hostname."""

    op_name: ClassVar[str] = "set-hostname"
    hostname: str = _json_name("Hostname")

    def to_steps(self, conf: StepConf) -> list[Step]:
        return _vc(conf, "--hostname", self.hostname)


@dataclass
class MkdirCommand(ActionOp):
    """Create a directory."""

    op_name: ClassVar[str] = "mkdir"
    dir: str = _json_name("Dir")

    def to_steps(self, conf: StepConf) -> list[Step]:
        return _vc(conf, "--mkdir", self.dir)


@dataclass
class UploadCommand(ActionOp):
    """Copy a file into the image."""

    op_name: ClassVar[str] = "upload"
    file: str = _json_name("File")
    dest: str = _json_name("Dest")

    def to_steps(self, conf: StepConf) -> list[Step]:
        return _vc(conf, "--upload", f"{self.file}:{self.dest}")


@dataclass
class ChmodCommand(ActionOp):
    """Change a file's permissions."""

    op_name: ClassVar[str] = "chmod"
    permissions: str = _json_name("Permissions")
    file: str = _json_name("File")

    def to_steps(self, conf: StepConf) -> list[Step]:
        return _vc(conf, "--chmod", f"{self.permissions}:{self.file}")


@dataclass
class AppendLineCommand(ActionOp):
    """Append a line to a file."""

    op_name: ClassVar[str] = "append-line"
    file: str = _json_name("File")
    line: str = _json_name("Line")

    def to_steps(self, conf: StepConf) -> list[Step]:
        return _vc(conf, "--append-line", f"{self.file}:{self.line}")


@dataclass
class LinkCommand(ActionOp):
    """Create a symbolic link."""

    op_name: ClassVar[str] = "link"
    target: str = _json_name("Target")
    link: str = _json_name("Link")

    def to_steps(self, conf: StepConf) -> list[Step]:
        return _vc(conf, "--link", f"{self.target}:{self.link}")


@dataclass
class InstallKernelCommand(ActionOp):
    """Install a built kernel: boot files, modules and a /vmlinuz link."""

    op_name: ClassVar[str] = "install-kernel"
    kernel_install_dir: str = _json_name("KernelInstallDir")

    def to_steps(self, conf: StepConf) -> list[Step]:
        install_dir = self.kernel_install_dir
        # relative install dirs are taken relative to the images dir's parent
        if not os.path.isabs(install_dir):
            install_dir = os.path.abspath(
                os.path.join(conf.images_dir, "..", self.kernel_install_dir)
            )
        kernel = find_kernel(install_dir)
        kernel_path = os.path.join("/", kernel)
        return [
            VirtCustomizeStep(conf, ["--copy-in", f"{install_dir}/boot:/"]),
            VirtCustomizeStep(conf, ["--copy-in", f"{install_dir}/lib/modules:/lib/"]),
            VirtCustomizeStep(conf, ["--link", f"{kernel_path}:/vmlinuz"]),
        ]


ACTION_OP_TYPES: dict[str, type[ActionOp]] = {
    cls.op_name: cls
    for cls in (
        RunCommand,
        CopyInCommand,
        SetHostnameCommand,
        MkdirCommand,
        UploadCommand,
        ChmodCommand,
        AppendLineCommand,
        LinkCommand,
        InstallKernelCommand,
    )
}


@dataclass
class Action:
    """An operation with a comment describing it."""

    op: ActionOp
    comment: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {"comment": self.comment, "op": self.op.to_json(), "type": self.op.op_name}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Action:
        if not isinstance(data, dict):
            raise ValueError(f"invalid action: {data!r}")
        op_type = _get_ci(data, "type", "") or ""
        try:
            op_cls = ACTION_OP_TYPES[op_type]
        except (KeyError, TypeError):
            raise ValueError(f"unknown op type '{op_type}'") from None
        comment = _get_ci(data, "comment", "") or ""
        return cls(op=op_cls.from_json(_get_ci(data, "op")), comment=comment)