"""Configuration of VM images and of sets of images."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from lvh.images.actions import Action, RunCommand


@dataclass
class ImgConf:
    """Configuration of one image.

    An empty parent means the image is built from scratch. An unset bootable
    falls back to the architecture default. Actions run in order.
    """

    name: str
    parent: str = ""
    image_size: str = ""
    bootable: bool | None = None
    packages: list[str] = field(default_factory=list)
    actions: list[Action] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"name": self.name}
        if self.parent:
            data["parent"] = self.parent
        if self.image_size:
            data["image_size"] = self.image_size
        if self.bootable is not None:
            data["bootable"] = self.bootable
        data["packages"] = list(self.packages)
        if self.actions:
            data["actions"] = [action.to_dict() for action in self.actions]
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ImgConf:
        if not isinstance(data, dict):
            raise ValueError(f"invalid image configuration: {data!r}")
        bootable = data.get("bootable")
        if bootable is not None and not isinstance(bootable, bool):
            raise ValueError(f"invalid bootable value: {bootable!r}")
        return cls(
            name=data.get("name") or "",
            parent=data.get("parent") or "",
            image_size=data.get("image_size") or "",
            bootable=bootable,
            packages=list(data.get("packages") or []),
            actions=[Action.from_dict(a) for a in data.get("actions") or []],
        )


@dataclass
class ImagesConf:
    """A directory of images and the configuration of every image in it."""

    dir: str
    images: list[ImgConf] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {"Dir": self.dir, "Images": [img.to_dict() for img in self.images]}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ImagesConf:
        if not isinstance(data, dict):
            raise ValueError(f"invalid images configuration: {data!r}")
        return cls(
            dir=data.get("Dir") or "",
            images=[ImgConf.from_dict(i) for i in data.get("Images") or []],
        )


def example_images_conf() -> list[ImgConf]:
    """An example set of image configurations."""
    return [
        ImgConf(
            name="base.img",
            packages=["less", "vim", "sudo", "openssh-server", "curl"],
            actions=[
                Action(
                    op=RunCommand(cmd="passwd -d root"),
                    comment="disable password for root",
                )
            ],
        ),
        ImgConf(
            name="k8s.qcow2",
            parent="base.img",
            packages=["docker.io"],
        ),
    ]