"""A set of image configurations organised as a forest of trees."""

from __future__ import annotations

import json
import os

from lvh.images.config import ImagesConf, ImgConf
from lvh.images.steps import DEFAULT_CONF_FILE


class ImageForest:
    """Images linked to their parents, forming a set of trees.

    A parent that is not itself configured is treated as external: its
    children count as root images.
    """

    def __init__(self, conf: ImagesConf, save_conf_file: bool = False) -> None:
        confs: dict[str, ImgConf] = {}
        for img in conf.images:
            if img.name in confs:
                raise ValueError(f"duplicate image name: {img.name}")
            confs[img.name] = img

        children: dict[str, list[str]] = {}
        for img in conf.images:
            if img.parent and img.parent in confs:
                children.setdefault(img.parent, []).append(img.name)

        os.makedirs(conf.dir, exist_ok=True)

        if save_conf_file:
            text = json.dumps(conf.to_dict(), separators=(",", ":"))
            try:
                with open(
                    os.path.join(conf.dir, DEFAULT_CONF_FILE), "w", encoding="utf-8"
                ) as f:
                    f.write(text)
            except OSError as exc:
                raise OSError(f"error writing configuration: {exc}") from exc

        self.images_dir = conf.dir
        self.confs = confs
        self._children = children

    def _conf(self, image: str) -> ImgConf:
        try:
            return self.confs[image]
        except KeyError:
            raise LookupError(f"image `{image}` does not exist in forest") from None

    def image_filename(self, image: str) -> str:
        """Path of the image file."""
        if image not in self.confs:
            raise LookupError(f"no configuration for image '{image}'")
        return os.path.join(self.images_dir, image)

    def is_leaf_image(self, image: str) -> bool:
        return image not in self._children

    def leaf_images(self) -> list[str]:
        return [name for name in self.confs if self.is_leaf_image(name)]

    def _is_root(self, cnf: ImgConf) -> bool:
        return not cnf.parent or cnf.parent not in self._children

    def is_root_image(self, image: str) -> bool:
        return self._is_root(self._conf(image))

    def root_images(self) -> list[str]:
        """Images with no configured parent."""
        return [name for name, cnf in self.confs.items() if self._is_root(cnf)]

    def parent_of(self, image: str) -> str:
        """The configured parent of an image, or "" for root images."""
        cnf = self._conf(image)
        return "" if self._is_root(cnf) else cnf.parent

    def children_of(self, image: str) -> list[str]:
        return list(self._children.get(image, []))

    def dependencies(self, image: str) -> list[str]:
        """Images to build before this one, from the root down."""
        if image not in self.confs:
            raise LookupError(
                f"cannot build dependencies for image {image}, because image does not exist"
            )
        deps: list[str] = []
        cnf = self.confs[image]
        while not self._is_root(cnf):
            parent = cnf.parent
            if parent in deps or parent == image:
                raise ValueError(f"image parents form a cycle at '{parent}'")
            deps.append(parent)
            cnf = self.confs[parent]
        deps.reverse()
        return deps