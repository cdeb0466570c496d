import json

import pytest

from lvh.images.config import ImagesConf, ImgConf
from lvh.images.forest import ImageForest
from lvh.images.steps import DEFAULT_CONF_FILE


def _forest(tmp_path, confs, save=True):
    conf = ImagesConf(dir=str(tmp_path), images=confs)
    return conf, ImageForest(conf, save)


def test_duplicate_names_rejected(tmp_path):
    with pytest.raises(ValueError, match="duplicate image name: base"):
        _forest(tmp_path, [ImgConf(name="base"), ImgConf(name="base")])


def test_single_image(tmp_path):
    conf, forest = _forest(tmp_path, [ImgConf(name="base")])
    assert forest.root_images() == ["base"]
    assert forest.leaf_images() == ["base"]
    saved = json.loads((tmp_path / DEFAULT_CONF_FILE).read_text())
    assert ImagesConf.from_dict(saved).images == conf.images


def test_chain(tmp_path):
    confs = [
        ImgConf(name="base"),
        ImgConf(name="image1", parent="base"),
        ImgConf(name="image2", parent="image1"),
    ]
    conf, forest = _forest(tmp_path, confs)
    assert forest.dependencies("image1") == ["base"]
    assert forest.dependencies("image2") == ["base", "image1"]
    assert forest.leaf_images() == ["image2"]
    assert forest.root_images() == ["base"]
    saved = json.loads((tmp_path / DEFAULT_CONF_FILE).read_text())
    assert ImagesConf.from_dict(saved).images == conf.images


def test_parent_and_children(tmp_path):
    _, forest = _forest(
        tmp_path,
        [ImgConf(name="base"), ImgConf(name="a", parent="base"), ImgConf(name="b", parent="base")],
        save=False,
    )
    assert forest.parent_of("a") == "base"
    assert forest.parent_of("base") == ""
    assert forest.children_of("base") == ["a", "b"]
    assert forest.children_of("a") == []
    assert forest.is_root_image("base") is True
    assert forest.is_root_image("a") is False


def test_unconfigured_parent_makes_root(tmp_path):
    _, forest = _forest(tmp_path, [ImgConf(name="x", parent="external.img")], save=False)
    assert forest.root_images() == ["x"]
    assert forest.dependencies("x") == []
    assert forest.parent_of("x") == ""


def test_no_conf_file_when_not_saving(tmp_path):
    _forest(tmp_path, [ImgConf(name="base")], save=False)
    assert not (tmp_path / DEFAULT_CONF_FILE).exists()


def test_creates_images_dir(tmp_path):
    target = tmp_path / "a" / "b"
    ImageForest(ImagesConf(dir=str(target), images=[]), False)
    assert target.is_dir()


def test_unknown_images(tmp_path):
    _, forest = _forest(tmp_path, [ImgConf(name="base")], save=False)
    with pytest.raises(LookupError):
        forest.image_filename("nope")
    with pytest.raises(LookupError):
        forest.dependencies("nope")
    with pytest.raises(LookupError):
        forest.is_root_image("nope")
    assert forest.image_filename("base") == str(tmp_path / "base")