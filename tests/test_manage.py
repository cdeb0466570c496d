import json
import logging
import os

import pytest

from lvh.kernels.conf import Conf, KernelConf
from lvh.kernels.manage import (
    add_kernel,
    build_kernel,
    fetch_kernel,
    init_dir,
    load_dir,
    remove_kernel,
)

LOG = logging.getLogger("test_manage")


def _test_kconfs():
    return [
        KernelConf(
            name="bpf-next",
            url="git://git.kernel.org/pub/scm/linux/kernel/git/bpf/bpf-next.git",
            opts=[
                ["--enable", "CONFIG_DEBUG_INFO"],
                ["--disable", "CONFIG_DEBUG_KERNEL"],
            ],
        ),
        KernelConf(
            name="5.18",
            url="git://git.kernel.org/pub/scm/linux/kernel/git/stable/linux.git#linux-5.18.y",
            opts=[
                ["--enable CONFIG_BPF"],
                ["--enable CONFIG_BPF_SYSCALL"],
            ],
        ),
    ]


def test_dir_with_no_conf(tmp_path):
    init_dir(LOG, str(tmp_path), None, force=False, backup_conf=False)
    kd = load_dir(str(tmp_path))
    assert kd.conf == Conf(kernels=[])


def test_dir_with_conf(tmp_path):
    conf = Conf(kernels=_test_kconfs(), common_opts=[["--disable", "CONFIG_WERROR"]])
    init_dir(LOG, str(tmp_path), conf, force=False, backup_conf=False)
    kd = load_dir(str(tmp_path))
    assert kd.conf == conf
    assert kd.dir == os.path.join(str(tmp_path), "kernels")


def test_init_dir_refuses_existing_without_force(tmp_path):
    init_dir(LOG, str(tmp_path))
    with pytest.raises(FileExistsError, match="already exists"):
        init_dir(LOG, str(tmp_path))
    init_dir(LOG, str(tmp_path), Conf(kernels=_test_kconfs()), force=True)
    assert [k.name for k in load_dir(str(tmp_path)).conf.kernels] == ["bpf-next", "5.18"]


def test_init_dir_creates_directory(tmp_path):
    target = tmp_path / "a" / "b"
    init_dir(LOG, str(target))
    data = json.loads((target / "kernels.json").read_text())
    assert data == {"kernels": []}


def test_add_kernel_and_duplicate(tmp_path):
    init_dir(LOG, str(tmp_path))
    kc = _test_kconfs()[0]
    add_kernel(LOG, str(tmp_path), kc)
    assert load_dir(str(tmp_path)).conf.kernels == [kc]
    with pytest.raises(ValueError, match="already exists"):
        add_kernel(LOG, str(tmp_path), _test_kconfs()[0])


def test_remove_unknown_kernel_removes_path(tmp_path):
    init_dir(LOG, str(tmp_path))
    stray = tmp_path / "ghost"
    stray.mkdir()
    (stray / "file").write_text("x")
    with pytest.raises(LookupError, match="does not exist in configuration"):
        remove_kernel(LOG, str(tmp_path), "ghost")
    assert not stray.exists()


def test_remove_kernel_with_invalid_url(tmp_path):
    init_dir(LOG, str(tmp_path))
    add_kernel(LOG, str(tmp_path), KernelConf(name="bad", url="ftp://example.com/k"))
    with pytest.raises(ValueError, match="has invalid URL"):
        remove_kernel(LOG, str(tmp_path), "bad")
    assert load_dir(str(tmp_path)).conf.kernels == []


def test_remove_shallow_kernel(tmp_path):
    init_dir(LOG, str(tmp_path))
    add_kernel(
        LOG,
        str(tmp_path),
        KernelConf(name="shallow", url="git://example.com/linux.git?depth=1#main"),
    )
    src = tmp_path / "kernels" / "shallow"
    src.mkdir(parents=True)
    (src / "Makefile").write_text("all:\n")
    remove_kernel(LOG, str(tmp_path), "shallow")
    assert not src.exists()
    assert load_dir(str(tmp_path)).conf.kernels == []


def test_fetch_unknown_kernel(tmp_path):
    init_dir(LOG, str(tmp_path))
    with pytest.raises(LookupError, match="kernel `nope` not found"):
        fetch_kernel(LOG, str(tmp_path), "nope")


def test_build_unknown_kernel(tmp_path):
    init_dir(LOG, str(tmp_path))
    with pytest.raises(LookupError, match="kernel `nope` not found"):
        build_kernel(LOG, str(tmp_path), "nope")


def test_load_dir_missing_config(tmp_path):
    with pytest.raises(FileNotFoundError):
        load_dir(str(tmp_path))