import logging
import os
import stat

import pytest

from lvh.arch import native_arch
from lvh.kernels.conf import Conf, KernelConf
from lvh.kernels.kdir import KernelsDir, kconfig_validate

LOG = logging.getLogger("test_kdir")


def _kernels_dir(tmp_path):
    conf = Conf(
        kernels=[
            KernelConf(name="bpf-next", url="git://example.com/bpf-next.git"),
            KernelConf(name="5.18", url="git://example.com/linux.git#linux-5.18.y"),
        ]
    )
    return KernelsDir(dir=str(tmp_path / "kernels"), conf=conf)


def test_kernel_config_found_and_missing(tmp_path):
    kd = _kernels_dir(tmp_path)
    assert kd.kernel_config("5.18").url == "git://example.com/linux.git#linux-5.18.y"
    assert kd.kernel_config("nope") is None


def test_remove_kernel_config(tmp_path):
    kd = _kernels_dir(tmp_path)
    removed = kd.remove_kernel_config("bpf-next")
    assert removed.name == "bpf-next"
    assert [k.name for k in kd.conf.kernels] == ["5.18"]
    assert kd.remove_kernel_config("bpf-next") is None


def _write_config(tmp_path, text):
    path = tmp_path / ".config"
    path.write_text(text)
    return str(path)


def test_kconfig_validate_ok(tmp_path):
    cfg = _write_config(
        tmp_path,
        "CONFIG_BPF=y\nCONFIG_NET_9P=m\n# CONFIG_WERROR is not set\n",
    )
    opts = [
        ["--enable", "CONFIG_BPF"],
        ["--module", "CONFIG_NET_9P"],
        ["--disable", "CONFIG_WERROR"],
        ["--disable", "CONFIG_DRM"],
    ]
    assert kconfig_validate(opts, cfg) is None


def test_kconfig_validate_misconfigured(tmp_path):
    cfg = _write_config(tmp_path, "# CONFIG_BPF is not set\n")
    with pytest.raises(ValueError, match="value CONFIG_BPF misconfigured"):
        kconfig_validate([["--enable", "CONFIG_BPF"]], cfg)


def test_kconfig_validate_missing_values(tmp_path):
    cfg = _write_config(tmp_path, "CONFIG_OTHER=y\n")
    with pytest.raises(ValueError) as info:
        kconfig_validate(
            [["--enable", "CONFIG_BPF"], ["--module", "CONFIG_NET_9P"]], cfg
        )
    message = str(info.value)
    assert "value CONFIG_BPF enabled but not found" in message
    assert "value CONFIG_NET_9P configured as module but not found" in message


def test_kconfig_validate_unknown_option(tmp_path):
    cfg = _write_config(tmp_path, "")
    with pytest.raises(ValueError, match="Unknown option: --frobnicate"):
        kconfig_validate([["--frobnicate", "CONFIG_BPF"]], cfg)


def test_kconfig_validate_missing_file(tmp_path):
    with pytest.raises(OSError, match="failed to open config file"):
        kconfig_validate([], str(tmp_path / "absent"))


def test_configure_unknown_kernel(tmp_path):
    kd = _kernels_dir(tmp_path)
    with pytest.raises(LookupError, match="kernel 'nope' not found"):
        kd.configure_kernel(LOG, "nope", native_arch().value)


def test_raw_configure_missing_dir_without_kernel(tmp_path):
    kd = _kernels_dir(tmp_path)
    with pytest.raises(ValueError, match="does not exist"):
        kd.raw_configure(LOG, str(tmp_path / "missing"), None, native_arch().value)


def _executable(path, body):
    path.write_text("#!/bin/sh\n" + body)
    path.chmod(path.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)


@pytest.fixture
def fake_tree(tmp_path, monkeypatch):
    calls = tmp_path / "calls.log"
    bindir = tmp_path / "bin"
    bindir.mkdir()
    _executable(bindir / "make", f'echo "make $*" >> "{calls}"\n')
    monkeypatch.setenv("PATH", str(bindir) + os.pathsep + os.environ.get("PATH", ""))

    kd = KernelsDir(
        dir=str(tmp_path / "kernels"),
        conf=Conf(
            kernels=[
                KernelConf(
                    name="k1",
                    url="git://example.com/linux.git",
                    opts=[["--enable", "CONFIG_BPF"]],
                    extra_make_args=["V=1"],
                )
            ],
            common_opts=[["--disable", "CONFIG_WERROR"]],
        ),
    )
    src = tmp_path / "kernels" / "k1"
    (src / "scripts").mkdir(parents=True)
    _executable(src / "scripts" / "config", f'echo "config $*" >> "{calls}"\n')
    return kd, str(src), calls


def test_raw_configure_runs_config_then_olddefconfig(fake_tree):
    kd, src, calls = fake_tree
    cwd = os.getcwd()
    kd.raw_configure(LOG, src, "k1", native_arch().value)
    assert os.getcwd() == cwd
    assert calls.read_text().splitlines() == [
        "config --disable CONFIG_WERROR",
        "config --enable CONFIG_BPF",
        "make olddefconfig V=1",
    ]


def test_configure_kernel_prepares_first(fake_tree):
    kd, _src, calls = fake_tree
    kd.configure_kernel(LOG, "k1", native_arch().value)
    assert calls.read_text().splitlines() == [
        "make defconfig prepare V=1",
        "config --disable CONFIG_WERROR",
        "config --enable CONFIG_BPF",
        "make olddefconfig V=1",
    ]