import json
import os

import pytest

from lvh.cli import VERSION, build_parser, main
from lvh.images.config import ImgConf, example_images_conf
from lvh.kernels.conf import CONFIG_OPT_GROUPS, DEFAULT_CONFIG_GROUPS, Conf
from lvh.kernels.manage import load_dir

BPF_NEXT_URL = "git://git.kernel.org/pub/scm/linux/kernel/git/bpf/bpf-next.git"
SHALLOW_URL = "git://git.kernel.org/pub/scm/linux/kernel/git/stable/linux.git?depth=1#linux-5.15.y"


def test_version_prints_version(capsys):
    assert main(["version"]) == 0
    assert capsys.readouterr().out == VERSION + "\n"


def test_example_config_round_trips(capsys):
    assert main(["images", "example-config"]) == 0
    data = json.loads(capsys.readouterr().out)
    assert data == [img.to_dict() for img in example_images_conf()]
    assert [ImgConf.from_dict(d) for d in data] == example_images_conf()


def test_images_build_dry_run(tmp_path, capsys):
    confs = [{"name": "base"}, {"name": "image1", "parent": "base"}]
    (tmp_path / "images.json").write_text(json.dumps(confs))
    rc = main(["images", "build", "--dir", str(tmp_path), "--dry-run"])
    assert rc == 0
    assert (tmp_path / "images" / "base").is_file()
    assert (tmp_path / "images" / "image1").is_file()
    out = capsys.readouterr().out
    assert "image:base       cachedImageUsed:false cachedImageDeleted:\n" in out
    assert len(out.splitlines()) == 2


def test_images_build_selected_image(tmp_path, capsys):
    confs = [{"name": "base"}, {"name": "other"}]
    (tmp_path / "images.json").write_text(json.dumps(confs))
    rc = main(["images", "build", "--dir", str(tmp_path), "--dry-run", "-i", "other"])
    assert rc == 0
    assert (tmp_path / "images" / "other").is_file()
    assert not (tmp_path / "images" / "base").exists()


def test_images_build_missing_config(tmp_path, capsys):
    assert main(["images", "build", "--dir", str(tmp_path)]) == 1
    assert "Error:" in capsys.readouterr().err


def test_images_build_requires_dir():
    with pytest.raises(SystemExit) as exc:
        main(["images", "build"])
    assert exc.value.code == 2


def test_kernels_init_default_groups(tmp_path):
    assert main(["kernels", "init", "--dir", str(tmp_path)]) == 0
    expected = Conf()
    expected.add_groups_common_opts(*DEFAULT_CONFIG_GROUPS)
    assert load_dir(str(tmp_path)).conf == expected


def test_kernels_init_selected_groups(tmp_path):
    rc = main(["kernels", "init", "--dir", str(tmp_path), "--config-groups", "basic,bpf"])
    assert rc == 0
    conf = load_dir(str(tmp_path)).conf
    assert conf.common_opts == CONFIG_OPT_GROUPS["basic"] + CONFIG_OPT_GROUPS["bpf"]
    assert conf.kernels == []


def test_kernels_init_twice_needs_force(tmp_path):
    assert main(["kernels", "init", "--dir", str(tmp_path)]) == 0
    assert main(["kernels", "init", "--dir", str(tmp_path)]) == 1
    assert main(["kernels", "init", "--dir", str(tmp_path), "--force"]) == 0


def test_kernels_add_just_print_config(tmp_path, capsys):
    rc = main([
        "kernels", "add", "bpf-next", BPF_NEXT_URL,
        "--dir", str(tmp_path), "--just-print-config", "--config-groups", "basic",
    ])
    assert rc == 0
    data = json.loads(capsys.readouterr().out)
    assert data["name"] == "bpf-next"
    assert data["url"] == BPF_NEXT_URL
    assert data["opts"] == CONFIG_OPT_GROUPS["basic"]
    assert not (tmp_path / "kernels.json").exists()


def test_kernels_add_and_list(tmp_path, capsys):
    assert main(["kernels", "init", "--dir", str(tmp_path)]) == 0
    assert main(["kernels", "add", "bpf-next", BPF_NEXT_URL, "--dir", str(tmp_path)]) == 0
    capsys.readouterr()
    assert main(["k", "list", "--dir", str(tmp_path)]) == 0
    assert capsys.readouterr().out == f"bpf-next      {BPF_NEXT_URL}\n"
    assert [k.name for k in load_dir(str(tmp_path)).conf.kernels] == ["bpf-next"]


def test_kernels_add_duplicate_fails(tmp_path):
    assert main(["kernels", "init", "--dir", str(tmp_path)]) == 0
    assert main(["kernels", "add", "bpf-next", BPF_NEXT_URL, "--dir", str(tmp_path)]) == 0
    assert main(["kernels", "add", "bpf-next", BPF_NEXT_URL, "--dir", str(tmp_path)]) == 1
    assert len(load_dir(str(tmp_path)).conf.kernels) == 1


def test_kernels_add_invalid_url_fails(tmp_path):
    assert main(["kernels", "init", "--dir", str(tmp_path)]) == 0
    rc = main(["kernels", "add", "x", "http://example.com/linux.tgz", "--dir", str(tmp_path)])
    assert rc == 1
    assert load_dir(str(tmp_path)).conf.kernels == []


def test_kernels_add_unknown_group_fails(tmp_path, capsys):
    assert main(["kernels", "init", "--dir", str(tmp_path)]) == 0
    rc = main([
        "kernels", "add", "bpf-next", BPF_NEXT_URL,
        "--dir", str(tmp_path), "--config-groups", "nosuchgroup",
    ])
    assert rc == 1
    assert "unknown group nosuchgroup" in capsys.readouterr().err


def test_kernels_remove_shallow(tmp_path):
    assert main(["kernels", "init", "--dir", str(tmp_path)]) == 0
    assert main(["kernels", "add", "5.15", SHALLOW_URL, "--dir", str(tmp_path)]) == 0
    src = tmp_path / "kernels" / "5.15"
    src.mkdir(parents=True)
    (src / "Makefile").write_text("all:\n")
    assert main(["kernels", "remove", "5.15", "--dir", str(tmp_path)]) == 0
    assert not src.exists()
    assert load_dir(str(tmp_path)).conf.kernels == []


def test_kernels_remove_unknown_fails(tmp_path):
    assert main(["kernels", "init", "--dir", str(tmp_path)]) == 0
    assert main(["kernels", "remove", "nope", "--dir", str(tmp_path)]) == 1


def test_kernels_fetch_unknown_fails(tmp_path, capsys):
    assert main(["kernels", "init", "--dir", str(tmp_path)]) == 0
    assert main(["kernels", "fetch", "nope", "--dir", str(tmp_path)]) == 1
    assert "nope" in capsys.readouterr().err


def test_kernels_list_missing_dir_fails(tmp_path):
    assert main(["kernel", "list", "--dir", os.path.join(str(tmp_path), "absent")]) == 1


def test_run_defaults():
    args = build_parser().parse_args(["run", "--image", "base.img"])
    assert args.cpu == 2
    assert args.mem == "4G"
    assert args.root_dev == "vda"
    assert args.serial_port == 0
    assert args.no_hw_accel is False


def test_run_deprecated_kvm_flag_sets_no_hw_accel():
    args = build_parser().parse_args(["run", "--image", "x", "--qemu-disable-kvm"])
    assert args.no_hw_accel is True


def test_run_invalid_port_fails(capsys):
    assert main(["run", "--image", "base.img", "-p", "notaport"]) == 1
    assert "Port flags" in capsys.readouterr().err


def test_run_requires_image():
    with pytest.raises(SystemExit) as exc:
        main(["run"])
    assert exc.value.code == 2