"""Filesystem checks, kernel lookup and the tools that kernel work needs."""

from __future__ import annotations

import os
import shutil
import stat

GIT_BINARY = "git"
MAKE_BINARY = "make"

BINARIES = (GIT_BINARY,)


def directory_exists(path: str | os.PathLike) -> bool:
    """Return whether path is an existing directory.

    Raises NotADirectoryError if path exists but is something else.
    """
    try:
        st = os.stat(path)
    except FileNotFoundError:
        return False
    if stat.S_ISDIR(st.st_mode):
        return True
    raise NotADirectoryError(f"`{os.fspath(path)}` exists, but is not a directory")


def regular_file_exists(path: str | os.PathLike) -> bool:
    """Return whether path is an existing regular file.

    Raises OSError if path exists but is not a regular file.
    """
    try:
        st = os.stat(path)
    except FileNotFoundError:
        return False
    if stat.S_ISREG(st.st_mode):
        return True
    raise OSError(f"`{os.fspath(path)}` exists, but is not a regular file")


def find_kernel(install_dir: str | os.PathLike) -> str:
    """Find the single vmlinuz-* image under <install_dir>/boot.

    Returns its path relative to install_dir, e.g. ``boot/vmlinuz-6.1``.
    """
    boot_dir = os.path.join(install_dir, "boot")
    try:
        entries = list(os.scandir(boot_dir))
    except OSError as exc:
        cwd = os.getcwd()
        raise OSError(f"failed to read dir: {exc} (working dir: {cwd})") from exc

    kernels = [
        entry.name
        for entry in entries
        if entry.is_file(follow_symlinks=False) and entry.name.startswith("vmlinuz-")
    ]
    if not kernels:
        raise FileNotFoundError(f"no kernel found in '{boot_dir}'")
    if len(kernels) > 1:
        raise ValueError(f"unhandled case: multiple kernels found in '{boot_dir}'")
    return os.path.join("boot", kernels[0])


def check_environment() -> None:
    """Raise FileNotFoundError if a required tool is not on the PATH."""
    for cmd in BINARIES:
        if shutil.which(cmd) is None:
            raise FileNotFoundError(f"required cmd '{cmd}' not found")