"""Kernel source locations and how to fetch and remove them."""

from __future__ import annotations

import logging
import os
import re
import shutil
from abc import ABC, abstractmethod
from dataclasses import dataclass
from urllib.parse import parse_qs, unquote, urlsplit

from lvh.kernels.git import (
    MAIN_GIT_DIR,
    git_add_workdir,
    git_clone_or_fetch_dir,
    git_local_branch,
    remove_git_work_dir,
)
from lvh.kernels.utils import GIT_BINARY, check_environment, directory_exists
from lvh.logcmd import CommandError, run_and_log_command

_INT_RE = re.compile(r"[+-]?[0-9]+")


class KernelURL(ABC):
    """Where a kernel's source comes from."""

    @abstractmethod
    def fetch(self, log: logging.Logger, dir: str, name: str) -> None:
        """Fetch the kernel called name into <dir>/<name>."""

    @abstractmethod
    def remove(self, log: logging.Logger, dir: str, name: str) -> None:
        """Remove the kernel called name from dir."""


@dataclass
class GitURL(KernelURL):
    """A git repository and branch.

    Non-shallow repositories share one bare repository (<dir>/git) and get a
    worktree each; a shallow_depth other than -1 clones on its own instead.
    """

    repo: str
    branch: str = "master"
    shallow_depth: int = -1

    def __post_init__(self) -> None:
        if not self.branch:
            self.branch = "master"

    def _sync_worktree(self, log: logging.Logger, id_dir: str) -> None:
        run_and_log_command(log, [GIT_BINARY, "-C", id_dir, "pull"])

    def fetch(self, log: logging.Logger, dir: str, name: str) -> None:
        check_environment()
        if name == MAIN_GIT_DIR:
            raise ValueError(f"id `{name}` is not allowed. Please use another.")

        git_dir = os.path.join(dir, MAIN_GIT_DIR)
        id_dir = os.path.join(dir, name)

        if self.shallow_depth != -1:
            git_clone_or_fetch_dir(log, id_dir, self.repo, self.branch, self.shallow_depth)
            return

        if directory_exists(id_dir):
            self._sync_worktree(log, id_dir)
            return

        if not directory_exists(git_dir):
            _make_git_dir(log, git_dir)

        git_add_workdir(
            log,
            work_dir=id_dir,
            bare_dir=git_dir,
            remote_name=name,
            remote_repo=self.repo,
            remote_branch=self.branch,
            local_branch=git_local_branch(name),
        )

    def remove(self, log: logging.Logger, dir: str, name: str) -> None:
        if self.shallow_depth != -1:
            id_dir = os.path.join(dir, name)
            if os.path.lexists(id_dir):
                shutil.rmtree(id_dir)
            return
        try:
            remove_git_work_dir(log, dir, name)
        except CommandError as exc:
            log.warning("remove work dir encountered errors: %s", exc)
            raise


def _make_git_dir(log: logging.Logger, git_dir: str) -> None:
    os.makedirs(git_dir, exist_ok=True)
    try:
        run_and_log_command(log, [GIT_BINARY, "init", "--bare", git_dir])
    except CommandError:
        shutil.rmtree(git_dir, ignore_errors=True)
        raise


def _parse_depth(values: list[str]) -> int:
    if len(values) != 1:
        raise ValueError(f"invalid depth value: `{values}`")
    text = values[0]
    if not _INT_RE.fullmatch(text) or int(text) < 0:
        raise ValueError(f"invalid depth value: `{text}`")
    return int(text)


def _git_url_from_parts(scheme: str, netloc: str, path: str, query: str, fragment: str) -> GitURL:
    host = netloc.rpartition("@")[2]
    repo = f"{scheme}://{host}{unquote(path)}"
    # the fragment names the branch
    url = GitURL(repo=repo, branch=unquote(fragment))
    params = parse_qs(query, keep_blank_values=True)
    if "depth" in params:
        url.shallow_depth = _parse_depth(params["depth"])
    return url


def parse_url(s: str) -> KernelURL:
    """Parse a kernel URL; git:// and https:// URLs are supported."""
    parts = urlsplit(s)
    scheme = parts.scheme
    if scheme in ("git", "https"):
        return _git_url_from_parts(
            scheme, parts.netloc, parts.path, parts.query, parts.fragment
        )
    if scheme == "http":
        raise ValueError(f"{scheme} support coming soon!")
    raise ValueError(f"Unsupported URL: '{s}'")