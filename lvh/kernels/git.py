"""Git operations for kernel source trees."""

from __future__ import annotations

import logging
import os

from lvh.kernels.utils import GIT_BINARY, directory_exists
from lvh.logcmd import CommandError, run_and_log_command

# Name of the shared bare repository inside a kernels directory.
MAIN_GIT_DIR = "git"


def git_clone_or_fetch_dir(
    log: logging.Logger,
    dir: str,
    remote_repo: str,
    remote_branch: str,
    depth: int,
) -> None:
    """Fetch in dir if it exists, otherwise clone remote_branch into it."""
    if directory_exists(dir):
        args = [GIT_BINARY, "-C", dir, "fetch"]
    else:
        args = [
            GIT_BINARY,
            "clone",
            "--depth", str(depth),
            "--branch", remote_branch,
            remote_repo,
            dir,
        ]
    run_and_log_command(log, args)


def git_add_workdir(
    log: logging.Logger,
    work_dir: str,
    bare_dir: str,
    remote_name: str,
    remote_repo: str,
    remote_branch: str,
    local_branch: str,
) -> None:
    """Add a remote to the bare repository and check it out as a worktree."""
    run_and_log_command(
        log,
        [
            GIT_BINARY,
            "--git-dir", bare_dir,
            "remote", "add",
            "-f", "-t", remote_branch, remote_name, remote_repo,
        ],
    )
    run_and_log_command(
        log,
        [
            GIT_BINARY,
            "--git-dir", bare_dir,
            "worktree", "add",
            "-b", local_branch,
            "--track",
            work_dir,
            f"{remote_name}/{remote_branch}",
        ],
    )


def git_local_branch(kname: str) -> str:
    """Name of the local branch used for a kernel's worktree."""
    return f"lvh-{kname}"


def remove_git_work_dir(log: logging.Logger, dir: str, kname: str) -> None:
    """Remove a kernel's worktree, remote and branch from the shared repository."""
    git_remove_workdir(
        log,
        work_dir=kname,
        bare_dir=os.path.join(dir, MAIN_GIT_DIR),
        remote_name=kname,
        local_branch=git_local_branch(kname),
    )


def git_remove_workdir(
    log: logging.Logger,
    work_dir: str,
    bare_dir: str,
    remote_name: str,
    local_branch: str,
) -> None:
    """Remove a worktree, its remote and its local branch.

    Every removal is attempted; CommandError lists all that failed.
    """
    removals = (
        ("worktree", ["worktree", "remove", work_dir]),
        ("remote", ["remote", "remove", remote_name]),
        ("local branch", ["branch", "--delete", "--force", local_branch]),
    )
    failures = []
    for what, git_args in removals:
        try:
            run_and_log_command(log, [GIT_BINARY, "--git-dir", bare_dir, *git_args])
        except CommandError as exc:
            failures.append(f"did not remove {what}: {exc}")
    if failures:
        raise CommandError("\n".join(failures))