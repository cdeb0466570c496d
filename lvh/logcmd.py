"""Run external commands, logging their output line by line."""

from __future__ import annotations

import logging
import os
import shutil
import signal
import subprocess
import threading
import time
from typing import Callable, Iterable, Sequence, TextIO, Union

Logger = Union[logging.Logger, logging.LoggerAdapter]

# How long to wait for output readers after a timed-out command was killed.
_DRAIN_SECONDS = 1.0


class CommandError(Exception):
    """A command could not be started or exited unsuccessfully."""

    def __init__(
        self,
        message: str,
        cmd: Sequence[str] | None = None,
        returncode: int | None = None,
    ) -> None:
        super().__init__(message)
        self.cmd = list(cmd) if cmd is not None else None
        self.returncode = returncode


class CommandTimeout(CommandError):
    """A command did not finish before its deadline and was killed."""


def _log_stream(
    stream: TextIO,
    emit: Callable[..., None],
    prefix: str,
    log: Logger,
    name: str,
) -> None:
    try:
        for line in stream:
            # an unterminated final chunk is dropped, like a line-based reader would
            if not line.endswith("\n"):
                break
            emit("%s%s", prefix, line)
    except (OSError, ValueError) as exc:
        log.warning("failed to read from %s: %s", name, exc)


def _log_start(log: Logger, args: Sequence[str]) -> None:
    extra = {
        "cmd_path": shutil.which(args[0]) or args[0],
        "cmd_args": list(args),
    }
    try:
        extra["cwd"] = os.getcwd()
    except OSError:
        pass
    log.info("starting command", extra=extra)


def _kill(proc: subprocess.Popen, own_group: bool) -> None:
    try:
        if own_group and hasattr(os, "killpg"):
            os.killpg(proc.pid, signal.SIGKILL)
        else:
            proc.kill()
    except ProcessLookupError:
        pass


def _run(log: Logger, args: Sequence[str], timeout: float | None) -> None:
    own_group = timeout is not None
    try:
        proc = subprocess.Popen(
            list(args),
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            text=True,
            encoding="utf-8",
            errors="replace",
            start_new_session=own_group,
        )
    except OSError as exc:
        raise CommandError(f"failed to execute command: {exc}", args) from exc

    readers = [
        threading.Thread(
            target=_log_stream,
            args=(proc.stdout, log.info, "stdout> ", log, "stdout"),
            daemon=True,
        ),
        threading.Thread(
            target=_log_stream,
            args=(proc.stderr, log.warning, "stderr> ", log, "stderr"),
            daemon=True,
        ),
    ]
    for reader in readers:
        reader.start()

    try:
        try:
            returncode = proc.wait(timeout=timeout)
        except subprocess.TimeoutExpired:
            _kill(proc, own_group)
            proc.wait()
            for reader in readers:
                reader.join(_DRAIN_SECONDS)
            raise CommandTimeout(
                f"command did not finish within {timeout}s", args
            ) from None
        for reader in readers:
            reader.join()
    finally:
        for stream in (proc.stdout, proc.stderr):
            if stream is not None:
                try:
                    stream.close()
                except OSError:
                    pass

    if returncode != 0:
        if returncode < 0:
            message = f"terminated by signal {-returncode}"
        else:
            message = f"exit status {returncode}"
        raise CommandError(message, args, returncode)


def run_and_log_command(
    log: Logger, args: Sequence[str], timeout: float | None = None
) -> None:
    """Run a command, logging stdout at INFO and stderr at WARNING.

    Raises CommandError if the command fails, CommandTimeout if it runs past
    the timeout (in seconds).
    """
    if not args:
        raise ValueError("command is empty")
    _log_start(log, args)
    _run(log, args, timeout)


def run_and_log_commands(
    log: Logger,
    commands: Iterable[Sequence[str]],
    timeout: float | None = None,
) -> None:
    """Run commands one after another; the timeout covers all of them."""
    deadline = None if timeout is None else time.monotonic() + timeout
    for index, args in enumerate(commands):
        if not args:
            raise ValueError(f"command {index} is empty")
        remaining = None
        if deadline is not None:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                raise CommandTimeout(f"command {index} failed: deadline exceeded", args)
        _log_start(log, args)
        try:
            _run(log, args, remaining)
        except CommandError as exc:
            raise type(exc)(
                f"command {index} failed: {exc}", exc.cmd, exc.returncode
            ) from exc