import logging

import pytest

from lvh.logcmd import (
    CommandError,
    CommandTimeout,
    run_and_log_command,
    run_and_log_commands,
)


class _Recorder(logging.Handler):
    def __init__(self):
        super().__init__(logging.DEBUG)
        self.records = []

    def emit(self, record):
        self.records.append(record)

    def messages(self, level):
        return [r.getMessage() for r in self.records if r.levelno == level]


@pytest.fixture
def logged(request):
    logger = logging.getLogger(f"lvh-test.{request.node.name}")
    logger.setLevel(logging.DEBUG)
    logger.propagate = False
    recorder = _Recorder()
    logger.addHandler(recorder)
    yield logger, recorder
    logger.removeHandler(recorder)


def test_logcmd(logged):
    log, rec = logged
    result = run_and_log_command(log, ["/bin/sh", "-c", "echo FOO>&2; echo LALA"])
    assert result is None
    assert rec.messages(logging.WARNING) == ["stderr> FOO\n"]
    assert rec.messages(logging.INFO) == ["starting command", "stdout> LALA\n"]


def test_logcmd_fail(logged):
    log, rec = logged
    with pytest.raises(CommandError) as excinfo:
        run_and_log_command(log, ["/bin/sh", "-c", "exit 1"])
    assert excinfo.value.returncode == 1
    assert rec.messages(logging.WARNING) == []
    assert rec.messages(logging.INFO) == ["starting command"]


def test_logcmd_missing_binary(logged):
    log, _ = logged
    with pytest.raises(CommandError, match="failed to execute command"):
        run_and_log_command(log, ["/nonexistent/binary/for/lvh"])


def test_logcmd_timeout(logged):
    log, _ = logged
    with pytest.raises(CommandTimeout):
        run_and_log_command(log, ["/bin/sh", "-c", "sleep inf"], timeout=0.001)


def test_logcmd_no_timeout(logged):
    log, rec = logged
    result = run_and_log_command(log, ["/bin/sh", "-c", "sleep 0.1"], timeout=1.0)
    assert result is None
    assert rec.messages(logging.INFO) == ["starting command"]
    assert rec.messages(logging.WARNING) == []


def test_run_and_log_commands(logged):
    log, rec = logged
    result = run_and_log_commands(
        log,
        [
            ["/bin/sh", "-c", "echo FOO"],
            ["/bin/sh", "-c", "echo LALA>&2"],
        ],
    )
    assert result is None
    assert rec.messages(logging.INFO) == [
        "starting command",
        "stdout> FOO\n",
        "starting command",
    ]
    assert rec.messages(logging.WARNING) == ["stderr> LALA\n"]


def test_run_and_log_commands_empty_command(logged):
    log, _ = logged
    with pytest.raises(ValueError, match="command 1 is empty"):
        run_and_log_commands(log, [["/bin/sh", "-c", "true"], []])


def test_run_and_log_commands_stops_at_failure(logged):
    log, rec = logged
    with pytest.raises(CommandError, match="command 0 failed"):
        run_and_log_commands(
            log,
            [["/bin/sh", "-c", "exit 3"], ["/bin/sh", "-c", "echo NEVER"]],
        )
    assert rec.messages(logging.INFO) == ["starting command"]