import subprocess

import pytest

from mpyfs import transport as transport_module
from mpyfs.errors import AlreadyExistsError, NotFoundError, TransportError
from mpyfs.transport import (
    RC_NO_PORT,
    RC_NOT_INSTALLED,
    RC_TIMEOUT,
    MpremoteTransport,
    run_mpremote_command,
)


class StubRunner:
    def __init__(self, returncode=0, stdout="", stderr=""):
        self.result = (returncode, stdout, stderr)
        self.calls = []

    def __call__(self, args, port, timeout=None):
        self.calls.append((args, port, timeout))
        returncode, stdout, stderr = self.result
        return subprocess.CompletedProcess(args, returncode, stdout=stdout, stderr=stderr)


def test_command_line_is_built_after_connect(monkeypatch):
    captured = {}

    def fake_run(cmd, **kwargs):
        captured["cmd"] = cmd
        captured["kwargs"] = kwargs
        return subprocess.CompletedProcess(cmd, 0, stdout="ok", stderr="")

    monkeypatch.setattr(transport_module.subprocess, "run", fake_run)
    result = run_mpremote_command(["fs", "ls", ":"], "/dev/ttyACM0", timeout=5)
    assert result.returncode == 0
    assert captured["cmd"] == ["mpremote", "connect", "/dev/ttyACM0", "fs", "ls", ":"]
    assert captured["kwargs"]["timeout"] == 5
    assert captured["kwargs"]["capture_output"]


def test_missing_port_is_reported_without_running(monkeypatch):
    monkeypatch.setattr(transport_module.subprocess, "run", pytest.fail)
    assert run_mpremote_command(["reset"], None).returncode == RC_NO_PORT


def test_missing_mpremote(monkeypatch):
    def fake_run(cmd, **kwargs):
        raise FileNotFoundError(cmd[0])

    monkeypatch.setattr(transport_module.subprocess, "run", fake_run)
    result = run_mpremote_command(["reset"], "COM3")
    assert result.returncode == RC_NOT_INSTALLED
    assert "not found" in result.stderr


def test_timeout(monkeypatch):
    def fake_run(cmd, **kwargs):
        raise subprocess.TimeoutExpired(cmd, kwargs["timeout"])

    monkeypatch.setattr(transport_module.subprocess, "run", fake_run)
    assert run_mpremote_command(["reset"], "COM3", timeout=1).returncode == RC_TIMEOUT


def test_run_returns_stdout():
    runner = StubRunner(stdout="hello\n")
    channel = MpremoteTransport("COM3", runner=runner)
    assert channel.run(["exec", "print('hello')"], timeout=3) == "hello\n"
    assert runner.calls == [(["exec", "print('hello')"], "COM3", 3)]


@pytest.mark.parametrize(
    "stderr, error",
    [
        ("OSError: [Errno 2] ENOENT", NotFoundError),
        ("cp: No such file or directory", NotFoundError),
        ("OSError: [Errno 17] EEXIST", AlreadyExistsError),
        ("could not enter raw repl", TransportError),
    ],
)
def test_failures_are_classified(stderr, error):
    channel = MpremoteTransport("COM3", runner=StubRunner(returncode=1, stderr=stderr))
    with pytest.raises(error):
        channel.run(["fs", "rm", ":/x"])


def test_only_the_last_traceback_line_classifies_the_failure():
    stdout = (
        "No such file or directory, using defaults\n"
        "Traceback (most recent call last):\n"
        '  File "<stdin>", line 3, in <module>\n'
        "ValueError: bad value\n"
    )
    channel = MpremoteTransport("COM3", runner=StubRunner(returncode=1, stdout=stdout))
    with pytest.raises(TransportError) as excinfo:
        channel.run(["exec", "x"])
    assert not isinstance(excinfo.value, NotFoundError)


def test_traceback_ending_in_missing_file_is_not_found():
    stdout = "Traceback (most recent call last):\nOSError: [Errno 2]\n"
    channel = MpremoteTransport("COM3", runner=StubRunner(returncode=1, stdout=stdout))
    with pytest.raises(NotFoundError):
        channel.run(["exec", "x"])


def test_timeout_is_a_transport_error_even_with_enoent_text():
    runner = StubRunner(returncode=RC_TIMEOUT, stdout="ENOENT", stderr="TimeoutExpired (10s) executing mpremote")
    channel = MpremoteTransport("COM3", runner=runner)
    with pytest.raises(TransportError) as excinfo:
        channel.run(["exec", "x"])
    assert excinfo.value.returncode == RC_TIMEOUT
    assert not isinstance(excinfo.value, NotFoundError)


def test_probe_and_reset():
    runner = StubRunner(stdout="MicroPython\r\n")
    channel = MpremoteTransport("COM3", runner=runner)
    assert channel.probe() == "micropython"
    channel.reset()
    assert runner.calls[-1][0] == ["reset"]


def test_list_ports(monkeypatch):
    class Port:
        device = "COM3"
        description = "USB JTAG"

    monkeypatch.setattr(transport_module.serial.tools.list_ports, "comports", lambda: iter([Port()]))
    assert [p.device for p in transport_module.list_ports()] == ["COM3"]
