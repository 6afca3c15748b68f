"""
Command channel to the board.

Every device operation is an ``mpremote`` invocation run as a subprocess:
``mpremote connect <port> <args...>``. The transport captures the text
output, turns failures into exceptions and never lets two commands overlap.
"""
import logging
import subprocess
import threading
import time

import serial.tools.list_ports

from .config import FS_OPERATION_DELAY, MP_TIMEOUT_SHORT
from .errors import AlreadyExistsError, NotFoundError, TransportError

logger = logging.getLogger(__name__)

RC_TIMEOUT = -1
RC_OS_ERROR = -2
RC_NOT_INSTALLED = -98
RC_NO_PORT = -99

NOT_FOUND_MARKERS = ("ENOENT", "No such file or directory", "[Errno 2]")
EXISTS_MARKERS = ("EEXIST", "File exists", "[Errno 17]")


def list_ports():
    return list(serial.tools.list_ports.comports())


def run_mpremote_command(mpremote_args_list, port, timeout=None, working_dir=None):
    """
    Runs an mpremote command and captures its output.
    mpremote_args_list: list of arguments for mpremote AFTER 'connect <port>'.
    Failures to launch are reported through synthetic negative return codes.
    """
    if not port:
        return subprocess.CompletedProcess(mpremote_args_list, RC_NO_PORT, stdout="", stderr="Device port not set")

    full_cmd = ["mpremote", "connect", port] + list(mpremote_args_list)
    logger.debug("Running mpremote: %s", " ".join(full_cmd))
    try:
        return subprocess.run(
            full_cmd,
            capture_output=True,
            text=True,
            encoding="utf-8",
            errors="replace",
            check=False,
            timeout=timeout,
            cwd=working_dir,
        )
    except FileNotFoundError:
        return subprocess.CompletedProcess(
            full_cmd, RC_NOT_INSTALLED, stdout="", stderr="mpremote command not found. Is it installed and in PATH?"
        )
    except subprocess.TimeoutExpired:
        return subprocess.CompletedProcess(full_cmd, RC_TIMEOUT, stdout="", stderr=f"TimeoutExpired ({timeout}s) executing mpremote")
    except OSError as e:
        return subprocess.CompletedProcess(full_cmd, RC_OS_ERROR, stdout="", stderr=f"Unexpected error: {e}")


class MpremoteTransport:
    """Serialized mpremote command channel bound to one serial port."""

    def __init__(self, port, operation_delay=FS_OPERATION_DELAY, runner=run_mpremote_command):
        self.port = port
        self.operation_delay = operation_delay
        self._runner = runner
        self._lock = threading.Lock()

    def run(self, args, timeout=MP_TIMEOUT_SHORT):
        """Run one mpremote command line and return its stdout.

        Raises NotFoundError or AlreadyExistsError when the device reports
        ENOENT / EEXIST, TransportError for every other failure.
        """
        with self._lock:
            result = self._runner(list(args), self.port, timeout=timeout)
            if self.operation_delay:
                time.sleep(self.operation_delay)
        check_result(args, result)
        return result.stdout or ""

    def exec(self, code, timeout=MP_TIMEOUT_SHORT):
        return self.run(["exec", code], timeout=timeout)

    def reset(self, timeout=MP_TIMEOUT_SHORT):
        self.run(["reset"], timeout=timeout)

    def probe(self, timeout=MP_TIMEOUT_SHORT):
        """Return the interpreter name reported by the board, e.g. 'micropython'."""
        return self.exec("import sys; print(sys.implementation.name)", timeout=timeout).strip().lower()


def check_result(args, result):
    if result.returncode == 0:
        return
    stderr = (result.stderr or "").strip()
    stdout = (result.stdout or "").strip()
    message = stderr or stdout or f"mpremote exited with code {result.returncode}"
    # Only the final line of a traceback names the error that stopped the command
    error_line = message.splitlines()[-1]
    command = args[0] if args else "mpremote"

    if result.returncode == RC_TIMEOUT:
        raise TransportError(f"{command}: {message}", result.returncode, stdout)
    if any(marker in error_line for marker in NOT_FOUND_MARKERS):
        raise NotFoundError(f"{command}: {message}")
    if any(marker in error_line for marker in EXISTS_MARKERS):
        raise AlreadyExistsError(f"{command}: {message}")
    raise TransportError(f"{command}: {message}", result.returncode, stdout)
