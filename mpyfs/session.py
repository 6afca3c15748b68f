"""
One connected board: transport, cached tree and the worker that runs
long operations against them.
"""
from concurrent.futures import CancelledError
import logging

from . import protocol
from .errors import OperationCancelled
from .filesystem import RemoteFileSystem
from .planner import plan_upload
from .tasks import TaskRunner
from .transport import MpremoteTransport
from .uploader import Uploader

logger = logging.getLogger(__name__)


class DeviceSession:
    def __init__(self, port=None, transport=None, runner=None):
        self.transport = transport or MpremoteTransport(port)
        self.filesystem = RemoteFileSystem(self.transport)
        self.runner = runner or TaskRunner()

    def refresh(self, on_done=None):
        return self.runner.submit("Refresh device files", self.filesystem.refresh, on_done=on_done)

    def upload(self, layout, targets=None, progress=None, reset_on_success=False, on_done=None):
        return self.runner.submit(
            "Upload files",
            self._upload,
            layout,
            targets,
            progress,
            reset_on_success,
            on_done=on_done,
        )

    def delete(self, nodes, on_done=None):
        return self.runner.submit("Delete files", self.filesystem.delete_nodes, list(nodes), on_done=on_done)

    def run_script(self, remote_path, on_done=None):
        """Run a script stored on the board and return what it printed."""
        code = protocol.run_script_code(remote_path)
        return self.runner.submit(
            f"Run {remote_path}", lambda token: self.transport.exec(code, timeout=None), on_done=on_done
        )

    def call(self, title, fn, *args, **kwargs):
        """Run a short operation on the device worker; it has no cancellation points."""
        return self.runner.submit(title, lambda token: fn(*args, **kwargs))

    def _upload(self, layout, targets, progress, reset_on_success, token):
        try:
            if not self.filesystem.loaded:
                self.filesystem.refresh(token=token)
            candidates = plan_upload(layout, targets, token=token)
        except OperationCancelled:
            self.filesystem.refresh_quietly()
            raise
        report = Uploader(self.filesystem, progress=progress).upload(candidates, token=token)
        if reset_on_success:
            logger.info("Resetting the board")
            self.transport.reset()
        return report

    def close(self):
        self.runner.shutdown()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()


def wait_for(task):
    """
    Block until task finishes. Ctrl-C cancels it and still waits, so the
    cleanup refresh completes before OperationCancelled reaches the caller.
    """
    try:
        return task.result()
    except KeyboardInterrupt:
        task.cancel()
        try:
            return task.result()
        except CancelledError:
            raise OperationCancelled(f"{task.title} cancelled before it started") from None
