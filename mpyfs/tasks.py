"""
Background execution of long device operations.

All tasks share one worker thread, so refreshes, uploads and deletes never
touch the transport or the tree at the same time. Each task gets its own
CancellationToken which the operation checks at every loop step.
"""
from concurrent.futures import ThreadPoolExecutor
import logging
import threading

from .errors import OperationCancelled

logger = logging.getLogger(__name__)


class CancellationToken:
    def __init__(self):
        self._event = threading.Event()

    def cancel(self):
        self._event.set()

    @property
    def cancelled(self):
        return self._event.is_set()

    def check(self):
        if self._event.is_set():
            raise OperationCancelled("Operation cancelled")


def check_cancelled(token):
    if token is not None:
        token.check()


class DeviceTask:
    def __init__(self, title, token, future):
        self.title = title
        self.token = token
        self.future = future

    def cancel(self):
        self.token.cancel()
        # Not started yet: drop it without running
        self.future.cancel()

    def done(self):
        return self.future.done()

    def result(self, timeout=None):
        return self.future.result(timeout=timeout)


class TaskRunner:
    def __init__(self):
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="mpyfs-device")

    def submit(self, title, fn, *args, on_done=None, **kwargs):
        """
        Run fn(*args, token=<CancellationToken>, **kwargs) on the device worker.
        on_done(task) is called from the worker once the task finishes; callers
        that own a UI thread hand the result over from there.
        """
        token = CancellationToken()

        def _run():
            logger.debug("Task started: %s", title)
            try:
                return fn(*args, token=token, **kwargs)
            except OperationCancelled:
                logger.info("Task cancelled: %s", title)
                raise
            finally:
                logger.debug("Task finished: %s", title)

        future = self._executor.submit(_run)
        task = DeviceTask(title, token, future)
        if on_done is not None:
            future.add_done_callback(lambda _future: on_done(task))
        return task

    def shutdown(self, wait=True):
        self._executor.shutdown(wait=wait)

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.shutdown()
