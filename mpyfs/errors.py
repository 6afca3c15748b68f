"""Exceptions raised by mpyfs."""


class DeviceFsError(Exception):
    """Base class for every device filesystem failure."""


class TransportError(DeviceFsError):
    """The command channel failed: timeout, non-zero exit or no connection."""

    def __init__(self, message, returncode=None, output=""):
        super().__init__(message)
        self.returncode = returncode
        self.output = output


class NotFoundError(DeviceFsError):
    """A path is missing from the tree, or the device answered ENOENT."""


class AlreadyExistsError(DeviceFsError):
    """A name is already taken, in the tree or on the device (EEXIST)."""


class ProtocolError(DeviceFsError):
    """The device answered with something that could not be parsed."""


class UploadError(DeviceFsError):
    """An upload was aborted; ``report`` tells what did and did not happen."""

    def __init__(self, message, report):
        super().__init__(message)
        self.report = report


class OperationCancelled(Exception):
    """A long-running operation observed its cancellation token.

    ``except DeviceFsError`` handlers do not catch it.
    """
