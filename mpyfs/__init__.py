"""mpyfs: cached remote filesystem and incremental uploads for MicroPython boards."""

__version__ = "0.2.0"

from .errors import (
    AlreadyExistsError,
    DeviceFsError,
    NotFoundError,
    OperationCancelled,
    ProtocolError,
    TransportError,
    UploadError,
)
from .filesystem import RemoteFileSystem
from .planner import UploadCandidate, plan_upload
from .project import ProjectLayout
from .session import DeviceSession
from .transport import MpremoteTransport
from .tree import NodeKind, RemoteNode
from .uploader import Uploader, UploadReport
