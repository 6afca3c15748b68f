"""
Incremental upload of planned candidates.

A candidate is skipped when the cached tree already has a file at the same
remote path with the same length and the same checksum. Checksums compare
CRC32 of the cached content when it is loaded, otherwise the board's sha256
against the local sha256. Boards without hashlib fall back to size only.
"""
from dataclasses import dataclass, field
import hashlib
import logging
from typing import Optional
import zlib

from .errors import DeviceFsError, OperationCancelled, UploadError
from .tasks import check_cancelled

logger = logging.getLogger(__name__)


@dataclass
class UploadReport:
    transferred: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)
    not_attempted: list[str] = field(default_factory=list)
    failed: Optional[str] = None
    error: Optional[BaseException] = None
    refreshed: bool = False

    def summary(self):
        text = f"{len(self.transferred)} transferred, {len(self.skipped)} unchanged"
        if self.failed or self.not_attempted:
            text += f", {len(self.not_attempted) + (1 if self.failed else 0)} not uploaded"
        return text


def checksums_match(filesystem, node, data):
    if node.content_loaded:
        return zlib.crc32(node.content) == zlib.crc32(data)
    remote_digest = filesystem.remote_checksum(node)
    if remote_digest is None:
        logger.debug("No hashlib on the board, comparing %s by size only", node.full_path)
        return True
    return remote_digest == hashlib.sha256(data).hexdigest()


def needs_transfer(filesystem, remote_path, data):
    node = filesystem.find_by_path(remote_path)
    if node is None or node.is_directory:
        return True
    if node.length != len(data):
        return True
    return not checksums_match(filesystem, node, data)


class Uploader:
    """
    Sends candidates one by one through the filesystem. progress, when given,
    is called as progress(done, total, remote_path) after each candidate.
    """

    def __init__(self, filesystem, progress=None, requestor=None):
        self.filesystem = filesystem
        self.progress = progress
        self.requestor = requestor
        self.last_report = None

    def upload(self, candidates, token=None):
        report = UploadReport()
        self.last_report = report
        total = len(candidates)
        try:
            for done, candidate in enumerate(candidates, start=1):
                check_cancelled(token)
                self._upload_one(candidate, report)
                if self.progress is not None:
                    self.progress(done, total, candidate.remote_path)
        except OperationCancelled:
            self._mark_rest(candidates, report)
            report.refreshed = self.filesystem.refresh_quietly()
            raise
        except (DeviceFsError, OSError) as e:
            report.error = e
            self._mark_rest(candidates, report)
            report.refreshed = self.filesystem.refresh_quietly()
            raise UploadError(f"Upload of {report.failed} failed: {e}", report) from e

        report.refreshed = self.filesystem.refresh_quietly()
        logger.info("Upload finished: %s", report.summary())
        return report

    def _upload_one(self, candidate, report):
        remote_path = candidate.remote_path
        try:
            data = candidate.local_file.read_bytes()
            if needs_transfer(self.filesystem, remote_path, data):
                logger.debug("Uploading %s -> %s (%d bytes)", candidate.local_file, remote_path, len(data))
                self.filesystem.upload_bytes(remote_path, data, requestor=self.requestor)
                report.transferred.append(remote_path)
            else:
                logger.debug("Unchanged on the board: %s", remote_path)
                report.skipped.append(remote_path)
        except (DeviceFsError, OSError):
            report.failed = remote_path
            raise

    @staticmethod
    def _mark_rest(candidates, report):
        handled = set(report.transferred) | set(report.skipped)
        if report.failed:
            handled.add(report.failed)
        report.not_attempted = [c.remote_path for c in candidates if c.remote_path not in handled]
