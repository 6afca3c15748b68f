"""
Cached proxy for the board's filesystem.

RemoteFileSystem owns the Remote Tree Model. The tree is rebuilt wholesale by
``refresh()`` from one listing command; file contents are fetched lazily and
cached until a forced reload. Every mutation runs the device command first
and only then touches the tree, bracketed by before/after notifications.
"""
import io
import logging
from pathlib import Path
import tempfile
import time

from . import protocol
from .config import MP_TIMEOUT_CP_FILE, MP_TIMEOUT_LONG, MP_TIMEOUT_SHORT
from .errors import AlreadyExistsError, DeviceFsError, NotFoundError, OperationCancelled, ProtocolError
from .events import (
    ChangeNotifier,
    FileContentChangeEvent,
    FileCopyEvent,
    FileCreateEvent,
    FileDeleteEvent,
    FileMoveEvent,
    FilePropertyChangeEvent,
)
from .tasks import check_cancelled
from .tree import NodeKind, RemoteNode, build_tree_from_listing, find_by_path

logger = logging.getLogger(__name__)


def validate_name(name):
    if not name or "/" in name or name in (".", ".."):
        raise ValueError(f"Invalid file name: {name!r}")


class DeviceOutputBuffer(io.BytesIO):
    """Collects a whole new file body; closing it writes it to the board."""

    def __init__(self, filesystem, node, requestor=None):
        super().__init__()
        self._filesystem = filesystem
        self._node = node
        self._requestor = requestor

    def close(self):
        if self.closed:
            return
        data = self.getvalue()
        try:
            self._filesystem.write_content(self._node, data, requestor=self._requestor)
        finally:
            super().close()


class RemoteFileSystem:
    def __init__(self, transport, clock=time.time):
        self.transport = transport
        self.root = RemoteNode.new_root()
        self.notifier = ChangeNotifier()
        self.last_error = None
        self.loaded = False
        self._clock = clock

    def _now(self):
        return int(self._clock())

    # -- listeners ---------------------------------------------------------

    def add_listener(self, listener):
        self.notifier.add_listener(listener)

    def remove_listener(self, listener):
        self.notifier.remove_listener(listener)

    # -- tree ------------------------------------------------------------

    def refresh(self, token=None):
        """
        Replace the whole tree with a fresh listing from the board.
        On failure the previous tree stays in place, ``last_error`` is set
        and the error propagates.
        """
        check_cancelled(token)
        try:
            output = self.transport.exec(protocol.FS_SCAN_SCRIPT, timeout=MP_TIMEOUT_LONG)
            new_root = build_tree_from_listing(output, timestamp=self._now())
        except DeviceFsError as e:
            self.last_error = e
            logger.warning("Refresh failed, keeping the last known tree: %s", e)
            raise
        old_root = self.root
        self.root = new_root
        self.last_error = None
        self.loaded = True
        old_root.mark_gone()
        logger.info("Remote tree refreshed: %d entries", sum(1 for _ in new_root.walk()) - 1)
        return new_root

    def refresh_quietly(self):
        """Best-effort refresh used as cleanup; never raises, ignores cancellation."""
        try:
            self.refresh()
        except DeviceFsError as e:
            logger.warning("Could not resynchronize the remote tree: %s", e)
            return False
        return True

    def find_by_path(self, path):
        return find_by_path(self.root, path)

    def get(self, path):
        node = self.find_by_path(path)
        if node is None:
            raise NotFoundError(f"{protocol.normalize_remote_path(path)} is not on the device")
        return node

    # -- content -----------------------------------------------------------

    def read_content(self, node, force=False):
        """Return the file's bytes, fetching them from the board at most once
        until ``force`` asks for a reload."""
        self._require_file(node)
        if node.content_loaded and not force:
            return node.content
        with tempfile.TemporaryDirectory(prefix="mpyfs-") as tmp:
            local_copy = Path(tmp) / "content"
            self.transport.run(protocol.read_command(node.full_path, local_copy), timeout=MP_TIMEOUT_CP_FILE)
            if not local_copy.exists():
                raise ProtocolError(f"Reading {node.full_path} produced no data")
            data = local_copy.read_bytes()
        node.set_content(data)
        return data

    def write_content(self, node, data, requestor=None):
        self._require_file(node)
        data = bytes(data)
        new_timestamp = self._now()
        events = [
            FileContentChangeEvent(
                path=node.full_path,
                requestor=requestor,
                old_timestamp=node.timestamp,
                new_timestamp=new_timestamp,
                old_length=node.length,
                new_length=len(data),
            )
        ]
        self._mutate(
            events,
            lambda: self._write_remote(node.full_path, data),
            lambda: node.set_content(data, timestamp=new_timestamp),
        )

    def open_output(self, node, requestor=None):
        self._require_file(node)
        return DeviceOutputBuffer(self, node, requestor)

    def remote_checksum(self, node):
        """sha256 hex digest computed on the board, None without hashlib there."""
        self._require_file(node)
        output = self.transport.exec(protocol.checksum_script(node.full_path), timeout=MP_TIMEOUT_LONG)
        return protocol.parse_checksum(output)

    def _write_remote(self, remote_path, data):
        with tempfile.TemporaryDirectory(prefix="mpyfs-") as tmp:
            local_copy = Path(tmp) / "content"
            local_copy.write_bytes(data)
            self.transport.run(protocol.write_command(local_copy, remote_path), timeout=MP_TIMEOUT_CP_FILE)

    # -- mutations -------------------------------------------------------

    def create_file(self, parent, name, requestor=None):
        self._require_directory(parent)
        self._check_free(parent, name)
        path = f"{parent.full_path}/{name}"
        events = [FileCreateEvent(path=path, requestor=requestor, parent_path=parent.full_path, name=name)]

        def add_node():
            node = RemoteNode(NodeKind.FILE, name, parent, timestamp=self._now())
            node.set_content(b"")
            return node

        return self._mutate(
            events,
            lambda: self.transport.run(protocol.touch_command(path), timeout=MP_TIMEOUT_SHORT),
            add_node,
        )

    def create_directory(self, parent, name, requestor=None, exist_ok=False):
        """
        Create parent/name on the board. With exist_ok, a directory the board
        already has but the cached tree lacks is adopted from a fresh listing;
        anything else in the way still raises AlreadyExistsError.
        """
        self._require_directory(parent)
        self._check_free(parent, name)
        path = f"{parent.full_path}/{name}"
        events = [
            FileCreateEvent(path=path, requestor=requestor, parent_path=parent.full_path, name=name, is_directory=True)
        ]
        adopted = []

        def remote():
            try:
                self.transport.run(protocol.mkdir_command(path), timeout=MP_TIMEOUT_SHORT)
            except AlreadyExistsError:
                if not exist_ok:
                    raise
                self.refresh()
                existing = self.find_by_path(path)
                if existing is None or not existing.is_directory:
                    raise AlreadyExistsError(f"{path} exists on the device and is not a directory") from None
                logger.debug("Adopted directory already on the board: %s", path)
                adopted.append(existing)

        def add_node():
            if adopted:
                return adopted[0]
            return RemoteNode(NodeKind.DIRECTORY, name, parent, timestamp=self._now())

        return self._mutate(events, remote, add_node)

    def ensure_directory(self, path, requestor=None):
        """Return the directory at path, creating missing segments on the board."""
        node = self.root
        for segment in path.split("/"):
            if not segment:
                continue
            child = node.find_child(segment)
            if child is None:
                child = self.create_directory(node, segment, requestor=requestor, exist_ok=True)
            elif not child.is_directory:
                raise AlreadyExistsError(f"{child.full_path} exists and is a file, cannot create directory")
            node = child
        return node

    def upload_bytes(self, remote_path, data, requestor=None):
        """Write data to remote_path, creating the file and its parents as needed."""
        remote_path = protocol.normalize_remote_path(remote_path)
        parent_path, _, name = remote_path.rpartition("/")
        validate_name(name)
        parent = self.ensure_directory(parent_path, requestor=requestor)
        existing = parent.find_child(name)
        if existing is not None:
            if existing.is_directory:
                raise AlreadyExistsError(f"{existing.full_path} is a directory")
            self.write_content(existing, data, requestor=requestor)
            return existing

        data = bytes(data)
        events = [FileCreateEvent(path=remote_path, requestor=requestor, parent_path=parent.full_path, name=name)]

        def add_node():
            node = RemoteNode(NodeKind.FILE, name, parent, timestamp=self._now())
            node.set_content(data)
            return node

        return self._mutate(events, lambda: self._write_remote(remote_path, data), add_node)

    def delete(self, node, requestor=None):
        """Delete one node; a directory goes with its whole subtree."""
        self._require_live(node)
        self._delete_subtree(node, tolerant=False, requestor=requestor)

    def delete_nodes(self, nodes, token=None, requestor=None):
        """
        Delete a selection, one batch per selected node in selection order.
        Paths already gone from the board are skipped. Any other failure, or
        cancellation, stops the remaining batches and resynchronizes the tree.
        Returns the paths handled.
        """
        handled = []
        try:
            for node in nodes:
                check_cancelled(token)
                if node.is_root:
                    logger.warning("Refusing to delete the device root")
                    continue
                self._delete_subtree(node, tolerant=True, requestor=requestor)
                handled.append(node.full_path)
        except (DeviceFsError, OperationCancelled):
            self.refresh_quietly()
            raise
        return handled

    def _delete_subtree(self, node, tolerant, requestor):
        if node.is_root:
            raise ValueError("Cannot delete the device root")
        entries = [(n.full_path, n.is_directory) for n in node.walk_post_order()]
        events = [FileDeleteEvent(path=node.full_path, requestor=requestor, is_directory=node.is_directory)]

        def remote():
            if tolerant:
                output = self.transport.exec(protocol.tolerant_delete_script(entries), timeout=MP_TIMEOUT_LONG)
                for gone in protocol.parse_gone_paths(output):
                    logger.debug("Already removed: %s", gone)
            else:
                self.transport.run(protocol.delete_batch_command(entries), timeout=MP_TIMEOUT_LONG)

        def remove_node():
            if node.exists:
                node.detach()
                node.mark_gone()

        # A chained rm/rmdir batch can stop part way through
        self._mutate(events, remote, remove_node, resync_on_failure=not tolerant and len(entries) > 1)

    def rename(self, node, new_name, requestor=None):
        self._require_live(node)
        if node.is_root:
            raise ValueError("Cannot rename the device root")
        validate_name(new_name)
        if new_name == node.name:
            return node
        parent = node.parent
        self._check_free(parent, new_name)
        old_path = node.full_path
        new_path = f"{parent.full_path}/{new_name}"
        events = [
            FilePropertyChangeEvent(
                path=old_path, requestor=requestor, property_name="name", old_value=node.name, new_value=new_name
            )
        ]

        def set_name():
            node.name = new_name
            return node

        return self._mutate(
            events,
            lambda: self.transport.exec(protocol.rename_script(old_path, new_path), timeout=MP_TIMEOUT_SHORT),
            set_name,
        )

    def move(self, node, new_parent, requestor=None):
        self._require_live(node)
        self._require_directory(new_parent)
        if node.is_root:
            raise ValueError("Cannot move the device root")
        if new_parent is node or node.is_ancestor_of(new_parent):
            raise ValueError(f"Cannot move {node.full_path} into itself")
        old_parent = node.parent
        if old_parent is new_parent:
            return node
        self._check_free(new_parent, node.name)
        old_path = node.full_path
        new_path = f"{new_parent.full_path}/{node.name}"
        events = [
            FileMoveEvent(
                path=old_path,
                requestor=requestor,
                old_parent_path=old_parent.full_path,
                new_parent_path=new_parent.full_path,
            )
        ]

        def relink():
            node.detach()
            new_parent.add_child(node)
            return node

        return self._mutate(
            events,
            lambda: self.transport.exec(protocol.rename_script(old_path, new_path), timeout=MP_TIMEOUT_SHORT),
            relink,
        )

    def copy(self, node, new_parent, copy_name=None, requestor=None):
        """Copy a file or a whole directory under new_parent."""
        self._require_live(node)
        self._require_directory(new_parent)
        if node.is_root:
            raise ValueError("Cannot copy the device root")
        if node.is_directory and (new_parent is node or node.is_ancestor_of(new_parent)):
            raise ValueError(f"Cannot copy {node.full_path} into itself")
        name = copy_name or node.name
        validate_name(name)
        self._check_free(new_parent, name)
        target_root = f"{new_parent.full_path}/{name}"
        source_root = node.full_path

        # Snapshot before any remote work: (source node, target path) pre-order
        plan = [(source, target_root + source.full_path[len(source_root):]) for source in node.walk()]
        payloads = {}

        def remote():
            for source, target in plan:
                if source.is_directory:
                    self.transport.run(protocol.mkdir_command(target), timeout=MP_TIMEOUT_SHORT)
                else:
                    payloads[target] = self.read_content(source)
                    self._write_remote(target, payloads[target])

        def add_nodes():
            created = {}
            now = self._now()
            for source, target in plan:
                parent_path, _, leaf = target.rpartition("/")
                parent = created.get(parent_path, new_parent)
                duplicate = RemoteNode(source.kind, leaf, parent, timestamp=now)
                if not source.is_directory:
                    duplicate.set_content(payloads[target])
                created[target] = duplicate
            return created[target_root]

        events = [
            FileCopyEvent(path=source_root, requestor=requestor, new_parent_path=new_parent.full_path, new_name=name)
        ]
        return self._mutate(events, remote, add_nodes, resync_on_failure=len(plan) > 1)

    # -- helpers -----------------------------------------------------------

    def _mutate(self, events, remote_op, local_op, resync_on_failure=False):
        """before -> remote -> tree -> after. A failed remote step leaves the
        tree untouched (or resynchronized when several commands were involved)
        and publishes no 'after'."""
        self.notifier.before(events)
        try:
            remote_op()
        except DeviceFsError:
            if resync_on_failure:
                self.refresh_quietly()
            raise
        result = local_op()
        self.notifier.after(events)
        return result

    def _require_live(self, node):
        if not node.exists:
            raise NotFoundError(f"{node.display_path} is no longer in the tree")

    def _require_file(self, node):
        self._require_live(node)
        if node.is_directory:
            raise IsADirectoryError(f"{node.display_path} is a directory")

    def _require_directory(self, node):
        self._require_live(node)
        if not node.is_directory:
            raise NotADirectoryError(f"{node.display_path} is not a directory")

    def _check_free(self, parent, name):
        validate_name(name)
        if parent.find_child(name) is not None:
            raise AlreadyExistsError(f"{parent.full_path}/{name} already exists")
