"""
In-memory model of the board's directory tree.

A node is either a directory (ordered children) or a file (cached content
plus the size declared by the listing); ``kind`` says which. Parents are held
through weak references: a directory owns its children, a child only points
back for path reconstruction.
"""
from enum import Enum
import time
import weakref

from .errors import ProtocolError
from .protocol import parse_listing


class NodeKind(Enum):
    DIRECTORY = "dir"
    FILE = "file"


class RemoteNode:
    __slots__ = (
        "kind",
        "name",
        "_parent",
        "timestamp",
        "exists",
        "children",
        "declared_size",
        "content",
        "content_loaded",
        "_frozen_path",
        "__weakref__",
    )

    def __init__(self, kind, name, parent=None, timestamp=0, declared_size=0):
        self.kind = kind
        self.name = name
        self._parent = None
        self._frozen_path = None
        self.timestamp = timestamp
        self.exists = True
        self.children = [] if kind is NodeKind.DIRECTORY else None
        self.declared_size = declared_size if kind is NodeKind.FILE else 0
        self.content = None
        self.content_loaded = False
        if parent is not None:
            parent.add_child(self)

    def __repr__(self):
        return f"RemoteNode({self.kind.value}, {self.full_path or '/'!r})"

    @classmethod
    def new_root(cls):
        return cls(NodeKind.DIRECTORY, "")

    @property
    def parent(self):
        return self._parent() if self._parent is not None else None

    @property
    def is_directory(self):
        return self.kind is NodeKind.DIRECTORY

    @property
    def is_root(self):
        return self._parent is None and self.name == ""

    @property
    def full_path(self):
        if self._frozen_path is not None:
            return self._frozen_path
        parent = self.parent
        if parent is None:
            return "/" + self.name if self.name else ""
        return f"{parent.full_path}/{self.name}"

    @property
    def display_path(self):
        return self.full_path or "/"

    @property
    def length(self):
        if self.is_directory:
            return 0
        if self.content_loaded:
            return len(self.content)
        return self.declared_size

    def find_child(self, name):
        if not self.is_directory:
            return None
        for child in self.children:
            if child.name == name:
                return child
        return None

    def add_child(self, node):
        if not self.is_directory:
            raise ValueError(f"{self.display_path} is not a directory")
        node._parent = weakref.ref(self)
        self.children.append(node)
        return node

    def detach(self):
        """Unlink from the parent's children; the back-reference is kept so
        a detached node still reports the path it had."""
        parent = self.parent
        if parent is not None and self in parent.children:
            parent.children.remove(self)

    def set_content(self, data, timestamp=None):
        self.content = bytes(data)
        self.content_loaded = True
        self.declared_size = len(self.content)
        if timestamp is not None:
            self.timestamp = timestamp

    def invalidate_content(self):
        self.content = None
        self.content_loaded = False

    def is_ancestor_of(self, other):
        node = other.parent
        while node is not None:
            if node is self:
                return True
            node = node.parent
        return False

    def walk(self):
        """Pre-order traversal, self first."""
        yield self
        if self.is_directory:
            for child in list(self.children):
                yield from child.walk()

    def walk_post_order(self):
        """Post-order traversal: every child before its directory."""
        if self.is_directory:
            for child in list(self.children):
                yield from child.walk_post_order()
        yield self

    def mark_gone(self):
        """Turn this subtree into stale shells that keep their last path."""
        for node in self.walk():
            node._frozen_path = node.full_path
            node.exists = False


def find_by_path(root, path):
    """Resolve a '/'-joined path from root; None on any miss."""
    node = root
    for segment in path.split("/"):
        if not segment:
            continue
        node = node.find_child(segment)
        if node is None:
            return None
    return node


def build_tree(records, timestamp=None):
    """
    Build a fresh tree from listing records.
    Missing ancestors are synthesized as directories with timestamp 0;
    an ancestor segment that is already a file is a protocol error.
    """
    if timestamp is None:
        timestamp = int(time.time())
    root = RemoteNode.new_root()
    for record in records:
        segments = record.segments
        if not segments:
            continue
        current = root
        for segment in segments[:-1]:
            child = current.find_child(segment)
            if child is None:
                child = RemoteNode(NodeKind.DIRECTORY, segment, current, timestamp=0)
            elif not child.is_directory:
                raise ProtocolError(f"Listing path {record.path!r} goes through file {child.full_path!r}")
            current = child

        name = segments[-1]
        existing = current.find_child(name)
        if record.is_directory:
            if existing is None:
                RemoteNode(NodeKind.DIRECTORY, name, current, timestamp=timestamp)
            elif existing.is_directory:
                existing.timestamp = timestamp
            else:
                raise ProtocolError(f"Listing has {record.path!r} as both file and directory")
        else:
            if existing is not None:
                if existing.is_directory:
                    raise ProtocolError(f"Listing has {record.path!r} as both directory and file")
                existing.detach()
            RemoteNode(NodeKind.FILE, name, current, timestamp=timestamp, declared_size=max(record.size, 0))
    return root


def build_tree_from_listing(text, timestamp=None):
    return build_tree(parse_listing(text), timestamp=timestamp)
