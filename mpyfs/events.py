"""
Change notifications for the remote tree.

Every mutation publishes ``before(events)`` to all listeners, talks to the
board, updates the tree and then publishes ``after(events)``. Listeners are
registered on the RemoteFileSystem instance that owns the tree.
"""
from dataclasses import dataclass, field
import time
from typing import Any, Protocol


def _now():
    return int(time.time())


@dataclass(frozen=True)
class ChangeEvent:
    path: str
    requestor: Any = field(default=None, compare=False)
    timestamp: int = field(default_factory=_now, compare=False)


@dataclass(frozen=True)
class FileCreateEvent(ChangeEvent):
    parent_path: str = ""
    name: str = ""
    is_directory: bool = False


@dataclass(frozen=True)
class FileDeleteEvent(ChangeEvent):
    is_directory: bool = False


@dataclass(frozen=True)
class FileMoveEvent(ChangeEvent):
    old_parent_path: str = ""
    new_parent_path: str = ""

    @property
    def new_path(self):
        return f"{self.new_parent_path}/{self.path.rsplit('/', 1)[-1]}"


@dataclass(frozen=True)
class FilePropertyChangeEvent(ChangeEvent):
    property_name: str = "name"
    old_value: Any = None
    new_value: Any = None


@dataclass(frozen=True)
class FileCopyEvent(ChangeEvent):
    new_parent_path: str = ""
    new_name: str = ""

    @property
    def new_path(self):
        return f"{self.new_parent_path}/{self.new_name}"


@dataclass(frozen=True)
class FileContentChangeEvent(ChangeEvent):
    old_timestamp: int = 0
    new_timestamp: int = 0
    old_length: int = 0
    new_length: int = 0


class ChangeListener(Protocol):
    def before(self, events): ...

    def after(self, events): ...


class ChangeNotifier:
    """Explicit observer list; one per remote tree."""

    def __init__(self):
        self._listeners = []

    def add_listener(self, listener):
        if listener not in self._listeners:
            self._listeners.append(listener)

    def remove_listener(self, listener):
        if listener in self._listeners:
            self._listeners.remove(listener)

    @property
    def listeners(self):
        return tuple(self._listeners)

    def before(self, events):
        for listener in list(self._listeners):
            listener.before(events)

    def after(self, events):
        for listener in list(self._listeners):
            listener.after(events)
