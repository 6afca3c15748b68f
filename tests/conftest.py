"""
Shared fixtures: an in-memory board behind a fake transport.

FakeTransport interprets the mpremote argument lists and exec scripts that
mpyfs emits, against a FakeBoard holding plain dicts of files and folders.
"""
import ast
import hashlib
from pathlib import Path
import re

import pytest

from mpyfs.errors import AlreadyExistsError, NotFoundError, TransportError
from mpyfs.filesystem import RemoteFileSystem
from mpyfs.protocol import FS_SCAN_SCRIPT

_DELETE_ENTRY_RE = re.compile(r"\((os\.remove|os\.rmdir), ('[^']*')\),")
_RENAME_RE = re.compile(r"os\.rename\(('[^']*'), ('[^']*')\)")
_OPEN_RE = re.compile(r"open\(('[^']*'), 'rb'\)")
_RUN_RE = re.compile(r"exec\(open\(('[^']*')\)\.read\(\)\)")


def _parent(path):
    return path.rsplit("/", 1)[0] or "/"


class FakeBoard:
    def __init__(self, has_hashlib=True):
        self.dirs = {"/"}
        self.files = {}
        self.has_hashlib = has_hashlib
        self.resets = 0

    def add_dir(self, path):
        parts = [p for p in path.split("/") if p]
        for i in range(1, len(parts) + 1):
            self.dirs.add("/" + "/".join(parts[:i]))

    def add_file(self, path, data=b""):
        self.add_dir(_parent(path))
        self.files[path] = bytes(data)

    def exists(self, path):
        return path in self.dirs or path in self.files

    def children(self, path):
        prefix = path.rstrip("/") + "/"
        entries = self.dirs | set(self.files)
        return sorted(p for p in entries if p != "/" and p.startswith(prefix) and "/" not in p[len(prefix):])

    def listing(self):
        lines = []

        def scan(directory):
            for path in self.children(directory):
                if path in self.dirs:
                    lines.append(f"16384&0&{path}")
                    scan(path)
                else:
                    lines.append(f"32768&{len(self.files[path])}&{path}")

        scan("/")
        return "\n".join(lines) + ("\n" if lines else "")

    def remove(self, path):
        if path in self.files:
            del self.files[path]
        else:
            raise NotFoundError(f"rm: {path}: No such file or directory")

    def rmdir(self, path):
        if path not in self.dirs:
            raise NotFoundError(f"rmdir: {path}: No such file or directory")
        if self.children(path):
            raise TransportError(f"rmdir: {path}: EACCES", 1)
        self.dirs.remove(path)

    def rename(self, old, new):
        if not self.exists(old):
            raise NotFoundError(f"rename: {old}: ENOENT")
        if self.exists(new):
            raise AlreadyExistsError(f"rename: {new}: EEXIST")
        if old in self.files:
            self.files[new] = self.files.pop(old)
            return
        for path in sorted(p for p in self.dirs if p == old or p.startswith(old + "/")):
            self.dirs.remove(path)
            self.dirs.add(new + path[len(old):])
        for path in [p for p in self.files if p.startswith(old + "/")]:
            self.files[new + path[len(old):]] = self.files.pop(path)


class FakeTransport:
    """Stands in for MpremoteTransport; records every command it receives."""

    def __init__(self, board):
        self.board = board
        self.commands = []
        self.failures = []
        self.ran = []

    def fail_when(self, predicate, error):
        """The next command matching predicate(args) raises error instead of running."""
        self.failures.append((predicate, error))

    def run(self, args, timeout=None):
        args = list(args)
        self.commands.append(args)
        for entry in self.failures:
            predicate, error = entry
            if predicate(args):
                self.failures.remove(entry)
                raise error
        if args[0] == "exec":
            return self._exec(args[1])
        if args == ["reset"]:
            self.board.resets += 1
            return ""
        output = []
        segment = []
        for arg in args + ["+"]:
            if arg == "+":
                output.append(self._fs(segment))
                segment = []
            else:
                segment.append(arg)
        return "".join(output)

    def exec(self, code, timeout=None):
        return self.run(["exec", code], timeout=timeout)

    def reset(self, timeout=None):
        self.run(["reset"], timeout=timeout)

    def probe(self, timeout=None):
        return "micropython"

    @property
    def fs_commands(self):
        return [c for c in self.commands if c[0] == "fs"]

    @property
    def scripts(self):
        return [c[1] for c in self.commands if c[0] == "exec" and c[1] != FS_SCAN_SCRIPT]

    def _fs(self, segment):
        assert segment[0] == "fs", segment
        op = segment[1]
        board = self.board
        if op == "cp":
            src, dst = segment[2], segment[3]
            if src.startswith(":"):
                path = src[1:]
                if path not in board.files:
                    raise NotFoundError(f"cp: {path}: No such file or directory")
                Path(dst).write_bytes(board.files[path])
            else:
                path = dst[1:]
                if _parent(path) not in board.dirs or path in board.dirs:
                    raise NotFoundError(f"cp: {path}: ENOENT")
                board.files[path] = Path(src).read_bytes()
        elif op == "touch":
            path = segment[2][1:]
            if _parent(path) not in board.dirs:
                raise NotFoundError(f"touch: {path}: ENOENT")
            board.files.setdefault(path, b"")
        elif op == "mkdir":
            path = segment[2][1:]
            if board.exists(path):
                raise AlreadyExistsError(f"mkdir: {path}: EEXIST")
            if _parent(path) not in board.dirs:
                raise NotFoundError(f"mkdir: {path}: ENOENT")
            board.dirs.add(path)
        elif op == "rm":
            board.remove(segment[2][1:])
        elif op == "rmdir":
            board.rmdir(segment[2][1:])
        else:
            raise AssertionError(f"unexpected fs command {segment}")
        return ""

    def _exec(self, code):
        board = self.board
        if code == FS_SCAN_SCRIPT:
            return board.listing()
        if "sys.implementation.name" in code:
            return "micropython\n"
        if "for f, p in (" in code:
            output = []
            for func, literal in _DELETE_ENTRY_RE.findall(code):
                path = ast.literal_eval(literal)
                if not board.exists(path):
                    output.append(f"gone:{path}\n")
                elif func == "os.remove":
                    board.remove(path)
                else:
                    board.rmdir(path)
            return "".join(output)
        match = _RENAME_RE.search(code)
        if match:
            board.rename(ast.literal_eval(match.group(1)), ast.literal_eval(match.group(2)))
            return ""
        match = _OPEN_RE.search(code)
        if match and "hashlib" in code:
            if not board.has_hashlib:
                return "sha256:-\n"
            path = ast.literal_eval(match.group(1))
            if path not in board.files:
                raise NotFoundError(f"exec: {path}: ENOENT")
            return "sha256:" + hashlib.sha256(board.files[path]).hexdigest() + "\n"
        match = _RUN_RE.search(code)
        if match:
            path = ast.literal_eval(match.group(1))
            if path not in board.files:
                raise NotFoundError(f"exec: {path}: ENOENT")
            self.ran.append(path)
            return f"ran {path}\n"
        raise AssertionError(f"unexpected script:\n{code}")


class RecordingListener:
    def __init__(self):
        self.calls = []

    def before(self, events):
        self.calls.append(("before", list(events)))

    def after(self, events):
        self.calls.append(("after", list(events)))

    @property
    def phases(self):
        return [phase for phase, _ in self.calls]


@pytest.fixture
def board():
    return FakeBoard()


@pytest.fixture
def transport(board):
    return FakeTransport(board)


@pytest.fixture
def filesystem(transport):
    return RemoteFileSystem(transport, clock=lambda: 1000)


@pytest.fixture
def loaded_fs(board, filesystem):
    """A filesystem refreshed from a small board."""
    board.add_file("/boot.py", b"# boot\n")
    board.add_file("/app/main.py", b"print('hello')\n")
    board.add_file("/app/util.py", b"X = 1\n")
    board.add_dir("/lib")
    filesystem.refresh()
    return filesystem


@pytest.fixture
def listener(filesystem):
    recorder = RecordingListener()
    filesystem.add_listener(recorder)
    return recorder
