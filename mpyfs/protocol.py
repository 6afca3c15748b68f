"""
Wire formats spoken with the board.

The only listing encoding is the ampersand form produced by FS_SCAN_SCRIPT:
one ``<mode_bits>&<size_or_-1>&<absolute_path>`` record per line, emitted
depth first from ``/``. Everything else is an ``mpremote`` argument list.
"""
from dataclasses import dataclass
import os
import re

from .config import S_IFDIR, S_IFREG
from .errors import ProtocolError

FS_SCAN_SCRIPT = """\
import os
def _mpyfs_scan(d):
    for e in os.ilistdir(d):
        p = d + e[0]
        print(e[1], e[3] if len(e) > 3 else -1, p, sep='&')
        if e[1] & 0x4000:
            _mpyfs_scan(p + '/')
_mpyfs_scan('/')
del _mpyfs_scan
try:
    import gc
    gc.collect()
except ImportError:
    pass
"""

CHECKSUM_PREFIX = "sha256:"
NO_CHECKSUM = "-"

_CHECKSUM_RE = re.compile(r"^sha256:([0-9a-f]{64}|-)$", re.MULTILINE)


@dataclass(frozen=True)
class ListingRecord:
    flags: int
    size: int
    path: str

    @property
    def is_directory(self):
        if self.flags & S_IFDIR:
            return True
        # No type bits and no size: older ports report directories this way
        return not (self.flags & S_IFREG) and self.size < 0

    @property
    def segments(self):
        return [s for s in self.path.split("/") if s]


def parse_listing(text):
    """Parse the scan output into ListingRecords, in output order."""
    records = []
    for lineno, line in enumerate(text.splitlines(), start=1):
        line = line.rstrip("\r")
        if not line.strip():
            continue
        fields = line.split("&", 2)
        if len(fields) != 3:
            raise ProtocolError(f"Listing line {lineno} has {len(fields)} fields, expected 3: {line!r}")
        try:
            flags = int(fields[0])
            size = int(fields[1])
        except ValueError as e:
            raise ProtocolError(f"Listing line {lineno} has non-numeric flags or size: {line!r}") from e
        path = fields[2]
        if not path.startswith("/"):
            raise ProtocolError(f"Listing line {lineno} has a relative path: {line!r}")
        records.append(ListingRecord(flags, size, path))
    return records


def format_record(record):
    return f"{record.flags}&{record.size}&{record.path}"


def normalize_remote_path(path):
    """'a/b', '/a/b/' and '//a//b' all become '/a/b'; root is '/'."""
    segments = [s for s in path.replace("\\", "/").split("/") if s]
    return "/" + "/".join(segments)


def remote_arg(path):
    return ":" + normalize_remote_path(path)


def local_arg(path):
    return str(path).replace(os.sep, "/")


def read_command(remote_path, local_tmp):
    return ["fs", "cp", remote_arg(remote_path), local_arg(local_tmp)]


def write_command(local_tmp, remote_path):
    return ["fs", "cp", local_arg(local_tmp), remote_arg(remote_path)]


def touch_command(remote_path):
    return ["fs", "touch", remote_arg(remote_path)]


def mkdir_command(remote_path):
    return ["fs", "mkdir", remote_arg(remote_path)]


def delete_batch_command(entries):
    """
    entries: (remote_path, is_directory) pairs, already in removal order.
    Produces one chained command line: fs rm :a + fs rmdir :b + ...
    """
    args = []
    for remote_path, is_directory in entries:
        if args:
            args.append("+")
        args += ["fs", "rmdir" if is_directory else "rm", remote_arg(remote_path)]
    return args


def tolerant_delete_script(entries):
    """
    Same removals as delete_batch_command, but a path that is already gone
    (ENOENT) is reported with a 'gone:' line and skipped; any other OSError
    stops the script.
    """
    lines = ["import os", "for f, p in ("]
    for remote_path, is_directory in entries:
        func = "os.rmdir" if is_directory else "os.remove"
        lines.append(f"    ({func}, {normalize_remote_path(remote_path)!r}),")
    lines += [
        "):",
        "    try:",
        "        f(p)",
        "    except OSError as e:",
        "        if e.args[0] != 2:",
        "            raise",
        "        print('gone:' + p)",
    ]
    return "\n".join(lines) + "\n"


def parse_gone_paths(output):
    return [line[len("gone:"):] for line in output.splitlines() if line.startswith("gone:")]


def rename_script(old_path, new_path):
    return (
        "import os\n"
        f"os.rename({normalize_remote_path(old_path)!r}, {normalize_remote_path(new_path)!r})\n"
    )


def checksum_script(remote_path):
    return (
        "try:\n"
        "    import hashlib, binascii\n"
        "except ImportError:\n"
        f"    print({CHECKSUM_PREFIX + NO_CHECKSUM!r})\n"
        "else:\n"
        "    h = hashlib.sha256()\n"
        f"    with open({normalize_remote_path(remote_path)!r}, 'rb') as f:\n"
        "        while True:\n"
        "            b = f.read(512)\n"
        "            if not b:\n"
        "                break\n"
        "            h.update(b)\n"
        f"    print({CHECKSUM_PREFIX!r} + binascii.hexlify(h.digest()).decode())\n"
    )


def parse_checksum(output):
    """Return the hex digest, or None when the firmware has no hashlib."""
    match = _CHECKSUM_RE.search(output.replace("\r", ""))
    if not match:
        raise ProtocolError(f"Unexpected checksum reply: {output.strip()!r}")
    digest = match.group(1)
    return None if digest == NO_CHECKSUM else digest


def run_script_code(remote_path):
    """Code for ``mpremote exec`` that runs a script already on the board."""
    return f"exec(open({normalize_remote_path(remote_path)!r}).read())\n"
