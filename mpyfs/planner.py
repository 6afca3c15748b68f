"""
Upload planning: turn local targets into (local file, remote path) pairs.

The plan is built with a worklist walked by index. Directories are replaced
in place by their children, files get their final remote path and stay.
Remote paths follow one precedence rule everywhere:

1. relative to the nearest enclosing source root (test roots count only when
   tests are being uploaded),
2. relative to the explicit upload target,
3. the parent's remote path plus the entry name.
"""
from dataclasses import dataclass
import logging
from pathlib import Path
from typing import Optional

from .project import ProjectLayout, is_ancestor
from .tasks import check_cancelled

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class UploadCandidate:
    local_file: Path
    remote_path: str


@dataclass
class _WorkItem:
    path: Path
    remote_path: str
    upload_root: Optional[Path]  # None for whole-project uploads
    include_tests: bool


def _join(prefix, name):
    return f"{prefix}/{name}" if prefix else name


def resolve_remote_path(layout: ProjectLayout, path: Path, upload_root: Optional[Path], include_tests: bool,
                        fallback: str) -> str:
    source_root = layout.nearest_source_root(path, include_tests=include_tests)
    if source_root is not None and source_root != path:
        return path.relative_to(source_root).as_posix()
    if upload_root is not None and upload_root != layout.root and is_ancestor(upload_root, path, strict=True):
        return path.relative_to(upload_root).as_posix()
    return fallback


def _seed(layout, targets):
    explicit = [Path(target).resolve() for target in targets or []]
    if not explicit or layout.root in explicit:
        return [_WorkItem(root, "", None, False) for root in layout.collect_uploadables()]
    return [_WorkItem(target, target.name, target, layout.in_test_root(target)) for target in explicit]


def _skip_reason(layout, excluded, item):
    path = item.path
    if not path.exists():
        return "missing"
    if path.name.startswith(".") and path != layout.root:
        return "hidden"
    if layout.is_ignored(path):
        return "ignored file type"
    if any(is_ancestor(root, path) for root in excluded):
        return "excluded folder"
    if not item.include_tests and layout.in_test_root(path):
        return "test sources"
    if item.upload_root is None and layout.source_roots and not layout.in_source_root(path):
        return "outside source roots"
    if path.is_symlink() and path.is_dir():
        return "symlinked directory"
    return None


def plan_upload(layout, targets=None, token=None):
    """
    Plan an upload of ``targets`` (local paths), or of the whole project when
    targets is None/empty or contains the project root.
    Returns UploadCandidates in worklist order, each local file at most once.
    """
    excluded = layout.collect_excluded()
    worklist = _seed(layout, targets)

    index = 0
    while index < len(worklist):
        check_cancelled(token)
        item = worklist[index]
        reason = _skip_reason(layout, excluded, item)
        if reason:
            logger.debug("Not uploading %s: %s", layout.relative(item.path), reason)
            del worklist[index]
        elif item.path.is_dir():
            children = sorted(item.path.iterdir(), key=lambda child: child.name)
            worklist[index:index + 1] = [
                _WorkItem(
                    child,
                    resolve_remote_path(layout, child, item.upload_root, item.include_tests,
                                        _join(item.remote_path, child.name)),
                    item.upload_root,
                    item.include_tests,
                )
                for child in children
            ]
        else:
            item.remote_path = resolve_remote_path(layout, item.path, item.upload_root, item.include_tests,
                                                   item.remote_path)
            index += 1

    candidates = []
    seen = set()
    for item in worklist:
        if item.path in seen:
            continue
        seen.add(item.path)
        candidates.append(UploadCandidate(item.path, item.remote_path))
    logger.info("Upload plan: %d files", len(candidates))
    return candidates
