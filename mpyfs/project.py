"""
Local project layout: which folders hold sources and tests, what is excluded.

A layout comes either from explicit arguments or from ``mpyfs.json`` at the
project root::

    {
      "sources": ["src"],
      "tests": ["tests"],
      "excluded": ["build", "docs"],
      "ignored": ["*.pyc", "__pycache__"]
    }
"""
from dataclasses import dataclass, field
import fnmatch
import os
from pathlib import Path
import sys
from typing import Optional

from .config import DEFAULT_IGNORED_PATTERNS, METADATA_DIRS, load_project_config


def is_ancestor(ancestor: Path, path: Path, strict: bool = False) -> bool:
    if ancestor == path:
        return not strict
    return ancestor in path.parents


def _resolve(root: Path, entries) -> list[Path]:
    return [(root / entry).resolve() for entry in entries]


def _interpreter_home() -> Optional[Path]:
    # Only virtual environments have a home distinct from the base interpreter
    if sys.prefix == sys.base_prefix:
        return None
    return Path(sys.prefix).resolve()


@dataclass
class ProjectLayout:
    root: Path
    source_roots: list[Path] = field(default_factory=list)
    test_roots: list[Path] = field(default_factory=list)
    excluded_roots: list[Path] = field(default_factory=list)
    ignored_patterns: tuple[str, ...] = DEFAULT_IGNORED_PATTERNS
    interpreter_home: Optional[Path] = None

    def __post_init__(self):
        self.root = Path(self.root).resolve()
        self.source_roots = _resolve(self.root, self.source_roots)
        self.test_roots = _resolve(self.root, self.test_roots)
        self.excluded_roots = _resolve(self.root, self.excluded_roots)
        self.ignored_patterns = tuple(self.ignored_patterns)
        if self.interpreter_home is not None:
            self.interpreter_home = Path(self.interpreter_home).resolve()

    @classmethod
    def load(cls, root):
        """Layout from ``mpyfs.json``; a project without one uploads its root."""
        root = Path(root).resolve()
        cfg = load_project_config(root)
        return cls(
            root=root,
            source_roots=cfg.get("sources", []),
            test_roots=cfg.get("tests", []),
            excluded_roots=cfg.get("excluded", []),
            ignored_patterns=cfg.get("ignored", DEFAULT_IGNORED_PATTERNS),
            interpreter_home=_interpreter_home(),
        )

    def collect_uploadables(self) -> list[Path]:
        """Seeds of a whole-project upload: non-test source roots, else the root."""
        roots = [
            root
            for root in self.source_roots
            if root not in self.test_roots and not root.name.startswith(".") and root.is_dir()
        ]
        return roots or [self.root]

    def collect_excluded(self) -> set[Path]:
        excluded = {self.root / name for name in METADATA_DIRS}
        if self.interpreter_home is not None and is_ancestor(self.root, self.interpreter_home):
            excluded.add(self.interpreter_home)
        excluded.update(self.excluded_roots)
        return excluded

    def is_ignored(self, path: Path) -> bool:
        return any(fnmatch.fnmatch(path.name, pattern) for pattern in self.ignored_patterns)

    def nearest_source_root(self, path: Path, include_tests: bool = False) -> Optional[Path]:
        """Deepest source (or, if asked, test) root containing path."""
        candidates = list(self.source_roots)
        if include_tests:
            candidates += self.test_roots
        enclosing = [root for root in candidates if is_ancestor(root, path)]
        if not enclosing:
            return None
        return max(enclosing, key=lambda root: len(root.parts))

    def in_test_root(self, path: Path) -> bool:
        return any(is_ancestor(root, path) for root in self.test_roots)

    def in_source_root(self, path: Path) -> bool:
        return any(is_ancestor(root, path) for root in self.source_roots)

    def relative(self, path: Path) -> str:
        try:
            return path.relative_to(self.root).as_posix()
        except ValueError:
            return os.fspath(path)
