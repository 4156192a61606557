from __future__ import annotations

import difflib
import hashlib
import time
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple

from .chunking import normalize_path
from .workspace import FileEntry, Workspace


_WORKSPACE = object()


@dataclass(frozen=True)
class FileStatus:
    path: str
    status: str  # "added" | "modified" | "deleted" | "unmodified"
    staged: bool = False


@dataclass(frozen=True)
class CommitRecord:
    commit_id: str
    message: str
    timestamp: float
    paths: Tuple[str, ...]


class InMemoryRepository:
    """Minimal version-control surface over a Workspace.

    HEAD is a path -> content snapshot; ``add`` stages the workspace's
    committed content, ``commit`` folds the stage into HEAD.
    """

    def __init__(self, workspace: Workspace, *, head: Optional[Mapping[str, str]] = None) -> None:
        self.workspace = workspace
        self._head: Dict[str, str] = {normalize_path(p): c for p, c in (head or {}).items()}
        self._stage: Dict[str, Optional[str]] = {}
        self._log: List[CommitRecord] = []

    @classmethod
    def clone(cls, files: Mapping[str, str], *, message: str = "Initial commit") -> "InMemoryRepository":
        """Create a workspace and repository whose HEAD matches ``files``."""
        repo = cls(Workspace(dict(files)), head=files)
        repo._log.append(_make_commit(message, tuple(sorted(repo._head))))
        return repo

    def read_head(self, path: str) -> Optional[str]:
        return self._head.get(normalize_path(path))

    def status(self, files: Optional[Iterable[FileEntry]] = None) -> List[FileStatus]:
        """Compare ``files`` (default: the workspace) against HEAD."""
        out: List[FileStatus] = []
        current = {f.path: f.content for f in (self.workspace.files() if files is None else files)}
        for path in sorted(set(current) | set(self._head)):
            staged = path in self._stage
            if path not in self._head:
                out.append(FileStatus(path, "added", staged))
            elif path not in current:
                out.append(FileStatus(path, "deleted", staged))
            elif current[path] != self._head[path]:
                out.append(FileStatus(path, "modified", staged))
            else:
                out.append(FileStatus(path, "unmodified", staged))
        return out

    def add(self, path: str) -> None:
        norm = normalize_path(path)
        entry = self.workspace.get(norm)
        if entry is None and norm not in self._head:
            raise FileNotFoundError(norm)
        self._stage[norm] = entry.content if entry is not None else None

    def commit(self, message: str) -> CommitRecord:
        if not self._stage:
            raise ValueError("Nothing staged to commit.")
        for path, content in self._stage.items():
            if content is None:
                self._head.pop(path, None)
            else:
                self._head[path] = content
        record = _make_commit(message, tuple(sorted(self._stage)))
        self._stage.clear()
        self._log.append(record)
        return record

    def log(self) -> List[CommitRecord]:
        return list(reversed(self._log))

    def diff(self, path: str, current: Any = _WORKSPACE) -> str:
        """Unified diff of ``current`` against HEAD.

        ``current`` defaults to the workspace content; ``None`` means deleted.
        """
        norm = normalize_path(path)
        if current is _WORKSPACE:
            entry = self.workspace.get(norm)
            current = entry.content if entry is not None else None
        head = self._head.get(norm)
        if head == current:
            return ""
        before = (head or "").splitlines(keepends=True)
        after = (current or "").splitlines(keepends=True)
        return "".join(
            difflib.unified_diff(
                before,
                after,
                fromfile=f"a/{norm}" if head is not None else "/dev/null",
                tofile=f"b/{norm}" if current is not None else "/dev/null",
            )
        )


def _make_commit(message: str, paths: Tuple[str, ...]) -> CommitRecord:
    ts = time.time()
    digest = hashlib.sha1(f"{ts}:{message}:{','.join(paths)}".encode("utf-8")).hexdigest()
    return CommitRecord(commit_id=digest[:12], message=message, timestamp=ts, paths=paths)
