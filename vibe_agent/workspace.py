from __future__ import annotations

import fnmatch
import logging
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional, TYPE_CHECKING

from .chunking import make_file_id, normalize_path
from .security import PathContext, PathNotAllowed

if TYPE_CHECKING:
    from .patches import PatchLedger


@dataclass(frozen=True)
class FileEntry:
    file_id: str
    path: str
    content: str


def render_tree(paths: Iterable[str]) -> str:
    """Indented project tree, folders first, used as LLM context."""
    tree: Dict[str, dict] = {}
    for path in paths:
        node = tree
        parts = normalize_path(path).split("/")
        for part in parts[:-1]:
            node = node.setdefault(part + "/", {})
        node.setdefault(parts[-1], {})

    lines: List[str] = ["Project structure:"]

    def _walk(node: Dict[str, dict], depth: int) -> None:
        folders = sorted(k for k in node if k.endswith("/"))
        files = sorted(k for k in node if not k.endswith("/"))
        for name in folders + files:
            lines.append(f"{'  ' * depth}- {name}")
            if name.endswith("/"):
                _walk(node[name], depth + 1)

    _walk(tree, 0)
    if len(lines) == 1:
        lines.append("(empty project)")
    return "\n".join(lines)


class Workspace:
    """Committed file state of one project.

    When ``root`` is given the store mirrors a directory below an allowed
    root and committed writes land on disk atomically.
    """

    def __init__(
        self,
        files: Optional[Dict[str, str]] = None,
        *,
        root: Optional[str] = None,
        path_context: Optional[PathContext] = None,
    ) -> None:
        self._files: Dict[str, FileEntry] = {}
        self.root = root
        self._path_context = path_context
        if root is not None and path_context is None:
            raise ValueError("A disk-backed workspace requires a PathContext.")
        for path, content in (files or {}).items():
            self._put(path, content)

    @classmethod
    def from_directory(
        cls,
        root: str,
        path_context: PathContext,
        *,
        ignore_patterns: Iterable[str] = (),
        max_file_chars: int = 1_000_000,
    ) -> "Workspace":
        ws = cls(root=root, path_context=path_context)
        patterns = list(ignore_patterns)
        for file_path in path_context.iter_files(root):
            rel = normalize_path(str(file_path.relative_to(path_context.resolve_path(root))))
            if any(fnmatch.fnmatch(rel, p) or fnmatch.fnmatch("/" + rel, p) for p in patterns):
                continue
            try:
                text = path_context.read_text(file_path)
            except (UnicodeDecodeError, OSError, PathNotAllowed):
                logging.debug("Skipping unreadable file %s", file_path, exc_info=True)
                continue
            if len(text) > max_file_chars:
                logging.info("Skipping oversized file %s (%s chars)", rel, len(text))
                continue
            ws._put(rel, text)
        logging.info("Loaded %s files from %s", len(ws._files), root)
        return ws

    def _put(self, path: str, content: str) -> FileEntry:
        norm = normalize_path(path)
        if not norm:
            raise ValueError("File path cannot be empty.")
        entry = FileEntry(file_id=make_file_id(norm), path=norm, content=content)
        self._files[norm] = entry
        return entry

    def get(self, path: str) -> Optional[FileEntry]:
        return self._files.get(normalize_path(path))

    def get_by_id(self, file_id: str) -> Optional[FileEntry]:
        for entry in self._files.values():
            if entry.file_id == file_id:
                return entry
        return None

    def is_folder(self, path: str) -> bool:
        prefix = normalize_path(path) + "/"
        return prefix != "/" and any(p.startswith(prefix) for p in self._files)

    def files(self) -> List[FileEntry]:
        return [self._files[p] for p in sorted(self._files)]

    def paths(self) -> List[str]:
        return sorted(self._files)

    def write(self, path: str, content: str) -> FileEntry:
        norm = normalize_path(path)
        if not norm:
            raise ValueError("File path cannot be empty.")
        # The in-memory store only records content that reached disk.
        if self.root is not None and self._path_context is not None:
            target = self._path_context.join(self.root, norm)
            self._path_context.makedirs(target.parent)
            self._path_context.write_text_atomic(target, content)
        return self._put(norm, content)

    def delete(self, path: str) -> None:
        norm = normalize_path(path)
        if norm not in self._files:
            raise FileNotFoundError(norm)
        if self.root is not None and self._path_context is not None:
            target = self._path_context.join(self.root, norm)
            if self._path_context.exists(target):
                self._path_context.unlink(target)
        del self._files[norm]


class EffectiveView:
    """Pending patches layered over the committed workspace.

    Reads never mutate the base store; a pending delete hides the file and a
    pending create/update shadows its committed content.
    """

    def __init__(self, workspace: Workspace, ledger: "PatchLedger") -> None:
        self.workspace = workspace
        self.ledger = ledger

    def get(self, path: str) -> Optional[FileEntry]:
        norm = normalize_path(path)
        patch = self.ledger.for_file(make_file_id(norm))
        if patch is not None:
            if patch.kind == "delete":
                return None
            return FileEntry(file_id=patch.file_id, path=norm, content=patch.proposed_text)
        return self.workspace.get(norm)

    def is_folder(self, path: str) -> bool:
        prefix = normalize_path(path) + "/"
        return prefix != "/" and any(p.startswith(prefix) for p in self.paths())

    def paths(self) -> List[str]:
        result = set(self.workspace.paths())
        for patch in self.ledger.pending():
            if patch.kind == "delete":
                result.discard(patch.path)
            else:
                result.add(patch.path)
        return sorted(result)

    def files(self) -> List[FileEntry]:
        out: List[FileEntry] = []
        for path in self.paths():
            entry = self.get(path)
            if entry is not None:
                out.append(entry)
        return out
