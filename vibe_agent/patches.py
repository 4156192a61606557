from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, replace
from typing import Callable, Dict, List, Optional

from .chunking import normalize_path
from .workspace import Workspace


PATCH_KINDS = ("create", "update", "delete")


@dataclass(frozen=True)
class PatchRange:
    start_line: int
    end_line: int

    @classmethod
    def whole(cls, text: str) -> "PatchRange":
        return cls(start_line=1, end_line=max(1, len(text.split("\n")) if text else 1))


@dataclass
class Patch:
    patch_id: str
    file_id: str
    path: str
    kind: str  # "create" | "update" | "delete"
    range: PatchRange
    original_text: str
    proposed_text: str
    status: str = "pending"  # "pending" | "accepted" | "rejected"

    def to_dict(self, *, include_text: bool = True) -> Dict[str, object]:
        out: Dict[str, object] = {
            "id": self.patch_id,
            "file_id": self.file_id,
            "path": self.path,
            "kind": self.kind,
            "range": [self.range.start_line, self.range.end_line],
            "status": self.status,
        }
        if include_text:
            out["original_text"] = self.original_text
            out["proposed_text"] = self.proposed_text
        return out


class PatchLedger:
    """Pending mutations, at most one per file.

    This is the only path by which durable file content changes: ``accept``
    commits to the workspace, ``reject`` discards.
    """

    def __init__(self, workspace: Workspace, *, on_commit: Optional[Callable[[Patch], None]] = None) -> None:
        self.workspace = workspace
        self.on_commit = on_commit
        self._by_file: Dict[str, Patch] = {}

    def propose(
        self,
        *,
        file_id: str,
        path: str,
        kind: str,
        range: PatchRange,
        original_text: str,
        proposed_text: str,
    ) -> Patch:
        if kind not in PATCH_KINDS:
            raise ValueError(f"Unknown patch kind: {kind}")
        existing = self._by_file.get(file_id)
        if existing is not None:
            # Keep the id and the committed baseline; only the proposal moves.
            existing.kind = _merge_kind(existing.kind, kind)
            existing.range = range
            existing.proposed_text = proposed_text
            logging.debug("Updated pending patch %s for %s", existing.patch_id, existing.path)
            return existing
        patch = Patch(
            patch_id=uuid.uuid4().hex[:12],
            file_id=file_id,
            path=normalize_path(path),
            kind=kind,
            range=range,
            original_text=original_text,
            proposed_text=proposed_text,
        )
        self._by_file[file_id] = patch
        logging.debug("Proposed %s patch %s for %s", kind, patch.patch_id, patch.path)
        return patch

    def pending(self) -> List[Patch]:
        return list(self._by_file.values())

    def for_file(self, file_id: str) -> Optional[Patch]:
        return self._by_file.get(file_id)

    def get(self, patch_id: str) -> Patch:
        for patch in self._by_file.values():
            if patch.patch_id == patch_id:
                return patch
        raise KeyError(f"Patch not found: {patch_id}")

    def __len__(self) -> int:
        return len(self._by_file)

    def accept(self, patch_id: str) -> Patch:
        patch = self.get(patch_id)
        if patch.kind == "delete":
            if self.workspace.get(patch.path) is not None:
                self.workspace.delete(patch.path)
        else:
            self.workspace.write(patch.path, patch.proposed_text)
        del self._by_file[patch.file_id]
        done = replace(patch, status="accepted")
        logging.info("Accepted %s patch for %s", patch.kind, patch.path)
        if self.on_commit is not None:
            self.on_commit(done)
        return done

    def reject(self, patch_id: str) -> Patch:
        patch = self.get(patch_id)
        del self._by_file[patch.file_id]
        logging.info("Rejected %s patch for %s", patch.kind, patch.path)
        return replace(patch, status="rejected")

    def accept_all(self) -> List[Patch]:
        return [self.accept(p.patch_id) for p in self.pending()]

    def reject_all(self) -> List[Patch]:
        return [self.reject(p.patch_id) for p in self.pending()]


def _merge_kind(previous: str, new: str) -> str:
    # A file created in this run and then rewritten is still a creation;
    # created then deleted stays a delete so the review shows the intent.
    if previous == "create" and new == "update":
        return "create"
    return new
