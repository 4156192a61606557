from __future__ import annotations

import logging
import os
import re
import tempfile
from pathlib import Path
from typing import Iterable, Iterator, List, Optional


class PathNotAllowed(Exception):
    """Raised when a path resolves outside the configured allowed roots."""


_CONTROL_CHARS = re.compile(r"[\x00-\x08\x0b-\x1f\x7f]")


class PathContext:
    """Filesystem access confined to a set of allowed roots.

    Every path is resolved (symlinks included) and checked against the roots
    before any read or write.
    """

    def __init__(self, allowed_roots: Iterable[str]) -> None:
        roots = [os.path.realpath(os.path.abspath(p)) for p in allowed_roots if p]
        self._allowed_roots = roots

    @property
    def allowed_roots(self) -> List[str]:
        return list(self._allowed_roots)

    def _normalize_case(self, path: str) -> str:
        if os.name == "nt":
            return os.path.normcase(path)
        return path

    def ensure_allowed(self, path: str | Path) -> str:
        if not self._allowed_roots:
            raise PathNotAllowed(
                "No allowed_roots configured. Set allowed_roots in vibe_agent.yaml to open projects from disk."
            )
        resolved = os.path.realpath(os.path.abspath(str(path)))
        norm = self._normalize_case(resolved)
        for root in self._allowed_roots:
            norm_root = self._normalize_case(root)
            try:
                common = os.path.commonpath([norm, norm_root])
            except ValueError:
                # Different drives on Windows.
                continue
            if common == norm_root:
                return resolved
        raise PathNotAllowed(f"Path '{resolved}' is outside allowed_roots. Allowed roots: {self._allowed_roots}")

    def resolve_path(self, path: str | Path) -> Path:
        return Path(self.ensure_allowed(path))

    def join(self, root: str | Path, relative: str) -> Path:
        """Join a project-relative path onto ``root`` and re-check the result."""
        if os.path.isabs(relative):
            raise PathNotAllowed(f"Expected a project-relative path, got '{relative}'")
        return self.resolve_path(os.path.join(str(root), relative))

    def iter_files(self, root: str | Path) -> Iterator[Path]:
        stack = [self.resolve_path(root)]
        while stack:
            current = stack.pop()
            try:
                with os.scandir(current) as entries:
                    for entry in entries:
                        if entry.is_symlink():
                            continue
                        candidate = Path(entry.path)
                        if entry.is_dir(follow_symlinks=False):
                            stack.append(candidate)
                        elif entry.is_file(follow_symlinks=False):
                            yield candidate
            except OSError:
                logging.debug("Skipping unreadable directory during traversal: %s", current, exc_info=True)

    def read_text(self, path: str | Path, *, encoding: str = "utf-8") -> str:
        resolved = self.resolve_path(path)
        nofollow = getattr(os, "O_NOFOLLOW", 0)
        cloexec = getattr(os, "O_CLOEXEC", 0)
        fd = os.open(resolved, os.O_RDONLY | nofollow | cloexec)
        with os.fdopen(fd, "r", encoding=encoding) as handle:
            return handle.read()

    def exists(self, path: str | Path) -> bool:
        try:
            return self.resolve_path(path).exists()
        except PathNotAllowed:
            return False

    def unlink(self, path: str | Path) -> None:
        self.resolve_path(path).unlink()

    def makedirs(self, path: str | Path) -> None:
        os.makedirs(self.resolve_path(path), exist_ok=True)

    def write_text_atomic(self, path: str | Path, text: str, *, encoding: str = "utf-8") -> None:
        resolved = self.resolve_path(path)
        fd, temp_path = tempfile.mkstemp(dir=resolved.parent, suffix=".tmp")
        try:
            with os.fdopen(fd, "wb") as handle:
                handle.write(text.encode(encoding))
            os.replace(temp_path, resolved)
        finally:
            if os.path.exists(temp_path):
                try:
                    os.unlink(temp_path)
                except OSError:
                    logging.debug("Failed to cleanup temp file %s", temp_path, exc_info=True)


def validate_text_field(value: Optional[str], *, field_name: str, max_length: int = 20_000) -> str:
    """Reject empty, oversized or control-character laden user input."""
    if value is None:
        raise ValueError(f"{field_name} is required.")
    cleaned = str(value).strip()
    if not cleaned:
        raise ValueError(f"{field_name} cannot be empty.")
    if len(cleaned) > max_length:
        raise ValueError(f"{field_name} exceeds max length of {max_length}.")
    if _CONTROL_CHARS.search(cleaned):
        raise ValueError(f"{field_name} contains control characters.")
    return cleaned
