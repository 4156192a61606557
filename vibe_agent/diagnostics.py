from __future__ import annotations

import ast
import json
import logging
import os
from dataclasses import asdict, dataclass
from typing import Callable, Dict, List, Protocol, Sequence, Tuple


EXTENSION_LANGUAGES: Dict[str, str] = {
    ".py": "python",
    ".js": "javascript",
    ".mjs": "javascript",
    ".cjs": "javascript",
    ".jsx": "jsx",
    ".ts": "typescript",
    ".tsx": "tsx",
    ".json": "json",
    ".css": "css",
    ".scss": "css",
    ".html": "html",
    ".md": "markdown",
    ".yaml": "yaml",
    ".yml": "yaml",
    ".toml": "toml",
    ".sh": "shell",
    ".go": "go",
    ".rs": "rust",
    ".java": "java",
}


def detect_language(path: str) -> str:
    ext = os.path.splitext(path)[1].lower()
    return EXTENSION_LANGUAGES.get(ext, "plaintext")


@dataclass(frozen=True)
class Diagnostic:
    message: str
    severity: str  # "error" | "warning" | "info"
    start_line: int
    start_column: int
    end_line: int
    end_column: int

    def to_dict(self) -> Dict[str, object]:
        return asdict(self)


class Linter(Protocol):
    name: str
    languages: Tuple[str, ...]

    def lint(self, content: str) -> List[Diagnostic]:
        ...


@dataclass(frozen=True)
class FunctionLinter:
    name: str
    languages: Tuple[str, ...]
    func: Callable[[str], List[Diagnostic]]

    def lint(self, content: str) -> List[Diagnostic]:
        return self.func(content)


def _lint_python(content: str) -> List[Diagnostic]:
    diagnostics: List[Diagnostic] = []
    try:
        ast.parse(content)
    except SyntaxError as exc:
        line = exc.lineno or 1
        col = exc.offset or 1
        diagnostics.append(
            Diagnostic(
                message=f"SyntaxError: {exc.msg}",
                severity="error",
                start_line=line,
                start_column=col,
                end_line=exc.end_lineno or line,
                end_column=exc.end_offset or col,
            )
        )
    for i, line in enumerate(content.split("\n"), 1):
        indent = line[: len(line) - len(line.lstrip())]
        if " " in indent and "\t" in indent:
            diagnostics.append(
                Diagnostic(
                    message="Indentation mixes tabs and spaces",
                    severity="warning",
                    start_line=i,
                    start_column=1,
                    end_line=i,
                    end_column=len(indent) + 1,
                )
            )
    return diagnostics


_PAIRS = (("{", "}", "curly braces '{ }'"), ("(", ")", "parentheses '( )'"), ("[", "]", "square brackets '[ ]'"))


def _lint_brackets(content: str) -> List[Diagnostic]:
    """Counts bracket balance over the whole file (strings included)."""
    last_line = len(content.split("\n"))
    diagnostics: List[Diagnostic] = []
    for opener, closer, label in _PAIRS:
        diff = content.count(opener) - content.count(closer)
        if diff != 0:
            diagnostics.append(
                Diagnostic(
                    message=f"Unbalanced {label} (Diff: {diff})",
                    severity="error",
                    start_line=last_line,
                    start_column=1,
                    end_line=last_line,
                    end_column=1,
                )
            )
    return diagnostics


def _lint_json(content: str) -> List[Diagnostic]:
    try:
        json.loads(content)
    except json.JSONDecodeError as exc:
        return [
            Diagnostic(
                message=f"Invalid JSON: {exc.msg}",
                severity="error",
                start_line=exc.lineno,
                start_column=exc.colno,
                end_line=exc.lineno,
                end_column=exc.colno,
            )
        ]
    return []


DEFAULT_LINTERS: List[Linter] = [
    FunctionLinter("python-syntax", ("python",), _lint_python),
    FunctionLinter("json-parse", ("json",), _lint_json),
    FunctionLinter("basic-brackets", ("javascript", "typescript", "css", "jsx", "tsx"), _lint_brackets),
]


class DiagnosticsService:
    """Runs the first registered linter that supports a language."""

    def __init__(self, linters: Sequence[Linter] | None = None) -> None:
        self.linters: List[Linter] = list(DEFAULT_LINTERS if linters is None else linters)

    def lint(self, content: str, language: str) -> List[Diagnostic]:
        linter = next((l for l in self.linters if language in l.languages), None)
        if linter is None:
            return []
        try:
            return linter.lint(content)
        except Exception:
            logging.warning("Linter %s failed", linter.name, exc_info=True)
            return []
