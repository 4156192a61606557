from __future__ import annotations

import ast
import asyncio
import enum
import logging
import os
import re
import shutil
import sys
import tempfile
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple, Type

import httpx
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from .chunking import make_file_id, normalize_path
from .diagnostics import DiagnosticsService, detect_language
from .llm import LLMClient, LLMError
from .patches import Patch, PatchLedger, PatchRange
from .search import SearchEngine
from .vcs import InMemoryRepository
from .workspace import EffectiveView, FileEntry, Workspace, render_tree


GREP_OUTPUT_LIMIT = 4000
EXEC_OUTPUT_LIMIT = 8000


class ToolKind(str, enum.Enum):
    LIST_FILES = "fs_listFiles"
    READ_FILE = "fs_readFile"
    WRITE_FILE = "fs_writeFile"
    DELETE_FILE = "fs_deleteFile"
    SEARCH_CODE = "searchCode"
    FILE_STRUCTURE = "getFileStructure"
    GREP = "grep"
    GIT_STATUS = "git_getStatus"
    GIT_DIFF = "git_diff"
    LINT = "tooling_lint"
    EXEC = "runtime_exec"
    AUTO_FIX = "autoFixErrors"


class _Args(BaseModel):
    model_config = ConfigDict(extra="forbid")


class ListFilesArgs(_Args):
    """List every file in the project as an indented tree."""


class ReadFileArgs(_Args):
    """Read a file. Pending (unaccepted) changes are included."""

    path: str = Field(description="Project-relative file path.")


class WriteFileArgs(_Args):
    """Create or overwrite a file. The change is staged for human review."""

    path: str = Field(description="Project-relative file path.")
    content: str = Field(description="Complete new file content.")


class DeleteFileArgs(_Args):
    """Delete a file. The deletion is staged for human review."""

    path: str = Field(description="Project-relative file path.")


class SearchCodeArgs(_Args):
    """Semantic search over the project's code."""

    query: str = Field(description="Natural-language or keyword query.")
    limit: int = Field(default=5, ge=1, le=20)


class FileStructureArgs(_Args):
    """List the classes and functions defined in a file."""

    path: str = Field(description="Project-relative file path.")


class GrepArgs(_Args):
    """Case-insensitive regular expression search, line by line."""

    pattern: str = Field(description="Regular expression.")
    path: Optional[str] = Field(default=None, description="Limit the search to one file.")


class GitStatusArgs(_Args):
    """Show which files differ from the last commit."""


class GitDiffArgs(_Args):
    """Unified diff of a file against the last commit."""

    path: str = Field(description="Project-relative file path.")


class LintArgs(_Args):
    """Run the linters over one file, or over the whole project."""

    path: Optional[str] = Field(default=None, description="Project-relative file path.")


class ExecArgs(_Args):
    """Run a Python or JavaScript file and capture its output. Not sandboxed."""

    path: str = Field(description="Project-relative file path.")


class AutoFixArgs(_Args):
    """Lint a file and stage an automatic fix for the problems found."""

    path: str = Field(description="Project-relative file path.")


ARG_MODELS: Dict[ToolKind, Type[_Args]] = {
    ToolKind.LIST_FILES: ListFilesArgs,
    ToolKind.READ_FILE: ReadFileArgs,
    ToolKind.WRITE_FILE: WriteFileArgs,
    ToolKind.DELETE_FILE: DeleteFileArgs,
    ToolKind.SEARCH_CODE: SearchCodeArgs,
    ToolKind.FILE_STRUCTURE: FileStructureArgs,
    ToolKind.GREP: GrepArgs,
    ToolKind.GIT_STATUS: GitStatusArgs,
    ToolKind.GIT_DIFF: GitDiffArgs,
    ToolKind.LINT: LintArgs,
    ToolKind.EXEC: ExecArgs,
    ToolKind.AUTO_FIX: AutoFixArgs,
}


def tool_definitions() -> List[Dict[str, Any]]:
    """Tool schemas in the OpenAI ``tools`` format."""
    out: List[Dict[str, Any]] = []
    for kind, model in ARG_MODELS.items():
        schema = model.model_json_schema()
        schema.pop("title", None)
        schema.pop("description", None)
        schema.pop("additionalProperties", None)
        for prop in schema.get("properties", {}).values():
            prop.pop("title", None)
        schema.setdefault("properties", {})
        out.append(
            {
                "type": "function",
                "function": {
                    "name": kind.value,
                    "description": (model.__doc__ or "").strip(),
                    "parameters": schema,
                },
            }
        )
    return out


@dataclass(frozen=True)
class ToolResult:
    result: str
    patch: Optional[Patch] = None


class ToolError(Exception):
    """A recoverable tool failure, reported to the model as text."""


def _cap(text: str, limit: int) -> str:
    if len(text) <= limit:
        return text
    return text[:limit] + "..."


def _strip_code_fence(text: str) -> str:
    match = re.match(r"^\s*```[\w+-]*\n(.*?)\n?```\s*$", text, re.DOTALL)
    return match.group(1) if match else text


_JS_SYMBOL = re.compile(
    r"^(?:export\s+)?(?:default\s+)?(?:async\s+)?(function|class|const|let|var|interface|type)\s+([A-Za-z0-9_$]+)",
    re.MULTILINE,
)
_GENERIC_SYMBOL = re.compile(r"^\s*(?:pub\s+)?(fn|func|def|class|struct|interface)\s+([A-Za-z0-9_]+)", re.MULTILINE)


def extract_symbols(path: str, content: str) -> List[str]:
    """Outline of a file as ``kind name (lines a-b)`` strings."""
    language = detect_language(path)
    symbols: List[str] = []
    if language == "python":
        try:
            tree = ast.parse(content)
        except SyntaxError:
            tree = None
        if tree is not None:
            found: List[Tuple[int, str]] = []
            for node in ast.walk(tree):
                if isinstance(node, (ast.FunctionDef, ast.AsyncFunctionDef)):
                    kind = "function"
                elif isinstance(node, ast.ClassDef):
                    kind = "class"
                else:
                    continue
                end = node.end_lineno or node.lineno
                found.append((node.lineno, f"{kind} {node.name} (lines {node.lineno}-{end})"))
            return [s for _, s in sorted(found)]
    pattern = _JS_SYMBOL if language in ("javascript", "typescript", "jsx", "tsx") else _GENERIC_SYMBOL
    for match in pattern.finditer(content):
        line = content.count("\n", 0, match.start()) + 1
        symbols.append(f"{match.group(1)} {match.group(2)} (line {line})")
    return symbols


class ToolGateway:
    """Executes model tool calls against one project.

    Reads resolve through the pending-patch overlay; writes and deletes only
    ever produce patches in the ledger.
    """

    def __init__(
        self,
        workspace: Workspace,
        ledger: PatchLedger,
        search_engine: SearchEngine,
        *,
        repo: Optional[InMemoryRepository] = None,
        diagnostics: Optional[DiagnosticsService] = None,
        llm_client: Optional[LLMClient] = None,
        exec_timeout_s: float = 10.0,
    ) -> None:
        self.workspace = workspace
        self.ledger = ledger
        self.view = EffectiveView(workspace, ledger)
        self.search_engine = search_engine
        self.repo = repo
        self.diagnostics = diagnostics or DiagnosticsService()
        self.llm_client = llm_client
        self.exec_timeout_s = float(exec_timeout_s)

    async def execute(self, name: str, args: Optional[Dict[str, Any]] = None) -> ToolResult:
        try:
            kind = ToolKind(name)
        except ValueError:
            return ToolResult(f"Error: Unknown tool {name}")
        try:
            call = ARG_MODELS[kind].model_validate(args or {})
        except ValidationError as exc:
            problems = "; ".join(
                f"{'.'.join(str(p) for p in err['loc']) or 'args'}: {err['msg']}" for err in exc.errors()
            )
            return ToolResult(f"Error: Invalid arguments for {name}: {problems}")
        try:
            return await self._dispatch(call)
        except ToolError as exc:
            return ToolResult(f"Error: {exc}")

    async def _dispatch(self, call: _Args) -> ToolResult:
        match call:
            case ListFilesArgs():
                return ToolResult(f"Success:\n{render_tree(self.view.paths())}")
            case ReadFileArgs(path=path):
                return ToolResult(self._read_file(path))
            case WriteFileArgs(path=path, content=content):
                return self._write_file(path, content)
            case DeleteFileArgs(path=path):
                return self._delete_file(path)
            case SearchCodeArgs(query=query, limit=limit):
                return ToolResult(self._search_code(query, limit))
            case FileStructureArgs(path=path):
                return ToolResult(self._file_structure(path))
            case GrepArgs(pattern=pattern, path=path):
                return ToolResult(self._grep(pattern, path))
            case GitStatusArgs():
                return ToolResult(self._git_status())
            case GitDiffArgs(path=path):
                return ToolResult(self._git_diff(path))
            case LintArgs(path=path):
                return ToolResult(self._lint(path))
            case ExecArgs(path=path):
                return ToolResult(await self._exec(path))
            case AutoFixArgs(path=path):
                return await self._auto_fix(path)
        raise ToolError(f"Unhandled tool arguments {type(call).__name__}")

    # -- helpers ---------------------------------------------------------

    def _clean_path(self, path: str) -> str:
        raw = (path or "").strip()
        if raw.startswith("/") or re.match(r"^[A-Za-z]:[\\/]", raw):
            raise ToolError(f"Path must be relative to the project root: {path}")
        norm = normalize_path(raw)
        if not norm:
            raise ToolError("'path' must not be empty.")
        if ".." in norm.split("/"):
            raise ToolError(f"Path escapes the project root: {path}")
        return norm

    def _require_file(self, path: str) -> FileEntry:
        norm = self._clean_path(path)
        entry = self.view.get(norm)
        if entry is None:
            if self.view.is_folder(norm):
                raise ToolError(f"Path '{norm}' is a directory, not a file.")
            raise ToolError(f"File not found at path {norm}")
        return entry

    # -- file system -----------------------------------------------------

    def _read_file(self, path: str) -> str:
        entry = self._require_file(path)
        return f"Success:\n```{detect_language(entry.path)}\n{entry.content}\n```"

    def _write_file(self, path: str, content: str) -> ToolResult:
        norm = self._clean_path(path)
        if self.view.is_folder(norm):
            raise ToolError(f"Cannot write file. A folder already exists at path {norm}")
        parts = norm.split("/")
        for depth in range(1, len(parts)):
            parent = "/".join(parts[:depth])
            if self.view.get(parent) is not None:
                raise ToolError(f"Cannot write file. '{parent}' is a file, not a folder.")
        committed = self.workspace.get(norm)
        patch = self.ledger.propose(
            file_id=make_file_id(norm),
            path=norm,
            kind="update" if committed is not None else "create",
            range=PatchRange.whole(content),
            original_text=committed.content if committed is not None else "",
            proposed_text=content,
        )
        verb = "update" if patch.kind == "update" else "new file creation"
        return ToolResult(f"Success: Staged {verb} for {norm}", patch)

    def _delete_file(self, path: str) -> ToolResult:
        entry = self._require_file(path)
        committed = self.workspace.get(entry.path)
        pending = self.ledger.for_file(entry.file_id)
        if committed is None and pending is not None:
            # Never committed: dropping the pending creation is the deletion.
            self.ledger.reject(pending.patch_id)
            return ToolResult(f"Success: Discarded pending creation of {entry.path}")
        patch = self.ledger.propose(
            file_id=entry.file_id,
            path=entry.path,
            kind="delete",
            range=PatchRange.whole(committed.content if committed else ""),
            original_text=committed.content if committed else "",
            proposed_text="",
        )
        return ToolResult(f"Success: Staged file deletion for {entry.path}", patch)

    # -- code intelligence -----------------------------------------------

    def _search_code(self, query: str, limit: int) -> str:
        results = self.search_engine.search(query, limit)
        if not results:
            return "No relevant code found."
        body = "\n---\n".join(
            f"File: {r.file_path} (lines {r.start_line}-{r.end_line})\n```\n{r.snippet}\n```" for r in results
        )
        return f"Found {len(results)} relevant code snippets:\n{body}"

    def _file_structure(self, path: str) -> str:
        entry = self._require_file(path)
        symbols = extract_symbols(entry.path, entry.content)
        if not symbols:
            return "No top-level symbols found."
        return "Symbols found:\n- " + "\n- ".join(symbols)

    def _grep(self, pattern: str, path: Optional[str]) -> str:
        if not pattern:
            raise ToolError("'pattern' argument is required for grep.")
        try:
            regex = re.compile(pattern, re.IGNORECASE)
        except re.error:
            raise ToolError(f"Invalid regex pattern provided: '{pattern}'") from None
        targets = [self._require_file(path)] if path else self.view.files()
        blocks: List[str] = []
        total = 0
        for entry in targets:
            hits = [
                f"  L{i}: {line.strip()}" for i, line in enumerate(entry.content.split("\n"), 1) if regex.search(line)
            ]
            if hits:
                total += len(hits)
                blocks.append(f"File: {entry.path}\n" + "\n".join(hits))
        if not blocks:
            return "Success: No matches found."
        joined = "\n---\n".join(blocks)
        if len(joined) > GREP_OUTPUT_LIMIT:
            return (
                f"Success: Found {total} matches in {len(blocks)} files. (Results truncated)\n---\n"
                f"{joined[:GREP_OUTPUT_LIMIT]}..."
            )
        return f"Success: Found {total} matches in {len(blocks)} files:\n---\n{joined}"

    # -- version control -------------------------------------------------

    def _require_repo(self) -> InMemoryRepository:
        if self.repo is None:
            raise ToolError("Version control is not available for this project.")
        return self.repo

    def _git_status(self) -> str:
        changed = [s for s in self._require_repo().status(self.view.files()) if s.status != "unmodified"]
        if not changed:
            return "Success: Working tree is clean."
        lines = "\n".join(f"{s.status:<10} {s.path}" for s in changed)
        return f"Success: Current repository status:\n{lines}"

    def _git_diff(self, path: str) -> str:
        repo = self._require_repo()
        norm = self._clean_path(path)
        entry = self.view.get(norm)
        if entry is None and repo.read_head(norm) is None:
            raise ToolError(f"File not found at path {norm}")
        diff = repo.diff(norm, entry.content if entry is not None else None)
        if not diff:
            return f"Success: No changes for {norm}."
        return f"Success: Diff for {norm}\n```diff\n{diff}```"

    # -- tooling ---------------------------------------------------------

    def _lint(self, path: Optional[str]) -> str:
        targets = [self._require_file(path)] if path else self.view.files()
        if not targets:
            raise ToolError("No files found to lint.")
        reports: List[str] = []
        for entry in targets:
            found = self.diagnostics.lint(entry.content, detect_language(entry.path))
            if found:
                reports.append(
                    f"File: {entry.path}\n"
                    + "\n".join(f"  - [{d.severity}] L{d.start_line}: {d.message}" for d in found)
                )
        if not reports:
            return "Success: No linting issues found."
        return "Success: Found linting issues:\n" + "\n\n".join(reports)

    async def _exec(self, path: str) -> str:
        entry = self._require_file(path)
        language = detect_language(entry.path)
        if language == "python":
            argv = [sys.executable, "-I"]
            suffix = ".py"
        elif language == "javascript":
            node = shutil.which("node")
            if node is None:
                raise ToolError("Node.js is not installed; cannot execute JavaScript.")
            argv = [node]
            suffix = ".js"
        else:
            raise ToolError(f"Only Python and JavaScript files can be executed. This is a '{language}' file.")

        with tempfile.TemporaryDirectory(prefix="vibe-exec-") as tmp:
            script = os.path.join(tmp, "main" + suffix)
            with open(script, "w", encoding="utf-8") as handle:
                handle.write(entry.content)
            logging.info("Executing %s (%s)", entry.path, language)
            process = await asyncio.create_subprocess_exec(
                *argv,
                script,
                cwd=tmp,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
            timed_out = False
            stdout = stderr = b""
            try:
                stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=self.exec_timeout_s)
            except asyncio.TimeoutError:
                timed_out = True
            finally:
                # Also reached on cancellation: never leave the child running.
                if process.returncode is None:
                    process.kill()
                    await process.wait()

        out = (stdout or b"").decode(errors="replace").strip()
        err = (stderr or b"").decode(errors="replace").strip()
        if timed_out:
            return f"Error: Execution of {entry.path} timed out after {self.exec_timeout_s:g}s."
        if process.returncode != 0:
            return _cap(f"Error: Execution failed (exit code {process.returncode}):\n{err or out}", EXEC_OUTPUT_LIMIT)
        if not out:
            return f"Success: Executed {entry.path}. No output was produced."
        return _cap(f"Success: Executed {entry.path}.\nOutput:\n{out}", EXEC_OUTPUT_LIMIT)

    async def _auto_fix(self, path: str) -> ToolResult:
        entry = self._require_file(path)
        found = self.diagnostics.lint(entry.content, detect_language(entry.path))
        if not found:
            return ToolResult(f"Success: No errors found in {entry.path}.")
        if self.llm_client is None:
            raise ToolError("No language model is configured for automatic fixes.")
        problems = "\n".join(f"- {d.message} (Line {d.start_line}, Col {d.start_column})" for d in found)
        prompt = (
            f"Please fix the following {len(found)} errors in the file {entry.path}:\n{problems}\n\n"
            "Return ONLY the complete, corrected code for the entire file. "
            "Do not add any explanations, comments, or markdown formatting.\n\n"
            f"```{detect_language(entry.path)}\n{entry.content}\n```"
        )
        try:
            fixed = _strip_code_fence(await self.llm_client.generate_text(prompt, temperature=0.0))
        except (LLMError, httpx.HTTPError) as exc:
            logging.warning("Auto-fix request for %s failed", entry.path, exc_info=True)
            raise ToolError(f"An exception occurred while trying to fix errors in {entry.path}: {exc}") from exc
        if not fixed.strip():
            raise ToolError(f"The model failed to generate a fix for the errors in {entry.path}.")
        if fixed.strip() == entry.content.strip():
            return ToolResult("Success: Analysis complete, but no changes were necessary.")
        result = self._write_file(entry.path, fixed)
        return ToolResult(f"Success: Staged an automatic fix for {len(found)} errors in {entry.path}.", result.patch)
