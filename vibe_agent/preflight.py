from __future__ import annotations

import asyncio
import copy
import logging
import re
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Dict, List, Optional, Tuple, Union

from .diagnostics import Diagnostic, DiagnosticsService, detect_language


CHECK_SYNTAX = "syntax"
CHECK_BUILD = "build"
CHECK_SECURITY = "security"

_PHASES: Tuple[Tuple[str, str], ...] = (
    (CHECK_SYNTAX, "Syntax Analysis"),
    (CHECK_BUILD, "Virtual Build"),
    (CHECK_SECURITY, "Security Scan"),
)

# "=======" alone is a valid reStructuredText underline, so only the
# opening and closing markers count.
_CONFLICT_MARKER = re.compile(r"^(<{7}|>{7})(\s|$)", re.MULTILINE)

SECRET_PATTERNS: Tuple[Tuple[str, re.Pattern], ...] = (
    ("private key", re.compile(r"-----BEGIN (?:RSA |EC |DSA |OPENSSH |PGP )?PRIVATE KEY-----")),
    ("AWS access key", re.compile(r"\b(?:AKIA|ASIA)[0-9A-Z]{16}\b")),
    ("GitHub token", re.compile(r"\bgh[pousr]_[A-Za-z0-9]{36,}\b")),
    ("Slack token", re.compile(r"\bxox[baprs]-[A-Za-z0-9-]{10,}\b")),
    ("OpenAI-style API key", re.compile(r"\bsk-[A-Za-z0-9_-]{20,}\b")),
    (
        "hard-coded credential",
        re.compile(
            r"""(?i)\b(?:api[_-]?key|secret|token|passw(?:or)?d)\b\s*[:=]\s*["'][^"'\s]{8,}["']"""
        ),
    ),
)


@dataclass
class PreflightCheck:
    id: str
    name: str
    status: str = "pending"  # pending | running | success | failure | skipped
    message: str = ""


@dataclass
class PreflightResult:
    path: str
    checks: List[PreflightCheck]
    has_errors: bool = False
    diagnostics: List[Diagnostic] = field(default_factory=list)

    def check(self, check_id: str) -> PreflightCheck:
        for c in self.checks:
            if c.id == check_id:
                return c
        raise KeyError(check_id)

    def to_dict(self) -> Dict[str, object]:
        return {
            "path": self.path,
            "has_errors": self.has_errors,
            "checks": [
                {"id": c.id, "name": c.name, "status": c.status, "message": c.message} for c in self.checks
            ],
            "diagnostics": [d.to_dict() for d in self.diagnostics],
        }


UpdateCallback = Callable[[PreflightResult], Union[None, Awaitable[None]]]


def scan_secrets(content: str) -> List[str]:
    findings: List[str] = []
    for label, pattern in SECRET_PATTERNS:
        for match in pattern.finditer(content):
            line = content.count("\n", 0, match.start()) + 1
            findings.append(f"Possible {label} on line {line}")
    return findings


class PreflightValidator:
    """Advisory three-phase check of proposed file content.

    Phases run in order and stop at the first failure; later phases are
    marked skipped. Results are kept per path and replaced on every run.
    """

    def __init__(self, diagnostics: Optional[DiagnosticsService] = None, *, phase_delay_s: float = 0.0) -> None:
        self.diagnostics = diagnostics or DiagnosticsService()
        self.phase_delay_s = max(0.0, float(phase_delay_s))
        self._results: Dict[str, PreflightResult] = {}

    def result_for(self, path: str) -> Optional[PreflightResult]:
        return self._results.get(path)

    def discard(self, path: str) -> None:
        self._results.pop(path, None)

    async def _push(self, result: PreflightResult, on_update: Optional[UpdateCallback]) -> None:
        if on_update is None:
            return
        maybe = on_update(copy.deepcopy(result))
        if asyncio.iscoroutine(maybe):
            await maybe

    async def _pause(self) -> None:
        if self.phase_delay_s:
            await asyncio.sleep(self.phase_delay_s)

    async def validate(
        self,
        path: str,
        content: str,
        on_update: Optional[UpdateCallback] = None,
    ) -> PreflightResult:
        result = PreflightResult(path=path, checks=[PreflightCheck(id=i, name=n) for i, n in _PHASES])
        self._results[path] = result
        await self._push(result, on_update)

        # Phase 1: syntax / lint
        syntax = result.check(CHECK_SYNTAX)
        syntax.status = "running"
        await self._push(result, on_update)
        await self._pause()
        diagnostics = self.diagnostics.lint(content, detect_language(path))
        result.diagnostics = diagnostics
        errors = [d for d in diagnostics if d.severity == "error"]
        if errors:
            syntax.status = "failure"
            syntax.message = f"{len(errors)} error(s): {errors[0].message} (line {errors[0].start_line})"
            result.has_errors = True
            self._skip_remaining(result)
            await self._push(result, on_update)
            return result
        syntax.status = "success"
        syntax.message = f"{len(diagnostics)} warning(s)" if diagnostics else "No syntax errors"
        await self._push(result, on_update)

        # Phase 2: build simulation
        build = result.check(CHECK_BUILD)
        build.status = "running"
        await self._push(result, on_update)
        await self._pause()
        if _CONFLICT_MARKER.search(content):
            build.status = "failure"
            build.message = "Unresolved merge conflict markers"
            result.has_errors = True
            self._skip_remaining(result)
            await self._push(result, on_update)
            return result
        build.status = "success"
        build.message = "Build successful"
        await self._push(result, on_update)

        # Phase 3: secret scan
        security = result.check(CHECK_SECURITY)
        security.status = "running"
        await self._push(result, on_update)
        await self._pause()
        findings = scan_secrets(content)
        if findings:
            security.status = "failure"
            security.message = "; ".join(findings[:5])
            result.has_errors = True
        else:
            security.status = "success"
            security.message = "No secrets found"
        await self._push(result, on_update)
        logging.debug("Pre-flight for %s finished (has_errors=%s)", path, result.has_errors)
        return result

    @staticmethod
    def _skip_remaining(result: PreflightResult) -> None:
        for c in result.checks:
            if c.status == "pending":
                c.status = "skipped"
                c.message = "Skipped"
