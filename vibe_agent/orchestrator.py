from __future__ import annotations

import asyncio
import enum
import logging
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Dict, List, Optional, Set

import aiosqlite

from .db import SessionStore
from .diagnostics import DiagnosticsService
from .llm import ChatSession, LLMClient, LLMResponse, ToolResponse, Usage
from .patches import Patch, PatchLedger
from .planning import (
    DeadlockError,
    PlanScheduler,
    PlanStep,
    build_plan_prompt,
    build_step_prompt,
    build_summary_prompt,
    build_system_prompt,
    fallback_summary,
    parse_plan,
)
from .preflight import PreflightValidator
from .search import SearchEngine
from .security import validate_text_field
from .tools import ToolGateway, tool_definitions
from .vcs import InMemoryRepository
from .workspace import Workspace


LOG_RESULT_CHARS = 300
CHAT_SYSTEM_PROMPT = "You are a helpful coding assistant. Answer using the project context provided with each question."


class AgentStatus(str, enum.Enum):
    IDLE = "idle"
    PLANNING = "planning"
    THINKING = "thinking"
    EXECUTING = "executing"
    SUMMARIZING = "summarizing"
    AWAITING_CHANGES_REVIEW = "awaiting_changes_review"
    COMPLETED = "completed"
    FAILED = "failed"
    STOPPED = "stopped"


RUNNING_STATUSES = (
    AgentStatus.PLANNING,
    AgentStatus.THINKING,
    AgentStatus.EXECUTING,
    AgentStatus.SUMMARIZING,
)


@dataclass
class AgentStep:
    seq: int
    kind: str  # user | thought | call | result | error | summary
    text: str
    timestamp: float = field(default_factory=time.time)
    tool_name: Optional[str] = None
    tool_args: Optional[Dict[str, Any]] = None

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {"seq": self.seq, "kind": self.kind, "text": self.text, "timestamp": self.timestamp}
        if self.tool_name is not None:
            out["tool_name"] = self.tool_name
            out["tool_args"] = self.tool_args
        return out


@dataclass
class AgentSession:
    session_id: str
    goal: str
    status: AgentStatus = AgentStatus.IDLE
    steps: List[AgentStep] = field(default_factory=list)
    plan: List[PlanStep] = field(default_factory=list)
    awareness: Set[str] = field(default_factory=set)
    failure_reason: Optional[str] = None
    summary: Optional[str] = None
    usage: Usage = field(default_factory=Usage)


class _StaleRun(Exception):
    """The run was superseded while awaiting."""


class _BudgetExceeded(Exception):
    pass


class Orchestrator:
    """Drives one agent session for one project.

    Flow: plan, then one plan step at a time ask the model for the next
    action, run its tool call through the gateway and feed the result back
    until the model answers without a tool call. Every file change lands in
    the patch ledger for human review.
    """

    def __init__(
        self,
        workspace: Workspace,
        llm_client: LLMClient,
        *,
        search_engine: Optional[SearchEngine] = None,
        repo: Optional[InMemoryRepository] = None,
        diagnostics: Optional[DiagnosticsService] = None,
        preflight: Optional[PreflightValidator] = None,
        store: Optional[SessionStore] = None,
        max_tool_calls_per_step: int = 25,
        exec_timeout_s: float = 10.0,
    ) -> None:
        self.workspace = workspace
        self.llm_client = llm_client
        self.search_engine = search_engine or SearchEngine()
        self.diagnostics = diagnostics or DiagnosticsService()
        self.preflight = preflight or PreflightValidator(self.diagnostics)
        self.store = store
        self.max_tool_calls_per_step = max(1, int(max_tool_calls_per_step))
        self.ledger = PatchLedger(workspace, on_commit=self._on_commit)
        self.gateway = ToolGateway(
            workspace,
            self.ledger,
            self.search_engine,
            repo=repo,
            diagnostics=self.diagnostics,
            llm_client=llm_client,
            exec_timeout_s=exec_timeout_s,
        )
        self.session: Optional[AgentSession] = None
        self.scheduler: Optional[PlanScheduler] = None
        self._chat: Optional[ChatSession] = None
        self._task: Optional[asyncio.Task] = None
        self._generation = 0

    # -- public commands -------------------------------------------------

    async def start(self, goal: str) -> AgentSession:
        """Reset the session and launch a new run in the background."""
        goal = validate_text_field(goal, field_name="goal")
        await self._cancel_running()
        self.session = AgentSession(session_id=uuid.uuid4().hex, goal=goal)
        self.scheduler = None
        self._chat = None
        await self._persist("create_session", self.session.session_id, goal, AgentStatus.IDLE.value)
        await self._log("user", goal)
        self._launch(goal)
        return self.session

    async def run(self, goal: str) -> AgentSession:
        """Start a run and wait for it to settle."""
        session = await self.start(goal)
        await self.wait()
        return session

    async def wait(self) -> None:
        task = self._task
        if task is not None:
            try:
                await task
            except asyncio.CancelledError:
                if not task.cancelled():
                    raise

    async def stop(self) -> None:
        session = self.session
        if session is None or session.status not in RUNNING_STATUSES:
            return
        self._generation += 1
        task = self._task
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()
        if self.scheduler is not None:
            active = self.scheduler.active()
            if active is not None:
                self.scheduler.fail(active.id)
        await self._set_status(AgentStatus.STOPPED)
        await self._log("error", "Run stopped by user.")
        logging.info("Agent session %s stopped", session.session_id)

    async def send_feedback(self, text: str) -> AgentSession:
        """Start a follow-up run on the ended session, keeping pending patches."""
        text = validate_text_field(text, field_name="feedback")
        session = self.session
        if session is None:
            raise RuntimeError("No agent session to send feedback to.")
        if session.status in RUNNING_STATUSES or (self._task is not None and not self._task.done()):
            raise RuntimeError("The agent is still running; stop it before sending feedback.")
        session.failure_reason = None
        session.summary = None
        self.scheduler = None
        self._chat = None
        await self._log("user", text)
        self._launch(text, follow_up=True)
        return session

    async def accept_patch(self, patch_id: str) -> Patch:
        done = self.ledger.accept(patch_id)
        self.preflight.discard(done.path)
        await self._after_review()
        return done

    async def reject_patch(self, patch_id: str) -> Patch:
        done = self.ledger.reject(patch_id)
        self.preflight.discard(done.path)
        await self._after_review()
        return done

    async def accept_all(self) -> List[Patch]:
        done = self.ledger.accept_all()
        for patch in done:
            self.preflight.discard(patch.path)
        await self._after_review()
        return done

    async def reject_all(self) -> List[Patch]:
        done = self.ledger.reject_all()
        for patch in done:
            self.preflight.discard(patch.path)
        await self._after_review()
        return done

    async def chat(self, message: str, *, active_path: Optional[str] = None) -> str:
        """Question about the project, answered with retrieved context."""
        parts = [part async for part in self.chat_stream(message, active_path=active_path)]
        return "".join(parts)

    async def chat_stream(self, message: str, *, active_path: Optional[str] = None) -> AsyncIterator[str]:
        """Stream the answer to a project question as text deltas."""
        message = validate_text_field(message, field_name="message")
        context = self.search_engine.get_context(message, self.gateway.view.files(), active_path=active_path)
        conversation = self.llm_client.create_session(CHAT_SYSTEM_PROMPT)
        async for chunk in conversation.send_message_stream(f"{context}\nQuestion: {message}"):
            if chunk.text:
                yield chunk.text

    def snapshot(self) -> Dict[str, Any]:
        session = self.session
        patches = []
        for patch in self.ledger.pending():
            item = patch.to_dict(include_text=False)
            check = self.preflight.result_for(patch.path)
            item["preflight"] = check.to_dict() if check is not None else None
            patches.append(item)
        out: Dict[str, Any] = {
            "status": session.status.value if session else AgentStatus.IDLE.value,
            "patches": patches,
            "index": {
                "status": self.search_engine.status,
                "progress": list(self.search_engine.progress),
            },
        }
        if session is not None:
            out.update(
                {
                    "session_id": session.session_id,
                    "goal": session.goal,
                    "failure_reason": session.failure_reason,
                    "summary": session.summary,
                    "plan": [s.to_dict() for s in session.plan],
                    "steps": [s.to_dict() for s in session.steps],
                    "awareness": sorted(session.awareness),
                    "usage": {
                        "prompt_tokens": session.usage.prompt_tokens,
                        "completion_tokens": session.usage.completion_tokens,
                        "total_tokens": session.usage.total_tokens,
                    },
                }
            )
        return out

    async def close(self) -> None:
        await self._cancel_running()
        self.search_engine.close()

    # -- run loop --------------------------------------------------------

    def _launch(self, instruction: str, *, follow_up: bool = False) -> None:
        self._generation += 1
        self._task = asyncio.get_running_loop().create_task(self._run(self._generation, instruction, follow_up))

    async def _cancel_running(self) -> None:
        task = self._task
        self._generation += 1
        if task is not None and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._task = None

    def _check(self, generation: int) -> None:
        if generation != self._generation:
            raise _StaleRun()

    async def _run(self, generation: int, instruction: str, follow_up: bool) -> None:
        assert self.session is not None
        try:
            await self._plan(generation, instruction, follow_up)
            await self._execute_plan(generation)
            await self._summarize(generation)
        except _StaleRun:
            logging.info("Discarding late result for superseded agent run")
        except DeadlockError as exc:
            await self._log("error", str(exc))
            await self._fail(str(exc))
        except _BudgetExceeded as exc:
            await self._fail(str(exc))
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            if generation != self._generation:
                return
            logging.warning("Agent run failed", exc_info=True)
            if self.scheduler is not None:
                active = self.scheduler.active()
                if active is not None:
                    self.scheduler.fail(active.id)
                    await self._persist("save_plan", self.session.session_id, self.scheduler.to_list())
            await self._log("error", f"Agent run failed: {exc}")
            await self._fail(str(exc) or type(exc).__name__)

    async def _plan(self, generation: int, instruction: str, follow_up: bool) -> None:
        session = self.session
        assert session is not None
        await self._set_status(AgentStatus.PLANNING)
        if self.search_engine.snapshot is None and self.workspace.paths():
            await self.search_engine.reindex_async(self.workspace.files())
            self._check(generation)
        context = self.search_engine.get_context(instruction, self.gateway.view.files())
        if follow_up:
            pending = ", ".join(f"{p.kind} {p.path}" for p in self.ledger.pending()) or "none"
            context = f"Original goal: {session.goal}\nChanges awaiting review: {pending}\n\n{context}"
        raw = await self.llm_client.generate_text(build_plan_prompt(instruction, context), json_mode=True)
        self._check(generation)
        steps = parse_plan(raw)
        if not steps:
            logging.warning("Planning produced no steps; summarizing directly.")
        session.plan = steps
        self.scheduler = PlanScheduler(steps)
        await self._persist("save_plan", session.session_id, self.scheduler.to_list())
        self._chat = self.llm_client.create_session(build_system_prompt(steps), tools=tool_definitions())

    async def _execute_plan(self, generation: int) -> None:
        scheduler = self.scheduler
        session = self.session
        assert scheduler is not None and session is not None
        while True:
            step = scheduler.next_eligible()
            if step is None:
                if scheduler.has_pending():
                    raise DeadlockError(scheduler.deadlock_reason() or "Deadlock: no eligible step")
                return
            scheduler.activate(step.id)
            await self._persist("save_plan", session.session_id, scheduler.to_list())
            await self._set_status(AgentStatus.THINKING)
            response = await self._send(generation, build_step_prompt(scheduler.index_of(step.id) + 1, step))

            calls_made = 0
            while response.tool_calls:
                if calls_made >= self.max_tool_calls_per_step:
                    scheduler.fail(step.id)
                    await self._persist("save_plan", session.session_id, scheduler.to_list())
                    reason = f"Step '{step.title}' exceeded the budget of {self.max_tool_calls_per_step} tool calls."
                    await self._log("error", reason)
                    raise _BudgetExceeded(reason)
                calls_made += 1
                response = await self._run_tool_call(generation, response)

            scheduler.complete(step.id)
            await self._persist("save_plan", session.session_id, scheduler.to_list())

    async def _run_tool_call(self, generation: int, response: LLMResponse) -> LLMResponse:
        session = self.session
        assert session is not None
        call, *extra = response.tool_calls
        await self._set_status(AgentStatus.EXECUTING)
        await self._log("call", f"{call.name}({_short_args(call.args)})", tool_name=call.name, tool_args=call.args)
        outcome = await self.gateway.execute(call.name, call.args)
        self._check(generation)
        text = outcome.result
        await self._log("result", text if len(text) <= LOG_RESULT_CHARS else text[:LOG_RESULT_CHARS] + "...")
        if outcome.patch is not None:
            session.awareness.add(outcome.patch.file_id)
            feedback = await self._check_patch(outcome.patch)
            self._check(generation)
            if feedback:
                text = f"{text}\n\n{feedback}"
        elif call.name in ("fs_readFile", "getFileStructure") and not text.startswith("Error:"):
            entry = self.gateway.view.get(str(call.args.get("path", "")))
            if entry is not None:
                session.awareness.add(entry.file_id)

        responses = [ToolResponse(id=call.id, name=call.name, result=text)]
        for skipped in extra:
            responses.append(
                ToolResponse(
                    id=skipped.id,
                    name=skipped.name,
                    result="Error: Only one tool call runs per turn. Repeat this call in your next turn.",
                )
            )
        await self._set_status(AgentStatus.THINKING)
        return await self._send(generation, "", responses)

    async def _check_patch(self, patch: Patch) -> str:
        """Run pre-flight on a staged change; failures are returned for the model, never enforced."""
        if patch.kind == "delete":
            self.preflight.discard(patch.path)
            return ""
        result = await self.preflight.validate(patch.path, patch.proposed_text)
        if not result.has_errors:
            return ""
        failed = "; ".join(f"{c.name}: {c.message}" for c in result.checks if c.status == "failure")
        logging.info("Pre-flight flagged %s: %s", patch.path, failed)
        return (
            f"[PRE-FLIGHT CHECK FAILED] {patch.path}: {failed}. "
            "The change is still staged. Please fix the code and try again."
        )

    async def _send(self, generation: int, text: str, tool_responses: Optional[List[ToolResponse]] = None) -> LLMResponse:
        assert self._chat is not None and self.session is not None
        response = await self._chat.send_message(text, tool_responses)
        self._check(generation)
        if response.usage is not None:
            self.session.usage = self.session.usage + response.usage
        if response.text and response.text.strip():
            await self._log("thought", response.text.strip())
        return response

    async def _summarize(self, generation: int) -> None:
        session = self.session
        assert session is not None
        await self._set_status(AgentStatus.SUMMARIZING)
        changes = [f"{p.kind} {p.path}" for p in self.ledger.pending()]
        try:
            text = await self.llm_client.generate_text(build_summary_prompt(session.goal, session.plan, changes))
        except asyncio.CancelledError:
            raise
        except Exception:
            logging.warning("Summary request failed; using fallback summary.", exc_info=True)
            text = ""
        self._check(generation)
        session.summary = text.strip() or fallback_summary(session.plan, changes)
        await self._log("summary", session.summary)
        if self.ledger.pending():
            await self._set_status(AgentStatus.AWAITING_CHANGES_REVIEW)
        else:
            await self._set_status(AgentStatus.COMPLETED)

    # -- state helpers ---------------------------------------------------

    async def _fail(self, reason: str) -> None:
        session = self.session
        assert session is not None
        session.failure_reason = reason
        logging.warning("Agent session %s failed: %s", session.session_id, reason)
        await self._set_status(AgentStatus.FAILED)

    async def _after_review(self) -> None:
        session = self.session
        if session is not None and session.status is AgentStatus.AWAITING_CHANGES_REVIEW and not self.ledger.pending():
            await self._set_status(AgentStatus.COMPLETED)

    def _on_commit(self, patch: Patch) -> None:
        self.search_engine.schedule_reindex(self.workspace.files())

    async def _set_status(self, status: AgentStatus) -> None:
        session = self.session
        assert session is not None
        session.status = status
        await self._persist(
            "set_status",
            session.session_id,
            status.value,
            failure_reason=session.failure_reason,
            summary=session.summary,
            usage={
                "prompt_tokens": session.usage.prompt_tokens,
                "completion_tokens": session.usage.completion_tokens,
            },
        )

    async def _log(
        self,
        kind: str,
        text: str,
        *,
        tool_name: Optional[str] = None,
        tool_args: Optional[Dict[str, Any]] = None,
    ) -> AgentStep:
        session = self.session
        assert session is not None
        step = AgentStep(seq=len(session.steps), kind=kind, text=text, tool_name=tool_name, tool_args=tool_args)
        session.steps.append(step)
        await self._persist(
            "append_step",
            session.session_id,
            step.seq,
            kind,
            text,
            tool_name=tool_name,
            tool_args=tool_args,
            created_at=step.timestamp,
        )
        return step

    async def _persist(self, method: str, *args: Any, **kwargs: Any) -> None:
        if self.store is None:
            return
        try:
            await getattr(self.store, method)(*args, **kwargs)
        except (aiosqlite.Error, OSError):
            logging.warning("Failed to persist agent session (%s)", method, exc_info=True)


def _short_args(args: Dict[str, Any]) -> str:
    parts = []
    for key, value in args.items():
        text = repr(value)
        parts.append(f"{key}={text[:60] + '...' if len(text) > 60 else text}")
    return ", ".join(parts)
