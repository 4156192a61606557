from __future__ import annotations

import asyncio
import hashlib
import logging
import time
from typing import Any, Dict, Optional

from fastmcp import FastMCP

from vibe_agent.config import load_config
from vibe_agent.db import SessionStore, ensure_db_permissions
from vibe_agent.diagnostics import DiagnosticsService
from vibe_agent.llm import LLMError, OpenAIClient
from vibe_agent.orchestrator import Orchestrator
from vibe_agent.preflight import PreflightValidator
from vibe_agent.search import SearchEngine
from vibe_agent.security import PathContext, PathNotAllowed, validate_text_field
from vibe_agent.vcs import InMemoryRepository
from vibe_agent.workspace import Workspace


cfg = load_config()
ensure_db_permissions(cfg.db_path)

mcp = FastMCP(name="Vibe Agent MCP")

project_path_context = PathContext(cfg.allowed_roots)
store = SessionStore(cfg.db_path)
llm_client = OpenAIClient(
    model=cfg.llm_model,
    api_base=cfg.llm_base_url,
    api_key=cfg.llm_api_key,
    timeout_s=cfg.llm_timeout_s,
    max_retries=cfg.llm_max_retries,
    temperature=cfg.llm_temperature,
)
projects: Dict[str, Orchestrator] = {}


async def _startup_tasks() -> None:
    await store.init()
    logging.info("Storage: db=%s", cfg.db_path)
    logging.info("Language model: %s at %s", cfg.llm_model, cfg.llm_base_url)
    if not cfg.allowed_roots:
        logging.warning("No allowed_roots configured; index_project will refuse every directory.")


def _schedule_startup_tasks() -> None:
    try:
        loop = asyncio.get_running_loop()
    except RuntimeError:
        asyncio.run(_startup_tasks())
        return

    task = loop.create_task(_startup_tasks())

    def _on_startup_done(t: "asyncio.Task[None]") -> None:
        exc = t.exception()
        if exc is None:
            return
        logging.critical("Startup tasks failed; the server cannot serve requests.", exc_info=exc)
        loop.stop()

    task.add_done_callback(_on_startup_done)


_schedule_startup_tasks()


def _project_id(directory: str) -> str:
    return hashlib.sha1(directory.encode("utf-8")).hexdigest()[:12]


def _get_project(project_id: str) -> Orchestrator:
    orchestrator = projects.get(project_id)
    if orchestrator is None:
        raise KeyError(f"Unknown project_id: {project_id}. Run index_project first.")
    return orchestrator


@mcp.tool
async def index_project(directory: str) -> str:
    """Load a directory (within allowed_roots) and build its code search index."""
    try:
        directory = str(project_path_context.resolve_path(directory))
    except PathNotAllowed as e:
        return f"❌ {e}"

    start = time.time()
    workspace = await asyncio.to_thread(
        Workspace.from_directory,
        directory,
        project_path_context,
        ignore_patterns=cfg.ignore_patterns,
    )
    pid = _project_id(directory)
    previous = projects.pop(pid, None)
    if previous is not None:
        await previous.close()

    search_engine = SearchEngine(
        window_lines=cfg.chunk_window_lines,
        stride_lines=cfg.chunk_stride_lines,
        min_score=cfg.min_score,
        max_file_chars=cfg.max_index_file_chars,
        debounce_s=cfg.reindex_debounce_s,
    )
    chunks = await search_engine.reindex_async(workspace.files())
    diagnostics = DiagnosticsService()
    projects[pid] = Orchestrator(
        workspace,
        llm_client,
        search_engine=search_engine,
        repo=InMemoryRepository(workspace, head={f.path: f.content for f in workspace.files()}),
        diagnostics=diagnostics,
        preflight=PreflightValidator(diagnostics, phase_delay_s=cfg.preflight_phase_delay_s),
        store=store,
        max_tool_calls_per_step=cfg.max_tool_calls_per_step,
        exec_timeout_s=cfg.exec_timeout_s,
    )
    logging.info(
        "Indexed %s: %s files, %s chunks in %sms",
        directory,
        len(workspace.paths()),
        chunks,
        int((time.time() - start) * 1000),
    )
    return f"✅ Indexed {len(workspace.paths())} files ({chunks} chunks) as project_id: {pid}"


@mcp.tool
async def search_code(project_id: str, query: str, limit: Optional[int] = None) -> Dict[str, Any]:
    """Semantic code search over an indexed project."""
    try:
        orchestrator = _get_project(project_id)
        query = validate_text_field(query, field_name="query", max_length=2000)
    except (KeyError, ValueError) as e:
        return {"error": str(e)}
    limit = max(1, min(int(limit or cfg.search_limit), 50))
    results = orchestrator.search_engine.search(query, limit)
    return {"query": query, "results": [r.to_dict() for r in results]}


@mcp.tool
async def start_agent(project_id: str, goal: str) -> str:
    """Start an autonomous agent run for a goal. File changes are staged as patches."""
    try:
        session = await _get_project(project_id).start(goal)
    except (KeyError, ValueError) as e:
        return f"❌ {e}"
    return f"✅ Agent started: session_id {session.session_id}"


@mcp.tool
async def agent_status(project_id: str) -> Dict[str, Any]:
    """Current agent status, plan, step log and pending patches."""
    try:
        return _get_project(project_id).snapshot()
    except KeyError as e:
        return {"error": str(e)}


@mcp.tool
async def stop_agent(project_id: str) -> str:
    """Stop the running agent. Responses that arrive afterwards are discarded."""
    try:
        orchestrator = _get_project(project_id)
    except KeyError as e:
        return f"❌ {e}"
    await orchestrator.stop()
    status = orchestrator.session.status.value if orchestrator.session else "idle"
    return f"🛑 Agent status: {status}"


@mcp.tool
async def send_feedback(project_id: str, text: str) -> str:
    """Give the agent a follow-up instruction after a run has ended."""
    try:
        session = await _get_project(project_id).send_feedback(text)
    except (KeyError, ValueError, RuntimeError) as e:
        return f"❌ {e}"
    return f"✅ Follow-up started on session {session.session_id}"


@mcp.tool
async def list_patches(project_id: str, include_text: bool = False) -> Dict[str, Any]:
    """Pending patches with their pre-flight results."""
    try:
        orchestrator = _get_project(project_id)
    except KeyError as e:
        return {"error": str(e)}
    patches = []
    for patch in orchestrator.ledger.pending():
        item = patch.to_dict(include_text=bool(include_text))
        check = orchestrator.preflight.result_for(patch.path)
        item["preflight"] = check.to_dict() if check is not None else None
        patches.append(item)
    return {"patches": patches}


@mcp.tool
async def accept_patch(project_id: str, patch_id: str) -> str:
    """Commit one pending patch to the project files."""
    try:
        patch = await _get_project(project_id).accept_patch(patch_id)
    except (KeyError, PathNotAllowed, OSError) as e:
        return f"❌ {e}"
    return f"✅ Accepted {patch.kind} of {patch.path}"


@mcp.tool
async def reject_patch(project_id: str, patch_id: str) -> str:
    """Discard one pending patch."""
    try:
        patch = await _get_project(project_id).reject_patch(patch_id)
    except KeyError as e:
        return f"❌ {e}"
    return f"✅ Rejected {patch.kind} of {patch.path}"


@mcp.tool
async def accept_all_patches(project_id: str) -> str:
    """Commit every pending patch."""
    try:
        done = await _get_project(project_id).accept_all()
    except (KeyError, PathNotAllowed, OSError) as e:
        return f"❌ {e}"
    return f"✅ Accepted {len(done)} patches"


@mcp.tool
async def reject_all_patches(project_id: str) -> str:
    """Discard every pending patch."""
    try:
        done = await _get_project(project_id).reject_all()
    except KeyError as e:
        return f"❌ {e}"
    return f"✅ Rejected {len(done)} patches"


@mcp.tool
async def preflight(project_id: str, path: str) -> Dict[str, Any]:
    """Run the pre-flight checks on a file's current (pending-inclusive) content."""
    try:
        orchestrator = _get_project(project_id)
    except KeyError as e:
        return {"error": str(e)}
    entry = orchestrator.gateway.view.get(path)
    if entry is None:
        return {"error": f"File not found: {path}"}
    result = await orchestrator.preflight.validate(entry.path, entry.content)
    return result.to_dict()


@mcp.tool
async def chat(project_id: str, message: str, active_path: Optional[str] = None) -> str:
    """Ask a question about the project; relevant code is retrieved as context."""
    try:
        return await _get_project(project_id).chat(message, active_path=active_path)
    except (KeyError, ValueError, LLMError) as e:
        return f"❌ {e}"


@mcp.tool
async def list_sessions(limit: int = 20) -> Dict[str, Any]:
    """Recent agent sessions recorded in the session store."""
    return {"sessions": await store.list_sessions(limit=max(1, min(int(limit), 200)))}


@mcp.tool
async def session_history(session_id: str) -> Dict[str, Any]:
    """Full step log and plan of a recorded agent session."""
    session = await store.load_session(session_id)
    if session is None:
        return {"error": f"Unknown session_id: {session_id}"}
    return session


def main() -> None:
    mcp.run()


if __name__ == "__main__":
    # Stdio transport by default
    main()
