import asyncio
import os
import stat

import pytest

pytest.importorskip("aiosqlite")

from vibe_agent import db as dbmod


def test_session_round_trip(tmp_path):
    store = dbmod.SessionStore(str(tmp_path / "agent.db"))

    async def run():
        await store.init()
        await store.create_session("s1", "Add a health check", "idle")
        await store.save_plan("s1", [{"id": "step-1", "title": "Do it", "status": "pending"}])
        await store.append_step("s1", 0, "user", "Add a health check")
        await store.append_step(
            "s1", 1, "call", "fs_readFile(path='a.py')", tool_name="fs_readFile", tool_args={"path": "a.py"}
        )
        await store.set_status(
            "s1", "failed", failure_reason="boom", usage={"prompt_tokens": 12, "completion_tokens": 4}
        )
        return await store.load_session("s1")

    row = asyncio.run(run())
    assert row["goal"] == "Add a health check"
    assert row["status"] == "failed"
    assert row["failure_reason"] == "boom"
    assert row["prompt_tokens"] == 12
    assert row["plan"][0]["id"] == "step-1"
    assert [s["kind"] for s in row["steps"]] == ["user", "call"]
    assert row["steps"][1]["tool_args"] == {"path": "a.py"}
    assert row["steps"][0]["tool_args"] is None


def test_summary_is_kept_when_not_given(tmp_path):
    store = dbmod.SessionStore(str(tmp_path / "agent.db"))

    async def run():
        await store.init()
        await store.create_session("s1", "goal", "summarizing")
        await store.set_status("s1", "awaiting_changes_review", summary="### Summary\nok")
        await store.set_status("s1", "completed")
        return await store.load_session("s1")

    row = asyncio.run(run())
    assert row["status"] == "completed"
    assert row["summary"] == "### Summary\nok"


def test_unknown_session_and_listing(tmp_path):
    store = dbmod.SessionStore(str(tmp_path / "agent.db"))

    async def run():
        await store.init()
        await store.create_session("a", "first", "completed")
        await store.create_session("b", "second", "failed")
        return await store.load_session("missing"), await store.list_sessions(limit=10)

    missing, listed = asyncio.run(run())
    assert missing is None
    assert {r["session_id"] for r in listed} == {"a", "b"}


@pytest.mark.skipif(os.name == "nt", reason="POSIX permissions only")
def test_db_file_permissions(tmp_path):
    path = tmp_path / "nested" / "agent.db"
    dbmod.ensure_db_permissions(str(path))
    assert path.exists()
    assert stat.S_IMODE(path.stat().st_mode) == 0o600
