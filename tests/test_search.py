import asyncio

import pytest

from vibe_agent.search import SearchEngine, build_index, search_index
from vibe_agent.workspace import Workspace


FILES = {
    "auth.py": "def login(user, password):\n    return verify_password(user.hash, password)\n",
    "db.py": "def connect_database(url):\n    engine = create_engine(url)\n    return engine\n",
    "ui/button.js": "export function renderButton(label) {\n  return label.toUpperCase();\n}\n",
}


def _files(files=FILES):
    return Workspace(files).files()


def test_search_ranks_relevant_file_first():
    engine = SearchEngine()
    engine.reindex(_files())
    results = engine.search("password login")
    assert results
    assert results[0].file_path == "auth.py"
    assert all(r.score >= 0.05 for r in results)


def test_reindex_is_idempotent():
    engine = SearchEngine()
    engine.reindex(_files())
    first = [(r.file_id, r.start_line, round(r.score, 12)) for r in engine.search("database engine url")]
    engine.reindex(_files())
    second = [(r.file_id, r.start_line, round(r.score, 12)) for r in engine.search("database engine url")]
    assert first == second
    assert engine.rebuild_count == 2


def test_nonsense_query_returns_nothing():
    engine = SearchEngine()
    engine.reindex(_files())
    assert engine.search("zzqxv wibblefrotz") == []


def test_empty_corpus():
    engine = SearchEngine()
    assert engine.reindex([]) == 0
    assert engine.search("anything") == []
    assert search_index(None, "anything") == []


def test_limit_and_large_files():
    files = {f"mod{i}.py": f"def handler_{i}():\n    shared_token = {i}\n" for i in range(8)}
    files["huge.py"] = "shared_token = 1\n" * 10_000
    index = build_index(Workspace(files).files(), max_file_chars=100_000)
    assert all(c.file_path != "huge.py" for c in index.chunks)
    results = search_index(index, "shared_token", limit=3)
    assert len(results) == 3


def test_equal_scores_keep_corpus_order():
    files = {"a.py": "alpha_token beta\n", "b.py": "alpha_token beta\n"}
    index = build_index(Workspace(files).files())
    results = search_index(index, "alpha_token", limit=5)
    assert [r.file_path for r in results] == ["a.py", "b.py"]


def test_schedule_without_loop_rebuilds_immediately():
    engine = SearchEngine(debounce_s=10)
    engine.schedule_reindex(_files())
    assert engine.rebuild_count == 1
    assert engine.status == "ready"
    assert engine.progress == (3, 3)


@pytest.mark.asyncio
async def test_debounced_reindex_coalesces_bursts():
    engine = SearchEngine(debounce_s=0.05)
    engine.schedule_reindex(Workspace({"a.py": "first_version = 1\n"}).files())
    engine.schedule_reindex(Workspace({"a.py": "second_version = 2\n"}).files())
    engine.schedule_reindex(Workspace({"a.py": "third_version = 3\n"}).files())
    assert engine.rebuild_count == 0
    await engine.wait_idle()
    assert engine.rebuild_count == 1
    assert engine.search("third_version")
    assert engine.search("first_version") == []
    engine.close()


@pytest.mark.asyncio
async def test_search_serves_previous_snapshot_during_rebuild():
    engine = SearchEngine(debounce_s=0.01)
    engine.reindex(Workspace({"a.py": "old_marker = 1\n"}).files())
    engine.schedule_reindex(Workspace({"a.py": "new_marker = 1\n"}).files())
    assert engine.search("old_marker")
    await engine.wait_idle()
    assert engine.search("new_marker")
    assert engine.search("old_marker") == []


def test_get_context_lists_tree_and_snippets():
    engine = SearchEngine()
    files = _files()
    engine.reindex(files)
    context = engine.get_context("password login", files, active_path="db.py")
    assert context.startswith("Project structure:")
    assert "Potentially relevant code snippets:" in context
    assert "File: auth.py" in context
    assert "Currently active file (db.py)" in context


def test_reindex_async_runs_off_loop():
    engine = SearchEngine()
    count = asyncio.run(engine.reindex_async(_files()))
    assert count == 3
    assert engine.status == "ready"
