import asyncio

import pytest

from vibe_agent.patches import PatchLedger
from vibe_agent.search import SearchEngine
from vibe_agent.tools import ToolGateway, ToolKind, extract_symbols, tool_definitions
from vibe_agent.vcs import InMemoryRepository
from vibe_agent.workspace import Workspace


class FixingLLM:
    def __init__(self, reply):
        self.reply = reply
        self.prompts = []

    async def generate_text(self, prompt, *, temperature=0.2, max_tokens=None, json_mode=False):
        self.prompts.append(prompt)
        return self.reply


def _gateway(files=None, llm=None):
    files = dict(files or {})
    ws = Workspace(files)
    engine = SearchEngine()
    engine.reindex(ws.files())
    return ToolGateway(
        ws,
        PatchLedger(ws),
        engine,
        repo=InMemoryRepository(ws, head=files),
        llm_client=llm,
    )


@pytest.mark.asyncio
async def test_read_your_writes_without_accepting():
    gw = _gateway()
    written = await gw.execute("fs_writeFile", {"path": "notes/todo.md", "content": "- ship it\n"})
    assert written.result == "Success: Staged new file creation for notes/todo.md"
    assert written.patch is not None and written.patch.kind == "create"

    read = await gw.execute("fs_readFile", {"path": "notes/todo.md"})
    assert "- ship it" in read.result
    assert gw.workspace.get("notes/todo.md") is None


@pytest.mark.asyncio
async def test_write_existing_file_is_update():
    gw = _gateway({"app.py": "v = 0\n"})
    res = await gw.execute("fs_writeFile", {"path": "app.py", "content": "v = 1\n"})
    assert res.patch.kind == "update"
    assert res.patch.original_text == "v = 0\n"
    assert gw.workspace.get("app.py").content == "v = 0\n"


@pytest.mark.asyncio
async def test_delete_of_pending_creation_discards_patch():
    gw = _gateway()
    await gw.execute("fs_writeFile", {"path": "tmp.py", "content": "x = 1\n"})
    res = await gw.execute("fs_deleteFile", {"path": "tmp.py"})
    assert res.result.startswith("Success: Discarded")
    assert len(gw.ledger) == 0


@pytest.mark.asyncio
async def test_delete_committed_file_hides_it():
    gw = _gateway({"old.py": "x = 1\n"})
    res = await gw.execute("fs_deleteFile", {"path": "old.py"})
    assert res.patch.kind == "delete"
    read = await gw.execute("fs_readFile", {"path": "old.py"})
    assert read.result.startswith("Error: File not found")
    listing = await gw.execute("fs_listFiles", {})
    assert "old.py" not in listing.result


@pytest.mark.asyncio
async def test_errors_are_returned_as_text():
    gw = _gateway({"src/app.py": "x = 1\n"})
    assert (await gw.execute("nope", {})).result == "Error: Unknown tool nope"
    assert (await gw.execute("fs_readFile", {})).result.startswith("Error: Invalid arguments for fs_readFile")
    assert (await gw.execute("fs_readFile", {"path": "src", "extra": 1})).result.startswith("Error: Invalid")
    assert (await gw.execute("fs_readFile", {"path": "src"})).result == "Error: Path 'src' is a directory, not a file."
    assert "escapes the project root" in (await gw.execute("fs_readFile", {"path": "../etc/passwd"})).result
    assert "relative" in (await gw.execute("fs_writeFile", {"path": "/etc/passwd", "content": ""})).result


@pytest.mark.asyncio
async def test_search_code_uses_index():
    gw = _gateway({"auth.py": "def login(user, password):\n    check_password(password)\n"})
    res = await gw.execute("searchCode", {"query": "password"})
    assert res.result.startswith("Found 1 relevant code snippets")
    assert (await gw.execute("searchCode", {"query": "qqqzzz"})).result == "No relevant code found."


@pytest.mark.asyncio
async def test_grep_is_case_insensitive_and_capped():
    big = "\n".join(f"Needle number {i}" for i in range(1000))
    gw = _gateway({"big.txt": big, "small.txt": "nothing here\nNEEDLE\n"})
    res = await gw.execute("grep", {"pattern": "needle", "path": "small.txt"})
    assert "Found 1 matches in 1 files" in res.result
    assert "L2: NEEDLE" in res.result

    capped = await gw.execute("grep", {"pattern": "needle"})
    assert "(Results truncated)" in capped.result
    assert len(capped.result) < 4200

    bad = await gw.execute("grep", {"pattern": "(unclosed"})
    assert bad.result.startswith("Error: Invalid regex pattern")


@pytest.mark.asyncio
async def test_file_structure_python_and_js():
    gw = _gateway(
        {
            "models.py": "class User:\n    def name(self):\n        return 'x'\n\nasync def load():\n    pass\n",
            "ui.js": "export function render() {}\nconst helper = 1;\n",
        }
    )
    py = await gw.execute("getFileStructure", {"path": "models.py"})
    assert "class User (lines 1-3)" in py.result
    assert "function name (lines 2-3)" in py.result
    assert "function load (lines 5-6)" in py.result
    js = await gw.execute("getFileStructure", {"path": "ui.js"})
    assert "function render (line 1)" in js.result
    assert extract_symbols("empty.py", "") == []


@pytest.mark.asyncio
async def test_git_status_and_diff_against_effective_content():
    gw = _gateway({"app.py": "print('a')\n"})
    assert (await gw.execute("git_getStatus", {})).result == "Success: Working tree is clean."
    assert (await gw.execute("git_diff", {"path": "app.py"})).result == "Success: No changes for app.py."

    await gw.execute("fs_writeFile", {"path": "app.py", "content": "print('b')\n"})
    diff = await gw.execute("git_diff", {"path": "app.py"})
    assert "-print('a')" in diff.result
    assert "+print('b')" in diff.result

    status = await gw.execute("git_getStatus", {})
    assert "modified   app.py" in status.result

    await gw.execute("fs_writeFile", {"path": "new.py", "content": "y = 2\n"})
    await gw.execute("fs_deleteFile", {"path": "app.py"})
    status = await gw.execute("git_getStatus", {})
    assert "added      new.py" in status.result
    assert "deleted    app.py" in status.result
    assert gw.workspace.get("new.py") is None


@pytest.mark.asyncio
async def test_lint_reports_syntax_errors():
    gw = _gateway({"ok.py": "x = 1\n", "bad.py": "def broken(:\n"})
    res = await gw.execute("tooling_lint", {})
    assert "File: bad.py" in res.result
    assert "[error]" in res.result
    assert "ok.py" not in res.result
    clean = await gw.execute("tooling_lint", {"path": "ok.py"})
    assert clean.result == "Success: No linting issues found."


@pytest.mark.asyncio
async def test_runtime_exec_python():
    gw = _gateway({"main.py": "print('hello from exec')\n", "fail.py": "raise SystemExit(3)\n", "a.css": "a{}"})
    ok = await gw.execute("runtime_exec", {"path": "main.py"})
    assert ok.result == "Success: Executed main.py.\nOutput:\nhello from exec"
    failed = await gw.execute("runtime_exec", {"path": "fail.py"})
    assert failed.result.startswith("Error: Execution failed (exit code 3)")
    unsupported = await gw.execute("runtime_exec", {"path": "a.css"})
    assert unsupported.result.startswith("Error: Only Python and JavaScript")


@pytest.mark.asyncio
async def test_runtime_exec_timeout():
    gw = _gateway({"slow.py": "import time\ntime.sleep(5)\n"})
    gw.exec_timeout_s = 0.2
    res = await gw.execute("runtime_exec", {"path": "slow.py"})
    assert "timed out" in res.result


@pytest.mark.asyncio
async def test_auto_fix_stages_patch():
    llm = FixingLLM("```python\ndef fixed():\n    return 1\n```")
    gw = _gateway({"bad.py": "def fixed(:\n    return 1\n"}, llm=llm)
    res = await gw.execute("autoFixErrors", {"path": "bad.py"})
    assert res.result.startswith("Success: Staged an automatic fix for 1 errors in bad.py")
    assert res.patch.proposed_text == "def fixed():\n    return 1"
    assert "SyntaxError" in llm.prompts[0]


@pytest.mark.asyncio
async def test_auto_fix_without_errors_or_model():
    gw = _gateway({"ok.py": "x = 1\n", "bad.py": "def x(:\n"})
    assert (await gw.execute("autoFixErrors", {"path": "ok.py"})).result == "Success: No errors found in ok.py."
    res = await gw.execute("autoFixErrors", {"path": "bad.py"})
    assert res.result.startswith("Error: No language model")


def test_tool_definitions_cover_every_tool():
    defs = tool_definitions()
    names = [d["function"]["name"] for d in defs]
    assert names == [k.value for k in ToolKind]
    write = next(d for d in defs if d["function"]["name"] == "fs_writeFile")
    assert set(write["function"]["parameters"]["required"]) == {"path", "content"}
    assert write["function"]["description"]


@pytest.mark.asyncio
async def test_write_under_a_file_path_is_rejected():
    gw = _gateway({"a": "plain file\n"})
    res = await gw.execute("fs_writeFile", {"path": "a/b.py", "content": "x = 1\n"})
    assert res.result == "Error: Cannot write file. 'a' is a file, not a folder."
    assert res.patch is None
    assert len(gw.ledger) == 0

    await gw.execute("fs_writeFile", {"path": "pending.txt", "content": "staged\n"})
    nested = await gw.execute("fs_writeFile", {"path": "pending.txt/inner.py", "content": ""})
    assert nested.result == "Error: Cannot write file. 'pending.txt' is a file, not a folder."
    assert len(gw.ledger) == 1


@pytest.mark.asyncio
async def test_cancelled_exec_kills_the_child(tmp_path):
    marker = tmp_path / "still-running.txt"
    script = f"import time\ntime.sleep(1.5)\nopen({str(marker)!r}, 'w').write('alive')\n"
    gw = _gateway({"slow.py": script})
    gw.exec_timeout_s = 30

    task = asyncio.create_task(gw.execute("runtime_exec", {"path": "slow.py"}))
    await asyncio.sleep(0.5)
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task

    await asyncio.sleep(1.5)
    assert not marker.exists()
