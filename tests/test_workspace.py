import pytest

from vibe_agent.chunking import make_file_id
from vibe_agent.patches import PatchLedger, PatchRange
from vibe_agent.security import PathContext
from vibe_agent.workspace import EffectiveView, Workspace, render_tree


def test_render_tree_folders_first():
    tree = render_tree(["src/app.py", "README.md", "src/lib/util.py"])
    assert tree.splitlines() == [
        "Project structure:",
        "- src/",
        "  - lib/",
        "    - util.py",
        "  - app.py",
        "- README.md",
    ]


def test_render_tree_empty():
    assert render_tree([]) == "Project structure:\n(empty project)"


def test_effective_view_layers_pending_patches():
    ws = Workspace({"a.py": "a = 1\n", "b.py": "b = 1\n"})
    ledger = PatchLedger(ws)
    view = EffectiveView(ws, ledger)
    ledger.propose(
        file_id=make_file_id("new.py"),
        path="new.py",
        kind="create",
        range=PatchRange(1, 1),
        original_text="",
        proposed_text="new = 1\n",
    )
    ledger.propose(
        file_id=make_file_id("b.py"),
        path="b.py",
        kind="delete",
        range=PatchRange(1, 1),
        original_text="b = 1\n",
        proposed_text="",
    )
    assert view.get("new.py").content == "new = 1\n"
    assert view.get("b.py") is None
    assert view.paths() == ["a.py", "new.py"]
    # The committed store is untouched.
    assert ws.paths() == ["a.py", "b.py"]


def test_workspace_rejects_disk_root_without_context(tmp_path):
    with pytest.raises(ValueError):
        Workspace(root=str(tmp_path))


def test_disk_backed_workspace(tmp_path):
    (tmp_path / "src").mkdir()
    (tmp_path / "src" / "main.py").write_text("print('hi')\n", encoding="utf-8")
    (tmp_path / "node_modules").mkdir()
    (tmp_path / "node_modules" / "dep.js").write_text("x", encoding="utf-8")
    ctx = PathContext([str(tmp_path)])

    ws = Workspace.from_directory(str(tmp_path), ctx, ignore_patterns=["**/node_modules/**"])
    assert ws.paths() == ["src/main.py"]
    assert ws.is_folder("src")

    ws.write("src/extra/new.py", "y = 2\n")
    assert (tmp_path / "src" / "extra" / "new.py").read_text(encoding="utf-8") == "y = 2\n"

    ws.delete("src/main.py")
    assert not (tmp_path / "src" / "main.py").exists()
    with pytest.raises(FileNotFoundError):
        ws.delete("src/main.py")


def test_failed_disk_write_leaves_memory_untouched(tmp_path):
    (tmp_path / "a").write_text("plain file\n", encoding="utf-8")
    ws = Workspace.from_directory(str(tmp_path), PathContext([str(tmp_path)]))

    with pytest.raises(OSError):
        ws.write("a/b.py", "x = 1\n")
    assert ws.get("a/b.py") is None
    assert ws.paths() == ["a"]


def test_failed_accept_keeps_patch_pending(tmp_path):
    (tmp_path / "a").write_text("plain file\n", encoding="utf-8")
    ws = Workspace.from_directory(str(tmp_path), PathContext([str(tmp_path)]))
    ledger = PatchLedger(ws)
    patch = ledger.propose(
        file_id=make_file_id("a/b.py"),
        path="a/b.py",
        kind="create",
        range=PatchRange.whole("x = 1\n"),
        original_text="",
        proposed_text="x = 1\n",
    )

    with pytest.raises(OSError):
        ledger.accept(patch.patch_id)
    assert ws.get("a/b.py") is None
    assert [p.patch_id for p in ledger.pending()] == [patch.patch_id]
    assert (tmp_path / "a").is_file()
