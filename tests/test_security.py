import os

import pytest

from vibe_agent.security import PathContext, PathNotAllowed, validate_text_field


def test_paths_outside_roots_are_refused(tmp_path):
    root = tmp_path / "project"
    root.mkdir()
    ctx = PathContext([str(root)])
    assert ctx.ensure_allowed(str(root / "a.py")) == os.path.realpath(str(root / "a.py"))
    with pytest.raises(PathNotAllowed):
        ctx.ensure_allowed(str(tmp_path / "elsewhere.py"))
    with pytest.raises(PathNotAllowed):
        ctx.join(str(root), "../escape.py")
    with pytest.raises(PathNotAllowed):
        ctx.join(str(root), "/etc/passwd")


def test_no_roots_means_no_disk_access(tmp_path):
    with pytest.raises(PathNotAllowed):
        PathContext([]).ensure_allowed(str(tmp_path))


@pytest.mark.skipif(not hasattr(os, "symlink"), reason="symlinks unavailable")
def test_symlink_escape_is_refused(tmp_path):
    root = tmp_path / "project"
    root.mkdir()
    outside = tmp_path / "secret.txt"
    outside.write_text("s", encoding="utf-8")
    link = root / "link.txt"
    try:
        os.symlink(outside, link)
    except OSError:
        pytest.skip("cannot create symlink")
    ctx = PathContext([str(root)])
    with pytest.raises(PathNotAllowed):
        ctx.read_text(str(link))
    assert [p.name for p in ctx.iter_files(str(root))] == []


def test_atomic_write_and_read(tmp_path):
    ctx = PathContext([str(tmp_path)])
    target = tmp_path / "out.txt"
    ctx.write_text_atomic(str(target), "hello")
    assert ctx.read_text(str(target)) == "hello"
    assert [p.name for p in tmp_path.iterdir()] == ["out.txt"]


def test_validate_text_field():
    assert validate_text_field("  goal  ", field_name="goal") == "goal"
    with pytest.raises(ValueError):
        validate_text_field("   ", field_name="goal")
    with pytest.raises(ValueError):
        validate_text_field(None, field_name="goal")
    with pytest.raises(ValueError):
        validate_text_field("x" * 11, field_name="goal", max_length=10)
    with pytest.raises(ValueError):
        validate_text_field("bad\x00byte", field_name="goal")
