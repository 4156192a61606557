import os

import pytest

from vibe_agent import config as cfgmod


def test_missing_file_uses_defaults(tmp_path, monkeypatch):
    monkeypatch.delenv("VIBE_AGENT_API_KEY", raising=False)
    cfg = cfgmod.load_config(str(tmp_path / "absent.yaml"))
    assert cfg.llm_model == "gpt-4o-mini"
    assert cfg.chunk_window_lines == 20
    assert cfg.chunk_stride_lines == 15
    assert cfg.max_tool_calls_per_step == 25
    assert cfg.allowed_roots == []
    assert os.path.isabs(cfg.db_path)


def test_yaml_values_and_env_key(tmp_path, monkeypatch):
    project = tmp_path / "projects"
    project.mkdir()
    path = tmp_path / "vibe_agent.yaml"
    path.write_text(
        "llm_model: local-model\n"
        f"allowed_roots:\n  - {project}\n"
        "ignore_patterns:\n  - '**/*.tmp'\n"
        "chunk_window_lines: 30\n"
        "chunk_stride_lines: 10\n",
        encoding="utf-8",
    )
    monkeypatch.setenv("VIBE_AGENT_API_KEY", "from-env")
    cfg = cfgmod.load_config(str(path))
    assert cfg.llm_model == "local-model"
    assert cfg.llm_api_key == "from-env"
    assert cfg.allowed_roots == [os.path.realpath(str(project))]
    assert cfg.ignore_patterns[0] == "**/*.tmp"
    assert "**/node_modules/**" in cfg.ignore_patterns
    assert (cfg.chunk_window_lines, cfg.chunk_stride_lines) == (30, 10)


def test_config_path_from_environment(tmp_path, monkeypatch):
    path = tmp_path / "custom.yaml"
    path.write_text("llm_api_key: in-file\nsearch_limit: 3\n", encoding="utf-8")
    monkeypatch.setenv("VIBE_AGENT_CONFIG_PATH", str(path))
    monkeypatch.setenv("VIBE_AGENT_API_KEY", "ignored")
    cfg = cfgmod.load_config()
    assert cfg.llm_api_key == "in-file"
    assert cfg.search_limit == 3


@pytest.mark.parametrize(
    "body",
    [
        "unknown_key: 1\n",
        "chunk_window_lines: 10\nchunk_stride_lines: 20\n",
        "min_score: 2\n",
        "max_tool_calls_per_step: 0\n",
        "- just\n- a list\n",
    ],
)
def test_invalid_config_rejected(tmp_path, body):
    path = tmp_path / "bad.yaml"
    path.write_text(body, encoding="utf-8")
    with pytest.raises(ValueError, match="Invalid configuration"):
        cfgmod.load_config(str(path))
