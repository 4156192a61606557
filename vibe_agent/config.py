from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from typing import List, Optional

import yaml
from pydantic import BaseModel, ConfigDict, ValidationError, field_validator

from .security import PathContext


DEFAULT_IGNORE_PATTERNS: List[str] = [
    "**/.git/**",
    "**/node_modules/**",
    "**/__pycache__/**",
    "**/.venv/**",
    "**/venv/**",
    "**/*.log",
    "**/.DS_Store",
    "**/target/**",
    "**/build/**",
    "**/dist/**",
    "**/.vscode/**",
    "**/.idea/**",
]


@dataclass
class VibeConfig:
    # Language model
    llm_base_url: str = "https://api.openai.com/v1"
    llm_model: str = "gpt-4o-mini"
    llm_api_key: str = ""
    llm_timeout_s: float = 120.0
    llm_max_retries: int = 3
    llm_temperature: float = 0.2

    # Storage
    db_path: str = "vibe_agent.db"

    # Security
    allowed_roots: List[str] = field(default_factory=list)
    ignore_patterns: List[str] = field(default_factory=lambda: list(DEFAULT_IGNORE_PATTERNS))

    # Retrieval
    chunk_window_lines: int = 20
    chunk_stride_lines: int = 15
    min_score: float = 0.05
    max_index_file_chars: int = 100_000
    reindex_debounce_s: float = 2.0
    search_limit: int = 5

    # Agent
    preflight_phase_delay_s: float = 0.0
    max_tool_calls_per_step: int = 25
    exec_timeout_s: float = 10.0


class AllowedConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    llm_base_url: str = "https://api.openai.com/v1"
    llm_model: str = "gpt-4o-mini"
    llm_api_key: str = ""
    llm_timeout_s: float = 120.0
    llm_max_retries: int = 3
    llm_temperature: float = 0.2

    db_path: str = "vibe_agent.db"

    allowed_roots: List[str] = []
    ignore_patterns: List[str] = list(DEFAULT_IGNORE_PATTERNS)

    chunk_window_lines: int = 20
    chunk_stride_lines: int = 15
    min_score: float = 0.05
    max_index_file_chars: int = 100_000
    reindex_debounce_s: float = 2.0
    search_limit: int = 5

    preflight_phase_delay_s: float = 0.0
    max_tool_calls_per_step: int = 25
    exec_timeout_s: float = 10.0

    @field_validator("chunk_window_lines", "chunk_stride_lines", "max_tool_calls_per_step", "search_limit")
    @classmethod
    def validate_positive(cls, value: int) -> int:
        if int(value) < 1:
            raise ValueError("must be at least 1")
        return value

    @field_validator("chunk_stride_lines")
    @classmethod
    def validate_stride(cls, value: int, info):  # type: ignore[override]
        window = info.data.get("chunk_window_lines", 20)
        if int(value) > int(window):
            raise ValueError("chunk_stride_lines must not exceed chunk_window_lines")
        return value

    @field_validator("min_score")
    @classmethod
    def validate_min_score(cls, value: float) -> float:
        if not 0.0 <= float(value) <= 1.0:
            raise ValueError("min_score must be between 0 and 1")
        return value


def load_config(path: Optional[str] = None) -> VibeConfig:
    """Load config from YAML.

    Default path: ~/.config/vibe-agent/vibe_agent.yaml

    Example:

        llm_model: gpt-4o-mini
        allowed_roots:
          - /Users/you/projects
    """

    if path is None:
        env_path = os.environ.get("VIBE_AGENT_CONFIG_PATH")
        if env_path:
            path = env_path
        else:
            path = os.path.join(os.path.expanduser("~"), ".config", "vibe-agent", "vibe_agent.yaml")

    cfg = VibeConfig()
    config_root = os.path.dirname(os.path.abspath(path)) or os.getcwd()
    path_context = PathContext([config_root])
    data = None
    if path_context.exists(path):
        data = yaml.safe_load(path_context.read_text(path)) or {}
        if not isinstance(data, dict):
            raise ValueError("Invalid configuration: top level must be a mapping")
        if isinstance(data.get("ignore_patterns"), list):
            ignore_patterns = list(data["ignore_patterns"])
            data["ignore_patterns"] = ignore_patterns + [
                p for p in DEFAULT_IGNORE_PATTERNS if p not in ignore_patterns
            ]
        try:
            validated = AllowedConfig.model_validate(data)
        except ValidationError as exc:
            raise ValueError(f"Invalid configuration: {exc}") from exc
        cfg = VibeConfig(**validated.model_dump())
    else:
        logging.info("No config file at %s; using defaults.", path)

    if not cfg.llm_api_key:
        cfg.llm_api_key = os.environ.get("VIBE_AGENT_API_KEY", "")

    cfg.allowed_roots = [os.path.realpath(p) for p in (cfg.allowed_roots or [])]
    cfg.db_path = os.path.abspath(cfg.db_path)
    return cfg
