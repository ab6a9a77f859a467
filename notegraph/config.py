"""Configuration for the note graph service.

Loads from environment variables with sensible defaults.
Optionally reads a config.json file.

Note:
    Environment variables use the ``NOTEGRAPH_*`` prefix.
"""

from __future__ import annotations

import json
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional


@dataclass
class Config:
    """Central configuration for the graph engine, extractor and API."""

    # Storage: default path resolved in load_config()
    db_path: str = ""

    # API
    # Security: bind to localhost by default. Override with NOTEGRAPH_HOST if needed.
    api_host: str = "127.0.0.1"
    api_port: int = 8790
    api_key: str = ""

    # Extraction collaborator (any OpenAI-compatible chat endpoint)
    llm_base_url: str = "http://localhost:11434/v1"
    llm_api_key: str = ""
    llm_model: str = "qwen2.5:7b"
    llm_temperature: float = 0.1
    llm_max_tokens: int = 8192
    llm_timeout: float = 120.0
    llm_max_retries: int = 3

    # Notes shorter than this (after trim) are stored without extraction
    min_extract_chars: int = 5

    # Relation types stored without direction (case-insensitive labels)
    symmetric_relations: List[str] = field(default_factory=list)

    # Rename Time mentions to YYYY-MM-DD before resolution (dateparser)
    normalize_time: bool = False
    time_languages: List[str] = field(default_factory=lambda: ["en"])

    # Name lookup fuzzy fallback (rapidfuzz WRatio, 0-100)
    fuzzy_threshold: int = 88

    log_level: str = "INFO"

    def validate(self) -> list[str]:
        """Return a list of validation errors (empty == OK)."""
        errors: list[str] = []
        if not self.llm_base_url:
            errors.append("NOTEGRAPH_LLM_BASE_URL is required")
        if self.api_port < 1 or self.api_port > 65535:
            errors.append("NOTEGRAPH_PORT must be 1-65535")
        if self.llm_max_tokens < 1:
            errors.append("NOTEGRAPH_LLM_MAX_TOKENS must be >= 1")
        if not 0 <= self.fuzzy_threshold <= 100:
            errors.append("NOTEGRAPH_FUZZY_THRESHOLD must be 0-100")
        if self.min_extract_chars < 0:
            errors.append("min_extract_chars must be >= 0")
        return errors


def _split_csv(value: str) -> List[str]:
    return [part.strip() for part in value.split(",") if part.strip()]


def _as_bool(value) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in ("1", "true", "yes", "on")
    return bool(value)


_LIST_KEYS = ("symmetric_relations", "time_languages")


def load_config(config_path: Optional[str] = None) -> Config:
    """Build a Config from environment variables, optionally overlaid with a JSON file.

    Environment variables (all optional):
        NOTEGRAPH_DB
        NOTEGRAPH_HOST
        NOTEGRAPH_PORT
        NOTEGRAPH_API_KEY
        NOTEGRAPH_LLM_BASE_URL
        NOTEGRAPH_LLM_API_KEY
        NOTEGRAPH_LLM_MODEL
        NOTEGRAPH_LLM_TIMEOUT
        NOTEGRAPH_LLM_MAX_TOKENS
        NOTEGRAPH_LLM_MAX_RETRIES
        NOTEGRAPH_MIN_EXTRACT_CHARS
        NOTEGRAPH_SYMMETRIC_RELATIONS  (comma separated)
        NOTEGRAPH_NORMALIZE_TIME       (1/true/yes/on)
        NOTEGRAPH_TIME_LANGUAGES       (comma separated, default "en")
        NOTEGRAPH_FUZZY_THRESHOLD
        NOTEGRAPH_LOG_LEVEL
    """
    cfg = Config()

    # --- JSON file overlay ------------------------------------------------
    json_path = config_path or os.environ.get("NOTEGRAPH_CONFIG")
    if json_path and Path(json_path).is_file():
        with open(json_path, "r") as fh:
            data = json.load(fh)
        for key, val in data.items():
            if not hasattr(cfg, key):
                continue
            if key in _LIST_KEYS:
                if isinstance(val, str):
                    val = _split_csv(val)
                if isinstance(val, list):
                    setattr(cfg, key, [str(v) for v in val])
                continue
            if key == "normalize_time":
                cfg.normalize_time = _as_bool(val)
                continue
            expected_type = type(getattr(cfg, key))
            try:
                setattr(cfg, key, expected_type(val))
            except (ValueError, TypeError):
                pass  # skip bad values

    # --- Environment variable overlay -------------------------------------
    env_map: dict[str, tuple[str, type]] = {
        "NOTEGRAPH_DB": ("db_path", str),
        "NOTEGRAPH_HOST": ("api_host", str),
        "NOTEGRAPH_PORT": ("api_port", int),
        "NOTEGRAPH_API_KEY": ("api_key", str),
        "NOTEGRAPH_LLM_BASE_URL": ("llm_base_url", str),
        "NOTEGRAPH_LLM_API_KEY": ("llm_api_key", str),
        "NOTEGRAPH_LLM_MODEL": ("llm_model", str),
        "NOTEGRAPH_LLM_TIMEOUT": ("llm_timeout", float),
        "NOTEGRAPH_LLM_MAX_TOKENS": ("llm_max_tokens", int),
        "NOTEGRAPH_LLM_MAX_RETRIES": ("llm_max_retries", int),
        "NOTEGRAPH_MIN_EXTRACT_CHARS": ("min_extract_chars", int),
        "NOTEGRAPH_NORMALIZE_TIME": ("normalize_time", _as_bool),
        "NOTEGRAPH_FUZZY_THRESHOLD": ("fuzzy_threshold", int),
        "NOTEGRAPH_LOG_LEVEL": ("log_level", str),
    }

    for env_key, (attr, cast) in env_map.items():
        val = os.environ.get(env_key)
        if val is not None:
            try:
                setattr(cfg, attr, cast(val))
            except (ValueError, TypeError):
                pass

    symmetric = os.environ.get("NOTEGRAPH_SYMMETRIC_RELATIONS")
    if symmetric is not None:
        cfg.symmetric_relations = _split_csv(symmetric)

    languages = os.environ.get("NOTEGRAPH_TIME_LANGUAGES")
    if languages is not None:
        cfg.time_languages = _split_csv(languages)

    # --- Default db_path resolution ---------------------------------------
    if not cfg.db_path:
        cfg.db_path = str(Path.home() / ".notegraph" / "graph.sqlite")

    return cfg
