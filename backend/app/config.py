"""App config: DB path, exploration tuning, narration collaborator, env overrides.

Every value can be overridden through the environment; values are read once
at import time.
"""
from __future__ import annotations

import logging
import os
from pathlib import Path

from shared.config import DATA_DIR, _env_flag, _env_int

logger = logging.getLogger(__name__)


DATA_ROOT = Path(DATA_DIR)
DEFAULT_DB_PATH = os.environ.get("ENGINE_DB_PATH", str(DATA_ROOT / "engine.db"))

# Exploration action catalog (action types, category actions, hint templates)
_BUNDLED_ACTIONS_PATH = Path(__file__).resolve().parent / "data" / "exploration_actions.yaml"
EXPLORATION_ACTIONS_PATH = Path(
    os.environ.get("EXPLORATION_ACTIONS_PATH", "").strip() or _BUNDLED_ACTIONS_PATH
)

# Abandoned executions older than this are removed by reap_expired_executions
EXPLORATION_EXECUTION_TTL_SECONDS = _env_int("EXPLORATION_EXECUTION_TTL_SECONDS", 1800)

# A player approach with at least this many words triggers automatic judgment
EXPLORATION_MIN_APPROACH_WORDS = _env_int("EXPLORATION_MIN_APPROACH_WORDS", 3)

# Optimistic-concurrency retries for whole-pool writes
ENTITY_POOL_MAX_WRITE_RETRIES = _env_int("ENTITY_POOL_MAX_WRITE_RETRIES", 5)

# Narration collaborator: templates by default, Ollama when enabled
NARRATION_LLM_ENABLED = _env_flag("ENGINE_NARRATION_LLM_ENABLED", default=False)
NARRATION_MODEL = os.environ.get("ENGINE_NARRATION_MODEL", "qwen3:4b").strip()
OLLAMA_BASE_URL = os.environ.get(
    "OLLAMA_BASE_URL", os.environ.get("OLLAMA_HOST", "http://localhost:11434")
).strip()


def _log_resolved_config() -> None:
    """Log resolved engine config at startup (no secrets)."""
    logger.info(
        "Engine config: db=%s actions=%s ttl=%ss min_approach_words=%d narration_llm=%s (%s @ %s)",
        DEFAULT_DB_PATH,
        EXPLORATION_ACTIONS_PATH,
        EXPLORATION_EXECUTION_TTL_SECONDS,
        EXPLORATION_MIN_APPROACH_WORDS,
        NARRATION_LLM_ENABLED,
        NARRATION_MODEL,
        OLLAMA_BASE_URL,
    )
