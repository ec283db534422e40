"""
Engine Configuration

Collects the tunables of the session engine and its adapters.
Values come from the environment (and a local .env file when present).
"""

import logging
import os
from dataclasses import dataclass
from typing import Optional, Tuple

from dotenv import load_dotenv

logger = logging.getLogger(__name__)


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError:
        logger.warning(f"⚠️ [Config] Invalid integer for {name}={raw!r}, using {default}")
        return default


@dataclass
class EngineConfig:
    """Settings shared by the store, continuity, transcript and assessment components."""
    # Local persistence
    storage_dir: Optional[str] = None  # None -> in-memory backend
    key_prefix: str = "biocbot"
    history_limit: int = 50

    # Continuity
    idle_window_minutes: int = 30
    manual_mode_grace_minutes: int = 5

    # Assessment
    default_pass_threshold: int = 2
    grading_timeout_seconds: int = 15
    short_answer_min_length: int = 10

    # One-shot gates (regular-chat counts that trigger them)
    volume_warning_counts: Tuple[int, ...] = (13, 14)
    reflection_prompt_counts: Tuple[int, ...] = (12, 13)

    # Adapters
    openai_api_key: Optional[str] = None
    openai_model: str = "gpt-4o-mini"
    supabase_url: Optional[str] = None
    supabase_key: Optional[str] = None

    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> "EngineConfig":
        """Build a config from environment variables, loading .env first."""
        load_dotenv()

        return cls(
            storage_dir=os.getenv("TUTOR_SESSION_STORAGE_DIR") or None,
            key_prefix=os.getenv("TUTOR_SESSION_KEY_PREFIX", "biocbot"),
            history_limit=_env_int("TUTOR_SESSION_HISTORY_LIMIT", 50),
            idle_window_minutes=_env_int("TUTOR_SESSION_IDLE_MINUTES", 30),
            default_pass_threshold=_env_int("TUTOR_SESSION_PASS_THRESHOLD", 2),
            grading_timeout_seconds=_env_int("TUTOR_SESSION_GRADING_TIMEOUT", 15),
            openai_api_key=os.getenv("OPENAI_API_KEY"),
            openai_model=os.getenv("OPENAI_MODEL", "gpt-4o-mini"),
            supabase_url=os.getenv("SUPABASE_URL"),
            supabase_key=os.getenv("SUPABASE_SERVICE_KEY"),
            log_level=os.getenv("LOG_LEVEL", "INFO"),
        )
