"""
Configuration for the conversation memory core.

Every knob has a default; ``MemoryConfig.from_env()`` reads overrides
from ``CONVERSATION_MEMORY_*`` environment variables.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from pathlib import Path

from .logging_utils import LOG_FORMATS

ENV_PREFIX = "CONVERSATION_MEMORY_"


@dataclass
class MemoryConfig:
    """Configuration for transcript storage, indexing and background work."""

    base_dir: str | Path = Path.home() / ".conversation-memory"
    db_path: str | Path | None = None  # None = <base_dir>/conversations/conversations.db

    # Lifecycle
    idle_timeout_seconds: float = 600.0  # 10 minutes
    naming_first_turn: int = 5
    naming_interval: int = 10  # turns since last rename before re-naming

    # Abbreviation pipeline
    sweep_interval_seconds: float = 300.0  # 5 minutes
    pipeline_workers: int = 1
    abbreviation_max_chars: int = 1500
    embed_max_retries: int = 2

    # Search
    rrf_k: int = 60
    search_limit: int = 10
    candidate_limit: int = 50
    min_similarity: float = 0.0
    query_cache_size: int = 256

    # Hydration
    hydrate_max_turns: int = 20

    # Logging (None leaves logging to the host application)
    log_level: str | None = None
    log_format: str = "text"  # "text" or "json"

    def __post_init__(self) -> None:
        self.base_dir = Path(self.base_dir).expanduser()
        if self.db_path is None:
            self.db_path = self.conversations_dir / "conversations.db"
        elif str(self.db_path) != ":memory:":
            self.db_path = Path(self.db_path).expanduser()

        if self.idle_timeout_seconds <= 0:
            raise ValueError(f"idle_timeout_seconds must be > 0, got {self.idle_timeout_seconds}")
        if self.rrf_k < 0:
            raise ValueError(f"rrf_k must be >= 0, got {self.rrf_k}")
        if self.pipeline_workers < 1:
            raise ValueError(f"pipeline_workers must be >= 1, got {self.pipeline_workers}")
        if self.abbreviation_max_chars < 16:
            raise ValueError(
                f"abbreviation_max_chars must be >= 16, got {self.abbreviation_max_chars}"
            )
        if self.search_limit < 1:
            raise ValueError(f"search_limit must be >= 1, got {self.search_limit}")
        if self.log_format not in LOG_FORMATS:
            raise ValueError(f"log_format must be one of {LOG_FORMATS}, got {self.log_format!r}")
        if self.log_level is not None and not isinstance(logging.getLevelName(self.log_level.upper()), int):
            raise ValueError(f"log_level is not a logging level: {self.log_level!r}")

    @property
    def conversations_dir(self) -> Path:
        """Directory holding one JSONL transcript per conversation."""
        return Path(self.base_dir) / "conversations"

    @classmethod
    def from_env(cls) -> MemoryConfig:
        """Create config from environment variables."""
        env = os.environ

        def _float(name: str, default: float) -> float:
            value = env.get(ENV_PREFIX + name)
            return float(value) if value else default

        def _int(name: str, default: int) -> int:
            value = env.get(ENV_PREFIX + name)
            return int(value) if value else default

        return cls(
            base_dir=env.get(ENV_PREFIX + "DIR", str(Path.home() / ".conversation-memory")),
            db_path=env.get(ENV_PREFIX + "DB_PATH") or None,
            idle_timeout_seconds=_float("IDLE_TIMEOUT_SECONDS", 600.0),
            naming_first_turn=_int("NAMING_FIRST_TURN", 5),
            naming_interval=_int("NAMING_INTERVAL", 10),
            sweep_interval_seconds=_float("SWEEP_INTERVAL_SECONDS", 300.0),
            pipeline_workers=_int("PIPELINE_WORKERS", 1),
            abbreviation_max_chars=_int("ABBREVIATION_MAX_CHARS", 1500),
            embed_max_retries=_int("EMBED_MAX_RETRIES", 2),
            rrf_k=_int("RRF_K", 60),
            search_limit=_int("SEARCH_LIMIT", 10),
            candidate_limit=_int("CANDIDATE_LIMIT", 50),
            min_similarity=_float("MIN_SIMILARITY", 0.0),
            query_cache_size=_int("QUERY_CACHE_SIZE", 256),
            hydrate_max_turns=_int("HYDRATE_MAX_TURNS", 20),
            log_level=env.get(ENV_PREFIX + "LOG_LEVEL") or None,
            log_format=env.get(ENV_PREFIX + "LOG_FORMAT", "text"),
        )
