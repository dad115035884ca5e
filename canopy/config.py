"""Centralised settings for the Canopy backend.

All runtime configuration is resolved here in one place.  Values can be
overridden via environment variables or a `.env` file in the project root
(loaded automatically when this module is imported).
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path

from dotenv import load_dotenv

# Load .env from the project root (two levels up from this file)
_env_path = Path(__file__).resolve().parent.parent / ".env"
load_dotenv(_env_path, override=False)

_MIB = 1024 * 1024


@dataclass
class Settings:
    # ------------------------------------------------------------------
    # Workspace / storage
    # ------------------------------------------------------------------
    workspace_dir: Path = field(
        default_factory=lambda: Path(
            os.environ.get("CANOPY_WORKSPACE", Path.home() / ".canopy_data")
        )
    )

    @property
    def db_path(self) -> Path:
        """Absolute path to the SQLite database file."""
        return self.workspace_dir / "canopy.db"

    @property
    def schema_path(self) -> Path:
        """Absolute path to the schema SQL file bundled with the package."""
        return Path(__file__).resolve().parent / "db" / "schema.sql"

    storage_quota_bytes: int = field(
        default_factory=lambda: int(
            os.environ.get("CANOPY_STORAGE_QUOTA_BYTES", str(50 * _MIB))
        )
    )

    # ------------------------------------------------------------------
    # Persistence tiers
    # ------------------------------------------------------------------
    save_debounce_ms: int = field(
        default_factory=lambda: int(os.environ.get("CANOPY_SAVE_DEBOUNCE_MS", "200"))
    )
    session_max_bytes: int = field(
        default_factory=lambda: int(
            os.environ.get("CANOPY_SESSION_MAX_BYTES", str(int(4.5 * _MIB)))
        )
    )
    session_capacity_bytes: int = field(
        default_factory=lambda: int(
            os.environ.get("CANOPY_SESSION_CAPACITY_BYTES", str(5 * _MIB))
        )
    )

    # ------------------------------------------------------------------
    # Chat / title model
    # ------------------------------------------------------------------
    llm_provider: str = field(
        default_factory=lambda: os.environ.get("LLM_PROVIDER", "ollama")
    )
    ollama_chat_model: str = field(
        default_factory=lambda: os.environ.get("OLLAMA_CHAT_MODEL", "ministral-3:8b")
    )
    openai_chat_model: str = field(
        default_factory=lambda: os.environ.get("OPENAI_CHAT_MODEL", "gpt-4o-mini")
    )
    title_workers: int = field(
        default_factory=lambda: int(os.environ.get("CANOPY_TITLE_WORKERS", "2"))
    )

    # ------------------------------------------------------------------
    # Logging
    # ------------------------------------------------------------------
    log_level: str = field(
        default_factory=lambda: os.environ.get("CANOPY_LOG_LEVEL", "INFO")
    )

    def ensure_workspace(self) -> None:
        """Create the workspace directory if it does not exist."""
        self.workspace_dir.mkdir(parents=True, exist_ok=True)


def configure_logging(level: str | None = None) -> None:
    """Apply ``settings.log_level`` to the root logger (first call wins)."""
    logging.basicConfig(
        level=(level or settings.log_level).upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


# Module-level singleton: import this everywhere:
#   from canopy.config import settings
settings = Settings()
