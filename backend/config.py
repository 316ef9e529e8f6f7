"""Pydantic settings loaded from .env, with conf.json overlay."""

from __future__ import annotations

import logging
import os
from pathlib import Path

from dotenv import load_dotenv
from pydantic import BaseModel, ConfigDict
from pydantic_settings import BaseSettings

BASE_DIR = Path(__file__).resolve().parent

# ---------------------------------------------------------------------------
# conf.json: runtime tunables (separate from .env secrets)
# ---------------------------------------------------------------------------


def get_medmind_dir() -> Path:
    """Resolve the medmind data directory. MEDMIND_DIR env var or ~/.config/medmind."""
    d = os.environ.get("MEDMIND_DIR", "")
    return Path(d).expanduser() if d else Path.home() / ".config" / "medmind"


class MedMindConfig(BaseModel):
    database_url: str = ""
    redis_url: str = ""
    log_level: str = ""
    log_file: str = ""
    default_model: str = ""
    token_limits: dict[str, int] = {}
    model_pricing: dict[str, tuple[float, float]] = {}
    execution_timeout_seconds: float | None = None
    execution_poll_interval_seconds: float | None = None
    conversation_lock_backend: str = ""


_logger = logging.getLogger(__name__)


def load_conf() -> MedMindConfig:
    """Load conf.json from the medmind data directory."""
    conf_path = get_medmind_dir() / "conf.json"
    if conf_path.exists():
        try:
            return MedMindConfig.model_validate_json(conf_path.read_text())
        except Exception:
            _logger.warning("Failed to parse %s, using defaults", conf_path, exc_info=True)
    return MedMindConfig()


def save_conf(config: MedMindConfig) -> None:
    """Save conf.json to the medmind data directory."""
    medmind_dir = get_medmind_dir()
    medmind_dir.mkdir(parents=True, exist_ok=True)
    (medmind_dir / "conf.json").write_text(config.model_dump_json(indent=2))


# ---------------------------------------------------------------------------
# Secret auto-generation
# ---------------------------------------------------------------------------


def _ensure_secrets(env_file: Path) -> None:
    """Generate SECRET_KEY if missing, append to .env."""
    import secrets as _secrets

    if os.environ.get("SECRET_KEY"):
        return

    key = _secrets.token_urlsafe(32)
    os.environ["SECRET_KEY"] = key
    env_file.parent.mkdir(parents=True, exist_ok=True)
    with open(env_file, "a") as f:
        f.write(f"\nSECRET_KEY={key}\n")


# ---------------------------------------------------------------------------
# Bootstrap: load .env, generate secrets, load conf.json
# ---------------------------------------------------------------------------

_env_file = BASE_DIR.parent / ".env"
load_dotenv(_env_file)
_ensure_secrets(_env_file)
_conf = load_conf()

# USD per 1K tokens: (input, output). Matched by longest prefix, see services/token_usage.py
DEFAULT_MODEL_PRICING: dict[str, tuple[float, float]] = {
    "gpt-4-turbo": (0.01, 0.03),
    "gpt-4": (0.03, 0.06),
    "gpt-3.5-turbo": (0.0015, 0.002),
}

# ---------------------------------------------------------------------------
# Settings (pydantic-settings): .env / env vars override conf.json defaults
# ---------------------------------------------------------------------------


class Settings(BaseSettings):
    SECRET_KEY: str = "change-me-in-production"
    DEBUG: bool = False

    DATABASE_URL: str = _conf.database_url or f"sqlite:///{BASE_DIR / 'db.sqlite3'}"
    REDIS_URL: str = _conf.redis_url or "redis://localhost:6379/0"

    CORS_ALLOW_ALL_ORIGINS: bool = True

    LOG_LEVEL: str = _conf.log_level or "INFO"
    LOG_FILE: str = _conf.log_file or ""
    LOG_MAX_BYTES: int = 10_485_760
    LOG_BACKUP_COUNT: int = 5

    OPENAI_API_KEY: str = ""
    OPENAI_ORGANIZATION: str | None = None
    OPENAI_BASE_URL: str | None = None
    OPENAI_MAX_COMPLETION_TOKENS: int = 4096
    OPENAI_TIMEOUT_SECONDS: float = 30.0
    DEFAULT_MODEL: str = _conf.default_model or "gpt-4-turbo-preview"

    TRIAL_TOKEN_LIMIT: int = _conf.token_limits.get("TRIAL", 10_000)
    BASIC_TOKEN_LIMIT: int = _conf.token_limits.get("ACTIVE", 100_000)
    PREMIUM_TOKEN_LIMIT: int = _conf.token_limits.get("PREMIUM", 500_000)
    # Extra tiers, e.g. {"GOLD": 1000000}; JSON when given through the environment
    TOKEN_LIMITS: dict[str, int] = _conf.token_limits

    EXECUTION_TIMEOUT_SECONDS: float = (
        _conf.execution_timeout_seconds if _conf.execution_timeout_seconds is not None else 60.0
    )
    EXECUTION_POLL_INTERVAL_SECONDS: float = (
        _conf.execution_poll_interval_seconds if _conf.execution_poll_interval_seconds is not None else 1.0
    )
    MESSAGE_FETCH_LIMIT: int = 10
    MAX_MESSAGE_LENGTH: int = 4000

    MODEL_PRICING: dict[str, tuple[float, float]] = _conf.model_pricing or DEFAULT_MODEL_PRICING

    CONVERSATION_LOCK_BACKEND: str = _conf.conversation_lock_backend or "local"  # local | redis
    CONVERSATION_LOCK_WAIT_SECONDS: float = 90.0
    CONVERSATION_LOCK_TTL_SECONDS: int = 120

    model_config = ConfigDict(
        env_file=str(BASE_DIR.parent / ".env"),
        env_file_encoding="utf-8",
        extra="ignore",
    )

    @property
    def token_limits(self) -> dict[str, int]:
        """Tier -> token quota table consumed by the quota gate.

        The three built-in tiers come from their own settings; any other tier
        listed in TOKEN_LIMITS is added as-is.
        """
        table = {
            "TRIAL": self.TRIAL_TOKEN_LIMIT,
            "ACTIVE": self.BASIC_TOKEN_LIMIT,
            "PREMIUM": self.PREMIUM_TOKEN_LIMIT,
        }
        for tier, limit in self.TOKEN_LIMITS.items():
            table.setdefault(tier.upper(), limit)
        return table


settings = Settings()
