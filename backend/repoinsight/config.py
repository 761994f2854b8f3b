from __future__ import annotations
import os
import tempfile
from dataclasses import dataclass
from typing import Tuple, Optional

from .errors import ConfigurationError

def _bool(env: str, default: bool = False) -> bool:
    v = os.getenv(env)
    if v is None:
        return default
    return v.lower() in ("1", "true", "yes", "on")

@dataclass
class Settings:
    # Core data settings
    DATA_DIR: str = os.getenv("DATA_DIR", "data")
    WORKSPACE_DIR: str = os.getenv("WORKSPACE_DIR", os.path.join(tempfile.gettempdir(), "repoinsight"))
    DATABASE_URL: str = os.getenv("DATABASE_URL", "sqlite:///" + os.path.join(os.getenv("DATA_DIR", "data"), "repoinsight.db"))
    REDIS_URL: Optional[str] = os.getenv("REDIS_URL")
    LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO")

    # Source hosting
    GITHUB_TOKEN: Optional[str] = os.getenv("GITHUB_TOKEN")
    GITHUB_API_URL: str = os.getenv("GITHUB_API_URL", "https://api.github.com")
    GITHUB_ARCHIVE_URL: str = os.getenv("GITHUB_ARCHIVE_URL", "https://github.com")
    PROVIDER_TIMEOUT_SECONDS: float = float(os.getenv("PROVIDER_TIMEOUT_SECONDS", "60"))

    # Archive extraction limits
    MAX_FILE_MB: int = int(os.getenv("MAX_FILE_MB", "2"))
    MAX_ZIP_MB: int = int(os.getenv("MAX_ZIP_MB", "200"))
    MAX_FILES: int = int(os.getenv("MAX_FILES", "20000"))
    IGNORED_DIRS: Tuple[str, ...] = tuple(os.getenv("IGNORED_DIRS", ".git,node_modules,.next,dist,build,.venv,__pycache__").split(","))
    IGNORED_EXTS: Tuple[str, ...] = tuple(os.getenv("IGNORED_EXTS", ".png,.jpg,.jpeg,.gif,.bmp,.ico,.lock,.pdf,.mp4,.mp3,.mov").split(","))

    # LLM settings
    OPENAI_API_KEY: Optional[str] = os.getenv("OPENAI_API_KEY")
    LLM_MODEL: str = os.getenv("LLM_MODEL", "gpt-4o-mini")
    LLM_TEMPERATURE: float = float(os.getenv("LLM_TEMPERATURE", "0.2"))
    LLM_MAX_TOKENS: int = int(os.getenv("LLM_MAX_TOKENS", "2000"))
    LLM_PER_CALL_TIMEOUT: int = int(os.getenv("LLM_PER_CALL_TIMEOUT", "60"))
    LLM_CONCURRENCY: int = int(os.getenv("LLM_CONCURRENCY", "4"))
    MAX_FILES_TO_ANALYZE: int = int(os.getenv("MAX_FILES_TO_ANALYZE", "15"))

    # Progress and caching
    PROGRESS_TTL_SECONDS: int = int(os.getenv("PROGRESS_TTL_SECONDS", "86400"))
    RESULT_CACHE_TTL_SECONDS: int = int(os.getenv("RESULT_CACHE_TTL_SECONDS", "3600"))
    BASIC_RESULT_CACHE_TTL_SECONDS: int = int(os.getenv("BASIC_RESULT_CACHE_TTL_SECONDS", "1800"))
    STREAM_POLL_INTERVAL_SECONDS: float = float(os.getenv("STREAM_POLL_INTERVAL_SECONDS", "1.0"))
    CLEAN_STALE_WORKSPACES: bool = _bool("CLEAN_STALE_WORKSPACES", True)

    # CORS
    CORS_ORIGINS: str = os.getenv("CORS_ORIGINS", "http://localhost:3000")

settings = Settings()

def require_setting(name: str, source: Optional[Settings] = None) -> str:
    """Resolve a required setting or raise ConfigurationError naming it."""
    value = getattr(source or settings, name, None)
    if value is None or (isinstance(value, str) and not value.strip()):
        raise ConfigurationError(name)
    return value
