from __future__ import annotations

import os
from functools import lru_cache
from pathlib import Path

from pydantic import BaseModel, Field


def _resolve_project_root() -> Path:
    override = os.getenv("COMPASS_HOME", "").strip()
    if override:
        return Path(override).expanduser().resolve()
    return Path.cwd().resolve()


def _resolve_database_path() -> Path:
    override = os.getenv("COMPASS_DB_PATH", "").strip()
    if override:
        return Path(override).expanduser().resolve()
    return _resolve_project_root() / "data" / "compass.db"


def _env_int(name: str, default: int) -> int:
    try:
        return int(os.getenv(name, "") or default)
    except ValueError:
        return default


class Settings(BaseModel):
    project_root: Path = Field(default_factory=_resolve_project_root)
    database_path: Path = Field(default_factory=_resolve_database_path)

    # Number of hops a caller shows from a long trace (the tail of the path).
    trace_tail_default: int = Field(default_factory=lambda: _env_int("COMPASS_TRACE_TAIL", 6))

    api_host: str = Field(default_factory=lambda: os.getenv("COMPASS_API_HOST", "127.0.0.1"))
    api_port: int = Field(default_factory=lambda: _env_int("COMPASS_API_PORT", 8001))

    def ensure_directories(self) -> None:
        self.database_path.parent.mkdir(parents=True, exist_ok=True)


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    settings = Settings()
    settings.ensure_directories()
    return settings
