"""
Runtime settings for Timetrack, read from the environment.
DATABASE_URL selects a remote database (e.g. hosted PostgreSQL); otherwise a local SQLite file is used.
"""
import logging
import os
from dataclasses import dataclass
from pathlib import Path

APP_ROOT = Path(__file__).resolve().parent


@dataclass(frozen=True)
class Settings:
    database_url: str
    log_dir: Path
    log_level: int
    tick_interval: float

    @staticmethod
    def from_env(environ: dict | None = None) -> "Settings":
        env = os.environ if environ is None else environ
        url = env.get("DATABASE_URL") or f"sqlite:///{APP_ROOT / 'timetrack.db'}"
        log_dir = Path(env.get("TIMETRACK_LOG_DIR") or APP_ROOT / "logs")
        level_name = (env.get("TIMETRACK_LOG_LEVEL") or "INFO").upper()
        level = logging.getLevelName(level_name)
        if not isinstance(level, int):
            raise ValueError(f"Unknown log level: {level_name}")
        tick = float(env.get("TIMETRACK_TICK_INTERVAL") or 1.0)
        if tick <= 0:
            raise ValueError("TIMETRACK_TICK_INTERVAL must be positive.")
        return Settings(
            database_url=url,
            log_dir=log_dir,
            log_level=level,
            tick_interval=tick,
        )
