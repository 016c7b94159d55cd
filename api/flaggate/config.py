import os
from dataclasses import dataclass
from typing import Mapping, Optional

from flaggate.database import DEFAULT_DATABASE_URL
from flaggate.sources import DEFAULT_SECTION


def _flag(value: str) -> bool:
    return value.strip().lower() in ("1", "true", "yes", "on")


@dataclass(frozen=True)
class Settings:
    source: str = "file"  # file | http | database | none
    flags_file: str = "appsettings.json"
    section: Optional[str] = DEFAULT_SECTION
    api_url: Optional[str] = None
    database_url: str = DEFAULT_DATABASE_URL
    redis_url: Optional[str] = None
    subscribe: bool = False
    refresh_seconds: float = 30.0
    fetch_timeout: float = 2.0
    log_level: str = "INFO"

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "Settings":
        env = os.environ if environ is None else environ
        return cls(
            source=env.get("FLAGS_SOURCE", "file").lower(),
            flags_file=env.get("FLAGS_FILE", "appsettings.json"),
            section=env.get("FLAGS_SECTION", DEFAULT_SECTION) or None,
            api_url=env.get("FLAGS_API_URL") or None,
            database_url=env.get("DATABASE_URL", DEFAULT_DATABASE_URL),
            redis_url=env.get("REDIS_URL") or None,
            subscribe=_flag(env.get("FLAGS_SUBSCRIBE", "false")),
            refresh_seconds=float(env.get("FLAGS_REFRESH_SECONDS", "30")),
            fetch_timeout=float(env.get("FLAGS_FETCH_TIMEOUT", "2")),
            log_level=env.get("LOG_LEVEL", "INFO").upper(),
        )
