import logging
import os
from dataclasses import dataclass
from functools import lru_cache
from typing import Optional


@dataclass
class Settings:

    mongo_url: str = "mongodb://localhost:27017"
    mongo_db_name: str = "chatsync"
    redis_url: Optional[str] = None
    typing_window_ms: int = 2000
    log_level: str = "INFO"
    send_retry_attempts: int = 10

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            mongo_url=os.getenv("MONGO_URL", cls.mongo_url),
            mongo_db_name=os.getenv("MONGO_DB_NAME", cls.mongo_db_name),
            redis_url=os.getenv("REDIS_URL") or None,
            typing_window_ms=int(os.getenv("TYPING_WINDOW_MS", cls.typing_window_ms)),
            log_level=os.getenv("LOG_LEVEL", cls.log_level).upper(),
            send_retry_attempts=int(os.getenv("SEND_RETRY_ATTEMPTS", cls.send_retry_attempts)),
        )


@lru_cache
def get_settings() -> Settings:
    return Settings.from_env()


def configure_logging(level: str | None = None) -> None:
    logging.basicConfig(
        level=level or get_settings().log_level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
