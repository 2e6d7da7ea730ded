"""Database configuration via Pydantic settings."""

from __future__ import annotations

import os
from functools import lru_cache

from pydantic import BaseModel


class DatabaseSettings(BaseModel):
    url: str = "sqlite+pysqlite:///resource/crosswalk.db"
    echo: bool = False
    pool_size: int = 5
    busy_timeout_seconds: float = 30.0

    @property
    def is_sqlite(self) -> bool:
        return self.url.startswith("sqlite")


@lru_cache
def get_settings() -> DatabaseSettings:
    return DatabaseSettings(
        url=os.getenv("DATABASE_URL", DatabaseSettings().url),
        echo=os.getenv("DATABASE_ECHO", "false").lower() == "true",
        pool_size=int(os.getenv("DATABASE_POOL_SIZE", "5")),
        busy_timeout_seconds=float(os.getenv("DATABASE_BUSY_TIMEOUT", "30")),
    )
