from __future__ import annotations

import os
from functools import lru_cache
from typing import Optional

from dotenv import load_dotenv


load_dotenv()


class Settings:
    """Application settings loaded from environment variables.

    Server and client settings live together so the client library can be
    configured from the same ``.env`` file in development.
    """

    mongo_url: str = os.getenv("MONGO_URL", "mongodb://localhost:27017")
    mongo_db_name: str = os.getenv("MONGO_DB_NAME", "memoria")
    redis_url: Optional[str] = os.getenv("REDIS_URL") or None
    jwt_secret: str = os.getenv("JWT_SECRET", "change-me")
    jwt_algorithm: str = os.getenv("JWT_ALGORITHM", "HS256")
    access_token_expire_minutes: int = int(os.getenv("ACCESS_TOKEN_EXPIRE_MINUTES", "60"))
    message_max_length: int = int(os.getenv("MESSAGE_MAX_LENGTH", "2000"))
    log_level: str = os.getenv("LOG_LEVEL", "INFO")
    client_timeout_seconds: float = float(os.getenv("CLIENT_TIMEOUT_SECONDS", "10"))
    client_stale_seconds: float = float(os.getenv("CLIENT_STALE_SECONDS", "300"))


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
