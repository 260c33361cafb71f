import os
from functools import lru_cache
from typing import List


def _int_env(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {raw!r}")


class Settings:
    def __init__(self):
        # Document store
        self.DATABASE_URL = os.getenv("DATABASE_URL", "mongodb://localhost:27017")
        self.DATABASE_NAME = os.getenv("DATABASE_NAME", "gharpayy")
        self.MONGO_TIMEOUT_MS = _int_env("MONGO_TIMEOUT_MS", 5000)

        # Firebase
        self.FIREBASE_SERVICE_ACCOUNT_JSON = os.getenv("FIREBASE_SERVICE_ACCOUNT_JSON")
        self.FIREBASE_API_KEY = os.getenv("FIREBASE_API_KEY")
        self.HTTP_TIMEOUT_SECONDS = _int_env("HTTP_TIMEOUT_SECONDS", 10)
        self.HTTP_MAX_RETRIES = _int_env("HTTP_MAX_RETRIES", 3)

        # Optimistic room-count transaction
        self.ROOM_TXN_MAX_ATTEMPTS = max(1, _int_env("ROOM_TXN_MAX_ATTEMPTS", 5))
        self.ROOM_TXN_BACKOFF_MS = max(0, _int_env("ROOM_TXN_BACKOFF_MS", 20))

        # HTTP service
        self.CORS_ORIGINS = os.getenv("CORS_ORIGINS", "*")
        self.LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
        self.PORT = _int_env("PORT", 8000)

    @property
    def cors_origins(self) -> List[str]:
        origins = [o.strip() for o in self.CORS_ORIGINS.split(",") if o.strip()]
        return origins or ["*"]


@lru_cache()
def get_settings() -> Settings:
    return Settings()
