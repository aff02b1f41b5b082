import os
from functools import lru_cache
from pathlib import Path


class Settings:
    def __init__(
        self,
        database_url: str,
        timezone: str,
        jwt_secret: str,
        jwt_expires_hours: int,
        pin_secret: str,
        pin_token_max_age_secs: int,
        cors_origins: list[str],
    ) -> None:
        self.database_url = database_url
        self.timezone = timezone
        self.jwt_secret = jwt_secret
        self.jwt_expires_hours = jwt_expires_hours
        self.pin_secret = pin_secret
        self.pin_token_max_age_secs = pin_token_max_age_secs
        self.cors_origins = cors_origins


def _ensure_data_dir() -> Path:
    root = Path(os.getenv("CASHFLOW_DATA_DIR", "./data")).resolve()
    root.mkdir(parents=True, exist_ok=True)
    return root


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    data_dir = _ensure_data_dir()
    default_db = data_dir / "cashflow.db"
    database_url = os.getenv("CASHFLOW_DATABASE_URL", f"sqlite:///{default_db}")
    timezone = os.getenv("CASHFLOW_TIMEZONE", "Asia/Jakarta")
    jwt_secret = os.getenv(
        "CASHFLOW_JWT_SECRET",
        "3f1d0c3f6f0b4b7e9a53f4c6d0a1e2b7c8d9e0f1a2b3c4d5e6f708192a3b4c5d",
    )
    jwt_expires_hours = int(os.getenv("CASHFLOW_JWT_EXPIRES_HOURS", "168"))
    pin_secret = os.getenv(
        "CASHFLOW_PIN_SECRET",
        "a7c4e1f09b2d4e6a8c1f3b5d7e9a0c2e4f6b8d0a1c3e5f7092b4d6f8a0c2e4f6",
    )
    pin_token_max_age_secs = int(os.getenv("CASHFLOW_PIN_TOKEN_MAX_AGE_SECS", "300"))
    cors_origins = [
        origin.strip()
        for origin in os.getenv("CASHFLOW_CORS_ORIGINS", "*").split(",")
        if origin.strip()
    ]
    return Settings(
        database_url=database_url,
        timezone=timezone,
        jwt_secret=jwt_secret,
        jwt_expires_hours=jwt_expires_hours,
        pin_secret=pin_secret,
        pin_token_max_age_secs=pin_token_max_age_secs,
        cors_origins=cors_origins,
    )
