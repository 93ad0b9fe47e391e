import os
from functools import lru_cache
from pathlib import Path


class Settings:
    def __init__(
        self,
        database_url: str,
        jwt_secret: str,
        jwt_algorithm: str,
        jwt_expiry_hours: int,
        cors_origins: list[str],
        log_level: str,
    ) -> None:
        self.database_url = database_url
        self.jwt_secret = jwt_secret
        self.jwt_algorithm = jwt_algorithm
        self.jwt_expiry_hours = jwt_expiry_hours
        self.cors_origins = cors_origins
        self.log_level = log_level


def _ensure_data_dir() -> Path:
    root = Path(os.getenv("FINANCE_DATA_DIR", "./data")).resolve()
    root.mkdir(parents=True, exist_ok=True)
    return root


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    data_dir = _ensure_data_dir()
    default_db = data_dir / "finance.db"
    database_url = os.getenv("FINANCE_DATABASE_URL", f"sqlite:///{default_db}")
    jwt_secret = os.getenv(
        "FINANCE_JWT_SECRET",
        "4f1c9a0e7d2b48c6a3e5f0918b7d6c2ae1f3b5d7c9e0a2b4d6f8091a3c5e7b9d",
    )
    jwt_algorithm = os.getenv("FINANCE_JWT_ALGORITHM", "HS256")
    jwt_expiry_hours = int(os.getenv("FINANCE_JWT_EXPIRY_HOURS", "24"))
    cors_origins = [
        origin.strip()
        for origin in os.getenv(
            "FINANCE_CORS_ORIGINS", "http://localhost:3000"
        ).split(",")
        if origin.strip()
    ]
    log_level = os.getenv("FINANCE_LOG_LEVEL", "INFO").upper()
    return Settings(
        database_url=database_url,
        jwt_secret=jwt_secret,
        jwt_algorithm=jwt_algorithm,
        jwt_expiry_hours=jwt_expiry_hours,
        cors_origins=cors_origins,
        log_level=log_level,
    )
