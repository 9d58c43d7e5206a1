import os
from functools import lru_cache
from pathlib import Path


class Settings:
    def __init__(
        self,
        database_url: str,
        timezone: str,
        session_secret: str,
        session_max_age_secs: int,
        bcrypt_rounds: int,
        log_level: str,
        scheduler_enabled: bool,
    ) -> None:
        self.database_url = database_url
        self.timezone = timezone
        self.session_secret = session_secret
        self.session_max_age_secs = session_max_age_secs
        self.bcrypt_rounds = bcrypt_rounds
        self.log_level = log_level
        self.scheduler_enabled = scheduler_enabled


def _ensure_data_dir() -> Path:
    root = Path(os.getenv("FINANCE_DATA_DIR", "./data")).resolve()
    root.mkdir(parents=True, exist_ok=True)
    return root


def _env_flag(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in {"1", "true", "yes", "on"}


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    data_dir = _ensure_data_dir()
    default_db = data_dir / "finance.db"
    database_url = os.getenv("FINANCE_DATABASE_URL", f"sqlite:///{default_db}")
    timezone = os.getenv("FINANCE_TIMEZONE", "America/Sao_Paulo")
    session_secret = os.getenv(
        "FINANCE_SESSION_SECRET",
        "3f0b7d2c9a51e4f86b1d0c7a2e95f4b8c6d31a07e2f9b58d4c16a3e70b2d9f51",
    )
    # 3 days
    session_max_age_secs = int(os.getenv("FINANCE_SESSION_MAX_AGE_SECS", "259200"))
    bcrypt_rounds = int(os.getenv("FINANCE_BCRYPT_ROUNDS", "12"))
    log_level = os.getenv("FINANCE_LOG_LEVEL", "INFO").strip().upper()
    scheduler_enabled = _env_flag("FINANCE_SCHEDULER_ENABLED", "true")
    return Settings(
        database_url=database_url,
        timezone=timezone,
        session_secret=session_secret,
        session_max_age_secs=session_max_age_secs,
        bcrypt_rounds=bcrypt_rounds,
        log_level=log_level,
        scheduler_enabled=scheduler_enabled,
    )
