import os
from functools import lru_cache
from pathlib import Path


class Settings:
    def __init__(
        self,
        database_url: str,
        log_level: str,
        echo_sql: bool,
    ) -> None:
        self.database_url = database_url
        self.log_level = log_level
        self.echo_sql = echo_sql


def _ensure_data_dir() -> Path:
    root = Path(os.getenv("LEDGER_DATA_DIR", "./data")).resolve()
    root.mkdir(parents=True, exist_ok=True)
    return root


def _env_flag(name: str, default: str = "0") -> bool:
    return os.getenv(name, default).strip().lower() in {"1", "true", "yes", "on"}


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    database_url = os.getenv("LEDGER_DATABASE_URL")
    if not database_url:
        default_db = _ensure_data_dir() / "ledger.db"
        database_url = f"sqlite:///{default_db}"
    log_level = os.getenv("LEDGER_LOG_LEVEL", "INFO").upper()
    echo_sql = _env_flag("LEDGER_ECHO_SQL")
    return Settings(
        database_url=database_url,
        log_level=log_level,
        echo_sql=echo_sql,
    )
