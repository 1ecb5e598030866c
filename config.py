import os
from functools import lru_cache
from pathlib import Path


class Settings:
    def __init__(
        self,
        database_url: str,
        timezone: str,
        auto_clear_enabled: bool,
        auto_clear_hour: int,
        max_installments: int,
    ) -> None:
        self.database_url = database_url
        self.timezone = timezone
        self.auto_clear_enabled = auto_clear_enabled
        self.auto_clear_hour = auto_clear_hour
        self.max_installments = max_installments


def _ensure_data_dir() -> Path:
    root = Path(os.getenv("LEDGER_DATA_DIR", "./data")).resolve()
    root.mkdir(parents=True, exist_ok=True)
    return root


def _env_flag(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in {"1", "true", "yes", "on"}


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    data_dir = _ensure_data_dir()
    default_db = data_dir / "ledger.db"
    database_url = os.getenv("LEDGER_DATABASE_URL", f"sqlite:///{default_db}")
    timezone = os.getenv("LEDGER_TIMEZONE", "America/Sao_Paulo")
    auto_clear_enabled = _env_flag("LEDGER_AUTO_CLEAR_ENABLED", "0")
    auto_clear_hour = int(os.getenv("LEDGER_AUTO_CLEAR_HOUR", "6"))
    max_installments = int(os.getenv("LEDGER_MAX_INSTALLMENTS", "72"))
    return Settings(
        database_url=database_url,
        timezone=timezone,
        auto_clear_enabled=auto_clear_enabled,
        auto_clear_hour=auto_clear_hour,
        max_installments=max_installments,
    )
