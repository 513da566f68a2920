import os
from functools import lru_cache
from pathlib import Path


class Settings:
    def __init__(
        self,
        database_url: str,
        csrf_secret: str,
        page_size: int,
        currency_symbol: str,
        log_level: str,
        data_dir: Path,
    ) -> None:
        self.database_url = database_url
        self.csrf_secret = csrf_secret
        self.page_size = page_size
        self.currency_symbol = currency_symbol
        self.log_level = log_level
        self.data_dir = data_dir


def _ensure_data_dir() -> Path:
    root = Path(os.getenv("LEDGER_DATA_DIR", "./data")).resolve()
    root.mkdir(parents=True, exist_ok=True)
    return root


def _int_env(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw)
    except ValueError:
        return default


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    data_dir = _ensure_data_dir()
    default_db = data_dir / "ledger.db"
    database_url = os.getenv("LEDGER_DATABASE_URL", f"sqlite:///{default_db}")
    csrf_secret = os.getenv(
        "LEDGER_CSRF_SECRET",
        "5c1f0a9e2b7d4e63a8f1c2d3b4a59687e0f1d2c3b4a5968778695a4b3c2d1e0f",
    )
    page_size = max(_int_env("LEDGER_PAGE_SIZE", 15), 0)
    currency_symbol = os.getenv("LEDGER_CURRENCY_SYMBOL", "€")
    log_level = os.getenv("LEDGER_LOG_LEVEL", "INFO").upper()
    return Settings(
        database_url=database_url,
        csrf_secret=csrf_secret,
        page_size=page_size,
        currency_symbol=currency_symbol,
        log_level=log_level,
        data_dir=data_dir,
    )
