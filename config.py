import os
from functools import lru_cache
from pathlib import Path


class Settings:
    def __init__(
        self,
        database_url: str,
        timezone: str,
        csrf_secret: str,
        session_secret: str,
        default_period: str,
        default_per_page: int,
        totals_cache_max_entries: int,
        totals_cache_ttl_secs: float,
        cache_prune_minutes: int,
    ) -> None:
        self.database_url = database_url
        self.timezone = timezone
        self.csrf_secret = csrf_secret
        self.session_secret = session_secret
        self.default_period = default_period
        self.default_per_page = default_per_page
        self.totals_cache_max_entries = totals_cache_max_entries
        self.totals_cache_ttl_secs = totals_cache_ttl_secs
        self.cache_prune_minutes = cache_prune_minutes


def _ensure_data_dir() -> Path:
    root = Path(os.getenv("LEDGER_DATA_DIR", "./data")).resolve()
    root.mkdir(parents=True, exist_ok=True)
    return root


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    data_dir = _ensure_data_dir()
    default_db = data_dir / "ledger.db"
    database_url = os.getenv("LEDGER_DATABASE_URL", f"sqlite:///{default_db}")
    timezone = os.getenv("LEDGER_TIMEZONE", "Europe/Berlin")
    csrf_secret = os.getenv(
        "LEDGER_CSRF_SECRET",
        "ebf511a733bdc213d6ccc715d338ad1c05bef4ad0ab32bb7eb60bb90f382380a",
    )
    session_secret = os.getenv(
        "LEDGER_SESSION_SECRET",
        "3c9f0e6d1b0a4f7c8e2d5a6b9c1f4e7a0d3b6c9e2f5a8b1d4e7c0a3f6b9d2e5c",
    )
    default_period = os.getenv("LEDGER_DEFAULT_PERIOD", "last_30_days")
    default_per_page = int(os.getenv("LEDGER_DEFAULT_PER_PAGE", "50"))
    totals_cache_max_entries = int(
        os.getenv("LEDGER_TOTALS_CACHE_MAX_ENTRIES", "1024")
    )
    totals_cache_ttl_secs = float(os.getenv("LEDGER_TOTALS_CACHE_TTL_SECS", "3600"))
    cache_prune_minutes = int(os.getenv("LEDGER_CACHE_PRUNE_MINUTES", "15"))
    return Settings(
        database_url=database_url,
        timezone=timezone,
        csrf_secret=csrf_secret,
        session_secret=session_secret,
        default_period=default_period,
        default_per_page=default_per_page,
        totals_cache_max_entries=totals_cache_max_entries,
        totals_cache_ttl_secs=totals_cache_ttl_secs,
        cache_prune_minutes=cache_prune_minutes,
    )
