import os
from functools import lru_cache
from pathlib import Path


class Settings:
    def __init__(
        self,
        database_url: str,
        session_secret: str,
        session_max_age_secs: int,
        cache_url: str,
        balance_cache_ttl_secs: int,
        tag_cache_ttl_secs: int,
        max_page_size: int,
    ) -> None:
        self.database_url = database_url
        self.session_secret = session_secret
        self.session_max_age_secs = session_max_age_secs
        self.cache_url = cache_url
        self.balance_cache_ttl_secs = balance_cache_ttl_secs
        self.tag_cache_ttl_secs = tag_cache_ttl_secs
        self.max_page_size = max_page_size


def _ensure_data_dir() -> Path:
    root = Path(os.getenv("LEDGER_DATA_DIR", "./data")).resolve()
    root.mkdir(parents=True, exist_ok=True)
    return root


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    data_dir = _ensure_data_dir()
    default_db = data_dir / "ledger.db"
    database_url = os.getenv("LEDGER_DATABASE_URL", f"sqlite:///{default_db}")
    session_secret = os.getenv(
        "LEDGER_SESSION_SECRET",
        "5b0c1f7e2d4a49e8a3d6c1b07f92e4a1c8d3b6f0e9a27d5c4b1e8f3a6d09c2b7",
    )
    session_max_age_secs = int(os.getenv("LEDGER_SESSION_MAX_AGE_SECS", "43200"))
    cache_url = os.getenv("LEDGER_CACHE_URL", "memory://")
    balance_cache_ttl_secs = int(os.getenv("LEDGER_BALANCE_CACHE_TTL_SECS", "180"))
    tag_cache_ttl_secs = int(os.getenv("LEDGER_TAG_CACHE_TTL_SECS", "60"))
    max_page_size = int(os.getenv("LEDGER_MAX_PAGE_SIZE", "100"))
    return Settings(
        database_url=database_url,
        session_secret=session_secret,
        session_max_age_secs=session_max_age_secs,
        cache_url=cache_url,
        balance_cache_ttl_secs=balance_cache_ttl_secs,
        tag_cache_ttl_secs=tag_cache_ttl_secs,
        max_page_size=max_page_size,
    )
