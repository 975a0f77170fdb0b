import os
from functools import lru_cache
from pathlib import Path


class Settings:
    def __init__(
        self,
        database_url: str,
        token_secret: str,
        token_max_age_secs: int,
        category_tree_ttl_secs: float,
        log_level: str,
    ) -> None:
        self.database_url = database_url
        self.token_secret = token_secret
        self.token_max_age_secs = token_max_age_secs
        self.category_tree_ttl_secs = category_tree_ttl_secs
        self.log_level = log_level


def _ensure_data_dir() -> Path:
    root = Path(os.getenv("LEDGER_DATA_DIR", "./data")).resolve()
    root.mkdir(parents=True, exist_ok=True)
    return root


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    data_dir = _ensure_data_dir()
    default_db = data_dir / "ledger.db"
    database_url = os.getenv("LEDGER_DATABASE_URL", f"sqlite:///{default_db}")
    token_secret = os.getenv(
        "LEDGER_TOKEN_SECRET",
        "5d0c1f7e2a9b48c3b6e1d4a7f09c2e3b8a6d5f4c3b2a1908e7d6c5b4a3928170",
    )
    token_max_age_secs = int(os.getenv("LEDGER_TOKEN_MAX_AGE_SECS", "900"))
    category_tree_ttl_secs = float(os.getenv("LEDGER_CATEGORY_TREE_TTL_SECS", "60"))
    log_level = os.getenv("LEDGER_LOG_LEVEL", "INFO").upper()
    return Settings(
        database_url=database_url,
        token_secret=token_secret,
        token_max_age_secs=token_max_age_secs,
        category_tree_ttl_secs=category_tree_ttl_secs,
        log_level=log_level,
    )
