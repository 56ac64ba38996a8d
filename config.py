import os
from functools import lru_cache
from pathlib import Path


class Settings:
    def __init__(
        self,
        database_url: str,
        timezone: str,
        secret_key: str,
        import_token_max_age_secs: int,
        import_max_rows: int,
        suggestion_min_score: float,
        progress_retention_secs: int,
        log_level: str,
    ) -> None:
        self.database_url = database_url
        self.timezone = timezone
        self.secret_key = secret_key
        self.import_token_max_age_secs = import_token_max_age_secs
        self.import_max_rows = import_max_rows
        self.suggestion_min_score = suggestion_min_score
        self.progress_retention_secs = progress_retention_secs
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
    timezone = os.getenv("LEDGER_TIMEZONE", "America/Sao_Paulo")
    secret_key = os.getenv(
        "LEDGER_SECRET_KEY",
        "5f0c1b9e2d7a4e8f93b6a1c04d2e7f8a6b3c9d0e1f2a4b5c6d7e8f9a0b1c2d3e",
    )
    import_token_max_age_secs = int(
        os.getenv("LEDGER_IMPORT_TOKEN_MAX_AGE_SECS", "3600")
    )
    import_max_rows = int(os.getenv("LEDGER_IMPORT_MAX_ROWS", "5000"))
    suggestion_min_score = float(os.getenv("LEDGER_SUGGESTION_MIN_SCORE", "80"))
    progress_retention_secs = int(os.getenv("LEDGER_PROGRESS_RETENTION_SECS", "900"))
    log_level = os.getenv("LEDGER_LOG_LEVEL", "INFO").upper()
    return Settings(
        database_url=database_url,
        timezone=timezone,
        secret_key=secret_key,
        import_token_max_age_secs=import_token_max_age_secs,
        import_max_rows=import_max_rows,
        suggestion_min_score=suggestion_min_score,
        progress_retention_secs=progress_retention_secs,
        log_level=log_level,
    )
