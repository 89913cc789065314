from datetime import timedelta
from functools import lru_cache
from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Settlement settings, read from ``SETTLEMENT_*`` environment variables."""

    # Ledger gateway; empty means the in-memory sandbox ledger
    ledger_base_url: Optional[str] = None
    ledger_timeout_seconds: float = 10.0
    asset_code: str = "AURA"
    memo_prefix: str = "reward:"

    # Reconciliation
    confirmation_grace_period_seconds: int = 900
    lookback_window_seconds: int = 86400
    batch_size: int = 50

    # Worker
    cycle_interval_seconds: float = 60.0
    backoff_base_seconds: float = 2.0
    backoff_max_seconds: float = 300.0

    model_config = SettingsConfigDict(env_prefix="SETTLEMENT_", env_file=".env", extra="ignore")

    @property
    def grace_period(self) -> timedelta:
        return timedelta(seconds=self.confirmation_grace_period_seconds)

    @property
    def lookback_window(self) -> timedelta:
        return timedelta(seconds=self.lookback_window_seconds)


@lru_cache()
def get_settings() -> Settings:
    return Settings()
