from decimal import Decimal
from functools import lru_cache

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class LedgerSettings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="WALLET_LEDGER_", env_file=".env", extra="ignore")

    cache_ttl_seconds: float = Field(default=300.0, gt=0)
    cache_max_entries: int = Field(default=100, ge=1)
    cas_max_retries: int = Field(default=25, ge=1)

    add_money_min: Decimal = Decimal("10")
    add_money_max: Decimal = Decimal("100000")
    withdrawal_min: Decimal = Decimal("500")
    withdrawal_max: Decimal = Decimal("50000")

    log_level: str = "INFO"
    cors_origins: list[str] = Field(default_factory=lambda: ["*"])


@lru_cache(maxsize=1)
def get_settings() -> LedgerSettings:
    return LedgerSettings()
