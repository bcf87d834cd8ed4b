from __future__ import annotations

from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        extra="ignore",
        case_sensitive=False,
    )

    database_url: str = Field("sqlite+aiosqlite:///./expense_ledger.db", alias="DATABASE_URL")
    bot_token: Optional[str] = Field(None, alias="BOT_TOKEN")

    log_level: str = Field("INFO", alias="LOG_LEVEL")
    sql_echo: bool = Field(False, alias="SQL_ECHO")

    # One currency per ledger; amounts are integer minor units of it.
    currency: str = Field("USD", alias="LEDGER_CURRENCY")
    max_retries: int = Field(3, alias="MAX_RETRIES", ge=0)
    auto_retry_transient: bool = Field(True, alias="AUTO_RETRY_TRANSIENT")
    allow_wallet_overdraft: bool = Field(False, alias="ALLOW_WALLET_OVERDRAFT")


settings = Settings()
