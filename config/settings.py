"""Pydantic BaseSettings — gas prices as Decimal, never float."""

from __future__ import annotations

from decimal import Decimal
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Central configuration loaded from env / .env file."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore",
    )

    # ── Application ─────────────────────────────────────────────
    APP_ENV: Literal["dev", "test", "prod"] = "dev"
    APP_NAME: str = "metatx-relay"
    LOG_LEVEL: str = "INFO"

    # ── Network ─────────────────────────────────────────────────
    CHAIN_ID: int = 11155111  # Sepolia
    # Comma-separated list; first entry is the primary endpoint
    RPC_URLS: str = "http://127.0.0.1:8545"

    # ── Contracts / identities ──────────────────────────────────
    AUTHORIZER_ADDRESS: str = ""
    OWNER_ADDRESS: str = ""

    # ── Credentials (never commit real values) ──────────────────
    SIGNER_PRIVATE_KEY: str = ""
    RELAYER_PRIVATE_KEY: str = ""

    # ── Gas / confirmation ──────────────────────────────────────
    MAX_GAS_PRICE_GWEI: Decimal = Field(default=Decimal("100"))
    GAS_PRICE_MULTIPLIER: Decimal = Field(default=Decimal("1.2"))
    GAS_LIMIT_EXECUTE: int = 250_000
    TX_CONFIRMATION_TIMEOUT_SECONDS: float = 120.0

    # ── Audit events ────────────────────────────────────────────
    EVENT_BUS_MAXSIZE: int = 4096

    @property
    def rpc_endpoints(self) -> list[str]:
        """Return ``RPC_URLS`` split into a clean list."""
        return [u.strip() for u in self.RPC_URLS.split(",") if u.strip()]


settings = Settings()
