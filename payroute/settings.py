from __future__ import annotations

from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict

from payroute.balance import BASE_RPC_URL, BASE_USDC_ADDRESS
from payroute.session import DEFAULT_SESSION_HEADER


class Settings(BaseSettings):
    upstream_base_url: str = "https://api.blockrun.ai/api"
    wallet_key: str | None = None
    host: str = "127.0.0.1"
    port: int = 8402
    upstream_timeout_seconds: float = 180.0
    upstream_connect_timeout_seconds: float = 10.0
    routing_config_path: str | None = None
    session_enabled: bool = False
    session_timeout_seconds: float = 1800.0
    session_header: str = DEFAULT_SESSION_HEADER
    payment_cache_ttl_seconds: float = 3600.0
    max_payment_usd: float = 1.0
    retry_max_attempts: int = 3
    retry_base_delay_seconds: float = 0.25
    retry_max_delay_seconds: float = 4.0
    dedup_enabled: bool = True
    dedup_wait_timeout_seconds: float = 180.0
    balance_check_enabled: bool = False
    rpc_url: str = BASE_RPC_URL
    usdc_address: str = BASE_USDC_ADDRESS
    audit_log_enabled: bool = True
    audit_log_path: str = "logs/usage.jsonl"

    model_config = SettingsConfigDict(
        env_prefix="",
        env_file=".env",
        extra="ignore",
    )


@lru_cache
def get_settings() -> Settings:
    return Settings()
