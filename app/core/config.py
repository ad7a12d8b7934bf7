# app/core/config.py
from decimal import Decimal
from typing import Optional

from pydantic_settings import BaseSettings
from pydantic import AnyHttpUrl # AnyHttpUrl stays in pydantic core
from functools import lru_cache
from dotenv import load_dotenv

# Load .env file if it exists
load_dotenv()

# USDC mainnet mint
USDC_MINT = "EPjFWdd5AufqSSqeM2qN1xzybapC8G4wEGGkZwyTDt1v"


class Settings(BaseSettings):
    PROJECT_NAME: str = "x402 Weather Gateway"
    LOG_LEVEL: str = "INFO"

    # Solana JSON-RPC endpoint used for balance lookups and broadcasts
    SOLANA_RPC_URL: AnyHttpUrl = "https://api.mainnet-beta.solana.com"
    SOLANA_RPC_TIMEOUT_SECONDS: float = 10.0

    # Payment terms advertised in the 402 challenge
    X402_NETWORK: str = "solana-mainnet-beta"
    X402_ASSET: str = USDC_MINT
    X402_PRICE: int = 10_000  # 0.01 USDC
    X402_PAY_TO: Optional[str] = None  # merchant token account
    X402_MAX_TIMEOUT_SECONDS: int = 120

    # Membership: holders of more than X402_MEMBER_THRESHOLD tokens of
    # X402_MEMBER_TOKEN get free access. Unset token disables membership.
    X402_MEMBER_TOKEN: Optional[str] = None
    X402_MEMBER_THRESHOLD: Decimal = Decimal("0")

    # In-memory replay protection for payment references
    X402_REPLAY_PROTECTION: bool = True
    X402_REPLAY_RETENTION_SECONDS: int = 600

    # JSON-lines audit log, disabled when unset
    X402_AUDIT_LOG_PATH: Optional[str] = None

    class Config:
        env_file = ".env"
        case_sensitive = True
        extra = "ignore"  # Ignore extra fields from .env

@lru_cache() # Cache the settings object for performance
def get_settings() -> Settings:
    return Settings()

settings = get_settings()
