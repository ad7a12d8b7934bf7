# app/x402/requirements.py
"""
Payment requirements published in x402 402 responses.

The weather endpoint charges a fixed price in USDC (6 decimals, so 10,000
smallest units is 0.01 USDC). Membership parameters ride along in ``extra`` so
clients can check their own eligibility before building a transaction.

Configuration is loaded from app/core/config.py:
- X402_NETWORK, X402_ASSET, X402_PRICE, X402_PAY_TO
- X402_MEMBER_TOKEN, X402_MEMBER_THRESHOLD
- X402_MAX_TIMEOUT_SECONDS
"""
import logging
from decimal import Decimal
from typing import Optional, Union

from app.core.config import Settings, settings
from app.x402.types import (
    X402_VERSION,
    MembershipTerms,
    PaymentRequirement,
    PaymentRequirements,
)

logger = logging.getLogger(__name__)

EXACT_SCHEME = "exact"
WEATHER_RESOURCE = "GET /weather"

# Placeholder used when no merchant account is configured
UNCONFIGURED_PAY_TO = "11111111111111111111111111111111"

USDC_UNITS_PER_DOLLAR = 1_000_000


def format_usdc(amount: int) -> str:
    """Format an amount in USDC smallest units, e.g. 10000 -> '0.01'."""
    text = f"{Decimal(amount) / USDC_UNITS_PER_DOLLAR:f}"
    if "." in text:
        text = text.rstrip("0").rstrip(".")
    return text


def build_payment_requirements(
    resource: str,
    price: int,
    asset: str,
    pay_to: str,
    member_token: Optional[str] = None,
    member_threshold: Union[Decimal, int, str] = 0,
    *,
    network: str,
    description: Optional[str] = None,
    max_timeout_seconds: int = 120,
) -> PaymentRequirements:
    """
    Build the x402 requirements for a resource.

    Args:
        resource: Resource identifier, e.g. "GET /weather"
        price: Price in the asset's smallest units
        asset: Mint address of the payment token
        pay_to: Merchant token account receiving the payment
        member_token: Mint whose holders get free access (optional)
        member_threshold: Balance a holder must exceed, in UI units
        network: Network identifier, e.g. "solana-mainnet-beta"
        description: Human readable description
        max_timeout_seconds: Advisory time budget for the client

    Returns:
        PaymentRequirements with a single "exact" scheme entry
    """
    extra = None
    if member_token:
        extra = MembershipTerms(
            member_token=member_token,
            member_threshold=str(member_threshold),
        )

    return PaymentRequirements(
        x402_version=X402_VERSION,
        accepts=[
            PaymentRequirement(
                scheme=EXACT_SCHEME,
                network=network,
                asset=asset,
                max_amount_required=str(price),
                pay_to=pay_to,
                resource=resource,
                description=description or f"{resource} ({format_usdc(price)} USDC)",
                max_timeout_seconds=max_timeout_seconds,
                extra=extra,
            )
        ],
    )


def requirements_from_settings(
    config: Optional[Settings] = None,
    resource: str = WEATHER_RESOURCE,
) -> PaymentRequirements:
    """Build the gateway's requirements for ``resource`` from configuration."""
    config = config or settings

    pay_to = config.X402_PAY_TO
    if not pay_to:
        logger.warning("X402_PAY_TO not configured")
        pay_to = UNCONFIGURED_PAY_TO

    return build_payment_requirements(
        resource=resource,
        price=config.X402_PRICE,
        asset=config.X402_ASSET,
        pay_to=pay_to,
        member_token=config.X402_MEMBER_TOKEN,
        member_threshold=config.X402_MEMBER_THRESHOLD,
        network=config.X402_NETWORK,
        description=f"Weather API per call ({format_usdc(config.X402_PRICE)} USDC)",
        max_timeout_seconds=config.X402_MAX_TIMEOUT_SECONDS,
    )
