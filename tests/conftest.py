# tests/conftest.py
"""
Shared fixtures: real ed25519 keypairs, payment transactions built with the
codec, and mocked Solana services.
"""
import base64
from decimal import Decimal
from typing import List, Optional
from unittest.mock import MagicMock

import pytest

from app.client.signer import KeypairSigner
from app.core.config import USDC_MINT, Settings
from app.x402.headers import encode_payment_header
from app.x402.requirements import WEATHER_RESOURCE, build_payment_requirements
from app.x402.svm import (
    Instruction,
    Message,
    Transaction,
    encode_pubkey,
    memo,
    transfer_checked,
)

NETWORK = "solana-mainnet-beta"
PRICE = 10_000
PAY_TO = encode_pubkey(bytes([7]) * 32)
MEMBER_TOKEN = encode_pubkey(bytes([9]) * 32)
SOURCE_ACCOUNT = encode_pubkey(bytes([5]) * 32)
BLOCKHASH = encode_pubkey(bytes([3]) * 32)
MEMBER_THRESHOLD = Decimal("100")
TX_HASH = "5VERv8NMvzbJMEkV8xnrLkEaWRtSz9CosKDYjCJjBRnbJLgp8uirBgmQpjKhoR4tjF3ZpRzrFmBV6UjKdiSZkQUW"


def build_transaction(
    signer: KeypairSigner,
    *,
    amount: int = PRICE,
    destination: str = PAY_TO,
    mint: str = USDC_MINT,
    decimals: int = 6,
    reference: str = "ref-1",
    sign: bool = True,
    instructions: Optional[List[Instruction]] = None,
) -> Transaction:
    """Payment transaction paying ``amount`` of ``mint`` to ``destination``."""
    if instructions is None:
        instructions = [
            transfer_checked(
                source=SOURCE_ACCOUNT,
                mint=mint,
                destination=destination,
                owner=signer.pubkey(),
                amount=amount,
                decimals=decimals,
            ),
            memo(f"x402:{reference}"),
        ]
    transaction = Transaction.new_unsigned(Message.compile(signer.pubkey(), instructions, BLOCKHASH))
    if sign:
        signer.sign_transaction(transaction)
    return transaction


def build_header(
    transaction: Transaction,
    *,
    reference: str = "ref-1",
    x402_version: int = 1,
    scheme: str = "exact",
    network: str = NETWORK,
) -> str:
    return encode_payment_header({
        "x402Version": x402_version,
        "scheme": scheme,
        "network": network,
        "payload": {
            "txBase64": base64.b64encode(transaction.serialize()).decode("ascii"),
            "reference": reference,
        },
    })


@pytest.fixture
def signer():
    return KeypairSigner.generate()


@pytest.fixture
def requirements():
    return build_payment_requirements(
        resource=WEATHER_RESOURCE,
        price=PRICE,
        asset=USDC_MINT,
        pay_to=PAY_TO,
        member_token=MEMBER_TOKEN,
        member_threshold=MEMBER_THRESHOLD,
        network=NETWORK,
    )


@pytest.fixture
def balance_oracle():
    oracle = MagicMock()
    oracle.get_token_balance.return_value = Decimal(0)
    return oracle


@pytest.fixture
def broadcaster():
    mock = MagicMock()
    mock.submit.return_value = TX_HASH
    return mock


@pytest.fixture
def gateway_settings(tmp_path):
    """Settings for an app under test, with auditing into a temp file."""
    return Settings(
        X402_NETWORK=NETWORK,
        X402_ASSET=USDC_MINT,
        X402_PRICE=PRICE,
        X402_PAY_TO=PAY_TO,
        X402_MEMBER_TOKEN=MEMBER_TOKEN,
        X402_MEMBER_THRESHOLD=MEMBER_THRESHOLD,
        X402_REPLAY_PROTECTION=True,
        X402_AUDIT_LOG_PATH=str(tmp_path / "audit.jsonl"),
    )
