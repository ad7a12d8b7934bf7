# app/client/builder.py
"""
Builds the Solana transaction a payer submits for an ``exact`` requirement.

The transaction contains, in order:

1. SPL Token TransferChecked of ``maxAmountRequired`` from the payer's token
   account to ``payTo``
2. Memo ``x402:<reference>`` tagging the payment
3. Compute budget unit limit and unit price

The payer is the fee payer. The transaction is returned unsigned.
"""
import uuid
from dataclasses import dataclass
from typing import Optional

from app.x402.svm import (
    Message,
    Transaction,
    memo,
    set_compute_unit_limit,
    set_compute_unit_price,
    transfer_checked,
)
from app.x402.types import PaymentRequirement

USDC_DECIMALS = 6
COMPUTE_UNIT_LIMIT = 130_000
COMPUTE_UNIT_PRICE_MICRO_LAMPORTS = 0
MEMO_PREFIX = "x402:"


@dataclass
class BuiltPayment:
    transaction: Transaction
    reference: str


def new_reference() -> str:
    """Fresh 128-bit random payment reference."""
    return str(uuid.uuid4())


def build_payment_transaction(
    requirement: PaymentRequirement,
    payer: str,
    source_token_account: str,
    recent_blockhash: str,
    *,
    reference: Optional[str] = None,
) -> BuiltPayment:
    """
    Build the unsigned payment transaction for ``requirement``.

    Args:
        requirement: The requirement from the 402 challenge (``accepts[0]``)
        payer: Payer public key; fee payer and token account owner
        source_token_account: Payer's token account holding ``requirement.asset``
        recent_blockhash: Blockhash the transaction is valid against
        reference: Payment reference; a new one is generated if omitted

    Returns:
        BuiltPayment with the unsigned transaction and its reference
    """
    reference = reference or new_reference()
    instructions = [
        transfer_checked(
            source=source_token_account,
            mint=requirement.asset,
            destination=requirement.pay_to,
            owner=payer,
            amount=int(requirement.max_amount_required),
            decimals=USDC_DECIMALS,
        ),
        memo(f"{MEMO_PREFIX}{reference}"),
        set_compute_unit_limit(COMPUTE_UNIT_LIMIT),
        set_compute_unit_price(COMPUTE_UNIT_PRICE_MICRO_LAMPORTS),
    ]
    message = Message.compile(payer, instructions, recent_blockhash)
    return BuiltPayment(transaction=Transaction.new_unsigned(message), reference=reference)
