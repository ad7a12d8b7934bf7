# app/x402/settlement.py
"""
x402 payment verification and settlement engine.

Given an untrusted X-PAYMENT header and the published requirements, decide
exactly one outcome:

- MemberAccessGranted: the fee payer holds more than the membership threshold
  of the membership token. Nothing else is checked and nothing is broadcast.
- Settled: the transaction pays exactly the required amount of the required
  asset to the merchant, carries the fee payer's signature, and was accepted
  by the network.
- Rejected: anything else, with a user-facing reason.

Flow: decode header -> check envelope -> deserialize transaction -> membership
check -> structural/financial validation -> replay claim -> broadcast.

Trust boundary: the fee payer signature is only checked for presence. Its
bytes are not verified against the message; the network rejects bad
signatures at broadcast.

The engine keeps no state between calls (apart from the optional replay
ledger). Services are injected, so evaluations are independent and safe to
run concurrently. Nothing is retried: a failed balance lookup or broadcast is
returned as Rejected, and after a failed broadcast the client must build a
new transaction. A broadcast in flight is not cancelled if the HTTP client
goes away.
"""
import base64
import binascii
import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Optional, Protocol, Tuple

from app.core.config import Settings, settings
from app.x402.errors import (
    NetworkFailure,
    ProtocolMismatch,
    ReplayDetected,
    ValidationFailure,
    X402Error,
)
from app.x402.headers import decode_payment_header
from app.x402.replay import ReferenceLedger
from app.x402.svm import TOKEN_PROGRAM_ID, Transaction, decode_transfer_checked
from app.x402.types import (
    MemberAccessGranted,
    PaymentHeaderPayload,
    PaymentRequirement,
    PaymentRequirements,
    Rejected,
    Settled,
    SettlementOutcome,
)

logger = logging.getLogger(__name__)

# USDC decimals
REQUIRED_DECIMALS = 6


class BalanceOracle(Protocol):
    def get_token_balance(self, owner: str, mint: str) -> Decimal:
        """Balance of ``mint`` held by ``owner`` in UI units, 0 if none."""


class Broadcaster(Protocol):
    def submit(self, raw: bytes) -> str:
        """Send a signed transaction, returning its signature."""


@dataclass(frozen=True)
class MembershipPolicy:
    """Membership token and the balance a holder must exceed."""
    member_token: Optional[str]
    threshold: Decimal

    @classmethod
    def from_settings(cls, config: Optional[Settings] = None) -> "MembershipPolicy":
        config = config or settings
        return cls(
            member_token=config.X402_MEMBER_TOKEN or None,
            threshold=Decimal(config.X402_MEMBER_THRESHOLD),
        )

    @property
    def enabled(self) -> bool:
        return bool(self.member_token)

    def is_member(self, balance: Decimal) -> bool:
        # Strictly greater: holding exactly the threshold is not enough
        return balance > self.threshold


@dataclass(frozen=True)
class MembershipCheck:
    balance: Decimal
    threshold: Decimal
    is_member: bool


def validate_envelope(
    decoded: PaymentHeaderPayload,
    requirements: PaymentRequirements,
) -> PaymentRequirement:
    """
    Check version, scheme and network against the published requirements.

    Returns:
        The requirement the payment is judged against (``accepts[0]``)

    Raises:
        ProtocolMismatch: If any of the three differ
    """
    requirement = requirements.primary
    if (
        decoded.x402_version != requirements.x402_version
        or decoded.scheme != requirement.scheme
        or decoded.network != requirement.network
    ):
        raise ProtocolMismatch("Unsupported x402 version / scheme / network")
    return requirement


def deserialize_transaction(tx_base64: str) -> Tuple[bytes, Transaction]:
    """
    Decode the base64 transaction and make sure it parses.

    Returns:
        The raw bytes, exactly as the client signed them, and the parsed
        transaction

    Raises:
        ValidationFailure: If the value is not a base64 legacy transaction
    """
    try:
        raw = base64.b64decode(tx_base64, validate=True)
        transaction = Transaction.from_bytes(raw)
    except (binascii.Error, ValueError) as e:
        # TransactionDecodeError is a ValueError
        logger.debug(f"x402: Transaction decode failed: {e}")
        raise ValidationFailure("Invalid transaction encoding") from e
    return raw, transaction


def check_membership(
    balance_oracle: BalanceOracle,
    owner: str,
    policy: MembershipPolicy,
) -> MembershipCheck:
    """
    Look up the membership token balance of ``owner``.

    Raises:
        NetworkFailure: If the balance lookup fails
    """
    if not policy.enabled:
        return MembershipCheck(balance=Decimal(0), threshold=policy.threshold, is_member=False)

    try:
        balance = Decimal(balance_oracle.get_token_balance(owner, policy.member_token))
    except Exception as e:
        logger.error(f"x402: Membership balance lookup failed for {owner}: {e}")
        raise NetworkFailure(f"Membership balance lookup failed: {e}") from e

    return MembershipCheck(
        balance=balance,
        threshold=policy.threshold,
        is_member=policy.is_member(balance),
    )


def verify_transaction(transaction: Transaction, requirement: PaymentRequirement) -> str:
    """
    Check the transaction pays exactly what ``requirement`` asks for.

    Returns:
        The fee payer's public key

    Raises:
        ValidationFailure: With a reason naming the first mismatch
    """
    token_instructions = transaction.message.instructions_for_program(TOKEN_PROGRAM_ID)
    if not token_instructions:
        raise ValidationFailure("No token transferChecked instruction in transaction")
    if len(token_instructions) > 1:
        raise ValidationFailure("Transaction must contain exactly one token instruction")

    try:
        transfer = decode_transfer_checked(token_instructions[0])
    except ValueError as e:
        logger.debug(f"x402: Token instruction rejected: {e}")
        raise ValidationFailure("Token instruction is not transferChecked") from e

    expected_amount = int(requirement.max_amount_required)

    if transfer.decimals != REQUIRED_DECIMALS:
        raise ValidationFailure(f"Token decimals must be {REQUIRED_DECIMALS}")
    if transfer.amount != expected_amount:
        raise ValidationFailure(
            f"Incorrect amount: expected {expected_amount}, got {transfer.amount}"
        )
    if transfer.destination != requirement.pay_to:
        raise ValidationFailure(
            "Incorrect destination: funds not going to the merchant account"
        )
    if transfer.mint != requirement.asset:
        raise ValidationFailure(
            f"Wrong token mint: expected {requirement.asset}, got {transfer.mint}"
        )

    fee_payer = transaction.fee_payer
    if transaction.signature_for(fee_payer) is None:
        raise ValidationFailure("Buyer (fee payer) signature missing")

    return fee_payer


def broadcast_transaction(broadcaster: Broadcaster, raw: bytes) -> str:
    """
    Submit the raw transaction without preflight.

    Raises:
        NetworkFailure: If the network rejects it or cannot be reached
    """
    try:
        return broadcaster.submit(raw)
    except Exception as e:
        logger.error(f"x402: Broadcast failed: {e}")
        raise NetworkFailure(f"Transaction broadcast failed: {e}") from e


def _evaluate(
    header_value: str,
    requirements: PaymentRequirements,
    policy: MembershipPolicy,
    balance_oracle: BalanceOracle,
    broadcaster: Broadcaster,
    ledger: Optional[ReferenceLedger],
) -> SettlementOutcome:
    decoded = decode_payment_header(header_value)
    requirement = validate_envelope(decoded, requirements)

    raw, transaction = deserialize_transaction(decoded.payload.tx_base64)
    fee_payer = transaction.fee_payer
    logger.info(f"x402: Evaluating payment {decoded.payload.reference} from fee payer {fee_payer}")

    membership = check_membership(balance_oracle, fee_payer, policy)
    if membership.is_member:
        logger.info(
            f"x402: Member balance {membership.balance} > {membership.threshold}, "
            f"granting access to {fee_payer} without settlement"
        )
        return MemberAccessGranted(payer=fee_payer)

    if policy.enabled:
        logger.info(
            f"x402: Non-member balance {membership.balance} <= {membership.threshold}, "
            f"verifying payment"
        )

    verify_transaction(transaction, requirement)

    claim_keys = [f"ref:{decoded.payload.reference}", f"sig:{transaction.signature}"]
    if ledger is not None and not ledger.claim(claim_keys):
        raise ReplayDetected("Payment reference already used")

    try:
        tx_hash = broadcast_transaction(broadcaster, raw)
    except NetworkFailure:
        if ledger is not None:
            ledger.release(claim_keys)
        raise

    logger.info(f"x402: Payment {decoded.payload.reference} settled in {tx_hash}")
    return Settled(transaction_hash=tx_hash, network=requirement.network)


def evaluate(
    header_value: str,
    requirements: PaymentRequirements,
    *,
    policy: MembershipPolicy,
    balance_oracle: BalanceOracle,
    broadcaster: Broadcaster,
    ledger: Optional[ReferenceLedger] = None,
) -> SettlementOutcome:
    """
    Verify an X-PAYMENT header and settle the payment.

    Args:
        header_value: Raw X-PAYMENT header value
        requirements: The requirements published for this resource
        policy: Membership token and threshold
        balance_oracle: Token balance lookup service
        broadcaster: Transaction broadcast service
        ledger: Optional replay ledger; when given, reused references and
            transactions are rejected

    Returns:
        MemberAccessGranted, Settled or Rejected. Never raises.
    """
    try:
        return _evaluate(header_value, requirements, policy, balance_oracle, broadcaster, ledger)
    except X402Error as e:
        logger.warning(f"x402: Payment rejected ({type(e).__name__}): {e}")
        return Rejected(reason=str(e), error_type=type(e).__name__)
    except Exception as e:
        logger.error(f"x402: Unexpected error evaluating payment: {e}", exc_info=True)
        return Rejected(reason=f"Verification error: {e}", error_type="InternalError")
