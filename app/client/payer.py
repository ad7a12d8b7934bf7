# app/client/payer.py
"""
HTTP client for paying x402-gated Solana resources.

Runs the full challenge/response flow against a gateway:

1. GET the resource without X-PAYMENT and read the 402 requirements
2. Self-assess membership from the requirements' ``extra`` terms
3. Build the payment transaction against a fresh blockhash
4. Sign it with the injected Signer
5. GET the resource again with X-PAYMENT and decode X-PAYMENT-RESPONSE

The transaction is always built and submitted, members included: the gateway
decides whether to grant member access or broadcast.
"""
import base64
import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Dict, Optional

import requests
from pydantic import ValidationError

from app.client.builder import BuiltPayment, build_payment_transaction
from app.client.signer import Signer
from app.services.solana_rpc import SolanaRpcClient
from app.x402.errors import MalformedHeader
from app.x402.headers import (
    X_PAYMENT_HEADER,
    X_PAYMENT_RESPONSE_HEADER,
    decode_payment_response,
    encode_payment_header,
)
from app.x402.svm import Transaction, get_associated_token_address
from app.x402.types import (
    ExactSvmPayload,
    PaymentHeaderPayload,
    PaymentRequirements,
)

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 30


class PaymentFailed(RuntimeError):
    """The gateway refused the payment or answered unexpectedly."""

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        requirements: Optional[PaymentRequirements] = None,
    ):
        super().__init__(message)
        self.status_code = status_code
        self.requirements = requirements


@dataclass(frozen=True)
class MembershipStatus:
    program_available: bool
    is_member: bool
    balance: Decimal = Decimal(0)
    threshold: Decimal = Decimal(0)
    member_token: Optional[str] = None

    @property
    def message(self) -> str:
        if not self.program_available:
            return "No membership program available"
        if self.is_member:
            return f"Member: {self.balance} tokens, eligible for free access"
        return f"Not a member: {self.balance} tokens (need > {self.threshold})"


@dataclass(frozen=True)
class PaymentResult:
    data: Any
    receipt: Optional[Dict[str, Any]]
    reference: str
    membership: MembershipStatus

    @property
    def member_access(self) -> bool:
        return bool(self.receipt and self.receipt.get("memberAccess"))

    @property
    def transaction_hash(self) -> Optional[str]:
        return self.receipt.get("txHash") if self.receipt else None


def _error_from_body(response: requests.Response) -> Optional[str]:
    try:
        body = response.json()
    except ValueError:
        return None
    return body.get("error") if isinstance(body, dict) else None


class X402PayerClient:
    """
    Pays for x402-gated resources with SPL Token transfers.
    """

    def __init__(
        self,
        signer: Signer,
        rpc_client: Optional[SolanaRpcClient] = None,
        *,
        session: Optional[requests.Session] = None,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
    ) -> None:
        self.signer = signer
        self.rpc_client = rpc_client or SolanaRpcClient()
        self.session = session or requests.Session()
        self.timeout = timeout

    def fetch_requirements(self, url: str) -> PaymentRequirements:
        """
        Request ``url`` without payment and parse the 402 challenge.

        Raises:
            PaymentFailed: If the response is not a well-formed 402
        """
        logger.info(f"x402: Fetching payment requirements from {url}")
        response = self.session.get(url, timeout=self.timeout)
        if response.status_code != 402:
            raise PaymentFailed(
                f"Expected 402 Payment Required, got {response.status_code}",
                status_code=response.status_code,
            )
        try:
            return PaymentRequirements.model_validate(response.json())
        except (ValueError, ValidationError) as e:
            raise PaymentFailed(f"Invalid payment requirements: {e}", status_code=402) from e

    def check_membership(self, requirements: PaymentRequirements) -> MembershipStatus:
        """Check the payer's membership token balance against the published terms."""
        terms = requirements.primary.extra
        if terms is None:
            return MembershipStatus(program_available=False, is_member=False)

        threshold = Decimal(terms.member_threshold)
        balance = self.rpc_client.get_token_balance(self.signer.pubkey(), terms.member_token)
        status = MembershipStatus(
            program_available=True,
            is_member=balance > threshold,
            balance=balance,
            threshold=threshold,
            member_token=terms.member_token,
        )
        logger.info(f"x402: {status.message}")
        return status

    def build_payment(self, requirements: PaymentRequirements) -> BuiltPayment:
        """
        Build the unsigned payment transaction for ``requirements.accepts[0]``.

        The source is the payer's existing token account for the asset, or its
        associated token address when it holds none. A member without a funded
        account can still present a transaction and be granted access.
        """
        requirement = requirements.primary
        payer = self.signer.pubkey()

        account = self.rpc_client.find_token_account(payer, requirement.asset)
        if account is not None:
            source = account["pubkey"]
        else:
            source = get_associated_token_address(payer, requirement.asset)
            logger.info(f"x402: No {requirement.asset} token account for {payer}, using {source}")

        blockhash = self.rpc_client.get_latest_blockhash()
        built = build_payment_transaction(
            requirement,
            payer=payer,
            source_token_account=source,
            recent_blockhash=blockhash,
        )
        logger.info(
            f"x402: Built payment {built.reference} of {requirement.max_amount_required} "
            f"{requirement.asset} to {requirement.pay_to}"
        )
        return built

    def build_payment_header(
        self,
        transaction: Transaction,
        reference: str,
        requirements: PaymentRequirements,
    ) -> str:
        requirement = requirements.primary
        payload = PaymentHeaderPayload(
            x402_version=requirements.x402_version,
            scheme=requirement.scheme,
            network=requirement.network,
            payload=ExactSvmPayload(
                tx_base64=base64.b64encode(transaction.serialize()).decode("ascii"),
                reference=reference,
            ),
        )
        return encode_payment_header(payload)

    def submit_payment(
        self,
        url: str,
        transaction: Transaction,
        reference: str,
        requirements: PaymentRequirements,
    ) -> requests.Response:
        """
        Request ``url`` with the signed transaction in X-PAYMENT.

        Raises:
            PaymentFailed: If the gateway does not answer 2xx, with the
                gateway's ``error`` message when it sent one
        """
        header = self.build_payment_header(transaction, reference, requirements)
        logger.info(f"x402: Submitting payment {reference} to {url}")
        response = self.session.get(url, headers={X_PAYMENT_HEADER: header}, timeout=self.timeout)

        if not 200 <= response.status_code < 300:
            error = _error_from_body(response) or f"HTTP {response.status_code}"
            logger.warning(f"x402: Payment {reference} refused: {error}")
            raise PaymentFailed(error, status_code=response.status_code, requirements=requirements)
        return response

    def pay(self, url: str) -> PaymentResult:
        """Run the whole payment flow for ``url`` and return the paid response."""
        requirements = self.fetch_requirements(url)
        membership = self.check_membership(requirements)

        built = self.build_payment(requirements)
        signed = self.signer.sign_transaction(built.transaction)
        response = self.submit_payment(url, signed, built.reference, requirements)

        receipt = None
        receipt_header = response.headers.get(X_PAYMENT_RESPONSE_HEADER)
        if receipt_header:
            try:
                receipt = decode_payment_response(receipt_header)
            except MalformedHeader as e:
                logger.warning(f"x402: Could not decode payment receipt: {e}")

        try:
            data = response.json()
        except ValueError:
            data = response.text

        return PaymentResult(data=data, receipt=receipt, reference=built.reference, membership=membership)
