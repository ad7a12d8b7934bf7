# app/x402/middleware.py
"""
FastAPI middleware for x402 payment verification.

This module provides HTTP middleware that:
1. Answers CORS preflight (OPTIONS) requests with 204
2. Returns 402 Payment Required with the requirements when X-PAYMENT is missing
3. Runs the settlement engine on the X-PAYMENT header
4. Re-challenges with 402 plus an ``error`` field when the payment is rejected
5. Lets the request through and attaches X-PAYMENT-RESPONSE when the payment
   settled or the payer is a member

Payments are verified and broadcast by app.x402.settlement against the
Solana JSON-RPC node in app.services.solana_rpc.
"""
import logging
from datetime import datetime, timezone
from typing import Callable, Optional

from fastapi import Request, Response
from starlette.concurrency import run_in_threadpool
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import JSONResponse

from app.core.config import Settings, settings
from app.services.solana_rpc import SolanaRpcClient
from app.x402 import audit
from app.x402.headers import (
    X_PAYMENT_HEADER,
    X_PAYMENT_RESPONSE_HEADER,
    encode_payment_response,
)
from app.x402.replay import ReferenceLedger
from app.x402.requirements import WEATHER_RESOURCE, requirements_from_settings
from app.x402.settlement import (
    BalanceOracle,
    Broadcaster,
    MembershipPolicy,
    evaluate,
)
from app.x402.types import (
    MemberAccessGranted,
    PaymentReceipt,
    PaymentRequirements,
    Rejected,
    Settled,
    SettlementOutcome,
)

logger = logging.getLogger(__name__)

# Protected endpoints: (method, path) -> resource identifier
PROTECTED_ENDPOINTS = {
    ("GET", "/"): WEATHER_RESOURCE,
    ("GET", "/weather"): WEATHER_RESOURCE,
}

CORS_HEADERS = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Expose-Headers": X_PAYMENT_RESPONSE_HEADER,
}

CORS_PREFLIGHT_HEADERS = {
    **CORS_HEADERS,
    "Access-Control-Allow-Headers": "Content-Type, x-payment",
    "Access-Control-Allow-Methods": "GET, OPTIONS",
}


def protected_resource(method: str, path: str) -> Optional[str]:
    """
    Return the resource identifier if the request needs payment.

    Paths match exactly. "/weather/" is not protected and answers 404.
    """
    return PROTECTED_ENDPOINTS.get((method, path))


def get_client_ip(request: Request) -> str:
    """Extract client IP from request, handling proxies."""
    # Check for forwarded headers first
    forwarded_for = request.headers.get("X-Forwarded-For")
    if forwarded_for:
        # Take the first IP in the chain
        return forwarded_for.split(",")[0].strip()

    real_ip = request.headers.get("X-Real-IP")
    if real_ip:
        return real_ip.strip()

    # Fall back to direct connection
    if request.client:
        return request.client.host

    return "unknown"


def create_402_response(
    payment_requirements: PaymentRequirements,
    error_message: Optional[str] = None
) -> JSONResponse:
    """
    Create an HTTP 402 Payment Required response.

    Args:
        payment_requirements: The payment requirements to include
        error_message: Why a submitted payment was rejected, if one was

    Returns:
        JSONResponse with 402 status and the requirements as body
    """
    return JSONResponse(
        status_code=402,
        content=payment_requirements.to_response_body(error=error_message),
        headers=CORS_HEADERS,
    )


def create_receipt(outcome: SettlementOutcome, settled_at: Optional[datetime] = None) -> PaymentReceipt:
    """
    Build the X-PAYMENT-RESPONSE receipt for a successful outcome.

    Raises:
        ValueError: If the outcome is a rejection
    """
    timestamp = (settled_at or datetime.now(timezone.utc)).isoformat()
    if isinstance(outcome, Settled):
        return PaymentReceipt(tx_hash=outcome.transaction_hash, settled_at=timestamp)
    if isinstance(outcome, MemberAccessGranted):
        return PaymentReceipt(member_access=True, settled_at=timestamp)
    raise ValueError(f"No receipt for outcome {outcome.kind}")


class X402Middleware(BaseHTTPMiddleware):
    """
    x402 payment middleware for the weather gateway.

    Protected endpoints need a valid X-PAYMENT header. Requests without one get
    a 402 challenge; requests with one are evaluated by the settlement engine.
    Membership token holders get access without their transaction being
    broadcast.
    """

    def __init__(
        self,
        app,
        balance_oracle: Optional[BalanceOracle] = None,
        broadcaster: Optional[Broadcaster] = None,
        ledger: Optional[ReferenceLedger] = None,
        config: Optional[Settings] = None,
    ):
        super().__init__(app)
        self.config = config or settings
        self._balance_oracle = balance_oracle
        self._broadcaster = broadcaster
        self._rpc_client: Optional[SolanaRpcClient] = None
        if ledger is None and self.config.X402_REPLAY_PROTECTION:
            ledger = ReferenceLedger(self.config.X402_REPLAY_RETENTION_SECONDS)
        self.ledger = ledger
        self.policy = MembershipPolicy.from_settings(self.config)

    @property
    def rpc_client(self) -> SolanaRpcClient:
        """Lazy initialization of the Solana RPC client."""
        if self._rpc_client is None:
            self._rpc_client = SolanaRpcClient(
                rpc_url=str(self.config.SOLANA_RPC_URL),
                timeout=self.config.SOLANA_RPC_TIMEOUT_SECONDS,
            )
        return self._rpc_client

    @property
    def balance_oracle(self) -> BalanceOracle:
        return self._balance_oracle if self._balance_oracle is not None else self.rpc_client

    @property
    def broadcaster(self) -> Broadcaster:
        return self._broadcaster if self._broadcaster is not None else self.rpc_client

    async def dispatch(
        self,
        request: Request,
        call_next: Callable[[Request], Response]
    ) -> Response:
        """
        Process the request through x402 payment verification.

        Flow:
        1. OPTIONS -> 204 with CORS headers
        2. Unprotected endpoints pass through
        3. No X-PAYMENT header -> 402 with payment requirements
        4. X-PAYMENT header -> evaluate (membership, validation, broadcast)
        5. Rejected -> 402 with requirements and error
        6. Otherwise process the request and add X-PAYMENT-RESPONSE
        """
        if request.method == "OPTIONS":
            return Response(status_code=204, headers=CORS_PREFLIGHT_HEADERS)

        resource = protected_resource(request.method, request.url.path)
        if resource is None:
            response = await call_next(request)
            response.headers.update(CORS_HEADERS)
            return response

        client_ip = get_client_ip(request)
        request_id = audit.generate_request_id()
        requirements = requirements_from_settings(self.config, resource=resource)
        requirement = requirements.primary

        payment_header = request.headers.get(X_PAYMENT_HEADER)
        if not payment_header:
            logger.info(f"x402: No X-PAYMENT header from {client_ip}, returning 402 for {requirement.max_amount_required}")
            audit.log_payment_required_sent(
                client_ip=client_ip,
                amount=requirement.max_amount_required,
                asset=requirement.asset,
                network=requirement.network,
                pay_to=requirement.pay_to,
                resource=requirement.resource,
                request_id=request_id,
            )
            return create_402_response(requirements)

        logger.info(f"x402: Processing payment from {client_ip}: {request.method} {request.url.path}")
        audit.log_payment_received(client_ip=client_ip, network=requirement.network, request_id=request_id)

        # Balance lookup and broadcast block on RPC calls
        outcome = await run_in_threadpool(
            evaluate,
            payment_header,
            requirements,
            policy=self.policy,
            balance_oracle=self.balance_oracle,
            broadcaster=self.broadcaster,
            ledger=self.ledger,
        )

        if isinstance(outcome, Rejected):
            logger.warning(f"x402: Payment from {client_ip} rejected: {outcome.reason}")
            audit.log_payment_rejected(
                client_ip=client_ip,
                reason=outcome.reason,
                error_type=outcome.error_type,
                request_id=request_id,
            )
            return create_402_response(requirements, error_message=outcome.reason)

        if isinstance(outcome, MemberAccessGranted):
            audit.log_member_access_granted(client_ip=client_ip, payer=outcome.payer, request_id=request_id)
        else:
            audit.log_payment_settled(
                client_ip=client_ip,
                transaction_hash=outcome.transaction_hash,
                network=outcome.network,
                request_id=request_id,
            )

        response = await call_next(request)
        if 200 <= response.status_code < 300:
            response.headers[X_PAYMENT_RESPONSE_HEADER] = encode_payment_response(create_receipt(outcome))
        else:
            # Payment was already accepted; the client still gets the error
            logger.error(f"x402: Handler for {request.url.path} failed with {response.status_code} after payment")
        response.headers.update(CORS_HEADERS)
        return response
