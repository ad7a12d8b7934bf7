# app/x402/errors.py
"""
Error taxonomy for x402 payment verification.

Every error is recoverable by the caller: the resource handler turns each one
into a fresh 402 challenge carrying the error message, and the client builds a
new payment attempt.

- MalformedHeader: X-PAYMENT header cannot be decoded (client error)
- ProtocolMismatch: x402 version / scheme / network disagreement (client error)
- ValidationFailure: transaction terms do not match the requirement (client error)
- NetworkFailure: balance lookup or broadcast failed (external dependency)
"""


class X402Error(Exception):
    """Base class for payment verification errors."""


class MalformedHeader(X402Error):
    """The X-PAYMENT header is not base64 JSON of the expected shape."""


class ProtocolMismatch(X402Error):
    """The payment envelope does not match the published requirements."""


class ValidationFailure(X402Error):
    """The transaction does not satisfy the payment requirement."""


class ReplayDetected(ValidationFailure):
    """The payment reference or transaction was already submitted."""


class NetworkFailure(X402Error):
    """
    A call to the Solana network failed.

    Not retried. After a failed broadcast the client must rebuild the
    transaction, since its blockhash may have expired.
    """
