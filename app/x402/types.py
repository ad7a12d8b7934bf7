# app/x402/types.py
"""
x402 wire models and settlement outcomes.

Wire models serialize with camelCase aliases (``maxAmountRequired``,
``txBase64``...) so they stay compatible with existing x402 clients.
"""
from typing import List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

X402_VERSION = 1


class X402Model(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
    )


class MembershipTerms(X402Model):
    """Membership parameters published so clients can self-assess eligibility."""
    member_token: str
    member_threshold: str


class PaymentRequirement(X402Model):
    """One accepted payment scheme for a protected resource."""
    scheme: str
    network: str
    asset: str
    max_amount_required: str
    pay_to: str
    resource: str
    description: str
    mime_type: str = "application/json"
    max_timeout_seconds: int
    extra: Optional[MembershipTerms] = None


class PaymentRequirements(X402Model):
    """Body of a 402 challenge. Only ``accepts[0]`` is ever consulted."""
    x402_version: int = X402_VERSION
    accepts: List[PaymentRequirement] = Field(..., min_length=1)

    @property
    def primary(self) -> PaymentRequirement:
        return self.accepts[0]

    def to_response_body(self, error: Optional[str] = None) -> dict:
        body = self.model_dump(mode="json", by_alias=True, exclude_none=True)
        if error is not None:
            body["error"] = error
        return body


class ExactSvmPayload(X402Model):
    tx_base64: str
    reference: str


class PaymentHeaderPayload(X402Model):
    """Decoded X-PAYMENT header. Envelope fields are not coerced."""
    x402_version: int = Field(strict=True)
    scheme: str = Field(strict=True)
    network: str = Field(strict=True)
    payload: ExactSvmPayload


class PaymentReceipt(X402Model):
    """Decoded X-PAYMENT-RESPONSE header. Either tx_hash or member_access is set."""
    tx_hash: Optional[str] = None
    member_access: Optional[bool] = None
    settled_at: str


# Settlement outcomes. Exactly one is produced per evaluation.

class MemberAccessGranted(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal["member_access_granted"] = "member_access_granted"
    payer: str


class Settled(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal["settled"] = "settled"
    transaction_hash: str
    network: str


class Rejected(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal["rejected"] = "rejected"
    reason: str
    error_type: str = "ValidationFailure"


SettlementOutcome = Union[MemberAccessGranted, Settled, Rejected]
