# app/x402/headers.py
"""
Codec for the X-PAYMENT and X-PAYMENT-RESPONSE headers.

Both headers carry base64-encoded JSON. Decoding is strict and happens before
any network call, so garbage input is rejected without spending RPC requests.
"""
import base64
import binascii
import json
import logging
from typing import Any, Dict, Union

from pydantic import BaseModel, ValidationError

from app.x402.errors import MalformedHeader
from app.x402.types import PaymentHeaderPayload, PaymentReceipt

logger = logging.getLogger(__name__)

X_PAYMENT_HEADER = "X-PAYMENT"
X_PAYMENT_RESPONSE_HEADER = "X-PAYMENT-RESPONSE"


def _to_json(payload: Union[BaseModel, Dict[str, Any]]) -> str:
    if isinstance(payload, BaseModel):
        payload = payload.model_dump(mode="json", by_alias=True, exclude_none=True)
    return json.dumps(payload)


def _b64_json_decode(value: str, header: str = "x-payment") -> Any:
    """Decode base64 JSON, raising MalformedHeader on any failure."""
    try:
        raw = base64.b64decode(value.strip(), validate=True)
    except (binascii.Error, ValueError) as e:
        raise MalformedHeader(f"Failed to decode {header} header: invalid base64 ({e})") from e

    try:
        return json.loads(raw.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise MalformedHeader(f"Failed to decode {header} header: invalid JSON ({e})") from e


def encode_payment_header(payload: Union[PaymentHeaderPayload, Dict[str, Any]]) -> str:
    """Encode a payment payload for the X-PAYMENT header."""
    return base64.b64encode(_to_json(payload).encode("utf-8")).decode("ascii")


def decode_payment_header(header_value: str) -> PaymentHeaderPayload:
    """
    Decode the X-PAYMENT header into a PaymentHeaderPayload.

    Args:
        header_value: Base64-encoded payment payload

    Returns:
        The decoded payload

    Raises:
        MalformedHeader: If the value is not base64 JSON, or the transaction
            or reference is missing from the payload
    """
    if not header_value:
        raise MalformedHeader("Missing x-payment header")

    data = _b64_json_decode(header_value)
    if not isinstance(data, dict):
        raise MalformedHeader("Failed to decode x-payment header: expected a JSON object")

    inner = data.get("payload")
    if not isinstance(inner, dict):
        inner = {}
    if not inner.get("txBase64"):
        raise MalformedHeader("Missing txBase64 in payload")
    if not inner.get("reference"):
        raise MalformedHeader("Missing reference in payload")

    try:
        return PaymentHeaderPayload.model_validate(data)
    except ValidationError as e:
        logger.debug(f"x402: X-PAYMENT header failed validation: {e}")
        fields = ", ".join(".".join(str(p) for p in err["loc"]) for err in e.errors())
        raise MalformedHeader(f"Invalid x-payment header: bad or missing {fields}") from e


def encode_payment_response(receipt: Union[PaymentReceipt, Dict[str, Any]]) -> str:
    """Encode a receipt for the X-PAYMENT-RESPONSE header."""
    return base64.b64encode(_to_json(receipt).encode("utf-8")).decode("ascii")


def decode_payment_response(header_value: str) -> Dict[str, Any]:
    """
    Decode an X-PAYMENT-RESPONSE header into a dict.

    Raises:
        MalformedHeader: If the value is not base64 JSON
    """
    data = _b64_json_decode(header_value, header="x-payment-response")
    if not isinstance(data, dict):
        raise MalformedHeader("Failed to decode x-payment-response header: expected a JSON object")
    return data
