# app/x402/audit.py
"""
Audit logging for x402 payments.

Every paid request leaves a trail for dispute resolution and reconciliation:

- 402 challenge sent (price, asset, network, pay_to)
- Payment received (reference, network)
- Member access granted (payer)
- Payment settled (transaction hash, network)
- Payment rejected (reason, error type)

Log format: JSON lines (one event per line)
Log location: X402_AUDIT_LOG_PATH. Auditing is off when it is unset.

Audit failures are logged and never fail the request.
"""
import json
import logging
import uuid
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional

from app.core.config import settings

logger = logging.getLogger(__name__)


class AuditEventType(Enum):
    """Types of audit events that can be logged."""
    PAYMENT_REQUIRED_SENT = "payment_required_sent"
    PAYMENT_RECEIVED = "payment_received"
    MEMBER_ACCESS_GRANTED = "member_access_granted"
    PAYMENT_SETTLED = "payment_settled"
    PAYMENT_REJECTED = "payment_rejected"


def generate_request_id() -> str:
    """Generate a unique request ID for tracking."""
    return str(uuid.uuid4())[:8]


def get_audit_log_path() -> Optional[Path]:
    """Path of the audit log, or None when auditing is disabled."""
    log_path = settings.X402_AUDIT_LOG_PATH
    return Path(log_path) if log_path else None


def create_audit_event(
    event_type: AuditEventType,
    data: Dict[str, Any],
    client_ip: Optional[str] = None,
    wallet_address: Optional[str] = None,
    request_id: Optional[str] = None
) -> Dict[str, Any]:
    """
    Create an audit event dictionary.

    Args:
        event_type: Type of event to log
        data: Event-specific data
        client_ip: Client IP address (if available)
        wallet_address: Payer public key (if known)
        request_id: Unique request identifier (if available)

    Returns:
        A structured event ready to be written to the audit log
    """
    return {
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "event_type": event_type.value,
        "request_id": request_id or generate_request_id(),
        "client_ip": client_ip,
        "wallet_address": wallet_address,
        "data": data
    }


def log_audit_event(
    event_type: AuditEventType,
    data: Dict[str, Any],
    client_ip: Optional[str] = None,
    wallet_address: Optional[str] = None,
    request_id: Optional[str] = None
) -> Optional[str]:
    """
    Append an audit event to the x402 audit log.

    Returns:
        The request_id used for this event, or None if auditing is disabled
        or the write failed
    """
    log_path = get_audit_log_path()
    if log_path is None:
        return None

    event = create_audit_event(
        event_type=event_type,
        data=data,
        client_ip=client_ip,
        wallet_address=wallet_address,
        request_id=request_id
    )

    try:
        log_path.parent.mkdir(parents=True, exist_ok=True)
        with open(log_path, "a") as f:
            f.write(json.dumps(event) + "\n")

        logger.debug(f"Audit event logged: {event_type.value} [{event['request_id']}]")
        return event["request_id"]

    except OSError as e:
        logger.error(f"Failed to write audit event: {e}")
        return None


def log_payment_required_sent(
    client_ip: str,
    amount: str,
    asset: str,
    network: str,
    pay_to: str,
    resource: str,
    request_id: Optional[str] = None
) -> Optional[str]:
    """Log a 402 Payment Required response event."""
    return log_audit_event(
        event_type=AuditEventType.PAYMENT_REQUIRED_SENT,
        data={
            "amount": amount,
            "asset": asset,
            "network": network,
            "pay_to": pay_to,
            "resource": resource,
        },
        client_ip=client_ip,
        request_id=request_id
    )


def log_payment_received(
    client_ip: str,
    network: str,
    request_id: Optional[str] = None
) -> Optional[str]:
    """Log that an X-PAYMENT header arrived (before verification)."""
    return log_audit_event(
        event_type=AuditEventType.PAYMENT_RECEIVED,
        data={
            "network": network,
        },
        client_ip=client_ip,
        request_id=request_id
    )


def log_member_access_granted(
    client_ip: str,
    payer: str,
    request_id: Optional[str] = None
) -> Optional[str]:
    """Log free access granted to a membership token holder."""
    return log_audit_event(
        event_type=AuditEventType.MEMBER_ACCESS_GRANTED,
        data={
            "payment_bypassed": True,
        },
        client_ip=client_ip,
        wallet_address=payer,
        request_id=request_id
    )


def log_payment_settled(
    client_ip: str,
    transaction_hash: str,
    network: str,
    request_id: Optional[str] = None
) -> Optional[str]:
    """Log a payment settlement event."""
    return log_audit_event(
        event_type=AuditEventType.PAYMENT_SETTLED,
        data={
            "transaction_hash": transaction_hash,
            "network": network,
        },
        client_ip=client_ip,
        request_id=request_id
    )


def log_payment_rejected(
    client_ip: str,
    reason: str,
    error_type: str,
    request_id: Optional[str] = None
) -> Optional[str]:
    """Log a rejected payment."""
    return log_audit_event(
        event_type=AuditEventType.PAYMENT_REJECTED,
        data={
            "reason": reason,
            "error_type": error_type,
        },
        client_ip=client_ip,
        request_id=request_id
    )


def read_audit_log(
    max_entries: int = 100,
    event_type: Optional[AuditEventType] = None,
    client_ip: Optional[str] = None
) -> List[Dict[str, Any]]:
    """
    Read entries from the audit log.

    Args:
        max_entries: Maximum number of entries to return
        event_type: Filter by event type (optional)
        client_ip: Filter by client IP (optional)

    Returns:
        List of audit events (most recent first)
    """
    log_path = get_audit_log_path()
    if log_path is None or not log_path.exists():
        return []

    events = []
    try:
        with open(log_path, "r") as f:
            for line in f:
                line = line.strip()
                if not line:
                    continue
                try:
                    event = json.loads(line)
                except json.JSONDecodeError:
                    continue
                if event_type and event.get("event_type") != event_type.value:
                    continue
                if client_ip and event.get("client_ip") != client_ip:
                    continue
                events.append(event)
    except OSError as e:
        logger.error(f"Failed to read audit log: {e}")
        return []

    return list(reversed(events))[:max_entries]
