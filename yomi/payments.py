"""
Payment provider webhook handling. Zeny top-ups.

The provider POSTs signed JSON events. Only completed checkout sessions
move money; every other event type is acknowledged and ignored.

    {"type": "checkout.session.completed",
     "data": {"object": {"id": "cs_...",
                         "metadata": {"userId": "12", "zenyAmount": "500"}}}}

The checkout session id is the ledger reference, so a redelivered event
credits nothing the second time.
"""

import hashlib
import hmac
import logging
from typing import Optional

from yomi.exceptions import ValidationError
from yomi.ledger import Ledger
from yomi.models import LedgerEntry


logger = logging.getLogger(__name__)

CHECKOUT_COMPLETED = "checkout.session.completed"


def sign(secret: bytes, payload: bytes) -> str:
    """Signature header value for a payload."""
    return "sha256=" + hmac.new(secret, payload, hashlib.sha256).hexdigest()


def verify_signature(secret: bytes, payload: bytes, signature: str) -> bool:
    """Validate an HMAC-SHA256 signature of the form sha256=<hex>."""
    if not signature.startswith("sha256="):
        return False
    expected = hmac.new(secret, payload, hashlib.sha256).hexdigest()
    return hmac.compare_digest(expected, signature[7:])


def apply_checkout_event(ledger: Ledger, event: dict) -> Optional[LedgerEntry]:
    """
    Credit the Zeny bought in a completed checkout session.

    Returns the topup entry, or None when the event is ignored (other
    event type, or session already credited).
    Raises ValidationError on a malformed event and ProfileNotFound when
    the metadata names an unknown user.
    """
    event_type = event.get("type")
    if event_type != CHECKOUT_COMPLETED:
        logger.info(f"Ignoring payment event {event_type}")
        return None

    session = (event.get("data") or {}).get("object") or {}
    session_id = session.get("id")
    metadata = session.get("metadata") or {}
    if not session_id:
        raise ValidationError("checkout session id missing")

    try:
        user_id = int(metadata["userId"])
        amount = int(metadata["zenyAmount"])
    except (KeyError, TypeError, ValueError):
        raise ValidationError(
            f"checkout session {session_id} has no valid userId/zenyAmount")
    if amount <= 0:
        raise ValidationError(
            f"checkout session {session_id} has a non-positive amount")

    ledger.get_profile(user_id)
    return ledger.top_up(user_id, amount, reference=session_id)
