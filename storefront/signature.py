"""HMAC-SHA256 authentication of payment gateway confirmations."""

import hashlib
import hmac


def compute_signature(secret: str, gateway_order_id: str, gateway_payment_id: str) -> str:
    """Lowercase hex HMAC-SHA256 of ``"<order>|<payment>"`` keyed with ``secret``."""
    body = f"{gateway_order_id}|{gateway_payment_id}".encode("utf-8")
    return hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()


def verify_signature(secret: str, gateway_order_id: str, gateway_payment_id: str, signature: str) -> bool:
    """Return True when ``signature`` authenticates the two gateway references.

    An empty secret never authenticates anything. The comparison runs in
    constant time over the encoded bytes.
    """
    if not secret:
        return False
    expected = compute_signature(secret, gateway_order_id, gateway_payment_id)
    return hmac.compare_digest(expected.encode("ascii"), signature.encode("utf-8"))
