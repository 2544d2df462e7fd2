"""HMAC-SHA256 signing for webhook payloads.

Receivers verify a delivery by recomputing the HMAC over the raw request
body with their copy of the secret and comparing it to the
`X-Webhook-Signature` header:

    X-Webhook-Signature: sha256=<hex digest>

The signature covers the exact bytes on the wire, so the body must be
serialized once and sent as-is.
"""

from __future__ import annotations

import hashlib
import hmac
import secrets
import string

SIGNATURE_PREFIX = "sha256="
SECRET_PREFIX = "whsec_"
SECRET_LENGTH = 32

_SECRET_ALPHABET = string.ascii_letters + string.digits


def generate_secret(length: int = SECRET_LENGTH) -> str:
    """Generate a signing secret: `whsec_` followed by random alphanumerics.

    Args:
        length: Number of random characters (at least 32).

    Returns:
        A new secret such as "whsec_Xb3...".
    """
    if length < SECRET_LENGTH:
        raise ValueError(f"Secret length must be at least {SECRET_LENGTH}")
    return SECRET_PREFIX + "".join(secrets.choice(_SECRET_ALPHABET) for _ in range(length))


def compute_signature(body: bytes | str, secret: str) -> str:
    """Compute the HMAC-SHA256 signature for a webhook body.

    Args:
        body: Serialized request body, exactly as sent.
        secret: Subscription signing secret.

    Returns:
        Signature in format "sha256=<hex_digest>".
    """
    if isinstance(body, str):
        body = body.encode("utf-8")
    digest = hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()
    return f"{SIGNATURE_PREFIX}{digest}"


def verify_signature(body: bytes | str, secret: str, signature: str) -> bool:
    """Verify a webhook signature in constant time.

    Args:
        body: Raw request body that was signed.
        secret: Shared secret.
        signature: Header value ("sha256=<hex_digest>").

    Returns:
        True if the signature matches, False otherwise.
    """
    expected = compute_signature(body, secret)
    return hmac.compare_digest(expected, signature)
