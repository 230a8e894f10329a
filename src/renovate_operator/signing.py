"""
Webhook signature checks.

Git hosting webhooks sign their request body with HMAC-SHA256 and send
the result as "sha256=<hex>". A RenovateJob may hold several accepted
secrets (comma separated) so they can be rotated without downtime.
"""
import hmac
import hashlib
import logging
from typing import Iterable, List

logger = logging.getLogger(__name__)

SIGNATURE_PREFIX = "sha256="


def split_secrets(raw: str) -> List[str]:
    """Split a comma separated credential value, dropping empty entries."""
    return [s.strip() for s in raw.split(",") if s.strip()]


def compute_hmac256(body: bytes, secret: str) -> str:
    """
    Compute a webhook signature.

    Args:
        body: Raw request body
        secret: Shared secret

    Returns:
        "sha256=" followed by the hex HMAC-SHA256 digest

    Example:
        >>> compute_hmac256(b"{}", "secret")[:7]
        'sha256='
    """
    digest = hmac.new(
        secret.encode('utf-8'),
        body,
        hashlib.sha256
    ).hexdigest()
    return SIGNATURE_PREFIX + digest


def verify_signature(signature: str, body: bytes, secrets: Iterable[str]) -> bool:
    """
    Check a signature against every accepted secret.

    Comparison is constant time per secret.
    """
    if not signature:
        return False
    for secret in secrets:
        if hmac.compare_digest(compute_hmac256(body, secret), signature):
            return True
    logger.debug("Webhook signature did not match any configured secret")
    return False


def verify_token(token: str, secrets: Iterable[str]) -> bool:
    """Check a plain token against every accepted secret."""
    if not token:
        return False
    return any(hmac.compare_digest(token, secret) for secret in secrets)
