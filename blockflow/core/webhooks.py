"""Inbound webhook authentication.

A webhook must present the shared secret, either in the ``X-Webhook-Secret``
header (``Authorization: Bearer`` is accepted too) or as a ``secret`` field
in the JSON body. When an ``X-Webhook-Signature: sha256=<hex>`` header is
sent, the HMAC-SHA256 of the raw body under the same secret must match.
"""

import hashlib
import hmac

import structlog

logger = structlog.get_logger()

SIGNATURE_PREFIX = "sha256="


class WebhookError(Exception):
    """Webhook rejected before any workflow is touched."""

    def __init__(self, message: str, status_code: int = 403) -> None:
        super().__init__(message)
        self.status_code = status_code


def extract_secret(
    header_secret: str | None,
    authorization: str | None,
    body_secret: object = None,
) -> str:
    """Pick the presented secret; header first, then bearer, then body."""
    if header_secret:
        return header_secret.strip()
    if authorization and authorization.startswith("Bearer "):
        return authorization[len("Bearer "):].strip()
    if isinstance(body_secret, str):
        return body_secret.strip()
    return ""


def sign_body(body: bytes, secret: str) -> str:
    """Return the ``sha256=<hex>`` signature of ``body``."""
    digest = hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()
    return f"{SIGNATURE_PREFIX}{digest}"


def verify_hmac_signature(body: bytes, signature: str, secret: str) -> bool:
    """Constant-time check of a ``sha256=<hex>`` (or bare hex) signature."""
    expected = sign_body(body, secret)
    provided = signature.strip()
    if not provided.startswith(SIGNATURE_PREFIX):
        provided = f"{SIGNATURE_PREFIX}{provided}"
    return hmac.compare_digest(expected.encode("utf-8"), provided.encode("utf-8"))


def authenticate_webhook(
    expected_secret: str | None,
    provided_secret: str,
    body: bytes,
    signature: str | None = None,
) -> None:
    """Authenticate one webhook request.

    Raises:
        WebhookError: 500 when no secret is configured, 403 when the secret
            is missing or wrong or the signature does not match
    """
    if not expected_secret:
        logger.error("webhook_secret_not_configured")
        raise WebhookError("Server misconfiguration", status_code=500)

    if not provided_secret or not hmac.compare_digest(
        provided_secret.encode("utf-8"), expected_secret.encode("utf-8")
    ):
        logger.warning("webhook_rejected", reason="secret")
        raise WebhookError("Invalid webhook secret")

    if signature is not None and not verify_hmac_signature(body, signature, expected_secret):
        logger.warning("webhook_rejected", reason="signature")
        raise WebhookError("Invalid webhook signature")
