"""
Webhook signature verification for payment events.

The payment collaborator signs the raw request body; how it does so is
opaque to the ledger, which only needs a yes/no answer.
"""

import hashlib
import hmac
from typing import Protocol

from app.exceptions import WebhookVerificationError
from app.observability import get_logger

logger = get_logger(__name__)


class WebhookVerifier(Protocol):
    """Checks that a webhook payload really came from the payment collaborator."""

    def verify(self, payload: bytes, signature: str | None) -> None:
        """
        Raises:
            WebhookVerificationError: Signature missing or wrong
        """
        ...


class HmacWebhookVerifier:
    """Hex-encoded HMAC-SHA256 of the raw body with a shared secret."""

    def __init__(self, secret: str) -> None:
        if not secret:
            raise ValueError("Webhook secret cannot be empty")
        self._secret = secret.encode("utf-8")

    def sign(self, payload: bytes) -> str:
        return hmac.new(self._secret, payload, hashlib.sha256).hexdigest()

    def verify(self, payload: bytes, signature: str | None) -> None:
        if not signature:
            logger.warning("webhook_signature_missing")
            raise WebhookVerificationError("Missing signature header")

        if not hmac.compare_digest(self.sign(payload), signature.strip().lower()):
            logger.warning("webhook_signature_invalid", payload_bytes=len(payload))
            raise WebhookVerificationError("Signature mismatch")
