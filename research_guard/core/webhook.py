"""
Billing provider webhook verification and dispatch.

Inbound notifications are untrusted until their HMAC-SHA256 signature
checks out against the raw request bytes. Nothing about an unverified
body is parsed or logged beyond its length.
"""

import binascii
import hashlib
import hmac
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Optional

logger = logging.getLogger(__name__)

SIGNATURE_HEADER = "X-Signature"
_SIGNATURE_PREFIX = "sha256="


class WebhookVerifier:
    """Constant-time HMAC-SHA256 verification of webhook payloads."""

    def __init__(self, secret: str):
        """Initialize with the shared webhook secret.

        Args:
            secret: Shared secret configured with the billing provider.
                An empty secret makes every verification fail.
        """
        if not secret:
            logger.warning("Webhook secret not configured; all webhooks will be rejected")
        self._secret = secret.encode("utf-8") if secret else b""

    def sign(self, raw_payload: bytes) -> str:
        """Hex HMAC-SHA256 of raw_payload under the shared secret."""
        return hmac.new(self._secret, raw_payload, hashlib.sha256).hexdigest()

    def verify(self, raw_payload: bytes, signature_header: Optional[str]) -> bool:
        """Verify a webhook signature.

        The signature must be computed over the payload bytes exactly as
        received; re-serialized JSON can differ byte-for-byte.

        Args:
            raw_payload: Request body as received
            signature_header: Lowercase hex digest, optionally prefixed "sha256="

        Returns:
            True iff the header decodes to HMAC-SHA256(secret, raw_payload)
        """
        if not self._secret or not signature_header:
            return False
        if not isinstance(raw_payload, (bytes, bytearray)):
            return False

        signature = signature_header
        if signature.startswith(_SIGNATURE_PREFIX):
            signature = signature[len(_SIGNATURE_PREFIX):]
        # Canonical form only: 64 lowercase hex digits.
        if len(signature) != hashlib.sha256().digest_size * 2 or signature != signature.lower():
            return False

        try:
            provided = binascii.unhexlify(signature)
        except (binascii.Error, ValueError):
            return False

        expected = hmac.new(self._secret, bytes(raw_payload), hashlib.sha256).digest()
        return hmac.compare_digest(expected, provided)


@dataclass(frozen=True)
class WebhookEvent:
    """A verified billing notification."""
    event_type: Optional[str]
    user_id: Optional[str]
    payload: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def parse(cls, raw_payload: bytes) -> "WebhookEvent":
        """Parse a verified payload.

        A missing or non-string event_type parses as an event with no
        type, which no handler claims.

        Raises:
            ValueError: If the body is not a JSON object
        """
        data = json.loads(raw_payload)
        if not isinstance(data, dict):
            raise ValueError("webhook payload must be a JSON object")
        event_type = data.get("event_type")
        if not isinstance(event_type, str) or not event_type:
            event_type = None
        user_id = data.get("user_id")
        return cls(
            event_type=event_type,
            user_id=str(user_id) if user_id is not None else None,
            payload=data,
        )


@dataclass(frozen=True)
class WebhookResult:
    """HTTP status and body to answer the provider with."""
    status_code: int
    body: Dict[str, Any]


def _on_credit_added(event: WebhookEvent) -> None:
    logger.info("Credits added for user %s: %s", event.user_id, event.payload.get("credits"))


def _on_credit_depleted(event: WebhookEvent) -> None:
    logger.info("Credits depleted for user %s", event.user_id)


def _on_subscription_created(event: WebhookEvent) -> None:
    logger.info(
        "Subscription created for user %s: %s", event.user_id, event.payload.get("plan")
    )


DEFAULT_HANDLERS: Dict[str, Callable[[WebhookEvent], None]] = {
    "credit.added": _on_credit_added,
    "credit.depleted": _on_credit_depleted,
    "subscription.created": _on_subscription_created,
}


class WebhookProcessor:
    """Verifies, parses and dispatches billing webhooks.

    Status codes: 400 missing signature, 401 bad signature, 200 handled or
    intentionally ignored, 500 failure while handling a verified event.
    """

    def __init__(
        self,
        verifier: WebhookVerifier,
        handlers: Optional[Dict[str, Callable[[WebhookEvent], None]]] = None,
    ):
        self.verifier = verifier
        self.handlers = dict(DEFAULT_HANDLERS if handlers is None else handlers)

    def process(self, raw_payload: bytes, signature_header: Optional[str]) -> WebhookResult:
        if not signature_header:
            logger.warning("Webhook rejected: missing signature (%d bytes)", len(raw_payload))
            return WebhookResult(400, {"error": "Missing signature"})

        if not self.verifier.verify(raw_payload, signature_header):
            logger.warning("Webhook rejected: invalid signature (%d bytes)", len(raw_payload))
            return WebhookResult(401, {"error": "Invalid signature"})

        try:
            event = WebhookEvent.parse(raw_payload)
            handler = self.handlers.get(event.event_type)
            if handler is None:
                logger.info("Unhandled webhook event: %s", event.event_type)
                return WebhookResult(200, {"success": True, "handled": False})
            handler(event)
        except Exception:
            logger.exception("Webhook processing failed")
            return WebhookResult(500, {"error": "Webhook processing failed"})

        return WebhookResult(200, {"success": True, "handled": True, "eventType": event.event_type})
