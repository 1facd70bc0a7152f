"""
Lemon Squeezy webhook signature verification.

Security:
- HMAC-SHA256 over the exact raw request bytes (never re-serialized JSON)
- Constant-time comparison (hmac.compare_digest)
- Runs before JSON parsing, so a forged body is rejected even if it parses

The provider sends the lowercase hex digest in the X-Signature header.
"""

import hashlib
import hmac
import logging

logger = logging.getLogger(__name__)

SIGNATURE_HEADER = "X-Signature"


class SignatureError(Exception):
    """Base exception for signature verification failures."""

    pass


class MissingSignatureError(SignatureError):
    """No signature header was supplied."""

    pass


class InvalidSignatureError(SignatureError):
    """Signature does not match the payload."""

    pass


class WebhookSignatureVerifier:
    """
    Verifies webhook payloads against the shared signing secret.

    Usage:
        verifier = WebhookSignatureVerifier(secret)
        verifier.verify(raw_body, request.headers.get("X-Signature"))
    """

    def __init__(self, secret: str):
        """
        Initialize verifier.

        Args:
            secret: Webhook signing secret configured in the provider dashboard

        Raises:
            ValueError: If secret is empty or whitespace
        """
        if not secret or not secret.strip():
            raise ValueError("Webhook signing secret must not be blank")

        self._secret = secret.strip().encode("utf-8")

    def sign(self, raw_body: bytes) -> str:
        """Compute the hex HMAC-SHA256 digest the provider would send."""
        return hmac.new(self._secret, raw_body, hashlib.sha256).hexdigest()

    def verify(self, raw_body: bytes, signature: str | None) -> None:
        """
        Verify a delivery.

        Args:
            raw_body: Request body bytes exactly as received
            signature: Value of the X-Signature header

        Raises:
            MissingSignatureError: Header absent or blank
            InvalidSignatureError: Any mismatch (encoding, length, content)
        """
        if signature is None or not signature.strip():
            raise MissingSignatureError("Missing webhook signature")

        expected = self.sign(raw_body)

        # Digests are ASCII hex. Comparing bytes keeps compare_digest from
        # raising TypeError on non-ASCII input.
        supplied = signature.strip().encode("utf-8")
        if not hmac.compare_digest(expected.encode("ascii"), supplied):
            logger.warning(
                "Webhook signature mismatch",
                extra={"body_size": len(raw_body), "signature_length": len(supplied)},
            )
            raise InvalidSignatureError("Invalid webhook signature")
