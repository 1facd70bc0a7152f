"""
Lemon Squeezy webhook processing.

Pipeline for one delivery:
    raw body -> signature check -> JSON parse -> envelope
    -> BEGIN IMMEDIATE
         admit event (UNIQUE event_id) -> state machine writes
       COMMIT / ROLLBACK

A redelivered event is acknowledged as a duplicate with no further writes.
Any failure after admission rolls back the admission too, so the provider's
retry starts from scratch.
"""

import asyncio
import json
import logging
import sqlite3
import time

from tollgate.billing.signing import (
    InvalidSignatureError,
    MissingSignatureError,
    WebhookSignatureVerifier,
)
from tollgate.billing.state_machine import (
    MissingUserReferenceError,
    StateTransitionError,
    SubscriptionStateMachine,
)
from tollgate.models.billing import (
    EventType,
    WebhookEnvelope,
    WebhookOutcome,
    WebhookResult,
)
from tollgate.observability.logging import set_event_id
from tollgate.observability.metrics import track_signature_failure, track_webhook_event
from tollgate.storage.database import BillingDatabase

logger = logging.getLogger(__name__)


class WebhookError(Exception):
    """Base exception for webhook processing errors."""

    pass


class WebhookAuthenticationError(WebhookError):
    """Missing or invalid signature (401). Never retried by us."""

    pass


class WebhookValidationError(WebhookError):
    """Malformed payload (400)."""

    pass


class WebhookProcessingError(WebhookError):
    """Transient failure (500). The provider redelivers later."""

    pass


class WebhookProcessor:
    """
    Authenticates, admits and applies Lemon Squeezy webhook events.
    """

    def __init__(
        self,
        verifier: WebhookSignatureVerifier,
        db: BillingDatabase,
        state_machine: SubscriptionStateMachine,
    ):
        self.verifier = verifier
        self.db = db
        self.state_machine = state_machine

    async def handle(self, raw_body: bytes, signature: str | None) -> WebhookResult:
        """
        Process one webhook delivery.

        Args:
            raw_body: Request body exactly as received
            signature: X-Signature header value

        Returns:
            WebhookResult: processed, duplicate or ignored

        Raises:
            WebhookAuthenticationError: Signature missing or wrong
            WebhookValidationError: Body is not a usable event
            WebhookProcessingError: Event could not be applied right now
        """
        try:
            self.verifier.verify(raw_body, signature)
        except MissingSignatureError as e:
            track_signature_failure("missing")
            raise WebhookAuthenticationError(str(e)) from e
        except InvalidSignatureError as e:
            track_signature_failure("invalid")
            raise WebhookAuthenticationError(str(e)) from e

        try:
            payload = json.loads(raw_body)
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            raise WebhookValidationError("Webhook body is not valid JSON") from e

        try:
            envelope = WebhookEnvelope.from_payload(payload)
        except ValueError as e:
            raise WebhookValidationError(str(e)) from e

        set_event_id(envelope.event_id)
        return await self.process(envelope)

    async def process(self, envelope: WebhookEnvelope) -> WebhookResult:
        """Admit and apply an already-authenticated event."""
        event_type = envelope.event_type.value
        started = time.perf_counter()

        logger.info(
            "Processing webhook event",
            extra={"event_id": envelope.event_id, "event_name": envelope.event_name},
        )

        try:
            # Own thread, own connection: concurrent deliveries contend on
            # the SQLite write lock instead of blocking the event loop.
            result = await asyncio.to_thread(self._apply, envelope)

        except MissingUserReferenceError as e:
            track_webhook_event(event_type, "rejected")
            logger.warning(
                "Webhook event rejected",
                extra={"event_id": envelope.event_id, "error": str(e)},
            )
            raise WebhookValidationError(str(e)) from e

        except StateTransitionError as e:
            track_webhook_event(event_type, "failed")
            logger.error(
                "Webhook event processing failed",
                extra={"event_id": envelope.event_id, "event_type": event_type, "error": str(e)},
            )
            raise WebhookProcessingError(f"Event processing failed: {e}") from e

        except sqlite3.Error as e:
            track_webhook_event(event_type, "failed")
            logger.error(
                "Webhook event storage failure",
                extra={"event_id": envelope.event_id, "event_type": event_type, "error": str(e)},
            )
            raise WebhookProcessingError(f"Storage failure: {e}") from e

        track_webhook_event(event_type, result.outcome.value, time.perf_counter() - started)
        logger.info(
            "Webhook event processed",
            extra={
                "event_id": envelope.event_id,
                "event_type": event_type,
                "outcome": result.outcome.value,
                "changes": result.changes,
            },
        )
        return result

    def _apply(self, envelope: WebhookEnvelope) -> WebhookResult:
        with self.db.transaction() as conn:
            admitted = self.db.admit_event(
                conn, envelope.event_id, envelope.event_name, envelope.payload
            )
            if not admitted:
                return WebhookResult(
                    event_id=envelope.event_id,
                    event_type=envelope.event_type,
                    outcome=WebhookOutcome.DUPLICATE,
                )

            changes = self.state_machine.apply(conn, envelope)

        outcome = (
            WebhookOutcome.IGNORED
            if envelope.event_type == EventType.UNHANDLED
            else WebhookOutcome.PROCESSED
        )
        return WebhookResult(
            event_id=envelope.event_id,
            event_type=envelope.event_type,
            outcome=outcome,
            changes=changes,
        )
