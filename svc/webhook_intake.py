from __future__ import annotations

import json
import threading
from dataclasses import dataclass
from typing import Any, Dict, Optional

import stripe
from sqlalchemy.orm import Session

from svc.errors import InternalError, SignatureInvalid, WebhookNotConfigured
from svc.identity_resolver import CorrelationStrategy, resolve
from svc.reconciler import ReconciliationRequest, reconcile
from svc.session_verifier import PaymentStatus, session_from_payload
from utils.logger import get_logger
from utils.payments import PaymentProvider

logger = get_logger(__name__)

CHECKOUT_COMPLETED = "checkout.session.completed"


@dataclass(frozen=True)
class WebhookOutcome:
    accepted: bool
    event_type: Optional[str] = None
    action: str = "ignored"
    user_id: Optional[int] = None


class SignatureFailureCounter:
    """Process-wide tally of rejected webhook signatures, exposed on /health."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._count = 0

    def increment(self) -> int:
        with self._lock:
            self._count += 1
            return self._count

    @property
    def count(self) -> int:
        return self._count


signature_failures = SignatureFailureCounter()


def _authenticate(provider: PaymentProvider, raw_body: bytes, signature_header: Optional[str]) -> None:
    if not provider.webhook_secret:
        logger.error("Stripe webhook received but STRIPE_WEBHOOK_SECRET is not configured")
        raise WebhookNotConfigured("Stripe webhook secret is not configured.")

    if not signature_header:
        total = signature_failures.increment()
        logger.warning("Stripe webhook called without signature header (rejections=%s)", total)
        raise SignatureInvalid("Missing Stripe signature header.")

    try:
        provider.verify_signature(raw_body, signature_header)
    except (ValueError, UnicodeDecodeError, stripe.SignatureVerificationError) as exc:
        total = signature_failures.increment()
        logger.warning("Invalid Stripe webhook signature: %s (rejections=%s)", exc, total)
        raise SignatureInvalid("Invalid Stripe webhook signature.") from exc


def _decode_event(raw_body: bytes) -> Optional[Dict[str, Any]]:
    try:
        event = json.loads(raw_body)
    except (ValueError, UnicodeDecodeError) as exc:
        logger.error("Signed Stripe webhook body is not valid JSON; dropping: %s", exc)
        return None
    if not isinstance(event, dict):
        logger.error("Signed Stripe webhook body is not an event object; dropping")
        return None
    return event


def _handle_checkout_completed(db: Session, event: Dict[str, Any]) -> WebhookOutcome:
    event_type = CHECKOUT_COMPLETED
    session_obj = (event.get("data") or {}).get("object")
    if not isinstance(session_obj, dict):
        logger.warning("Stripe event %s has no session object; dropping", event.get("id"))
        return WebhookOutcome(accepted=True, event_type=event_type, action="dropped")

    session = session_from_payload(session_obj)
    if session.payment_status is PaymentStatus.UNPAID:
        logger.info("Checkout session %s completed but not yet paid; waiting", session.session_id)
        return WebhookOutcome(accepted=True, event_type=event_type, action="ignored")

    if not session.customer_email:
        logger.warning(
            "Stripe event %s for session %s has no customer email; acknowledged without changes",
            event.get("id"),
            session.session_id or "unknown",
        )
        return WebhookOutcome(accepted=True, event_type=event_type, action="dropped")

    identity = resolve(session, CorrelationStrategy.EMAIL_ONLY)
    user = reconcile(db, ReconciliationRequest(identity=identity), activate=True)
    logger.info(
        "Subscription for user %s activated via Stripe session %s",
        user.id,
        session.session_id,
    )
    return WebhookOutcome(accepted=True, event_type=event_type, action="reconciled", user_id=user.id)


def handle(
    db: Session,
    provider: PaymentProvider,
    raw_body: bytes,
    signature_header: Optional[str],
) -> WebhookOutcome:
    """Authenticate and apply one Stripe webhook delivery.

    The signature is checked against the raw bytes before the body is
    decoded. Authenticated deliveries are acknowledged even when they cannot
    be acted on, because a provider retry would not change the payload. Only
    user store failures propagate (as ``InternalError``) so the provider
    retries later.
    """
    _authenticate(provider, raw_body, signature_header)

    event = _decode_event(raw_body)
    if event is None:
        return WebhookOutcome(accepted=True, action="dropped")

    event_type = event.get("type")
    logger.info("Received Stripe webhook event: %s", event_type)

    if event_type != CHECKOUT_COMPLETED:
        return WebhookOutcome(accepted=True, event_type=event_type, action="ignored")

    try:
        return _handle_checkout_completed(db, event)
    except InternalError:
        raise
    except Exception as exc:
        logger.error("Failed to process Stripe event %s: %s", event.get("id"), exc, exc_info=True)
        return WebhookOutcome(accepted=True, event_type=event_type, action="dropped")
