from __future__ import annotations

import enum
from dataclasses import dataclass
from typing import Any, Optional

import stripe

from svc.errors import InvalidSession, ProviderUnavailable, SessionNotFound
from utils.logger import get_logger
from utils.payments import PaymentProvider, stripe_get, stripe_to_dict

logger = get_logger(__name__)

PAID_STATUSES = {"paid", "no_payment_required"}


class PaymentStatus(str, enum.Enum):
    PAID = "paid"
    UNPAID = "unpaid"
    UNKNOWN = "unknown"

    @classmethod
    def from_provider(cls, raw: Optional[str]) -> "PaymentStatus":
        if raw in PAID_STATUSES:
            return cls.PAID
        if raw == "unpaid":
            return cls.UNPAID
        return cls.UNKNOWN


@dataclass(frozen=True)
class PaymentSession:
    session_id: str
    payment_status: PaymentStatus
    client_reference_id: Optional[str] = None
    customer_email: Optional[str] = None

    @property
    def is_paid(self) -> bool:
        return self.payment_status is PaymentStatus.PAID


def _clean(value: Any) -> Optional[str]:
    if not isinstance(value, str):
        return None
    value = value.strip()
    return value or None


def extract_customer_email(session_obj: Any) -> Optional[str]:
    """Return the best available purchaser email on a checkout session payload."""
    customer_details = stripe_to_dict(stripe_get(session_obj, "customer_details"))
    metadata = stripe_to_dict(stripe_get(session_obj, "metadata"))
    candidates = (
        customer_details.get("email"),
        stripe_get(session_obj, "customer_email"),
        metadata.get("email"),
    )
    for email in candidates:
        cleaned = _clean(email)
        if cleaned:
            return cleaned
    return None


def session_from_payload(session_obj: Any, fallback_id: Optional[str] = None) -> PaymentSession:
    """Build a ``PaymentSession`` from a Stripe checkout session object or dict."""
    return PaymentSession(
        session_id=_clean(stripe_get(session_obj, "id")) or fallback_id or "",
        payment_status=PaymentStatus.from_provider(stripe_get(session_obj, "payment_status")),
        client_reference_id=_clean(stripe_get(session_obj, "client_reference_id")),
        customer_email=extract_customer_email(session_obj),
    )


def verify(provider: PaymentProvider, session_token: str) -> PaymentSession:
    """Fetch ``session_token`` live from the provider.

    Returns the session whatever its payment status; callers check
    ``is_paid`` (or use ``require_paid``). No retries are attempted here.
    """
    if not session_token or not session_token.strip():
        raise InvalidSession("Session ID is required.")

    try:
        session_obj = provider.retrieve_session(session_token)
    except stripe.InvalidRequestError as exc:
        logger.info("Stripe checkout session %s not found: %s", session_token, exc)
        raise SessionNotFound("Invalid or unknown session ID.") from exc
    except stripe.StripeError as exc:
        logger.error("Stripe session retrieval failed for %s: %s", session_token, exc)
        raise ProviderUnavailable("Unable to verify payment with the payment provider.") from exc

    return session_from_payload(session_obj, fallback_id=session_token)


def require_paid(session: PaymentSession) -> PaymentSession:
    if not session.is_paid:
        logger.info(
            "Checkout session %s rejected with payment status %s",
            session.session_id,
            session.payment_status.value,
        )
        raise InvalidSession("Invalid or unpaid session ID.")
    return session
