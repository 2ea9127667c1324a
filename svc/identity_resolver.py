from __future__ import annotations

import enum
from dataclasses import dataclass
from typing import Optional

from database.models import IdentityKind
from svc.errors import MissingCorrelation
from svc.session_verifier import PaymentSession
from utils.logger import get_logger

logger = get_logger(__name__)


class CorrelationStrategy(str, enum.Enum):
    # Success-page form: the checkout was started with the signed-in user's
    # identity provider id as client_reference_id.
    REFERENCE_FIRST = "reference_first"
    # Webhook: only the purchaser email is trusted to identify the user.
    EMAIL_ONLY = "email_only"


@dataclass(frozen=True)
class IdentityKey:
    kind: IdentityKind
    value: str

    def __str__(self) -> str:
        return f"{self.kind.value}:{self.value}"


@dataclass(frozen=True)
class ResolvedIdentity:
    key: IdentityKey
    secondary_email: Optional[str] = None

    @property
    def email(self) -> Optional[str]:
        if self.key.kind is IdentityKind.EMAIL:
            return self.key.value
        return self.secondary_email


def normalize_email(email: Optional[str]) -> Optional[str]:
    if not email:
        return None
    cleaned = email.strip().lower()
    return cleaned or None


def resolve(
    session: PaymentSession,
    strategy: CorrelationStrategy = CorrelationStrategy.REFERENCE_FIRST,
) -> ResolvedIdentity:
    """Map a checkout session to the key used to find its user record.

    Raises ``MissingCorrelation`` when the session carries nothing usable for
    the chosen strategy. That points at a misconfigured checkout and is not
    worth retrying.
    """
    email = normalize_email(session.customer_email)
    reference = (session.client_reference_id or "").strip()

    if strategy is CorrelationStrategy.REFERENCE_FIRST and reference:
        return ResolvedIdentity(
            key=IdentityKey(IdentityKind.PROVIDER_ID, reference),
            secondary_email=email,
        )
    if email:
        return ResolvedIdentity(key=IdentityKey(IdentityKind.EMAIL, email))

    logger.error(
        "Checkout session %s has no %s; cannot link payment to a user",
        session.session_id,
        "customer email" if strategy is CorrelationStrategy.EMAIL_ONLY else "client reference id or customer email",
    )
    raise MissingCorrelation("Checkout session is not linked to a user.")
