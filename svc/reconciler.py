"""
Create-or-update of user records after a completed payment.

Both entry points (the success-page form and the provider webhook) end up
here, possibly at the same time and possibly more than once for the same
purchase. Every write is a single conditional statement keyed by the identity,
so concurrent calls converge on one row:

    primary key found        -> UPDATE ... WHERE <key column> = :value
    found by secondary email -> UPDATE ... WHERE id AND the row is unlinked,
                                linking the provider id
    nothing found            -> INSERT ... ON CONFLICT DO UPDATE

Subscription status only ever moves to ``active`` through this module.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Dict, Optional

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from database import crud
from database.models import IdentityKind, UserRecord
from svc.errors import InternalError
from svc.identity_resolver import ResolvedIdentity, normalize_email
from utils.logger import get_logger

logger = get_logger(__name__)

PLACEHOLDER_EMAIL_DOMAIN = "users.invalid"
_HANDLE_UNSAFE = re.compile(r"[^a-z0-9_.-]+")


@dataclass(frozen=True)
class ProfileFields:
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    username: Optional[str] = None
    profile_picture_url: Optional[str] = None
    email: Optional[str] = None

    def as_dict(self) -> Dict[str, Optional[str]]:
        return {
            "first_name": _strip(self.first_name),
            "last_name": _strip(self.last_name),
            "username": _strip(self.username),
            "profile_picture_url": _strip(self.profile_picture_url),
            "email": normalize_email(self.email),
        }


@dataclass(frozen=True)
class ReconciliationRequest:
    identity: ResolvedIdentity
    profile: ProfileFields = field(default_factory=ProfileFields)


def _strip(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    return value.strip() or None


def _slug(seed: str) -> str:
    return _HANDLE_UNSAFE.sub("_", seed.lower()).strip("_") or "anonymous"


def _request_fields(request: ReconciliationRequest) -> Dict[str, Optional[str]]:
    fields = request.profile.as_dict()
    if request.identity.key.kind is IdentityKind.EMAIL:
        # The key column already carries the email.
        fields.pop("email")
    elif not fields["email"]:
        fields["email"] = request.identity.email
    return fields


def _synthesized_defaults(key_kind: IdentityKind, key_value: str, fields: Dict[str, Optional[str]]) -> Dict[str, str]:
    defaults: Dict[str, str] = {}
    if not fields.get("username"):
        seed = key_value.split("@", 1)[0] if key_kind is IdentityKind.EMAIL else key_value
        defaults["username"] = f"user_{_slug(seed)}"
    if key_kind is IdentityKind.PROVIDER_ID and not fields.get("email"):
        defaults["email"] = f"{_slug(key_value)}@{PLACEHOLDER_EMAIL_DOMAIN}"
    return defaults


def _release_foreign_email(db: Session, fields: Dict[str, Optional[str]], owner: Optional[UserRecord]) -> None:
    """Drop ``fields['email']`` when another record already owns that address."""
    email = fields.get("email")
    if not email:
        return
    holder = crud.get_by_email(db, email)
    if holder is not None and (owner is None or holder.id != owner.id):
        logger.warning(
            "Email %s already belongs to user %s; not copying it onto %s",
            email,
            holder.id,
            owner.id if owner is not None else "a new record",
        )
        fields["email"] = None


def _reconcile_once(db: Session, request: ReconciliationRequest, activate: bool) -> UserRecord:
    key = request.identity.key
    fields = _request_fields(request)

    existing = crud.find_by_key(db, key.kind, key.value)
    if existing is not None:
        if not activate and existing.is_active:
            logger.info("Ignoring deactivation of active user %s via reconciliation", existing.id)
        _release_foreign_email(db, fields, existing)
        user = crud.update_by_key(db, key.kind, key.value, fields, activate=activate)
        if user is not None:
            return user

    secondary_email = request.identity.email
    if key.kind is IdentityKind.PROVIDER_ID and secondary_email:
        match = crud.get_by_email(db, secondary_email)
        if match is not None and match.provider_id in (None, key.value):
            user = crud.update_by_id(db, match.id, fields, activate=activate, link_provider_id=key.value)
            if user is not None:
                logger.info("Matched %s to existing user %s by email", key, match.id)
                return user
            logger.info("User %s was linked to another provider id meanwhile; creating a record for %s", match.id, key)

    _release_foreign_email(db, fields, None)
    defaults = _synthesized_defaults(key.kind, key.value, fields)
    user = crud.upsert(db, key.kind, key.value, fields, activate=activate, create_defaults=defaults)
    if defaults and user.identity_degraded:
        logger.warning(
            "DegradedIdentityCreation: user %s (%s) created with synthesized %s",
            user.id,
            key,
            ", ".join(sorted(defaults)),
        )
    return user


def reconcile(db: Session, request: ReconciliationRequest, activate: bool) -> UserRecord:
    """Bring the user record for ``request.identity`` in line with a payment.

    Idempotent: replaying the same request leaves the row unchanged apart
    from ``updated_at``. A uniqueness conflict means a concurrent
    reconciliation won the insert; the lookup is retried once so this call
    lands as an update.
    """
    try:
        try:
            user = _reconcile_once(db, request, activate)
        except IntegrityError:
            db.rollback()
            logger.info("Concurrent write detected for %s; retrying", request.identity.key)
            user = _reconcile_once(db, request, activate)
    except SQLAlchemyError as exc:
        db.rollback()
        logger.error("User store failure while reconciling %s: %s", request.identity.key, exc)
        raise InternalError("Internal server error.") from exc

    logger.info(
        "Reconciled user %s (%s) status=%s",
        user.id,
        request.identity.key,
        user.subscription_status,
    )
    return user
