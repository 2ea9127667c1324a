from __future__ import annotations

from datetime import datetime
from typing import Any, Callable, Dict, List, Mapping, Optional

from sqlalchemy import or_, select, update
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.orm import Session

from .models import IdentityKind, SubscriptionStatus, UserRecord

KEY_COLUMNS = {
    IdentityKind.PROVIDER_ID: UserRecord.provider_id,
    IdentityKind.EMAIL: UserRecord.email,
}

# Profile columns a reconciliation may write.
PROFILE_COLUMNS = ("first_name", "last_name", "username", "profile_picture_url", "email")
# Columns that must be real (not synthesized) for a record to count as complete.
IDENTITY_COLUMNS = ("username", "email")


def _dialect_insert(db: Session) -> Callable[..., Any]:
    dialect = db.get_bind().dialect.name
    if dialect == "postgresql":
        return postgresql.insert
    if dialect == "sqlite":
        return sqlite.insert
    raise ValueError(f"Atomic upsert is not supported for dialect '{dialect}'.")


def _clean_fields(fields: Mapping[str, Optional[str]]) -> Dict[str, str]:
    """Drop unknown, empty and ``None`` values so they never overwrite stored data."""
    return {key: value for key, value in fields.items() if key in PROFILE_COLUMNS and value}


def _update_values(
    fields: Dict[str, str],
    *,
    activate: bool,
    now: datetime,
    kind: Optional[IdentityKind] = None,
) -> Dict[str, Any]:
    values: Dict[str, Any] = dict(fields)
    values["updated_at"] = now
    if activate:
        values["subscription_status"] = SubscriptionStatus.ACTIVE.value
    # An email key is itself a real email, so a username completes the record.
    if all(fields.get(column) for column in IDENTITY_COLUMNS) or (
        kind is IdentityKind.EMAIL and fields.get("username")
    ):
        values["identity_degraded"] = False
    return values


def _select_user(db: Session, *criteria: Any) -> Optional[UserRecord]:
    stmt = select(UserRecord).where(*criteria).execution_options(populate_existing=True)
    return db.execute(stmt).scalar_one_or_none()


def find_by_key(db: Session, kind: IdentityKind, value: str) -> Optional[UserRecord]:
    return _select_user(db, KEY_COLUMNS[kind] == value)


def get_by_email(db: Session, email: str) -> Optional[UserRecord]:
    return find_by_key(db, IdentityKind.EMAIL, email)


def get_by_id(db: Session, user_id: int) -> Optional[UserRecord]:
    return _select_user(db, UserRecord.id == user_id)


def list_users(db: Session) -> List[UserRecord]:
    return list(db.execute(select(UserRecord).order_by(UserRecord.id)).scalars())


def upsert(
    db: Session,
    kind: IdentityKind,
    value: str,
    fields: Mapping[str, Optional[str]],
    *,
    activate: bool,
    create_defaults: Optional[Mapping[str, str]] = None,
) -> UserRecord:
    """Create-or-update the record keyed by ``kind``/``value`` in one statement.

    ``fields`` are written on both paths; ``create_defaults`` only fill columns
    of a freshly inserted row and mark it as degraded. On conflict the status
    column is only ever moved to ``active``.
    """
    now = datetime.utcnow()
    cleaned = _clean_fields(fields)
    defaults = dict(create_defaults or {})

    insert_values: Dict[str, Any] = {**defaults, **cleaned}
    insert_values.update(
        {
            KEY_COLUMNS[kind].key: value,
            "identity_kind": kind.value,
            "subscription_status": (
                SubscriptionStatus.ACTIVE.value if activate else SubscriptionStatus.INACTIVE.value
            ),
            "identity_degraded": bool(defaults),
            "created_at": now,
            "updated_at": now,
        }
    )

    update_values = _update_values(cleaned, activate=activate, now=now, kind=kind)

    insert = _dialect_insert(db)
    stmt = insert(UserRecord).values(**insert_values)
    stmt = stmt.on_conflict_do_update(
        index_elements=[KEY_COLUMNS[kind].key],
        set_=update_values,
    )
    db.execute(stmt)
    db.commit()

    user = find_by_key(db, kind, value)
    if user is None:  # pragma: no cover - the row was just written
        raise RuntimeError(f"Upserted user {kind.value}={value} could not be read back.")
    return user


def update_by_key(
    db: Session,
    kind: IdentityKind,
    value: str,
    fields: Mapping[str, Optional[str]],
    *,
    activate: bool,
) -> Optional[UserRecord]:
    """Apply a reconciliation to the existing row keyed by ``kind``/``value``.

    A single ``UPDATE ... WHERE <key> = :value``. Returns ``None`` when no row
    holds the key.
    """
    values = _update_values(_clean_fields(fields), activate=activate, now=datetime.utcnow(), kind=kind)
    stmt = (
        update(UserRecord)
        .where(KEY_COLUMNS[kind] == value)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    result = db.execute(stmt)
    db.commit()
    if result.rowcount == 0:
        return None
    return find_by_key(db, kind, value)


def update_by_id(
    db: Session,
    user_id: int,
    fields: Mapping[str, Optional[str]],
    *,
    activate: bool,
    link_provider_id: Optional[str] = None,
) -> Optional[UserRecord]:
    """Apply a reconciliation to an existing row found through a secondary key.

    With ``link_provider_id`` the row only matches while it has no provider id
    or already carries that one; ``None`` is returned when nothing matched.
    """
    values = _update_values(_clean_fields(fields), activate=activate, now=datetime.utcnow())
    criteria = [UserRecord.id == user_id]
    if link_provider_id:
        values["provider_id"] = link_provider_id
        criteria.append(or_(UserRecord.provider_id.is_(None), UserRecord.provider_id == link_provider_id))

    stmt = (
        update(UserRecord)
        .where(*criteria)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    result = db.execute(stmt)
    db.commit()
    if result.rowcount == 0:
        return None
    return get_by_id(db, user_id)


def activate_user(db: Session, user_id: int) -> Optional[UserRecord]:
    return update_by_id(db, user_id, {}, activate=True)
