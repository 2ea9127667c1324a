from __future__ import annotations

import argparse
from typing import Optional

from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

# The models import registers the users table with SQLAlchemy's metadata.
from database import models  # noqa: F401
from database.session import Base, build_engine, engine
from utils.logger import get_logger

logger = get_logger(__name__)


def init_database(*, bind: Engine | None = None, drop_existing: bool = False) -> None:
    """Create the user store schema on ``bind`` (the configured engine by default)."""
    target = bind or engine
    try:
        if drop_existing:
            logger.warning("Dropping the users table before re-creating the schema.")
            Base.metadata.drop_all(bind=target)
        Base.metadata.create_all(bind=target)
    except SQLAlchemyError as exc:
        logger.exception("Failed to initialise user store schema: %s", exc)
        raise
    else:
        logger.info("User store schema ready on %s.", target.url.render_as_string(hide_password=True))


def _parse_args(argv: Optional[list[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Initialise the user store for the subscription reconciliation service."
    )
    parser.add_argument(
        "--drop-existing",
        action="store_true",
        help="Drop the users table before creating the schema.",
    )
    parser.add_argument(
        "--database-url",
        default=None,
        help="Override DATABASE_URL for this run.",
    )
    return parser.parse_args(argv)


def main(argv: Optional[list[str]] = None) -> None:
    args = _parse_args(argv)
    bind = build_engine(args.database_url) if args.database_url else None
    init_database(bind=bind, drop_existing=args.drop_existing)


if __name__ == "__main__":
    main()
