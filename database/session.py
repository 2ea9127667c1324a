import os
from typing import Any, Dict, Generator, Tuple

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine, URL, make_url
from sqlalchemy.orm import Session, declarative_base, sessionmaker

SUPPORTED_DIALECTS = {"sqlite", "postgresql"}


def resolve_database_url(raw_url: str | None) -> Tuple[URL, Dict[str, Any]]:
    """Normalize the DATABASE_URL environment variable for SQLAlchemy.

    Plain postgres URLs are upgraded to the psycopg driver with
    sslmode=require. Only SQLite and PostgreSQL are accepted because the user
    store relies on their ``INSERT ... ON CONFLICT`` support.
    """
    if not raw_url:
        return make_url("sqlite:///./taskboard_billing.db"), {"check_same_thread": False}

    url = make_url(raw_url)

    if url.drivername in {"postgres", "postgresql"}:
        url = url.set(drivername="postgresql+psycopg")

    if url.get_backend_name() not in SUPPORTED_DIALECTS:
        raise ValueError(f"Unsupported database backend '{url.get_backend_name()}'.")

    if url.get_backend_name() == "sqlite":
        return url, {"check_same_thread": False}

    query = dict(url.query)
    if "sslmode" not in query:
        query["sslmode"] = "require"
        url = url.set(query=query)

    return url, {}


def build_engine(raw_url: str | None = None, **engine_kwargs: Any) -> Engine:
    url, connect_args = resolve_database_url(raw_url)
    return create_engine(url, pool_pre_ping=True, connect_args=connect_args, **engine_kwargs)


def build_sessionmaker(bind: Engine) -> sessionmaker:
    return sessionmaker(bind=bind, autocommit=False, autoflush=False, expire_on_commit=False)


engine = build_engine(os.getenv("DATABASE_URL"))
SessionLocal = build_sessionmaker(engine)
Base = declarative_base()


def get_db() -> Generator[Session, None, None]:
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
