"""Engine and session lifecycle for the provisioning store.

The engine is built once at import from ``DATABASE_URL``. Each API request
gets its own session through :func:`get_session`; the management CLI and the
periodic sync job open theirs from :data:`SessionLocal` and close them when
their command or tick is done. Store modules commit their own writes and wrap
statements in :func:`storage_errors`, so callers only ever see
:class:`ConflictError` or :class:`StorageError` from this layer.

:func:`reset_session_factory` rebinds both the engine and ``SessionLocal``;
code that needs a session must look ``SessionLocal`` up on this module at
call time rather than importing the name.
"""
from __future__ import annotations

import logging
from contextlib import contextmanager
from typing import Any, Iterator, Optional

from sqlalchemy.engine import make_url
from sqlalchemy.exc import ArgumentError, IntegrityError, SQLAlchemyError
from sqlalchemy.orm import sessionmaker
from sqlmodel import Session, create_engine

from .config import settings
from .errors import ConflictError, StorageError


logger = logging.getLogger(__name__)


def _ensure_sqlite_directory(database_url: str) -> None:
    """Create the parent directory for SQLite databases when needed."""

    try:
        url = make_url(database_url)
    except ArgumentError:
        return

    if not url.drivername.startswith("sqlite"):
        return

    database = url.database
    if not database or database in {":memory:", ""}:
        return

    path = settings.resolve_data_path(database)
    path.parent.mkdir(parents=True, exist_ok=True)


def _build_engine(database_url: str):
    _ensure_sqlite_directory(database_url)
    connect_args: dict[str, Any] = {}
    if database_url.startswith("sqlite"):
        connect_args["check_same_thread"] = False
    return create_engine(database_url, connect_args=connect_args)


engine = _build_engine(settings.DATABASE_URL)
SessionLocal = sessionmaker(
    bind=engine,
    class_=Session,
    autocommit=False,
    autoflush=False,
)


def reset_session_factory(database_url: str | None = None) -> None:
    """Point the store at ``database_url`` (or the current setting).

    Tests use this to give every case its own SQLite file; sessions opened
    before the call keep their old engine until closed.
    """

    global engine, SessionLocal

    if database_url is not None:
        settings.DATABASE_URL = database_url
    engine = _build_engine(settings.DATABASE_URL)
    SessionLocal = sessionmaker(
        bind=engine,
        class_=Session,
        autocommit=False,
        autoflush=False,
    )


def get_session() -> Iterator[Session]:
    """Per-request session for the API routes, closed once the response is sent."""

    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


@contextmanager
def storage_errors(
    session: Session, *, conflict_message: Optional[str] = None
) -> Iterator[None]:
    """Translate SQLAlchemy failures into provisioning errors.

    Integrity violations become :class:`ConflictError` when
    ``conflict_message`` is given; everything else is a :class:`StorageError`.
    The session is rolled back before raising.
    """

    try:
        yield
    except IntegrityError as exc:
        session.rollback()
        if conflict_message:
            raise ConflictError(conflict_message) from exc
        raise StorageError(f"integrity error: {exc.orig}") from exc
    except SQLAlchemyError as exc:
        session.rollback()
        logger.error("Storage failure: %s", exc)
        raise StorageError(f"storage failure: {exc}") from exc


__all__ = [
    "engine",
    "SessionLocal",
    "get_session",
    "reset_session_factory",
    "storage_errors",
]
