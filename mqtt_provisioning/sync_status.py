"""Singleton record tracking pending broker configuration changes.

All writes are issued as single ``UPDATE`` statements with the arithmetic
performed by the database so concurrent mutations never tear the counter.
"""
from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import case, update
from sqlmodel import Session

from .models import (
    MqttSyncStatus,
    SYNC_STATUS_ERROR_PREFIX,
    SYNC_STATUS_ROW_ID,
    SYNC_STATUS_SUCCESS,
)


MAX_STATUS_LENGTH = 500


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _ensure_row(session: Session) -> MqttSyncStatus:
    status = session.get(MqttSyncStatus, SYNC_STATUS_ROW_ID)
    if status is None:
        status = MqttSyncStatus(id=SYNC_STATUS_ROW_ID)
        session.add(status)
        session.flush()
    return status


def _apply(session: Session, commit: bool, **values) -> None:
    _ensure_row(session)
    values.setdefault("updated_at", _now())
    table = MqttSyncStatus.__table__
    session.connection().execute(
        update(table).where(table.c.id == SYNC_STATUS_ROW_ID).values(**values)
    )
    if commit:
        session.commit()


def get(session: Session) -> MqttSyncStatus:
    """Return the current sync status, creating the row on first use."""

    status = _ensure_row(session)
    session.refresh(status)
    return status


def mark_pending_changes(session: Session, *, commit: bool = True) -> None:
    """Record one more change that the broker artifacts do not reflect yet."""

    _apply(
        session,
        commit,
        pending_changes=MqttSyncStatus.pending_changes + 1,
    )


def mark_synced(
    session: Session, consumed: Optional[int] = None, *, commit: bool = True
) -> None:
    """Record a successful sync.

    ``consumed`` is the pending count observed before the snapshot was taken;
    only that many changes are cleared so mutations that landed while the
    sync was running stay pending. Without it the counter is reset to zero.
    """

    if consumed is None:
        pending = 0
    else:
        pending = case(
            (
                MqttSyncStatus.pending_changes > consumed,
                MqttSyncStatus.pending_changes - consumed,
            ),
            else_=0,
        )
    _apply(
        session,
        commit,
        pending_changes=pending,
        last_sync_at=_now(),
        last_sync_status=SYNC_STATUS_SUCCESS,
    )


def mark_sync_failed(session: Session, error: str, *, commit: bool = True) -> None:
    """Record a failed sync; pending changes are left untouched."""

    message = f"{SYNC_STATUS_ERROR_PREFIX}{error}"
    if len(message) > MAX_STATUS_LENGTH:
        message = message[: MAX_STATUS_LENGTH - 3] + "..."
    _apply(
        session,
        commit,
        last_sync_at=_now(),
        last_sync_status=message,
    )


__all__ = ["get", "mark_pending_changes", "mark_sync_failed", "mark_synced"]
