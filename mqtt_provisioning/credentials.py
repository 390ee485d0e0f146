"""Database-backed MQTT credential helpers."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, List, Optional

from sqlmodel import Session, select

from . import acl, sync_status
from .database import storage_errors
from .errors import ConflictError, ValidationError
from .models import MqttCredential


MAX_USERNAME_LENGTH = 128


def _now() -> datetime:
    """Return a timezone-aware UTC timestamp."""

    return datetime.now(timezone.utc)


def normalize_username(username: Any) -> str:
    """Return ``username`` if it can appear in both broker artifacts.

    The password file splits on ``:`` and the ACL file on whitespace, and a
    leading ``#`` would turn the line into a comment.
    """

    if not isinstance(username, str):
        raise ValidationError("mqtt_username must be a string")
    cleaned = username.strip()
    if not cleaned:
        raise ValidationError("mqtt_username cannot be empty")
    if len(cleaned) > MAX_USERNAME_LENGTH:
        raise ValidationError(
            f"mqtt_username exceeds {MAX_USERNAME_LENGTH} characters"
        )
    if cleaned.startswith("#"):
        raise ValidationError("mqtt_username cannot start with '#'")
    if ":" in cleaned or any(ch.isspace() or not ch.isprintable() for ch in cleaned):
        raise ValidationError(
            "mqtt_username cannot contain ':', whitespace or control characters"
        )
    return cleaned


def _validate_password_hash(password_hash: Any) -> str:
    if not isinstance(password_hash, str) or not password_hash:
        raise ValidationError("mqtt_password_hash cannot be empty")
    if ":" in password_hash or any(ch.isspace() for ch in password_hash):
        raise ValidationError("mqtt_password_hash is not a broker digest")
    return password_hash


def _get_by_device_id(session: Session, device_id: str) -> Optional[MqttCredential]:
    result = session.exec(
        select(MqttCredential).where(MqttCredential.device_id == device_id)
    )
    return result.first()


def find_all(session: Session) -> List[MqttCredential]:
    with storage_errors(session):
        return list(session.exec(select(MqttCredential).order_by(MqttCredential.id)).all())


def find_all_enabled(session: Session) -> List[MqttCredential]:
    """Return enabled credentials; used when rendering broker artifacts."""

    with storage_errors(session):
        result = session.exec(
            select(MqttCredential)
            .where(MqttCredential.enabled.is_(True))
            .order_by(MqttCredential.id)
        )
        return list(result.all())


def find_by_device_id(session: Session, device_id: str) -> Optional[MqttCredential]:
    with storage_errors(session):
        return _get_by_device_id(session, device_id)


def find_by_username(session: Session, username: str) -> Optional[MqttCredential]:
    with storage_errors(session):
        result = session.exec(
            select(MqttCredential).where(MqttCredential.mqtt_username == username)
        )
        return result.first()


def create(
    session: Session,
    device_id: str,
    username: str,
    password_hash: str,
    *,
    enabled: bool = True,
    commit: bool = True,
) -> MqttCredential:
    """Persist credentials for ``device_id``.

    Raises :class:`ConflictError` when the device already has credentials or
    the username belongs to another device.
    """

    device_id = acl.validate_device_id(device_id)
    username = normalize_username(username)
    password_hash = _validate_password_hash(password_hash)

    if find_by_device_id(session, device_id) is not None:
        raise ConflictError(f"MQTT credentials already exist for device {device_id}")
    if find_by_username(session, username) is not None:
        raise ConflictError(f"MQTT username {username} is already in use")

    with storage_errors(
        session, conflict_message="MQTT credentials already exist for this device"
    ):
        credential = MqttCredential(
            device_id=device_id,
            mqtt_username=username,
            mqtt_password_hash=password_hash,
            enabled=bool(enabled),
        )
        session.add(credential)
        session.flush()
        sync_status.mark_pending_changes(session, commit=False)
        if commit:
            session.commit()
            session.refresh(credential)
    return credential


def update(
    session: Session,
    device_id: str,
    *,
    password_hash: Optional[str] = None,
    enabled: Optional[bool] = None,
    commit: bool = True,
) -> Optional[MqttCredential]:
    """Apply a partial update; returns ``None`` for an unknown device.

    Only an effective change is recorded as a pending broker change, so
    repeating a toggle is harmless.
    """

    if password_hash is not None:
        password_hash = _validate_password_hash(password_hash)

    with storage_errors(session):
        credential = _get_by_device_id(session, device_id)
        if credential is None:
            return None

        changed = False
        if password_hash is not None and credential.mqtt_password_hash != password_hash:
            credential.mqtt_password_hash = password_hash
            changed = True
        if enabled is not None and credential.enabled != bool(enabled):
            credential.enabled = bool(enabled)
            changed = True

        if not changed:
            return credential

        credential.updated_at = _now()
        session.add(credential)
        session.flush()
        sync_status.mark_pending_changes(session, commit=False)
        if commit:
            session.commit()
            session.refresh(credential)
    return credential


def delete(session: Session, device_id: str, *, commit: bool = True) -> bool:
    """Remove credentials and every access rule for ``device_id``.

    Returns ``False`` without recording a change when nothing existed.
    """

    with storage_errors(session):
        credential = _get_by_device_id(session, device_id)
        if credential is None:
            return False
        acl.delete_by_device_id(session, device_id, commit=False)
        session.delete(credential)
        session.flush()
        sync_status.mark_pending_changes(session, commit=False)
        if commit:
            session.commit()
    return True


__all__ = [
    "create",
    "delete",
    "find_all",
    "find_all_enabled",
    "find_by_device_id",
    "find_by_username",
    "normalize_username",
    "update",
]
