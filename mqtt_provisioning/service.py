"""Provisioning operations used by the HTTP routes and the management CLI."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional

from sqlmodel import SQLModel, Session, select

from . import acl, credentials, database, devices, sync_status
from .acl import PermissionLike
from .config import settings
from .database import storage_errors
from .errors import ConflictError, NotFoundError, ValidationError
from .models import AclPermission, Device, MqttAclRule, MqttCredential, MqttSyncStatus
from .passwords import generate_password, generate_username, hash_password
from .sync import BrokerSync, SyncResult, build_syncer


logger = logging.getLogger(__name__)

MAX_USERNAME_ATTEMPTS = 5


@dataclass(frozen=True)
class ProvisionedCredential:
    """A stored credential plus the plaintext password issued with it.

    This is the only place a plaintext password ever exists; it is not
    persisted and cannot be retrieved again.
    """

    credential: MqttCredential
    plaintext_password: str

    @property
    def device_id(self) -> str:
        return self.credential.device_id

    @property
    def mqtt_username(self) -> str:
        return self.credential.mqtt_username


@dataclass(frozen=True)
class CredentialSummary:
    id: int
    device_id: str
    device_name: Optional[str]
    owner_id: Optional[str]
    mqtt_username: str
    enabled: bool
    created_at: datetime
    updated_at: datetime


def init_storage() -> None:
    """Ensure tables exist and seed the sync status row."""

    SQLModel.metadata.create_all(database.engine)
    with database.SessionLocal() as session:
        sync_status.get(session)
        session.commit()


# ---------------------------------------------------------------------------
# Credentials


def _require_credential(session: Session, device_id: str) -> MqttCredential:
    credential = credentials.find_by_device_id(session, device_id)
    if credential is None:
        raise NotFoundError(f"No MQTT credentials for device {device_id}")
    return credential


def _reserved_username(username: str) -> bool:
    return username == settings.MOSQUITTO_ADMIN_USERNAME


def _unused_generated_username(session: Session, device_id: str) -> str:
    for _ in range(MAX_USERNAME_ATTEMPTS):
        candidate = generate_username(device_id)
        if _reserved_username(candidate):
            continue
        if credentials.find_by_username(session, candidate) is None:
            return candidate
    raise ConflictError(f"Could not generate a unique MQTT username for device {device_id}")


def create_credential(
    session: Session,
    device_id: str,
    username: Optional[str] = None,
    password: Optional[str] = None,
    auto_generate: bool = False,
) -> ProvisionedCredential:
    """Provision broker credentials and the default access rule for a device.

    With ``auto_generate`` (or when either value is omitted) the username
    and password are generated. Both records are written in one transaction.
    """

    device_id = acl.validate_device_id(device_id)
    if not devices.device_exists(session, device_id):
        raise NotFoundError(f"Device {device_id} not found")
    if credentials.find_by_device_id(session, device_id) is not None:
        raise ConflictError(f"MQTT credentials already exist for device {device_id}")

    if auto_generate or not username:
        username = _unused_generated_username(session, device_id)
    else:
        username = credentials.normalize_username(username)
        if _reserved_username(username):
            raise ConflictError(f"MQTT username {username} is reserved")

    if auto_generate or not password:
        password = generate_password()
    elif not isinstance(password, str):
        raise ValidationError("password must be a string")

    try:
        credential = credentials.create(
            session, device_id, username, hash_password(password), commit=False
        )
        acl.create_default_rule(session, device_id, commit=False)
        session.commit()
    except Exception:
        session.rollback()
        raise
    session.refresh(credential)
    logger.info("Provisioned MQTT user %s for device %s", username, device_id)
    return ProvisionedCredential(credential=credential, plaintext_password=password)


def regenerate_password(session: Session, device_id: str) -> ProvisionedCredential:
    """Issue a new random password; the previous one stops working after sync."""

    _require_credential(session, device_id)
    password = generate_password()
    credential = credentials.update(
        session, device_id, password_hash=hash_password(password)
    )
    if credential is None:
        raise NotFoundError(f"No MQTT credentials for device {device_id}")
    logger.info("Regenerated MQTT password for device %s", device_id)
    return ProvisionedCredential(credential=credential, plaintext_password=password)


def set_enabled(session: Session, device_id: str, enabled: bool) -> MqttCredential:
    credential = credentials.update(session, device_id, enabled=bool(enabled))
    if credential is None:
        raise NotFoundError(f"No MQTT credentials for device {device_id}")
    return credential


def delete_credential(session: Session, device_id: str) -> bool:
    """Remove a device's credentials and rules; ``False`` if none existed."""

    deleted = credentials.delete(session, device_id)
    if deleted:
        logger.info("Deleted MQTT credentials for device %s", device_id)
    return deleted


def list_credentials(
    session: Session, owner_id: Optional[str] = None
) -> List[CredentialSummary]:
    """Return credentials with their device details, optionally by owner."""

    statement = select(MqttCredential, Device).outerjoin(
        Device, Device.id == MqttCredential.device_id
    )
    if owner_id is not None:
        statement = statement.where(Device.owner_id == owner_id)
    statement = statement.order_by(MqttCredential.device_id)

    with storage_errors(session):
        rows = session.exec(statement).all()
    return [
        CredentialSummary(
            id=credential.id,
            device_id=credential.device_id,
            device_name=device.name if device is not None else None,
            owner_id=device.owner_id if device is not None else None,
            mqtt_username=credential.mqtt_username,
            enabled=bool(credential.enabled),
            created_at=credential.created_at,
            updated_at=credential.updated_at,
        )
        for credential, device in rows
    ]


# ---------------------------------------------------------------------------
# Access rules


def add_rule(
    session: Session,
    device_id: str,
    topic_pattern: str,
    permission: PermissionLike = AclPermission.READWRITE,
) -> MqttAclRule:
    _require_credential(session, device_id)
    return acl.create(session, device_id, topic_pattern, permission)


def update_rule(
    session: Session,
    rule_id: int,
    topic_pattern: Optional[str] = None,
    permission: Optional[PermissionLike] = None,
) -> MqttAclRule:
    rule = acl.update(
        session, rule_id, topic_pattern=topic_pattern, permission=permission
    )
    if rule is None:
        raise NotFoundError(f"ACL rule {rule_id} not found")
    return rule


def delete_rule(session: Session, rule_id: int) -> bool:
    return acl.delete(session, rule_id)


def list_rules(session: Session, device_id: str) -> List[MqttAclRule]:
    return acl.find_by_device_id(session, device_id)


# ---------------------------------------------------------------------------
# Sync


def get_sync_status(session: Session) -> MqttSyncStatus:
    return sync_status.get(session)


def trigger_sync(session: Session, syncer: Optional[BrokerSync] = None) -> SyncResult:
    """Run a broker sync now and return its outcome."""

    if syncer is None:
        syncer = build_syncer()
    return syncer.sync(session)


__all__ = [
    "CredentialSummary",
    "ProvisionedCredential",
    "add_rule",
    "create_credential",
    "delete_credential",
    "delete_rule",
    "get_sync_status",
    "init_storage",
    "list_credentials",
    "list_rules",
    "regenerate_password",
    "set_enabled",
    "trigger_sync",
    "update_rule",
]
