"""Regenerate mosquitto's password and ACL files from the store.

A sync reads one consistent snapshot of enabled credentials and their rules,
renders both artifacts, writes them atomically and then asks the broker to
reload. The outcome is recorded on the sync status row.
"""
from __future__ import annotations

import logging
import os
import threading
from dataclasses import dataclass
from enum import Enum
from functools import lru_cache
from pathlib import Path
from typing import Dict, List, Optional, Union

from sqlmodel import Session, select

from . import sync_status
from .artifacts import AdminIdentity, BrokerSnapshot, CredentialEntry, RuleEntry, render_artifacts
from .config import settings
from .config_writer import write_artifact
from .database import storage_errors
from .errors import ArtifactWriteError, ValidationError
from .models import MqttAclRule, MqttCredential
from .passwords import hash_password
from .reload import Reloader, build_reloader


logger = logging.getLogger(__name__)

MESSAGE_RELOADED = "Mosquitto configuration synced and reloaded successfully"
MESSAGE_RESTART_REQUIRED = (
    "Mosquitto configuration synced. Restart Mosquitto to apply changes."
)
MESSAGE_FAILED = "Failed to sync Mosquitto configuration: {error}"

# One sync at a time per process, whichever caller started it.
_sync_lock = threading.Lock()


class SyncState(str, Enum):
    IDLE = "idle"
    GENERATING = "generating"
    WRITING = "writing"
    RELOADING = "reloading"
    RECORDING = "recording"


# Shared by every BrokerSync so callers can observe an in-flight sync.
_state = SyncState.IDLE


def _set_state(state: SyncState) -> None:
    global _state
    _state = state


def current_state() -> SyncState:
    """Return the stage of the sync currently running in this process."""

    return _state


@dataclass(frozen=True)
class SyncResult:
    success: bool
    message: str
    reloaded: bool = False

    def as_dict(self) -> Dict[str, object]:
        return {
            "success": self.success,
            "message": self.message,
            "reloaded": self.reloaded,
        }


@lru_cache(maxsize=8)
def _hash_admin_password(password: str) -> str:
    # Cached so every sync in this process renders the same admin line.
    return hash_password(password)


def resolve_admin_identity(
    username: Optional[str] = None,
    password: Optional[str] = None,
    password_hash: Optional[str] = None,
) -> AdminIdentity:
    """Return the broker admin identity from arguments or settings.

    A configured hash wins over a plaintext password.
    """

    name = username or settings.MOSQUITTO_ADMIN_USERNAME
    digest = password_hash or settings.MOSQUITTO_ADMIN_PASSWORD_HASH
    if not digest:
        plaintext = password if password is not None else settings.MOSQUITTO_ADMIN_PASSWORD
        if not plaintext:
            raise ValidationError(
                "MOSQUITTO_ADMIN_PASSWORD or MOSQUITTO_ADMIN_PASSWORD_HASH must be set"
            )
        digest = _hash_admin_password(plaintext)
    return AdminIdentity(username=name, password_hash=digest)


def load_snapshot(session: Session, admin: AdminIdentity) -> BrokerSnapshot:
    """Read enabled credentials and their rules in a single statement."""

    statement = (
        select(MqttCredential, MqttAclRule)
        .outerjoin(MqttAclRule, MqttAclRule.device_id == MqttCredential.device_id)
        .where(MqttCredential.enabled.is_(True))
        .order_by(MqttCredential.mqtt_username, MqttAclRule.id)
        .execution_options(populate_existing=True)
    )
    credentials: Dict[str, CredentialEntry] = {}
    rules: List[RuleEntry] = []
    with storage_errors(session):
        for credential, rule in session.exec(statement).all():
            if credential.device_id not in credentials:
                credentials[credential.device_id] = CredentialEntry.from_model(credential)
            if rule is not None:
                rules.append(RuleEntry.from_model(rule))
    return BrokerSnapshot(
        admin=admin,
        credentials=tuple(credentials.values()),
        rules=tuple(rules),
    )


class BrokerSync:
    """Write broker artifacts and record the outcome."""

    def __init__(
        self,
        reloader: Reloader,
        password_path: Union[str, os.PathLike[str]],
        acl_path: Union[str, os.PathLike[str]],
        admin_username: str,
        admin_password_hash: str,
    ) -> None:
        self.reloader = reloader
        self.password_path = Path(password_path)
        self.acl_path = Path(acl_path)
        self.admin = AdminIdentity(
            username=admin_username, password_hash=admin_password_hash
        )

    @property
    def state(self) -> SyncState:
        return current_state()

    def sync(self, session: Session) -> SyncResult:
        with _sync_lock:
            try:
                return self._sync_locked(session)
            finally:
                _set_state(SyncState.IDLE)

    def _sync_locked(self, session: Session) -> SyncResult:
        consumed = sync_status.get(session).pending_changes

        _set_state(SyncState.GENERATING)
        snapshot = load_snapshot(session, self.admin)
        try:
            artifacts = render_artifacts(snapshot)
            _set_state(SyncState.WRITING)
            write_artifact(self.password_path, artifacts.password_file)
            write_artifact(self.acl_path, artifacts.acl_file)
        except (ValidationError, ArtifactWriteError) as exc:
            _set_state(SyncState.RECORDING)
            sync_status.mark_sync_failed(session, str(exc))
            message = MESSAGE_FAILED.format(error=exc)
            logger.error(message)
            return SyncResult(success=False, message=message, reloaded=False)

        _set_state(SyncState.RELOADING)
        reloaded = self.reloader.reload()

        _set_state(SyncState.RECORDING)
        sync_status.mark_synced(session, consumed)
        message = MESSAGE_RELOADED if reloaded else MESSAGE_RESTART_REQUIRED
        logger.info(
            "Synced %d credential(s) to %s and %s",
            len(snapshot.credentials),
            self.password_path,
            self.acl_path,
        )
        return SyncResult(success=True, message=message, reloaded=reloaded)


def build_syncer(reloader: Optional[Reloader] = None) -> BrokerSync:
    """Return a :class:`BrokerSync` configured from settings."""

    admin = resolve_admin_identity()
    return BrokerSync(
        reloader=reloader if reloader is not None else build_reloader(),
        password_path=settings.resolve_data_path(settings.MOSQUITTO_PASSWORD_FILE),
        acl_path=settings.resolve_data_path(settings.MOSQUITTO_ACL_FILE),
        admin_username=admin.username,
        admin_password_hash=admin.password_hash,
    )


__all__ = [
    "BrokerSync",
    "SyncResult",
    "SyncState",
    "build_syncer",
    "current_state",
    "load_snapshot",
    "resolve_admin_identity",
]
