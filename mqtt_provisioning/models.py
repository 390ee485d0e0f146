"""SQLModel tables for MQTT provisioning."""
from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    Integer,
    String,
)
from sqlalchemy.sql import func
from sqlmodel import Field, SQLModel


SYNC_STATUS_ROW_ID = 1
SYNC_STATUS_NEVER = "never"
SYNC_STATUS_SUCCESS = "success"
SYNC_STATUS_ERROR_PREFIX = "error: "


class AclPermission(str, Enum):
    READ = "read"
    WRITE = "write"
    READWRITE = "readwrite"


def _utcnow() -> datetime:
    """Return a timezone-aware UTC timestamp."""
    return datetime.now(timezone.utc)


def _timestamp_column(*, onupdate: bool = False) -> Column:
    return Column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
        onupdate=func.now() if onupdate else None,
    )


class Device(SQLModel, table=True):
    """Tracked device. Rows are owned by the device management layer."""
    __tablename__ = "devices"

    id: str = Field(sa_column=Column(String(64), primary_key=True))
    name: str = Field(sa_column=Column(String(120), nullable=False))
    owner_id: Optional[str] = Field(
        default=None,
        sa_column=Column(String(64), nullable=True, index=True),
    )
    is_active: bool = Field(
        default=True, sa_column=Column(Boolean, nullable=False, default=True)
    )
    created_at: datetime = Field(default_factory=_utcnow, sa_column=_timestamp_column())


class MqttCredential(SQLModel, table=True):
    """Broker identity for a device. Never holds the plaintext password."""
    __tablename__ = "mqtt_credentials"

    id: Optional[int] = Field(default=None, primary_key=True)
    device_id: str = Field(
        sa_column=Column(String(64), unique=True, nullable=False, index=True)
    )
    mqtt_username: str = Field(
        sa_column=Column(String(128), unique=True, nullable=False, index=True)
    )
    mqtt_password_hash: str = Field(sa_column=Column(String(255), nullable=False))
    enabled: bool = Field(
        default=True, sa_column=Column(Boolean, nullable=False, default=True)
    )
    created_at: datetime = Field(default_factory=_utcnow, sa_column=_timestamp_column())
    updated_at: datetime = Field(
        default_factory=_utcnow, sa_column=_timestamp_column(onupdate=True)
    )


class MqttAclRule(SQLModel, table=True):
    __tablename__ = "mqtt_acl_rules"
    __table_args__ = (
        CheckConstraint(
            "permission IN ('read', 'write', 'readwrite')",
            name="ck_mqtt_acl_rules_permission",
        ),
    )

    id: Optional[int] = Field(default=None, primary_key=True)
    device_id: str = Field(
        sa_column=Column(String(64), nullable=False, index=True)
    )
    topic_pattern: str = Field(sa_column=Column(String(255), nullable=False))
    permission: str = Field(sa_column=Column(String(16), nullable=False))
    created_at: datetime = Field(default_factory=_utcnow, sa_column=_timestamp_column())


class MqttSyncStatus(SQLModel, table=True):
    """Singleton row tracking how far the broker artifacts lag the store."""
    __tablename__ = "mqtt_sync_status"
    __table_args__ = (
        CheckConstraint("id = 1", name="ck_mqtt_sync_status_singleton"),
        CheckConstraint("pending_changes >= 0", name="ck_mqtt_sync_status_pending"),
    )

    id: Optional[int] = Field(default=SYNC_STATUS_ROW_ID, primary_key=True)
    pending_changes: int = Field(
        default=0, sa_column=Column(Integer, nullable=False, default=0)
    )
    last_sync_at: Optional[datetime] = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True), nullable=True),
    )
    last_sync_status: str = Field(
        default=SYNC_STATUS_NEVER,
        sa_column=Column(String(512), nullable=False, default=SYNC_STATUS_NEVER),
    )
    created_at: datetime = Field(default_factory=_utcnow, sa_column=_timestamp_column())
    updated_at: datetime = Field(
        default_factory=_utcnow, sa_column=_timestamp_column(onupdate=True)
    )

__all__ = [
    "AclPermission",
    "Device",
    "MqttAclRule",
    "MqttCredential",
    "MqttSyncStatus",
    "SYNC_STATUS_ERROR_PREFIX",
    "SYNC_STATUS_NEVER",
    "SYNC_STATUS_ROW_ID",
    "SYNC_STATUS_SUCCESS",
]
