"""Database-backed MQTT access rule helpers."""

from __future__ import annotations

from typing import Any, List, Optional, Union

from sqlmodel import Session, select

from . import sync_status
from .config import settings
from .database import storage_errors
from .errors import ValidationError
from .models import AclPermission, MqttAclRule, MqttCredential


MAX_TOPIC_LENGTH = 255
MAX_DEVICE_ID_LENGTH = 64

PermissionLike = Union[AclPermission, str]


def normalize_permission(value: Any) -> AclPermission:
    """Return ``value`` as an :class:`AclPermission` or raise ``ValidationError``."""

    if isinstance(value, AclPermission):
        return value
    if isinstance(value, str):
        try:
            return AclPermission(value.strip().lower())
        except ValueError:
            pass
    allowed = ", ".join(p.value for p in AclPermission)
    raise ValidationError(f"permission must be one of: {allowed}")


def validate_device_id(device_id: Any) -> str:
    """Return ``device_id`` if it is safe inside ACL lines and topic levels.

    Device ids are written into the ACL file and substituted into the
    default topic pattern, so line breaks, whitespace, ``/`` and MQTT
    wildcards are refused.
    """

    if not isinstance(device_id, str) or not device_id:
        raise ValidationError("device_id cannot be empty")
    if len(device_id) > MAX_DEVICE_ID_LENGTH:
        raise ValidationError(f"device_id exceeds {MAX_DEVICE_ID_LENGTH} characters")
    if any(ch.isspace() or not ch.isprintable() for ch in device_id):
        raise ValidationError("device_id cannot contain whitespace or control characters")
    if any(ch in device_id for ch in "/+#"):
        raise ValidationError("device_id cannot contain '/', '+' or '#'")
    return device_id


def validate_topic_pattern(pattern: Any) -> str:
    """Return a cleaned topic filter suitable for a ``topic`` ACL line.

    Wildcards follow MQTT filter rules: ``+`` must occupy a whole level and
    ``#`` may only appear as the final level.
    """

    if not isinstance(pattern, str):
        raise ValidationError("topic_pattern must be a string")
    cleaned = pattern.strip()
    if not cleaned:
        raise ValidationError("topic_pattern cannot be empty")
    if len(cleaned) > MAX_TOPIC_LENGTH:
        raise ValidationError(
            f"topic_pattern exceeds {MAX_TOPIC_LENGTH} characters"
        )
    if any(ch.isspace() or ch == "\x00" for ch in cleaned):
        raise ValidationError("topic_pattern cannot contain whitespace")

    levels = cleaned.split("/")
    last = len(levels) - 1
    for index, level in enumerate(levels):
        if "#" in level and (level != "#" or index != last):
            raise ValidationError("'#' is only allowed as the last topic level")
        if "+" in level and level != "+":
            raise ValidationError("'+' must occupy an entire topic level")
    return cleaned


def default_topic_pattern(device_id: str) -> str:
    """Return the device-scoped pattern granted to new credentials."""

    return settings.MQTT_DEFAULT_TOPIC_TEMPLATE.format(device_id=device_id)


def get(session: Session, rule_id: int) -> Optional[MqttAclRule]:
    with storage_errors(session):
        return session.get(MqttAclRule, rule_id)


def find_by_device_id(session: Session, device_id: str) -> List[MqttAclRule]:
    with storage_errors(session):
        result = session.exec(
            select(MqttAclRule)
            .where(MqttAclRule.device_id == device_id)
            .order_by(MqttAclRule.id)
        )
        return list(result.all())


def find_all(session: Session) -> List[MqttAclRule]:
    """Return rules whose owning credential is currently enabled."""

    with storage_errors(session):
        result = session.exec(
            select(MqttAclRule)
            .join(MqttCredential, MqttCredential.device_id == MqttAclRule.device_id)
            .where(MqttCredential.enabled.is_(True))
            .order_by(MqttAclRule.id)
        )
        return list(result.all())


def create(
    session: Session,
    device_id: str,
    topic_pattern: str,
    permission: PermissionLike,
    *,
    commit: bool = True,
) -> MqttAclRule:
    """Persist a new rule for ``device_id``."""

    device_id = validate_device_id(device_id)
    cleaned_pattern = validate_topic_pattern(topic_pattern)
    normalized = normalize_permission(permission)

    with storage_errors(session):
        rule = MqttAclRule(
            device_id=device_id,
            topic_pattern=cleaned_pattern,
            permission=normalized.value,
        )
        session.add(rule)
        session.flush()
        sync_status.mark_pending_changes(session, commit=False)
        if commit:
            session.commit()
            session.refresh(rule)
    return rule


def create_default_rule(
    session: Session, device_id: str, *, commit: bool = True
) -> MqttAclRule:
    return create(
        session,
        device_id,
        default_topic_pattern(device_id),
        AclPermission.READWRITE,
        commit=commit,
    )


def update(
    session: Session,
    rule_id: int,
    *,
    topic_pattern: Optional[str] = None,
    permission: Optional[PermissionLike] = None,
    commit: bool = True,
) -> Optional[MqttAclRule]:
    """Apply a partial update to ``rule_id``; ``None`` if it does not exist."""

    cleaned_pattern = (
        validate_topic_pattern(topic_pattern) if topic_pattern is not None else None
    )
    normalized = normalize_permission(permission) if permission is not None else None

    with storage_errors(session):
        rule = session.get(MqttAclRule, rule_id)
        if rule is None:
            return None

        changed = False
        if cleaned_pattern is not None and rule.topic_pattern != cleaned_pattern:
            rule.topic_pattern = cleaned_pattern
            changed = True
        if normalized is not None and rule.permission != normalized.value:
            rule.permission = normalized.value
            changed = True

        if not changed:
            return rule

        session.add(rule)
        session.flush()
        sync_status.mark_pending_changes(session, commit=False)
        if commit:
            session.commit()
            session.refresh(rule)
    return rule


def delete(session: Session, rule_id: int, *, commit: bool = True) -> bool:
    """Remove ``rule_id``. Returns whether a rule existed."""

    with storage_errors(session):
        rule = session.get(MqttAclRule, rule_id)
        if rule is None:
            return False
        session.delete(rule)
        session.flush()
        sync_status.mark_pending_changes(session, commit=False)
        if commit:
            session.commit()
    return True


def delete_by_device_id(
    session: Session, device_id: str, *, commit: bool = True
) -> int:
    """Remove every rule for ``device_id`` and return how many were deleted."""

    with storage_errors(session):
        rules = session.exec(
            select(MqttAclRule).where(MqttAclRule.device_id == device_id)
        ).all()
        for rule in rules:
            session.delete(rule)
        if not rules:
            return 0
        session.flush()
        sync_status.mark_pending_changes(session, commit=False)
        if commit:
            session.commit()
    return len(rules)


__all__ = [
    "create",
    "create_default_rule",
    "default_topic_pattern",
    "delete",
    "delete_by_device_id",
    "find_all",
    "find_by_device_id",
    "get",
    "normalize_permission",
    "update",
    "validate_device_id",
    "validate_topic_pattern",
]
