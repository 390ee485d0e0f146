"""Render mosquitto password and ACL files from a store snapshot.

Everything here is a pure function of a :class:`BrokerSnapshot`. Output is
sorted (credentials by username, rules by id) and carries no timestamps, so
rendering an unchanged snapshot twice yields byte-identical files.

Example password file::

    # Admin user
    admin:$7$101$...$...

    # Provisioned devices
    device_42_1a2b3c4d:$7$101$...$...

Example ACL file::

    # Admin user - full access
    user admin
    topic readwrite #

    # Device: 42
    user device_42_1a2b3c4d
    topic readwrite owntracks/owntrack/42/#
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional, Tuple

from .errors import ValidationError
from .models import AclPermission, MqttAclRule, MqttCredential


ADMIN_TOPIC_PATTERN = "#"


@dataclass(frozen=True)
class AdminIdentity:
    """Broker administrative identity, always granted full access."""

    username: str
    password_hash: str


@dataclass(frozen=True)
class CredentialEntry:
    device_id: str
    username: str
    password_hash: str
    enabled: bool

    @classmethod
    def from_model(cls, model: MqttCredential) -> "CredentialEntry":
        return cls(
            device_id=model.device_id,
            username=model.mqtt_username,
            password_hash=model.mqtt_password_hash,
            enabled=bool(model.enabled),
        )


@dataclass(frozen=True)
class RuleEntry:
    id: Optional[int]
    device_id: str
    topic_pattern: str
    permission: str

    @classmethod
    def from_model(cls, model: MqttAclRule) -> "RuleEntry":
        return cls(
            id=model.id,
            device_id=model.device_id,
            topic_pattern=model.topic_pattern,
            permission=model.permission,
        )


@dataclass(frozen=True)
class BrokerSnapshot:
    """Detached copy of the store state a sync renders from."""

    admin: AdminIdentity
    credentials: Tuple[CredentialEntry, ...] = ()
    rules: Tuple[RuleEntry, ...] = ()

    @classmethod
    def from_models(
        cls,
        admin: AdminIdentity,
        credentials: Iterable[MqttCredential],
        rules: Iterable[MqttAclRule],
    ) -> "BrokerSnapshot":
        return cls(
            admin=admin,
            credentials=tuple(CredentialEntry.from_model(c) for c in credentials),
            rules=tuple(RuleEntry.from_model(r) for r in rules),
        )


@dataclass(frozen=True)
class BrokerArtifacts:
    password_file: str
    acl_file: str


def _check_line_value(value: str, *, label: str) -> str:
    if not value or ":" in value or any(ch.isspace() for ch in value):
        raise ValidationError(f"{label} {value!r} cannot be written to a broker file")
    return value


def _check_comment_value(value: str, *, label: str) -> str:
    # A line break here would let the value start its own ACL line.
    if not value or any(ch.isspace() or not ch.isprintable() for ch in value):
        raise ValidationError(f"{label} {value!r} cannot be written to a broker file")
    return value


def _check_permission(rule: RuleEntry) -> str:
    try:
        return AclPermission(rule.permission).value
    except ValueError:
        raise ValidationError(
            f"rule {rule.id} for device {rule.device_id} has invalid permission "
            f"{rule.permission!r}"
        ) from None


def _enabled_credentials(snapshot: BrokerSnapshot) -> List[CredentialEntry]:
    """Enabled credentials sorted by username; the admin name is reserved."""

    entries = sorted(
        (c for c in snapshot.credentials if c.enabled),
        key=lambda c: (c.username, c.device_id),
    )
    for entry in entries:
        if entry.username == snapshot.admin.username:
            raise ValidationError(
                f"device {entry.device_id} uses the reserved admin username"
            )
    return entries


def _rules_by_device(
    snapshot: BrokerSnapshot, device_ids: Iterable[str]
) -> Dict[str, List[RuleEntry]]:
    wanted = set(device_ids)
    grouped: Dict[str, List[RuleEntry]] = {device_id: [] for device_id in wanted}
    for rule in snapshot.rules:
        if rule.device_id in wanted:
            grouped[rule.device_id].append(rule)
    for rules in grouped.values():
        rules.sort(key=lambda r: (r.id is None, r.id or 0, r.topic_pattern))
    return grouped


def generate_password_artifact(snapshot: BrokerSnapshot) -> str:
    """Return the mosquitto ``password_file`` contents."""

    admin = snapshot.admin
    lines = [
        "# Admin user",
        f"{_check_line_value(admin.username, label='username')}:"
        f"{_check_line_value(admin.password_hash, label='password hash')}",
    ]

    credentials = _enabled_credentials(snapshot)
    if credentials:
        lines.append("")
        lines.append("# Provisioned devices")
        for entry in credentials:
            username = _check_line_value(entry.username, label="username")
            password_hash = _check_line_value(entry.password_hash, label="password hash")
            lines.append(f"{username}:{password_hash}")

    return "\n".join(lines) + "\n"


def generate_acl_artifact(snapshot: BrokerSnapshot) -> str:
    """Return the mosquitto ``acl_file`` contents.

    A device with no rules still gets its ``user`` line and therefore no
    access, rather than falling through to broker defaults.
    """

    admin_name = _check_line_value(snapshot.admin.username, label="username")
    blocks = [
        "\n".join(
            [
                "# Admin user - full access",
                f"user {admin_name}",
                f"topic {AclPermission.READWRITE.value} {ADMIN_TOPIC_PATTERN}",
            ]
        )
    ]

    credentials = _enabled_credentials(snapshot)
    rules = _rules_by_device(snapshot, (c.device_id for c in credentials))
    for entry in credentials:
        block = [
            f"# Device: {_check_comment_value(entry.device_id, label='device id')}",
            f"user {_check_line_value(entry.username, label='username')}",
        ]
        for rule in rules[entry.device_id]:
            permission = _check_permission(rule)
            pattern = rule.topic_pattern
            if not pattern or any(ch.isspace() for ch in pattern):
                raise ValidationError(
                    f"rule {rule.id} for device {rule.device_id} has an invalid pattern"
                )
            block.append(f"topic {permission} {pattern}")
        blocks.append("\n".join(block))

    return "\n\n".join(blocks) + "\n"


def render_artifacts(snapshot: BrokerSnapshot) -> BrokerArtifacts:
    return BrokerArtifacts(
        password_file=generate_password_artifact(snapshot),
        acl_file=generate_acl_artifact(snapshot),
    )


__all__ = [
    "AdminIdentity",
    "BrokerArtifacts",
    "BrokerSnapshot",
    "CredentialEntry",
    "RuleEntry",
    "generate_acl_artifact",
    "generate_password_artifact",
    "render_artifacts",
]
