import re
import sys
from pathlib import Path

import pytest
from sqlmodel import select

PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from mqtt_provisioning import database, service, sync_status
from mqtt_provisioning.config import settings
from mqtt_provisioning.errors import ConflictError, NotFoundError, ValidationError
from mqtt_provisioning.models import Device, MqttAclRule, MqttCredential
from mqtt_provisioning.passwords import verify_password
from mqtt_provisioning.reload import NoopReloader
from mqtt_provisioning.sync import BrokerSync


@pytest.fixture()
def session(tmp_path, monkeypatch):
    original_url = settings.DATABASE_URL
    monkeypatch.setattr(
        settings, "MQTT_DEFAULT_TOPIC_TEMPLATE", "owntracks/owntrack/{device_id}/#"
    )
    monkeypatch.setattr(settings, "MOSQUITTO_ADMIN_USERNAME", "admin")
    database.reset_session_factory(f"sqlite:///{tmp_path / 'service.sqlite3'}")
    service.init_storage()
    try:
        with database.SessionLocal() as db:
            db.add(Device(id="42", name="Phone", owner_id="user-1"))
            db.add(Device(id="43", name="Tablet", owner_id="user-2"))
            db.commit()
            yield db
    finally:
        database.reset_session_factory(original_url)


@pytest.fixture()
def syncer(tmp_path):
    return BrokerSync(
        reloader=NoopReloader(),
        password_path=tmp_path / "password.txt",
        acl_path=tmp_path / "acl.txt",
        admin_username="admin",
        admin_password_hash="$7$101$c2FsdA==$a2V5",
    )


def test_device_42_provisioning_scenario(session, syncer, tmp_path):
    issued = service.create_credential(session, "42", auto_generate=True)

    assert re.fullmatch(r"device_42_[0-9a-f]{8}", issued.mqtt_username)
    assert len(issued.plaintext_password) >= 8

    rules = service.list_rules(session, "42")
    assert len(rules) == 1
    assert rules[0].topic_pattern.endswith("42/#")
    assert rules[0].permission == "readwrite"
    assert service.get_sync_status(session).pending_changes >= 1

    result = service.trigger_sync(session, syncer=syncer)

    assert result.success is True
    current = service.get_sync_status(session)
    assert current.pending_changes == 0
    assert current.last_sync_status == "success"
    lines = (tmp_path / "password.txt").read_text().splitlines()
    assert any(line.startswith(issued.mqtt_username + ":") for line in lines)


def test_plaintext_password_is_never_stored(session):
    issued = service.create_credential(session, "42", auto_generate=True)

    stored = session.exec(
        select(MqttCredential).where(MqttCredential.device_id == "42")
    ).one()
    assert stored.mqtt_password_hash != issued.plaintext_password
    assert issued.plaintext_password not in stored.mqtt_password_hash
    assert verify_password(issued.plaintext_password, stored.mqtt_password_hash)
    assert not hasattr(stored, "plaintext_password")


def test_create_with_explicit_values(session):
    issued = service.create_credential(
        session, "42", username="phone-42", password="correct horse"
    )
    assert issued.mqtt_username == "phone-42"
    assert issued.plaintext_password == "correct horse"
    assert verify_password("correct horse", issued.credential.mqtt_password_hash)


def test_create_requires_known_device(session):
    with pytest.raises(NotFoundError):
        service.create_credential(session, "404", auto_generate=True)
    assert service.get_sync_status(session).pending_changes == 0


def test_create_twice_conflicts(session):
    service.create_credential(session, "42", auto_generate=True)
    with pytest.raises(ConflictError):
        service.create_credential(session, "42", auto_generate=True)


def test_taken_or_reserved_username_conflicts(session):
    service.create_credential(session, "42", username="shared", password="pw")
    with pytest.raises(ConflictError):
        service.create_credential(session, "43", username="shared", password="pw")
    with pytest.raises(ConflictError):
        service.create_credential(session, "43", username="admin", password="pw")


def test_failed_default_rule_rolls_back_credential(session, monkeypatch):
    monkeypatch.setattr(settings, "MQTT_DEFAULT_TOPIC_TEMPLATE", "bad/{device_id}/#/x")

    with pytest.raises(ValidationError):
        service.create_credential(session, "42", auto_generate=True)

    assert session.exec(select(MqttCredential)).all() == []
    assert service.get_sync_status(session).pending_changes == 0


def test_regenerate_password_replaces_hash(session):
    original = service.create_credential(session, "42", auto_generate=True)
    old_hash = original.credential.mqtt_password_hash

    issued = service.regenerate_password(session, "42")

    assert issued.plaintext_password != original.plaintext_password
    assert issued.credential.mqtt_password_hash != old_hash
    assert verify_password(issued.plaintext_password, issued.credential.mqtt_password_hash)

    with pytest.raises(NotFoundError):
        service.regenerate_password(session, "43")


def test_set_enabled_is_idempotent(session):
    service.create_credential(session, "42", auto_generate=True)
    service.set_enabled(session, "42", False)
    pending = service.get_sync_status(session).pending_changes

    credential = service.set_enabled(session, "42", False)

    assert credential.enabled is False
    assert service.get_sync_status(session).pending_changes == pending
    with pytest.raises(NotFoundError):
        service.set_enabled(session, "43", True)


def test_delete_credential_cascades(session):
    service.create_credential(session, "42", auto_generate=True)
    service.add_rule(session, "42", "extra/42", "read")

    assert service.delete_credential(session, "42") is True

    assert session.exec(select(MqttAclRule)).all() == []
    assert session.exec(select(MqttCredential)).all() == []


def test_delete_without_credentials_is_a_noop(session):
    pending = sync_status.get(session).pending_changes

    assert service.delete_credential(session, "42") is False
    assert sync_status.get(session).pending_changes == pending


def test_rule_operations(session):
    service.create_credential(session, "42", auto_generate=True)

    rule = service.add_rule(session, "42", "sensors/42/+", "read")
    updated = service.update_rule(session, rule.id, permission="write")
    assert updated.permission == "write"

    with pytest.raises(NotFoundError):
        service.add_rule(session, "43", "sensors/43/#", "read")
    with pytest.raises(NotFoundError):
        service.update_rule(session, 9999, permission="read")
    with pytest.raises(ValidationError):
        service.update_rule(session, rule.id, permission="everything")

    assert service.delete_rule(session, rule.id) is True
    assert service.delete_rule(session, rule.id) is False


def test_list_credentials_filters_by_owner(session):
    service.create_credential(session, "42", auto_generate=True)
    service.create_credential(session, "43", auto_generate=True)

    everything = service.list_credentials(session)
    assert [s.device_id for s in everything] == ["42", "43"]
    assert everything[0].device_name == "Phone"

    mine = service.list_credentials(session, owner_id="user-2")
    assert [s.device_id for s in mine] == ["43"]
    assert mine[0].owner_id == "user-2"


def test_registered_device_with_line_break_in_id_is_not_provisioned(
    session, syncer, monkeypatch
):
    monkeypatch.setattr(settings, "MQTT_DEFAULT_TOPIC_TEMPLATE", "owntracks/owntrack/#")
    session.add(Device(id="b\ntopic readwrite #", name="Rogue", owner_id="user-3"))
    session.commit()

    with pytest.raises(ValidationError):
        service.create_credential(session, "b\ntopic readwrite #", auto_generate=True)

    assert session.exec(select(MqttCredential)).all() == []
    service.trigger_sync(session, syncer=syncer)
    assert syncer.acl_path.read_text().count("topic readwrite #") == 1
