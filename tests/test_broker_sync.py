import errno
import os
import sys
import threading
from pathlib import Path

import pytest

PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from mqtt_provisioning import acl, config_writer, credentials, database, sync, sync_status
from mqtt_provisioning.config import settings
from mqtt_provisioning.models import MqttAclRule
from mqtt_provisioning.passwords import hash_password
from mqtt_provisioning.reload import Reloader
from mqtt_provisioning.service import init_storage


ADMIN_HASH = "$7$101$c2FsdHNhbHRzYWx0$a2V5"


class _FakeReloader(Reloader):
    def __init__(self, succeed: bool = True) -> None:
        self.succeed = succeed
        self.calls = 0

    def reload(self) -> bool:
        self.calls += 1
        return self.succeed


@pytest.fixture()
def session(tmp_path):
    original_url = settings.DATABASE_URL
    database.reset_session_factory(f"sqlite:///{tmp_path / 'sync.sqlite3'}")
    init_storage()
    try:
        with database.SessionLocal() as db:
            yield db
    finally:
        database.reset_session_factory(original_url)


@pytest.fixture()
def paths(tmp_path):
    config_dir = tmp_path / "mosquitto"
    return config_dir / "password.txt", config_dir / "acl.txt"


def _syncer(paths, reloader=None):
    password_path, acl_path = paths
    return sync.BrokerSync(
        reloader=reloader or _FakeReloader(),
        password_path=password_path,
        acl_path=acl_path,
        admin_username="admin",
        admin_password_hash=ADMIN_HASH,
    )


def _provision(session, device_id, *, enabled=True):
    credentials.create(
        session,
        device_id,
        f"device_{device_id}",
        hash_password("pw"),
        enabled=enabled,
    )
    acl.create_default_rule(session, device_id)


def test_successful_sync_writes_files_and_resets_counter(session, paths):
    _provision(session, "1")
    reloader = _FakeReloader()

    result = _syncer(paths, reloader).sync(session)

    assert result.success is True
    assert result.reloaded is True
    assert result.message == sync.MESSAGE_RELOADED
    assert reloader.calls == 1

    password_path, acl_path = paths
    assert f"admin:{ADMIN_HASH}" in password_path.read_text()
    assert "user device_1" in acl_path.read_text()

    current = sync_status.get(session)
    assert current.pending_changes == 0
    assert current.last_sync_status == "success"


def test_reload_failure_does_not_fail_sync(session, paths):
    _provision(session, "1")

    result = _syncer(paths, _FakeReloader(succeed=False)).sync(session)

    assert result.success is True
    assert result.reloaded is False
    assert "Restart Mosquitto" in result.message
    assert sync_status.get(session).pending_changes == 0
    assert paths[0].exists() and paths[1].exists()


def test_write_failure_records_error_and_keeps_pending(session, paths, monkeypatch):
    _provision(session, "1")
    pending = sync_status.get(session).pending_changes
    password_path, acl_path = paths
    real_replace = os.replace

    def _acl_disk_full(src, dst):
        if Path(dst) == acl_path:
            raise OSError(errno.ENOSPC, os.strerror(errno.ENOSPC))
        return real_replace(src, dst)

    monkeypatch.setattr(config_writer.os, "replace", _acl_disk_full)
    reloader = _FakeReloader()

    result = _syncer(paths, reloader).sync(session)

    assert result.success is False
    assert result.reloaded is False
    assert os.strerror(errno.ENOSPC) in result.message
    assert result.message.startswith("Failed to sync Mosquitto configuration: ")
    assert reloader.calls == 0

    current = sync_status.get(session)
    assert current.pending_changes == pending
    assert current.last_sync_status.startswith("error: ")
    assert os.strerror(errno.ENOSPC) in current.last_sync_status


def test_generation_failure_leaves_files_untouched(session, paths):
    _provision(session, "1")
    password_path, acl_path = paths
    password_path.parent.mkdir(parents=True)
    password_path.write_text("previous\n")

    rule = acl.find_by_device_id(session, "1")[0]
    # Simulate a corrupt row written behind the store's back.
    session.connection().execute(
        MqttAclRule.__table__.update()
        .where(MqttAclRule.__table__.c.id == rule.id)
        .values(topic_pattern="a b")
    )
    session.commit()

    result = _syncer(paths).sync(session)

    assert result.success is False
    assert password_path.read_text() == "previous\n"
    assert not acl_path.exists()
    assert sync_status.get(session).last_sync_status.startswith("error: ")


def test_disabled_credentials_are_not_written(session, paths):
    _provision(session, "on")
    _provision(session, "off")
    credentials.update(session, "off", enabled=False)

    _syncer(paths).sync(session)

    password_path, acl_path = paths
    assert "device_off" not in password_path.read_text()
    assert "device_off" not in acl_path.read_text()
    assert "device_on" in password_path.read_text()


def test_repeated_sync_is_byte_identical(session, paths):
    _provision(session, "1")
    _provision(session, "2")
    syncer = _syncer(paths)

    syncer.sync(session)
    first = [p.read_bytes() for p in paths]
    syncer.sync(session)
    second = [p.read_bytes() for p in paths]

    assert first == second


def test_changes_during_sync_stay_pending(session, paths):
    _provision(session, "1")

    class _MutatingReloader(Reloader):
        def reload(self) -> bool:
            with database.SessionLocal() as other:
                acl.create(other, "1", "late/1/#", "read")
            return True

    result = _syncer(paths, _MutatingReloader()).sync(session)

    assert result.success is True
    assert sync_status.get(session).pending_changes == 1
    assert "late/1/#" not in paths[1].read_text()


def test_syncs_are_serialised(session, paths, tmp_path):
    _provision(session, "1")
    inside = threading.Event()
    release = threading.Event()
    overlaps = []
    active = []

    class _SlowReloader(Reloader):
        def reload(self) -> bool:
            active.append(1)
            overlaps.append(len(active))
            inside.set()
            release.wait(timeout=5)
            active.pop()
            return True

    def _run():
        with database.SessionLocal() as other:
            _syncer(paths, _SlowReloader()).sync(other)

    first = threading.Thread(target=_run)
    first.start()
    assert inside.wait(timeout=5)
    second = threading.Thread(target=_run)
    second.start()
    release.set()
    first.join(timeout=5)
    second.join(timeout=5)

    assert overlaps == [1, 1]


def test_state_returns_to_idle(session, paths):
    syncer = _syncer(paths)
    assert syncer.state is sync.SyncState.IDLE
    syncer.sync(session)
    assert syncer.state is sync.SyncState.IDLE


def test_admin_identity_prefers_configured_hash(monkeypatch):
    monkeypatch.setattr(settings, "MOSQUITTO_ADMIN_USERNAME", "root")
    monkeypatch.setattr(settings, "MOSQUITTO_ADMIN_PASSWORD_HASH", ADMIN_HASH)
    identity = sync.resolve_admin_identity()
    assert identity.username == "root"
    assert identity.password_hash == ADMIN_HASH


def test_admin_password_is_hashed_once_per_process(monkeypatch):
    monkeypatch.setattr(settings, "MOSQUITTO_ADMIN_PASSWORD_HASH", "")
    monkeypatch.setattr(settings, "MOSQUITTO_ADMIN_PASSWORD", "broker-admin")

    first = sync.resolve_admin_identity()
    second = sync.resolve_admin_identity()

    assert first.password_hash.startswith("$7$")
    assert first == second


def test_unknown_reload_method_still_writes_files(session, paths, monkeypatch):
    _provision(session, "1")
    password_path, acl_path = paths
    monkeypatch.setattr(settings, "MOSQUITTO_RELOAD_METHOD", "sighup")
    monkeypatch.setattr(settings, "MOSQUITTO_PASSWORD_FILE", password_path)
    monkeypatch.setattr(settings, "MOSQUITTO_ACL_FILE", acl_path)
    monkeypatch.setattr(settings, "MOSQUITTO_ADMIN_PASSWORD_HASH", ADMIN_HASH)

    result = sync.build_syncer().sync(session)

    assert result.success is True
    assert result.reloaded is False
    assert "user device_1" in acl_path.read_text()
    assert "device_1:" in password_path.read_text()
    assert sync_status.get(session).pending_changes == 0


def test_running_state_is_visible_to_other_syncers(session, paths):
    seen = []

    class _ObservingReloader(Reloader):
        def reload(self) -> bool:
            seen.append(_syncer(paths).state)
            seen.append(sync.current_state())
            return True

    _syncer(paths, _ObservingReloader()).sync(session)

    assert seen == [sync.SyncState.RELOADING, sync.SyncState.RELOADING]
    assert sync.current_state() is sync.SyncState.IDLE
