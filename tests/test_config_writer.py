import errno
import os
import stat
import sys
from pathlib import Path

import pytest

PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from mqtt_provisioning import config_writer
from mqtt_provisioning.errors import ArtifactWriteError


def test_write_creates_file_with_owner_only_mode(tmp_path):
    target = tmp_path / "config" / "password.txt"

    written = config_writer.write_artifact(target, "admin:hash\n")

    assert written == target
    assert target.read_text() == "admin:hash\n"
    assert stat.S_IMODE(target.stat().st_mode) == 0o600


def test_write_replaces_existing_contents(tmp_path):
    target = tmp_path / "acl.txt"
    target.write_text("old contents that are much longer than the new ones\n")

    config_writer.write_artifact(target, "user admin\n")

    assert target.read_text() == "user admin\n"
    assert [p.name for p in tmp_path.iterdir()] == ["acl.txt"]


def test_failed_write_keeps_previous_file_and_cleans_up(tmp_path, monkeypatch):
    target = tmp_path / "password.txt"
    target.write_text("previous\n")

    def _disk_full(src, dst):
        raise OSError(errno.ENOSPC, os.strerror(errno.ENOSPC))

    monkeypatch.setattr(config_writer.os, "replace", _disk_full)

    with pytest.raises(ArtifactWriteError) as excinfo:
        config_writer.write_artifact(target, "new\n")

    assert excinfo.value.path == target
    assert os.strerror(errno.ENOSPC) in str(excinfo.value)
    assert target.read_text() == "previous\n"
    assert [p.name for p in tmp_path.iterdir()] == ["password.txt"]
