import json
import logging
from unittest import mock
import uuid

import pytest

from sftpbridge.credentials import account_key, MemoryCredentialStore
from sftpbridge.registry import AuthMethod, RemoteTarget, TargetRegistry


@pytest.fixture
def credentials():
    return MemoryCredentialStore()


@pytest.fixture
def registry(tmp_path, credentials):
    return TargetRegistry(
        str(tmp_path / "state" / "targets.json"),
        credentials,
        str(tmp_path / "legacy.ini"),
    )


def make_target(**kwargs):
    fields = dict(host="example.com", username="alice", display_name="Example")
    fields.update(kwargs)
    return RemoteTarget(**fields)


def test_target_defaults():
    target = RemoteTarget()

    assert target.port == 22
    assert target.base_path == "/"
    assert target.auth_method == AuthMethod.PASSWORD.value
    assert uuid.UUID(target.id)
    assert not target.is_valid


def test_target_base_path_normalized():
    assert RemoteTarget(base_path="home/alice/").base_path == "/home/alice"
    assert RemoteTarget(base_path="/a/./b/../c").base_path == "/a/c"
    assert RemoteTarget(base_path="").base_path == "/"


def test_target_validity():
    assert make_target().is_valid
    assert not make_target(host="").is_valid
    assert not make_target(username="").is_valid
    assert not make_target(port=0).is_valid


def test_target_record():
    target = make_target(port=2222, base_path="/srv", auth_method="sshKey")

    record = target.to_record()

    assert record["displayName"] == "Example"
    assert record["basePath"] == "/srv"
    assert record["authMethod"] == "sshKey"
    assert RemoteTarget.from_record(record) == target


def test_target_record_invalid():
    record = make_target().to_record()

    with pytest.raises(ValueError):
        RemoteTarget.from_record(dict(record, id="not-a-uuid"))

    with pytest.raises(ValueError):
        RemoteTarget.from_record(dict(record, authMethod="kerberos"))


def test_empty_registry(registry):
    assert registry.load_all() == []
    assert registry.get(str(uuid.uuid4())) is None


def test_add_and_get(registry):
    target = make_target()
    registry.add(target)

    assert registry.load_all() == [target]
    assert registry.get(target.id) == target


def test_add_persists(tmp_path, registry, credentials):
    target = make_target()
    registry.add(target)

    reopened = TargetRegistry(str(tmp_path / "state" / "targets.json"), credentials)

    assert reopened.load_all() == [target]


def test_add_duplicate_id(registry):
    target = make_target()
    registry.add(target)

    with pytest.raises(ValueError):
        registry.add(make_target(id=target.id, host="other.com"))

    assert registry.load_all() == [target]


def test_add_invalid(registry):
    with pytest.raises(ValueError):
        registry.add(make_target(host=""))

    assert registry.load_all() == []


def test_update(registry):
    target = make_target()
    registry.add(target)

    target.host = "other.com"
    registry.update(target)

    assert registry.get(target.id).host == "other.com"


def test_update_unknown(registry):
    with pytest.raises(KeyError):
        registry.update(make_target())


def test_delete_cleans_up_credentials(registry, credentials):
    target = make_target()
    registry.add(target)
    credentials.save_password(target, "secret")

    registry.delete(target.id)

    assert registry.get(target.id) is None
    assert account_key(target) not in credentials


def test_only_delete_cleans_up_credentials(registry, credentials):
    target = make_target()
    credentials.save_password(target, "secret")

    registry.add(target)
    registry.update(make_target(id=target.id, host="other.com"))
    registry.load_all()

    assert credentials.load_password(target) == "secret"


def test_delete_unknown(registry, credentials):
    credentials.delete_password = mock.Mock()

    registry.delete(str(uuid.uuid4()))

    assert not credentials.delete_password.called


def test_bind(registry):
    target = make_target()
    registry.add(target)

    registry.bind(target.id, "mount-1")

    assert registry.mount_for(target.id) == "mount-1"
    assert registry.target_for_mount("mount-1") == target
    assert registry.target_for_mount("mount-2") is None

    # Binding again to the same mount is allowed
    registry.bind(target.id, "mount-1")


def test_bind_at_most_one_mount(registry):
    first = make_target()
    second = make_target(host="other.com")
    registry.add(first)
    registry.add(second)

    registry.bind(first.id, "mount-1")

    with pytest.raises(ValueError):
        registry.bind(first.id, "mount-2")

    with pytest.raises(ValueError):
        registry.bind(second.id, "mount-1")


def test_bind_unknown_target(registry):
    with pytest.raises(KeyError):
        registry.bind(str(uuid.uuid4()), "mount-1")


def test_unbind(registry):
    target = make_target()
    registry.add(target)
    registry.bind(target.id, "mount-1")

    registry.unbind(target.id)

    assert registry.mount_for(target.id) is None
    registry.bind(target.id, "mount-2")


def test_delete_removes_binding(registry):
    target = make_target()
    registry.add(target)
    registry.bind(target.id, "mount-1")

    registry.delete(target.id)

    assert registry.target_for_mount("mount-1") is None


def test_registry_file_format(tmp_path, registry):
    target = make_target()
    registry.add(target)
    registry.bind(target.id, "mount-1")

    data = json.loads((tmp_path / "state" / "targets.json").read_text())

    assert data["targets"] == [target.to_record()]
    assert data["mounts"] == {target.id: "mount-1"}


def write_legacy(tmp_path):
    (tmp_path / "legacy.ini").write_text(
        """
        [sftp]
        host = legacy.example.com
        port = 2222
        username = bob
        base_path = /data/
        """
    )


def test_migrate_legacy(tmp_path, registry, credentials):
    write_legacy(tmp_path)
    credentials._passwords["bob"] = "secret"

    target_id = registry.migrate_legacy()

    target = registry.get(target_id)
    assert target.host == "legacy.example.com"
    assert target.display_name == "legacy.example.com"
    assert target.port == 2222
    assert target.username == "bob"
    assert target.base_path == "/data"

    assert credentials.load_password(target) == "secret"
    assert "bob" not in credentials
    assert not (tmp_path / "legacy.ini").exists()


def test_migrate_legacy_at_most_once(tmp_path, registry):
    write_legacy(tmp_path)

    target_id = registry.migrate_legacy()
    registry.delete(target_id)

    write_legacy(tmp_path)

    assert registry.migrate_legacy() is None
    assert registry.load_all() == []


def test_migrate_nothing_is_remembered(tmp_path, registry):
    assert registry.migrate_legacy() is None

    write_legacy(tmp_path)

    assert registry.migrate_legacy() is None
    assert registry.load_all() == []


def test_migrate_into_populated_registry(tmp_path, registry):
    existing = make_target()
    registry.add(existing)
    write_legacy(tmp_path)

    assert registry.migrate_legacy() is None
    assert registry.load_all() == [existing]


def test_migrate_incomplete_legacy(tmp_path, registry):
    (tmp_path / "legacy.ini").write_text("[sftp]\nhost = legacy.example.com\n")

    assert registry.migrate_legacy() is None
    assert registry.load_all() == []


def test_migrate_password_failure_nonfatal(tmp_path, registry, credentials, caplog):
    caplog.set_level(logging.WARNING, logger="sftpbridge")

    write_legacy(tmp_path)
    credentials._passwords["bob"] = "secret"
    credentials.save_password = mock.Mock(side_effect=PermissionError("read-only"))

    target_id = registry.migrate_legacy()

    assert registry.get(target_id) is not None
    assert "failed to migrate password" in caplog.text
