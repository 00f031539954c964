"""Pytest configuration and shared fixtures."""

import pytest
import yaml

from restic_service import config, invocation, ssh_keys


@pytest.fixture
def tool_dir(tmp_path, monkeypatch):
    """Create fake restic and rclone executables and make them the only PATH entry."""
    bin_dir = tmp_path / "bin"
    bin_dir.mkdir()
    for tool in ("restic", "rclone"):
        tool_path = bin_dir / tool
        tool_path.write_text("#!/bin/sh\nexit 0\n")
        tool_path.chmod(0o755)
    monkeypatch.setenv("PATH", str(bin_dir))
    return bin_dir


@pytest.fixture
def conf_dir(tmp_path):
    """Create a configuration directory with an empty keys directory."""
    path = tmp_path / "conf"
    (path / "keys").mkdir(parents=True)
    return path


@pytest.fixture
def home(tmp_path, monkeypatch):
    """Point HOME to a temporary directory so the SSH configuration is isolated."""
    path = tmp_path / "home"
    path.mkdir()
    monkeypatch.setenv("HOME", str(path))
    return path


@pytest.fixture
def ssh_config(home):
    return home / ".ssh" / "config"


@pytest.fixture
def load_conf(conf_dir, tool_dir):
    """Return a function writing a configuration document and loading it."""

    def _load(document):
        conf_file = conf_dir / config.CONFIG_FILE_NAME
        conf_file.write_text(yaml.safe_dump(document))
        return config.load(conf_file)

    return _load


@pytest.fixture
def invocations(monkeypatch):
    """Record invocations instead of running them. Each run succeeds."""
    recorded = []

    def fake_run(inv):
        recorded.append(inv)
        return True

    monkeypatch.setattr(invocation, "run", fake_run)
    return recorded


@pytest.fixture
def live_keys(monkeypatch):
    """Keys returned by the (mocked) ssh-keyscan call."""
    keys = []
    monkeypatch.setattr(ssh_keys, "query_keys", lambda host: list(keys))
    return keys


@pytest.fixture
def pin_keys(conf_dir):
    """Return a function writing the pinned key file of a target."""

    def _pin(target_name, keys):
        ssh_keys.save_keys_to_file(
            conf_dir / "keys" / f"{target_name}.keys",
            [ssh_keys.PublicKey(*key) for key in keys],
            "backup.example.com",
        )

    return _pin


@pytest.fixture
def restic_b2_target():
    return {
        "name": "b2",
        "type": "restic-b2",
        "bucket": "backups",
        "path": "laptop",
        "id": "account-id",
        "key": "account-key",
        "password": "secret",
        "includes": ["/home", "/etc"],
    }


@pytest.fixture
def restic_sftp_target():
    return {
        "name": "nas",
        "type": "restic-sftp",
        "host": "backup.example.com",
        "username": "backup",
        "path": "/srv/restic",
        "password": "secret",
        "includes": ["/home"],
    }


@pytest.fixture
def restic_file_target(tmp_path):
    dest = tmp_path / "repository"
    dest.mkdir()
    return {
        "name": "usb",
        "type": "restic-file",
        "dest": str(dest),
        "password": "secret",
        "includes": ["/home"],
    }


@pytest.fixture
def rclone_b2_target(tmp_path):
    src = tmp_path / "pictures"
    src.mkdir()
    return {
        "name": "pictures",
        "type": "rclone-b2",
        "bucket": "media",
        "path": "pictures",
        "id": "account-id",
        "key": "account-key",
        "src": str(src),
    }


@pytest.fixture
def rsync_target():
    return {
        "name": "mirror",
        "type": "rsync",
        "host": "backup.example.com",
        "username": "backup",
        "source": "/srv/data/",
        "target": "/srv/mirror",
    }
