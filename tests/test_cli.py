"""Tests for the command line interface."""

import pytest
import yaml
from typer.testing import CliRunner

from restic_service import cli, ssh_keys


@pytest.fixture
def runner():
    return CliRunner()


@pytest.fixture
def write_conf(conf_dir, tool_dir):
    def _write(document):
        (conf_dir / "conf.yml").write_text(yaml.safe_dump(document))
        return conf_dir

    return _write


def test_whereami(runner, write_conf, restic_file_target, tmp_path):
    unplugged = {**restic_file_target, "name": "unplugged", "dest": str(tmp_path / "nope")}
    conf_dir = write_conf({"targets": [restic_file_target, unplugged]})

    result = runner.invoke(cli, ["--conf", str(conf_dir), "whereami"])

    assert result.exit_code == 0
    assert "usb: yes" in result.stdout
    assert "unplugged: no" in result.stdout


def test_invalid_configuration_exits(runner, write_conf):
    conf_dir = write_conf({"targets": [{"name": "test"}]})
    result = runner.invoke(cli, ["--conf", str(conf_dir), "whereami"])
    assert result.exit_code == 1


def test_list(runner, write_conf, restic_file_target):
    conf_dir = write_conf({"bandwidth_limit": "2M", "targets": [restic_file_target]})
    result = runner.invoke(cli, ["--conf", str(conf_dir), "list"])
    assert result.exit_code == 0
    assert "usb (restic-file, 2.0 MB/s)" in result.stdout


def test_sync_selected_targets(
    runner, write_conf, restic_file_target, rclone_b2_target, invocations
):
    conf_dir = write_conf({"targets": [restic_file_target, rclone_b2_target]})
    result = runner.invoke(cli, ["--conf", str(conf_dir), "sync", "usb"])

    assert result.exit_code == 0
    (inv,) = invocations
    assert "backup" in inv.args


def test_forget_skips_targets_without_retention(
    runner, write_conf, restic_file_target, rclone_b2_target, invocations
):
    conf_dir = write_conf({"targets": [restic_file_target, rclone_b2_target]})
    result = runner.invoke(cli, ["--conf", str(conf_dir), "forget"])

    assert result.exit_code == 0
    assert "pictures does not support forget" in result.stdout
    (inv,) = invocations
    assert "forget" in inv.args


def test_sync_continues_after_a_missing_tool(
    runner, write_conf, restic_file_target, rclone_b2_target, tmp_path, invocations
):
    conf_dir = write_conf(
        {
            "tools": {"restic": str(tmp_path / "nope")},
            "targets": [restic_file_target, rclone_b2_target],
        }
    )
    result = runner.invoke(cli, ["--conf", str(conf_dir), "sync"])

    assert result.exit_code == 0
    (inv,) = invocations
    assert "sync" in inv.args


def test_trust_pins_the_live_keys(
    runner, write_conf, restic_sftp_target, live_keys, conf_dir
):
    live_keys.append(ssh_keys.PublicKey("ssh-ed25519", "AAAA"))
    write_conf({"targets": [restic_sftp_target]})

    result = runner.invoke(cli, ["--conf", str(conf_dir), "trust", "nas"])

    assert result.exit_code == 0
    assert (conf_dir / "keys" / "nas.keys").read_text() == (
        "backup.example.com ssh-ed25519 AAAA\n"
    )


def test_trust_rejects_targets_without_ssh(runner, write_conf, restic_file_target):
    conf_dir = write_conf({"targets": [restic_file_target]})
    result = runner.invoke(cli, ["--conf", str(conf_dir), "trust", "usb"])
    assert result.exit_code == 1


def test_missing_keyscan_only_skips_that_target(
    runner, write_conf, rsync_target, restic_file_target, invocations
):
    # tool_dir puts no ssh-keyscan on PATH
    conf_dir = write_conf({"targets": [rsync_target, restic_file_target]})
    result = runner.invoke(cli, ["--conf", str(conf_dir), "sync"])

    assert result.exit_code == 0
    assert "mirror is not available" in result.stdout
    (inv,) = invocations
    assert "backup" in inv.args


def test_whereami_with_missing_keyscan(
    runner, write_conf, rsync_target, restic_file_target
):
    conf_dir = write_conf({"targets": [rsync_target, restic_file_target]})
    result = runner.invoke(cli, ["--conf", str(conf_dir), "whereami"])

    assert result.exit_code == 0
    assert "mirror: no" in result.stdout
    assert "usb: yes" in result.stdout
