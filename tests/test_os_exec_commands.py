import os
import stat
import subprocess
from unittest import mock

import pytest

from edgeagent.os_exec_commands import OsExecCommands


def completed(args, stdout=b""):
    return subprocess.CompletedProcess(args, 0, stdout=stdout, stderr=b"")


def test_status_runs_rpm_ostree_json():
    with mock.patch("subprocess.run", return_value=completed([], b'{"deployments": []}')) as run:
        out = OsExecCommands().rpm_ostree_status()
    assert out == b'{"deployments": []}'
    assert run.call_args.args[0] == ["rpm-ostree", "status", "--json"]


def test_available_when_status_succeeds():
    with mock.patch("subprocess.run", return_value=completed([])):
        assert OsExecCommands().is_rpm_ostree_available() is True


def test_not_available_when_binary_missing():
    with mock.patch("subprocess.run", side_effect=FileNotFoundError("rpm-ostree")):
        assert OsExecCommands().is_rpm_ostree_available() is False


def test_update_preview_returns_output():
    with mock.patch("subprocess.run", return_value=completed([], b"abc")) as run:
        assert OsExecCommands().rpm_ostree_update_preview() == b"abc"
    assert run.call_args.args[0] == ["rpm-ostree", "update", "--preview"]


def test_upgrade_failure_raises():
    error = subprocess.CalledProcessError(1, ["rpm-ostree", "upgrade"])
    with mock.patch("subprocess.run", side_effect=error):
        with pytest.raises(subprocess.CalledProcessError):
            OsExecCommands().rpm_ostree_upgrade()


def test_reboot_runs_systemctl_and_raises_on_failure():
    error = subprocess.CalledProcessError(1, ["systemctl", "reboot"])
    with mock.patch("subprocess.run", side_effect=error) as run:
        with pytest.raises(subprocess.CalledProcessError):
            OsExecCommands().system_reboot()
    assert run.call_args.args[0] == ["systemctl", "reboot"]


def test_ensure_script_creates_executable(tmp_path):
    path = tmp_path / "check.sh"
    OsExecCommands().ensure_script_exists(str(path), "#!/bin/bash\nexit 0\n")
    assert path.read_text() == "#!/bin/bash\nexit 0\n"
    assert stat.S_IMODE(os.stat(path).st_mode) == 0o755


def test_ensure_script_keeps_existing_file(tmp_path):
    path = tmp_path / "check.sh"
    path.write_text("original")
    OsExecCommands().ensure_script_exists(str(path), "replacement")
    assert path.read_text() == "original"


def test_ensure_script_missing_directory_raises(tmp_path):
    with pytest.raises(FileNotFoundError):
        OsExecCommands().ensure_script_exists(str(tmp_path / "no" / "check.sh"), "x")


def test_update_url_replaces_url_lines(tmp_path):
    path = tmp_path / "edge.conf"
    path.write_text('[remote "edge"]\nurl=http://old.example.com\ngpg-verify=false\n')
    OsExecCommands().update_url_in_edge_remote("http://new.example.com", str(path))
    lines = path.read_text().split("\n")
    assert lines[0] == '[remote "edge"]'
    assert lines[1] == "url=http://new.example.com"
    assert lines[2] == "gpg-verify=false"
    assert len(lines) == 4


def test_update_url_missing_file(tmp_path):
    with pytest.raises(FileNotFoundError):
        OsExecCommands().update_url_in_edge_remote("http://new.example.com", str(tmp_path / "edge.conf"))