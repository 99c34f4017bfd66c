"""Commands that manage the ostree-based operating system image."""

from __future__ import annotations

import logging
import os
import subprocess

log = logging.getLogger(__name__)


def _output(*args: str) -> bytes:
    return subprocess.run(list(args), check=True, capture_output=True).stdout


class OsExecCommands:
    """Runs rpm-ostree and systemctl, and edits the files they rely on."""

    def is_rpm_ostree_available(self) -> bool:
        try:
            self.rpm_ostree_status()
        except (OSError, subprocess.CalledProcessError):
            return False
        return True

    def rpm_ostree_status(self) -> bytes:
        """The JSON status of the deployments."""
        try:
            return _output("rpm-ostree", "status", "--json")
        except (OSError, subprocess.CalledProcessError):
            log.error("failed to run 'rpm-ostree status'")
            raise

    def rpm_ostree_update_preview(self) -> bytes:
        try:
            return _output("rpm-ostree", "update", "--preview")
        except (OSError, subprocess.CalledProcessError) as exc:
            log.error("Failed to run 'rpm-ostree update --preview', err: %s", exc)
            raise

    def rpm_ostree_upgrade(self) -> None:
        try:
            _output("rpm-ostree", "upgrade")
        except (OSError, subprocess.CalledProcessError) as exc:
            log.error("Failed to run 'rpm-ostree upgrade', err: %s", exc)
            raise

    def system_reboot(self) -> None:
        try:
            _output("systemctl", "reboot")
        except (OSError, subprocess.CalledProcessError) as exc:
            log.error("failed to run 'systemctl reboot': %s", exc)
            raise

    def ensure_script_exists(self, file_name: str, script: str) -> None:
        """Write the script as an executable file unless the file already exists."""
        try:
            os.stat(file_name)
        except FileNotFoundError:
            path = os.path.normpath(file_name)
            with open(path, "w", encoding="utf-8") as target:
                target.write(script)
            os.chmod(path, 0o755)
            return
        log.info("File %s already exists", file_name)

    def update_url_in_edge_remote(self, new_url: str, remote_file_name: str) -> None:
        """Point every url= line of the remote configuration at the new URL."""
        with open(os.path.normpath(remote_file_name), encoding="utf-8") as source:
            lines = source.read().split("\n")
        lines = ["url=" + new_url if "url=" in line else line for line in lines]
        with open(remote_file_name, "w", encoding="utf-8") as target:
            target.write("\n".join(lines))