"""Operating system image management on ostree-based devices."""

from __future__ import annotations

import json
import logging
import queue
from dataclasses import dataclass
from datetime import datetime, timezone

from edgeagent.config import DeviceConfigurationMessage, UpgradeStatus

log = logging.getLogger(__name__)

UNKNOWN_OS_IMAGE_ID = "unknown"
GREENBOOT_HEALTH_CHECK_FILE_NAME = "/etc/greenboot/check/required.d/greenboot-health-check.sh"
GREENBOOT_FAIL_FILE_NAME = "/etc/greenboot/red.d/bootfail.sh"
TIMEOUT_TO_GRACEFUL_REBOOT_SECONDS = 10.0
EDGE_CONF_FILE_NAME = "/etc/ostree/remotes.d/edge.conf"

STATUS_SUCCEEDED = "succeeded"
STATUS_FAILED = "failed"

GREENBOOT_FAIL_SCRIPT = """#!/bin/bash

echo "greenboot detected a boot failure" >> /var/roothome/greenboot.log
date >> /var/roothome/greenboot.log
grub2-editenv list | grep boot_counter >> /var/roothome/greenboot.log
echo "----------------" >> /var/roothome/greenboot.log
echo "" >> /var/roothome/greenboot.log"""

GREENBOOT_HEALTH_CHECK_SCRIPT = """
#!/bin/bash
if [ -x /usr/libexec/yggdrasil/device-worker ]; then
  echo "device-worker found, check passed!"
else
  echo "device-worker not found, check failed!"
  exit 1
fi

check_is_service_active(){
  local service=$1
  local sudo_params=$2
  local systemctl_params=$3
  n=0
  until [[ "$n" -ge 5 ]]
  do
    if [[ $(sudo $sudo_params systemctl is-active $systemctl_params $service) = "active" ]]; then
      echo "$1 is active, check passed!"
      return
    else
      echo "$1 is not active, retrying"
    fi
    n=$((n+1))
    sleep 1
  done
  echo "service $1 is not active"
  exit 1
}

params="-u flotta DBUS_SESSION_BUS_ADDRESS=unix:path=/run/user/$(id -u flotta)/bus"

check_is_service_active yggdrasild.service
check_is_service_active nftables.service
check_is_service_active podman.service "$params" "--user"
check_is_service_active podman.socket "$params" "--user"

exit 0"""


@dataclass
class Deployment:
    """One deployment listed by rpm-ostree."""

    checksum: str = ""
    timestamp: int = 0
    booted: bool = False

    @classmethod
    def from_dict(cls, data: dict) -> "Deployment":
        return cls(
            checksum=str(data.get("checksum", "")),
            timestamp=int(data.get("timestamp", 0)),
            booted=bool(data.get("booted", False)),
        )


def _format_time(timestamp: int) -> str:
    moment = datetime.fromtimestamp(timestamp, tz=timezone.utc)
    return moment.strftime("%Y-%m-%d %H:%M:%S +0000 UTC")


def _parse_deployments(raw: bytes | str) -> list[Deployment]:
    data = json.loads(raw)
    if not isinstance(data, dict):
        raise ValueError(f"unexpected status document: {data!r}")
    entries = data.get("deployments") or []
    if not isinstance(entries, list):
        raise ValueError("deployments is not a list")
    return [Deployment.from_dict(entry) for entry in entries]


class OSManager:
    """Tracks and upgrades the booted operating system commit."""

    def __init__(self, graceful_reboot_queue: queue.Queue, os_exec_commands) -> None:
        self.graceful_reboot_queue = graceful_reboot_queue
        self.graceful_reboot_completion_queue: queue.Queue = queue.Queue()
        self.graceful_reboot_timeout = TIMEOUT_TO_GRACEFUL_REBOOT_SECONDS
        self._commands = os_exec_commands
        self.enabled = os_exec_commands.is_rpm_ostree_available()
        if not self.enabled:
            log.warning("OS management is not available. OS configuration updates will have no effect.")
        self.automatically_upgrade = True
        self.os_commit = UNKNOWN_OS_IMAGE_ID
        self.requested_os_commit = UNKNOWN_OS_IMAGE_ID
        self.hosted_objects_url = ""
        self.last_upgrade_status = ""
        self.last_upgrade_time = ""

    def _update_os_status(self) -> None:
        try:
            raw = self._commands.rpm_ostree_status()
        except Exception as exc:
            log.error("failed to run 'rpm-ostree status', err: %s", exc)
            return
        try:
            deployments = _parse_deployments(raw)
        except (ValueError, TypeError, AttributeError) as exc:
            log.error("failed to unmarshal json, err: %s", exc)
            return
        if not deployments:
            log.error("no deployments in 'rpmostree status'")
            return

        for deployment in deployments:
            if deployment.booted:
                self.os_commit = deployment.checksum
                if self.requested_os_commit == UNKNOWN_OS_IMAGE_ID:
                    self.last_upgrade_time = _format_time(deployment.timestamp)
                    self.last_upgrade_status = STATUS_SUCCEEDED
            if deployment.checksum == self.requested_os_commit:
                self.last_upgrade_time = _format_time(deployment.timestamp)
                self.last_upgrade_status = STATUS_SUCCEEDED if deployment.booted else STATUS_FAILED

    def init(self, config: DeviceConfigurationMessage) -> None:
        self.update(config)

    def update(self, config: DeviceConfigurationMessage) -> None:
        """Apply the requested OS image; errors from the upgrade steps propagate."""
        new_info = config.configuration.os if config.configuration is not None else None
        if new_info is None:
            log.debug("No OS management configuration. Not updating.")
            return
        if not self.enabled:
            log.debug("OS management is not available. Not updating OS configuration")
            return

        if new_info.hosted_objects_url != self.hosted_objects_url:
            log.info("Hosted Images URL has been changed to %s", new_info.hosted_objects_url)
            try:
                self._commands.update_url_in_edge_remote(new_info.hosted_objects_url, EDGE_CONF_FILE_NAME)
            except Exception:
                log.error("Failed updating file edge.conf")
                raise
            self.hosted_objects_url = new_info.hosted_objects_url

        if new_info.commit_id == self.requested_os_commit:
            return

        log.info("The requested commit ID has been changed to %s", new_info.commit_id)
        self.requested_os_commit = new_info.commit_id

        if not self.automatically_upgrade:
            log.info("AutomaticallyUpgrade is false, upgrade should be triggered manually")
            return

        preview = self._commands.rpm_ostree_update_preview()
        if isinstance(preview, bytes):
            preview = preview.decode("utf-8", errors="replace")
        if new_info.commit_id not in preview:
            log.error("Failed to find the commit ID %s", new_info.commit_id)
            raise RuntimeError(f"cannot find the new commit ID. {new_info.commit_id}")

        try:
            self._update_greenboot_scripts()
        except Exception as exc:
            log.error("Failed to update Greenboot scripts, err: %s", exc)
            raise

        self._commands.rpm_ostree_upgrade()
        self._graceful_reboot_flow()
        self._commands.system_reboot()

    def _graceful_reboot_flow(self) -> None:
        log.info("Starting graceful reboot")
        self.graceful_reboot_queue.put(None)
        try:
            self.graceful_reboot_completion_queue.get(timeout=self.graceful_reboot_timeout)
        except queue.Empty:
            log.info("Timeout")
            return
        log.info("Graceful reboot completed")

    def get_upgrade_status(self) -> UpgradeStatus:
        if self.enabled:
            self._update_os_status()
        return UpgradeStatus(
            current_commit_id=self.os_commit,
            last_upgrade_time=self.last_upgrade_time,
            last_upgrade_status=self.last_upgrade_status,
        )

    def _update_greenboot_scripts(self) -> None:
        log.info("Update Greenboot scripts")
        self._commands.ensure_script_exists(GREENBOOT_HEALTH_CHECK_FILE_NAME, GREENBOOT_HEALTH_CHECK_SCRIPT)
        self._commands.ensure_script_exists(GREENBOOT_FAIL_FILE_NAME, GREENBOOT_FAIL_SCRIPT)