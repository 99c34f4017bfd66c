"""Mounting block devices as requested by the device configuration."""

from __future__ import annotations

import grp
import logging
import os
import pwd
import stat
import threading
from typing import Iterable

from edgeagent.config import DeviceConfigurationMessage, Mount
from edgeagent.mount_info import Execute, get_mounts, run_command

log = logging.getLogger(__name__)

FILESYSTEMS_FILE = "/etc/filesystems"
FLOTTA_GROUP = "flotta"
FLOTTA_USER = "flotta"


class MountError(Exception):
    """Raised when one or more mounts cannot be applied."""

    def __init__(self, message: str, errors: Iterable[Exception] = ()) -> None:
        super().__init__(message)
        self.errors = list(errors)


def default_mount_options() -> str:
    """Group and user options for the agent's account, or empty if it is missing."""
    try:
        group = grp.getgrnam(FLOTTA_GROUP)
        user = pwd.getpwnam(FLOTTA_USER)
    except KeyError:
        return ""
    return f"gid={group.gr_gid},uid={user.pw_uid}"


def create_manager(filesystems_file: str = FILESYSTEMS_FILE) -> "MountManager":
    """A manager that validates mount types against the filesystems file."""
    try:
        with open(filesystems_file, encoding="utf-8") as source:
            content = source.read()
    except OSError as exc:
        log.warning("Cannot list content of '%s': %s", filesystems_file, exc)
        raise MountError(f"cannot list content of '{filesystems_file}': {exc}") from exc
    return MountManager(content, run_command, default_mount_options())


def _is_equal(mount: Mount, other: Mount) -> bool:
    return (
        mount.device == other.device
        and mount.directory == other.directory
        and mount.type == other.type
        and mount.options == other.options
    )


class MountManager:
    """Keeps the configured block devices mounted."""

    def __init__(self, filesystems: str, execute: Execute | None = None, default_options: str = "") -> None:
        self.filesystems = filesystems
        self.default_options = default_options
        self._execute = execute or run_command
        self._lock = threading.Lock()

    def init(self, config: DeviceConfigurationMessage) -> None:
        self.update(config)

    def update(self, config: DeviceConfigurationMessage) -> None:
        """Mount every configured device; raises MountError listing the failures."""
        with self._lock:
            _, current = get_mounts(self._execute)
            requested = config.configuration.mounts if config.configuration is not None else []
            mounted: set[str] = set()
            errors: list[MountError] = []

            for mount in requested:
                if mount.directory in mounted:
                    error = MountError(
                        f"mount path '{mount.directory}' has already been mounted. Skipping mount path"
                    )
                    errors.append(error)
                    log.info("%s", error)
                    continue

                try:
                    self._validate(mount)
                except MountError as exc:
                    error = MountError(f"mount configuration '{mount}' not valid: {exc}")
                    errors.append(error)
                    log.warning("%s", error)
                    continue

                existing = current.get(mount.directory)
                if existing is not None:
                    if _is_equal(existing, mount):
                        log.debug("Device %s is already mounted at %s", mount.device, mount.directory)
                        mounted.add(mount.directory)
                        continue
                    try:
                        self._umount(existing)
                    except MountError as exc:
                        error = MountError(
                            f"cannot umount '{existing.directory}': {exc}. "
                            f"New configuration '{mount}' will not be mounted"
                        )
                        errors.append(error)
                        log.warning("%s", error)
                        continue
                    log.info("Device '%s' umounted", existing.directory)

                try:
                    self._mount(mount)
                except MountError as exc:
                    error = MountError(f"cannot mount '{mount.device}' on '{mount.directory}': {exc}")
                    errors.append(error)
                    log.error("%s", error)
                    continue

                log.info(
                    "Device '%s' mounted on '%s' with type '%s' and options '%s'",
                    mount.device, mount.directory, mount.type, mount.options,
                )
                mounted.add(mount.directory)

            if errors:
                raise MountError("; ".join(str(e) for e in errors), errors)

    def _validate(self, mount: Mount) -> None:
        """Check the type is known, the directory exists and the device is a block device."""
        if mount.type not in self.filesystems:
            raise MountError("mount type not supported")

        try:
            os.stat(mount.directory)
        except FileNotFoundError:
            raise MountError(f"directory '{mount.directory}' not found") from None
        except OSError as exc:
            raise MountError(f"failed to stat '{mount.directory}': '{exc}'") from exc

        try:
            info = os.lstat(mount.device)
        except FileNotFoundError:
            raise MountError(f"device '{mount.device}' not found") from None
        except OSError as exc:
            raise MountError(f"failed to stat '{mount.device}': '{exc}'") from exc

        if not stat.S_ISBLK(info.st_mode):
            raise MountError(f"device '{mount.device}' is not a block device")

    def _run(self, *args: str) -> None:
        _, stderr, exit_code = self._execute(*args)
        if exit_code != 0:
            raise MountError(stderr.strip() or f"exit status {exit_code}")

    def _mount(self, mount: Mount) -> None:
        options = mount.options or self.default_options
        args = ["mount", "-t", mount.type]
        if options:
            args += ["-o", options]
        args += [mount.device, mount.directory]
        self._run(*args)

    def _umount(self, mount: Mount) -> None:
        self._run("umount", "-f", mount.directory)