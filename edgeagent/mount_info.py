"""Reading the host's current mounts from the output of the mount command."""

from __future__ import annotations

import logging
import re
import subprocess
from typing import Callable

from edgeagent.config import Mount

log = logging.getLogger(__name__)

Execute = Callable[..., "tuple[str, str, int]"]
"""Runs a command and returns its stdout, stderr and exit code."""

# matches a line such as "/dev/sda1 on /boot type ext4 (rw,relatime)"
MOUNT_FINDER = re.compile(
    r"(?P<dev>[a-z0-9\-./_]+)\s+\w+\s+(?P<dst>[a-z0-9\-./_]+)\s+\w+\s+"
    r"(?P<type>[a-z0-9\-._]+).*(?P<opts>\(.*\))"
)


def run_command(*args: str) -> tuple[str, str, int]:
    """Run a command and return its stdout, stderr and exit code."""
    try:
        proc = subprocess.run(list(args), capture_output=True, text=True)
    except OSError as exc:
        return "", str(exc), -1
    return proc.stdout, proc.stderr, proc.returncode


def parse_mount_entry(entry: str) -> Mount | None:
    """Parse one line of mount output; None when it does not match."""
    result = None
    for match in MOUNT_FINDER.finditer(entry):
        result = Mount(
            device=match.group("dev"),
            directory=match.group("dst"),
            type=match.group("type"),
            options=match.group("opts"),
        )
    return result


def get_mounts(execute: Execute | None = None) -> tuple[list[Mount], dict[str, Mount]]:
    """All host mounts, as a list and as a map keyed by directory.

    Raises OSError when the mount command fails.
    """
    execute = execute or run_command
    stdout, stderr, exit_code = execute("mount")
    if exit_code != 0:
        raise OSError(f"failed to list mounts: {stderr}")

    mounts: list[Mount] = []
    by_directory: dict[str, Mount] = {}
    for entry in stdout.split("\n"):
        if not entry:
            continue
        mount = parse_mount_entry(entry)
        if mount is None:
            log.warning("Cannot parse mount entry '%s'", entry)
            continue
        mounts.append(mount)
        by_directory[mount.directory] = mount
    return mounts, by_directory


def is_path_mounted(path: str) -> bool:
    """Whether something is mounted on the directory."""
    try:
        _, by_directory = get_mounts()
    except OSError:
        return False
    return path in by_directory