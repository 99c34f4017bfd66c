import os
import stat
import tempfile
from types import SimpleNamespace
from unittest import mock

import pytest

from edgeagent.config import DeviceConfiguration, DeviceConfigurationMessage, Mount
from edgeagent.mount import MountError, MountManager, create_manager, default_mount_options

FILESYSTEMS = "\next4\next3\next2\nnodev proc\nnodev devpts\niso9660\nvfat\nhfs\nhfsplus\n*\n"
LOOP0 = "/dev/fakeloop0"
LOOP1 = "/dev/fakeloop1"


class FakeExecutor:
    def __init__(self, listing="", failing=()):
        self.listing = listing
        self.failing = set(failing)
        self.calls = []

    def __call__(self, *args):
        self.calls.append(args)
        if args == ("mount",):
            return self.listing, "", 0
        if args[0] in self.failing:
            return "", "boom", 32
        return "", "", 0

    @property
    def actions(self):
        return [c for c in self.calls if c != ("mount",)]


def message(*mounts):
    return DeviceConfigurationMessage(configuration=DeviceConfiguration(mounts=list(mounts)))


@pytest.fixture
def mount_dir():
    path = tempfile.mkdtemp(prefix="mnt", dir="/tmp")
    yield path
    os.rmdir(path)


@pytest.fixture
def block_devices():
    real_lstat = os.lstat

    def fake_lstat(path, *args, **kwargs):
        if str(path) in (LOOP0, LOOP1):
            return os.stat_result((stat.S_IFBLK | 0o660, 0, 0, 0, 0, 0, 0, 0, 0, 0))
        return real_lstat(path, *args, **kwargs)

    with mock.patch("os.lstat", side_effect=fake_lstat):
        yield


@pytest.fixture
def regular_file(tmp_path):
    path = tmp_path / "chardevice"
    path.write_text("")
    return str(path)


def test_mount_block_device(mount_dir, block_devices):
    execute = FakeExecutor()
    manager = MountManager(FILESYSTEMS, execute)
    manager.update(message(Mount(device=LOOP0, directory=mount_dir, type="ext4")))
    assert execute.actions == [("mount", "-t", "ext4", LOOP0, mount_dir)]


def test_default_options_used_when_none_given(mount_dir, block_devices):
    execute = FakeExecutor()
    manager = MountManager(FILESYSTEMS, execute, "gid=1,uid=2")
    manager.init(message(Mount(device=LOOP0, directory=mount_dir, type="ext4")))
    assert execute.actions == [("mount", "-t", "ext4", "-o", "gid=1,uid=2", LOOP0, mount_dir)]


def test_configured_options_win(mount_dir, block_devices):
    execute = FakeExecutor()
    manager = MountManager(FILESYSTEMS, execute, "gid=1,uid=2")
    manager.update(message(Mount(device=LOOP0, directory=mount_dir, type="ext4", options="ro")))
    assert execute.actions == [("mount", "-t", "ext4", "-o", "ro", LOOP0, mount_dir)]


def test_do_not_mount_non_block_devices(mount_dir, regular_file):
    execute = FakeExecutor()
    manager = MountManager(FILESYSTEMS, execute)
    with pytest.raises(MountError, match="is not a block device"):
        manager.update(message(Mount(device=regular_file, directory=mount_dir, type="ext4")))
    assert execute.actions == []


def test_unmount_before_mounting_again(mount_dir, block_devices):
    execute = FakeExecutor(listing=f"{LOOP0} on {mount_dir} type ext4 (rw,relatime)\n")
    manager = MountManager(FILESYSTEMS, execute)
    manager.update(message(Mount(device=LOOP1, directory=mount_dir, type="ext4")))
    assert execute.actions == [
        ("umount", "-f", mount_dir),
        ("mount", "-t", "ext4", LOOP1, mount_dir),
    ]


def test_cannot_mount_on_a_folder_twice(mount_dir, block_devices):
    execute = FakeExecutor()
    manager = MountManager(FILESYSTEMS, execute)
    with pytest.raises(MountError) as info:
        manager.update(message(
            Mount(device=LOOP0, directory=mount_dir, type="ext4"),
            Mount(device=LOOP1, directory=mount_dir, type="ext4"),
        ))
    assert len(info.value.errors) == 1
    assert "already been mounted" in str(info.value.errors[0])
    assert execute.actions == [("mount", "-t", "ext4", LOOP0, mount_dir)]


def test_ignore_non_valid_mount_configuration(mount_dir, block_devices, regular_file):
    execute = FakeExecutor()
    manager = MountManager(FILESYSTEMS, execute)
    with pytest.raises(MountError) as info:
        manager.update(message(
            Mount(device=regular_file, directory=mount_dir, type="ext4"),
            Mount(device=LOOP0, directory=mount_dir, type="ext4"),
        ))
    assert len(info.value.errors) == 1
    assert execute.actions == [("mount", "-t", "ext4", LOOP0, mount_dir)]


def test_unsupported_type(mount_dir, block_devices):
    execute = FakeExecutor()
    manager = MountManager(FILESYSTEMS, execute)
    with pytest.raises(MountError, match="mount type not supported"):
        manager.update(message(Mount(device=LOOP0, directory=mount_dir, type="xfs")))
    assert execute.actions == []


def test_missing_directory(tmp_path, block_devices):
    missing = str(tmp_path / "absent")
    manager = MountManager(FILESYSTEMS, FakeExecutor())
    with pytest.raises(MountError, match="not found"):
        manager.update(message(Mount(device=LOOP0, directory=missing, type="ext4")))


def test_missing_device(mount_dir):
    manager = MountManager(FILESYSTEMS, FakeExecutor())
    with pytest.raises(MountError, match="device '/dev/fakeloop0' not found"):
        manager.update(message(Mount(device=LOOP0, directory=mount_dir, type="ext4")))


def test_umount_failure_skips_mount(mount_dir, block_devices):
    execute = FakeExecutor(listing=f"{LOOP0} on {mount_dir} type ext4 (rw)\n", failing={"umount"})
    manager = MountManager(FILESYSTEMS, execute)
    with pytest.raises(MountError, match="cannot umount"):
        manager.update(message(Mount(device=LOOP1, directory=mount_dir, type="ext4")))
    assert execute.actions == [("umount", "-f", mount_dir)]


def test_mount_failure_reported(mount_dir, block_devices):
    execute = FakeExecutor(failing={"mount"})
    execute.listing = ""
    manager = MountManager(FILESYSTEMS, execute)
    with pytest.raises(MountError, match="cannot mount"):
        manager.update(message(Mount(device=LOOP0, directory=mount_dir, type="ext4")))


def test_listing_failure_propagates():
    manager = MountManager(FILESYSTEMS, lambda *args: ("", "denied", 1))
    with pytest.raises(OSError, match="failed to list mounts"):
        manager.update(message())


def test_create_manager_reads_filesystems(tmp_path):
    path = tmp_path / "filesystems"
    path.write_text(FILESYSTEMS)
    manager = create_manager(str(path))
    assert manager.filesystems == FILESYSTEMS


def test_create_manager_missing_file(tmp_path):
    with pytest.raises(MountError, match="cannot list content"):
        create_manager(str(tmp_path / "absent"))


def test_default_mount_options_from_accounts():
    with mock.patch("grp.getgrnam", return_value=SimpleNamespace(gr_gid=1001)), \
            mock.patch("pwd.getpwnam", return_value=SimpleNamespace(pw_uid=1002)):
        assert default_mount_options() == "gid=1001,uid=1002"


def test_default_mount_options_missing_account():
    with mock.patch("grp.getgrnam", side_effect=KeyError("flotta")):
        assert default_mount_options() == ""