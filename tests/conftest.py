"""
Pytest configuration and shared fixtures for volumesetup tests.

Nothing here touches real devices: every external command goes through
``subprocess.run`` inside :mod:`volumesetup.storage.commands`, which the
``fake_runner`` fixture replaces with a scripted recorder.
"""

import errno
import json
import os
import subprocess
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

import pytest

from volumesetup.config.settings import INNER_UUID, OUTER_UUID


GIB = 1024**3

_real_rename = os.rename


# ==============================================================================
# lsblk Fixtures
# ==============================================================================


def lsblk_device(
    path: str,
    size: int = 100 * GIB,
    type: str = "disk",
    subsystems: str = "block:scsi:pci",
    uuid: Optional[str] = None,
    rota: Any = True,
    mountpoints: Optional[List[Optional[str]]] = None,
    children: Optional[List[Dict[str, Any]]] = None,
) -> Dict[str, Any]:
    """Build one lsblk ``--json --output-all --tree`` entry."""
    device = {
        "name": path.rsplit("/", 1)[-1],
        "path": path,
        "size": size,
        "type": type,
        "subsystems": subsystems,
        "uuid": uuid,
        "rota": rota,
        "mountpoints": mountpoints if mountpoints is not None else [None],
    }
    if children:
        device["children"] = children
    return device


@pytest.fixture
def system_disk() -> Dict[str, Any]:
    """The disk the OS runs from: mounted through a partition."""
    return lsblk_device(
        "/dev/nvme0n1",
        size=500 * GIB,
        rota=False,
        subsystems="block:nvme:pci",
        children=[
            lsblk_device("/dev/nvme0n1p1", size=1 * GIB, type="part", mountpoints=["/boot"]),
            lsblk_device("/dev/nvme0n1p2", size=499 * GIB, type="part", mountpoints=["/"]),
        ],
    )


@pytest.fixture
def usb_stick() -> Dict[str, Any]:
    return lsblk_device("/dev/sdz", size=32 * GIB, subsystems="block:scsi:usb:pci")


@pytest.fixture
def blank_disk() -> Dict[str, Any]:
    """An unused 100GB spinning SATA disk."""
    return lsblk_device("/dev/sdb", size=100 * GIB)


@pytest.fixture
def luks_disk() -> Dict[str, Any]:
    """A disk already carrying the default outer UUID, container closed."""
    return lsblk_device("/dev/sdb", size=100 * GIB, uuid=OUTER_UUID)


def lsblk_json(*devices: Dict[str, Any]) -> str:
    return json.dumps({"blockdevices": list(devices)})


# ==============================================================================
# Fake Command Runner
# ==============================================================================


@dataclass
class FakeCall:
    argv: List[str]
    input: Any = None
    kwargs: Dict[str, Any] = field(default_factory=dict)


@dataclass
class FakeResponse:
    stdout: Any = ""
    stderr: Any = ""
    returncode: int = 0
    effect: Optional[Callable[[List[str]], None]] = None


class FakeRunner:
    """Scripted stand-in for ``subprocess.run``.

    Responses are matched on an argv prefix; the most recently registered
    match wins. Unmatched commands succeed with empty output.
    """

    def __init__(self):
        self.calls: List[FakeCall] = []
        self._responses: List[tuple] = []

    def on(self, *prefix: str, stdout: Any = "", stderr: Any = "", returncode: int = 0, effect=None):
        self._responses.append((tuple(prefix), FakeResponse(stdout, stderr, returncode, effect)))
        return self

    def __call__(self, command, input=None, text=True, capture_output=True, check=False, **kwargs):
        argv = [str(part) for part in command]
        self.calls.append(FakeCall(argv, input, kwargs))
        response = FakeResponse()
        for prefix, candidate in reversed(self._responses):
            if tuple(argv[: len(prefix)]) == prefix:
                response = candidate
                break
        if response.effect is not None:
            response.effect(argv)
        stdout, stderr = response.stdout, response.stderr
        if text:
            stdout = stdout.decode() if isinstance(stdout, bytes) else stdout
            stderr = stderr.decode() if isinstance(stderr, bytes) else stderr
        else:
            stdout = stdout.encode() if isinstance(stdout, str) else stdout
            stderr = stderr.encode() if isinstance(stderr, str) else stderr
        return subprocess.CompletedProcess(argv, response.returncode, stdout, stderr)

    def commands(self, *prefix: str) -> List[List[str]]:
        """Return argv lists of recorded calls starting with ``prefix``."""
        return [call.argv for call in self.calls if tuple(call.argv[: len(prefix)]) == prefix]

    def find(self, *prefix: str) -> FakeCall:
        matches = [call for call in self.calls if tuple(call.argv[: len(prefix)]) == prefix]
        assert len(matches) == 1, f"expected one {prefix} call, got {len(matches)}"
        return matches[0]


@pytest.fixture
def fake_runner(mocker) -> FakeRunner:
    runner = FakeRunner()
    mocker.patch("volumesetup.storage.commands.subprocess.run", side_effect=runner)
    return runner


class FakeMounts:
    """Emulates mount/umount on real temporary directories.

    ``mount`` drops a marker file into the target, ``mount --move`` carries the
    marker over and ``umount`` removes it, so a directory is "mounted" while it
    contains the marker. Like the kernel, renaming a mounted directory fails
    with EBUSY.
    """

    MARKER = ".mounted-from"

    def __init__(self):
        self.mounted = 0
        self.unmounted = 0
        self.moved = 0

    def mount(self, argv: List[str]) -> None:
        if argv[1] == "--move":
            source, target = argv[2], argv[3]
            assert os.path.isdir(target), f"mount --move target {target} missing"
            os.replace(f"{source}/{self.MARKER}", f"{target}/{self.MARKER}")
            self.moved += 1
            return
        target = argv[-1]
        with open(f"{target}/{self.MARKER}", "w", encoding="utf-8") as marker:
            marker.write(argv[-2])
        self.mounted += 1

    def umount(self, argv: List[str]) -> None:
        os.remove(f"{argv[-1]}/{self.MARKER}")
        self.unmounted += 1

    def is_mounted(self, path, mounts_file=None) -> bool:
        return os.path.exists(f"{path}/{self.MARKER}")

    def rename(self, source, target) -> None:
        if self.is_mounted(source):
            raise OSError(errno.EBUSY, "Device or resource busy", str(source))
        _real_rename(source, target)

    @property
    def active(self) -> int:
        return self.mounted - self.unmounted


@pytest.fixture
def fake_mounts(fake_runner, mocker) -> FakeMounts:
    mounts = FakeMounts()
    fake_runner.on("mount", effect=mounts.mount)
    fake_runner.on("umount", effect=mounts.umount)
    mocker.patch("volumesetup.storage.mount.is_mounted", side_effect=mounts.is_mounted)
    mocker.patch("os.rename", side_effect=mounts.rename)
    return mounts


# ==============================================================================
# Misc
# ==============================================================================


@pytest.fixture(autouse=True)
def no_sleep(mocker):
    """Device waits and PIN retries never really sleep in tests."""
    return mocker.patch("time.sleep")


@pytest.fixture
def uuids():
    return {"outer": OUTER_UUID, "inner": INNER_UUID}
