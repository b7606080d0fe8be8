"""Mount management.

Two idempotent disciplines bring the volume onto its mountpoint. Neither keeps
any record of earlier runs; both re-inspect live state every boot.

Premount and move:
    The filesystem is mounted on a fresh sibling directory (``.mount_0``,
    ``.mount_1``, ...) and then moved onto the mountpoint with
    ``mount --move``. If the mount table already lists the mountpoint, the
    sibling mount and directory are rolled back. The sibling directory is
    always removed.

Unit status:
    The mountpoint's systemd mount unit is queried and ``systemd-mount`` is
    only called when the unit is not already active.

Rollback uses :class:`CleanupGuard`, a deferred callback that runs when its
``with`` block exits unless it was cancelled on the success path.
"""

import os
import re
from pathlib import Path
from typing import Callable, Union

from volumesetup.logging import LoggerFactory
from volumesetup.storage.commands import run_command, run_stdout
from volumesetup.storage.exceptions import (
    ConfigError,
    SchemaError,
    VolumeSetupError,
)


# Module logger
log = LoggerFactory.for_mount()

PREMOUNT_PREFIX = ".mount_"
MAX_PREMOUNT_SUFFIX = 1000
MOUNT_OPTIONS = "noatime"

_OCTAL_ESCAPE = re.compile(r"\\([0-7]{3})")

PathLike = Union[str, Path]


class CleanupGuard:
    """Run ``callback`` on scope exit unless :meth:`cancel` was called.

    Failures of the callback are logged at WARNING and never replace the
    exception that is already propagating.
    """

    def __init__(self, callback: Callable[[], None], description: str):
        self._callback = callback
        self._description = description
        self._cancelled = False

    def cancel(self) -> None:
        self._cancelled = True

    def __enter__(self) -> "CleanupGuard":
        return self

    def __exit__(self, exc_type, exc, tb) -> bool:
        if not self._cancelled:
            try:
                self._callback()
            except (OSError, VolumeSetupError) as error:
                log.warning(f"Failed to {self._description}: {error}")
        return False


def _unescape_mount_field(field: str) -> str:
    return _OCTAL_ESCAPE.sub(lambda match: chr(int(match.group(1), 8)), field)


def is_mounted(mountpoint: PathLike, mounts_file: PathLike = "/proc/mounts") -> bool:
    """Check the kernel mount table for ``mountpoint``."""
    target = str(mountpoint)
    try:
        with open(mounts_file, "r", encoding="utf-8") as mounts:
            for line in mounts:
                parts = line.split()
                if len(parts) > 1 and _unescape_mount_field(parts[1]) == target:
                    return True
    except FileNotFoundError:
        return os.path.ismount(target)
    return False


def lazy_unmount(path: PathLike, force: bool = False) -> None:
    """Detach ``path`` from the mount tree (``umount --lazy``)."""
    command = ["umount", "--lazy"]
    if force:
        command.append("--force")
    command.append(str(path))
    run_command(command)
    log.debug(f"Lazily unmounted {path}")


def resolve_parent(mountpoint: PathLike) -> tuple[Path, str]:
    """Split an absolute mountpoint into its existing parent and final name.

    Raises:
        ConfigError: If the mountpoint has no parent or no final name
    """
    mountpoint = Path(mountpoint)
    parent = mountpoint.parent
    if parent == mountpoint:
        raise ConfigError(f"Mountpoint too extreme - no parent directory: {mountpoint}")
    if not mountpoint.name or mountpoint.name in (".", ".."):
        raise ConfigError(f"Invalid mountpoint, no filename: {mountpoint}")
    if not parent.is_dir():
        raise ConfigError(f"Mountpoint parent {parent} is not a directory")
    return parent, mountpoint.name


def create_premount_dir(parent: Path) -> Path:
    """Create the first free ``.mount_N`` directory below ``parent``."""
    for index in range(MAX_PREMOUNT_SUFFIX):
        candidate = parent / f"{PREMOUNT_PREFIX}{index}"
        try:
            os.mkdir(candidate, 0o755)
        except FileExistsError:
            continue
        log.debug(f"Created premount directory {candidate}")
        return candidate
    raise VolumeSetupError(
        f"Exhausted all numeric suffixes trying to create a premount directory in {parent}"
    )


def _ensure_directory(path: Path) -> None:
    try:
        path.mkdir(exist_ok=True)
    except OSError as error:
        raise ConfigError(f"Cannot create mountpoint {path}: {error}") from error


def mount_atomic(device: PathLike, mountpoint: PathLike, fstype: str = "ext4") -> bool:
    """Mount ``device`` on a premount directory, then move it onto ``mountpoint``.

    The kernel refuses to rename a directory something is mounted on, so the
    mount itself is moved (``mount --move``) once the mount table shows the
    mountpoint is still free.

    Returns:
        True if this call mounted the filesystem, False if the mountpoint was
        already mounted (any premount mount is rolled back)

    Raises:
        ConfigError: If the mountpoint is unusable
        ToolInvocationError: If mounting or moving fails (after rollback)
    """
    mountpoint = Path(mountpoint)
    parent, _name = resolve_parent(mountpoint)
    if is_mounted(mountpoint):
        log.info(f"{mountpoint} is already mounted")
        return False
    premount = create_premount_dir(parent)

    with CleanupGuard(lambda: os.rmdir(premount), "remove premount directory"):
        run_command(["mount", "-t", fstype, "-o", MOUNT_OPTIONS, str(device), str(premount)])
        with CleanupGuard(lambda: lazy_unmount(premount), "unmount premount directory") as mount_guard:
            if is_mounted(mountpoint):
                log.info(f"{mountpoint} was mounted meanwhile, rolling back {premount}")
                return False
            _ensure_directory(mountpoint)
            run_command(["mount", "--move", str(premount), str(mountpoint)])
            mount_guard.cancel()

    log.success(f"Mounted {device} at {mountpoint}")
    return True


def unit_name_for(mountpoint: PathLike) -> str:
    """Return the systemd mount unit name for ``mountpoint``."""
    unit = run_stdout(["systemd-escape", "--path", "--suffix=mount", str(mountpoint)]).strip()
    if not unit:
        raise SchemaError("systemd-escape", f"empty unit name for {mountpoint}")
    return unit


def unit_active_state(unit: str) -> str:
    """Return the ``ActiveState`` of a systemd unit.

    Raises:
        SchemaError: If systemctl does not print ``ActiveState=<value>``
    """
    output = run_stdout(["systemctl", "show", "--property=ActiveState", unit]).strip()
    key, separator, value = output.partition("=")
    if not separator or key != "ActiveState":
        raise SchemaError("systemctl", f"unexpected ActiveState output for {unit}: {output!r}")
    return value


def mount_unit(device: PathLike, mountpoint: PathLike) -> bool:
    """Mount through a transient systemd mount unit unless it is already active.

    Returns:
        True if a mount was requested, False if the unit was already active
    """
    unit = unit_name_for(mountpoint)
    state = unit_active_state(unit)
    if state == "active":
        log.info(f"Mount unit {unit} is already active")
        return False
    log.debug(f"Mount unit {unit} is {state or 'unknown'}, requesting mount")
    run_command(
        [
            "systemd-mount",
            f"--options={MOUNT_OPTIONS}",
            "--collect",
            str(device),
            str(mountpoint),
        ]
    )
    log.success(f"Mounted {device} at {mountpoint} via {unit}")
    return True
