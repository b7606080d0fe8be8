"""Block device inventory and candidate selection using lsblk.

Device Detection:
    Uses ``lsblk --bytes --json --output-all --tree`` to enumerate every block
    device with its children. Each entry is converted into a
    :class:`~volumesetup.domain.models.BlockDevice`; entries missing a path or
    type raise :class:`SchemaError` rather than being skipped.

Filtering Logic:
    A disk is a provisioning candidate only when all of the following hold:

    1. Its type is "disk" (partitions, loops and mappers are never candidates)
    2. It is not attached through the USB subsystem
    3. Neither it nor any descendant is mounted
    4. It does not carry a UUID the caller asked to exclude

    Candidates are ordered by size, largest first. Equal sizes keep lsblk
    order.

Device Nodes:
    udev creates ``/dev/disk/by-uuid`` links and mapper nodes asynchronously,
    so :func:`wait_for_path` polls a bounded number of times.
"""
import os
import time
from pathlib import Path
from typing import Iterable, Optional, Sequence, Union

from volumesetup.domain.models import (
    BlockDevice,
    ExistingVolume,
    FreshCandidate,
    VolumeLocation,
)
from volumesetup.logging import LoggerFactory
from volumesetup.storage.commands import run_json
from volumesetup.storage.exceptions import (
    ConfigError,
    DeviceTimeoutError,
    SchemaError,
)

log = LoggerFactory.for_inventory()

LSBLK_COMMAND = ["lsblk", "--bytes", "--json", "--output-all", "--tree"]
DEFAULT_ATTEMPTS = 30
DEFAULT_INTERVAL = 1.0


def human_size(size_bytes):
    if size_bytes is None:
        return "0B"
    size = float(size_bytes)
    for unit in ["B", "KB", "MB", "GB", "TB"]:
        if size < 1024.0:
            return f"{size:.1f}{unit}"
        size /= 1024.0
    return f"{size:.1f}PB"


def parse_lsblk(data) -> list[BlockDevice]:
    """Convert the decoded lsblk document into BlockDevice trees.

    Raises:
        SchemaError: If the document lacks ``blockdevices`` or an entry is malformed
    """
    if not isinstance(data, dict) or not isinstance(data.get("blockdevices"), list):
        raise SchemaError("lsblk", "missing 'blockdevices' list")
    return [BlockDevice.from_lsblk_dict(device) for device in data["blockdevices"]]


def list_devices() -> list[BlockDevice]:
    """Return the current block device tree from lsblk.

    Raises:
        ToolInvocationError: If lsblk fails
        SchemaError: If lsblk output cannot be parsed
    """
    devices = parse_lsblk(run_json(LSBLK_COMMAND, log_output=False))
    log.debug(f"lsblk found {len(devices)} devices: {', '.join(d.path for d in devices) or 'none'}")
    return devices


def find_unused(
    devices: Iterable[BlockDevice],
    exclude_uuids: Iterable[str] = (),
) -> list[BlockDevice]:
    """Return unused non-USB whole disks, largest first."""
    excluded = set(exclude_uuids)
    candidates = []
    for device in devices:
        if device.type != "disk":
            continue
        if device.is_usb:
            log.debug(f"Skipping {device.path}: USB device")
            continue
        if device.in_use:
            log.debug(f"Skipping {device.path}: mounted")
            continue
        if device.uuid is not None and device.uuid in excluded:
            log.debug(f"Skipping {device.path}: excluded UUID {device.uuid}")
            continue
        candidates.append(device)
    # sorted() is stable, so equal sizes keep lsblk order
    return sorted(candidates, key=lambda device: device.size, reverse=True)


def find_by_uuid(devices: Iterable[BlockDevice], uuid: str) -> Optional[BlockDevice]:
    """Find the top-level device carrying ``uuid``."""
    for device in devices:
        if device.uuid == uuid:
            return device
        log.debug(f"{device.path}: UUID {device.uuid} does not match {uuid}")
    return None


def locate_existing_or_candidate(
    devices: Sequence[BlockDevice],
    outer_uuid: str,
) -> VolumeLocation:
    """Find the device holding ``outer_uuid`` or else the largest unused disk.

    Raises:
        ConfigError: If neither exists
    """
    existing = find_by_uuid(devices, outer_uuid)
    if existing is not None:
        log.info(f"Found existing volume {outer_uuid} on {existing.path}")
        return ExistingVolume(existing)

    candidates = find_unused(devices)
    if not candidates:
        raise ConfigError(
            f"No device with UUID {outer_uuid} and no unused disk to format"
        )
    candidate = candidates[0]
    log.info(
        f"No existing volume {outer_uuid}, selected {candidate.path} "
        f"({human_size(candidate.size)}) for formatting"
    )
    return FreshCandidate(candidate)


def path_appeared(
    path: Union[str, Path],
    attempts: int = DEFAULT_ATTEMPTS,
    interval: float = DEFAULT_INTERVAL,
) -> bool:
    """Poll for ``path`` to exist, sleeping ``interval`` between checks."""
    for attempt in range(1, attempts + 1):
        if os.path.exists(path):
            return True
        log.debug(f"Waiting for {path} ({attempt}/{attempts})")
        if attempt < attempts:
            time.sleep(interval)
    return False


def wait_for_path(
    path: Union[str, Path],
    attempts: int = DEFAULT_ATTEMPTS,
    interval: float = DEFAULT_INTERVAL,
) -> Path:
    """Like :func:`path_appeared` but raise when the attempts run out.

    Raises:
        DeviceTimeoutError: If the path never appears
    """
    if not path_appeared(path, attempts, interval):
        raise DeviceTimeoutError(path, attempts)
    return Path(path)
