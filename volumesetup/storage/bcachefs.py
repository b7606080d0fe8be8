"""Multi-device bcachefs pool strategy.

A new pool is formatted across every unused disk with two replicas. An
existing pool is mounted (degraded if needed) and its membership reconciled:

    1. slots whose backing block device disappeared are read from sysfs
    2. every unused disk is added with the next free slot index
    3. every missing slot is removed
    4. data is re-replicated if anything was added

Device labels are ``<class>.d<index>`` where the class is ``hdd`` for
spinning (or unknown) disks and ``ssd`` otherwise.

If anything fails the mountpoint is force-unmounted so a half provisioned pool
is never left mounted.
"""
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Optional, Sequence, Union

from volumesetup.config.settings import Config
from volumesetup.domain.models import (
    BlockDevice,
    ProvisioningOutcome,
    ProvisionResult,
)
from volumesetup.logging import LoggerFactory
from volumesetup.storage.commands import run_command
from volumesetup.storage.devices import find_unused, human_size, list_devices
from volumesetup.storage.exceptions import ConfigError, SchemaError
from volumesetup.storage.mount import CleanupGuard, is_mounted, lazy_unmount


log = LoggerFactory.for_filesystem("bcachefs")

SYSFS_ROOT = Path("/sys/fs/bcachefs")
BY_UUID_DIR = Path("/dev/disk/by-uuid")
REPLICAS = 2
COMPRESSION = "zstd"
MOUNT_OPTIONS = "degraded,fsck,fix_errors"

KeyProvider = Callable[[bool], Optional[str]]


@dataclass
class PoolSlots:
    """Slot indices registered in a running pool."""

    present: list[int] = field(default_factory=list)
    missing: list[int] = field(default_factory=list)

    @property
    def last_index(self) -> int:
        return max(self.present + self.missing, default=0)


def superblock_exists(uuid: str) -> bool:
    """True if a bcachefs superblock with ``uuid`` is visible.

    Raises:
        ToolInvocationError: If the bcachefs tool cannot be run at all
    """
    result = run_command(
        ["bcachefs", "show-super", str(BY_UUID_DIR / uuid)],
        check=False,
        log_output=False,
    )
    return result.returncode == 0


def read_pool_slots(uuid: str, sysfs_root: Union[str, Path] = SYSFS_ROOT) -> PoolSlots:
    """Read ``dev-<N>`` entries of a mounted pool from sysfs.

    A slot without a ``block`` link has lost its device. Entries that don't
    parse are skipped with a warning.
    """
    pool_dir = Path(sysfs_root) / uuid
    try:
        entries = sorted(pool_dir.iterdir())
    except OSError as error:
        raise SchemaError("bcachefs sysfs", f"cannot read {pool_dir}: {error}") from error

    slots = PoolSlots()
    for entry in entries:
        if not entry.name.startswith("dev-"):
            continue
        suffix = entry.name[len("dev-"):]
        if not suffix.isdigit():
            log.warning(f"Error parsing device index from sysfs entry {entry.name}, skipping")
            continue
        index = int(suffix)
        if (entry / "block").exists():
            slots.present.append(index)
        else:
            log.warning(f"Pool slot {index} has no backing block device")
            slots.missing.append(index)
    return slots


def label_for(device: BlockDevice, index: int) -> str:
    return f"{device.rotational_class}.d{index}"


def mount_pool(uuid: str, mountpoint: Path, key: Optional[str]) -> None:
    if is_mounted(mountpoint):
        log.info(f"{mountpoint} is already mounted")
        return
    mountpoint.mkdir(parents=True, exist_ok=True)
    run_command(
        [
            "bcachefs",
            "mount",
            "--key-location=fail",
            "-o",
            MOUNT_OPTIONS,
            f"UUID={uuid}",
            str(mountpoint),
        ],
        input_data=key,
    )
    log.success(f"Mounted bcachefs {uuid} at {mountpoint}")


def format_pool(uuid: str, devices: Sequence[BlockDevice], key: Optional[str]) -> None:
    """Format a new pool across ``devices``.

    Raises:
        ConfigError: If fewer devices than replicas are available
    """
    if len(devices) < REPLICAS:
        raise ConfigError(
            f"bcachefs needs at least {REPLICAS} unused disks for {REPLICAS} replicas, "
            f"found {len(devices)}"
        )
    command = [
        "bcachefs",
        "format",
        f"--uuid={uuid}",
        "--force",
        f"--replicas={REPLICAS}",
        f"--metadata_replicas_required={REPLICAS}",
        f"--data_replicas_required={REPLICAS}",
        f"--compression={COMPRESSION}",
    ]
    if key is not None:
        command.append("--encrypted")
    for index, device in enumerate(devices):
        command.extend([f"--label={label_for(device, index)}", device.path])
    if any(not device.is_rotational for device in devices):
        command.extend(["--promote_target=ssd", "--foreground_target=ssd"])
    if any(device.is_rotational for device in devices):
        command.append("--background_target=hdd")

    log.info(
        f"Formatting bcachefs {uuid} on "
        + ", ".join(f"{d.path} ({human_size(d.size)})" for d in devices)
    )
    run_command(command, input_data=key)


def reconcile(mountpoint: Path, slots: PoolSlots, candidates: Sequence[BlockDevice]) -> bool:
    """Add new disks, drop missing slots, re-replicate.

    Returns:
        True if any device was added
    """
    next_index = slots.last_index
    for device in candidates:
        next_index += 1
        label = label_for(device, next_index)
        log.info(f"Adding {device.path} to pool as {label}")
        run_command(["bcachefs", "device", "add", "--label", label, str(mountpoint), device.path])

    for index in slots.missing:
        log.info(f"Removing missing pool slot {index}")
        run_command(["bcachefs", "device", "remove", str(index), str(mountpoint)])

    added = bool(candidates)
    if added:
        log.info("Re-replicating pool data")
        run_command(["bcachefs", "data", "rereplicate", str(mountpoint)])
    return added


def _release_mountpoint(mountpoint: Path) -> None:
    if is_mounted(mountpoint):
        lazy_unmount(mountpoint, force=True)


def provision(
    config: Config,
    get_key: KeyProvider,
    sysfs_root: Union[str, Path] = SYSFS_ROOT,
) -> ProvisionResult:
    """Ensure the bcachefs pool exists, is mounted and has every unused disk.

    Raises:
        ConfigError: If a new pool would have fewer than two disks
        ToolInvocationError: If a bcachefs command fails
    """
    uuid = config.outer_uuid
    mountpoint = config.mountpoint
    key = None

    with CleanupGuard(lambda: _release_mountpoint(mountpoint), "unmount failed pool") as guard:
        if superblock_exists(uuid):
            log.info(f"Found existing bcachefs pool {uuid}")
            outcome = ProvisioningOutcome.MOUNTED_EXISTING
            if config.encrypted:
                key = get_key(False)
            # devices can only be added or removed once mounted
            mount_pool(uuid, mountpoint, key)
            slots = read_pool_slots(uuid, sysfs_root)
            candidates = find_unused(list_devices(), exclude_uuids=[uuid])
            reconcile(mountpoint, slots, candidates)
        else:
            log.info(f"No bcachefs pool {uuid}, creating one")
            outcome = ProvisioningOutcome.FORMATTED_FRESH
            candidates = find_unused(list_devices(), exclude_uuids=[uuid])
            if len(candidates) < REPLICAS:
                raise ConfigError(
                    f"bcachefs needs at least {REPLICAS} unused disks, found {len(candidates)}"
                )
            if config.encrypted:
                key = get_key(True)
            format_pool(uuid, candidates, key)
            mount_pool(uuid, mountpoint, key)
        guard.cancel()

    return ProvisionResult(outcome, key)
