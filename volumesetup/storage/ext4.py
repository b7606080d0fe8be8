"""Single-device ext4 strategy, optionally inside a LUKS container.

Flows (outer = container or bare filesystem UUID, inner = filesystem inside
the opened container):

    fresh, plain       mkfs.ext4 <disk> -U <outer>, mount
    fresh, encrypted   luksFormat + luksUUID <outer>, open, mkfs.ext4 <inner>, mount
    existing, plain    mount /dev/disk/by-uuid/<outer>
    existing, encrypted
                       open, wait for <inner>; if it never shows up the
                       previous run was interrupted before mkfs, so format
                       it now; mount
"""
from pathlib import Path
from typing import Callable, Optional

from volumesetup.config.settings import MOUNT_MODE_SYSTEMD, Config
from volumesetup.domain.models import (
    ExistingVolume,
    ProvisioningOutcome,
    ProvisionResult,
)
from volumesetup.logging import LoggerFactory
from volumesetup.storage import encryption
from volumesetup.storage.devices import (
    list_devices,
    locate_existing_or_candidate,
    path_appeared,
    wait_for_path,
)
from volumesetup.storage.format import BY_UUID_DIR, format_ext4
from volumesetup.storage.mount import mount_atomic, mount_unit


log = LoggerFactory.for_filesystem("ext4")

KeyProvider = Callable[[bool], Optional[str]]


def _unlock(config: Config, key: str) -> Path:
    wait = config.device_wait
    mapped = encryption.ensure_unlocked(config.outer_uuid, key, config.mapper_name)
    return wait_for_path(mapped, wait.attempts, wait.interval_seconds)


def _format(config: Config, device, uuid: str) -> Path:
    wait = config.device_wait
    return format_ext4(device, uuid, wait.attempts, wait.interval_seconds)


def mount_filesystem(config: Config, device: Path) -> bool:
    """Mount with the configured discipline."""
    if config.mount_mode == MOUNT_MODE_SYSTEMD:
        return mount_unit(device, config.mountpoint)
    return mount_atomic(device, config.mountpoint, "ext4")


def provision(config: Config, get_key: KeyProvider) -> ProvisionResult:
    """Ensure an ext4 volume exists and is mounted at ``config.mountpoint``.

    Args:
        config: Resolved configuration
        get_key: Returns the volume key; called with ``confirm=True`` only
            when a new container is created

    Raises:
        ConfigError: If there is neither an existing volume nor a candidate
        ToolInvocationError: If cryptsetup, mkfs or mount fail
        DeviceTimeoutError: If a device node never appears
    """
    wait = config.device_wait
    location = locate_existing_or_candidate(list_devices(), config.outer_uuid)
    key = None

    if isinstance(location, ExistingVolume):
        outcome = ProvisioningOutcome.MOUNTED_EXISTING
        if config.encrypted:
            key = get_key(False)
            mapped = _unlock(config, key)
            inner = BY_UUID_DIR / config.inner_uuid
            if path_appeared(inner, wait.attempts, wait.interval_seconds):
                fs_device = inner
            else:
                log.warning(
                    f"Filesystem {config.inner_uuid} missing inside {mapped}, "
                    "formatting (interrupted previous run?)"
                )
                fs_device = _format(config, mapped, config.inner_uuid)
        else:
            fs_device = BY_UUID_DIR / config.outer_uuid
    else:
        outcome = ProvisioningOutcome.FORMATTED_FRESH
        disk = location.device.path
        if config.encrypted:
            key = get_key(True)
            encryption.initialize(disk, key, config.outer_uuid)
            wait_for_path(BY_UUID_DIR / config.outer_uuid, wait.attempts, wait.interval_seconds)
            mapped = _unlock(config, key)
            fs_device = _format(config, mapped, config.inner_uuid)
        else:
            fs_device = _format(config, disk, config.outer_uuid)

    mount_filesystem(config, fs_device)
    return ProvisionResult(outcome, key)
