"""Single-device filesystem creation."""
from pathlib import Path
from typing import Union

from volumesetup.logging import LoggerFactory
from volumesetup.storage.commands import run_command
from volumesetup.storage.devices import (
    DEFAULT_ATTEMPTS,
    DEFAULT_INTERVAL,
    wait_for_path,
)


log = LoggerFactory.for_filesystem("ext4")

BY_UUID_DIR = Path("/dev/disk/by-uuid")


def format_ext4(
    device: Union[str, Path],
    uuid: str,
    attempts: int = DEFAULT_ATTEMPTS,
    interval: float = DEFAULT_INTERVAL,
) -> Path:
    """Create an ext4 filesystem stamped with ``uuid`` and wait for its node.

    Returns:
        The ``/dev/disk/by-uuid`` path of the new filesystem

    Raises:
        ToolInvocationError: If mkfs.ext4 fails
        DeviceTimeoutError: If the by-uuid link never appears
    """
    log.info(f"Formatting {device} as ext4 with UUID {uuid}")
    run_command(["mkfs.ext4", "-F", str(device), "-U", uuid])
    return wait_for_path(BY_UUID_DIR / uuid, attempts, interval)
