"""LUKS container management via cryptsetup.

The key is always written to cryptsetup's stdin (``--key-file=-``), never
passed on the command line.
"""
from pathlib import Path
from typing import Union

from volumesetup.logging import LoggerFactory
from volumesetup.storage.commands import run_command


log = LoggerFactory.for_encryption()

BY_UUID_DIR = Path("/dev/disk/by-uuid")
MAPPER_DIR = Path("/dev/mapper")


def mapper_path(mapper_name: str) -> Path:
    return MAPPER_DIR / mapper_name


def ensure_unlocked(outer_uuid: str, key: str, mapper_name: str = "persistent") -> Path:
    """Open the container with ``outer_uuid`` as ``/dev/mapper/<mapper_name>``.

    Does nothing when the mapping already exists.

    Raises:
        ToolInvocationError: If cryptsetup rejects the key or fails
    """
    mapped = mapper_path(mapper_name)
    if mapped.exists():
        log.debug(f"{mapped} already exists, not reopening")
        return mapped
    log.info(f"Unlocking LUKS container {outer_uuid} as {mapper_name}")
    run_command(
        [
            "cryptsetup",
            "open",
            "--key-file=-",
            str(BY_UUID_DIR / outer_uuid),
            mapper_name,
        ],
        input_data=key,
    )
    return mapped


def initialize(disk: Union[str, Path], key: str, outer_uuid: str) -> None:
    """Format ``disk`` as a LUKS2 container and stamp it with ``outer_uuid``.

    The caller waits for ``/dev/disk/by-uuid/<outer_uuid>`` afterwards.
    """
    log.info(f"Formatting {disk} as LUKS2 container")
    run_command(
        ["cryptsetup", "luksFormat", "--type=luks2", "--key-file=-", str(disk)],
        input_data=key,
    )
    run_command(["cryptsetup", "luksUUID", "--uuid", outer_uuid, str(disk)])
    log.info(f"Stamped {disk} with UUID {outer_uuid}")
