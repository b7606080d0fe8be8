"""Provisioning orchestrator.

Picks the filesystem strategy, lets it acquire the key, locate or create the
volume and mount it, then decrypts the optional extra file and creates the
configured directories below the mountpoint.
"""
from __future__ import annotations

from functools import partial
from pathlib import Path, PurePosixPath
from typing import Callable, Iterable, Optional

from volumesetup.config.settings import DECRYPTED_EXTRA_PATH, FS_BCACHEFS, FS_EXT4, Config
from volumesetup.domain.models import DerivedKey, ProvisionResult
from volumesetup.keys.acquire import acquire_key, decrypt_extra
from volumesetup.logging import operation_context
from volumesetup.storage import bcachefs, ext4
from volumesetup.storage.exceptions import ConfigError


STRATEGIES = {
    FS_EXT4: ext4.provision,
    FS_BCACHEFS: bcachefs.provision,
}


def ensure_dirs(mountpoint: Path, relative_dirs: Iterable[PurePosixPath]) -> list[Path]:
    """Create each directory (with parents) below ``mountpoint``.

    Raises:
        ConfigError: If an entry is absolute or escapes the mountpoint
    """
    created = []
    for relative in relative_dirs:
        relative = PurePosixPath(relative)
        if relative.is_absolute() or ".." in relative.parts:
            raise ConfigError(f"ensure_dirs entry must stay inside the mountpoint: {relative}")
        path = Path(mountpoint) / relative
        path.mkdir(parents=True, exist_ok=True)
        created.append(path)
    return created


def provision(
    config: Config,
    key_provider: Optional[Callable[[bool], Optional[str]]] = None,
    decrypted_path: Path = DECRYPTED_EXTRA_PATH,
) -> ProvisionResult:
    """Run one complete provisioning pass.

    Args:
        config: Resolved configuration
        key_provider: Override for key acquisition, called with ``confirm``
        decrypted_path: Where the extra decrypted file is written

    Returns:
        The strategy's result
    """
    strategy = STRATEGIES.get(config.fs)
    if strategy is None:
        raise ConfigError(f"Unknown filesystem: {config.fs}")
    get_key = key_provider or partial(
        acquire_key, config.encryption, poll_seconds=config.card_poll_seconds
    )

    with operation_context("provision", fs=config.fs) as log:
        log.info(f"Provisioning {config.fs} volume at {config.mountpoint}")
        result = strategy(config, get_key)
        log.info(f"Volume ready: {result.outcome.value}")

        mode = config.encryption
        if isinstance(mode, DerivedKey) and mode.decrypt_path is not None and result.key:
            decrypt_extra(mode.decrypt_path, result.key, decrypted_path)

        for path in ensure_dirs(config.mountpoint, config.ensure_dirs):
            log.debug(f"Ensured directory {path}")
    return result
