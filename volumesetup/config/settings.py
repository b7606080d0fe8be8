"""Configuration loading.

The configuration is a JSON document resolved once at startup into an
immutable :class:`Config`. Enums are externally tagged like serde's default
representation: a bare string for unit variants (``"none"``), a single-key
object for variants carrying data (``{"shared_key": {...}}``).
"""

from __future__ import annotations

import json
import os
from dataclasses import dataclass, field
from pathlib import Path, PurePosixPath
from typing import Any, Optional

from volumesetup.domain.models import (
    DerivedKey,
    EncryptionMode,
    KeySource,
    KeySourceKind,
    NoEncryption,
    PinMode,
    SharedKey,
    SmartcardUnlock,
)
from volumesetup.storage.exceptions import ConfigError


# Default values - use these constants instead of hardcoding values elsewhere
OUTER_UUID = "3d02cfd4-968a-4fe4-a2a0-fe84614485f6"
INNER_UUID = "0afee777-4fca-45c6-9bed-64bf3091536b"
DEFAULT_MOUNTPOINT = Path("/mnt/persistent")
DEFAULT_MAPPER_NAME = "persistent"
DEFAULT_WAIT_ATTEMPTS = 30
DEFAULT_WAIT_INTERVAL = 1.0
DEFAULT_CARD_POLL_SECONDS = 10.0
DECRYPTED_EXTRA_PATH = Path("/run/volumesetup_decrypted")

FS_EXT4 = "ext4"
FS_BCACHEFS = "bcachefs"
MOUNT_MODE_ATOMIC = "atomic"
MOUNT_MODE_SYSTEMD = "systemd"

_TOP_LEVEL_KEYS = {
    "$schema",
    "debug",
    "uuid",
    "inner_uuid",
    "encryption",
    "fs",
    "mountpoint",
    "ensure_dirs",
    "mount_mode",
    "mapper_name",
    "device_wait",
    "card_poll_seconds",
}
_ENCRYPTION_ALIASES = {
    "direct_key": "shared_key",
    "indirect_key": "derived_key",
}


@dataclass(frozen=True)
class DeviceWait:
    """Bounded polling policy for device nodes that appear asynchronously."""

    attempts: int = DEFAULT_WAIT_ATTEMPTS
    interval_seconds: float = DEFAULT_WAIT_INTERVAL


@dataclass(frozen=True)
class Config:
    fs: str = FS_BCACHEFS
    encryption: EncryptionMode = field(default_factory=NoEncryption)
    outer_uuid: str = OUTER_UUID
    inner_uuid: str = INNER_UUID
    mountpoint: Path = DEFAULT_MOUNTPOINT
    ensure_dirs: tuple[PurePosixPath, ...] = ()
    mount_mode: str = MOUNT_MODE_SYSTEMD
    mapper_name: str = DEFAULT_MAPPER_NAME
    device_wait: DeviceWait = field(default_factory=DeviceWait)
    card_poll_seconds: float = DEFAULT_CARD_POLL_SECONDS
    debug: bool = False

    @property
    def encrypted(self) -> bool:
        return not isinstance(self.encryption, NoEncryption)


def load_config(path: Path) -> Config:
    """Read and validate a JSON configuration file.

    Raises:
        ConfigError: If the file is unreadable or invalid
    """
    try:
        raw = Path(path).read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as error:
        raise ConfigError(f"Couldn't read config {path}: {error}") from error
    try:
        data = json.loads(raw)
    except json.JSONDecodeError as error:
        raise ConfigError(f"Config {path} is not valid JSON: {error}") from error
    return parse_config(data)


def parse_config(data: Any) -> Config:
    if not isinstance(data, dict):
        raise ConfigError("Config must be a JSON object")
    unknown = sorted(set(data) - _TOP_LEVEL_KEYS)
    if unknown:
        raise ConfigError(f"Unknown config keys: {', '.join(unknown)}")

    fs = _choice(data.get("fs", FS_BCACHEFS), "fs", (FS_EXT4, FS_BCACHEFS))
    mount_mode = _choice(
        data.get("mount_mode", MOUNT_MODE_SYSTEMD),
        "mount_mode",
        (MOUNT_MODE_ATOMIC, MOUNT_MODE_SYSTEMD),
    )
    outer_uuid = _optional_str(data, "uuid") or OUTER_UUID
    inner_uuid = _optional_str(data, "inner_uuid") or INNER_UUID
    mapper_name = _optional_str(data, "mapper_name") or DEFAULT_MAPPER_NAME
    if "/" in mapper_name:
        raise ConfigError(f"Invalid mapper_name: {mapper_name}")

    debug = data.get("debug", False)
    # `"debug": null` enables, like a bare flag
    if debug is None:
        debug = True
    if not isinstance(debug, bool):
        raise ConfigError("debug must be a boolean")

    return Config(
        fs=fs,
        encryption=parse_encryption(data.get("encryption", "none")),
        outer_uuid=outer_uuid,
        inner_uuid=inner_uuid,
        mountpoint=resolve_mountpoint(data.get("mountpoint")),
        ensure_dirs=_parse_ensure_dirs(data.get("ensure_dirs")),
        mount_mode=mount_mode,
        mapper_name=mapper_name,
        device_wait=_parse_device_wait(data.get("device_wait")),
        card_poll_seconds=_positive_number(
            data.get("card_poll_seconds", DEFAULT_CARD_POLL_SECONDS), "card_poll_seconds"
        ),
        debug=debug,
    )


def resolve_mountpoint(value: Any) -> Path:
    if value is None:
        return DEFAULT_MOUNTPOINT
    if not isinstance(value, str) or not value:
        raise ConfigError("mountpoint must be a non-empty string")
    path = Path(os.path.abspath(value))
    if path.parent == path:
        raise ConfigError(f"Mountpoint too extreme - no parent directory: {path}")
    if not path.name:
        raise ConfigError(f"Invalid mountpoint, no filename: {path}")
    return path


def parse_encryption(value: Any) -> EncryptionMode:
    tag, body = _variant(value, "encryption")
    tag = _ENCRYPTION_ALIASES.get(tag, tag)
    if tag == "none":
        _expect_unit(body, "encryption.none")
        return NoEncryption()
    if tag == "shared_key":
        args = _object(body, "encryption.shared_key", {"key_mode"})
        return SharedKey(source=_parse_key_source(args.get("key_mode")))
    if tag == "derived_key":
        args = _object(body, "encryption.derived_key", {"key_path", "key_mode", "decrypt"})
        key_path = args.get("key_path")
        if not isinstance(key_path, str) or not key_path:
            raise ConfigError("encryption.derived_key.key_path must be a path")
        decrypt = args.get("decrypt")
        if decrypt is not None and (not isinstance(decrypt, str) or not decrypt):
            raise ConfigError("encryption.derived_key.decrypt must be a path")
        return DerivedKey(
            key_path=Path(key_path),
            unlock=_parse_unlock(args.get("key_mode")),
            decrypt_path=Path(decrypt) if decrypt else None,
        )
    raise ConfigError(f"Unknown encryption mode: {tag}")


def _parse_key_source(value: Any) -> KeySource:
    tag, body = _variant(value, "key_mode")
    if tag == "stdin":
        _expect_unit(body, "key_mode.stdin")
        return KeySource(KeySourceKind.STDIN)
    if tag == "password":
        _expect_unit(body, "key_mode.password")
        return KeySource(KeySourceKind.PASSWORD)
    if tag == "file":
        if not isinstance(body, str) or not body:
            raise ConfigError("key_mode.file must be a path")
        return KeySource(KeySourceKind.FILE, Path(body))
    raise ConfigError(f"Unknown key_mode: {tag}")


def _parse_unlock(value: Any) -> SmartcardUnlock:
    tag, body = _variant(value, "key_mode")
    if tag != "smartcard":
        raise ConfigError(f"Unknown derived key_mode: {tag}")
    args = _object(body, "key_mode.smartcard", {"pin"})
    pin = args.get("pin")
    try:
        pin_mode = PinMode(pin)
    except ValueError as error:
        choices = ", ".join(mode.value for mode in PinMode)
        raise ConfigError(f"Unknown pin mode {pin!r}, expected one of: {choices}") from error
    return SmartcardUnlock(pin_mode=pin_mode)


def _parse_ensure_dirs(value: Any) -> tuple[PurePosixPath, ...]:
    if value is None:
        return ()
    if not isinstance(value, list):
        raise ConfigError("ensure_dirs must be a list of relative paths")
    dirs = []
    for entry in value:
        if not isinstance(entry, str) or not entry:
            raise ConfigError(f"Invalid ensure_dirs entry: {entry!r}")
        path = PurePosixPath(entry)
        if path.is_absolute() or ".." in path.parts:
            raise ConfigError(f"ensure_dirs entry must stay inside the mountpoint: {entry}")
        dirs.append(path)
    return tuple(dirs)


def _parse_device_wait(value: Any) -> DeviceWait:
    if value is None:
        return DeviceWait()
    args = _object(value, "device_wait", {"attempts", "interval_seconds"})
    attempts = args.get("attempts", DEFAULT_WAIT_ATTEMPTS)
    if isinstance(attempts, bool) or not isinstance(attempts, int) or attempts < 1:
        raise ConfigError("device_wait.attempts must be a positive integer")
    interval = _positive_number(
        args.get("interval_seconds", DEFAULT_WAIT_INTERVAL), "device_wait.interval_seconds"
    )
    return DeviceWait(attempts=attempts, interval_seconds=interval)


def _variant(value: Any, name: str) -> tuple[str, Any]:
    if isinstance(value, str):
        return value, None
    if isinstance(value, dict) and len(value) == 1:
        ((tag, body),) = value.items()
        return tag, body
    raise ConfigError(f"{name} must be a string or a single-key object")


def _expect_unit(body: Any, name: str) -> None:
    if body not in (None, {}):
        raise ConfigError(f"{name} takes no arguments")


def _object(value: Any, name: str, allowed: set[str]) -> dict[str, Any]:
    if not isinstance(value, dict):
        raise ConfigError(f"{name} must be an object")
    unknown = sorted(set(value) - allowed)
    if unknown:
        raise ConfigError(f"Unknown keys in {name}: {', '.join(unknown)}")
    return value


def _choice(value: Any, name: str, choices: tuple[str, ...]) -> str:
    if value not in choices:
        raise ConfigError(f"{name} must be one of: {', '.join(choices)} (got {value!r})")
    return value


def _optional_str(data: dict[str, Any], key: str) -> Optional[str]:
    value = data.get(key)
    if value is not None and (not isinstance(value, str) or not value):
        raise ConfigError(f"{key} must be a non-empty string")
    return value


def _positive_number(value: Any, name: str) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)) or value <= 0:
        raise ConfigError(f"{name} must be a positive number")
    return float(value)
