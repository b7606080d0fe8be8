"""Domain model for volume provisioning.

Type-safe objects built fresh on every run from live system state: the block
device tree reported by lsblk, the configured encryption mode, the smartcard
reader watch set and the outcome of a provisioning strategy.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Optional, Union

from volumesetup.storage.exceptions import SchemaError


# ==============================================================================
# Block Device Domain
# ==============================================================================


def _parse_bool(value: Any) -> Optional[bool]:
    # lsblk < 2.33 reports flags as "0"/"1" strings
    if value is None or isinstance(value, bool):
        return value
    if isinstance(value, int):
        return value != 0
    if isinstance(value, str) and value.strip() in ("0", "1"):
        return value.strip() == "1"
    raise ValueError(f"not a boolean flag: {value!r}")


@dataclass(frozen=True)
class BlockDevice:
    """A node of the lsblk device tree (disk, partition, mapper, ...)."""

    path: str  # e.g., "/dev/sda"
    size: int  # bytes
    type: str  # "disk", "part", "crypt", "loop", ...
    subsystems: frozenset[str] = frozenset()
    uuid: Optional[str] = None
    rota: Optional[bool] = None  # None = unknown, treated as spinning
    mountpoints: tuple[Optional[str], ...] = ()
    children: tuple[BlockDevice, ...] = ()

    @property
    def in_use(self) -> bool:
        """True if this device or any descendant is mounted somewhere."""
        if any(mountpoint is not None for mountpoint in self.mountpoints):
            return True
        return any(child.in_use for child in self.children)

    @property
    def is_rotational(self) -> bool:
        return True if self.rota is None else self.rota

    @property
    def is_usb(self) -> bool:
        return "usb" in self.subsystems

    @property
    def rotational_class(self) -> str:
        """Pool label class for the device: "hdd" or "ssd"."""
        return "hdd" if self.is_rotational else "ssd"

    @classmethod
    def from_lsblk_dict(cls, device: dict[str, Any]) -> BlockDevice:
        """Convert an lsblk ``--json --tree`` entry to a BlockDevice.

        Raises:
            SchemaError: If required keys are missing or have the wrong type
        """
        if not isinstance(device, dict):
            raise SchemaError("lsblk", f"device entry is not an object: {device!r}")
        try:
            path = device["path"]
            if not isinstance(path, str) or not path:
                raise ValueError(f"invalid path {path!r}")
            size = int(device.get("size") or 0)
            dev_type = device["type"]
            if not isinstance(dev_type, str):
                raise ValueError(f"invalid type {dev_type!r}")
            raw_subsystems = device.get("subsystems") or ""
            subsystems = frozenset(part for part in raw_subsystems.split(":") if part)
            uuid = device.get("uuid")
            if uuid is not None and not isinstance(uuid, str):
                raise ValueError(f"invalid uuid {uuid!r}")
            rota = _parse_bool(device.get("rota"))

            # lsblk >= 2.37 reports every mountpoint; older versions only one
            if "mountpoints" in device:
                raw_mountpoints = device["mountpoints"] or []
                if not isinstance(raw_mountpoints, list):
                    raise ValueError(f"invalid mountpoints {raw_mountpoints!r}")
            else:
                raw_mountpoints = [device.get("mountpoint")]
            mountpoints = tuple(mp or None for mp in raw_mountpoints)

            raw_children = device.get("children") or []
            if not isinstance(raw_children, list):
                raise ValueError(f"invalid children {raw_children!r}")
        except KeyError as error:
            raise SchemaError("lsblk", f"device entry missing {error}") from error
        except (TypeError, ValueError) as error:
            raise SchemaError("lsblk", f"device {device.get('path')}: {error}") from error

        return cls(
            path=path,
            size=size,
            type=dev_type,
            subsystems=subsystems,
            uuid=uuid or None,
            rota=rota,
            mountpoints=mountpoints,
            children=tuple(cls.from_lsblk_dict(child) for child in raw_children),
        )


@dataclass(frozen=True)
class ExistingVolume:
    """A device already stamped with the outer UUID."""

    device: BlockDevice


@dataclass(frozen=True)
class FreshCandidate:
    """The unused disk selected for formatting."""

    device: BlockDevice


VolumeLocation = Union[ExistingVolume, FreshCandidate]


# ==============================================================================
# Encryption Domain
# ==============================================================================


class PinMode(Enum):
    """How the smartcard PIN is obtained."""

    FACTORY_DEFAULT = "factory_default"
    TEXT = "text"
    NUMPAD = "numpad"


class KeySourceKind(Enum):
    STDIN = "stdin"
    FILE = "file"
    PASSWORD = "password"


@dataclass(frozen=True)
class KeySource:
    """Where a shared key comes from."""

    kind: KeySourceKind
    path: Optional[Path] = None  # only for FILE


@dataclass(frozen=True)
class SmartcardUnlock:
    pin_mode: PinMode


@dataclass(frozen=True)
class NoEncryption:
    pass


@dataclass(frozen=True)
class SharedKey:
    """The volume key is supplied directly."""

    source: KeySource


@dataclass(frozen=True)
class DerivedKey:
    """The volume key is an armored file decrypted by a smartcard."""

    key_path: Path
    unlock: SmartcardUnlock
    decrypt_path: Optional[Path] = None


EncryptionMode = Union[NoEncryption, SharedKey, DerivedKey]


# ==============================================================================
# Smartcard Domain
# ==============================================================================


@dataclass
class CardReaderState:
    """One entry of the PC/SC watch set."""

    name: str
    current_state: int = 0  # SCARD_STATE_UNAWARE
    event_state: int = 0
    atr: list[int] = field(default_factory=list)

    def sync_current_state(self) -> None:
        self.current_state = self.event_state


# ==============================================================================
# Provisioning Domain
# ==============================================================================


class ProvisioningOutcome(Enum):
    FORMATTED_FRESH = "formatted_fresh"
    MOUNTED_EXISTING = "mounted_existing"


@dataclass(frozen=True)
class ProvisionResult:
    """What a filesystem strategy did, and the key it used (if any)."""

    outcome: ProvisioningOutcome
    key: Optional[str] = field(default=None, repr=False)
