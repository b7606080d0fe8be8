"""Domain models for volume provisioning.

This package contains the type-safe objects shared by the storage, key and
provisioning layers.
"""

from __future__ import annotations

from .models import (
    BlockDevice,
    CardReaderState,
    DerivedKey,
    EncryptionMode,
    ExistingVolume,
    FreshCandidate,
    KeySource,
    KeySourceKind,
    NoEncryption,
    PinMode,
    ProvisioningOutcome,
    ProvisionResult,
    SharedKey,
    SmartcardUnlock,
    VolumeLocation,
)


__all__ = [
    "BlockDevice",
    "CardReaderState",
    "DerivedKey",
    "EncryptionMode",
    "ExistingVolume",
    "FreshCandidate",
    "KeySource",
    "KeySourceKind",
    "NoEncryption",
    "PinMode",
    "ProvisioningOutcome",
    "ProvisionResult",
    "SharedKey",
    "SmartcardUnlock",
    "VolumeLocation",
]
