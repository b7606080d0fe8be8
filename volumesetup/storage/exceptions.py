"""Custom exceptions for volume provisioning.

This module defines a hierarchy of exceptions for the provisioning run so that
the CLI can report a single, readable error chain and exit non-zero.

Exception Hierarchy:
    VolumeSetupError (base)
        ├── ToolInvocationError
        ├── SchemaError
        ├── ConfigError
        ├── KeyFileError
        ├── DecryptionError
        ├── DeviceTimeoutError
        └── ServiceError

Usage:
    from volumesetup.storage.exceptions import ToolInvocationError

    if result.returncode != 0:
        raise ToolInvocationError(command, result.returncode, result.stdout, result.stderr)
"""

from typing import Optional, Sequence


class VolumeSetupError(Exception):
    """Base exception for all provisioning operations."""


class ToolInvocationError(VolumeSetupError):
    """An external command failed to start or exited non-zero."""

    def __init__(
        self,
        command: Sequence[str],
        returncode: Optional[int],
        stdout: str = "",
        stderr: str = "",
        message: str = "",
    ):
        self.command = list(command)
        self.returncode = returncode
        self.stdout = stdout or ""
        self.stderr = stderr or ""
        cmd_str = " ".join(self.command)
        if returncode is None:
            msg = message or f"Failed to start command: {cmd_str}"
        else:
            msg = message or f"Command exited with code {returncode}: {cmd_str}"
            detail = self.stderr.strip() or self.stdout.strip()
            if detail:
                msg += f": {detail}"
        super().__init__(msg)

    @property
    def started(self) -> bool:
        """False when the command could not be executed at all."""
        return self.returncode is not None


class SchemaError(VolumeSetupError):
    """External tool output did not parse into the expected structure."""

    def __init__(self, source: str, reason: str):
        self.source = source
        self.reason = reason
        super().__init__(f"Unexpected output from {source}: {reason}")


class ConfigError(VolumeSetupError):
    """Configuration is invalid or the host cannot satisfy it."""


class KeyFileError(VolumeSetupError):
    """Key material is unreadable, not UTF-8, or not ASCII armored."""

    def __init__(self, path, reason: str):
        self.path = str(path)
        self.reason = reason
        super().__init__(f"Invalid key file {self.path}: {reason}")


class DecryptionError(VolumeSetupError):
    """PIN rejected, payload undecryptable, or unexpected decrypted payload."""


class DeviceTimeoutError(VolumeSetupError, TimeoutError):
    """A device node never appeared within the allowed attempts."""

    def __init__(self, path, attempts: int, message: str = ""):
        self.path = str(path)
        self.attempts = attempts
        super().__init__(
            message or f"{self.path} did not appear after {attempts} attempts"
        )


class ServiceError(VolumeSetupError):
    """The smartcard service failed in a way that cannot be recovered."""

    def __init__(self, message: str, code: Optional[int] = None):
        self.code = code
        if code is not None:
            message = f"{message} (code 0x{code & 0xFFFFFFFF:08X})"
        super().__init__(message)
