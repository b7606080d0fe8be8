"""Volume key acquisition for every configured encryption mode."""
import os
import sys
from pathlib import Path
from typing import BinaryIO, Callable, Optional, Union

from volumesetup.config.settings import DECRYPTED_EXTRA_PATH
from volumesetup.domain.models import (
    DerivedKey,
    EncryptionMode,
    KeySourceKind,
    NoEncryption,
    SharedKey,
)
from volumesetup.keys.armor import load_armored
from volumesetup.keys.prompt import ask_password
from volumesetup.keys.smartcard import DEFAULT_POLL_SECONDS, unlock_with_card
from volumesetup.logging import LoggerFactory
from volumesetup.storage.commands import run_command
from volumesetup.storage.exceptions import (
    ConfigError,
    DecryptionError,
    KeyFileError,
    ToolInvocationError,
)


log = LoggerFactory.for_keys()

PASSWORD_PROMPT = "Enter the password"
CONFIRM_PROMPT = "Confirm your password"
MISMATCH_WARNING = "Passwords didn't match, please try again.\n"


def read_key_file(path: Union[str, Path]) -> str:
    """Return the file content verbatim.

    Raises:
        KeyFileError: If the file is unreadable or not UTF-8
    """
    try:
        data = Path(path).read_bytes()
    except OSError as error:
        raise KeyFileError(path, f"unreadable ({error.strerror or error})") from error
    try:
        return data.decode("utf-8")
    except UnicodeDecodeError as error:
        raise KeyFileError(path, "key must be UTF-8") from error


def read_stdin_key(stream: Optional[BinaryIO] = None) -> str:
    stream = stream or sys.stdin.buffer
    data = stream.read()
    try:
        return data.decode("utf-8")
    except UnicodeDecodeError as error:
        raise KeyFileError("<stdin>", "key must be UTF-8") from error


def ask_new_password(confirm: bool, prompt: Callable[[str], str] = ask_password) -> str:
    """Prompt for a password, twice when ``confirm`` is set, until both match."""
    warning = ""
    while True:
        first = prompt(f"{warning}{PASSWORD_PROMPT}")
        if not confirm:
            return first
        second = prompt(CONFIRM_PROMPT)
        if first == second:
            return first
        log.warning("Passwords didn't match")
        warning = MISMATCH_WARNING


def acquire_key(
    mode: EncryptionMode,
    confirm: bool,
    *,
    prompt: Callable[[str], str] = ask_password,
    card_unlock: Callable[..., str] = unlock_with_card,
    poll_seconds: float = DEFAULT_POLL_SECONDS,
) -> Optional[str]:
    """Resolve the volume key for ``mode``.

    Args:
        mode: Configured encryption mode
        confirm: Ask for an interactive password twice (fresh volumes)
        prompt: Password prompt, for tests
        card_unlock: Smartcard unlock loop, for tests
        poll_seconds: Card status poll interval

    Returns:
        The key, or None when the volume is not encrypted
    """
    if isinstance(mode, NoEncryption):
        return None
    if isinstance(mode, SharedKey):
        source = mode.source
        if source.kind is KeySourceKind.FILE:
            log.info(f"Reading volume key from {source.path}")
            return read_key_file(source.path)
        if source.kind is KeySourceKind.STDIN:
            log.info("Reading volume key from stdin")
            return read_stdin_key()
        log.info("Asking for volume password")
        return ask_new_password(confirm, prompt)
    if isinstance(mode, DerivedKey):
        ciphertext = load_armored(mode.key_path)
        log.info(f"Loaded encrypted volume key {mode.key_path}, waiting for smartcard")
        return card_unlock(
            ciphertext,
            mode.unlock.pin_mode,
            prompt=prompt,
            poll_seconds=poll_seconds,
        )
    raise ConfigError(f"Unsupported encryption mode: {mode!r}")


def decrypt_extra(
    source: Union[str, Path],
    key: str,
    destination: Union[str, Path] = DECRYPTED_EXTRA_PATH,
    gpg: str = "gpg",
) -> Path:
    """Decrypt ``source`` with ``key`` as passphrase into an owner-only file.

    Raises:
        DecryptionError: If gpg cannot decrypt the file or the output cannot
            be written
    """
    destination = Path(destination)
    read_fd, write_fd = os.pipe()
    try:
        with os.fdopen(write_fd, "wb") as key_pipe:
            key_pipe.write(key.encode("utf-8"))
        result = run_command(
            [
                gpg,
                "--batch",
                "--no-tty",
                "--pinentry-mode",
                "loopback",
                "--passphrase-fd",
                str(read_fd),
                "--decrypt",
                str(source),
            ],
            text=False,
            log_output=False,
            pass_fds=(read_fd,),
        )
    except ToolInvocationError as error:
        raise DecryptionError(f"Failed to decrypt {source}") from error
    finally:
        os.close(read_fd)

    try:
        fd = os.open(destination, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
        with os.fdopen(fd, "wb") as output:
            os.fchmod(output.fileno(), 0o600)
            output.write(result.stdout)
    except OSError as error:
        raise DecryptionError(f"Failed to write decrypted {source} to {destination}: {error}") from error
    log.info(f"Decrypted {source} to {destination}")
    return destination
