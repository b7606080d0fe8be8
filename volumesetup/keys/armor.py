"""Loading of ASCII armored OpenPGP messages."""
from pathlib import Path
from typing import Union

from volumesetup.storage.exceptions import KeyFileError


ARMOR_BEGIN = "-----BEGIN PGP MESSAGE-----"
ARMOR_END = "-----END PGP MESSAGE-----"


def load_armored(path: Union[str, Path]) -> str:
    """Read an armored message and check its framing.

    Raises:
        KeyFileError: If the file is missing, unreadable, not UTF-8 or not a
            single armored PGP message
    """
    try:
        data = Path(path).read_bytes()
    except OSError as error:
        raise KeyFileError(path, f"unreadable ({error.strerror or error})") from error
    try:
        text = data.decode("utf-8")
    except UnicodeDecodeError as error:
        raise KeyFileError(path, "not valid UTF-8") from error

    lines = [line.strip() for line in text.strip().splitlines()]
    if not lines or lines[0] != ARMOR_BEGIN:
        raise KeyFileError(path, "missing PGP MESSAGE armor header")
    if lines[-1] != ARMOR_END:
        raise KeyFileError(path, "missing PGP MESSAGE armor footer")
    if len(lines) < 3 or lines.count(ARMOR_BEGIN) != 1:
        raise KeyFileError(path, "expected exactly one armored message")
    return text
