"""Best-effort operator broadcast to every terminal, like ``wall``."""
import os
from pathlib import Path
from typing import Union

from volumesetup.logging import LoggerFactory


log = LoggerFactory.for_keys()


def _write(path: str, message: bytes) -> None:
    try:
        with open(path, "wb", buffering=0) as terminal:
            terminal.write(message)
    except OSError as error:
        log.debug(f"Error writing to {path}, skipping: {error}")


def wall(message: str, dev_root: Union[str, Path] = "/dev") -> None:
    """Write ``message`` to all pseudo-terminals and ttys.

    Failures are logged at DEBUG and skipped.
    """
    data = f"{message}\n".encode("utf-8")
    pts_dir = os.path.join(dev_root, "pts")
    try:
        pts_names = sorted(os.listdir(pts_dir))
    except OSError as error:
        log.debug(f"Error listing {pts_dir}, not writing: {error}")
    else:
        for name in pts_names:
            if name != "ptmx":
                _write(os.path.join(pts_dir, name), data)

    try:
        dev_names = sorted(os.listdir(dev_root))
    except OSError as error:
        log.debug(f"Error listing {dev_root}, not writing: {error}")
        return
    for name in dev_names:
        if name.startswith("tty") and name != "tty":
            _write(os.path.join(dev_root, name), data)
