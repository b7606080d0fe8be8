from __future__ import annotations

import os
import sys
import time
import uuid
from contextlib import contextmanager
from pathlib import Path
from typing import TYPE_CHECKING, Iterable

if TYPE_CHECKING:
    from loguru import Logger

from loguru import logger

DEFAULT_LOG_DIR = os.environ.get("VOLUMESETUP_LOG_DIR")

# Note: TRACE level already exists in loguru at level 5 (below DEBUG which is 10)


def _hide_command_output(record) -> bool:
    """Keep raw command output off the console unless tracing."""
    tags = record["extra"].get("tags", [])
    if "output" in tags:
        return record["level"].no <= logger.level("TRACE").no
    return True


def setup_logging(
    *,
    debug: bool = False,
    trace: bool = False,
    log_dir: Path | None = None,
) -> Logger:
    """
    Setup console logging and, optionally, persistent log files.

    volumesetup runs early at boot, often before any writable log location
    exists, so file sinks are only added when a log directory is requested.

    Logging Tiers:
    - CRITICAL/ERROR: Fatal provisioning failures
    - SUCCESS/INFO: Provisioning decisions (disk found, formatting, mounting)
    - WARNING: Recovered failures (card decrypt retries, skipped sysfs entries)
    - DEBUG: Command lines, inventory details
    - TRACE: Raw command output

    Log Files (only with log_dir):
    - operations.log: INFO+ events (7 day retention)
    - debug.log: DEBUG+ events when --debug is enabled (3 day retention)
    - structured.jsonl: Structured JSON logs for analysis (7 day retention)

    Args:
        debug: Enable DEBUG level logging
        trace: Enable TRACE level logging (very verbose)
        log_dir: Directory for log files, or None for console only
    """
    logger.remove()
    logger.configure(extra={"job_id": "-", "tags": [], "source": "volumesetup"})

    if trace:
        console_level = "TRACE"
    elif debug:
        console_level = "DEBUG"
    else:
        console_level = "INFO"

    # SINK 1: Console (stderr) - journald picks this up when run as a unit
    logger.add(
        sys.stderr,
        level=console_level,
        backtrace=False,
        diagnose=False,
        filter=_hide_command_output,
        colorize=None,
        format=(
            "<green>{time:HH:mm:ss}</green> | "
            "<level>{level: <8}</level> | "
            "<cyan>{extra[source]: <12}</cyan> | "
            "{message}"
        ),
    )

    if log_dir is None and DEFAULT_LOG_DIR:
        log_dir = Path(DEFAULT_LOG_DIR)
    if log_dir is None:
        return logger

    log_dir.mkdir(parents=True, exist_ok=True)

    # SINK 2: Operations Log - Important events only (INFO+)
    logger.add(
        log_dir / "operations.log",
        level="INFO",
        rotation="5 MB",
        retention="7 days",
        compression="zip",
        backtrace=False,
        diagnose=False,
        format=(
            "{time:YYYY-MM-DD HH:mm:ss.SSS} | "
            "{level: <8} | "
            "{extra[source]: <12} | "
            "{extra[job_id]: <20} | "
            "{message}"
        ),
    )

    # SINK 3: Debug Log - Detailed diagnostics (DEBUG+ when debug=True)
    if debug or trace:
        logger.add(
            log_dir / "debug.log",
            level="TRACE" if trace else "DEBUG",
            rotation="10 MB",
            retention="3 days",
            compression="zip",
            backtrace=True,
            diagnose=False,
            format=(
                "{time:YYYY-MM-DD HH:mm:ss.SSS} | "
                "{level: <8} | "
                "{extra[source]: <12} | "
                "{extra[job_id]: <20} | "
                "{extra[tags]} | "
                "{message}"
            ),
        )

    # SINK 4: Structured JSON Log - For analysis tools (INFO+)
    logger.add(
        log_dir / "structured.jsonl",
        level="INFO",
        rotation="10 MB",
        retention="7 days",
        compression="zip",
        serialize=True,
        format="{message}",
    )

    return logger


def get_logger(
    *,
    job_id: str | None = None,
    tags: Iterable[str] | None = None,
    source: str | None = None,
) -> Logger:
    """
    Get a logger with bound context.

    Args:
        job_id: Job identifier for tracking operations
        tags: Tags for filtering (e.g., ["luks", "storage"])
        source: Source component (e.g., "mount", "smartcard")

    Returns:
        Logger with bound context
    """
    extras: dict[str, object] = {}
    if job_id is not None:
        extras["job_id"] = job_id
    if tags is not None:
        extras["tags"] = list(tags)
    if source is not None:
        extras["source"] = source
    return logger.bind(**extras)


@contextmanager
def operation_context(operation: str, **details):
    """
    Context manager for tracking provisioning steps with automatic timing.

    Logs step start, completion, and failure with duration tracking. The
    exception is re-raised untouched.

    Args:
        operation: Operation name (e.g., "provision", "unlock")
        **details: Operation-specific details to log

    Yields:
        Logger bound with job_id and operation context

    Example:
        with operation_context("provision", fs="ext4") as log:
            log.debug("Listing block devices")
    """
    job_id = f"{operation}-{uuid.uuid4().hex[:8]}"

    with logger.contextualize(job_id=job_id, operation=operation, **details):
        start_time = time.time()
        log = get_logger(source=operation, job_id=job_id, tags=[operation])

        log.info(f"{operation.capitalize()} started")

        try:
            yield log
            duration = time.time() - start_time
            log.success(
                f"{operation.capitalize()} completed",
                duration_seconds=round(duration, 2),
            )
        except Exception as e:
            duration = time.time() - start_time
            log.error(
                f"{operation.capitalize()} failed",
                error=str(e),
                error_type=type(e).__name__,
                duration_seconds=round(duration, 2),
            )
            raise


class LoggerFactory:
    """
    Factory for creating component-specific loggers with automatic context.

    Each factory method returns a logger pre-configured with the source and
    tags of one provisioning component.
    """

    @staticmethod
    def for_inventory() -> Logger:
        """Logger for block device discovery and candidate selection."""
        return get_logger(source="inventory", tags=["inventory", "storage"])

    @staticmethod
    def for_commands() -> Logger:
        """Logger for external command execution."""
        return get_logger(source="command", tags=["command"])

    @staticmethod
    def for_keys() -> Logger:
        """Logger for key acquisition (never log key material)."""
        return get_logger(source="keys", tags=["keys"])

    @staticmethod
    def for_smartcard() -> Logger:
        """Logger for the smartcard unlock loop."""
        return get_logger(source="smartcard", tags=["keys", "smartcard"])

    @staticmethod
    def for_encryption() -> Logger:
        """Logger for LUKS operations."""
        return get_logger(source="luks", tags=["luks", "storage"])

    @staticmethod
    def for_filesystem(kind: str = "fs") -> Logger:
        """Logger for filesystem provisioning strategies."""
        return get_logger(source=kind, tags=["filesystem", "storage", kind])

    @staticmethod
    def for_mount() -> Logger:
        """Logger for mount management."""
        return get_logger(source="mount", tags=["mount", "storage"])

    @staticmethod
    def for_system() -> Logger:
        """Logger for system operations (startup, shutdown, config)."""
        return get_logger(source="system", tags=["system"])
