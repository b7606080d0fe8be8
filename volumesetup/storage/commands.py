"""External command execution.

Every tool volumesetup drives (lsblk, cryptsetup, mkfs.ext4, bcachefs, mount,
systemd helpers, gpg) goes through :func:`run_command`. Commands are passed as
argument lists, secrets are passed on stdin (or an inherited pipe) and never
appear in argv or in the log.

A failure to start the command and a non-zero exit both raise
:class:`ToolInvocationError`; the captured stdout/stderr travel with the
exception so the CLI can show them.
"""
import json
import subprocess
from typing import Optional, Sequence, Union

from volumesetup.logging import LoggerFactory
from volumesetup.storage.exceptions import SchemaError, ToolInvocationError

log = LoggerFactory.for_commands()
output_log = log.bind(tags=["command", "output"])


def run_command(
    command: Sequence[str],
    check: bool = True,
    input_data: Optional[Union[str, bytes]] = None,
    text: bool = True,
    log_output: bool = True,
    log_command: bool = True,
    **kwargs,
) -> subprocess.CompletedProcess:
    """Run a command, capturing its output.

    Args:
        command: Command to run as list of strings
        check: Raise ToolInvocationError on a non-zero exit code
        input_data: Data written to the child's stdin (never logged)
        text: Decode stdout/stderr as text
        log_output: Log stdout/stderr at TRACE level (off for secrets)
        log_command: Log the argv at DEBUG level
        **kwargs: Additional arguments for subprocess.run (e.g. pass_fds)

    Returns:
        CompletedProcess instance from subprocess.run

    Raises:
        ToolInvocationError: If the command cannot be started, or exits
            non-zero while check is True
    """
    command = [str(part) for part in command]
    if log_command:
        log.debug(f"Running command: {' '.join(command)}")
    if input_data is not None and text and isinstance(input_data, bytes):
        input_data = input_data.decode("utf-8")
    if input_data is not None and not text and isinstance(input_data, str):
        input_data = input_data.encode("utf-8")
    try:
        result = subprocess.run(
            command,
            input=input_data,
            text=text,
            capture_output=True,
            check=False,
            **kwargs,
        )
    except OSError as error:
        raise ToolInvocationError(command, None, message=f"Failed to start {command[0]}: {error}") from error

    if result.stdout and log_output:
        output_log.trace(f"stdout: {_preview(result.stdout)}")
    if result.stderr and log_output:
        output_log.trace(f"stderr: {_preview(result.stderr)}")
    if result.returncode != 0:
        log.debug(f"Command failed with return code {result.returncode}: {' '.join(command)}")
        if check:
            raise ToolInvocationError(
                command,
                result.returncode,
                _as_text(result.stdout),
                _as_text(result.stderr),
            )
    return result


def run_stdout(command: Sequence[str], **kwargs) -> str:
    """Run a command and return its stdout as text."""
    return run_command(command, **kwargs).stdout


def run_json(command: Sequence[str], **kwargs):
    """Run a command and parse its stdout as JSON.

    Raises:
        ToolInvocationError: If the command fails
        SchemaError: If stdout is not valid JSON
    """
    output = run_stdout(command, **kwargs)
    try:
        return json.loads(output)
    except json.JSONDecodeError as error:
        raise SchemaError(command[0], f"invalid JSON ({error})") from error


def _as_text(data) -> str:
    if data is None:
        return ""
    if isinstance(data, bytes):
        return data.decode("utf-8", errors="replace")
    return data


def _preview(data, limit: int = 2000) -> str:
    text = _as_text(data).strip()
    if len(text) > limit:
        return text[:limit] + "..."
    return text
