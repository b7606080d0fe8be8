"""Interactive secret prompts through ``systemd-ask-password``."""
from volumesetup.logging import LoggerFactory
from volumesetup.storage.commands import run_command
from volumesetup.storage.exceptions import VolumeSetupError


log = LoggerFactory.for_keys()


def ask_password(message: str) -> str:
    """Ask the operator for a single line secret.

    The answer is trimmed. It is never logged.
    """
    result = run_command(
        ["systemd-ask-password", "-n", "--timeout=0", message],
        text=False,
        log_output=False,
    )
    try:
        return result.stdout.decode("utf-8").strip()
    except UnicodeDecodeError as error:
        raise VolumeSetupError("Received password was invalid UTF-8") from error
