"""Smartcard unlock of an armored volume key.

PIN Entry:
    factory_default  the well-known OpenPGP card PIN ``123456``
    text             a free-form prompt
    numpad           a scrambled 3x3 keypad; the operator presses the keys at
                     the positions of their digits, so the keystrokes do not
                     reveal the PIN. Three key layouts are accepted per
                     position (top left first, row by row):
                     ``789456123``, ``uiojklm,.`` and ``wersdfxcv``

Card Detection:
    PC/SC (pyscard) is polled for reader status changes. Every cycle the watch
    set is reconciled with the live reader list plus the PnP pseudo-reader,
    the operator is asked to present the card, and the loop blocks for up to
    the poll interval. When a reader goes from absent to present, the card is
    used to decrypt the key; any failure there is logged and the loop keeps
    waiting for the next card. If the PC/SC service goes away (last reader
    unplugged) the context is re-established after a short pause, and a
    failed reconnect is retried the same way.

Decryption:
    The card is driven through the host's GnuPG smartcard stack. The PIN is
    handed to gpg on a private pipe, never on the command line.
"""
import os
import random
import time
from typing import Callable, Iterable, Optional, Sequence

from smartcard import scard

from volumesetup.domain.models import CardReaderState, PinMode
from volumesetup.keys.broadcast import wall
from volumesetup.keys.prompt import ask_password
from volumesetup.logging import LoggerFactory
from volumesetup.storage.commands import run_command
from volumesetup.storage.exceptions import (
    DecryptionError,
    ServiceError,
    ToolInvocationError,
)


log = LoggerFactory.for_smartcard()

FACTORY_PIN = "123456"
PNP_NOTIFICATION = "\\\\?PnP?\\Notification"
DEFAULT_POLL_SECONDS = 10.0
EMPTY_PIN_DELAY = 1.0
RECONNECT_DELAY = 1.0

NUMPAD_LAYOUTS = ("789456123", "uiojklm,.", "wersdfxcv")

PIN_PROMPT = "Enter your PIN"
NUMPAD_PROMPT = "Press numpad buttons matching the locations of your PIN digits\n"
NUMPAD_WARNING = "There were invalid digits in the PIN. Please try again.\n"
HOLD_CARD_MESSAGE = "Please hold your smartcard to the reader"
DONE_MESSAGE = "Done reading smartcard, you may remove it now"

_system_random = random.SystemRandom()


# ==============================================================================
# PIN Entry
# ==============================================================================


def build_numpad(digits: Sequence[int]) -> dict[str, int]:
    """Map every accepted key to the digit shown at its grid position."""
    lookup = {}
    for position, digit in enumerate(digits):
        for layout in NUMPAD_LAYOUTS:
            lookup[layout[position]] = digit
    return lookup


def render_numpad(digits: Sequence[int]) -> str:
    rows = []
    for start in range(0, len(digits), 3):
        rows.append("".join(f" {digit}" for digit in digits[start:start + 3]))
    return "\n".join(rows) + "\n"


def translate_numpad(keys: str, lookup: dict[str, int]) -> Optional[str]:
    """Turn keystrokes into PIN digits, or None if any key is not on the pad."""
    pin = []
    for key in keys.strip():
        digit = lookup.get(key)
        if digit is None:
            return None
        pin.append(str(digit))
    return "".join(pin)


def read_numpad_pin(
    prompt: Callable[[str], str] = ask_password,
    shuffle: Callable[[list], None] = _system_random.shuffle,
) -> str:
    """Prompt on a freshly scrambled keypad until every key is recognized."""
    warning = ""
    while True:
        digits = list(range(1, 10))
        shuffle(digits)
        lookup = build_numpad(digits)
        keys = prompt(f"{warning}{NUMPAD_PROMPT}{render_numpad(digits)}")
        pin = translate_numpad(keys, lookup)
        if pin is not None:
            return pin
        warning = NUMPAD_WARNING


def read_pin(
    pin_mode: PinMode,
    prompt: Callable[[str], str] = ask_password,
    shuffle: Callable[[list], None] = _system_random.shuffle,
) -> str:
    if pin_mode is PinMode.FACTORY_DEFAULT:
        return FACTORY_PIN
    if pin_mode is PinMode.TEXT:
        return prompt(PIN_PROMPT)
    return read_numpad_pin(prompt, shuffle)


def acquire_pin(
    pin_mode: PinMode,
    prompt: Callable[[str], str] = ask_password,
    shuffle: Callable[[list], None] = _system_random.shuffle,
) -> str:
    """Read a PIN, retrying after a short pause while it comes back empty."""
    while True:
        pin = read_pin(pin_mode, prompt, shuffle)
        if pin:
            return pin
        log.warning("Got empty pin, please retry")
        time.sleep(EMPTY_PIN_DELAY)


# ==============================================================================
# PC/SC Service
# ==============================================================================


class ServiceUnavailable(ServiceError):
    """The PC/SC service stopped or is gone; reconnecting may help."""


_UNAVAILABLE_CODES = (scard.SCARD_E_NO_SERVICE, scard.SCARD_E_SERVICE_STOPPED)


def _check(hresult: int, action: str) -> None:
    if hresult == scard.SCARD_S_SUCCESS:
        return
    if hresult in _UNAVAILABLE_CODES:
        raise ServiceUnavailable(f"Smartcard service unavailable while {action}", hresult)
    raise ServiceError(f"Smartcard service error while {action}", hresult)


class CardService:
    """A PC/SC context owned by the unlock loop.

    No context exists until :meth:`establish` is called.
    """

    def __init__(self):
        self._context = None

    def establish(self) -> None:
        """(Re)create the PC/SC context, releasing any previous one."""
        self.release()
        hresult, context = scard.SCardEstablishContext(scard.SCARD_SCOPE_USER)
        _check(hresult, "establishing context")
        self._context = context
        log.debug("Established PC/SC context")

    def release(self) -> None:
        if self._context is None:
            return
        hresult = scard.SCardReleaseContext(self._context)
        if hresult != scard.SCARD_S_SUCCESS:
            log.debug(f"Releasing PC/SC context returned 0x{hresult & 0xFFFFFFFF:08X}")
        self._context = None

    def list_readers(self) -> list[str]:
        hresult, readers = scard.SCardListReaders(self._context, [])
        if hresult == scard.SCARD_E_NO_READERS_AVAILABLE:
            return []
        _check(hresult, "listing readers")
        return list(readers)

    def wait_for_change(self, watch: Sequence[CardReaderState], timeout: float) -> bool:
        """Block until a watched reader changes state.

        Updates ``event_state`` of each entry in place.

        Returns:
            False on timeout, True when states were reported
        """
        request = [(state.name, state.current_state) for state in watch]
        hresult, reported = scard.SCardGetStatusChange(
            self._context, int(timeout * 1000), request
        )
        if hresult == scard.SCARD_E_TIMEOUT:
            return False
        _check(hresult, "waiting for card")
        by_name = {state.name: state for state in watch}
        for name, event_state, atr in reported:
            state = by_name.get(name)
            if state is not None:
                state.event_state = event_state
                state.atr = list(atr)
        return True


def reconcile_watch(
    watch: dict[str, CardReaderState],
    reader_names: Iterable[str],
) -> dict[str, CardReaderState]:
    """Drop readers that went away and add new ones with unknown state."""
    live = list(dict.fromkeys(reader_names))
    reconciled = {name: state for name, state in watch.items() if name in live}
    for name in live:
        if name not in reconciled:
            log.debug(f"Watching reader {name}")
            reconciled[name] = CardReaderState(name, current_state=scard.SCARD_STATE_UNAWARE)
    return reconciled


def card_inserted(state: CardReaderState) -> bool:
    """True on an absent to present transition of a real reader."""
    if state.name == PNP_NOTIFICATION:
        return False
    if not state.event_state & scard.SCARD_STATE_CHANGED:
        return False
    was_present = bool(state.current_state & scard.SCARD_STATE_PRESENT)
    is_present = bool(state.event_state & scard.SCARD_STATE_PRESENT)
    return is_present and not was_present


# ==============================================================================
# Card Decryption
# ==============================================================================


def _status_keywords(stderr: str) -> set[str]:
    keywords = set()
    for line in stderr.splitlines():
        if line.startswith("[GNUPG:] "):
            parts = line.split()
            if len(parts) > 1:
                keywords.add(parts[1])
    return keywords


class GpgCardSession:
    """An OpenPGP card reachable through gpg-agent and scdaemon."""

    def __init__(self, gpg: str = "gpg"):
        self.gpg = gpg

    def decrypt(self, pin: str, ciphertext: str) -> bytes:
        """Verify ``pin`` on the card and decrypt ``ciphertext`` with it.

        Raises:
            DecryptionError: If the PIN or the decryption is rejected, or gpg
                does not report a literal plaintext
        """
        read_fd, write_fd = os.pipe()
        try:
            with os.fdopen(write_fd, "wb") as pin_pipe:
                pin_pipe.write(pin.encode("utf-8"))
            result = run_command(
                [
                    self.gpg,
                    "--batch",
                    "--no-tty",
                    "--pinentry-mode",
                    "loopback",
                    "--passphrase-fd",
                    str(read_fd),
                    "--status-fd",
                    "2",
                    "--decrypt",
                ],
                check=False,
                input_data=ciphertext.encode("utf-8"),
                text=False,
                log_output=False,
                pass_fds=(read_fd,),
            )
        finally:
            os.close(read_fd)

        stderr = result.stderr.decode("utf-8", errors="replace")
        if result.returncode != 0:
            reason = "bad PIN" if "BAD_PASSPHRASE" in stderr else "card rejected decryption"
            raise DecryptionError(
                f"Failed to decrypt disk secret ({reason}) - wrong key device?"
            )
        keywords = _status_keywords(stderr)
        if "DECRYPTION_OKAY" not in keywords or "PLAINTEXT" not in keywords:
            raise DecryptionError("gpg returned an unrecognized payload type")
        return result.stdout


class GpgCardBackend:
    """Opens sessions on the first card gpg can see."""

    def __init__(self, gpg: str = "gpg"):
        self.gpg = gpg

    def open_session(self) -> GpgCardSession:
        try:
            run_command([self.gpg, "--batch", "--card-status"], log_output=False)
        except ToolInvocationError as error:
            raise DecryptionError("Card missing (timing?) or no card backend available") from error
        return GpgCardSession(self.gpg)


def decrypt_with_card(backend, pin: str, ciphertext: str) -> str:
    """Run one card transaction and return the trimmed UTF-8 key."""
    session = backend.open_session()
    plaintext = session.decrypt(pin, ciphertext)
    try:
        return plaintext.decode("utf-8").strip()
    except UnicodeDecodeError as error:
        raise DecryptionError("Key file contains invalid UTF-8") from error


# ==============================================================================
# Unlock Loop
# ==============================================================================


def unlock_with_card(
    ciphertext: str,
    pin_mode: PinMode,
    *,
    service_factory: Callable[[], CardService] = CardService,
    backend=None,
    poll_seconds: float = DEFAULT_POLL_SECONDS,
    prompt: Callable[[str], str] = ask_password,
    announce: Callable[[str], None] = wall,
) -> str:
    """Obtain a PIN, then wait for a card that can decrypt ``ciphertext``.

    Only returns on success. Decrypt failures are retried on the next card
    presentation.

    Raises:
        ServiceError: If the PC/SC service fails unrecoverably
    """
    backend = backend or GpgCardBackend()
    pin = acquire_pin(pin_mode, prompt)
    service = service_factory()
    watch: dict[str, CardReaderState] = {}
    reconnect = True

    try:
        while True:
            try:
                if reconnect:
                    service.establish()
                    reconnect = False
                readers = service.list_readers()
                watch = reconcile_watch(watch, [*readers, PNP_NOTIFICATION])
                log.info(HOLD_CARD_MESSAGE)
                announce(HOLD_CARD_MESSAGE)
                if not service.wait_for_change(list(watch.values()), poll_seconds):
                    continue
            except ServiceUnavailable as error:
                log.warning(f"{error}, reconnecting")
                time.sleep(RECONNECT_DELAY)
                reconnect = True
                continue

            for state in watch.values():
                if card_inserted(state):
                    log.info(f"Card presented on {state.name}")
                    try:
                        key = decrypt_with_card(backend, pin, ciphertext)
                    except (DecryptionError, ToolInvocationError) as error:
                        log.warning(f"Failed to get volume key, retrying: {error}")
                    else:
                        log.info(DONE_MESSAGE)
                        announce(DONE_MESSAGE)
                        return key
                state.sync_current_state()
    finally:
        service.release()
