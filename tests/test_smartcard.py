"""
Tests for volumesetup.keys.smartcard.

This test suite covers:
- Numpad PIN translation across all accepted key layouts
- PIN retry behaviour (invalid keys, empty PIN)
- PC/SC watch set reconciliation and insertion detection
- The unlock loop against a scripted card service
- gpg card session status handling
"""

import pytest
from smartcard import scard

from volumesetup.domain.models import CardReaderState, PinMode
from volumesetup.keys import smartcard
from volumesetup.storage.exceptions import DecryptionError, ServiceError


IDENTITY = list(range(1, 10))

CHANGED = scard.SCARD_STATE_CHANGED
PRESENT = scard.SCARD_STATE_PRESENT
EMPTY = scard.SCARD_STATE_EMPTY


def keep_order(digits):
    pass


class ScriptedPrompt:
    def __init__(self, *answers):
        self.answers = list(answers)
        self.messages = []

    def __call__(self, message):
        self.messages.append(message)
        return self.answers.pop(0)


# ==============================================================================
# PIN Entry
# ==============================================================================


class TestNumpad:
    """Tests for numpad translation."""

    @pytest.mark.parametrize("layout", smartcard.NUMPAD_LAYOUTS)
    def test_every_layout_maps_positions(self, layout):
        lookup = smartcard.build_numpad(IDENTITY)
        assert smartcard.translate_numpad(layout, lookup) == "123456789"

    def test_scrambled_pad(self):
        digits = [5, 3, 8, 1, 9, 2, 7, 4, 6]
        lookup = smartcard.build_numpad(digits)
        # top left, centre, bottom right
        assert smartcard.translate_numpad("7", lookup) == "5"
        assert smartcard.translate_numpad("k", lookup) == "9"
        assert smartcard.translate_numpad("v", lookup) == "6"
        assert smartcard.translate_numpad("7k.", lookup) == "596"

    def test_whitespace_trimmed(self):
        lookup = smartcard.build_numpad(IDENTITY)
        assert smartcard.translate_numpad(" 78\n", lookup) == "12"

    @pytest.mark.parametrize("keys", ["0", "7a", "78+", "z"])
    def test_invalid_keys(self, keys):
        assert smartcard.translate_numpad(keys, smartcard.build_numpad(IDENTITY)) is None

    def test_render(self):
        assert smartcard.render_numpad(IDENTITY) == " 1 2 3\n 4 5 6\n 7 8 9\n"

    def test_invalid_input_reshuffles_and_warns(self):
        prompt = ScriptedPrompt("7z", "78")
        shuffles = []
        pin = smartcard.read_numpad_pin(prompt, shuffles.append)

        assert pin == "12"
        assert len(shuffles) == 2
        assert not prompt.messages[0].startswith(smartcard.NUMPAD_WARNING)
        assert prompt.messages[1].startswith(smartcard.NUMPAD_WARNING)
        assert smartcard.NUMPAD_PROMPT in prompt.messages[1]
        assert prompt.messages[1].endswith(" 7 8 9\n")


class TestPinModes:
    def test_factory_default(self):
        assert smartcard.read_pin(PinMode.FACTORY_DEFAULT, ScriptedPrompt()) == "123456"

    def test_text(self):
        prompt = ScriptedPrompt("4242")
        assert smartcard.read_pin(PinMode.TEXT, prompt) == "4242"
        assert prompt.messages == [smartcard.PIN_PROMPT]

    def test_numpad(self):
        pin = smartcard.read_pin(PinMode.NUMPAD, ScriptedPrompt("uio"), keep_order)
        assert pin == "123"

    def test_empty_pin_waits_and_retries(self, no_sleep):
        prompt = ScriptedPrompt("", "", "4242")
        assert smartcard.acquire_pin(PinMode.TEXT, prompt) == "4242"
        assert no_sleep.call_count == 2
        no_sleep.assert_called_with(1.0)


# ==============================================================================
# Watch Set
# ==============================================================================


class TestWatchSet:
    def test_new_readers_start_unaware(self):
        watch = smartcard.reconcile_watch({}, ["Reader A", smartcard.PNP_NOTIFICATION])
        assert list(watch) == ["Reader A", smartcard.PNP_NOTIFICATION]
        assert all(s.current_state == scard.SCARD_STATE_UNAWARE for s in watch.values())

    def test_known_state_kept_and_gone_readers_dropped(self):
        known = CardReaderState("Reader A", current_state=PRESENT)
        gone = CardReaderState("Reader B", current_state=EMPTY)
        watch = smartcard.reconcile_watch({"Reader A": known, "Reader B": gone}, ["Reader A"])
        assert watch == {"Reader A": known}
        assert watch["Reader A"].current_state == PRESENT

    def test_duplicate_names_collapsed(self):
        watch = smartcard.reconcile_watch({}, ["Reader A", "Reader A"])
        assert list(watch) == ["Reader A"]


class TestCardInserted:
    @pytest.mark.parametrize(
        "current, event, expected",
        [
            (0, CHANGED | PRESENT, True),
            (EMPTY, CHANGED | PRESENT, True),
            (PRESENT, CHANGED | PRESENT, False),
            (PRESENT, CHANGED | EMPTY, False),
            (EMPTY, PRESENT, False),
        ],
    )
    def test_transitions(self, current, event, expected):
        state = CardReaderState("Reader A", current_state=current, event_state=event)
        assert smartcard.card_inserted(state) is expected

    def test_pnp_reader_never_counts(self):
        state = CardReaderState(smartcard.PNP_NOTIFICATION, event_state=CHANGED | PRESENT)
        assert not smartcard.card_inserted(state)


# ==============================================================================
# Unlock Loop
# ==============================================================================


class FakeService:
    """Replays scripted wait_for_change outcomes.

    Each step is ``"timeout"``, ``"unavailable"`` or a mapping of reader name
    to reported event state.
    """

    def __init__(self, readers, steps):
        self.readers = readers
        self.steps = list(steps)
        self.established = 0
        self.released = 0

    def establish(self):
        self.established += 1

    def release(self):
        self.released += 1

    def list_readers(self):
        return list(self.readers)

    def wait_for_change(self, watch, timeout):
        step = self.steps.pop(0)
        if step == "timeout":
            return False
        if step == "unavailable":
            raise smartcard.ServiceUnavailable("gone", scard.SCARD_E_NO_SERVICE)
        for state in watch:
            if state.name in step:
                state.event_state = step[state.name]
        return True


class FakeSession:
    def __init__(self, outcome):
        self.outcome = outcome

    def decrypt(self, pin, ciphertext):
        if isinstance(self.outcome, Exception):
            raise self.outcome
        return self.outcome


class FakeBackend:
    def __init__(self, *outcomes):
        self.outcomes = list(outcomes)
        self.pins = []

    def open_session(self):
        outcome = self.outcomes.pop(0)
        if isinstance(outcome, DecryptionError) and str(outcome).startswith("Card missing"):
            raise outcome
        return RecordingSession(self, outcome)


class RecordingSession(FakeSession):
    def __init__(self, backend, outcome):
        super().__init__(outcome)
        self.backend = backend

    def decrypt(self, pin, ciphertext):
        self.backend.pins.append(pin)
        return super().decrypt(pin, ciphertext)


class TestUnlockWithCard:
    """Tests for unlock_with_card()."""

    def test_full_cycle(self):
        service = FakeService(
            ["Reader A"],
            [
                "timeout",
                "unavailable",
                {"Reader A": CHANGED | PRESENT},
                {"Reader A": CHANGED | EMPTY},
                {"Reader A": CHANGED | PRESENT},
            ],
        )
        backend = FakeBackend(DecryptionError("bad PIN"), b"volume-key\n")
        announced = []

        key = smartcard.unlock_with_card(
            "ARMORED",
            PinMode.TEXT,
            service_factory=lambda: service,
            backend=backend,
            prompt=ScriptedPrompt("4242"),
            announce=announced.append,
        )

        assert key == "volume-key"
        assert backend.pins == ["4242", "4242"]
        assert service.established == 2
        assert service.released == 1
        assert service.steps == []
        assert announced == [smartcard.HOLD_CARD_MESSAGE] * 5 + [smartcard.DONE_MESSAGE]

    def test_card_already_present_at_start(self):
        service = FakeService(["Reader A"], [{"Reader A": CHANGED | PRESENT}])
        key = smartcard.unlock_with_card(
            "ARMORED",
            PinMode.FACTORY_DEFAULT,
            service_factory=lambda: service,
            backend=FakeBackend(b"k"),
            announce=lambda message: None,
        )
        assert key == "k"

    def test_missing_card_backend_is_retried(self):
        service = FakeService(
            ["Reader A"],
            [{"Reader A": CHANGED | PRESENT}, {"Reader A": CHANGED | EMPTY}, {"Reader A": CHANGED | PRESENT}],
        )
        backend = FakeBackend(
            DecryptionError("Card missing (timing?) or no card backend available"), b"k"
        )
        key = smartcard.unlock_with_card(
            "ARMORED",
            PinMode.FACTORY_DEFAULT,
            service_factory=lambda: service,
            backend=backend,
            announce=lambda message: None,
        )
        assert key == "k"

    def test_pin_read_before_service_is_opened(self):
        order = []

        def prompt(message):
            order.append("pin")
            return "1"

        def factory():
            order.append("service")
            return FakeService(["R"], [{"R": CHANGED | PRESENT}])

        smartcard.unlock_with_card(
            "ARMORED",
            PinMode.TEXT,
            service_factory=factory,
            backend=FakeBackend(b"k"),
            prompt=prompt,
            announce=lambda message: None,
        )
        assert order == ["pin", "service"]

    def test_failed_reconnect_is_retried(self, no_sleep):
        class Flaky(FakeService):
            """The service is still down on the first and third establish."""

            def establish(self):
                super().establish()
                if self.established in (1, 3):
                    raise smartcard.ServiceUnavailable("down", scard.SCARD_E_NO_SERVICE)

        service = Flaky(["Reader A"], ["unavailable", {"Reader A": CHANGED | PRESENT}])
        key = smartcard.unlock_with_card(
            "ARMORED",
            PinMode.FACTORY_DEFAULT,
            service_factory=lambda: service,
            backend=FakeBackend(b"k"),
            announce=lambda message: None,
        )

        assert key == "k"
        assert service.established == 4
        assert service.released == 1
        assert no_sleep.call_count == 3
        no_sleep.assert_called_with(smartcard.RECONNECT_DELAY)

    def test_fatal_service_error_releases(self):
        class Broken(FakeService):
            def list_readers(self):
                raise ServiceError("broken", 1)

        service = Broken([], [])
        with pytest.raises(ServiceError):
            smartcard.unlock_with_card(
                "ARMORED",
                PinMode.FACTORY_DEFAULT,
                service_factory=lambda: service,
                backend=FakeBackend(),
                announce=lambda message: None,
            )
        assert service.released == 1


class TestCardService:
    """CardService against a patched pyscard module."""

    @pytest.fixture
    def pcsc(self, mocker):
        for name in ("SCardListReaders", "SCardGetStatusChange"):
            mocker.patch.object(scard, name)
        mocker.patch.object(
            scard, "SCardEstablishContext", return_value=(scard.SCARD_S_SUCCESS, 77)
        )
        mocker.patch.object(scard, "SCardReleaseContext", return_value=scard.SCARD_S_SUCCESS)
        return scard

    def test_no_readers_is_empty_list(self, pcsc):
        pcsc.SCardListReaders.return_value = (scard.SCARD_E_NO_READERS_AVAILABLE, [])
        service = smartcard.CardService()
        service.establish()
        assert service.list_readers() == []

    def test_wait_updates_states(self, pcsc):
        watch = [CardReaderState("Reader A")]
        pcsc.SCardGetStatusChange.return_value = (
            scard.SCARD_S_SUCCESS,
            [("Reader A", CHANGED | PRESENT, [0x3B, 0x8F])],
        )
        service = smartcard.CardService()
        service.establish()
        assert service.wait_for_change(watch, 10.0) is True
        assert watch[0].event_state == CHANGED | PRESENT
        assert watch[0].atr == [0x3B, 0x8F]
        assert pcsc.SCardGetStatusChange.call_args[0][1] == 10000

    def test_wait_timeout(self, pcsc):
        pcsc.SCardGetStatusChange.return_value = (scard.SCARD_E_TIMEOUT, [])
        service = smartcard.CardService()
        service.establish()
        assert service.wait_for_change([CardReaderState("R")], 1.0) is False

    def test_service_gone(self, pcsc):
        pcsc.SCardListReaders.return_value = (scard.SCARD_E_NO_SERVICE, [])
        service = smartcard.CardService()
        service.establish()
        with pytest.raises(smartcard.ServiceUnavailable):
            service.list_readers()

    def test_establish_releases_previous_context(self, pcsc):
        service = smartcard.CardService()
        service.establish()
        service.establish()
        pcsc.SCardReleaseContext.assert_called_once_with(77)

    def test_construction_opens_no_context(self, pcsc):
        smartcard.CardService()
        pcsc.SCardEstablishContext.assert_not_called()

    def test_unavailable_while_establishing(self, pcsc):
        pcsc.SCardEstablishContext.return_value = (scard.SCARD_E_NO_SERVICE, 0)
        with pytest.raises(smartcard.ServiceUnavailable):
            smartcard.CardService().establish()


# ==============================================================================
# gpg Session
# ==============================================================================


OK_STATUS = "[GNUPG:] DECRYPTION_OKAY\n[GNUPG:] PLAINTEXT 62 0\n"


class TestGpgCardSession:
    def test_decrypt(self, fake_runner):
        fake_runner.on("gpg", stdout=b"volume-key\n", stderr=OK_STATUS)
        plaintext = smartcard.GpgCardSession().decrypt("4242", "ARMORED")

        assert plaintext == b"volume-key\n"
        call = fake_runner.find("gpg")
        assert call.input == b"ARMORED"
        assert "4242" not in call.argv
        fd = call.argv[call.argv.index("--passphrase-fd") + 1]
        assert call.kwargs["pass_fds"] == (int(fd),)

    def test_bad_pin(self, fake_runner):
        fake_runner.on("gpg", returncode=2, stderr="[GNUPG:] BAD_PASSPHRASE 0123\n")
        with pytest.raises(DecryptionError, match="bad PIN"):
            smartcard.GpgCardSession().decrypt("0000", "ARMORED")

    def test_missing_plaintext_status(self, fake_runner):
        fake_runner.on("gpg", stdout=b"x", stderr="[GNUPG:] DECRYPTION_OKAY\n")
        with pytest.raises(DecryptionError, match="unrecognized payload"):
            smartcard.GpgCardSession().decrypt("4242", "ARMORED")

    def test_backend_without_card(self, fake_runner):
        fake_runner.on("gpg", "--batch", "--card-status", returncode=2)
        with pytest.raises(DecryptionError, match="Card missing"):
            smartcard.GpgCardBackend().open_session()

    def test_decrypt_with_card_trims(self, fake_runner):
        fake_runner.on("gpg", stdout=b"  volume-key \n", stderr=OK_STATUS)
        key = smartcard.decrypt_with_card(smartcard.GpgCardBackend(), "4242", "ARMORED")
        assert key == "volume-key"
        assert fake_runner.commands("gpg", "--batch", "--card-status")

    def test_decrypt_with_card_rejects_binary(self, fake_runner):
        fake_runner.on("gpg", stdout=b"\xff\xfe", stderr=OK_STATUS)
        fake_runner.on("gpg", "--batch", "--card-status")
        with pytest.raises(DecryptionError, match="UTF-8"):
            smartcard.decrypt_with_card(smartcard.GpgCardBackend(), "4242", "ARMORED")
