import logging
import secrets
from typing import Optional

from cryptvol.exceptions import BackendError, SecretAbort, SecretExhausted
from cryptvol.interaction import Interaction

from .backend import Backend
from .status import Status
from .volume import Volume

logger = logging.getLogger(__name__)


class SecretBuffer:
    """
    A passphrase held in a mutable buffer so it can be overwritten after use.
    Use as a context manager, or call wipe() on every exit path.

    wipe() only clears this buffer. A passphrase read through a terminal
    prompt arrives as an immutable str first, and that copy (and any bytes
    a subprocess handed back) stays in memory until the interpreter
    reuses it.
    """

    def __init__(self, buffer: bytearray):
        self.buffer = buffer

    @classmethod
    def from_text(cls, text: str) -> "SecretBuffer":
        return cls(bytearray(text.encode("utf-8")))

    def wipe(self) -> None:
        # Random bytes first, then zeros, so the final content is predictable
        size = len(self.buffer)
        self.buffer[:] = secrets.token_bytes(size)
        self.buffer[:] = bytes(size)

    def __len__(self):
        return len(self.buffer)

    def __eq__(self, other):
        if not isinstance(other, SecretBuffer):
            return NotImplemented
        return secrets.compare_digest(bytes(self.buffer), bytes(other.buffer))

    def __repr__(self):
        return "SecretBuffer(<hidden>)"

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.wipe()
        return False


class SecretAcquisition:
    """
    Collects passphrases and hands them to the backend.
    """

    def __init__(
        self,
        backend: Backend,
        interaction: Interaction,
        max_attempts: int = 3,
        timeout: Optional[int] = None,
    ):
        self.backend = backend
        self.interaction = interaction
        self.max_attempts = max_attempts
        self.timeout = timeout

    def _ask(self, text: str) -> SecretBuffer:
        answer = self.interaction.prompt(text, hidden=True, timeout=self.timeout)
        if answer is None:
            logger.info("Passphrase prompt cancelled or timed out")
            raise SecretAbort("Cancelled", sdstatus=Status.ABORTED)
        if isinstance(answer, bytearray):
            return SecretBuffer(answer)
        return SecretBuffer.from_text(answer)

    def open(self, volume: Volume, name: str) -> None:
        """
        Prompt for the passphrase and open the volume as name, at most
        max_attempts times.

        Raises SecretAbort if the prompt is cancelled or times out,
        SecretExhausted once every attempt failed. IdentityError from the
        backend (name collision) is not retried.
        """
        last_error = None
        for attempt in range(1, self.max_attempts + 1):
            secret = self._ask(f"Passphrase for {volume.image_path}: ")
            try:
                self.backend.open(volume.image_path, name, secret)
                logger.info(f"Opened {volume.image_path} on attempt {attempt}")
                return
            except BackendError as ex:
                # Only a rejected passphrase is worth another attempt
                if ex.sdstatus != Status.OPEN_FAILED:
                    raise
                last_error = ex
                logger.info(f"Attempt {attempt} of {self.max_attempts} failed")
                if attempt < self.max_attempts:
                    self.interaction.error("Could not open volume, try again")
            finally:
                secret.wipe()

        raise SecretExhausted(
            f"No passphrase accepted after {self.max_attempts} attempts",
            sdstatus=Status.OPEN_FAILED,
            sderror=last_error.sderror if last_error else None,
        )

    def open_raw(self, volume: Volume, name: str) -> None:
        """
        Single attempt; the passphrase is read by the backend from our stdin.
        """
        logger.info("Opening with passphrase from standard input")
        self.backend.open(volume.image_path, name, None)

    def new_secret(self) -> SecretBuffer:
        """
        Ask for a new passphrase twice. The caller owns (and must wipe) the
        returned buffer.

        Raises SecretAbort on cancel/timeout, SecretExhausted if no matching
        non-empty pair was entered within max_attempts.
        """
        for attempt in range(1, self.max_attempts + 1):
            first = self._ask("New passphrase: ")
            try:
                second = self._ask("Repeat passphrase: ")
            except SecretAbort:
                first.wipe()
                raise

            with second:
                if len(first) and first == second:
                    return first
            first.wipe()

            logger.info(f"Passphrases empty or mismatched (attempt {attempt})")
            self.interaction.error("Passphrases are empty or do not match")

        raise SecretExhausted(
            "No matching passphrase entered", sdstatus=Status.ABORTED
        )
