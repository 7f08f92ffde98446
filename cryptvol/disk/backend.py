import logging
import os
import re
import subprocess
import sys
from re import Pattern
from typing import List, Optional, Tuple

import pexpect

from cryptvol.config import Config
from cryptvol.exceptions import BackendError, IdentityError

from .status import Status
from .volume import BackendStatus

logger = logging.getLogger(__name__)

# cryptsetup exit codes, see cryptsetup(8) "RETURN CODES"
_EXIT_NO_PERMISSION = 2  # bad passphrase
_EXIT_DEVICE_EXISTS = 5  # device already exists or device is busy

_CIPHER_OPTIONS = ["--cipher", "aes-xts-plain64", "--key-size", "512"]
_LEGACY_PROFILE = ["--hash", "sha256"]
_CURRENT_PROFILE = ["--type", "luks2", "--hash", "sha512", "--pbkdf", "argon2id"]

# See the note on PexpectList in the pexpect docs:
# https://pexpect.readthedocs.io/en/stable/api/pexpect.html#pexpect.spawn.expect
PexpectList = list[
    Pattern[str] | Pattern[bytes] | str | bytes | type[pexpect.EOF] | type[pexpect.TIMEOUT]
]


class Backend:
    """
    A Python wrapper for the cryptsetup commands used to format, open, close
    and inspect LUKS containers.

    Backend callers must handle VolumeException.
    """

    def __init__(self, config: Config):
        self.config = config

    def _command(self, args: List[str], privileged: bool) -> List[str]:
        command = [self.config.cryptsetup] + args
        return self.config.privileged(command) if privileged else command

    def version(self) -> Tuple[int, ...]:
        """
        Parse `cryptsetup --version`, e.g. "cryptsetup 2.6.1 flags: UDEV BLKID ...".
        Returns (0,) if the version can't be determined.
        """
        try:
            output = subprocess.check_output([self.config.cryptsetup, "--version"]).decode("utf-8")
        except (subprocess.CalledProcessError, OSError) as ex:
            logger.error(f"Could not query cryptsetup version: {ex}")
            return (0,)

        match = re.search(r"(\d+)\.(\d+)(?:\.(\d+))?", output)
        if not match:
            logger.warning(f"Unrecognised cryptsetup version string: {output.strip()}")
            return (0,)
        return tuple(int(part) for part in match.groups() if part is not None)

    def format_profile(self) -> List[str]:
        """
        Options for luksFormat. cryptsetup 2 and later get LUKS2 with argon2id;
        older releases only know PBKDF2 and default to a weaker hash.
        """
        if self.version()[0] >= 2:
            return _CIPHER_OPTIONS + _CURRENT_PROFILE
        return _CIPHER_OPTIONS + _LEGACY_PROFILE

    def format(
        self,
        image_path: str,
        secret,
        extra_options: Optional[List[str]] = None,
        privileged: bool = False,
    ) -> None:
        """
        Run luksFormat on image_path, answering the passphrase prompts.

        Raises BackendError(FORMAT_FAILED) on any outcome other than a clean exit.
        """
        options = self.format_profile() + list(extra_options or [])
        command = self._command(["luksFormat", "-q"] + options + [image_path], privileged)
        logger.info(f"Formatting {image_path} with options {' '.join(options)}")

        prompt: PexpectList = [
            "Enter passphrase for .*: ",
            pexpect.EOF,
            pexpect.TIMEOUT,
        ]
        verify: PexpectList = [
            "Verify passphrase: ",
            pexpect.EOF,
            pexpect.TIMEOUT,
        ]

        try:
            child = pexpect.spawn(command[0], command[1:], timeout=None)
        except pexpect.ExceptionPexpect as ex:
            logger.error(f"Could not run luksFormat: {ex}")
            raise BackendError(sdstatus=Status.FORMAT_FAILED, sderror=str(ex)) from ex
        try:
            index = child.expect(prompt)
            if index != 0:
                logger.error("Did not receive passphrase prompt from luksFormat")
                raise BackendError(
                    sdstatus=Status.FORMAT_FAILED, sderror=_decode(child.before)
                )

            self._send_secret(child, secret)
            index = child.expect(verify)
            if index == 0:
                logger.debug("Verifying passphrase")
                self._send_secret(child, secret)
                child.expect([pexpect.EOF, pexpect.TIMEOUT])
            output = _decode(child.before)
        finally:
            child.close()

        if child.exitstatus != 0:
            logger.error(f"luksFormat exited with {child.exitstatus}")
            raise BackendError(sdstatus=Status.FORMAT_FAILED, sderror=output.strip())

        logger.info(f"Formatted {image_path}")

    def _send_secret(self, child, secret) -> None:
        # pexpect's send() wants immutable bytes; write the mutable buffer
        # straight to the pty so no copy outlives the wipe.
        os.write(child.child_fd, secret.buffer)
        child.sendline()

    def open(self, image_path: str, name: str, secret=None) -> None:
        """
        Open image_path as /dev/mapper/<name>.

        With a secret, it is piped in on stdin (--key-file=-). Without one
        (raw mode) our own stdin is handed to cryptsetup untouched.

        Raises IdentityError(MAPPING_COLLISION) if name is taken,
        BackendError(DEVICE_ERROR) if cryptsetup can't be run and
        BackendError(OPEN_FAILED) on any other failure.
        """
        args = ["open", "--type", "luks"]
        if secret is not None:
            args.append("--key-file=-")
        command = self._command(args + [image_path, name], privileged=True)

        logger.info(f"Opening {image_path} as {name}")
        try:
            if secret is not None:
                result = subprocess.run(command, input=secret.buffer, capture_output=True)
            else:
                result = subprocess.run(command, stdin=sys.stdin, capture_output=True)
        except OSError as ex:
            logger.error(f"Could not run cryptsetup open: {ex}")
            raise BackendError(sdstatus=Status.DEVICE_ERROR, sderror=str(ex)) from ex

        if result.returncode == 0:
            logger.info(f"Opened {name}")
            return

        error_text = _decode(result.stderr).strip()
        if result.returncode == _EXIT_DEVICE_EXISTS:
            logger.error(f"Device-mapper name {name} is already in use")
            raise IdentityError(sdstatus=Status.MAPPING_COLLISION, sderror=error_text)
        if result.returncode == _EXIT_NO_PERMISSION:
            logger.info("No key available with this passphrase")
        else:
            logger.error(f"cryptsetup open exited with {result.returncode}")
        raise BackendError(sdstatus=Status.OPEN_FAILED, sderror=error_text)

    def close(self, name: str) -> None:
        """
        Close /dev/mapper/<name>. Raises BackendError(CLOSE_FAILED).
        """
        logger.info(f"Closing {name}")
        try:
            subprocess.run(
                self._command(["close", name], privileged=True),
                capture_output=True,
                check=True,
            )
        except subprocess.CalledProcessError as ex:
            logger.error(f"Error closing {name}")
            raise BackendError(
                sdstatus=Status.CLOSE_FAILED, sderror=_decode(ex.stderr).strip()
            ) from ex
        except OSError as ex:
            logger.error(f"Could not run cryptsetup close: {ex}")
            raise BackendError(sdstatus=Status.CLOSE_FAILED, sderror=str(ex)) from ex

    def uuid(self, image_path: str, privileged: bool = False) -> Optional[str]:
        """
        UUID of the LUKS header on image_path, or None if there isn't one.
        Raises BackendError(DEVICE_ERROR) if cryptsetup can't be run.
        """
        try:
            output = subprocess.run(
                self._command(["luksUUID", image_path], privileged),
                capture_output=True,
                check=True,
            ).stdout
        except subprocess.CalledProcessError as ex:
            logger.debug(f"luksUUID failed on {image_path}: {_decode(ex.stderr).strip()}")
            return None
        except OSError as ex:
            logger.error(f"Could not run cryptsetup luksUUID: {ex}")
            raise BackendError(sdstatus=Status.DEVICE_ERROR, sderror=str(ex)) from ex

        uuid = _decode(output).strip()
        return uuid or None

    def status(self, name: str) -> BackendStatus:
        """
        Query cryptsetup for a mapping. Inactive mappings exit non-zero, which
        is not an error here.
        """
        try:
            result = subprocess.run(
                self._command(["status", name], privileged=True),
                capture_output=True,
            )
        except OSError as ex:
            raise BackendError(sdstatus=Status.DEVICE_ERROR, sderror=str(ex)) from ex

        return BackendStatus.parse(_decode(result.stdout))

    def is_active(self, name: str) -> bool:
        return self.status(name).active


def _decode(output) -> str:
    if output is None:
        return ""
    if isinstance(output, bytes):
        return output.decode("utf-8", errors="replace")
    return str(output)
