import abc
import atexit
import getpass
import logging
import signal
import subprocess
import sys
from typing import List, Optional, Union

from cryptvol.exceptions import TimeoutException, handler

logger = logging.getLogger(__name__)

ERROR_MARKER = "ERROR:"
TITLE = "cryptvol"

# zenity exit statuses
_ZENITY_CANCEL = 1
_ZENITY_TIMEOUT = 5


class Progress(abc.ABC):
    """
    Handle for one running progress report. Usable as a context manager;
    close() may be called more than once.
    """

    def __init__(self, text: str):
        self.text = text
        self.closed = False

    @abc.abstractmethod
    def update(self, percent: int) -> None:
        pass

    def close(self) -> None:
        self.closed = True

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()
        return False


class Interaction(abc.ABC):
    """
    Where prompts, progress and messages go. Nothing here decides anything
    about a volume.
    """

    def __init__(self):
        self._live: List[Progress] = []
        atexit.register(self.close_all)

    @abc.abstractmethod
    def prompt(
        self, text: str, hidden: bool = False, timeout: Optional[int] = None
    ) -> Optional[Union[str, bytearray]]:
        """
        Ask for a line of input. None if cancelled or timed out.

        Hidden answers may come back as a bytearray so the caller can wipe
        them; otherwise the answer is a str.
        """

    @abc.abstractmethod
    def confirm(self, text: str) -> bool:
        pass

    @abc.abstractmethod
    def info(self, text: str) -> None:
        pass

    @abc.abstractmethod
    def error(self, text: str) -> None:
        pass

    @abc.abstractmethod
    def _start_progress(self, text: str) -> Progress:
        pass

    def progress(self, text: str) -> Progress:
        handle = self._start_progress(text)
        self._live.append(handle)
        return handle

    def update(self, handle: Progress, percent: int) -> None:
        handle.update(max(0, min(100, percent)))

    def close(self, handle: Progress) -> None:
        handle.close()
        if handle in self._live:
            self._live.remove(handle)

    def close_all(self) -> None:
        for handle in list(self._live):
            self.close(handle)

    def choose(self, text: str, options: List[str], default: Optional[str] = None) -> Optional[str]:
        """
        Pick one of options. None if cancelled or the answer isn't an option.
        """
        suffix = f" [{default}]" if default else ""
        answer = self.prompt(f"{text} ({'/'.join(options)}){suffix}: ")
        if answer is None:
            return None
        answer = answer.strip() or default
        return answer if answer in options else None


class TerminalProgress(Progress):
    def __init__(self, text: str, stream):
        super().__init__(text)
        self.stream = stream
        self._last = -1

    def update(self, percent: int) -> None:
        if self.closed or percent == self._last:
            return
        self._last = percent
        self.stream.write(f"\r{self.text} {percent}%")
        self.stream.flush()

    def close(self) -> None:
        if not self.closed and self._last >= 0:
            self.stream.write("\n")
            self.stream.flush()
        super().close()


class TerminalInteraction(Interaction):
    def __init__(self, stdout=None, stderr=None):
        super().__init__()
        self.stdout = stdout or sys.stdout
        self.stderr = stderr or sys.stderr

    def prompt(
        self, text: str, hidden: bool = False, timeout: Optional[int] = None
    ) -> Optional[str]:
        previous = None
        if timeout:
            previous = signal.signal(signal.SIGALRM, handler)
            signal.alarm(timeout)
        try:
            if hidden:
                return getpass.getpass(text, stream=self.stderr)
            return input(text)
        except TimeoutException:
            self.stderr.write("\n")
            logger.info("Prompt timed out")
            return None
        except (EOFError, KeyboardInterrupt):
            self.stderr.write("\n")
            logger.info("Prompt cancelled")
            return None
        finally:
            if timeout:
                signal.alarm(0)
                signal.signal(signal.SIGALRM, previous or signal.SIG_DFL)

    def confirm(self, text: str) -> bool:
        answer = self.prompt(f"{text} [y/N] ")
        return answer is not None and answer.strip().lower() in ("y", "yes")

    def info(self, text: str) -> None:
        self.stdout.write(text + "\n")
        self.stdout.flush()

    def error(self, text: str) -> None:
        self.stderr.write(f"{ERROR_MARKER} {text}\n")
        self.stderr.flush()

    def _start_progress(self, text: str) -> Progress:
        return TerminalProgress(text, self.stdout)


class DialogProgress(Progress):
    """
    A `zenity --progress` child fed percentages over its stdin.
    """

    def __init__(self, text: str, zenity: str):
        super().__init__(text)
        self.process = subprocess.Popen(
            [
                zenity,
                "--progress",
                "--auto-close",
                "--no-cancel",
                "--no-markup",
                f"--title={TITLE}",
                f"--text={text}",
            ],
            stdin=subprocess.PIPE,
            stdout=subprocess.DEVNULL,
            stderr=subprocess.DEVNULL,
        )

    def update(self, percent: int) -> None:
        if self.closed:
            return
        try:
            self.process.stdin.write(f"{percent}\n".encode("utf-8"))
            self.process.stdin.flush()
        except (BrokenPipeError, ValueError):
            logger.debug("Progress dialog went away")

    def close(self) -> None:
        if self.closed:
            return
        super().close()
        try:
            self.process.stdin.close()
        except BrokenPipeError:
            pass
        if self.process.poll() is None:
            self.process.terminate()
        try:
            self.process.wait(timeout=2)
        except subprocess.TimeoutExpired:
            self.process.kill()
            self.process.wait()


class DialogInteraction(Interaction):
    """
    Non-interactive surface: every prompt and message is a zenity dialog.
    """

    def __init__(self, zenity: str = "zenity"):
        super().__init__()
        self.zenity = zenity

    def _dialog(self, args: List[str]) -> subprocess.CompletedProcess:
        command = [self.zenity, f"--title={TITLE}", "--no-markup"] + args
        return subprocess.run(command, capture_output=True)

    def prompt(
        self, text: str, hidden: bool = False, timeout: Optional[int] = None
    ) -> Optional[Union[str, bytearray]]:
        args = ["--entry", f"--text={text}"]
        if hidden:
            args.append("--hide-text")
        if timeout:
            args.append(f"--timeout={timeout}")

        result = self._dialog(args)
        if result.returncode == _ZENITY_TIMEOUT:
            logger.info("Prompt timed out")
            return None
        if result.returncode == _ZENITY_CANCEL:
            logger.info("Prompt cancelled")
            return None
        if result.returncode != 0:
            logger.error(f"zenity exited with {result.returncode}")
            return None
        if hidden:
            answer = bytearray(result.stdout)
            while answer.endswith(b"\n"):
                del answer[-1]
            return answer
        return result.stdout.decode("utf-8").rstrip("\n")

    def confirm(self, text: str) -> bool:
        return self._dialog(["--question", f"--text={text}"]).returncode == 0

    def choose(self, text: str, options: List[str], default: Optional[str] = None) -> Optional[str]:
        args = ["--list", f"--text={text}", "--column=", "--hide-header"] + list(options)
        result = self._dialog(args)
        if result.returncode != 0:
            return None
        answer = result.stdout.decode("utf-8").strip() or default
        return answer if answer in options else None

    def info(self, text: str) -> None:
        self._dialog(["--info", f"--text={text}"])

    def error(self, text: str) -> None:
        self._dialog(["--error", f"--text={ERROR_MARKER} {text}"])

    def _start_progress(self, text: str) -> Progress:
        return DialogProgress(text, self.zenity)


def get_interaction(dialog: bool, zenity: str = "zenity") -> Interaction:
    if dialog:
        return DialogInteraction(zenity)
    return TerminalInteraction()
