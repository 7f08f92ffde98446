import logging

logger = logging.getLogger(__name__)


class VolumeException(Exception):
    """
    Base class for exceptions encountered while handling a volume.
    In order to make use of additional attributes `sdstatus` and `sderror`,
    pass them as keyword arguments when raising VolumeException.

    `sderror` carries the literal text reported by the external tool, if any.
    """

    exit_code = 2

    def __init__(self, *args, **kwargs):
        super().__init__(*args)
        self.sdstatus = kwargs.get("sdstatus")
        self.sderror = kwargs.get("sderror")

    def __str__(self):
        message = super().__str__()
        if not message and self.sdstatus is not None:
            message = self.sdstatus.value
        return message


class PreconditionError(VolumeException):
    """
    Missing directory, or volume already in the requested state.
    """

    exit_code = 1


class IdentityError(VolumeException):
    """
    Cannot derive the device-mapper name, or it is already taken.
    """


class SecretAbort(VolumeException):
    """
    The operator cancelled the secret prompt, or it timed out.
    """


class SecretExhausted(VolumeException):
    """
    No secret was accepted within the allowed number of attempts.
    """


class BackendError(VolumeException):
    pass


class MountError(VolumeException):
    pass


class BusyError(VolumeException):
    pass


class CreationAborted(VolumeException):
    """
    The operator declined to continue. Nothing was changed.
    """


class TimeoutException(VolumeException):
    pass


def handler(signum, frame):
    """
    This is a signal handler used for raising timeouts:
    https://docs.python.org/3/library/signal.html#signal.signal
    """
    raise TimeoutException("Timeout")
