import logging
import time

from cryptvol.config import Config
from cryptvol.exceptions import BusyError

from .cli import CLI
from .status import Status

logger = logging.getLogger(__name__)


class BusyResolver:
    """
    Finds processes holding files open under a mount point and, on request,
    terminates them.
    """

    def __init__(self, cli: CLI, config: Config, sleep=time.sleep):
        self.cli = cli
        self.config = config
        self._sleep = sleep

    def is_busy(self, mount_dir: str) -> bool:
        """
        Best effort. If fuser can't be run the mount point counts as not busy
        and umount gets to decide.
        """
        try:
            busy = self.cli.has_holders(mount_dir)
        except OSError as ex:
            logger.warning(f"Can't check for open files under {mount_dir}: {ex}")
            return False
        if busy:
            logger.info(f"{mount_dir} has open file handles")
        return busy

    def evict(self, mount_dir: str) -> None:
        """
        SIGTERM the holders, up to evict_rounds times with evict_interval
        seconds in between, then check once more.

        Raises BusyError(EVICTION_FAILED) if holders remain.
        """
        for attempt in range(self.config.evict_rounds):
            if not self.is_busy(mount_dir):
                return
            logger.info(f"Terminating processes using {mount_dir} (round {attempt + 1})")
            try:
                self.cli.kill_holders(mount_dir)
            except OSError as ex:
                logger.error(f"Could not signal processes under {mount_dir}: {ex}")
                break
            self._sleep(self.config.evict_interval)

        if self.is_busy(mount_dir):
            logger.error(f"{mount_dir} still busy after eviction")
            raise BusyError(
                f"{mount_dir} is still in use", sdstatus=Status.EVICTION_FAILED
            )
