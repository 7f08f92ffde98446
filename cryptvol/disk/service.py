import logging
import os
from typing import List, Optional, Tuple

from cryptvol.config import Config
from cryptvol.exceptions import (
    BackendError,
    BusyError,
    IdentityError,
    MountError,
    PreconditionError,
    VolumeException,
)
from cryptvol.interaction import Interaction

from .backend import Backend
from .busy import BusyResolver
from .cli import CLI
from .identity import IdentityResolver
from .secret import SecretAcquisition
from .status import Status
from .volume import MountedVolume, Volume, VolumeStateMachine, mapper_name_from_source

logger = logging.getLogger(__name__)


class Context:
    """
    Per-invocation behaviour flags.
    """

    def __init__(
        self,
        mount_options: Optional[List[str]] = None,
        timeout: Optional[int] = None,
        max_attempts: int = 3,
        silent: bool = False,
        kill_busy: bool = False,
        raw: bool = False,
    ):
        self.mount_options = list(mount_options or [])
        self.timeout = timeout
        self.max_attempts = max_attempts
        self.silent = silent
        self.kill_busy = kill_busy
        self.raw = raw

    @classmethod
    def from_config(cls, config: Config, **flags) -> "Context":
        return cls(
            mount_options=list(config.mount_options),
            timeout=config.timeout,
            max_attempts=config.max_attempts,
            **flags,
        )


class Service:
    """
    Mount, unmount and inspect encrypted volumes.
    This is the "API" portion of the volume lifecycle.
    """

    def __init__(
        self,
        config: Config,
        interaction: Interaction,
        backend: Optional[Backend] = None,
        cli: Optional[CLI] = None,
        busy: Optional[BusyResolver] = None,
    ):
        self.config = config
        self.interaction = interaction
        self.backend = backend or Backend(config)
        self.cli = cli or CLI(config)
        self.busy = busy or BusyResolver(self.cli, config)
        self.identity = IdentityResolver(self.backend)

    def _check_mount_dir(self, volume: Volume) -> None:
        if not os.path.isdir(volume.mount_point):
            logger.error(f"Mount directory {volume.mount_point} does not exist")
            raise PreconditionError(
                f"{volume.mount_point} is not a directory", sdstatus=Status.MOUNT_DIR_MISSING
            )

    def mount_options_for(self, fstype: Optional[str], context: Context) -> List[str]:
        """
        vfat has no owners of its own, so ownership comes from the options;
        ext2 has no journal, so write synchronously.
        """
        options = list(context.mount_options)
        if fstype == "vfat":
            options += [f"uid={os.getuid()}", f"gid={os.getgid()}", "umask=077"]
        elif fstype == "ext2":
            options.append("sync")
        return options

    def mount(self, volume: Volume, context: Context) -> Status:
        """
        Open the container and mount it at volume.mount_point.

        A failed mount closes the mapping again before the error is raised.
        """
        self._check_mount_dir(volume)

        if self.cli.probe(volume.mount_point) is not None:
            if context.silent:
                logger.info(f"{volume.mount_point} already mounted, nothing to do")
                return Status.ALREADY_MOUNTED
            raise PreconditionError(
                f"{volume.mount_point} is already mounted", sdstatus=Status.ALREADY_MOUNTED
            )

        if not os.path.exists(volume.image_path):
            raise PreconditionError(
                f"{volume.image_path} does not exist", sdstatus=Status.IMAGE_MISSING
            )

        volume.mapper_name = self.identity.device_mapper_name_for(volume)

        # Re-check right before opening; nothing locks the mapper namespace.
        if self.backend.is_active(volume.mapper_name):
            logger.error(f"{volume.mapper_name} is already open")
            raise IdentityError(
                f"{volume.mapper_name} is already open", sdstatus=Status.MAPPING_COLLISION
            )

        machine = VolumeStateMachine()
        machine.begin_open()
        secrets = SecretAcquisition(
            self.backend, self.interaction, context.max_attempts, context.timeout
        )
        try:
            if context.raw:
                secrets.open_raw(volume, volume.mapper_name)
            else:
                secrets.open(volume, volume.mapper_name)
        except VolumeException:
            machine.open_failed()
            raise
        machine.open_succeeded()

        fstype = self.cli.fstype(volume.mapper_device)
        options = self.mount_options_for(fstype, context)

        machine.begin_mount()
        try:
            self.cli.mount(volume.mapper_device, volume.mount_point, options)
        except MountError as ex:
            machine.mount_failed()
            self._rollback(volume, machine, ex)
            raise
        machine.mount_succeeded()

        logger.info(f"{volume.image_path} mounted at {volume.mount_point}")
        return Status.MOUNTED

    def _rollback(self, volume: Volume, machine: VolumeStateMachine, ex: MountError) -> None:
        logger.info(f"Rolling back: closing {volume.mapper_name}")
        try:
            self.backend.close(volume.mapper_name)
            machine.close_succeeded()
        except BackendError as close_ex:
            machine.close_failed()
            logger.error(f"Rollback failed, {volume.mapper_name} is still open")
            ex.sderror = "\n".join(
                text for text in (ex.sderror, close_ex.sderror) if text
            )

    def unmount(self, volume: Volume, context: Context) -> Status:
        """
        Unmount volume.mount_point and close the mapping found there.

        The device comes from the live mount table, not from the image.
        """
        self._check_mount_dir(volume)

        info = self.cli.probe(volume.mount_point)
        mapper_name = mapper_name_from_source(info.source) if info else None
        if mapper_name is None:
            if context.silent:
                logger.info(f"{volume.mount_point} not mounted, nothing to do")
                return Status.NOT_MOUNTED
            raise PreconditionError(
                f"{volume.mount_point} is not mounted", sdstatus=Status.NOT_MOUNTED
            )

        mounted = MountedVolume(
            volume.image_path, volume.mount_point, info.source, info.fstype
        )
        mapping = self.backend.status(mounted.mapper_name)
        if mapping.active:
            logger.debug(f"{mounted.mapper_name} backed by {mapping.loop or mapping.device}")
        else:
            logger.warning(f"{mounted.source} is mounted but {mounted.mapper_name} is not active")

        if self.busy.is_busy(mounted.mount_point):
            if not context.kill_busy:
                raise BusyError(f"{mounted.mount_point} is in use", sdstatus=Status.BUSY)
            self.busy.evict(mounted.mount_point)

        machine = VolumeStateMachine(start_value="mounted")
        machine.begin_unmount()
        try:
            self.cli.unmount(mounted.mount_point)
        except MountError:
            machine.unmount_failed()
            raise
        machine.unmount_succeeded()

        if mapping.active:
            try:
                self.backend.close(mounted.mapper_name)
            except BackendError:
                machine.close_failed()
                logger.error(f"{mounted.mount_point} unmounted but {mounted.mapper_name} open")
                raise
        machine.close_succeeded()

        logger.info(f"{mounted.mount_point} unmounted and closed")
        return Status.UNMOUNTED

    def toggle(self, volume: Volume, context: Context) -> Status:
        if self.status(volume):
            return self.unmount(volume, context)
        return self.mount(volume, context)

    def status(self, volume: Volume) -> bool:
        """
        True if the mount table shows a luks-<uuid> mapping at volume.mount_point.
        """
        if not os.path.isdir(volume.mount_point):
            return False
        info = self.cli.probe(volume.mount_point)
        return info is not None and mapper_name_from_source(info.source) is not None

    def list_mounted(self) -> List[Tuple[str, str]]:
        """
        (mount point, device) for every mounted luks-<uuid> mapping.
        """
        return [
            (target, source)
            for target, source, _ in self.cli.list_mounts()
            if mapper_name_from_source(source) is not None
        ]
