import logging
import os
import shlex
import stat
from contextlib import contextmanager
from typing import List, Optional

from cryptvol.config import Config
from cryptvol.disk.backend import Backend
from cryptvol.disk.cli import CLI, MIB
from cryptvol.disk.identity import IdentityResolver, image_path_for
from cryptvol.disk.secret import SecretAcquisition
from cryptvol.disk.status import Status
from cryptvol.disk.volume import Volume
from cryptvol.exceptions import (
    BackendError,
    CreationAborted,
    IdentityError,
    MountError,
    PreconditionError,
    VolumeException,
)
from cryptvol.interaction import Interaction

from .plan import DEFAULT_FILESYSTEM, FILESYSTEMS, CreationPlan, parse_size

logger = logging.getLogger(__name__)

PROGRAM = "cryptvol"


class Pipeline:
    """
    Provision a new encrypted volume.

    Steps run strictly in order and the first failure stops the rest. Random
    fill and formatting can't be undone; on failure only the mapping opened
    by this run (and its mount, if any) is cleaned up.
    """

    def __init__(
        self,
        config: Config,
        interaction: Interaction,
        backend: Optional[Backend] = None,
        cli: Optional[CLI] = None,
    ):
        self.config = config
        self.interaction = interaction
        self.backend = backend or Backend(config)
        self.cli = cli or CLI(config)
        self.identity = IdentityResolver(self.backend)
        self.secrets = SecretAcquisition(
            self.backend, interaction, config.max_attempts, config.timeout
        )

        self._step = None
        self._irreversible = False
        self._opened_name = None
        self._mounted_at = None

    def _ask(self, text: str, default: Optional[str] = None) -> str:
        suffix = f" [{default}]" if default else ""
        answer = self.interaction.prompt(f"{text}{suffix}: ")
        if answer is None:
            raise CreationAborted("Cancelled", sdstatus=Status.CREATE_ABORTED)
        return answer.strip() or (default or "")

    def build_plan(
        self,
        mount_dir: Optional[str] = None,
        image_path: Optional[str] = None,
        size: Optional[str] = None,
        filesystem: Optional[str] = None,
        format_options: Optional[List[str]] = None,
    ) -> CreationPlan:
        """
        Fill in whatever wasn't given on the command line, then validate.
        """
        if not mount_dir:
            mount_dir = self._ask("Mount directory for the new volume")
        if not mount_dir:
            raise PreconditionError("No mount directory given", sdstatus=Status.INVALID_INPUT)
        mount_dir = os.path.abspath(os.path.expanduser(mount_dir))

        if not image_path:
            image_path = self._ask("Image file or block device", image_path_for(mount_dir))
        image_path = os.path.abspath(os.path.expanduser(image_path))

        plan = CreationPlan(mount_dir, image_path, format_options=format_options)

        if os.path.exists(image_path) and stat.S_ISBLK(os.stat(image_path).st_mode):
            plan.is_block_device = True
            plan.device_size = self.cli.block_size(image_path)
            plan.size_mib = plan.device_size // MIB
            plan.whole_disk = self.cli.is_whole_disk(image_path)
            if plan.whole_disk:
                self._confirm_whole_disk(image_path)
        else:
            if size is None:
                size = self._ask("Size of the image file (e.g. 512M, 2G)")
            plan.size_mib = parse_size(size)

        if filesystem is None:
            filesystem = self.interaction.choose(
                "Filesystem", list(FILESYSTEMS), DEFAULT_FILESYSTEM
            )
            if filesystem is None:
                raise PreconditionError("No valid filesystem chosen", sdstatus=Status.INVALID_INPUT)
        plan.filesystem = filesystem

        return plan.validate()

    def _confirm_whole_disk(self, device: str) -> None:
        warnings = [
            f"{device} is a whole disk, not a partition. Use the entire disk?",
            f"Really overwrite every partition on {device}?",
        ]
        for warning in warnings:
            if not self.interaction.confirm(warning):
                raise CreationAborted("Cancelled", sdstatus=Status.CREATE_ABORTED)

    def confirm(self, plan: CreationPlan) -> None:
        """
        Nothing destructive happens before this returns.
        """
        if not self.interaction.confirm(plan.summary() + "\nContinue?"):
            logger.info("Operator declined volume creation")
            raise CreationAborted("Cancelled, nothing was changed", sdstatus=Status.CREATE_ABORTED)

    @contextmanager
    def step(self, description: str):
        self._step = description
        logger.info(f"Creation step: {description}")
        yield

    def run(self, **kwargs) -> Status:
        plan = self.build_plan(**kwargs)
        self.confirm(plan)
        return self.execute(plan)

    def execute(self, plan: CreationPlan) -> Status:
        try:
            self._execute(plan)
        except VolumeException as ex:
            self._cleanup()
            message = f"{self._step} failed: {ex}"
            if self._irreversible:
                message += f" ({plan.image_path} is partially provisioned)"
            logger.error(message)
            raise type(ex)(message, sdstatus=ex.sdstatus, sderror=ex.sderror) from ex
        except OSError as ex:
            self._cleanup()
            logger.error(f"{self._step} failed: {ex}")
            raise BackendError(
                f"{self._step} failed", sdstatus=Status.DEVICE_ERROR, sderror=str(ex)
            ) from ex

        self.interaction.info(self.instructions(plan))
        return Status.CREATED

    def _execute(self, plan: CreationPlan) -> None:
        with self.step("choose passphrase"):
            secret = self.secrets.new_secret()

        try:
            with self.step("create mount directory"):
                os.makedirs(plan.mount_dir, mode=0o700, exist_ok=True)
                if not plan.is_block_device:
                    self._prepare_image_file(plan)

            with self.step("write random data"):
                self._irreversible = True
                handle = self.interaction.progress(f"Writing random data to {plan.image_path}")
                try:
                    for percent in self.cli.random_fill(
                        plan.image_path, plan.extent, privileged=plan.is_block_device
                    ):
                        self.interaction.update(handle, percent)
                finally:
                    self.interaction.close(handle)

            with self.step("format"):
                self.backend.format(
                    plan.image_path,
                    secret,
                    plan.format_options,
                    privileged=plan.is_block_device,
                )

            with self.step("open"):
                volume = Volume(plan.image_path, plan.mount_dir)
                volume.mapper_name = self.identity.device_mapper_name_for(volume)
                if self.backend.is_active(volume.mapper_name):
                    raise IdentityError(
                        f"{volume.mapper_name} is already open",
                        sdstatus=Status.MAPPING_COLLISION,
                    )
                self.backend.open(plan.image_path, volume.mapper_name, secret)
                self._opened_name = volume.mapper_name
        finally:
            secret.wipe()

        with self.step("create filesystem"):
            self.cli.mkfs(plan.filesystem, volume.mapper_device, plan.label)

        # FAT has no owners; ownership is applied through mount options instead.
        if plan.filesystem != "vfat":
            with self.step("set permissions"):
                self.cli.mount(
                    volume.mapper_device, plan.mount_dir, list(self.config.mount_options)
                )
                self._mounted_at = plan.mount_dir
                self.cli.restrict_to_owner(plan.mount_dir, os.getuid(), os.getgid())
                self.cli.unmount(plan.mount_dir)
                self._mounted_at = None

        with self.step("close"):
            self.backend.close(volume.mapper_name)
            self._opened_name = None

    def _prepare_image_file(self, plan: CreationPlan) -> None:
        """
        Create the image file, or resize an existing one to exactly
        plan.extent bytes so nothing past the randomized range survives.
        """
        existed = os.path.exists(plan.image_path)
        fd = os.open(plan.image_path, os.O_WRONLY | os.O_CREAT, 0o600)
        try:
            if existed:
                logger.info(f"Reusing {plan.image_path}, resizing to {plan.extent} bytes")
                self._irreversible = True
            os.fchmod(fd, 0o600)
            os.ftruncate(fd, plan.extent)
        finally:
            os.close(fd)

    def _cleanup(self) -> None:
        if self._mounted_at:
            try:
                self.cli.unmount(self._mounted_at)
                self._mounted_at = None
            except MountError as ex:
                logger.error(f"Cleanup: could not unmount {self._mounted_at}: {ex.sderror}")
                return
        if self._opened_name:
            try:
                self.backend.close(self._opened_name)
                self._opened_name = None
            except BackendError as ex:
                logger.error(f"Cleanup: could not close {self._opened_name}: {ex.sderror}")

    def instructions(self, plan: CreationPlan) -> str:
        image_args = ""
        if plan.image_path != image_path_for(plan.mount_dir):
            image_args = f" -i {shlex.quote(plan.image_path)}"
        mount_dir = shlex.quote(plan.mount_dir)
        return (
            f"Volume created. From now on use:\n"
            f"  {PROGRAM} mount {mount_dir}{image_args}\n"
            f"  {PROGRAM} unmount {mount_dir}"
        )
