import os
import re
from typing import List, Optional

from cryptvol.disk.cli import MIB
from cryptvol.disk.status import Status
from cryptvol.exceptions import PreconditionError

FILESYSTEMS = ("ext4", "ext2", "vfat")
DEFAULT_FILESYSTEM = "ext4"

# FAT labels are at most 11 characters
_VFAT_LABEL_LENGTH = 11
_SIZE_PATTERN = re.compile(r"^\s*(\d+)\s*([MmGg])\s*$")


def parse_size(text: Optional[str]) -> int:
    """
    "<N>M" or "<N>G" -> size in MiB. Raises PreconditionError(INVALID_INPUT).
    """
    match = _SIZE_PATTERN.match(text or "")
    if not match:
        raise PreconditionError(
            f"Invalid size '{text or ''}', expected e.g. 512M or 2G",
            sdstatus=Status.INVALID_INPUT,
        )
    number, unit = int(match.group(1)), match.group(2).upper()
    size = number * 1024 if unit == "G" else number
    if size <= 0:
        raise PreconditionError("Size must be greater than zero", sdstatus=Status.INVALID_INPUT)
    return size


class CreationPlan:
    """
    Everything needed to provision a new volume. Built interactively,
    checked with validate(), then executed by the pipeline.
    """

    def __init__(
        self,
        mount_dir: str,
        image_path: str,
        is_block_device: bool = False,
        size_mib: Optional[int] = None,
        filesystem: str = DEFAULT_FILESYSTEM,
        format_options: Optional[List[str]] = None,
        whole_disk: bool = False,
        device_size: Optional[int] = None,
    ):
        self.mount_dir = mount_dir
        self.image_path = image_path
        self.is_block_device = is_block_device
        self.size_mib = size_mib
        self.filesystem = filesystem
        self.format_options = list(format_options or [])
        self.whole_disk = whole_disk
        self.device_size = device_size

    @property
    def extent(self) -> int:
        """
        Bytes to overwrite: all of a block device, exactly size_mib for a file.
        """
        if self.is_block_device and self.device_size:
            return self.device_size
        return self.size_mib * MIB

    @property
    def label(self) -> str:
        label = os.path.basename(os.path.normpath(self.mount_dir))
        if self.filesystem == "vfat":
            return label.upper()[:_VFAT_LABEL_LENGTH]
        return label

    def validate(self) -> "CreationPlan":
        parent = os.path.dirname(os.path.normpath(self.mount_dir))
        if not os.path.isdir(parent):
            raise PreconditionError(
                f"Parent directory {parent} does not exist", sdstatus=Status.MOUNT_DIR_MISSING
            )
        if self.filesystem not in FILESYSTEMS:
            raise PreconditionError(
                f"Unsupported filesystem {self.filesystem}", sdstatus=Status.INVALID_INPUT
            )
        if not self.size_mib or self.size_mib <= 0:
            raise PreconditionError("No size for the volume", sdstatus=Status.INVALID_INPUT)
        if not self.is_block_device and not os.path.isdir(os.path.dirname(self.image_path)):
            raise PreconditionError(
                f"Directory for {self.image_path} does not exist", sdstatus=Status.INVALID_INPUT
            )
        return self

    def summary(self) -> str:
        kind = "block device" if self.is_block_device else "file"
        lines = [
            f"Mount directory:  {self.mount_dir}",
            f"Storage ({kind}): {self.image_path}",
            f"Size:             {self.size_mib} MiB",
            f"Filesystem:       {self.filesystem} (label {self.label})",
        ]
        if self.format_options:
            lines.append(f"Format options:   {' '.join(self.format_options)}")
        lines.append(f"ALL DATA ON {self.image_path} WILL BE DESTROYED.")
        return "\n".join(lines)
