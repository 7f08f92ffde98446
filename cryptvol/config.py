import json
import logging
import os
from dataclasses import dataclass, fields
from typing import Optional, Tuple

logger = logging.getLogger(__name__)

DEFAULT_HOME = "~/.cryptvol"


@dataclass(frozen=True)
class Config:
    """
    Paths to external tools and default behaviour. Built once at startup and
    handed to every component.
    """

    CONFIG_NAME = "config.json"

    cryptsetup: str = "cryptsetup"
    mount: str = "mount"
    umount: str = "umount"
    findmnt: str = "findmnt"
    blkid: str = "blkid"
    fuser: str = "fuser"
    lsblk: str = "lsblk"
    blockdev: str = "blockdev"
    dd: str = "dd"
    mkfs_ext4: str = "mkfs.ext4"
    mkfs_ext2: str = "mkfs.ext2"
    mkfs_vfat: str = "mkfs.vfat"
    chown: str = "chown"
    chmod: str = "chmod"
    zenity: str = "zenity"
    sudo: str = "sudo"
    mount_options: Tuple[str, ...] = ("nodev", "nosuid", "noatime")
    max_attempts: int = 3
    timeout: Optional[int] = None
    evict_rounds: int = 3
    evict_interval: float = 1.0
    random_chunk_mib: int = 16

    @classmethod
    def from_home_dir(cls, home: str) -> "Config":
        full_path = os.path.join(os.path.expanduser(home), Config.CONFIG_NAME)
        if not os.path.exists(full_path):
            return Config()

        try:
            with open(full_path) as f:
                json_config = json.loads(f.read())
            if not isinstance(json_config, dict):
                raise ValueError("top level must be an object")
        except Exception as e:
            logger.error("Error opening config file at {}: {}".format(full_path, e))
            json_config = {}

        known = {f.name for f in fields(cls)}
        values = {}
        for key, value in json_config.items():
            if key not in known:
                logger.warning(f"Ignoring unknown config key {key}")
                continue
            if key == "mount_options":
                value = tuple(value.split(",")) if isinstance(value, str) else tuple(value)
            values[key] = value

        return Config(**values)

    def privileged(self, command: list) -> list:
        """
        Prefix command with the privilege helper, if one is configured.
        """
        if self.sudo:
            return [self.sudo] + command
        return command
