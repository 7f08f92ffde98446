import logging
import os
import re

from cryptvol.exceptions import IdentityError

from .backend import Backend
from .status import Status
from .volume import MAPPER_PREFIX, Volume

logger = logging.getLogger(__name__)

IMAGE_SUFFIX = "fs"


def image_path_for(mount_dir: str) -> str:
    """
    Default image location for a mount directory: a hidden sibling named
    after it, e.g. /home/user/secret -> /home/user/.secretfs.

    A trailing "fs" on the directory name is not doubled, and whitespace and
    dots are dropped from the name.
    """
    mount_dir = os.path.normpath(mount_dir)
    parent, name = os.path.split(mount_dir)
    if name.endswith(IMAGE_SUFFIX):
        name = name[: -len(IMAGE_SUFFIX)]
    name = re.sub(r"[\s.]", "", name)
    return os.path.join(parent, f".{name}{IMAGE_SUFFIX}")


def mapper_name_for(uuid: str) -> str:
    return f"{MAPPER_PREFIX}{uuid}"


class IdentityResolver:
    def __init__(self, backend: Backend):
        self.backend = backend

    def resolve(self, mount_dir: str, image_path: str = None) -> Volume:
        """
        Volume for mount_dir without a device-mapper name; the image need
        not exist yet.
        """
        mount_dir = os.path.abspath(mount_dir)
        if image_path is None:
            image_path = image_path_for(mount_dir)
        return Volume(image_path=os.path.abspath(image_path), mount_point=mount_dir)

    def device_mapper_name_for(self, volume: Volume) -> str:
        """
        luks-<uuid> for the container at volume.image_path.

        Raises IdentityError(NO_UUID) if the backend can't report a UUID.
        """
        uuid = self.backend.uuid(volume.image_path, privileged=volume.is_block_device)
        if not uuid:
            logger.error(f"No LUKS UUID on {volume.image_path}")
            raise IdentityError(
                f"{volume.image_path} is not a LUKS container", sdstatus=Status.NO_UUID
            )
        name = mapper_name_for(uuid)
        logger.debug(f"{volume.image_path} maps to {name}")
        return name
