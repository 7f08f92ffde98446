import logging
import os
import re
import stat
from typing import NamedTuple, Optional

from statemachine import State, StateMachine

logger = logging.getLogger(__name__)

MAPPER_PREFIX = "luks-"
DEVMAPPER_DIR = "/dev/mapper/"

# luks-<uuid> as produced by Identity Resolver; anything else under
# /dev/mapper was not opened by this tool.
MAPPER_NAME_PATTERN = re.compile(
    r"^" + re.escape(MAPPER_PREFIX) + r"[0-9a-fA-F]{8}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-"
    r"[0-9a-fA-F]{4}-[0-9a-fA-F]{12}$"
)


class VolumeStateMachine(StateMachine):
    """
    Lifecycle of one volume for the duration of one command.

    stateDiagram-v2
      [*] --> closed
      closed --> opening
      opening --> opened
      opening --> closed
      opened --> mounting
      mounting --> mounted
      mounting --> closing: rollback
      mounted --> unmounting
      unmounting --> closing
      unmounting --> mounted
      closing --> closed
      closing --> opened
    """

    closed = State("Closed", initial=True)
    opening = State("Opening")
    opened = State("Opened")
    mounting = State("Mounting")
    mounted = State("Mounted")
    unmounting = State("Unmounting")
    closing = State("Closing")

    begin_open = closed.to(opening)
    open_succeeded = opening.to(opened)
    open_failed = opening.to(closed)

    begin_mount = opened.to(mounting)
    mount_succeeded = mounting.to(mounted)
    mount_failed = mounting.to(closing)

    begin_unmount = mounted.to(unmounting)
    unmount_succeeded = unmounting.to(closing)
    unmount_failed = unmounting.to(mounted)

    close_succeeded = closing.to(closed)
    close_failed = closing.to(opened)

    def after_transition(self, event, source, target):
        logger.debug(f"{event}: {source.id} -> {target.id}")

    @property
    def state_id(self) -> str:
        return self.current_state.id


class Volume:
    """
    An encrypted container and the directory it is exposed at.
    Volumes are recomputed on every command; nothing about them is stored.
    """

    def __init__(
        self,
        image_path: str,
        mount_point: str,
        mapper_name: Optional[str] = None,
    ):
        self.image_path = image_path
        self.mount_point = mount_point
        self.mapper_name = mapper_name

    @property
    def mapper_device(self) -> Optional[str]:
        if self.mapper_name is None:
            return None
        return f"{DEVMAPPER_DIR}{self.mapper_name}"

    @property
    def is_block_device(self) -> bool:
        try:
            return stat.S_ISBLK(os.stat(self.image_path).st_mode)
        except OSError:
            return False

    def __repr__(self):
        return f"Volume({self.image_path!r}, {self.mount_point!r}, {self.mapper_name!r})"


class MountedVolume(Volume):
    """
    A Volume found in the live mount table.

    `source` is the device the mount table reports, e.g. /dev/mapper/luks-<uuid>.
    """

    def __init__(
        self,
        image_path: str,
        mount_point: str,
        source: str,
        fstype: Optional[str] = None,
    ):
        super().__init__(
            image_path=image_path,
            mount_point=mount_point,
            mapper_name=mapper_name_from_source(source),
        )
        self.source = source
        self.fstype = fstype


class MountInfo(NamedTuple):
    source: str
    fstype: str


class BackendStatus(NamedTuple):
    """
    Fields of interest from `cryptsetup status <name>`.
    """

    active: bool
    type: Optional[str] = None
    cipher: Optional[str] = None
    device: Optional[str] = None
    loop: Optional[str] = None

    @classmethod
    def parse(cls, text: str) -> "BackendStatus":
        """
        Parse cryptsetup status output:

            /dev/mapper/luks-... is active and is in use.
              type:    LUKS2
              cipher:  aes-xts-plain64
              device:  /dev/loop0
              loop:    /home/user/.secretfs
        """
        lines = text.strip().splitlines()
        if not lines or " is active" not in lines[0]:
            return cls(active=False)

        found = {}
        for line in lines[1:]:
            key, sep, value = line.partition(":")
            key = key.strip()
            if sep and key in ("type", "cipher", "device", "loop"):
                found[key] = value.strip()

        return cls(active=True, **found)


def is_mapper_name(name: Optional[str]) -> bool:
    return bool(name) and MAPPER_NAME_PATTERN.match(name) is not None


def mapper_name_from_source(source: Optional[str]) -> Optional[str]:
    """
    /dev/mapper/luks-<uuid> -> luks-<uuid>. Returns None for any other source.
    """
    if not source or not source.startswith(DEVMAPPER_DIR):
        return None
    name = source[len(DEVMAPPER_DIR):]
    return name if is_mapper_name(name) else None
