import logging
import subprocess
from typing import Iterator, List, Optional, Tuple

from cryptvol.config import Config
from cryptvol.exceptions import BackendError, MountError

from .status import Status
from .volume import MountInfo

logger = logging.getLogger(__name__)

MIB = 1024 * 1024


class CLI:
    """
    A Python wrapper for the mount subsystem and the other system tools
    needed around an encrypted volume (findmnt, blkid, fuser, dd, mkfs...).

    CLI callers must handle VolumeException.
    """

    def __init__(self, config: Config):
        self.config = config

    def _run(self, command: List[str], privileged: bool = True) -> str:
        """
        Run command, returning stdout. Raises CalledProcessError with stderr
        attached, or OSError if the tool is missing.
        """
        if privileged:
            command = self.config.privileged(command)
        logger.debug(f"Running {' '.join(command)}")
        result = subprocess.run(command, capture_output=True, check=True)
        return result.stdout.decode("utf-8", errors="replace")

    def probe(self, path: str) -> Optional[MountInfo]:
        """
        Source device and filesystem type mounted at path, from the live
        mount table. None if nothing is mounted there.
        """
        try:
            output = self._run(
                [self.config.findmnt, "-n", "-r", "-o", "SOURCE,FSTYPE", "--mountpoint", path],
                privileged=False,
            )
        except subprocess.CalledProcessError:
            # findmnt exits 1 when there is no such mount
            return None
        except OSError as ex:
            raise MountError(sdstatus=Status.DEVICE_ERROR, sderror=str(ex)) from ex

        fields = output.strip().split()
        if not fields:
            return None
        fstype = fields[1] if len(fields) > 1 else ""
        return MountInfo(source=_unescape(fields[0]), fstype=fstype)

    def list_mounts(self) -> List[Tuple[str, str, str]]:
        """
        (target, source, fstype) for every entry in the mount table.
        """
        try:
            output = self._run(
                [self.config.findmnt, "-n", "-r", "-o", "TARGET,SOURCE,FSTYPE"],
                privileged=False,
            )
        except (subprocess.CalledProcessError, OSError) as ex:
            raise MountError(sdstatus=Status.DEVICE_ERROR, sderror=str(ex)) from ex

        mounts = []
        for line in output.splitlines():
            fields = line.split()
            if len(fields) >= 3:
                mounts.append((_unescape(fields[0]), _unescape(fields[1]), fields[2]))
        return mounts

    def fstype(self, device: str) -> Optional[str]:
        """
        Filesystem type on device as reported by blkid, or None.
        """
        try:
            output = self._run([self.config.blkid, "-o", "value", "-s", "TYPE", device])
        except (subprocess.CalledProcessError, OSError) as ex:
            logger.debug(f"blkid found no filesystem on {device}: {ex}")
            return None
        return output.strip() or None

    def mount(self, device: str, path: str, options: List[str]) -> None:
        command = [self.config.mount]
        if options:
            command += ["-o", ",".join(options)]
        command += [device, path]

        logger.info(f"Mounting {device} at {path}")
        try:
            self._run(command)
        except subprocess.CalledProcessError as ex:
            logger.error(f"Error mounting {device}")
            raise MountError(sdstatus=Status.MOUNT_FAILED, sderror=_stderr(ex)) from ex
        except OSError as ex:
            raise MountError(sdstatus=Status.MOUNT_FAILED, sderror=str(ex)) from ex

    def unmount(self, path: str) -> None:
        logger.info(f"Unmounting {path}")
        try:
            self._run([self.config.umount, path])
        except subprocess.CalledProcessError as ex:
            logger.error(f"Error unmounting {path}")
            raise MountError(sdstatus=Status.UNMOUNT_FAILED, sderror=_stderr(ex)) from ex
        except OSError as ex:
            raise MountError(sdstatus=Status.UNMOUNT_FAILED, sderror=str(ex)) from ex

    def has_holders(self, path: str) -> bool:
        """
        True if fuser reports processes using the filesystem mounted at path.
        Raises OSError if fuser can't be run.
        """
        try:
            self._run([self.config.fuser, "-m", path])
        except subprocess.CalledProcessError:
            # fuser exits 1 when nothing is accessing the file
            return False
        return True

    def kill_holders(self, path: str) -> None:
        """
        Send SIGTERM to every process using the filesystem mounted at path.
        """
        try:
            self._run([self.config.fuser, "-k", "-TERM", "-m", path])
        except subprocess.CalledProcessError as ex:
            # Holders may have exited by themselves in the meantime
            logger.debug(f"fuser -k: {_stderr(ex)}")

    def block_size(self, device: str) -> int:
        """
        Size of device in bytes.
        """
        try:
            output = self._run([self.config.blockdev, "--getsize64", device])
            return int(output.strip())
        except (subprocess.CalledProcessError, OSError, ValueError) as ex:
            logger.error(f"Could not read size of {device}")
            raise BackendError(sdstatus=Status.DEVICE_ERROR, sderror=str(ex)) from ex

    def is_whole_disk(self, device: str) -> bool:
        try:
            output = self._run([self.config.lsblk, "-d", "-n", "-o", "TYPE", device])
        except (subprocess.CalledProcessError, OSError) as ex:
            logger.warning(f"lsblk could not classify {device}: {ex}")
            # Unknown: treat as the dangerous case
            return True
        return output.strip() == "disk"

    def random_fill(
        self, target: str, size: int, privileged: bool = False
    ) -> Iterator[int]:
        """
        Overwrite the first size bytes of target with random data, in MiB
        chunks plus a final partial chunk when size isn't MiB aligned.
        Yields the completed percentage after every chunk.

        Raises BackendError(RANDOMIZE_FAILED).
        """
        chunk = max(1, self.config.random_chunk_mib) * MIB
        written = 0
        logger.info(f"Writing {size} bytes of random data to {target}")
        while written < size:
            count = min(chunk, size - written)
            if count >= MIB:
                count -= count % MIB
                blocks = ["bs=1M", f"count={count // MIB}", f"seek={written // MIB}"]
                flags = ["iflag=fullblock"]
            else:
                blocks = [f"bs={count}", "count=1", f"seek={written}"]
                flags = ["iflag=fullblock", "oflag=seek_bytes"]
            command = (
                [self.config.dd, "if=/dev/urandom", f"of={target}"]
                + blocks
                + flags
                + ["conv=notrunc,fsync", "status=none"]
            )
            try:
                self._run(command, privileged=privileged)
            except subprocess.CalledProcessError as ex:
                logger.error(f"dd failed after {written} bytes")
                raise BackendError(sdstatus=Status.RANDOMIZE_FAILED, sderror=_stderr(ex)) from ex
            except OSError as ex:
                raise BackendError(sdstatus=Status.RANDOMIZE_FAILED, sderror=str(ex)) from ex
            written += count
            yield written * 100 // size

    def mkfs(self, fstype: str, device: str, label: str) -> None:
        if fstype == "vfat":
            command = [self.config.mkfs_vfat, "-n", label, device]
        elif fstype == "ext2":
            command = [self.config.mkfs_ext2, "-q", "-L", label, device]
        else:
            command = [self.config.mkfs_ext4, "-q", "-L", label, device]

        logger.info(f"Creating {fstype} filesystem labelled {label} on {device}")
        try:
            self._run(command)
        except subprocess.CalledProcessError as ex:
            raise MountError(sdstatus=Status.MKFS_FAILED, sderror=_stderr(ex)) from ex
        except OSError as ex:
            raise MountError(sdstatus=Status.MKFS_FAILED, sderror=str(ex)) from ex

    def restrict_to_owner(self, path: str, uid: int, gid: int) -> None:
        """
        chown path to uid:gid and chmod it 700.
        """
        try:
            self._run([self.config.chown, f"{uid}:{gid}", path])
            self._run([self.config.chmod, "700", path])
        except subprocess.CalledProcessError as ex:
            raise MountError(sdstatus=Status.PERMISSIONS_FAILED, sderror=_stderr(ex)) from ex
        except OSError as ex:
            raise MountError(sdstatus=Status.PERMISSIONS_FAILED, sderror=str(ex)) from ex


def _stderr(ex: subprocess.CalledProcessError) -> str:
    if not ex.stderr:
        return ""
    return ex.stderr.decode("utf-8", errors="replace").strip()


def _unescape(value: str) -> str:
    """
    findmnt -r escapes blanks and other unsafe chars as \\xHH.
    """
    return value.encode("utf-8").decode("unicode_escape").encode("latin-1").decode("utf-8")
