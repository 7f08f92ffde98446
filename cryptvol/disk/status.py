from cryptvol.status import BaseStatus


class Status(BaseStatus):
    MOUNTED = "MOUNTED"
    UNMOUNTED = "UNMOUNTED"

    MOUNT_DIR_MISSING = "MOUNT_DIR_MISSING"
    IMAGE_MISSING = "IMAGE_MISSING"
    ALREADY_MOUNTED = "ALREADY_MOUNTED"
    NOT_MOUNTED = "NOT_MOUNTED"
    INVALID_INPUT = "INVALID_INPUT"  # Operator input rejected (size, paths, fs type)

    NO_UUID = "NO_UUID"  # Image is not a LUKS container, or not formatted yet
    MAPPING_COLLISION = "MAPPING_COLLISION"  # Device-mapper name already in use

    ABORTED = "ABORTED"  # Secret prompt cancelled or timed out
    OPEN_FAILED = "OPEN_FAILED"
    CLOSE_FAILED = "CLOSE_FAILED"  # Unmounted, but mapping still open
    MOUNT_FAILED = "MOUNT_FAILED"  # Mapping was rolled back
    UNMOUNT_FAILED = "UNMOUNT_FAILED"

    BUSY = "BUSY"  # Open file handles under the mount point
    EVICTION_FAILED = "EVICTION_FAILED"

    DEVICE_ERROR = "DEVICE_ERROR"  # Could not query the backend or a device

    # Creation pipeline
    CREATE_ABORTED = "CREATE_ABORTED"
    CREATED = "CREATED"
    RANDOMIZE_FAILED = "RANDOMIZE_FAILED"
    FORMAT_FAILED = "FORMAT_FAILED"
    MKFS_FAILED = "MKFS_FAILED"
    PERMISSIONS_FAILED = "PERMISSIONS_FAILED"
