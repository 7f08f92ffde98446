import os
from pathlib import Path
from typing import Optional, Union


def safe_mkdir(
    base_path: Union[Path, str],
    relative_path: Union[Optional[Path], Optional[str]] = None,
) -> None:
    """
    Create directories with restricted 700 permissions inside base_path.
    Used for the tool's own home and log directories, never for mount points.

    Raises ValueError if base_path is relative or either path tries to
    traverse upwards. Raises RuntimeError if a directory ends up with group or
    other permission bits set.
    """
    base_path = Path(base_path)
    if not base_path.is_absolute():
        raise ValueError(f"Base directory '{base_path}' must be an absolute path")

    check_path_traversal(base_path)

    if relative_path:
        check_path_traversal(relative_path)
        full_path = base_path.joinpath(relative_path)
    else:
        full_path = base_path

    # Parents are created one by one so that each gets mode 700.
    relative = full_path.resolve().relative_to(base_path.resolve())
    for parent in reversed(relative.parents):
        base_path.joinpath(parent).mkdir(mode=0o0700, exist_ok=True)
    full_path.mkdir(mode=0o0700, exist_ok=True)

    full_path.chmod(0o700)
    check_dir_permissions(full_path)


def check_path_traversal(filename_or_filepath: Union[str, Path]) -> None:
    """
    Raise ValueError if filename_or_filepath contains a ".." component.
    """
    if ".." in Path(filename_or_filepath).parts:
        raise ValueError(f"Unsafe file or directory name: '{filename_or_filepath}'")


def check_dir_permissions(dir_path: Union[str, Path]) -> None:
    """
    Check that a directory has ``700`` as the final 3 bytes. Raises a ``RuntimeError`` otherwise.
    """
    if os.path.exists(dir_path):
        stat_res = os.stat(dir_path).st_mode
        masked = stat_res & 0o777
        if masked & 0o077:
            raise RuntimeError("Unsafe permissions ({}) on {}".format(oct(stat_res), dir_path))
