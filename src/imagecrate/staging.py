# Copyright (C) 2025 Antonio Paolillo. All rights reserved.
# SPDX-License-Identifier: MIT
"""
Staging of host artifacts into a mounted working container.

A working container mounted with `buildah mount` exposes its root filesystem as
a plain directory on the host. This module maps *image paths* (absolute paths
as seen from inside the image, e.g. `/simpleldap`) onto that directory and
copies host files or directories there.

Image paths are validated before any write happens: they must be absolute and
must not contain `..` components. Symlinks already present in the image are
checked when copying, so that a destination can never escape the mount point.
"""

import os
import shutil
from pathlib import Path, PurePosixPath

from imagecrate.sysutils import PathType


def relative_image_path(destination: PathType) -> PurePosixPath:
    """
    Convert an absolute image path into a path relative to the image root.

    Args:
        destination: Absolute path inside the image.

    Returns:
        The same path relative to `/`.

    Raises:
        ValueError: If `destination` is relative, is the image root itself, or
            contains path traversal components (`..`).
    """
    image_path = PurePosixPath(destination)
    if not image_path.is_absolute():
        raise ValueError(f"Invalid image path (must be absolute): {destination}")
    if ".." in image_path.parts:
        raise ValueError(f"Invalid image path (must not contain '..'): {destination}")

    relative = image_path.relative_to("/")
    if not relative.parts:
        raise ValueError(f"Invalid image path (cannot be the image root): {destination}")
    return relative


def host_path_in_mount(mountpoint: PathType, destination: PathType) -> Path:
    """
    Return the host path under which `destination` is reachable through `mountpoint`.
    """
    return Path(mountpoint) / relative_image_path(destination)


def _check_inside_mount(mount_root: Path, path: Path, destination: PathType) -> None:
    if not path.resolve().is_relative_to(mount_root):
        raise ValueError(
            f"Invalid image path (leads out of the mount through a symlink): {destination}"
        )


def stage_artifact(
    mountpoint: PathType,
    source: PathType,
    destination: PathType,
    mode: int | None = None,
) -> Path:
    """
    Copy a host file or directory into the mounted container filesystem.

    File metadata (permission bits, timestamps) is preserved, so an executable
    artifact stays executable. Missing parent directories inside the mount are
    created.

    Symlinks already present in the image are resolved against the host, so a
    parent directory reached through a symlink must still lie under the mount
    point. A symlink at the destination itself is replaced by the artifact
    instead of being followed.

    Args:
        mountpoint: Host directory where the working container is mounted.
        source: Host file or directory to copy.
        destination: Absolute target path inside the image.
        mode: Optional permission bits applied to the copied file.

    Returns:
        The host path of the copied artifact under `mountpoint`.

    Raises:
        ValueError: If `destination` is not a valid image path or leads out of
            the mount point, or if `source` is neither a file nor a directory.
        FileNotFoundError: If `source` does not exist.
        OSError: If the destination cannot be written.
    """
    host_path = Path(source)
    mount_root = Path(mountpoint).resolve()
    dst_path = host_path_in_mount(mountpoint=mountpoint, destination=destination)

    if not host_path.exists():
        raise FileNotFoundError(f"Artifact does not exist: {host_path}")

    _check_inside_mount(mount_root, dst_path.parent, destination)
    dst_path.parent.mkdir(parents=True, exist_ok=True)

    if dst_path.is_symlink():
        dst_path.unlink()

    if host_path.is_file():
        shutil.copy2(host_path, dst_path)
    elif host_path.is_dir():
        shutil.copytree(host_path, dst_path, dirs_exist_ok=True)
    else:
        raise ValueError(f"Artifact must be a file or directory: {host_path}")

    if mode is not None:
        os.chmod(dst_path, mode)

    return dst_path
