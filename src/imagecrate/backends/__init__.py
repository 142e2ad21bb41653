# Copyright (C) 2025 Antonio Paolillo. All rights reserved.
# SPDX-License-Identifier: MIT

"""
This module defines ContainerBackend and BuildahBackend classes which are used to drive the
container tool that actually creates, mounts and commits working containers.

The builder only talks to the narrow ContainerBackend interface, so the concrete tool can be
swapped (or faked in tests) without touching the build logic. BuildahBackend implements it on top
of the `buildah` command line.
"""

import json
import shutil
from pathlib import Path
from typing import Any, Dict, List

from imagecrate.staging import stage_artifact
from imagecrate.sysutils import PathType, shell_out

IMAGE_FORMATS = ("docker", "oci")


class ContainerBackend:
    """
    Abstract base class for container backends.
    Each backend inheriting from this should implement the working container life cycle:
    instantiate, mount, configure, commit, unmount and remove.

    Every method accepts an optional `timeout` (in seconds) bounding the underlying operation.
    """

    def instantiate(self, base_image: str, timeout: float | None = None) -> str:
        """
        Creates a working container from a base image, pulling the image if needed.

        Parameters:
            base_image (str): The image reference to start from (e.g., 'docker.io/fedora:35').

        Returns:
            str: An opaque handle (name) of the new working container.
        """
        raise NotImplementedError

    def mount(self, container: str, timeout: float | None = None) -> Path:
        """
        Mounts the root filesystem of a working container on the host.

        Returns:
            Path: The host directory exposing the container filesystem.
        """
        raise NotImplementedError

    def unmount(self, container: str, timeout: float | None = None) -> None:
        """
        Releases the mount of a working container.
        """
        raise NotImplementedError

    def copy_into(
        self,
        mountpoint: PathType,
        source: PathType,
        destination: PathType,
        mode: int | None = None,
        timeout: float | None = None,
    ) -> Path:
        """
        Copies a host artifact into a mounted working container.

        The default implementation copies through the host filesystem, which works for every
        backend whose `mount` returns a host directory.

        Parameters:
            mountpoint (PathType): The directory returned by `mount`.
            source (PathType): The host file or directory to copy.
            destination (PathType): The absolute path inside the image.
            mode (int | None): Optional permission bits for the copied artifact.

        Returns:
            Path: The host path of the copied artifact.
        """
        return stage_artifact(
            mountpoint=mountpoint,
            source=source,
            destination=destination,
            mode=mode,
        )

    def configure(
        self,
        container: str,
        entrypoint: List[str] | None = None,
        user: str | None = None,
        timeout: float | None = None,
    ) -> None:
        """
        Sets image configuration (metadata only) on a working container.

        Parameters:
            container (str): The working container handle.
            entrypoint (List[str] | None): The exec-form entrypoint, if it should be set.
            user (str | None): The `user[:group]` the image runs as, if it should be set.
        """
        raise NotImplementedError

    def commit(
        self,
        container: str,
        image: str,
        image_format: str = "docker",
        timeout: float | None = None,
    ) -> str:
        """
        Snapshots a working container (filesystem and configuration) as a new image.

        Parameters:
            container (str): The working container handle.
            image (str): The name of the image to create or replace.
            image_format (str): The image format, 'docker' or 'oci'.

        Returns:
            str: The identifier of the committed image.
        """
        raise NotImplementedError

    def remove(self, container: str, timeout: float | None = None) -> None:
        """
        Deletes a working container.
        """
        raise NotImplementedError

    def inspect(self, image: str, timeout: float | None = None) -> Dict[str, Any]:
        """
        Returns the configuration of an image as a dictionary.
        """
        raise NotImplementedError


class BuildahBackend(ContainerBackend):
    """
    A ContainerBackend using the `buildah` command line tool.
    """

    def __init__(
        self,
        executable: str = "buildah",
        global_options: List[str] | None = None,
    ) -> None:
        """
        Initializes the BuildahBackend.

        Parameters:
            executable (str): Name or path of the buildah executable.
            global_options (List[str]): Options placed before every buildah subcommand
                                        (e.g., ['--storage-driver=vfs']).
        """
        self._executable = executable
        self._global_options = global_options if global_options else []

    def get_executable_path(self) -> str:
        """
        Resolves the buildah executable on the PATH.

        Raises:
            FileNotFoundError: If buildah cannot be found.
        """
        path = shutil.which(self._executable)
        if path is None:
            raise FileNotFoundError(f"buildah executable not found: {self._executable}")
        return path

    def get_command(self, args: List[str]) -> List[str]:
        """
        Constructs a full buildah command line for a subcommand and its arguments.
        """
        return [self.get_executable_path()] + self._global_options + args

    def _buildah(self, args: List[str], timeout: float | None) -> str:
        return shell_out(command=self.get_command(args=args), timeout=timeout)

    def _buildah_last_line(self, args: List[str], timeout: float | None) -> str:
        output = self._buildah(args=args, timeout=timeout)
        if not output:
            raise RuntimeError(f"buildah {args[0]} printed nothing")
        # pull progress may precede the result
        return output.splitlines()[-1].strip()

    def instantiate(self, base_image: str, timeout: float | None = None) -> str:
        return self._buildah_last_line(args=["from", base_image], timeout=timeout)

    def mount(self, container: str, timeout: float | None = None) -> Path:
        return Path(self._buildah_last_line(args=["mount", container], timeout=timeout))

    def unmount(self, container: str, timeout: float | None = None) -> None:
        self._buildah(args=["unmount", container], timeout=timeout)

    def configure(
        self,
        container: str,
        entrypoint: List[str] | None = None,
        user: str | None = None,
        timeout: float | None = None,
    ) -> None:
        options = []
        if entrypoint is not None:
            # a JSON array keeps the exec form; a bare string would be wrapped in `/bin/sh -c`
            options.append(f"--entrypoint={json.dumps(entrypoint)}")
        if user is not None:
            options.append(f"--user={user}")
        if not options:
            raise ValueError("configure(): nothing to configure")

        self._buildah(args=["config"] + options + [container], timeout=timeout)

    def commit(
        self,
        container: str,
        image: str,
        image_format: str = "docker",
        timeout: float | None = None,
    ) -> str:
        if image_format not in IMAGE_FORMATS:
            raise ValueError(f"Unsupported image format: {image_format}")
        output = self._buildah(
            args=["commit", "--format", image_format, container, image],
            timeout=timeout,
        )
        return output.splitlines()[-1].strip() if output else ""

    def remove(self, container: str, timeout: float | None = None) -> None:
        self._buildah(args=["rm", container], timeout=timeout)

    def inspect(self, image: str, timeout: float | None = None) -> Dict[str, Any]:
        output = self._buildah(args=["inspect", "--type", "image", image], timeout=timeout)
        return json.loads(output)
