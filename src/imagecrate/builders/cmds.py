# Copyright (C) 2024 Antonio Paolillo. All rights reserved.
# SPDX-License-Identifier: MIT

"""
This module defines classes that represent individual image build commands.
A command is recorded by a builder and later either applied to a mounted working container through
a ContainerBackend, or rendered as a line of an equivalent buildah shell script.
"""

import json
import shlex
from pathlib import Path, PurePosixPath
from typing import List

from imagecrate.backends import ContainerBackend
from imagecrate.errors import BuildStep
from imagecrate.staging import relative_image_path

MOUNTPOINT_VAR = '"$mountpoint"'
CONTAINER_VAR = '"$container"'


class BuildahCommand:
    """
    Abstract base class for image build commands.
    Each command type inheriting from this should implement a method applying the command to a
    working container and a method generating the matching shell script line(s).

    Attributes:
        step (BuildStep | None): The build step this command belongs to. Commands without a step
                                 only contribute to the generated script (comments, spacing).
    """

    step: BuildStep | None = None

    def apply(
        self,
        backend: ContainerBackend,
        container: str,
        mountpoint: Path,
        timeout: float | None = None,
    ) -> None:
        """
        Applies the command to a mounted working container.

        Parameters:
            backend (ContainerBackend): The backend driving the working container.
            container (str): The working container handle.
            mountpoint (Path): The host directory where the container is mounted.
            timeout (float | None): Remaining time budget in seconds.

        Raises:
            NotImplementedError: If the method is not implemented by the subclass.
        """
        raise NotImplementedError

    def get_str_for_script(
        self,
        *args,
        **kwargs,
    ) -> str:
        """
        Abstract method to return the shell script line(s) performing this command.

        Raises:
            NotImplementedError: If the method is not implemented by the subclass.
        """
        raise NotImplementedError


class StrBuildahCommand(BuildahCommand):
    """
    Represents a plain line in the generated script, such as a comment or an empty line.
    It has no effect on the image.
    """

    def __init__(self, s: str) -> None:
        """
        Initializes the StrBuildahCommand with a string.

        Parameters:
            s (str): The line to emit in the generated script.
        """
        super().__init__()
        self._str = s

    def apply(
        self,
        backend: ContainerBackend,
        container: str,
        mountpoint: Path,
        timeout: float | None = None,
    ) -> None:
        return None

    def get_str_for_script(
        self,
        *args,
        **kwargs,
    ) -> str:
        return str(self._str)


class CopyBuildahCommand(BuildahCommand):
    """
    Copies a host artifact (file or directory) to an absolute path inside the image.
    """

    step = BuildStep.COPY

    def __init__(
        self,
        source: Path,
        destination: PurePosixPath,
        mode: int | None = None,
    ) -> None:
        """
        Initializes the copy command.

        Parameters:
            source: Host file or directory to copy.
            destination: Absolute destination path inside the image.
            mode: Optional permission bits for the copied artifact.

        Raises:
            ValueError: If destination is not an absolute path free of '..' components.
        """
        super().__init__()
        self._relative_destination = relative_image_path(destination)
        self._source = Path(source)
        self._destination = PurePosixPath(destination)
        self._mode = mode

    @property
    def source(self) -> Path:
        """The host path of the artifact."""
        return self._source

    @property
    def destination(self) -> PurePosixPath:
        """The absolute path of the artifact inside the image."""
        return self._destination

    def apply(
        self,
        backend: ContainerBackend,
        container: str,
        mountpoint: Path,
        timeout: float | None = None,
    ) -> None:
        backend.copy_into(
            mountpoint=mountpoint,
            source=self._source,
            destination=self._destination,
            mode=self._mode,
            timeout=timeout,
        )

    def get_str_for_script(
        self,
        *args,
        **kwargs,
    ) -> str:
        """
        Generate the `cp` line(s) copying the artifact through the mount point.

        Returns:
            str: One or more shell lines.
        """
        target = f"{MOUNTPOINT_VAR}/{shlex.quote(str(self._relative_destination))}"
        lines: List[str] = []
        parent = self._relative_destination.parent
        if parent.parts:
            lines.append(f"mkdir -p {MOUNTPOINT_VAR}/{shlex.quote(str(parent))}")
        lines.append(f"cp -pR {shlex.quote(str(self._source))} {target}")
        if self._mode is not None:
            lines.append(f"chmod {self._mode:o} {target}")
        return "\n".join(lines)


class EntrypointBuildahCommand(BuildahCommand):
    """
    Sets the exec-form entrypoint of the image.
    """

    step = BuildStep.CONFIGURE

    def __init__(self, list_command: List[str]) -> None:
        super().__init__()
        self._list_command = list(list_command)

    def apply(
        self,
        backend: ContainerBackend,
        container: str,
        mountpoint: Path,
        timeout: float | None = None,
    ) -> None:
        backend.configure(container=container, entrypoint=self._list_command, timeout=timeout)

    def get_str_for_script(
        self,
        *args,
        **kwargs,
    ) -> str:
        entrypoint = shlex.quote(json.dumps(self._list_command))
        return f"buildah config --entrypoint {entrypoint} {CONTAINER_VAR}"


class UserBuildahCommand(BuildahCommand):
    """
    Sets the `user[:group]` the image runs as.
    """

    step = BuildStep.CONFIGURE

    def __init__(self, name: str) -> None:
        super().__init__()
        self._name = name

    def apply(
        self,
        backend: ContainerBackend,
        container: str,
        mountpoint: Path,
        timeout: float | None = None,
    ) -> None:
        backend.configure(container=container, user=self._name, timeout=timeout)

    def get_str_for_script(
        self,
        *args,
        **kwargs,
    ) -> str:
        return f"buildah config --user {shlex.quote(self._name)} {CONTAINER_VAR}"
