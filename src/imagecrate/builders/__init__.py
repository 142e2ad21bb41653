# Copyright (C) 2024 Antonio Paolillo. All rights reserved.
# SPDX-License-Identifier: MIT

"""
This module provides classes for building container images programmatically from a base image and
prebuilt artifacts, without a Dockerfile: a working container is created, mounted, filled with the
artifacts, configured (entrypoint, user) and committed as a new image.
"""
import logging
import re
import shlex
import subprocess
import time
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path, PurePosixPath
from typing import Any, Dict, Iterator, List

from tenacity import (
    Retrying,
    before_sleep_log,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from imagecrate.backends import IMAGE_FORMATS, BuildahBackend, ContainerBackend
from imagecrate.builders.cmds import (
    BuildahCommand,
    CopyBuildahCommand,
    EntrypointBuildahCommand,
    StrBuildahCommand,
    UserBuildahCommand,
)
from imagecrate.errors import (
    STEP_ERRORS,
    BuildError,
    BuildStep,
    BuildTimeoutError,
    ConfigurationError,
    ResolutionError,
)
from imagecrate.sysutils import PathType, mkdir_for_path

logger = logging.getLogger(__name__)

CLEANUP_TIMEOUT = 60.0
USER_SPEC_PATTERN = re.compile(r"^[A-Za-z0-9_][A-Za-z0-9_.-]*(:[A-Za-z0-9_][A-Za-z0-9_.-]*)?$")
STEP_ORDER = [BuildStep.COPY, BuildStep.CONFIGURE]


def validate_user_spec(user: str) -> str:
    """
    Checks that `user` is a `user[:group]` specification (names or numeric ids).

    Raises:
        ConfigurationError: If the specification is malformed.
    """
    if not USER_SPEC_PATTERN.match(user):
        raise ConfigurationError(f"Invalid user specification: {user!r}")
    return user


def validate_entrypoint(list_command: List[str]) -> List[str]:
    """
    Checks that the exec-form entrypoint has a non-empty executable.

    Raises:
        ConfigurationError: If the entrypoint is empty.
    """
    if not list_command or not list_command[0]:
        raise ConfigurationError("The entrypoint must name an executable")
    return list(list_command)


def validate_image_format(image_format: str) -> str:
    """
    Checks that the commit format is one buildah supports.

    Raises:
        ConfigurationError: If the format is unknown.
    """
    if image_format not in IMAGE_FORMATS:
        raise ConfigurationError(
            f"Unsupported image format: {image_format!r}. Available: {', '.join(IMAGE_FORMATS)}"
        )
    return image_format


def order_commands(commands: List[BuildahCommand]) -> List[BuildahCommand]:
    """
    Orders commands so that every copy comes before every configuration change.

    The relative order within each step is preserved, and comment or spacing lines stay attached
    to the command that follows them. Trailing comment lines are kept at the end.

    Parameters:
        commands (List[BuildahCommand]): The commands in recording order.

    Returns:
        List[BuildahCommand]: The commands in execution order.
    """
    groups: Dict[BuildStep, List[BuildahCommand]] = {step: [] for step in STEP_ORDER}
    pending: List[BuildahCommand] = []
    for command in commands:
        pending.append(command)
        if command.step is not None:
            groups[command.step].extend(pending)
            pending = []

    ordered: List[BuildahCommand] = []
    for step in STEP_ORDER:
        ordered.extend(groups[step])
    return ordered + pending


def render_script_content(
    base_image: str,
    tag: str,
    image_format: str,
    commands: List[BuildahCommand],
) -> str:
    """
    Generates a POSIX shell script performing the build with the buildah command line.

    The script stops at the first failing command and always unmounts and removes the working
    container on exit. The container is removed even when unmounting it fails.

    Parameters:
        base_image (str): The image to start from.
        tag (str): The name of the committed image.
        image_format (str): The commit format ('docker' or 'oci').
        commands (List[BuildahCommand]): The copy and configuration commands.

    Returns:
        str: The generated script content.
    """
    header = [
        "#!/bin/sh",
        "set -eu",
        "",
        f"container=$(buildah from {shlex.quote(base_image)})",
        "trap 'buildah unmount \"$container\" >/dev/null || true; "
        "buildah rm \"$container\" >/dev/null' EXIT",
        'mountpoint=$(buildah mount "$container")',
        "",
    ]
    body = [c.get_str_for_script() for c in order_commands(commands)]
    footer = [
        "",
        f'buildah commit --format {image_format} "$container" {shlex.quote(tag)}',
    ]
    joined_lines = "\n".join(header + body + footer)
    file_content = joined_lines.strip() + "\n"
    return file_content


class _Deadline:
    """Tracks the remaining time of an overall build timeout."""

    def __init__(self, seconds: float | None) -> None:
        self.seconds = seconds
        self._end = None if seconds is None else time.monotonic() + seconds

    def remaining(self, step: BuildStep) -> float | None:
        if self._end is None:
            return None
        left = self._end - time.monotonic()
        if left <= 0:
            raise BuildTimeoutError(f"build exceeded its {self.seconds}s timeout", step=step)
        return left


@contextmanager
def _build_step(step: BuildStep, deadline: _Deadline) -> Iterator[float | None]:
    """
    Runs one build step, yielding its time budget and turning low-level failures into the
    BuildError subclass of that step.
    """
    timeout = deadline.remaining(step=step)
    logger.debug("step %s (timeout: %s)", step.value, timeout)
    try:
        yield timeout
    except BuildError:
        raise
    except subprocess.TimeoutExpired as exc:
        raise BuildTimeoutError(
            f"build exceeded its {deadline.seconds}s timeout", step=step
        ) from exc
    except (subprocess.CalledProcessError, OSError, ValueError, RuntimeError) as exc:
        raise STEP_ERRORS[step](str(exc), step=step) from exc


@dataclass
class BuildResult:
    """
    Outcome of a successful build.

    Attributes:
        image (str): The name the image was committed under.
        image_id (str): The identifier reported by the backend for the committed image.
        container (str): The working container used for the build.
        image_format (str): The commit format.
    """

    image: str
    image_id: str
    container: str
    image_format: str


class PartialImageBuilder:
    """
    Collect a reusable fragment of image build steps.

    A PartialImageBuilder records copies and configuration changes that can be merged into a full
    builder later, e.g. to share the artifact set of a project between several images.
    """

    def __init__(self) -> None:
        """
        Create an empty partial builder.
        """
        self._build_commands: List[BuildahCommand] = []

    def __or__(self, other: "PartialImageBuilder") -> "PartialImageBuilder":
        """
        Merges the current builder with another PartialImageBuilder, combining their build
        commands.

        Parameters:
            other (PartialImageBuilder): The other builder to merge with.

        Returns:
            PartialImageBuilder: A new builder instance with combined commands.
        """
        result_builder = PartialImageBuilder()
        result_builder._extend(other=self)
        result_builder._extend(other=other)
        return result_builder

    def __ior__(self, other: "PartialImageBuilder") -> "PartialImageBuilder":
        """
        In-place merge of another PartialImageBuilder into this one.

        Parameters:
            other (PartialImageBuilder): The other builder to merge into this one.

        Returns:
            PartialImageBuilder: The current builder with commands from the other merged in.
        """
        self._extend(other=other)
        return self

    def _extend(self, other: "PartialImageBuilder") -> None:
        # pylint: disable=protected-access
        self._build_commands.extend(other._build_commands)

    @property
    def commands(self) -> List[BuildahCommand]:
        """The recorded commands, in recording order."""
        return list(self._build_commands)

    def space(self) -> None:
        """
        Adds an empty line to the generated build script.
        """
        self._build_commands.append(StrBuildahCommand(""))

    def desc(self, text: str) -> None:
        """
        Adds a comment to the generated build script.

        Parameters:
            text (str): The comment text to add.
        """
        self._build_commands.append(StrBuildahCommand(f"# {text}"))

    def copy(
        self,
        source: Path | list[Path],
        destination: PurePosixPath | Path,
        mode: int | None = None,
    ) -> None:
        """Copy host artifacts into the image.

        Args:
            source: A single host path or a list of host paths (file or dir).
            destination: Absolute destination path inside the image. With several sources it is
                treated as a directory and each source keeps its basename.
            mode: Optional permission bits applied to each copied artifact.

        Raises:
            ValueError: If the source list is empty or the destination is not an absolute path
                free of '..' components.
        """
        if isinstance(source, (str, Path)):
            self._build_commands.append(
                CopyBuildahCommand(source=Path(source), destination=destination, mode=mode)
            )
            return

        sources = tuple(Path(s) for s in source)
        if not sources:
            raise ValueError("copy(): at least one source path is required")

        for source_path in sources:
            self._build_commands.append(
                CopyBuildahCommand(
                    source=source_path,
                    destination=PurePosixPath(destination) / source_path.name,
                    mode=mode,
                )
            )

    def entrypoint(self, list_command: List[str]) -> None:
        """
        Sets the exec-form ENTRYPOINT of the image.

        Parameters:
            list_command (List[str]): The command list to set as the entrypoint.
        """
        self._build_commands.append(
            EntrypointBuildahCommand(list_command=validate_entrypoint(list_command))
        )

    def user(self, name: str) -> None:
        """
        Sets the user the image runs as.

        Parameters:
            name (str): A `user[:group]` specification, e.g. '1000:1000'.
        """
        self._build_commands.append(UserBuildahCommand(name=validate_user_spec(name)))


class ImageBuilder(PartialImageBuilder):
    """
    A class for (fully) building images.
    Inherits from PartialImageBuilder and adds the base image, the destination image name and the
    commit format, as well as the build itself.
    """

    def __init__(
        self,
        tag: str,
        base_image: str,
        image_format: str = "docker",
        timeout: float | None = None,
        pull_attempts: int = 3,
        pull_backoff: float = 2.0,
    ) -> None:
        """
        Initializes the ImageBuilder.

        Parameters:
            tag (str): The name of the image to commit.
            base_image (str): The image the working container is created from.
            image_format (str): The commit format, 'docker' or 'oci'.
            timeout (float | None): Overall build timeout in seconds. None disables it.
            pull_attempts (int): How many times creating the working container is attempted
                                 (the base image may have to be pulled from a registry).
            pull_backoff (float): Multiplier of the exponential wait between attempts.
        """
        super().__init__()
        if timeout is not None and timeout <= 0:
            raise ConfigurationError(f"The timeout must be positive, got {timeout}")
        if pull_attempts < 1:
            raise ConfigurationError(f"At least one pull attempt is required, got {pull_attempts}")
        self._tag = tag
        self._base_image = base_image
        self._image_format = validate_image_format(image_format)
        self._timeout = timeout
        self._pull_attempts = pull_attempts
        self._pull_backoff = pull_backoff

    @property
    def tag(self) -> str:
        """The name of the image to commit."""
        return self._tag

    def render_script(self) -> str:
        """
        Returns the buildah shell script equivalent to this builder.
        """
        return render_script_content(
            base_image=self._base_image,
            tag=self._tag,
            image_format=self._image_format,
            commands=self._build_commands,
        )

    def generate_build_script(
        self,
        output_path: PathType = "/tmp/imagecrate/latest/buildah-build.sh",
    ) -> None:
        """
        Generates a shell script executing the same build with the buildah command line.

        Parameters:
            output_path (PathType): The path where the build script should be saved.
        """
        mkdir_for_path(path=output_path)
        with open(output_path, "w") as script_file:
            script_file.write(self.render_script())
        Path(output_path).chmod(0o755)

    def _instantiate(self, backend: ContainerBackend, deadline: _Deadline) -> str:
        retrying = Retrying(
            stop=stop_after_attempt(self._pull_attempts),
            wait=wait_exponential(multiplier=self._pull_backoff, max=30),
            retry=retry_if_exception_type(ResolutionError),
            before_sleep=before_sleep_log(logger, logging.WARNING),
            reraise=True,
        )
        container = ""
        for attempt in retrying:
            with attempt:
                with _build_step(step=BuildStep.INSTANTIATE, deadline=deadline) as timeout:
                    container = backend.instantiate(base_image=self._base_image, timeout=timeout)
        return container

    def _release(
        self,
        backend: ContainerBackend,
        container: str,
        mounted: bool,
        remove: bool,
        raise_errors: bool,
    ) -> None:
        actions = []
        if mounted:
            actions.append((BuildStep.UNMOUNT, backend.unmount))
        if remove:
            actions.append((BuildStep.REMOVE, backend.remove))

        first_error: BuildError | None = None
        for step, action in actions:
            try:
                with _build_step(step=step, deadline=_Deadline(CLEANUP_TIMEOUT)) as timeout:
                    action(container, timeout=timeout)
            except BuildError as exc:
                logger.error("Cleanup of working container %s: %s", container, exc)
                if first_error is None:
                    first_error = exc

        if first_error is not None and raise_errors:
            raise first_error

    def build(
        self,
        backend: ContainerBackend | None = None,
        keep_on_failure: bool = False,
        remove_container: bool = True,
    ) -> BuildResult:
        """
        Builds and commits the image.

        The working container is unmounted (and removed, unless `remove_container` is False)
        whether the build succeeds or fails. If `keep_on_failure` is True, a failed build leaves
        the working container mounted for inspection instead.

        Parameters:
            backend (ContainerBackend | None): The backend to use; a BuildahBackend by default.
            keep_on_failure (bool): Keep the working container mounted when a step fails.
            remove_container (bool): Remove the working container once it is unmounted.

        Returns:
            BuildResult: The committed image.

        Raises:
            BuildError: The error of the first failing step, naming that step.
        """
        backend = backend if backend is not None else BuildahBackend()
        deadline = _Deadline(self._timeout)

        container: str | None = None
        mountpoint: Path | None = None
        image_id = ""
        failed = True
        try:
            container = self._instantiate(backend=backend, deadline=deadline)
            logger.info("Created working container %s from %s", container, self._base_image)

            with _build_step(step=BuildStep.MOUNT, deadline=deadline) as timeout:
                mountpoint = backend.mount(container=container, timeout=timeout)
            logger.info("Mounted %s at %s", container, mountpoint)

            for command in order_commands(self._build_commands):
                if command.step is None:
                    continue
                with _build_step(step=command.step, deadline=deadline) as timeout:
                    command.apply(
                        backend=backend,
                        container=container,
                        mountpoint=mountpoint,
                        timeout=timeout,
                    )

            with _build_step(step=BuildStep.COMMIT, deadline=deadline) as timeout:
                image_id = backend.commit(
                    container=container,
                    image=self._tag,
                    image_format=self._image_format,
                    timeout=timeout,
                )
            logger.info("Committed %s as %s (%s)", container, self._tag, self._image_format)
            failed = False
        finally:
            if container is not None:
                if failed and keep_on_failure:
                    logger.warning(
                        "Keeping working container %s (mounted at %s) for inspection",
                        container,
                        mountpoint,
                    )
                else:
                    self._release(
                        backend=backend,
                        container=container,
                        mounted=mountpoint is not None,
                        remove=remove_container,
                        raise_errors=not failed,
                    )

        return BuildResult(
            image=self._tag,
            image_id=image_id,
            container=container,
            image_format=self._image_format,
        )

    def __or__(
        self,
        other: "PartialImageBuilder",
    ) -> "ImageBuilder":
        """
        Merges the current ImageBuilder with another PartialImageBuilder to combine their
        commands.

        Parameters:
            other (PartialImageBuilder): Another builder to merge with.

        Returns:
            ImageBuilder: A new ImageBuilder instance with combined commands.
        """
        result_builder = ImageBuilder(
            tag=self._tag,
            base_image=self._base_image,
            image_format=self._image_format,
            timeout=self._timeout,
            pull_attempts=self._pull_attempts,
            pull_backoff=self._pull_backoff,
        )
        result_builder._extend(other=self)
        result_builder._extend(other=other)
        return result_builder


def image_config(inspect_data: Dict[str, Any]) -> Dict[str, Any]:
    """
    Extracts the runtime configuration (Entrypoint, User, ...) from `buildah inspect` output.
    """
    for key in ("OCIv1", "Docker"):
        config = (inspect_data.get(key) or {}).get("config")
        if config:
            return config
    return {}


def verify_image(
    backend: ContainerBackend,
    image: str,
    entrypoint: List[str] | None = None,
    user: str | None = None,
) -> List[str]:
    """
    Compares the metadata of a committed image with the expected entrypoint and user.

    Parameters:
        backend (ContainerBackend): The backend used to inspect the image.
        image (str): The image to check.
        entrypoint (List[str] | None): The expected entrypoint, or None to skip the check.
        user (str | None): The expected user, or None to skip the check.

    Returns:
        List[str]: One message per mismatch; empty when the image matches.
    """
    config = image_config(backend.inspect(image=image))
    mismatches = []
    actual_entrypoint = config.get("Entrypoint")
    if entrypoint is not None and actual_entrypoint != list(entrypoint):
        mismatches.append(f"entrypoint: expected {list(entrypoint)}, found {actual_entrypoint}")
    actual_user = config.get("User")
    if user is not None and actual_user != user:
        mismatches.append(f"user: expected {user!r}, found {actual_user!r}")
    return mismatches
