# Copyright (C) 2025 Antonio Paolillo. All rights reserved.
# SPDX-License-Identifier: MIT
"""
Build steps and the failures they can raise.

Every failure raised while building an image is a `BuildError` that names the
`BuildStep` in which it happened, so callers can tell a missing artifact from a
storage problem without parsing messages. The original low-level exception
(`subprocess.CalledProcessError`, `OSError`, ...) is kept as `__cause__`.
"""

from enum import Enum


class BuildStep(Enum):
    """The steps of an image build, in execution order."""

    INSTANTIATE = "instantiate"
    MOUNT = "mount"
    COPY = "copy"
    CONFIGURE = "configure"
    COMMIT = "commit"
    UNMOUNT = "unmount"
    REMOVE = "remove"


class BuildError(RuntimeError):
    """
    Base class of all image build failures.

    Attributes:
        step (BuildStep): The step that failed.
    """

    default_step = BuildStep.INSTANTIATE

    def __init__(self, message: str, step: BuildStep | None = None) -> None:
        super().__init__(message)
        self.step = step if step is not None else self.default_step

    def __str__(self) -> str:
        return f"{self.step.value} failed: {super().__str__()}"


class ResolutionError(BuildError):
    """The base image could not be resolved or pulled."""

    default_step = BuildStep.INSTANTIATE


class MountError(BuildError):
    """The working container filesystem could not be mounted."""

    default_step = BuildStep.MOUNT


class CopyError(BuildError):
    """An artifact is missing or its destination is not writable."""

    default_step = BuildStep.COPY


class ConfigurationError(BuildError, ValueError):
    """Malformed image configuration (entrypoint, user, format, ...)."""

    default_step = BuildStep.CONFIGURE


class CommitError(BuildError):
    """The working container could not be committed as an image."""

    default_step = BuildStep.COMMIT


class UnmountError(BuildError):
    """The working container filesystem could not be unmounted."""

    default_step = BuildStep.UNMOUNT


class CleanupError(BuildError):
    """The working container could not be removed."""

    default_step = BuildStep.REMOVE


class BuildTimeoutError(BuildError):
    """The overall build deadline expired during `step`."""


STEP_ERRORS: dict[BuildStep, type[BuildError]] = {
    BuildStep.INSTANTIATE: ResolutionError,
    BuildStep.MOUNT: MountError,
    BuildStep.COPY: CopyError,
    BuildStep.CONFIGURE: ConfigurationError,
    BuildStep.COMMIT: CommitError,
    BuildStep.UNMOUNT: UnmountError,
    BuildStep.REMOVE: CleanupError,
}
