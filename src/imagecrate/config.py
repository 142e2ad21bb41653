# Copyright (C) 2025 Antonio Paolillo. All rights reserved.
# SPDX-License-Identifier: MIT
"""
Build recipes.

A `BuildConfig` gathers every parameter of an image build: the base image,
the artifacts to embed, the image metadata and the build policy (timeout,
retries, cleanup). Its defaults reproduce the `simpleldap` image:

    base image   docker.io/fedora:35
    artifacts    ./target/release/simpleldap -> /simpleldap
                 ./database.sqlite           -> /database.sqlite
    entrypoint   /simpleldap
    user         1000:1000
    format       docker
    image        simpleldap

Recipes can also be read from a TOML file:

    base_image = "docker.io/fedora:35"
    image = "simpleldap"
    entrypoint = ["/simpleldap"]
    user = "1000:1000"

    [[artifacts]]
    source = "target/release/simpleldap"
    destination = "/simpleldap"
    mode = "755"

Relative artifact sources in a file are resolved against the file's directory.
Modes in a file must be octal strings (`mode = "755"`): a bare TOML integer such
as `755` would be read as decimal, so it is rejected.
"""

import dataclasses
import tomllib
from dataclasses import dataclass, field
from pathlib import Path, PurePosixPath
from typing import Any, Dict, List

from imagecrate.builders import (
    ImageBuilder,
    validate_entrypoint,
    validate_image_format,
    validate_user_spec,
)
from imagecrate.errors import ConfigurationError
from imagecrate.staging import relative_image_path
from imagecrate.sysutils import PathType

DEFAULT_BASE_IMAGE = "docker.io/fedora:35"
DEFAULT_IMAGE = "simpleldap"
DEFAULT_ENTRYPOINT = ["/simpleldap"]
DEFAULT_USER = "1000:1000"
DEFAULT_IMAGE_FORMAT = "docker"


def _parse_mode(mode: int | str | None) -> int | None:
    if mode is None or isinstance(mode, int):
        return mode
    try:
        return int(mode, 8)
    except ValueError as exc:
        raise ConfigurationError(f"Invalid octal mode: {mode!r}") from exc


@dataclass
class Artifact:
    """
    A host file or directory to embed in the image.

    Attributes:
        source: Host path of the artifact.
        destination: Absolute path of the artifact inside the image.
        mode: Optional permission bits of the copied artifact.
    """

    source: Path
    destination: PurePosixPath
    mode: int | None = None

    def __post_init__(self) -> None:
        self.source = Path(self.source)
        self.destination = PurePosixPath(self.destination)
        self.mode = _parse_mode(self.mode)
        try:
            relative_image_path(self.destination)
        except ValueError as exc:
            raise ConfigurationError(str(exc)) from exc

    @classmethod
    def parse(cls, spec: str) -> "Artifact":
        """
        Parse a `SOURCE:DESTINATION` specification, as given on the command line.

        Raises:
            ConfigurationError: If the specification has no destination.
        """
        source, sep, destination = spec.rpartition(":")
        if not sep or not source or not destination:
            raise ConfigurationError(f"Invalid artifact {spec!r}, expected SOURCE:DESTINATION")
        return cls(source=Path(source), destination=PurePosixPath(destination))

    def __str__(self) -> str:
        return f"{self.source}:{self.destination}"


def default_artifacts() -> List[Artifact]:
    """The artifacts of the `simpleldap` image: the server binary and its database."""
    return [
        Artifact(
            source=Path("./target/release/simpleldap"),
            destination=PurePosixPath("/simpleldap"),
        ),
        Artifact(
            source=Path("./database.sqlite"),
            destination=PurePosixPath("/database.sqlite"),
        ),
    ]


@dataclass
class BuildConfig:
    """
    All the parameters of an image build.

    Attributes:
        base_image: Image the working container is created from.
        image: Name of the committed image.
        artifacts: Host artifacts copied into the image.
        entrypoint: Exec-form entrypoint of the image.
        user: `user[:group]` the image runs as.
        image_format: Commit format, 'docker' or 'oci'.
        timeout: Overall build timeout in seconds, None for no timeout.
        pull_attempts: Attempts at creating the working container.
        pull_backoff: Multiplier of the exponential wait between attempts.
        keep_on_failure: Keep the working container mounted when the build fails.
        remove_container: Remove the working container after the build.
    """

    base_image: str = DEFAULT_BASE_IMAGE
    image: str = DEFAULT_IMAGE
    artifacts: List[Artifact] = field(default_factory=default_artifacts)
    entrypoint: List[str] = field(default_factory=lambda: list(DEFAULT_ENTRYPOINT))
    user: str = DEFAULT_USER
    image_format: str = DEFAULT_IMAGE_FORMAT
    timeout: float | None = None
    pull_attempts: int = 3
    pull_backoff: float = 2.0
    keep_on_failure: bool = False
    remove_container: bool = True

    def __post_init__(self) -> None:
        validate_user_spec(self.user)
        self.entrypoint = validate_entrypoint(self.entrypoint)
        validate_image_format(self.image_format)
        if not self.base_image:
            raise ConfigurationError("A base image is required")
        if not self.image:
            raise ConfigurationError("A destination image name is required")
        if self.timeout is not None and self.timeout <= 0:
            raise ConfigurationError(f"The timeout must be positive, got {self.timeout}")
        if self.pull_attempts < 1:
            raise ConfigurationError(
                f"At least one pull attempt is required, got {self.pull_attempts}"
            )

    @classmethod
    def from_dict(cls, data: Dict[str, Any], base_dir: PathType | None = None) -> "BuildConfig":
        """
        Create a configuration from a mapping (e.g., a parsed TOML document).

        Args:
            data: Configuration keys; `artifacts` is a list of tables with `source`,
                `destination` and an optional `mode`.
            base_dir: Directory relative artifact sources are resolved against.

        Raises:
            ConfigurationError: On unknown keys or invalid values.
        """
        known = {f.name for f in dataclasses.fields(cls)}
        unknown = set(data) - known
        if unknown:
            raise ConfigurationError(f"Unknown configuration keys: {', '.join(sorted(unknown))}")

        values = dict(data)
        if "artifacts" in values:
            artifacts = []
            for entry in values["artifacts"]:
                try:
                    source = Path(entry["source"])
                    destination = PurePosixPath(entry["destination"])
                except KeyError as exc:
                    raise ConfigurationError(f"Artifact entry misses {exc}") from exc
                if base_dir is not None and not source.is_absolute():
                    source = Path(base_dir) / source
                mode = entry.get("mode")
                if mode is not None and not isinstance(mode, str):
                    raise ConfigurationError(
                        f'Artifact mode must be an octal string such as "755", got {mode!r}'
                    )
                artifacts.append(Artifact(source=source, destination=destination, mode=mode))
            values["artifacts"] = artifacts
        return cls(**values)

    @classmethod
    def from_file(cls, path: PathType) -> "BuildConfig":
        """
        Read a configuration from a TOML file.

        Raises:
            ConfigurationError: If the file is not valid TOML or holds invalid values.
            OSError: If the file cannot be read.
        """
        path = Path(path)
        with open(path, "rb") as config_file:
            try:
                data = tomllib.load(config_file)
            except tomllib.TOMLDecodeError as exc:
                raise ConfigurationError(f"{path}: {exc}") from exc
        return cls.from_dict(data, base_dir=path.parent)

    def with_overrides(self, **overrides: Any) -> "BuildConfig":
        """
        Return a copy where every override that is not None replaces the current value.
        """
        changes = {k: v for k, v in overrides.items() if v is not None}
        return dataclasses.replace(self, **changes)

    def to_builder(self) -> ImageBuilder:
        """
        Create the ImageBuilder performing this build.
        """
        builder = ImageBuilder(
            tag=self.image,
            base_image=self.base_image,
            image_format=self.image_format,
            timeout=self.timeout,
            pull_attempts=self.pull_attempts,
            pull_backoff=self.pull_backoff,
        )
        for artifact in self.artifacts:
            builder.copy(
                source=artifact.source,
                destination=artifact.destination,
                mode=artifact.mode,
            )
        builder.entrypoint(list_command=self.entrypoint)
        builder.user(name=self.user)
        return builder
