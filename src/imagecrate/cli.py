# Copyright (C) 2025 Antonio Paolillo. All rights reserved.
# SPDX-License-Identifier: MIT
"""
CLI interface for imagecrate.

This module provides a command-line interface to build container images from a
base image and prebuilt artifacts with buildah. It exposes four subcommands:

- `build`: creates a working container, copies the artifacts, configures the
  entrypoint and user, commits the image and releases the working container.
- `script`: writes the equivalent buildah shell script.
- `scaffold`: generates a starter Python script that reproduces the recipe
  with the imagecrate API, so the user can customize it further.
- `verify`: checks the entrypoint and user of a committed image.

Every subcommand starts from the default recipe (the `simpleldap` image), an
optional TOML file given with `--config`, and explicit options, in increasing
order of precedence.
"""

import subprocess
from pathlib import Path
from typing import Callable, List, Optional, Tuple

import black
import click
import isort

from imagecrate.backends import IMAGE_FORMATS, BuildahBackend
from imagecrate.builders import verify_image
from imagecrate.config import DEFAULT_ENTRYPOINT, DEFAULT_USER, Artifact, BuildConfig
from imagecrate.errors import BuildError
from imagecrate.logs import configure_logging
from imagecrate.sysutils import get_user_spec

# Make "-h" behave like "--help"
CONTEXT_SETTINGS = {"help_option_names": ["-h", "--help"]}


def recipe_options(func: Callable) -> Callable:
    """
    Decorate a command with the options describing a build recipe.
    """
    options = [
        click.option(
            "--config",
            "config_path",
            type=click.Path(exists=True, dir_okay=False),
            help="TOML build recipe",
        ),
        click.option("--base-image", help="Image the working container is created from"),
        click.option("--image", help="Name of the committed image"),
        click.option(
            "--artifact",
            "artifacts",
            multiple=True,
            metavar="SRC:DST",
            help="Host artifact to copy into the image (repeatable, replaces the defaults)",
        ),
        click.option(
            "--entrypoint",
            multiple=True,
            help="Entrypoint argument (repeatable, forms the exec-form entrypoint)",
        ),
        click.option("--user", help="user[:group] the image runs as"),
        click.option(
            "--host-user",
            is_flag=True,
            help="Run the image as the uid:gid of the invoking user",
        ),
        click.option(
            "--format",
            "image_format",
            type=click.Choice(IMAGE_FORMATS),
            help="Image format of the commit",
        ),
        click.option("--timeout", type=click.FloatRange(min=0, min_open=True), help="Seconds"),
        click.option("--pull-attempts", type=click.IntRange(min=1), help="Base image attempts"),
    ]
    for option in reversed(options):
        func = option(func)
    return func


def load_recipe(
    config_path: Optional[str],
    base_image: Optional[str],
    image: Optional[str],
    artifacts: Tuple[str, ...],
    entrypoint: Tuple[str, ...],
    user: Optional[str],
    host_user: bool,
    image_format: Optional[str],
    timeout: Optional[float],
    pull_attempts: Optional[int],
) -> BuildConfig:
    """
    Resolve the build recipe from the defaults, the optional TOML file and the explicit options.

    Raises:
        click.UsageError: If both --user and --host-user are given.
        click.ClickException: If the recipe is invalid.
    """
    if user and host_user:
        raise click.UsageError("--user and --host-user are mutually exclusive")

    try:
        config = BuildConfig.from_file(config_path) if config_path else BuildConfig()
        return config.with_overrides(
            base_image=base_image,
            image=image,
            artifacts=[Artifact.parse(a) for a in artifacts] or None,
            entrypoint=list(entrypoint) or None,
            user=get_user_spec() if host_user else user,
            image_format=image_format,
            timeout=timeout,
            pull_attempts=pull_attempts,
        )
    except (ValueError, OSError) as exc:
        raise click.ClickException(str(exc)) from exc


def _global_options(storage_driver: Optional[str]) -> Optional[List[str]]:
    return [f"--storage-driver={storage_driver}"] if storage_driver else None


@click.group(context_settings=CONTEXT_SETTINGS)
@click.version_option(
    package_name="imagecrate",
    prog_name="imagecrate",
    message="%(prog)s %(version)s",
)
def cli() -> None:
    """imagecrate: commit container images from a base image and prebuilt artifacts."""


@cli.command()
@recipe_options
@click.option(
    "--keep-on-failure",
    is_flag=True,
    help="Leave the working container mounted when a step fails",
)
@click.option("--keep-container", is_flag=True, help="Do not remove the working container")
@click.option("--storage-driver", help="buildah storage driver (e.g., 'vfs')")
@click.option("--verbose", "-v", is_flag=True, help="Log every build step")
def build(
    keep_on_failure: bool,
    keep_container: bool,
    storage_driver: Optional[str],
    verbose: bool,
    **recipe_args,
) -> None:
    """
    Build and commit an image.

    The working container is always unmounted and removed, whether the build
    succeeds or not, unless --keep-on-failure or --keep-container say otherwise.
    """
    configure_logging(verbose=verbose)
    recipe = load_recipe(**recipe_args)

    click.echo(
        f"Building image '{recipe.image}' from {recipe.base_image}, with artifacts: "
        f"{', '.join(str(a) for a in recipe.artifacts)}"
    )

    backend = BuildahBackend(global_options=_global_options(storage_driver))

    try:
        result = recipe.to_builder().build(
            backend=backend,
            keep_on_failure=keep_on_failure or recipe.keep_on_failure,
            remove_container=recipe.remove_container and not keep_container,
        )
    except BuildError as exc:
        raise click.ClickException(str(exc)) from exc

    click.echo(f"Committed image '{result.image}' ({result.image_id})")


@cli.command()
@recipe_options
@click.option("--output", type=click.Path(), help="Write script to file (stdout if omitted)")
def script(output: Optional[str], **recipe_args) -> None:
    """
    Generate the equivalent buildah shell script instead of building.
    """
    builder = load_recipe(**recipe_args).to_builder()

    if output:
        builder.generate_build_script(output_path=output)
        click.echo(f"Script written to {output}")
    else:
        click.echo(builder.render_script(), nl=False)


@cli.command()
@recipe_options
@click.option("--output", type=click.Path(), help="Write scaffold to file (stdout if omitted)")
def scaffold(output: Optional[str], **recipe_args) -> None:
    """
    Generate a starter imagecrate script instead of building.

    The generated script reproduces the recipe with the imagecrate API. It can
    be saved to a file (via --output) or printed to stdout.
    """
    recipe = load_recipe(**recipe_args)

    lines: List[str] = [
        "#!/usr/bin/env python3",
        '"""',
        "Build a container image from a base image and prebuilt artifacts using imagecrate.",
        "",
        "Steps:",
        "1) Create the image builder.",
        "2) Copy the artifacts into the image.",
        "3) Configure the entrypoint and the user.",
        "4) Build and commit the image.",
        '"""',
        "",
        "from pathlib import Path",
        "",
        "from imagecrate.backends import BuildahBackend",
        "from imagecrate.builders import ImageBuilder",
        "",
        f'IMAGE = "{recipe.image}"',
        f'BASE_IMAGE = "{recipe.base_image}"',
        f'IMAGE_FORMAT = "{recipe.image_format}"',
        "",
        "",
        "def main() -> None:",
        '    """Build the image and commit it with the configured artifacts and metadata."""',
        "    builder = ImageBuilder(tag=IMAGE, base_image=BASE_IMAGE, image_format=IMAGE_FORMAT)",
        "",
    ]

    for artifact in recipe.artifacts:
        mode = f", mode=0o{artifact.mode:o}" if artifact.mode is not None else ""
        lines.append(
            f'    builder.copy(source=Path("{artifact.source}"), '
            f'destination=Path("{artifact.destination}"){mode})'
        )

    entrypoint = ", ".join(f'"{c}"' for c in recipe.entrypoint)
    lines.append("")
    lines.append(f"    builder.entrypoint(list_command=[{entrypoint}])")
    lines.append(f'    builder.user(name="{recipe.user}")')
    lines.append("")
    lines.append("    builder.build(backend=BuildahBackend())")
    lines.append("")
    lines.append("")
    lines.append('if __name__ == "__main__":')
    lines.append("    main()")

    content: str = "\n".join(lines) + "\n"

    content = isort.code(content, config=isort.Config(profile="black", line_length=100))
    content = black.format_str(
        content,
        mode=black.Mode(line_length=100, target_versions={black.TargetVersion.PY311}),
    )

    if output:
        Path(output).write_text(content)
        click.echo(f"Scaffold written to {output}")
    else:
        click.echo(content)


@cli.command()
@click.argument("image")
@click.option(
    "--entrypoint",
    multiple=True,
    help="Expected entrypoint argument (repeatable; defaults to the simpleldap entrypoint)",
)
@click.option("--user", default=DEFAULT_USER, show_default=True, help="Expected user")
@click.option("--storage-driver", help="buildah storage driver (e.g., 'vfs')")
def verify(
    image: str,
    entrypoint: Tuple[str, ...],
    user: str,
    storage_driver: Optional[str],
) -> None:
    """
    Check the entrypoint and user of a committed image.
    """
    expected_entrypoint = list(entrypoint) or list(DEFAULT_ENTRYPOINT)
    try:
        mismatches = verify_image(
            backend=BuildahBackend(global_options=_global_options(storage_driver)),
            image=image,
            entrypoint=expected_entrypoint,
            user=user,
        )
    except (subprocess.CalledProcessError, OSError, ValueError) as exc:
        raise click.ClickException(f"Cannot inspect image '{image}': {exc}") from exc

    if mismatches:
        raise click.ClickException(f"Image '{image}' does not match: " + "; ".join(mismatches))
    click.echo(f"Image '{image}' matches: entrypoint {expected_entrypoint}, user {user}")


def main() -> None:
    """Entry point for the imagecrate CLI when installed as a script."""
    cli()


if __name__ == "__main__":
    main()
