#!/usr/bin/env python3
# Copyright (C) 2025 Antonio Paolillo. All rights reserved.
# SPDX-License-Identifier: MIT

# pylint: disable=missing-module-docstring, invalid-name

from pathlib import Path

from imagecrate.backends import BuildahBackend
from imagecrate.builders import ImageBuilder, PartialImageBuilder


def ldap_artifacts() -> PartialImageBuilder:
    """
    A partial builder copying the simpleldap binary and its database.

    Returns:
        PartialImageBuilder: Build fragment with the two copies.
    """
    b = PartialImageBuilder()
    b.desc("simpleldap artifacts")
    b.copy(source=Path("target/release/simpleldap"), destination=Path("/simpleldap"), mode=0o755)
    b.copy(source=Path("database.sqlite"), destination=Path("/database.sqlite"))
    return b


def unprivileged(user: str = "1000:1000") -> PartialImageBuilder:
    """
    A partial builder setting the runtime user.

    Returns:
        PartialImageBuilder: Build fragment with the user configuration.
    """
    b = PartialImageBuilder()
    b.user(name=user)
    return b


# Fragments define no base image nor image name by themselves; they are **composed**
# into full builders. The same artifacts can feed images built on different bases:

for image, base_image in [
    ("simpleldap-fedora", "docker.io/fedora:35"),
    ("simpleldap-alpine", "docker.io/library/alpine:3.20"),
]:
    builder = ImageBuilder(tag=image, base_image=base_image, image_format="oci")
    builder |= unprivileged() | ldap_artifacts()  # copies still run before the user is set
    builder.entrypoint(list_command=["/simpleldap"])
    builder.build(backend=BuildahBackend())
