#!/usr/bin/env python3
# Copyright (C) 2025 Antonio Paolillo. All rights reserved.
# SPDX-License-Identifier: MIT

# pylint: disable=missing-module-docstring, invalid-name

from pathlib import Path

from imagecrate.backends import BuildahBackend
from imagecrate.builders import ImageBuilder
from imagecrate.logs import configure_logging

configure_logging()

image = "simpleldap"
builder = ImageBuilder(tag=image, base_image="docker.io/fedora:35", image_format="docker")

builder.desc("Server binary and its database")
builder.copy(source=Path("target/release/simpleldap"), destination=Path("/simpleldap"))
builder.copy(source=Path("database.sqlite"), destination=Path("/database.sqlite"))

builder.space()
builder.desc("Run the server unprivileged")
builder.entrypoint(list_command=["/simpleldap"])
builder.user(name="1000:1000")

# Same build as a standalone shell script, for hosts without Python:
builder.generate_build_script(output_path="/tmp/imagecrate/simpleldap/buildah-build.sh")

result = builder.build(backend=BuildahBackend())
print(f"{result.image}: {result.image_id}")
