# Copyright (C) 2025 Antonio Paolillo. All rights reserved.
# SPDX-License-Identifier: MIT
"""Integration smoke test for imagecrate's ImageBuilder.

This module requires a working buildah installation with permission to mount
working containers (root, or a `buildah unshare` session). It builds a minimal
Alpine-based image holding an executable and a data file, then checks the
committed image: its metadata through `buildah inspect`, and its content by
mounting a fresh working container created from it.
"""

import os
import shutil
import subprocess
from pathlib import Path

import pytest

from imagecrate.backends import BuildahBackend
from imagecrate.builders import ImageBuilder, verify_image

pytestmark = [
    pytest.mark.integration,
    pytest.mark.slow,
    pytest.mark.skipif(shutil.which("buildah") is None, reason="buildah is not installed"),
    pytest.mark.skipif(os.geteuid() != 0, reason="buildah mount requires root"),
]


def test_build_alpine_image(tmp_path: Path) -> None:
    """Build a tiny image and read its layout and metadata back.

    Steps:
      1. Create an executable and a data file on the host.
      2. Build an image from Alpine with both files, an entrypoint and a user.
      3. Verify the entrypoint and user with ``verify_image``.
      4. Mount a new working container from the image and compare the files.
    """
    binary = tmp_path / "hello"
    binary.write_text("#!/bin/sh\necho imagecrate_ok\n")
    binary.chmod(0o755)
    database = tmp_path / "database.sqlite"
    database.write_bytes(b"SQLite format 3\x00")

    tag = "imagecrate-itest:alpine"
    builder = ImageBuilder(tag=tag, base_image="docker.io/library/alpine:3.20", timeout=600)
    builder.copy(source=binary, destination=Path("/hello"))
    builder.copy(source=database, destination=Path("/database.sqlite"))
    builder.entrypoint(list_command=["/hello"])
    builder.user(name="1000:1000")

    backend = BuildahBackend()
    result = builder.build(backend=backend)
    assert result.image == tag
    assert result.image_id

    assert not verify_image(backend=backend, image=tag, entrypoint=["/hello"], user="1000:1000")

    container = backend.instantiate(base_image=tag)
    try:
        mountpoint = backend.mount(container=container)
        assert (mountpoint / "hello").read_bytes() == binary.read_bytes()
        assert (mountpoint / "hello").stat().st_mode & 0o111
        assert (mountpoint / "database.sqlite").read_bytes() == database.read_bytes()
        backend.unmount(container=container)
    finally:
        backend.remove(container=container)
        subprocess.run(["buildah", "rmi", tag], check=False)
