# Copyright (C) 2025 Antonio Paolillo. All rights reserved.
# SPDX-License-Identifier: MIT
"""Unit tests for the buildah command lines issued by BuildahBackend.

`shell_out` is replaced by a recorder returning canned outputs, so these tests
check command construction and output parsing without a buildah installation.
"""

import json
import subprocess
from pathlib import Path
from typing import List

import pytest

from imagecrate.backends import BuildahBackend

BUILDAH = "/usr/bin/buildah"


class Recorder:
    """Stands in for shell_out: records commands, replies with queued outputs."""

    def __init__(self) -> None:
        self.commands: List[List[str]] = []
        self.timeouts: List[float | None] = []
        self.outputs: List[str] = []

    def __call__(self, command: List[str], timeout: float | None = None, **kwargs) -> str:
        self.commands.append(command)
        self.timeouts.append(timeout)
        return self.outputs.pop(0) if self.outputs else ""


@pytest.fixture
def recorder(monkeypatch: pytest.MonkeyPatch) -> Recorder:
    """Patch the buildah lookup and shell_out used by the backend."""
    rec = Recorder()
    monkeypatch.setattr("imagecrate.backends.shutil.which", lambda name: BUILDAH)
    monkeypatch.setattr("imagecrate.backends.shell_out", rec)
    return rec


def test_instantiate_returns_container_name(recorder: Recorder) -> None:
    """The working container name is the last line printed by `buildah from`."""
    recorder.outputs.append(
        "Trying to pull docker.io/library/fedora:35...\nfedora-working-container"
    )

    container = BuildahBackend().instantiate(base_image="docker.io/fedora:35", timeout=12.5)

    assert container == "fedora-working-container"
    assert recorder.commands == [[BUILDAH, "from", "docker.io/fedora:35"]]
    assert recorder.timeouts == [12.5]


def test_mount_and_unmount(recorder: Recorder) -> None:
    """`buildah mount` prints the mount point; `buildah unmount` releases it."""
    recorder.outputs.append("/var/lib/containers/storage/overlay/abc/merged")
    backend = BuildahBackend()

    mountpoint = backend.mount(container="fedora-working-container")
    backend.unmount(container="fedora-working-container")

    assert mountpoint == Path("/var/lib/containers/storage/overlay/abc/merged")
    assert recorder.commands == [
        [BUILDAH, "mount", "fedora-working-container"],
        [BUILDAH, "unmount", "fedora-working-container"],
    ]


def test_mount_without_output_fails(recorder: Recorder) -> None:
    """A mount that prints no path is an error."""
    with pytest.raises(RuntimeError):
        BuildahBackend().mount(container="fedora-working-container")


def test_configure_entrypoint_uses_exec_form(recorder: Recorder) -> None:
    """The entrypoint is passed as a JSON array, the user verbatim."""
    backend = BuildahBackend()

    backend.configure(container="c", entrypoint=["/simpleldap"])
    backend.configure(container="c", user="1000:1000")

    assert recorder.commands == [
        [BUILDAH, "config", '--entrypoint=["/simpleldap"]', "c"],
        [BUILDAH, "config", "--user=1000:1000", "c"],
    ]


def test_configure_requires_a_setting(recorder: Recorder) -> None:
    """Configuring nothing is refused before calling buildah."""
    with pytest.raises(ValueError):
        BuildahBackend().configure(container="c")
    assert not recorder.commands


def test_commit(recorder: Recorder) -> None:
    """Commit passes the format and returns the image id."""
    recorder.outputs.append("Getting image source signatures\nWriting manifest\n0123abcd")

    image_id = BuildahBackend().commit(container="c", image="simpleldap", image_format="oci")

    assert image_id == "0123abcd"
    assert recorder.commands == [[BUILDAH, "commit", "--format", "oci", "c", "simpleldap"]]


def test_commit_rejects_unknown_format(recorder: Recorder) -> None:
    """Only docker and oci formats are accepted."""
    with pytest.raises(ValueError):
        BuildahBackend().commit(container="c", image="simpleldap", image_format="tar")
    assert not recorder.commands


def test_remove_and_global_options(recorder: Recorder) -> None:
    """Global options precede every subcommand."""
    BuildahBackend(global_options=["--storage-driver=vfs"]).remove(container="c")

    assert recorder.commands == [[BUILDAH, "--storage-driver=vfs", "rm", "c"]]


def test_inspect_parses_json(recorder: Recorder) -> None:
    """`buildah inspect --type image` output is decoded."""
    payload = {"OCIv1": {"config": {"Entrypoint": ["/simpleldap"], "User": "1000:1000"}}}
    recorder.outputs.append(json.dumps(payload))

    assert BuildahBackend().inspect(image="simpleldap") == payload
    assert recorder.commands == [[BUILDAH, "inspect", "--type", "image", "simpleldap"]]


def test_missing_buildah(monkeypatch: pytest.MonkeyPatch) -> None:
    """Without buildah on the PATH, commands fail with FileNotFoundError."""
    monkeypatch.setattr("imagecrate.backends.shutil.which", lambda name: None)

    with pytest.raises(FileNotFoundError):
        BuildahBackend().instantiate(base_image="docker.io/fedora:35")


def test_failing_command_propagates(monkeypatch: pytest.MonkeyPatch) -> None:
    """A non-zero buildah exit status surfaces as CalledProcessError."""

    def failing_shell_out(command: List[str], timeout: float | None = None, **kwargs) -> str:
        raise subprocess.CalledProcessError(125, command)

    monkeypatch.setattr("imagecrate.backends.shutil.which", lambda name: BUILDAH)
    monkeypatch.setattr("imagecrate.backends.shell_out", failing_shell_out)

    with pytest.raises(subprocess.CalledProcessError):
        BuildahBackend().instantiate(base_image="docker.io/fedora:35")
