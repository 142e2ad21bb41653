# Copyright (C) 2025 Antonio Paolillo. All rights reserved.
# SPDX-License-Identifier: MIT
"""
Pytest configuration for imagecrate tests.

Registers custom markers:
- integration: requires buildah
- slow: long build/pull

Provides an in-memory `FakeBackend` standing in for buildah: working
containers are directories under `tmp_path`, committed images are snapshots
of their files and configuration.
"""

import subprocess
from pathlib import Path
from typing import Any, Dict, List, Tuple

import pytest

from imagecrate.backends import ContainerBackend


def pytest_configure(config: pytest.Config) -> None:
    """Register custom markers so --strict-markers doesn’t error."""
    config.addinivalue_line("markers", "integration: requires buildah")
    config.addinivalue_line("markers", "slow: long build/pull")


class FakeBackend(ContainerBackend):
    """
    A ContainerBackend keeping its state in memory and under a storage directory.

    Attributes:
        calls: Every backend call as (operation, container or image).
        fail_on: Operation name -> exception raised by every call of that operation.
        instantiate_failures: Number of first `instantiate` calls failing like a network error.
    """

    def __init__(self, storage: Path) -> None:
        self.storage = storage
        self.calls: List[Tuple[str, str]] = []
        self.fail_on: Dict[str, Exception] = {}
        self.instantiate_failures = 0
        self.timeouts: List[float | None] = []
        self.containers: Dict[str, Dict[str, Any]] = {}
        self.mounted: set[str] = set()
        self.images: Dict[str, Dict[str, Any]] = {}
        self._counter = 0

    def _call(self, operation: str, target: str, timeout: float | None) -> None:
        self.calls.append((operation, target))
        self.timeouts.append(timeout)
        if operation in self.fail_on:
            raise self.fail_on[operation]

    def operations(self) -> List[str]:
        """The names of the operations called so far, in order."""
        return [operation for operation, _ in self.calls]

    def instantiate(self, base_image: str, timeout: float | None = None) -> str:
        self._call("instantiate", base_image, timeout)
        if self.instantiate_failures > 0:
            self.instantiate_failures -= 1
            raise subprocess.CalledProcessError(125, ["buildah", "from", base_image])
        self._counter += 1
        name = base_image.rsplit("/", 1)[-1].split(":")[0]
        container = f"{name}-working-container-{self._counter}"
        self.containers[container] = {"base": base_image, "config": {}}
        return container

    def mount(self, container: str, timeout: float | None = None) -> Path:
        self._call("mount", container, timeout)
        mountpoint = self.storage / container / "merged"
        mountpoint.mkdir(parents=True, exist_ok=True)
        self.mounted.add(container)
        return mountpoint

    def unmount(self, container: str, timeout: float | None = None) -> None:
        self._call("unmount", container, timeout)
        self.mounted.discard(container)

    def copy_into(self, mountpoint, source, destination, mode=None, timeout=None) -> Path:
        self._call("copy_into", str(destination), timeout)
        return super().copy_into(
            mountpoint=mountpoint,
            source=source,
            destination=destination,
            mode=mode,
            timeout=timeout,
        )

    def configure(self, container, entrypoint=None, user=None, timeout=None) -> None:
        self._call("configure", container, timeout)
        config = self.containers[container]["config"]
        if entrypoint is not None:
            config["Entrypoint"] = list(entrypoint)
        if user is not None:
            config["User"] = user

    def commit(self, container, image, image_format="docker", timeout=None) -> str:
        self._call("commit", container, timeout)
        mountpoint = self.storage / container / "merged"
        files = {
            "/" + str(p.relative_to(mountpoint)): p.read_bytes()
            for p in sorted(mountpoint.rglob("*"))
            if p.is_file()
        }
        image_id = f"sha256:{len(self.images) + 1:064x}"
        self.images[image] = {
            "id": image_id,
            "format": image_format,
            "files": files,
            "config": dict(self.containers[container]["config"]),
        }
        return image_id

    def remove(self, container: str, timeout: float | None = None) -> None:
        self._call("remove", container, timeout)
        self.containers.pop(container, None)

    def inspect(self, image: str, timeout: float | None = None) -> Dict[str, Any]:
        self._call("inspect", image, timeout)
        return {"OCIv1": {"config": dict(self.images[image]["config"])}}


@pytest.fixture
def fake_backend(tmp_path: Path) -> FakeBackend:
    """A fresh FakeBackend storing working containers under tmp_path."""
    return FakeBackend(storage=tmp_path / "storage")


@pytest.fixture
def artifacts(tmp_path: Path) -> Dict[str, Path]:
    """An executable and a database file laid out like a cargo release build."""
    binary = tmp_path / "target" / "release" / "simpleldap"
    binary.parent.mkdir(parents=True)
    binary.write_bytes(b"\x7fELF simpleldap")
    binary.chmod(0o755)

    database = tmp_path / "database.sqlite"
    database.write_bytes(b"SQLite format 3\x00")

    return {"binary": binary, "database": database}
