# Copyright (C) 2024 Antonio Paolillo. All rights reserved.
# SPDX-License-Identifier: MIT

"""
This module provides system-level utilities for the imagecrate package.
It includes the runner used for every buildah invocation, directory handling, and the lookup of
the user and group IDs of the invoking user.
"""

import os
import shlex
import subprocess
from pathlib import Path
from typing import List

PathType = str | Path


def shell_out(
    command: List[str] | str,
    timeout: float | None = None,
) -> str:
    """
    Executes a command, echoing it first as `[command line]`, and returns its standard output.

    Parameters:
        command (List[str] | str): The command to execute, either as a string or a list of strings.
        timeout (float | None): Seconds after which the command is killed. None waits forever.

    Returns:
        str: The standard output of the command, stripped of surrounding whitespace.

    Raises:
        subprocess.CalledProcessError: If the command exits with a non-zero status.
        subprocess.TimeoutExpired: If the command did not finish within `timeout` seconds.
    """
    if isinstance(command, str):
        command = shlex.split(command)
    print(f"[{shlex.join(command)}]")
    output = subprocess.check_output(command, text=True, timeout=timeout)
    return output.strip()


def get_uid() -> str:
    """
    Retrieves the user ID of the current process.

    Returns:
        str: The user ID as a string.
    """
    return str(os.getuid())


def get_gid() -> str:
    """
    Retrieves the group ID of the current process.

    Returns:
        str: The group ID as a string.
    """
    return str(os.getgid())


def get_user_spec() -> str:
    """
    Returns the `uid:gid` pair of the invoking user, suitable for an image USER setting.
    """
    return f"{get_uid()}:{get_gid()}"


def mkdir_for_path(path: PathType) -> None:
    """
    Ensures that the parent directory for a given path exists, creating it if necessary.

    Parameters:
        path (PathType): The path for which the parent directory needs verification or creation.

    Raises:
        ValueError: If the parent path exists and is not a directory.
    """
    path = Path(path)
    if path.is_dir():
        return

    parent_path = path.parent
    if parent_path.is_dir():
        return
    if parent_path.is_file():
        raise ValueError(f'Error, parent path is not a directory: "{parent_path}"')

    parent_path.mkdir(parents=True, exist_ok=True)
