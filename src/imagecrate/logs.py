# Copyright (C) 2025 Antonio Paolillo. All rights reserved.
# SPDX-License-Identifier: MIT
"""Logging setup for the imagecrate command line."""

import logging

import click

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


class ClickEchoHandler(logging.Handler):
    """Log handler writing records to the stderr stream click currently uses."""

    def emit(self, record: logging.LogRecord) -> None:
        try:
            click.echo(self.format(record), err=True)
        except Exception:  # pylint: disable=broad-exception-caught
            self.handleError(record)


def configure_logging(verbose: bool = False) -> logging.Logger:
    """
    Attach a stderr handler to the `imagecrate` logger.

    Calling it again only adjusts the level, so repeated CLI invocations in one
    process (as in tests) do not duplicate output.

    Args:
        verbose: Log step details (DEBUG) instead of the build milestones (INFO).

    Returns:
        The configured `imagecrate` logger.
    """
    logger = logging.getLogger("imagecrate")
    if not any(isinstance(h, ClickEchoHandler) for h in logger.handlers):
        handler = ClickEchoHandler()
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        logger.addHandler(handler)
    logger.setLevel(logging.DEBUG if verbose else logging.INFO)
    return logger
