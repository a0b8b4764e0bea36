"""Logging setup for loopforge with rich console output and package filtering."""

from __future__ import annotations

import logging
from typing import List, Optional

from rich.console import Console
from rich.logging import RichHandler

PACKAGE_NAME = "loopforge"


class PackageFilter(logging.Filter):
    """Filter to only allow logs from specified packages."""

    def __init__(self, packages: List[str]) -> None:
        super().__init__()
        self.packages = packages

    def filter(self, record: logging.LogRecord) -> bool:
        """Filter log records to only allow specified packages.

        Args:
            record: LogRecord to filter

        Returns:
            True if record should be logged, False otherwise
        """
        return any(
            record.name == pkg or record.name.startswith(f"{pkg}.") for pkg in self.packages
        )


def setup_logging(
    verbose: bool = False,
    package_only: bool = False,
    console: Optional[Console] = None,
) -> RichHandler:
    """Configure the root logger with a RichHandler.

    Args:
        verbose: Enable debug level logging
        package_only: Only show records from loopforge loggers
        console: Console to write to, stderr by default

    Returns:
        The installed handler
    """
    log_level = logging.DEBUG if verbose else logging.INFO
    log_format = "%(name)s: %(message)s"
    date_format = "%H:%M:%S"

    handler = RichHandler(
        console=console or Console(stderr=True),
        show_path=verbose,
        rich_tracebacks=True,
        log_time_format=f"[{date_format}]",
    )
    handler.setFormatter(logging.Formatter(log_format, datefmt=date_format))
    if package_only:
        handler.addFilter(PackageFilter([PACKAGE_NAME]))

    logging.basicConfig(level=log_level, handlers=[handler], force=True)
    return handler
