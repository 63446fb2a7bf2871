"""Shared logging helpers for pkgload."""

import logging


def configure_logging(level: int | str = logging.INFO, force: bool = False) -> None:
    """Initialise the root logger once with a terse format.

    Pass force=True to reconfigure during tests or from scripts that were
    already configured.
    """
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
        datefmt="%H:%M:%S",
        force=force,
    )
