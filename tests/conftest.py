"""Pytest configuration for dungeonsmith tests.

This module provides pytest hooks that apply across all tests.
"""

import logging
import os

import pytest

from dungeonsmith.utils.logging import LOG_FORMAT

console_logger = logging.getLogger(__name__)


@pytest.hookimpl(tryfirst=True)
def pytest_configure(config):
    """Route solver logs through the same format as ``main.py``.

    The level comes from the LOGLEVEL environment variable (default WARNING),
    so ``LOGLEVEL=DEBUG pytest`` shows every rejected candidate.
    """
    del config  # Unused but required by hookspec.
    log_level = os.environ.get("LOGLEVEL", "WARNING").upper()
    logging.basicConfig(
        level=getattr(logging, log_level, logging.WARNING), format=LOG_FORMAT
    )
    console_logger.debug(f"Test logging configured at {log_level}")
