from __future__ import annotations

from collections.abc import Iterator
import logging

import pytest


@pytest.fixture(autouse=True)
def mergebot_logger() -> Iterator[logging.Logger]:
    """Undo any ``configure_logging`` call a test makes on the ``mergebot`` logger."""
    logger = logging.getLogger("mergebot")
    saved_handlers = logger.handlers[:]
    saved_level, saved_propagate = logger.level, logger.propagate
    yield logger
    for handler in set(logger.handlers) - set(saved_handlers):
        handler.close()
    logger.handlers[:] = saved_handlers
    logger.setLevel(saved_level)
    logger.propagate = saved_propagate
