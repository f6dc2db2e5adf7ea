import logging

import pytest


@pytest.fixture(autouse=True)
def restore_mux_logger():
    """Undo configure_logging() so caplog keeps seeing mux records."""
    logger = logging.getLogger("mux")
    handlers, level, propagate = list(logger.handlers), logger.level, logger.propagate
    yield logger
    for handler in list(logger.handlers):
        if handler not in handlers:
            logger.removeHandler(handler)
            handler.close()
    logger.setLevel(level)
    logger.propagate = propagate
