import logging

import pytest
import structlog


@pytest.fixture(autouse=True)
def reset_logging():
    """Undo configure_logging() calls made by a test."""
    yield
    structlog.reset_defaults()
    logging.getLogger().handlers.clear()
