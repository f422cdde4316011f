import logging
from unittest.mock import Mock

import pytest
from rich.console import Console
from rich.logging import RichHandler

from chatiq_kb.log import setup_rich_logging

CONFIGURED = ["", "chatiq_kb", "aiohttp", "asyncpg", "LiteLLM", "litellm"]


@pytest.fixture(autouse=True)
def restore_loggers():
    saved = {}
    for name in CONFIGURED:
        logger = logging.getLogger(name)
        saved[name] = (list(logger.handlers), logger.level, logger.propagate)
    yield
    for name, (handlers, level, propagate) in saved.items():
        logger = logging.getLogger(name)
        logger.handlers = handlers
        logger.setLevel(level)
        logger.propagate = propagate


def test_setup_rich_logging_routes_package_loggers():
    handler = setup_rich_logging(level=logging.DEBUG)

    assert isinstance(handler, RichHandler)
    assert logging.getLogger().handlers == [handler]
    assert logging.getLogger().level == logging.DEBUG
    package_logger = logging.getLogger("chatiq_kb")
    assert package_logger.handlers == [handler]
    assert package_logger.propagate is False
    assert logging.getLogger("litellm").level == logging.WARNING


def test_setup_rich_logging_uses_progress_console():
    console = Console()
    progress = Mock(console=console)
    handler = setup_rich_logging(progress)
    assert handler.console is console
