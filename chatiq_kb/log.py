import logging

from rich.console import Console
from rich.logging import RichHandler


def setup_rich_logging(progress=None, level: int = logging.INFO):
    """Configure all relevant loggers to use RichHandler"""
    # Get console from progress if provided, otherwise create new one
    if progress:
        console = progress.console
    else:
        console = Console(stderr=True)

    rich_handler = RichHandler(console=console, show_time=False, show_path=False, markup=False)
    rich_handler.setFormatter(logging.Formatter("%(message)s"))

    root_logger = logging.getLogger()
    root_logger.handlers = [rich_handler]
    root_logger.setLevel(level)

    loggers_to_configure = ["chatiq_kb", "aiohttp", "asyncpg", "LiteLLM"]

    # litellm is chatty at INFO
    logging.getLogger("litellm").setLevel(logging.WARNING)

    for logger_name in loggers_to_configure:
        logger = logging.getLogger(logger_name)
        logger.handlers = []
        logger.addHandler(rich_handler)
        logger.propagate = False

    return rich_handler
