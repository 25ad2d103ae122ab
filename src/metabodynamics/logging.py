import logging
import os

from beartype import beartype
from rich.console import Console
from rich.logging import RichHandler

__all__ = ["configure_logging"]


@beartype
def configure_logging(logger_name: str = "metabodynamics") -> logging.Logger:
    """
    Configure logging for the package with rich formatting.

    The log level is read from the LOG_LEVEL environment variable and
    defaults to INFO.

    Args:
        logger_name (str): name of the logger, usually `__name__`.

    Returns:
        logging.Logger: configured logger.

    Examples:
        >>> logger = configure_logging("metabodynamics.example")
        >>> logger.name
        'metabodynamics.example'
    """
    log_level = os.getenv("LOG_LEVEL", "INFO").upper()

    console = Console(stderr=True)
    rich_handler = RichHandler(
        rich_tracebacks=True,
        show_path=False,
        console=console,
        markup=False,
    )

    logging.basicConfig(
        level=log_level,
        format="%(name)s %(message)s",
        datefmt="[%X]",
        handlers=[rich_handler],
    )

    logger = logging.getLogger(logger_name)
    logger.setLevel(log_level)

    # jax and absl are chatty at INFO
    for noisy_logger in ("jax", "absl"):
        logging.getLogger(noisy_logger).setLevel(logging.WARNING)

    return logger
