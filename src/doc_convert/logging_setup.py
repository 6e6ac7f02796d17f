"""Process-wide logging configuration."""

import logging

from .models import LoggingConfig

_HANDLER_NAME = "doc_convert"


def configure_logging(config: LoggingConfig) -> logging.Logger:
    """Install a single stream handler on the package logger.

    Safe to call more than once; the handler is replaced rather than stacked.
    """
    logger = logging.getLogger("doc_convert")
    logger.setLevel(config.level)

    for handler in list(logger.handlers):
        if handler.get_name() == _HANDLER_NAME:
            logger.removeHandler(handler)

    handler = logging.StreamHandler()
    handler.set_name(_HANDLER_NAME)
    handler.setFormatter(logging.Formatter(config.format))
    logger.addHandler(handler)
    return logger
