"""Bridge stdlib logging (httpx, sfgate) into loguru"""

import logging

from loguru import logger

# httpx logs full URLs at INFO, revoke calls carry the token in the query
_BRIDGED_LOGGERS = {"sfgate": logging.DEBUG, "httpx": logging.WARNING}
_bridge_installed = False


class _LoguruHandler(logging.Handler):
    """Bridge stdlib logging into loguru"""

    def emit(self, record: logging.LogRecord) -> None:
        try:
            level = logger.level(record.levelname).name
        except ValueError:
            level = record.levelno
        logger.opt(depth=6, exception=record.exc_info).log(
            level, record.getMessage()
        )


def install_logging_bridge() -> None:
    """Bridge stdlib logging used by httpx/sfgate modules into loguru once."""
    global _bridge_installed
    if _bridge_installed:
        return

    handler = _LoguruHandler()
    for name, level in _BRIDGED_LOGGERS.items():
        std_logger = logging.getLogger(name)
        std_logger.setLevel(level)
        std_logger.addHandler(handler)
        std_logger.propagate = False

    _bridge_installed = True
