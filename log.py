import logging
from logging.handlers import RotatingFileHandler

import config

RESET = "\x1b[0m"
COLORS = {
    "DEBUG": "\x1b[36m",    # Cyan
    "INFO": "\x1b[32m",     # Green
    "WARNING": "\x1b[33m",  # Yellow
    "ERROR": "\x1b[31m",    # Red
    "CRITICAL": "\x1b[41m", # Red background
}

LOG_FORMAT = "%(asctime)s [%(name)s:%(funcName)s:%(lineno)d] [%(levelname)s] %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


class ColorFormatter(logging.Formatter):
    def format(self, record):
        log_color = COLORS.get(record.levelname, RESET)
        message = super().format(record)
        return f"{log_color}{message}{RESET}"


def setup_logger(name: str = __name__, level=None):
    """
    Return a logger with a coloured console handler and an optional
    rotating file handler.

    Level and file come from LOG_LEVEL / LOG_FILE; an empty LOG_FILE
    disables the file handler.
    """
    if level is None:
        level = config.LOG_LEVEL
    log_file = config.LOG_FILE

    logger = logging.getLogger(name)
    logger.setLevel(level)
    # Records stay on this logger; handlers are attached once per name
    logger.propagate = False

    if logger.handlers:
        return logger

    ch = logging.StreamHandler()
    ch.setLevel(level)
    ch.setFormatter(ColorFormatter(fmt=LOG_FORMAT, datefmt=DATE_FORMAT))
    logger.addHandler(ch)

    if log_file:
        fh = RotatingFileHandler(
            log_file, maxBytes=1024 * 1024, backupCount=3, encoding="utf-8"
        )
        fh.setLevel(level)
        fh.setFormatter(logging.Formatter(fmt=LOG_FORMAT, datefmt=DATE_FORMAT))
        logger.addHandler(fh)

    return logger
