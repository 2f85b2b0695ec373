import logging
import os
import sys
from typing import Optional


class ColorFormatter(logging.Formatter):
    """
    Prefixes each record with an ANSI color for its level and resets the color at the end.

    Records are rendered as ``time - logger name - LEVEL - message``.
    """

    grey = "\x1b[38;20m"
    yellow = "\x1b[33;20m"
    red = "\x1b[31;20m"
    bold_red = "\x1b[31;1m"
    cyan = "\x1b[36;20m"
    green = "\x1b[32;20m"
    reset = "\x1b[0m"

    FORMATS = {
        logging.DEBUG: cyan,
        logging.INFO: green,
        logging.WARNING: yellow,
        logging.ERROR: red,
        logging.CRITICAL: bold_red,
    }

    def format(self, record):
        color = self.FORMATS.get(record.levelno, self.grey)
        formatter = logging.Formatter(
            f"{color}%(asctime)s - %(name)s - %(levelname)s - %(message)s{self.reset}"
        )
        return formatter.format(record)


def setup_logger(name: Optional[str] = None, level: Optional[int] = None) -> logging.Logger:
    """
    Attach a colored stdout handler to a logger and set its level.

    The level is DEBUG if the environment variable DEBUG is set and INFO
    otherwise, unless ``level`` is given. Calling this again for the same
    logger only updates the level; it does not attach a second handler.

    Args:
        name (str, optional): The name of the logger. Defaults to the root logger.
        level (int, optional): Explicit logging level.

    Returns:
        logging.Logger: The logger.

    Examples:
        >>> logger = setup_logger("scigrad")
        >>> logger.info("Training started")
    """
    logger = logging.getLogger(name)
    if level is None:
        level = logging.DEBUG if os.getenv("DEBUG") else logging.INFO
    logger.setLevel(level)

    if not any(
        isinstance(h, logging.StreamHandler) and isinstance(h.formatter, ColorFormatter)
        for h in logger.handlers
    ):
        console_handler = logging.StreamHandler(sys.stdout)
        console_handler.setFormatter(ColorFormatter())
        logger.addHandler(console_handler)

    return logger
