from __future__ import annotations

import logging
import sys

from colorama import Fore, Style

LEVEL_STYLES: dict[int, tuple[str, str]] = {
    logging.DEBUG: (Style.DIM, "[.]"),
    logging.INFO: ("", "[*]"),
    logging.WARNING: (Fore.YELLOW, "[!]"),
    logging.ERROR: (Fore.RED, "[!]"),
    logging.CRITICAL: (Fore.RED + Style.BRIGHT, "[!]"),
}


class ColorFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        message = super().format(record)
        color, prefix = LEVEL_STYLES.get(record.levelno, ("", "[*]"))
        return f"{color}{prefix} {message}{Style.RESET_ALL}"


def setup_logging(verbose: bool = False) -> logging.Logger:
    logger = logging.getLogger("gporecon")
    for handler in list(logger.handlers):
        if isinstance(handler.formatter, ColorFormatter):
            logger.removeHandler(handler)

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(ColorFormatter("%(message)s"))
    logger.addHandler(handler)
    logger.setLevel(logging.DEBUG if verbose else logging.INFO)
    return logger
