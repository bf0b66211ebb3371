import logging
import sys

from typing import Any

ROOT_LOGGER = "Dealbot"


def get_logger(name: str, *, options: Any) -> logging.Logger:
    logger = logging.getLogger(name)
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()
    formatter = logging.Formatter("[%(levelname)s] %(name)s: %(message)s")

    stdout_handler = logging.StreamHandler(sys.stdout)
    stdout_handler.setFormatter(formatter)
    logger.addHandler(stdout_handler)

    if options.log_file_location:
        try:
            file_handler = logging.FileHandler(options.log_file_location, mode="a")
        except OSError as e:
            logger.error(f"Error accessing the specified log file: {e}")
        else:
            file_handler.setFormatter(formatter)
            logger.addHandler(file_handler)
            logger.debug(f"Set log output to {options.log_file_location}")

    if options.debug:
        logger.setLevel(logging.DEBUG)
    else:
        logger.setLevel(logging.INFO)
    logger.propagate = False
    return logger


def setup_logging(*, options: Any) -> logging.Logger:
    # Child loggers (Dealbot.Cache, Dealbot.Lotus, ...) inherit these handlers
    return get_logger(ROOT_LOGGER, options=options)
