import logging
import os

from config import LOG_DIR

formatter = logging.Formatter('%(asctime)s - %(levelname)s - %(message)s')


def get_logger(name: str, filename: str) -> logging.Logger:
    """
    Returns a named logger writing to LOG_DIR/<filename>.
    Calling it again for the same name replaces the previous handlers.
    """
    # Ensure the logs folder exists
    os.makedirs(LOG_DIR, exist_ok=True)

    logger = logging.getLogger(name)
    logger.setLevel(logging.INFO)

    # Remove previous handlers if any
    if logger.hasHandlers():
        logger.handlers.clear()

    file_handler = logging.FileHandler(os.path.join(LOG_DIR, filename))
    file_handler.setFormatter(formatter)
    logger.addHandler(file_handler)
    return logger
