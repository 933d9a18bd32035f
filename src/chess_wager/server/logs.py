import logging
from typing import Optional

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'

def setup_logging(level: str = "INFO", log_file: Optional[str] = None) -> logging.Logger:
    """Attaches console (and optional file) handlers to the package logger."""
    logger = logging.getLogger("chess_wager")
    logger.setLevel(level.upper())

    log_format = logging.Formatter(LOG_FORMAT)
    if not logger.handlers:
        console_handler = logging.StreamHandler()
        console_handler.setFormatter(log_format)
        logger.addHandler(console_handler)

        if log_file:
            file_handler = logging.FileHandler(log_file)
            file_handler.setFormatter(log_format)
            logger.addHandler(file_handler)

    return logger
