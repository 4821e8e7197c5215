import logging

LOGGER_NAME = "wantarr"


def configure_logging(level: str = "INFO") -> logging.Logger:
    """Attach a single console handler to the package logger."""
    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel(level.upper())

    if not logger.handlers:
        console_handler = logging.StreamHandler()
        formatter = logging.Formatter(
            "[%(levelname)s] %(asctime)s %(name)s - %(message)s", "%Y-%m-%d %H:%M:%S"
        )
        console_handler.setFormatter(formatter)
        logger.addHandler(console_handler)

    return logger
