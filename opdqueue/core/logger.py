import logging
import sys

def setup_logging():
    """
    Configure the engine logger. Modules log through child loggers
    (``opdqueue.eta``, ``opdqueue.redistribution``...) so one handler covers all.
    """
    logger = logging.getLogger("opdqueue")
    logger.setLevel(logging.INFO)

    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(logging.INFO)

    formatter = logging.Formatter(
        "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    )
    handler.setFormatter(formatter)

    if not logger.handlers:
        logger.addHandler(handler)

    return logger

logger = setup_logging()

def get_logger(name: str) -> logging.Logger:
    return logger.getChild(name)
