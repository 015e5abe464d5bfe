import logging
import os


def setup_logging(name: str) -> logging.Logger:
    """Configures a standard logger (level from QUERYLAB_LOG_LEVEL, default INFO)."""
    logging.basicConfig(
        level=os.getenv("QUERYLAB_LOG_LEVEL", "INFO").upper(),
        format="%(asctime)s - [%(levelname)s] - %(message)s",
        datefmt="%H:%M:%S"
    )
    return logging.getLogger(name)
