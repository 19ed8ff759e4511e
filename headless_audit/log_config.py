import logging

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def setup_logging(level: str = "INFO") -> None:
    """Configure the root logger once for the whole service."""
    logging.basicConfig(level=getattr(logging, level, logging.INFO), format=LOG_FORMAT)
