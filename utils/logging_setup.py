"""
Logging setup for the web server and scripts.
"""

import logging

LOG_FORMAT = "%(asctime)s %(levelname)-8s %(name)s: %(message)s"


def configure_logging(level: str = "INFO") -> None:
    """
    Configure root logging once.

    Args:
        level: Level name, e.g. "DEBUG" or "INFO". Unknown names fall back to INFO.
    """
    numeric = getattr(logging, level.upper(), logging.INFO)
    if not isinstance(numeric, int):
        numeric = logging.INFO
    logging.basicConfig(level=numeric, format=LOG_FORMAT)
    logging.getLogger("uvicorn.access").setLevel(max(numeric, logging.WARNING))
