"""Logging setup shared by the CLI entry points and background workers."""
import logging
from typing import Optional

LOG_FORMAT = "%(asctime)s %(levelname)-8s %(name)s [%(processName)s] %(message)s"


def configure_logging(level: Optional[str] = None) -> None:
    """
    Install a single stream handler on the ``docshare`` logger.

    Safe to call more than once; later calls only adjust the level.
    """
    from docshare.config import get_settings

    level_name = (level or get_settings().log_level).upper()
    root = logging.getLogger("docshare")
    root.setLevel(level_name)

    if not any(getattr(h, "_docshare", False) for h in root.handlers):
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        handler._docshare = True
        root.addHandler(handler)
        root.propagate = False
