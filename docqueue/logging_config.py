"""Logging setup for the service process."""

import logging
import sys

_FORMAT = "%(asctime)s %(levelname)s %(name)s - %(message)s"
_DATE_FORMAT = "%Y-%m-%dT%H:%M:%S%z"


def configure_logging(level: str = "INFO") -> logging.Logger:
    """Install a single stdout handler on the root logger.

    Safe to call more than once; later calls only adjust the level.
    """
    root = logging.getLogger()
    log_level = getattr(logging, (level or "INFO").upper(), logging.INFO)
    root.setLevel(log_level)

    if not getattr(root, "_docqueue_configured", False):
        for handler in list(root.handlers):
            root.removeHandler(handler)

        handler = logging.StreamHandler(sys.stdout)
        handler.setFormatter(logging.Formatter(_FORMAT, datefmt=_DATE_FORMAT))
        root.addHandler(handler)

        # Quiet noisy libs
        logging.getLogger("httpx").setLevel(logging.WARNING)
        logging.getLogger("uvicorn.access").setLevel(logging.WARNING)

        root._docqueue_configured = True  # type: ignore[attr-defined]

    for handler in root.handlers:
        handler.setLevel(log_level)

    return logging.getLogger("docqueue")
