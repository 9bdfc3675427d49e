"""Logging setup shared by the API and the worker."""

import logging
import sys

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def configure_logging(level: str = "INFO") -> None:
    """Send all pipeline logs to stdout at the given level."""
    root = logging.getLogger()
    if any(getattr(h, "_lead_enrichment", False) for h in root.handlers):
        root.setLevel(level.upper())
        return

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    handler._lead_enrichment = True
    root.addHandler(handler)
    root.setLevel(level.upper())

    # httpx logs every request at INFO, including Supabase filter URLs
    logging.getLogger("httpx").setLevel(logging.WARNING)
