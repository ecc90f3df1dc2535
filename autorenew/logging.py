import logging
import sys

from autorenew.config import settings

_LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"
_configured = False


def configure_logging(level: str | None = None) -> None:
    """Configure root logging once for the API and worker processes."""
    global _configured
    if _configured:
        return
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(logging.Formatter(_LOG_FORMAT))
    root = logging.getLogger()
    root.addHandler(handler)
    root.setLevel((level or settings.log_level).upper())
    # httpx logs every request at INFO, which drowns out billing events.
    logging.getLogger("httpx").setLevel(logging.WARNING)
    _configured = True
