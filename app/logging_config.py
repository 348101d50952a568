import logging
import os
from typing import Optional

from pythonjsonlogger import jsonlogger

from gemini_chat.constants import APP_NAME


def build_formatter(service: str = APP_NAME) -> jsonlogger.JsonFormatter:
    """JSON formatter that tags every record with the service name.

    ``levelname`` is emitted as ``severity`` so the platform log viewer
    picks up the level of each webhook event.
    """
    return jsonlogger.JsonFormatter(
        "%(asctime)s %(levelname)s %(name)s %(message)s",
        rename_fields={"levelname": "severity"},
        static_fields={"service": service},
    )


def setup_logging(level: Optional[str] = None, service: str = APP_NAME) -> None:
    """Configure structured JSON logging for the webhook service."""
    log_level = (level or os.environ.get("LOG_LEVEL", "INFO")).upper()

    handler = logging.StreamHandler()
    handler.setFormatter(build_formatter(service))

    root = logging.getLogger()
    root.setLevel(log_level)
    root.handlers = [handler]

    # Per-request access lines from the LINE SDK's HTTP client are noise.
    logging.getLogger("urllib3").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)
