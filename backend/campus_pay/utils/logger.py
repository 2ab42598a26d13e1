"""
Logging setup — console plus a rotating file in LOG_DIR.
"""
import logging
import os
from logging.handlers import RotatingFileHandler

from campus_pay.config import get_settings

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

# Audit/security severity → logging level
SEVERITY_LEVELS = {
    "low": logging.INFO,
    "medium": logging.INFO,
    "high": logging.WARNING,
    "critical": logging.ERROR,
}


def setup_logging(settings=None) -> None:
    """Configure the ``campus_pay`` logger tree once."""
    settings = settings or get_settings()
    root = logging.getLogger("campus_pay")
    if root.handlers:
        return

    root.setLevel(logging.DEBUG if settings.DEBUG else logging.INFO)
    formatter = logging.Formatter(LOG_FORMAT)

    console = logging.StreamHandler()
    console.setFormatter(formatter)
    root.addHandler(console)

    try:
        os.makedirs(settings.LOG_DIR, exist_ok=True)
        file_handler = RotatingFileHandler(
            os.path.join(settings.LOG_DIR, "payments.log"),
            maxBytes=10 * 1024 * 1024,
            backupCount=5,
        )
        file_handler.setFormatter(formatter)
        root.addHandler(file_handler)
    except OSError as e:
        root.warning(f"File logging disabled: {e}")


def level_for(severity: str) -> int:
    return SEVERITY_LEVELS.get(severity, logging.INFO)
