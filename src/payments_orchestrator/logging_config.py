"""Process-wide logging setup for the orchestration layer."""

import logging
import sys
from typing import Iterable, Optional

from .redaction import SecretMaskingFilter

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

_masking_filter = SecretMaskingFilter()


def get_masking_filter() -> SecretMaskingFilter:
    """Return the shared filter that credential sources register keys with."""
    return _masking_filter


def configure_logging(level: int = logging.INFO, secrets: Optional[Iterable[str]] = None) -> logging.Handler:
    """Attach a masked stream handler to the package logger.

    Args:
        level: Log level for the ``payments_orchestrator`` logger.
        secrets: Extra secrets to scrub from every record.

    Returns:
        The installed handler.
    """
    for secret in secrets or ():
        _masking_filter.register(secret)

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    handler.addFilter(_masking_filter)

    package_logger = logging.getLogger("payments_orchestrator")
    package_logger.handlers = [handler]
    package_logger.setLevel(level)
    return handler
