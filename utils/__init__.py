"""Utils package for the escalation scheduler."""
from .logging_utils import (
    JsonFormatter,
    setup_logging,
    get_logger,
    retry_with_backoff,
)

__all__ = [
    'JsonFormatter',
    'setup_logging',
    'get_logger',
    'retry_with_backoff',
]
