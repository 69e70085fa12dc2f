import logging
import uuid
from typing import Optional

LOG_FORMAT = '%(asctime)s %(levelname)s [%(correlation_id)s] %(name)s: %(message)s'


class CorrelationIdFilter(logging.Filter):
    """
    Log filter to inject a default correlation_id if missing.
    Fixes crashes when third-party libraries log without it.
    """
    def filter(self, record):
        if not hasattr(record, 'correlation_id'):
            record.correlation_id = 'system'
        return True


def configure_logging(level: str = 'INFO') -> None:
    """Install a single correlation-aware stream handler on the package logger"""
    root = logging.getLogger('cloudrun_deployer')
    root.setLevel(level)

    if any(getattr(h, '_cloudrun_deployer', False) for h in root.handlers):
        return

    handler = logging.StreamHandler()
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    handler.addFilter(CorrelationIdFilter())
    handler._cloudrun_deployer = True
    root.addHandler(handler)


def generate_correlation_id(prefix: str = 'deploy') -> str:
    """Generate unique correlation ID for request tracking"""
    return f"{prefix}-{uuid.uuid4().hex[:12]}"


def get_logger(name: str, correlation_id: Optional[str] = None) -> logging.LoggerAdapter:
    return logging.LoggerAdapter(
        logging.getLogger(name),
        {'correlation_id': correlation_id or 'system'}
    )
