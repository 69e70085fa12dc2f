"""
Progress Helpers - one call to both log a message and forward it to the caller's progress sink.

The sink receives `{'level': 'debug'|'info'|'warn'|'error', 'message': str}`
and may be a plain function or a coroutine function.
"""

import asyncio
import inspect
import logging
from typing import Any, Callable, Optional, Union

ProgressCallback = Callable[[dict], Any]

_LEVELS = {
    'debug': logging.DEBUG,
    'info': logging.INFO,
    'warn': logging.WARNING,
    'error': logging.ERROR,
}

_default_logger = logging.getLogger(__name__)


async def log_and_progress(
    message: str,
    progress_callback: Optional[ProgressCallback] = None,
    level: str = 'info',
    logger: Optional[Union[logging.Logger, logging.LoggerAdapter]] = None
) -> None:
    """
    Log a message and send it through the progress sink.

    Args:
        message: The progress message
        progress_callback: Optional sync or async sink
        level: Severity ('debug', 'info', 'warn', 'error')
        logger: Logger or LoggerAdapter to write to
    """
    log = logger or _default_logger
    log.log(_LEVELS.get(level, logging.INFO), message)

    if progress_callback:
        try:
            result = progress_callback({'level': level, 'message': message})
            if inspect.isawaitable(result):
                await result
        except Exception as e:
            log.warning(f"[Progress] Callback error: {e}")

    # Let the sink's consumer run before the next remote call
    await asyncio.sleep(0)
