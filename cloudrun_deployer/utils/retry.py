"""
Backoff retry for remote calls that fail while IAM permissions propagate.
"""

import asyncio
import logging
from typing import Any, Awaitable, Callable, Optional, Union

from cloudrun_deployer.constants import (
    PERMISSION_RETRY_BASE_DELAY_SECONDS,
    PERMISSION_RETRY_FIRST_DELAY_SECONDS,
    PERMISSION_RETRY_MAX_ATTEMPTS,
)
from cloudrun_deployer.errors import TransientPermissionError

_default_logger = logging.getLogger(__name__)


class PermissionRetryStrategy:
    """
    Retries an operation only while it fails with PERMISSION_DENIED.

    The first retry waits `first_delay` seconds, the n-th retry after that
    waits `base_delay * 2 ** (n - 2)`. Any other error propagates immediately.
    """

    def __init__(
        self,
        max_retries: int = PERMISSION_RETRY_MAX_ATTEMPTS,
        first_delay: float = PERMISSION_RETRY_FIRST_DELAY_SECONDS,
        base_delay: float = PERMISSION_RETRY_BASE_DELAY_SECONDS,
        logger: Optional[Union[logging.Logger, logging.LoggerAdapter]] = None
    ):
        self.max_retries = max_retries
        self.first_delay = first_delay
        self.base_delay = base_delay
        self.logger = logger or _default_logger

    def backoff(self, retry: int) -> float:
        """Delay before the given (1-based) retry"""
        if retry == 1:
            return self.first_delay
        return self.base_delay * (2 ** (retry - 2))

    async def execute(self, func: Callable[[], Awaitable[Any]], description: str) -> Any:
        retries = 0
        while True:
            try:
                return await func()
            except TransientPermissionError as e:
                if retries >= self.max_retries:
                    raise
                retries += 1
                delay = self.backoff(retries)
                self.logger.warning(
                    f'API call "{description}" failed with PERMISSION_DENIED. '
                    f'Retrying in {delay}s... (attempt {retries}/{self.max_retries}): {e}'
                )
                await asyncio.sleep(delay)


async def call_with_retry(
    func: Callable[[], Awaitable[Any]],
    description: str,
    logger: Optional[Union[logging.Logger, logging.LoggerAdapter]] = None
) -> Any:
    """Invoke `func` under the default permission-propagation retry policy"""
    return await PermissionRetryStrategy(logger=logger).execute(func, description)


async def call_sdk(
    method: Callable[..., Any],
    *args: Any,
    description: str,
    logger: Optional[Union[logging.Logger, logging.LoggerAdapter]] = None,
    **kwargs: Any
) -> Any:
    """Run a blocking SDK method in a worker thread under the retry policy"""
    return await call_with_retry(
        lambda: asyncio.to_thread(method, *args, **kwargs),
        description,
        logger=logger
    )
