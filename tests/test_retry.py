"""
Tests for the permission-propagation retry wrapper.
"""
from unittest.mock import AsyncMock, MagicMock

import pytest
from google.api_core import exceptions as google_exceptions

from cloudrun_deployer.utils.retry import PermissionRetryStrategy, call_sdk, call_with_retry
from conftest import sleep_delays


class TestPermissionRetryStrategy:

    def test_backoff_schedule(self):
        strategy = PermissionRetryStrategy()
        assert [strategy.backoff(n) for n in range(1, 8)] == [15, 1, 2, 4, 8, 16, 32]

    @pytest.mark.asyncio
    async def test_success_needs_no_retry(self, no_sleep):
        func = AsyncMock(return_value='ok')

        assert await call_with_retry(func, 'op') == 'ok'
        func.assert_awaited_once()
        assert sleep_delays(no_sleep) == []

    @pytest.mark.asyncio
    async def test_retries_permission_denied_until_success(self, no_sleep):
        func = AsyncMock(side_effect=[
            google_exceptions.PermissionDenied('not yet'),
            google_exceptions.PermissionDenied('still not'),
            'done',
        ])

        assert await call_with_retry(func, 'op') == 'done'
        assert func.await_count == 3
        assert sleep_delays(no_sleep) == [15, 1]

    @pytest.mark.asyncio
    async def test_gives_up_after_seven_retries(self, no_sleep):
        func = AsyncMock(side_effect=google_exceptions.PermissionDenied('denied'))

        with pytest.raises(google_exceptions.PermissionDenied):
            await call_with_retry(func, 'op')

        assert func.await_count == 8
        assert sleep_delays(no_sleep) == [15, 1, 2, 4, 8, 16, 32]

    @pytest.mark.asyncio
    async def test_other_errors_propagate_immediately(self, no_sleep):
        func = AsyncMock(side_effect=google_exceptions.NotFound('missing'))

        with pytest.raises(google_exceptions.NotFound):
            await call_with_retry(func, 'op')

        func.assert_awaited_once()
        assert sleep_delays(no_sleep) == []


@pytest.mark.asyncio
async def test_call_sdk_runs_blocking_method_with_arguments(no_sleep):
    method = MagicMock(side_effect=[google_exceptions.PermissionDenied('wait'), 'value'])

    result = await call_sdk(method, 'a', description='sdk call', name='x')

    assert result == 'value'
    assert method.call_count == 2
    method.assert_called_with('a', name='x')
