"""
Pytest configuration and fixtures for the deployer tests.

Remote clients are MagicMocks registered in a ClientRegistry, so no test
touches Google Cloud or Application Default Credentials.
"""
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from cloudrun_deployer.clients import ClientRegistry
from cloudrun_deployer.config import Settings

PROJECT_ID = 'test-project'
REGION = 'europe-west1'


def enabled_service():
    return SimpleNamespace(state=SimpleNamespace(name='ENABLED'))


def disabled_service():
    return SimpleNamespace(state=SimpleNamespace(name='DISABLED'))


def completed_operation(result=None):
    """A long-running operation mock whose result() returns `result`"""
    operation = MagicMock()
    operation.result.return_value = result
    return operation


def sleep_delays(sleep_mock):
    """Non-zero delays passed to a patched asyncio.sleep"""
    return [c.args[0] for c in sleep_mock.call_args_list if c.args and c.args[0]]


@pytest.fixture
def registry():
    return ClientRegistry(credentials=MagicMock(name='credentials'))


@pytest.fixture
def no_sleep():
    with patch('asyncio.sleep', new=AsyncMock()) as sleep:
        yield sleep


@pytest.fixture
def service_usage_client(registry):
    client = MagicMock(name='service_usage')
    client.get_service.return_value = enabled_service()
    client.enable_service.return_value = completed_operation()
    registry.register('service_usage', PROJECT_ID, client)
    return client


@pytest.fixture
def billing_client(registry):
    client = MagicMock(name='billing')
    client.get_project_billing_info.return_value = SimpleNamespace(billing_enabled=True)
    client.list_billing_accounts.return_value = []
    client.update_project_billing_info.return_value = SimpleNamespace(billing_enabled=True)
    registry.register('billing', None, client)
    return client


@pytest.fixture
def run_client(registry):
    client = MagicMock(name='run')
    registry.register('run', PROJECT_ID, client)
    return client


@pytest.fixture
def progress():
    """Collects every progress event"""
    events = []

    def callback(event):
        events.append(event)

    callback.events = events
    return callback


@pytest.fixture
def settings(tmp_path):
    return Settings(
        default_region=REGION,
        skip_iam_check=False,
        log_level='DEBUG',
        temp_base_dir=str(tmp_path / 'staging'),
        max_direct_source_bytes=250 * 1024 * 1024,
    )
