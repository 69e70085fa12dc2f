"""
API & billing preflight.

Leaves a project in a deployable state before any deployment work starts:
bootstrap APIs enabled, billing attached, required APIs enabled. Within a
deployment this is the only component allowed to mutate billing attachment or
API enablement, and it never disables anything.
"""

import asyncio
import logging
from typing import Iterable, Optional, Union

from cloudrun_deployer.clients import ClientRegistry
from cloudrun_deployer.constants import (
    API_ENABLE_RETRY_DELAY_SECONDS,
    BILLING_CONSOLE_URL,
    PREREQUISITE_APIS,
)
from cloudrun_deployer.errors import PreflightError
from cloudrun_deployer.services.billing_service import BillingService
from cloudrun_deployer.utils.progress import ProgressCallback, log_and_progress
from cloudrun_deployer.utils.retry import call_sdk


def _state_name(state) -> str:
    return getattr(state, 'name', str(state))


class PreflightService:
    """
    Pre-flight GCP environment checks with auto-remediation.

    Args:
        clients: Client registry
        billing: Billing service (defaults to one built on the same registry)
        logger: Logger or correlation-aware LoggerAdapter
    """

    def __init__(
        self,
        clients: ClientRegistry,
        billing: Optional[BillingService] = None,
        logger: Optional[Union[logging.Logger, logging.LoggerAdapter]] = None
    ):
        self.clients = clients
        self.logger = logger or logging.getLogger(__name__)
        self.billing = billing or BillingService(clients, logger=self.logger)

    async def _check_and_enable_api(
        self,
        project_id: str,
        api: str,
        progress_callback: Optional[ProgressCallback] = None
    ) -> None:
        client = self.clients.service_usage(project_id)
        service_name = f"projects/{project_id}/services/{api}"

        service = await call_sdk(
            client.get_service,
            request={'name': service_name},
            description=f"getService {api}",
            logger=self.logger
        )
        if _state_name(service.state) == 'ENABLED':
            return

        await log_and_progress(
            f"API [{api}] is not enabled. Enabling...",
            progress_callback, 'info', self.logger
        )
        operation = await call_sdk(
            client.enable_service,
            request={'name': service_name},
            description=f"enableService {api}",
            logger=self.logger
        )
        await asyncio.to_thread(operation.result)

    async def enable_api_with_retry(
        self,
        project_id: str,
        api: str,
        progress_callback: Optional[ProgressCallback] = None
    ) -> None:
        """Check-then-enable one API; on failure retry once after a fixed delay"""
        try:
            await self._check_and_enable_api(project_id, api, progress_callback)
            return
        except Exception as e:
            await log_and_progress(
                f"Failed to check/enable {api}, retrying in {API_ENABLE_RETRY_DELAY_SECONDS}s... ({e})",
                progress_callback, 'warn', self.logger
            )

        await asyncio.sleep(API_ENABLE_RETRY_DELAY_SECONDS)
        try:
            await self._check_and_enable_api(project_id, api, progress_callback)
        except Exception as retry_error:
            message = f"Failed to ensure API [{api}] is enabled after retry. Please check manually."
            await log_and_progress(f"{message} ({retry_error})", progress_callback, 'error', self.logger)
            raise PreflightError(message) from retry_error

    async def ensure_billing_enabled(
        self,
        project_id: str,
        progress_callback: Optional[ProgressCallback] = None
    ) -> None:
        """
        Attach the sole open billing account when billing is disabled.

        Raises PreflightError when there are zero accounts, several accounts,
        a single closed account, or when the attachment does not enable billing.
        """
        state = await self.billing.get_billing_state(project_id)
        if state.enabled:
            return

        console_url = BILLING_CONSOLE_URL.format(project_id=project_id)
        accounts = state.candidate_accounts

        if len(accounts) == 1 and accounts[0].open:
            account = accounts[0]
            await log_and_progress(
                f"Billing is not enabled for project {project_id}. Found one open billing account: "
                f"{account.display_name} ({account.name}). Attempting to attach it...",
                progress_callback, 'info', self.logger
            )
            result = await self.billing.attach_project_to_billing_account(project_id, account.name)
            if not result or not result.billing_enabled:
                message = (
                    f"Failed to automatically attach project {project_id} to billing account "
                    f"{account.name}. Please enable billing manually: {console_url}"
                )
                await log_and_progress(message, progress_callback, 'error', self.logger)
                raise PreflightError(message)

            await log_and_progress(
                f"Successfully attached project {project_id} to billing account {account.name}.",
                progress_callback, 'info', self.logger
            )
            return

        if not accounts:
            reason = 'no billing accounts were found'
        elif len(accounts) > 1:
            reason = 'multiple billing accounts were found'
        else:
            reason = f"the only available billing account '{accounts[0].display_name}' is not open"

        message = (
            f"Billing is not enabled for project {project_id}, and it could not be enabled "
            f"automatically because {reason}. Please enable billing to use Google Cloud services: "
            f"{console_url}"
        )
        await log_and_progress(message, progress_callback, 'error', self.logger)
        raise PreflightError(message)

    async def ensure_preflight(
        self,
        project_id: str,
        required_apis: Iterable[str],
        progress_callback: Optional[ProgressCallback] = None
    ) -> None:
        """
        Ensure bootstrap APIs, billing, and every required API are in place.

        Args:
            project_id: Target project
            required_apis: API identifiers, e.g. 'run.googleapis.com'
            progress_callback: Optional progress sink
        """
        for api in PREREQUISITE_APIS:
            await self.enable_api_with_retry(project_id, api, progress_callback)

        await self.ensure_billing_enabled(project_id, progress_callback)

        await log_and_progress('Checking and enabling required APIs...', progress_callback, 'info', self.logger)
        for api in required_apis:
            if api in PREREQUISITE_APIS:
                continue
            await self.enable_api_with_retry(project_id, api, progress_callback)

        await log_and_progress('All required APIs are enabled.', progress_callback, 'info', self.logger)
