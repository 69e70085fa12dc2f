"""
Cloud Billing reads and the single billing mutation the engine performs
(attaching a project to a billing account).
"""

import asyncio
import logging
from typing import List, Optional, Union

from cloudrun_deployer.clients import ClientRegistry
from cloudrun_deployer.models import BillingAccount, BillingState
from cloudrun_deployer.utils.retry import call_sdk, call_with_retry


class BillingService:
    """Best-effort wrapper around the Cloud Billing API"""

    def __init__(
        self,
        clients: ClientRegistry,
        logger: Optional[Union[logging.Logger, logging.LoggerAdapter]] = None
    ):
        self.clients = clients
        self.logger = logger or logging.getLogger(__name__)

    async def is_billing_enabled(self, project_id: str) -> bool:
        """Returns False (and logs) when billing status cannot be read"""
        client = self.clients.billing()
        try:
            billing_info = await call_sdk(
                client.get_project_billing_info,
                name=f"projects/{project_id}",
                description=f"getProjectBillingInfo {project_id}",
                logger=self.logger
            )
            return bool(billing_info.billing_enabled)
        except Exception as e:
            self.logger.error(f"Error checking billing status for project {project_id}: {e}")
            return False

    async def list_billing_accounts(self) -> List[BillingAccount]:
        """Returns [] (and logs) when accounts cannot be listed"""
        client = self.clients.billing()
        try:
            # The pager fetches lazily, so drain it inside the worker thread
            accounts = await call_with_retry(
                lambda: asyncio.to_thread(lambda: list(client.list_billing_accounts())),
                'listBillingAccounts',
                logger=self.logger
            )
        except Exception as e:
            self.logger.error(f"Error listing GCP billing accounts: {e}")
            return []

        if not accounts:
            self.logger.info("No billing accounts found.")
            return []

        return [
            BillingAccount(
                name=account.name,
                display_name=account.display_name,
                open=bool(account.open_),
            )
            for account in accounts
        ]

    async def attach_project_to_billing_account(self, project_id: str, billing_account_name: str):
        """
        Link a project to a billing account.

        Returns the updated ProjectBillingInfo, or None on error.
        """
        if not project_id:
            self.logger.error("Error: project_id is required.")
            return None
        if not billing_account_name or not billing_account_name.startswith('billingAccounts/'):
            self.logger.error(
                'Error: billing_account_name is required and must be in the format '
                '"billingAccounts/XXXXXX-XXXXXX-XXXXXX".'
            )
            return None

        client = self.clients.billing()
        try:
            self.logger.info(
                f"Attempting to attach project {project_id} to billing account {billing_account_name}..."
            )
            updated = await call_sdk(
                client.update_project_billing_info,
                name=f"projects/{project_id}",
                project_billing_info={'billing_account_name': billing_account_name},
                description=f"updateProjectBillingInfo {project_id}",
                logger=self.logger
            )
            self.logger.info(f"Billing enabled: {updated.billing_enabled}")
            return updated
        except Exception as e:
            self.logger.error(
                f"Error attaching project {project_id} to billing account {billing_account_name}: {e}"
            )
            return None

    async def get_billing_state(self, project_id: str) -> BillingState:
        """Billing status plus candidate accounts (only listed when billing is disabled)"""
        if await self.is_billing_enabled(project_id):
            return BillingState(enabled=True)
        return BillingState(enabled=False, candidate_accounts=await self.list_billing_accounts())
