"""
Project management: list, create (optionally with billing), delete.

`create_project_and_attach_billing` is the one billing attachment made outside
preflight. It only links a project this module has just created, and a
billing problem never fails the project creation.
"""

import asyncio
import logging
import random
from typing import Dict, List, Optional, Union

from cloudrun_deployer.clients import ClientRegistry
from cloudrun_deployer.constants import BILLING_CONSOLE_URL
from cloudrun_deployer.services.billing_service import BillingService
from cloudrun_deployer.utils.retry import call_sdk, call_with_retry

CONSONANTS = 'bcdfghjklmnpqrstvwxyz'
VOWELS = 'aeiou'


def _cvc() -> str:
    return random.choice(CONSONANTS) + random.choice(VOWELS) + random.choice(CONSONANTS)


def generate_project_id() -> str:
    """A compliant project id of the form `mcp-cvc-cvc`"""
    return f"mcp-{_cvc()}-{_cvc()}"


class ProjectService:

    def __init__(
        self,
        clients: ClientRegistry,
        billing: Optional[BillingService] = None,
        logger: Optional[Union[logging.Logger, logging.LoggerAdapter]] = None
    ):
        self.clients = clients
        self.logger = logger or logging.getLogger(__name__)
        self.billing = billing or BillingService(clients, logger=self.logger)

    async def list_projects(self) -> List[Dict[str, str]]:
        """Accessible projects as `[{'id': ...}]`; [] on error"""
        client = self.clients.projects()
        try:
            projects = await call_with_retry(
                lambda: asyncio.to_thread(lambda: list(client.search_projects())),
                'searchProjects',
                logger=self.logger
            )
        except Exception as e:
            self.logger.error(f"Error listing GCP projects: {e}")
            return []
        return [{'id': project.project_id} for project in projects]

    async def create_project(self, project_id: Optional[str] = None, parent: Optional[str] = None) -> Dict[str, str]:
        """
        Create a project and wait for the operation to finish.

        Args:
            project_id: Desired id; generated when omitted
            parent: e.g. "organizations/123" or "folders/456"
        """
        if not project_id:
            project_id = generate_project_id()
            self.logger.info(f"Project ID not provided, generated ID: {project_id}")

        project = {'project_id': project_id}
        if parent:
            project['parent'] = parent

        self.logger.info(f"Attempting to create project with ID: {project_id}")
        try:
            operation = await call_sdk(
                self.clients.projects().create_project,
                request={'project': project},
                description=f"createProject {project_id}",
                logger=self.logger
            )
            created = await asyncio.to_thread(operation.result)
        except Exception as e:
            self.logger.error(f"Error creating GCP project {project_id}: {e}")
            raise

        self.logger.info(f"Project {created.project_id} created successfully.")
        return {'project_id': created.project_id}

    async def create_project_and_attach_billing(
        self,
        project_id: Optional[str] = None,
        parent: Optional[str] = None
    ) -> Dict[str, str]:
        """
        Create a project and attach the first open billing account.

        Billing problems are reported in `billing_message`, never raised.
        """
        created = await self.create_project(project_id, parent)
        project_id = created['project_id']
        console_url = BILLING_CONSOLE_URL.format(project_id=project_id)
        billing_message = f"Project {project_id} created successfully."

        accounts = await self.billing.list_billing_accounts()
        if not accounts:
            billing_message += (
                f" However, no billing accounts were found. Please link billing manually: {console_url}"
            )
            return {'project_id': project_id, 'billing_message': billing_message}

        account = next((a for a in accounts if a.open), None)
        if account is None:
            available = ', '.join(f"{a.display_name} (Open: {a.open})" for a in accounts)
            billing_message += (
                f" However, no open billing accounts were found. Available (may not be usable): "
                f"{available}. Please link billing manually: {console_url}"
            )
            return {'project_id': project_id, 'billing_message': billing_message}

        self.logger.info(
            f"Found billing account: {account.display_name} ({account.name}). "
            f"Attempting to attach project {project_id}."
        )
        billing_info = await self.billing.attach_project_to_billing_account(project_id, account.name)
        if billing_info and billing_info.billing_enabled:
            billing_message += f" It has been attached to billing account {account.display_name}."
        else:
            billing_message += (
                f" However, it could not be attached to billing account {account.display_name} "
                f"or billing not enabled. Please check manually: {console_url}"
            )
        return {'project_id': project_id, 'billing_message': billing_message}

    async def delete_project(self, project_id: str) -> None:
        """Initiate project deletion"""
        self.logger.info(f"Attempting to delete project with ID: {project_id}")
        try:
            await call_sdk(
                self.clients.projects().delete_project,
                name=f"projects/{project_id}",
                description=f"deleteProject {project_id}",
                logger=self.logger
            )
        except Exception as e:
            self.logger.error(f"Error deleting GCP project {project_id}: {e}")
            raise
        self.logger.info(f"Project {project_id} deletion initiated successfully.")
