"""
Artifact Registry: ensures the Docker repository that receives built images exists.
"""

import asyncio
import logging
from typing import Optional, Union

from google.api_core import exceptions as google_exceptions

from cloudrun_deployer.clients import ClientRegistry
from cloudrun_deployer.utils.progress import ProgressCallback, log_and_progress
from cloudrun_deployer.utils.retry import call_sdk


class ArtifactRegistryService:

    def __init__(
        self,
        clients: ClientRegistry,
        project_id: str,
        region: str,
        logger: Optional[Union[logging.Logger, logging.LoggerAdapter]] = None
    ):
        self.clients = clients
        self.project_id = project_id
        self.region = region
        self.logger = logger or logging.getLogger(__name__)

    async def ensure_repository(
        self,
        repository_id: str,
        progress_callback: Optional[ProgressCallback] = None
    ):
        """Return the Docker repository, creating it when it does not exist"""
        from google.cloud import artifactregistry_v1

        ar_client = self.clients.artifact_registry(self.project_id)
        parent = f"projects/{self.project_id}/locations/{self.region}"
        repo_name = f"{parent}/repositories/{repository_id}"

        try:
            repository = await call_sdk(
                ar_client.get_repository,
                name=repo_name,
                description=f"getRepository {repository_id}",
                logger=self.logger
            )
            await log_and_progress(
                f"Repository {repository_id} already exists in Artifact Registry.",
                progress_callback, 'debug', self.logger
            )
            return repository
        except google_exceptions.NotFound:
            pass

        await log_and_progress(
            f"Repository {repository_id} does not exist. Creating...",
            progress_callback, 'info', self.logger
        )
        repository = artifactregistry_v1.Repository(
            format_=artifactregistry_v1.Repository.Format.DOCKER,
            description="Cloud Run deployment images"
        )
        operation = await call_sdk(
            ar_client.create_repository,
            parent=parent,
            repository_id=repository_id,
            repository=repository,
            description=f"createRepository {repository_id}",
            logger=self.logger
        )
        created = await asyncio.to_thread(operation.result)
        await log_and_progress(
            f"Artifact Registry repository {repository_id} created.",
            progress_callback, 'info', self.logger
        )
        return created
