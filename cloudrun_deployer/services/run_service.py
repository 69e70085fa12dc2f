"""
Cloud Run service deployer.

Creates or updates a service revision. Every mutation is preceded by a
validate-only dry run; the real create/update is only attempted once the
dry run passes or its failure is attributed to the invoker-IAM flag.
"""

import asyncio
import copy
import json
import logging
import time
from typing import Any, Dict, List, Optional, Union

from google.api_core import exceptions as google_exceptions
from google.cloud import logging as cloud_logging

from cloudrun_deployer.clients import ClientRegistry
from cloudrun_deployer.constants import DEPLOYMENT_CONFIG, DeploymentTypes
from cloudrun_deployer.errors import DryRunFailedError
from cloudrun_deployer.models import DeploymentAttributes
from cloudrun_deployer.utils.progress import ProgressCallback, log_and_progress
from cloudrun_deployer.utils.retry import call_sdk, call_with_retry

# Dry-run messages that point at the invoker-IAM flag
INVOKER_IAM_ERROR_PATTERNS = ('invokeriamdisabled', 'iam policy violation')
INVALID_ARGUMENT_CODE = 3


def create_image_container(image_url: str) -> Dict[str, Any]:
    return {'image': image_url}


def create_direct_source_container(
    bucket_name: str,
    object_name: str,
    attributes: DeploymentAttributes
) -> Dict[str, Any]:
    """Container spec that runs source from Cloud Storage on a managed base image"""
    container: Dict[str, Any] = {
        'image': DEPLOYMENT_CONFIG['NO_BUILD_IMAGE_TAG'],
        'base_image_uri': attributes.base_image,
        'source_code': {
            'cloud_storage_source': {
                'bucket': bucket_name,
                'object_': object_name,
            },
        },
        'command': list(attributes.command or []),
        'args': list(attributes.args or []),
    }
    if attributes.env_vars:
        container['env'] = [
            {'name': name, 'value': str(value)}
            for name, value in attributes.env_vars.items()
        ]
    return container


def _state_name(state) -> str:
    return getattr(state, 'name', str(state))


def _payload_text(payload) -> str:
    if isinstance(payload, dict):
        return json.dumps(payload)
    return '' if payload is None else str(payload)


class CloudRunService:
    """
    Create-or-update protocol for a Cloud Run service, plus read-only queries.

    Args:
        clients: Client registry
        project_id: Project that owns the service
        region: Service location
        logger: Logger or correlation-aware LoggerAdapter
    """

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

    @property
    def run_client(self):
        return self.clients.run(self.project_id)

    @property
    def parent(self) -> str:
        return f"projects/{self.project_id}/locations/{self.region}"

    def service_path(self, service_id: str) -> str:
        return f"{self.parent}/services/{service_id}"

    async def service_exists(
        self,
        service_id: str,
        progress_callback: Optional[ProgressCallback] = None
    ) -> bool:
        try:
            await call_sdk(
                self.run_client.get_service,
                name=self.service_path(service_id),
                description=f"getService {service_id}",
                logger=self.logger
            )
            await log_and_progress(f"Service {service_id} exists.", progress_callback, 'debug', self.logger)
            return True
        except google_exceptions.NotFound:
            await log_and_progress(f"Service {service_id} does not exist.", progress_callback, 'debug', self.logger)
            return False

    @staticmethod
    def is_invoker_iam_rejection(error: BaseException) -> bool:
        """
        Whether a dry-run failure is plausibly caused by the invoker-IAM flag.

        INVALID_ARGUMENT is matched by exception class first; message patterns
        are a fallback for errors that carry no status class.
        """
        if isinstance(error, google_exceptions.InvalidArgument):
            return True
        if getattr(error, 'code', None) == INVALID_ARGUMENT_CODE:
            return True
        message = str(error).lower()
        return any(pattern in message for pattern in INVOKER_IAM_ERROR_PATTERNS)

    async def _dry_run(self, service_id: str, service: Dict[str, Any], exists: bool) -> None:
        dry_run_service = copy.deepcopy(service)
        if exists:
            dry_run_service['name'] = self.service_path(service_id)
            await call_sdk(
                self.run_client.update_service,
                request={'service': dry_run_service, 'validate_only': True},
                description=f"updateService (dry run) {service_id}",
                logger=self.logger
            )
        else:
            await call_sdk(
                self.run_client.create_service,
                request={
                    'parent': self.parent,
                    'service': dry_run_service,
                    'service_id': service_id,
                    'validate_only': True,
                },
                description=f"createService (dry run) {service_id}",
                logger=self.logger
            )

    async def validate_configuration(
        self,
        service_id: str,
        image_url: str,
        exists: Optional[bool] = None,
        progress_callback: Optional[ProgressCallback] = None
    ) -> None:
        """
        Dry-run the service with a target image before a build is submitted.

        Raises:
            DryRunFailedError: the platform rejected the configuration
        """
        if exists is None:
            exists = await self.service_exists(service_id, progress_callback)
        action = 'update' if exists else 'creation'
        await log_and_progress(
            f"Performing dry-run {action} for service {service_id}...",
            progress_callback, 'info', self.logger
        )
        service_patch = {'template': {'containers': [create_image_container(image_url)]}}
        try:
            await self._dry_run(service_id, service_patch, exists)
        except Exception as e:
            await log_and_progress(
                f"Dry-run validation failed for service {service_id}.",
                progress_callback, 'error', self.logger
            )
            raise DryRunFailedError(service_id, str(e)) from e
        await log_and_progress('Dry-run validation successful.', progress_callback, 'debug', self.logger)

    def build_service_config(
        self,
        service_id: str,
        container: Dict[str, Any],
        skip_invoker_check: bool,
        deployment_type: str,
        runtime: Optional[str]
    ) -> Dict[str, Any]:
        labels = {
            'created-by': DEPLOYMENT_CONFIG['LABEL_CREATED_BY'],
            'deployment-type': deployment_type,
        }
        if runtime:
            labels['runtime'] = runtime

        service: Dict[str, Any] = {
            'template': {
                'revision': f"{service_id}-{int(time.time() * 1000)}",
                'containers': [container],
            },
            'labels': labels,
        }
        if skip_invoker_check:
            service['invoker_iam_disabled'] = True
        return service

    async def deploy_revision(
        self,
        service_id: str,
        container: Dict[str, Any],
        skip_invoker_check: bool = False,
        deployment_type: str = DeploymentTypes.IMAGE,
        runtime: Optional[str] = None,
        exists: Optional[bool] = None,
        progress_callback: Optional[ProgressCallback] = None
    ):
        """
        Create or update `service_id` with a single container.

        Args:
            service_id: Cloud Run service name
            container: Container spec (image, or direct-source spec)
            skip_invoker_check: Allow unauthenticated invocation
            deployment_type: Value of the `deployment-type` label
            runtime: Value of the `runtime` label, when known
            exists: Existence already resolved for this deployment, if any
            progress_callback: Optional progress sink

        Returns:
            The deployed run_v2.Service

        Raises:
            DryRunFailedError: validation failed for a reason other than the invoker-IAM flag
        """
        service = self.build_service_config(service_id, container, skip_invoker_check, deployment_type, runtime)

        if exists is None:
            exists = await self.service_exists(service_id, progress_callback)

        await log_and_progress(f"Performing dry run for service {service_id}...", progress_callback, 'debug', self.logger)
        try:
            await self._dry_run(service_id, service, exists)
            await log_and_progress(
                f"Dry run successful for {service_id} with current configuration.",
                progress_callback, 'debug', self.logger
            )
        except Exception as e:
            await log_and_progress(f"Dry run for {service_id} failed: {e}", progress_callback, 'warn', self.logger)
            if skip_invoker_check and self.is_invoker_iam_rejection(e):
                await log_and_progress(
                    "Dry run suggests 'invoker_iam_disabled' is not allowed or invalid. "
                    "Attempting deployment without it.",
                    progress_callback, 'warn', self.logger
                )
                service.pop('invoker_iam_disabled', None)
            else:
                error = DryRunFailedError(service_id, str(e))
                await log_and_progress(str(error), progress_callback, 'error', self.logger)
                raise error from e

        try:
            if exists:
                await log_and_progress(f"Updating existing service {service_id}...", progress_callback, 'info', self.logger)
                service['name'] = self.service_path(service_id)
                operation = await call_sdk(
                    self.run_client.update_service,
                    request={'service': service},
                    description=f"updateService {service_id}",
                    logger=self.logger
                )
            else:
                await log_and_progress(f"Creating new service {service_id}...", progress_callback, 'info', self.logger)
                operation = await call_sdk(
                    self.run_client.create_service,
                    request={
                        'parent': self.parent,
                        'service': service,
                        'service_id': service_id,
                    },
                    description=f"createService {service_id}",
                    logger=self.logger
                )

            await log_and_progress(f"Deploying {service_id} to Cloud Run...", progress_callback, 'info', self.logger)
            response = await asyncio.to_thread(operation.result)
        except Exception as e:
            await log_and_progress(
                f"Error deploying/updating service {service_id}: {e}",
                progress_callback, 'error', self.logger
            )
            raise

        await log_and_progress(
            f"Service deployed/updated successfully: {response.uri}",
            progress_callback, 'info', self.logger
        )
        return response

    async def get_service(self, service_id: str):
        """The run_v2.Service, or None when it does not exist"""
        try:
            return await call_sdk(
                self.run_client.get_service,
                name=self.service_path(service_id),
                description=f"getService {service_id}",
                logger=self.logger
            )
        except google_exceptions.NotFound:
            return None

    async def list_services(self, region: Optional[str] = None) -> List[Dict[str, Any]]:
        """Summaries of the services in a region ('-' lists every region)"""
        parent = f"projects/{self.project_id}/locations/{region or self.region}"
        client = self.run_client
        services = await call_with_retry(
            lambda: asyncio.to_thread(lambda: list(client.list_services(parent=parent))),
            f"listServices {parent}",
            logger=self.logger
        )

        results = []
        for service in services:
            name_parts = service.name.split('/')
            condition = service.terminal_condition
            results.append({
                'name': name_parts[-1],
                'uri': service.uri,
                'region': name_parts[3] if len(name_parts) > 3 else region or self.region,
                'status': _state_name(condition.state) if condition else 'UNKNOWN',
                'create_time': str(service.create_time) if service.create_time else None,
            })
        return results

    async def get_service_logs(self, service_id: str, limit: int = 50) -> List[str]:
        """Recent `[SEVERITY] payload` lines for the service, oldest first"""
        logging_client = self.clients.logging(self.project_id)
        log_filter = (
            'resource.type="cloud_run_revision" AND '
            f'resource.labels.service_name="{service_id}" AND '
            f'resource.labels.location="{self.region}"'
        )
        self.logger.debug(f"Fetching logs: {log_filter}")

        entries = await call_with_retry(
            lambda: asyncio.to_thread(
                lambda: list(logging_client.list_entries(
                    filter_=log_filter,
                    order_by=cloud_logging.DESCENDING,
                    max_results=limit
                ))
            ),
            f"logging.list_entries for service {service_id}",
            logger=self.logger
        )
        return [f"[{entry.severity}] {_payload_text(entry.payload)}" for entry in reversed(entries)]
