"""
Orchestration facade: the two public deployment operations.

`deploy` turns a list of files into a running Cloud Run revision, preferring a
direct-source deployment and falling back to a Cloud Build image build.
`deploy_image` deploys a prebuilt container image.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, Tuple

from cloudrun_deployer.clients import ClientRegistry
from cloudrun_deployer.config import Settings, get_settings
from cloudrun_deployer.constants import DEPLOYMENT_CONFIG, REQUIRED_APIS, DeploymentTypes
from cloudrun_deployer.errors import ArchiveTooLargeError, ValidationError
from cloudrun_deployer.models import (
    DeploymentRequest,
    FileDeploymentMetadata,
    FileItem,
    SourceFiles,
    SourceImage,
    StrategyResult,
)
from cloudrun_deployer.services.build_service import BuildService
from cloudrun_deployer.services.preflight_service import PreflightService
from cloudrun_deployer.services.registry_service import ArtifactRegistryService
from cloudrun_deployer.services.run_service import (
    CloudRunService,
    create_direct_source_container,
    create_image_container,
)
from cloudrun_deployer.services.source_packager import (
    ARCHIVE_ZIP,
    install_dependencies,
    make_file_deployment_metadata,
    package_staged_directory,
    prepare_source,
    staged_source,
)
from cloudrun_deployer.services.storage_service import StorageService
from cloudrun_deployer.utils.logging_utils import configure_logging, generate_correlation_id, get_logger
from cloudrun_deployer.utils.progress import ProgressCallback, log_and_progress

Strategy = Tuple[str, Callable[[], Awaitable[Any]]]

STRATEGY_DESCRIPTIONS = {
    'direct-source': 'directly from source',
    'build': 'using Cloud Build',
}


def _describe_strategy(name: str) -> str:
    return STRATEGY_DESCRIPTIONS.get(name, f"with the {name} strategy")


def build_image_url(project_id: str, region: str, service_name: str) -> str:
    """Artifact Registry reference the build path pushes to"""
    return (
        f"{region}-docker.pkg.dev/{project_id}/{DEPLOYMENT_CONFIG['REPO_NAME']}/"
        f"{service_name}:{DEPLOYMENT_CONFIG['IMAGE_TAG']}"
    )


def source_bucket_name(project_id: str) -> str:
    return f"{project_id}-source-bucket"


@dataclass
class _Deployment:
    """Per-invocation collaborators, all sharing one correlation-aware logger"""
    request: DeploymentRequest
    region: str
    log: logging.LoggerAdapter
    progress_callback: Optional[ProgressCallback]
    run: CloudRunService
    storage: StorageService
    registry: ArtifactRegistryService
    build: BuildService


class DeploymentOrchestrator:
    """
    Sequences preflight, packaging, build and service deployment.

    Args:
        clients: Client registry shared by every deployment this orchestrator runs
        settings: Runtime settings (defaults to the environment)
    """

    def __init__(self, clients: Optional[ClientRegistry] = None, settings: Optional[Settings] = None):
        self.clients = clients or ClientRegistry()
        self.settings = settings or get_settings()

    def _start(
        self,
        request: DeploymentRequest,
        progress_callback: Optional[ProgressCallback]
    ) -> _Deployment:
        log = get_logger(__name__, generate_correlation_id())
        region = request.region or self.settings.default_region
        project_id = request.project_id
        return _Deployment(
            request=request,
            region=region,
            log=log,
            progress_callback=progress_callback,
            run=CloudRunService(self.clients, project_id, region, logger=log),
            storage=StorageService(self.clients, project_id, logger=log),
            registry=ArtifactRegistryService(self.clients, project_id, region, logger=log),
            build=BuildService(self.clients, project_id, region, logger=log),
        )

    async def _reject(self, message: str, progress_callback: Optional[ProgressCallback]) -> None:
        await log_and_progress(message, progress_callback, 'error')
        raise ValidationError(message)

    async def _validate_common(self, request: DeploymentRequest, progress_callback: Optional[ProgressCallback]) -> None:
        if not request.project_id:
            await self._reject('Error: project_id is required in the configuration object.', progress_callback)
        if not request.service_name:
            await self._reject('Error: service_name is required in the configuration object.', progress_callback)

    async def _preflight(self, deployment: _Deployment, required_apis: Sequence[str]) -> None:
        preflight = PreflightService(self.clients, logger=deployment.log)
        await preflight.ensure_preflight(deployment.request.project_id, required_apis, deployment.progress_callback)

    async def _announce(self, deployment: _Deployment, *lines: str) -> None:
        request = deployment.request
        for message in (
            f"Project: {request.project_id}",
            f"Region: {deployment.region}",
            f"Service Name: {request.service_name}",
            *lines,
        ):
            await log_and_progress(message, deployment.progress_callback, 'info', deployment.log)

    async def _run_strategies(self, deployment: _Deployment, strategies: List[Strategy]):
        """
        Try each strategy in order. A failure of any but the last is logged
        and skipped; the last strategy's failure is raised.
        """
        for index, (name, strategy) in enumerate(strategies):
            try:
                result = StrategyResult(strategy=name, service=await strategy())
            except Exception as e:
                result = StrategyResult(strategy=name, error=e)

            if result.ok:
                return result.service
            if index == len(strategies) - 1:
                raise result.error

            next_name = strategies[index + 1][0]
            await log_and_progress(
                f"Failed to deploy {_describe_strategy(name)}: {result.error}. "
                f"Retrying to deploy {_describe_strategy(next_name)}...",
                deployment.progress_callback, 'warn', deployment.log
            )

    async def _deploy_direct_source(
        self,
        deployment: _Deployment,
        files: Sequence[FileItem],
        metadata: FileDeploymentMetadata
    ):
        request = deployment.request
        callback = deployment.progress_callback
        attributes = metadata.attributes
        bucket_name = source_bucket_name(request.project_id)
        archive_name = DEPLOYMENT_CONFIG['TARGZ_FILE_NAME']

        await log_and_progress('Attempting direct source deployment...', callback, 'info', deployment.log)

        async with staged_source(files, self.settings.temp_base_dir, callback, deployment.log) as staged_dir:
            await install_dependencies(staged_dir, attributes, callback, deployment.log)
            artifact = await package_staged_directory(staged_dir, callback, deployment.log)

        limit = self.settings.max_direct_source_bytes
        if artifact.size_bytes > limit:
            error = ArchiveTooLargeError(artifact.size_bytes, limit)
            await log_and_progress(f"Warning: {error}", callback, 'warn', deployment.log)
            raise error

        bucket = await deployment.storage.ensure_bucket(bucket_name, deployment.region, callback)
        await deployment.storage.upload_bytes(bucket, artifact.archive_bytes, archive_name, callback)
        await log_and_progress('Source code uploaded successfully', callback, 'info', deployment.log)

        container = create_direct_source_container(bucket_name, archive_name, attributes)
        return await deployment.run.deploy_revision(
            request.service_name,
            container,
            skip_invoker_check=request.skip_invoker_check,
            deployment_type=DeploymentTypes.NO_BUILD,
            runtime=attributes.runtime,
            progress_callback=callback
        )

    async def _deploy_with_build(
        self,
        deployment: _Deployment,
        files: Sequence[FileItem],
        metadata: FileDeploymentMetadata
    ):
        request = deployment.request
        callback = deployment.progress_callback
        service_name = request.service_name
        bucket_name = source_bucket_name(request.project_id)
        archive_name = DEPLOYMENT_CONFIG['ZIP_FILE_NAME']
        image_url = build_image_url(request.project_id, deployment.region, service_name)

        # Existence is resolved once and reused by the pre-build dry run and the deploy
        exists = await deployment.run.service_exists(service_name, callback)
        await deployment.run.validate_configuration(service_name, image_url, exists, callback)

        bucket = await deployment.storage.ensure_bucket(bucket_name, deployment.region, callback)
        artifact = await prepare_source(files, ARCHIVE_ZIP, callback, deployment.log)
        archive_location = await deployment.storage.upload_bytes(bucket, artifact.archive_bytes, archive_name, callback)
        await log_and_progress('Source code uploaded successfully', callback, 'info', deployment.log)

        await deployment.registry.ensure_repository(DEPLOYMENT_CONFIG['REPO_NAME'], callback)

        build_job = await deployment.build.submit_and_await_build(
            archive_location, image_url, metadata.has_dockerfile, callback
        )

        service = await deployment.run.deploy_revision(
            service_name,
            create_image_container(build_job.result_image_reference),
            skip_invoker_check=request.skip_invoker_check,
            deployment_type=DeploymentTypes.WITH_BUILD,
            runtime=metadata.attributes.runtime,
            exists=exists,
            progress_callback=callback
        )
        await log_and_progress('Deployment completed successfully', callback, 'info', deployment.log)
        return service

    async def deploy(self, request: DeploymentRequest, progress_callback: Optional[ProgressCallback] = None):
        """
        Deploy a list of paths and/or in-memory files.

        Returns:
            The deployed run_v2.Service (exposes `uri`)
        """
        await self._validate_common(request, progress_callback)
        if not isinstance(request.source, SourceFiles) or not request.source.files:
            await self._reject('Error: files array is required in the configuration object.', progress_callback)

        deployment = self._start(request, progress_callback)
        files = request.source.files
        try:
            await self._preflight(deployment, REQUIRED_APIS['SOURCE_DEPLOY'])
            await self._announce(deployment, f"Files to deploy: {len(files)}")

            metadata = await asyncio.to_thread(make_file_deployment_metadata, files)
            await log_and_progress(f"Dockerfile: {metadata.has_dockerfile}", progress_callback, 'info', deployment.log)

            strategies: List[Strategy] = []
            if metadata.can_deploy_without_build:
                strategies.append(('direct-source', lambda: self._deploy_direct_source(deployment, files, metadata)))
            strategies.append(('build', lambda: self._deploy_with_build(deployment, files, metadata)))

            return await self._run_strategies(deployment, strategies)
        except Exception as e:
            deployment.log.exception('Deployment Failed')
            await log_and_progress(f"Deployment Failed: {e}", progress_callback, 'error', deployment.log)
            raise

    async def deploy_image(self, request: DeploymentRequest, progress_callback: Optional[ProgressCallback] = None):
        """
        Deploy a prebuilt container image. No packaging, no build.

        Returns:
            The deployed run_v2.Service (exposes `uri`)
        """
        await self._validate_common(request, progress_callback)
        if not isinstance(request.source, SourceImage) or not request.source.image_url:
            await self._reject('Error: image_url is required in the configuration object.', progress_callback)

        deployment = self._start(request, progress_callback)
        image_url = request.source.image_url
        try:
            await self._preflight(deployment, REQUIRED_APIS['IMAGE_DEPLOY'])
            await self._announce(deployment, f"Image URL: {image_url}")

            service = await deployment.run.deploy_revision(
                request.service_name,
                create_image_container(image_url),
                skip_invoker_check=request.skip_invoker_check,
                deployment_type=DeploymentTypes.IMAGE,
                progress_callback=progress_callback
            )
            await log_and_progress('Deployment completed successfully', progress_callback, 'info', deployment.log)
            return service
        except Exception as e:
            deployment.log.exception('Deployment Failed')
            await log_and_progress(f"Deployment Failed: {e}", progress_callback, 'error', deployment.log)
            raise


_SKIP_KEYS = ('skip_invoker_check', 'skip_iam_check', 'skipIamCheck')


def _prepare(config: Dict[str, Any], clients: Optional[ClientRegistry]):
    settings = get_settings()
    configure_logging(settings.log_level)

    config = dict(config)
    snake_callback = config.pop('progress_callback', None)
    camel_callback = config.pop('progressCallback', None)
    progress_callback = snake_callback or camel_callback
    if not any(config.get(key) is not None for key in _SKIP_KEYS):
        config['skip_iam_check'] = settings.skip_iam_check

    if clients is None:
        clients = ClientRegistry(access_token=config.get('access_token') or config.get('accessToken'))

    request = DeploymentRequest.from_config(config, default_region=settings.default_region)
    return DeploymentOrchestrator(clients, settings), request, progress_callback


async def deploy(config: Dict[str, Any], clients: Optional[ClientRegistry] = None):
    """
    Deploy files to Cloud Run from a caller-facing config dict.

    Keys: project_id, service_name, region, files, skip_iam_check,
    access_token, progress_callback (camelCase spellings are accepted too).
    """
    orchestrator, request, progress_callback = _prepare(config, clients)
    return await orchestrator.deploy(request, progress_callback)


async def deploy_image(config: Dict[str, Any], clients: Optional[ClientRegistry] = None):
    """Deploy a container image to Cloud Run from a caller-facing config dict (`image_url`)."""
    orchestrator, request, progress_callback = _prepare(config, clients)
    return await orchestrator.deploy_image(request, progress_callback)
