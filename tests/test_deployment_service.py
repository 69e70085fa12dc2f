"""
Tests for the deploy / deploy_image orchestration facade.
"""
import dataclasses
import json
import os
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from google.api_core import exceptions as google_exceptions

from cloudrun_deployer.clients import ClientRegistry
from cloudrun_deployer.constants import REQUIRED_APIS, DeploymentTypes
from cloudrun_deployer.errors import BuildFailedError, ValidationError
from cloudrun_deployer.models import DeploymentRequest, FileContent, SourceFiles, SourceImage
from cloudrun_deployer.services import deployment_service
from cloudrun_deployer.services.deployment_service import DeploymentOrchestrator, build_image_url
from cloudrun_deployer.services.preflight_service import PreflightService
from cloudrun_deployer.services.run_service import CloudRunService
from conftest import PROJECT_ID, REGION, completed_operation

DEPLOYED = SimpleNamespace(uri='https://app-abc.a.run.app')

NODE_APP = {
    'package.json': json.dumps({'scripts': {'start': 'node server.js'}}),
    'server.js': 'console.log("hi")',
}


def files_request(files, **kwargs):
    return DeploymentRequest(
        project_id=kwargs.get('project_id', PROJECT_ID),
        service_name=kwargs.get('service_name', 'app'),
        region=REGION,
        source=SourceFiles(files=files),
        skip_invoker_check=kwargs.get('skip_invoker_check', False),
    )


def image_request(image_url, **kwargs):
    return DeploymentRequest(
        project_id=kwargs.get('project_id', PROJECT_ID),
        service_name=kwargs.get('service_name', 'app'),
        region=REGION,
        source=SourceImage(image_url=image_url),
    )


@pytest.fixture
def no_preflight():
    with patch.object(PreflightService, 'ensure_preflight', new=AsyncMock()) as ensure:
        yield ensure


class TestValidation:

    @pytest.mark.parametrize('request_', [
        files_request([FileContent('main.py', '')], project_id=None),
        files_request([FileContent('main.py', '')], service_name=''),
        files_request([]),
        image_request('gcr.io/x/y'),
    ])
    @pytest.mark.asyncio
    async def test_deploy_rejects_before_remote_calls(self, request_, settings, progress):
        clients = MagicMock(spec=ClientRegistry)

        with pytest.raises(ValidationError):
            await DeploymentOrchestrator(clients, settings).deploy(request_, progress)

        assert clients.mock_calls == []
        assert progress.events[-1]['level'] == 'error'

    @pytest.mark.parametrize('request_', [
        image_request('gcr.io/x/y', project_id=''),
        image_request('gcr.io/x/y', service_name=None),
        image_request(''),
        files_request([FileContent('main.py', '')]),
    ])
    @pytest.mark.asyncio
    async def test_deploy_image_rejects_before_remote_calls(self, request_, settings):
        clients = MagicMock(spec=ClientRegistry)

        with pytest.raises(ValidationError):
            await DeploymentOrchestrator(clients, settings).deploy_image(request_)

        assert clients.mock_calls == []


class TestDeployImage:

    @pytest.mark.asyncio
    async def test_deploys_image_with_image_api_set(self, registry, settings, no_preflight, progress):
        with patch.object(CloudRunService, 'deploy_revision', new=AsyncMock(return_value=DEPLOYED)) as deploy_revision:
            result = await DeploymentOrchestrator(registry, settings).deploy_image(
                image_request('gcr.io/p/app:v1'), progress
            )

        assert result is DEPLOYED
        assert tuple(no_preflight.await_args.args[1]) == REQUIRED_APIS['IMAGE_DEPLOY']
        args, kwargs = deploy_revision.await_args
        assert args == ('app', {'image': 'gcr.io/p/app:v1'})
        assert kwargs['deployment_type'] == DeploymentTypes.IMAGE
        assert progress.events[-1]['message'] == 'Deployment completed successfully'

    @pytest.mark.asyncio
    async def test_failure_is_emitted_and_reraised(self, registry, settings, no_preflight, progress):
        error = google_exceptions.InternalServerError('boom')
        with patch.object(CloudRunService, 'deploy_revision', new=AsyncMock(side_effect=error)):
            with pytest.raises(google_exceptions.InternalServerError) as excinfo:
                await DeploymentOrchestrator(registry, settings).deploy_image(image_request('gcr.io/p/app'), progress)

        assert excinfo.value is error
        assert progress.events[-1] == {'level': 'error', 'message': f"Deployment Failed: {error}"}


class TestDeployStrategySelection:

    @pytest.mark.asyncio
    async def test_direct_source_failure_falls_back_to_build(self, registry, settings, no_preflight, progress):
        blobs = [FileContent(name, content) for name, content in NODE_APP.items()]

        with patch.object(DeploymentOrchestrator, '_deploy_direct_source',
                          new=AsyncMock(side_effect=RuntimeError('upload broke'))) as direct, \
                patch.object(DeploymentOrchestrator, '_deploy_with_build',
                             new=AsyncMock(return_value=DEPLOYED)) as with_build:
            result = await DeploymentOrchestrator(registry, settings).deploy(files_request(blobs), progress)

        assert result is DEPLOYED
        direct.assert_awaited_once()
        with_build.assert_awaited_once()
        assert tuple(no_preflight.await_args.args[1]) == REQUIRED_APIS['SOURCE_DEPLOY']
        warnings = [e['message'] for e in progress.events if e['level'] == 'warn']
        assert any('Failed to deploy directly from source: upload broke' in w for w in warnings)

    @pytest.mark.asyncio
    async def test_dockerfile_goes_straight_to_build(self, registry, settings, no_preflight):
        blobs = [FileContent('Dockerfile', 'FROM node'), *(FileContent(n, c) for n, c in NODE_APP.items())]

        with patch.object(DeploymentOrchestrator, '_deploy_direct_source', new=AsyncMock()) as direct, \
                patch.object(DeploymentOrchestrator, '_deploy_with_build',
                             new=AsyncMock(return_value=DEPLOYED)) as with_build:
            await DeploymentOrchestrator(registry, settings).deploy(files_request(blobs))

        direct.assert_not_awaited()
        with_build.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_build_failure_is_not_retried(self, registry, settings, no_preflight, progress):
        error = BuildFailedError('b-1', 'FAILURE', log_url='https://logs')

        with patch.object(DeploymentOrchestrator, '_deploy_with_build', new=AsyncMock(side_effect=error)) as with_build:
            with pytest.raises(BuildFailedError):
                await DeploymentOrchestrator(registry, settings).deploy(
                    files_request([FileContent('index.html', '<html/>')]), progress
                )

        with_build.assert_awaited_once()
        assert progress.events[-1]['message'].startswith('Deployment Failed: Build b-1 failed.')


class TestDirectSourceDeployment:

    @pytest.fixture
    def storage_client(self, registry):
        client = MagicMock(name='storage')
        bucket = client.bucket.return_value
        bucket.name = f"{PROJECT_ID}-source-bucket"
        bucket.exists.return_value = True
        registry.register('storage', PROJECT_ID, client)
        return client

    @pytest.mark.asyncio
    async def test_direct_source_end_to_end(
        self, registry, settings, run_client, storage_client, no_preflight, no_sleep, tmp_path
    ):
        app = tmp_path / 'app'
        app.mkdir()
        for name, content in NODE_APP.items():
            (app / name).write_text(content)
        run_client.get_service.side_effect = google_exceptions.NotFound('new service')
        run_client.create_service.return_value = completed_operation(DEPLOYED)

        with patch.object(deployment_service, 'install_dependencies', new=AsyncMock()) as install:
            result = await DeploymentOrchestrator(registry, settings).deploy(
                files_request([str(app)], skip_invoker_check=True)
            )

        assert result is DEPLOYED
        install.assert_awaited_once()

        blob = storage_client.bucket.return_value.blob
        blob.assert_called_once_with('source.tar.gz')
        blob.return_value.upload_from_string.assert_called_once()

        real = run_client.create_service.call_args.kwargs['request']
        container = real['service']['template']['containers'][0]
        assert container['image'] == 'scratch'
        assert container['base_image_uri'] == 'nodejs22'
        assert container['source_code']['cloud_storage_source']['object_'] == 'source.tar.gz'
        assert container['command'] == ['node']
        assert container['args'] == ['server.js']
        assert real['service']['labels']['deployment-type'] == DeploymentTypes.NO_BUILD
        assert real['service']['labels']['runtime'] == 'nodejs'
        assert real['service']['invoker_iam_disabled'] is True

        assert os.listdir(settings.temp_base_dir) == []

    @pytest.mark.asyncio
    async def test_oversized_archive_falls_back_to_build(self, registry, settings, no_preflight, progress):
        settings = dataclasses.replace(settings, max_direct_source_bytes=1)
        blobs = [FileContent(name, content) for name, content in NODE_APP.items()]

        with patch.object(deployment_service, 'install_dependencies', new=AsyncMock()), \
                patch.object(DeploymentOrchestrator, '_deploy_with_build',
                             new=AsyncMock(return_value=DEPLOYED)) as with_build:
            result = await DeploymentOrchestrator(registry, settings).deploy(files_request(blobs), progress)

        assert result is DEPLOYED
        with_build.assert_awaited_once()
        assert any('exceeds the' in e['message'] for e in progress.events if e['level'] == 'warn')


class TestBuildDeployment:

    @pytest.mark.asyncio
    async def test_build_path_sequence(self, registry, settings, no_preflight, progress):
        image_url = build_image_url(PROJECT_ID, REGION, 'app')
        job = SimpleNamespace(result_image_reference=f"{image_url}@sha256:abc")
        bucket = SimpleNamespace(name=f"{PROJECT_ID}-source-bucket")

        with patch.object(CloudRunService, 'service_exists', new=AsyncMock(return_value=False)) as exists, \
                patch.object(CloudRunService, 'validate_configuration', new=AsyncMock()) as validate, \
                patch.object(CloudRunService, 'deploy_revision', new=AsyncMock(return_value=DEPLOYED)) as deploy_revision, \
                patch('cloudrun_deployer.services.storage_service.StorageService.ensure_bucket',
                      new=AsyncMock(return_value=bucket)), \
                patch('cloudrun_deployer.services.storage_service.StorageService.upload_bytes',
                      new=AsyncMock(return_value=f"gs://{bucket.name}/source.zip")) as upload, \
                patch('cloudrun_deployer.services.registry_service.ArtifactRegistryService.ensure_repository',
                      new=AsyncMock()) as ensure_repository, \
                patch('cloudrun_deployer.services.build_service.BuildService.submit_and_await_build',
                      new=AsyncMock(return_value=job)) as submit:
            result = await DeploymentOrchestrator(registry, settings).deploy(
                files_request([FileContent('Dockerfile', 'FROM nginx'), FileContent('index.html', '')]),
                progress
            )

        assert result is DEPLOYED
        exists.assert_awaited_once()
        validate.assert_awaited_once_with('app', image_url, False, progress)
        assert upload.await_args.args[2] == 'source.zip'
        ensure_repository.assert_awaited_once_with('mcp-cloud-run-deployments', progress)
        assert submit.await_args.args == (f"gs://{bucket.name}/source.zip", image_url, True, progress)

        args, kwargs = deploy_revision.await_args
        assert args == ('app', {'image': job.result_image_reference})
        assert kwargs['deployment_type'] == DeploymentTypes.WITH_BUILD
        assert kwargs['exists'] is False


class TestModuleEntryPoints:

    @pytest.mark.asyncio
    async def test_deploy_accepts_camel_case_config(self, registry):
        callback = MagicMock()
        with patch.object(DeploymentOrchestrator, 'deploy', new=AsyncMock(return_value=DEPLOYED)) as deploy:
            result = await deployment_service.deploy({
                'projectId': PROJECT_ID,
                'serviceName': 'app',
                'files': [{'filename': 'main.py', 'content': 'print(1)'}],
                'skipIamCheck': True,
                'progressCallback': callback,
            }, clients=registry)

        assert result is DEPLOYED
        request, progress_callback = deploy.await_args.args
        assert request.project_id == PROJECT_ID
        assert request.service_name == 'app'
        assert request.region
        assert request.skip_invoker_check is True
        assert request.source.files == [FileContent('main.py', 'print(1)')]
        assert progress_callback is callback

    @pytest.mark.asyncio
    async def test_deploy_image_entry_point(self, registry):
        with patch.object(DeploymentOrchestrator, 'deploy_image', new=AsyncMock(return_value=DEPLOYED)) as deploy_image:
            await deployment_service.deploy_image(
                {'project_id': PROJECT_ID, 'service_name': 'app', 'image_url': 'gcr.io/p/app', 'region': 'us-east1'},
                clients=registry
            )

        request, _ = deploy_image.await_args.args
        assert request.source == SourceImage('gcr.io/p/app')
        assert request.region == 'us-east1'

    @pytest.mark.asyncio
    async def test_both_callback_spellings_are_consumed(self, registry):
        snake, camel = MagicMock(), MagicMock()
        with patch.object(DeploymentOrchestrator, 'deploy', new=AsyncMock(return_value=DEPLOYED)) as deploy, \
                patch.object(DeploymentRequest, 'from_config', wraps=DeploymentRequest.from_config) as from_config:
            await deployment_service.deploy({
                'project_id': PROJECT_ID,
                'service_name': 'app',
                'files': [{'filename': 'main.py', 'content': ''}],
                'progress_callback': snake,
                'progressCallback': camel,
            }, clients=registry)

        config = from_config.call_args.args[0]
        assert 'progress_callback' not in config
        assert 'progressCallback' not in config
        assert deploy.await_args.args[1] is snake


class TestStrategyFallback:

    @pytest.mark.asyncio
    async def test_warning_names_failed_and_next_strategy(self, registry, settings, progress):
        orchestrator = DeploymentOrchestrator(registry, settings)
        deployment = orchestrator._start(files_request([FileContent('main.py', '')]), progress)

        async def fail():
            raise RuntimeError('nope')

        async def succeed():
            return DEPLOYED

        result = await orchestrator._run_strategies(deployment, [
            ('direct-source', fail),
            ('canary', fail),
            ('build', succeed),
        ])

        assert result is DEPLOYED
        warnings = [e['message'] for e in progress.events if e['level'] == 'warn']
        assert warnings == [
            'Failed to deploy directly from source: nope. Retrying to deploy with the canary strategy...',
            'Failed to deploy with the canary strategy: nope. Retrying to deploy using Cloud Build...',
        ]

    @pytest.mark.asyncio
    async def test_last_strategy_failure_is_raised(self, registry, settings, progress):
        orchestrator = DeploymentOrchestrator(registry, settings)
        deployment = orchestrator._start(files_request([FileContent('main.py', '')]), progress)
        error = RuntimeError('build broke')

        async def fail():
            raise error

        with pytest.raises(RuntimeError) as excinfo:
            await orchestrator._run_strategies(deployment, [('build', fail)])

        assert excinfo.value is error
        assert not [e for e in progress.events if e['level'] == 'warn']
