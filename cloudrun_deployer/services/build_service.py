"""
Remote build orchestration: submit a source build, poll it to a terminal
status, and recover a log excerpt when it fails.
"""

import asyncio
import base64
import binascii
import logging
from typing import List, Optional, Tuple, Union

from google.cloud import logging as cloud_logging

from cloudrun_deployer.clients import ClientRegistry
from cloudrun_deployer.constants import (
    BUILD_LOG_LINES_TO_FETCH,
    BUILD_LOG_PROPAGATION_DELAY_SECONDS,
    BUILD_POLL_INTERVAL_SECONDS,
    BUILD_TERMINAL_STATUSES,
    DEPLOYMENT_CONFIG,
)
from cloudrun_deployer.errors import BuildFailedError, PackagingError
from cloudrun_deployer.models import BuildJob
from cloudrun_deployer.utils.progress import ProgressCallback, log_and_progress
from cloudrun_deployer.utils.retry import call_sdk, call_with_retry


def decode_build_id(operation_name: str) -> str:
    """
    Extract the build id from a submit-build operation name.

    The id is base64-encoded in the trailing path segment.
    """
    encoded = operation_name.rstrip('/').split('/')[-1]
    padded = encoded + '=' * (-len(encoded) % 4)
    try:
        return base64.b64decode(padded).decode('ascii')
    except (binascii.Error, UnicodeDecodeError):
        return base64.urlsafe_b64decode(padded).decode('ascii')


def parse_archive_location(archive_location: str) -> Tuple[str, str]:
    """Split `gs://bucket/object` into (bucket, object)"""
    if not archive_location.startswith('gs://'):
        raise PackagingError(f"Archive location must be a gs:// URI: {archive_location}")
    bucket, _, object_name = archive_location[len('gs://'):].partition('/')
    if not bucket or not object_name:
        raise PackagingError(f"Archive location must name a bucket and an object: {archive_location}")
    return bucket, object_name


def _status_name(status) -> str:
    return getattr(status, 'name', str(status))


def _entry_text(entry) -> str:
    payload = entry.payload
    if payload is None:
        return ''
    return payload if isinstance(payload, str) else str(payload)


class BuildService:
    """
    Drives Cloud Build through the Cloud Run source-build API.

    Args:
        clients: Client registry
        project_id: Project the build runs in
        region: Build location
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
    def parent(self) -> str:
        return f"projects/{self.project_id}/locations/{self.region}"

    async def submit_build(self, archive_location: str, target_image: str, has_dockerfile: bool) -> str:
        """Submit the build and return its decoded id"""
        bucket, object_name = parse_archive_location(archive_location)
        request = {
            'parent': self.parent,
            'storage_source': {
                'bucket': bucket,
                'object_': object_name,
            },
            'image_uri': target_image,
            'client': DEPLOYMENT_CONFIG['BUILD_CLIENT_TAG'],
        }
        if has_dockerfile:
            request['docker_build'] = {}
        else:
            request['buildpack_build'] = {}

        response = await call_sdk(
            self.clients.builds(self.project_id).submit_build,
            request=request,
            description='builds.submitBuild',
            logger=self.logger
        )
        return decode_build_id(response.build_operation.name)

    async def get_build(self, build_id: str):
        return await call_sdk(
            self.clients.cloudbuild(self.project_id).get_build,
            request={'name': f"{self.parent}/builds/{build_id}"},
            description=f"cloudBuild.getBuild {build_id}",
            logger=self.logger
        )

    async def wait_for_build(self, build_id: str, progress_callback: Optional[ProgressCallback] = None):
        """Poll at a fixed interval until the build reaches a terminal status"""
        while True:
            build = await self.get_build(build_id)
            status = _status_name(build.status)
            if status in BUILD_TERMINAL_STATUSES:
                return build
            await log_and_progress(f"Build status: {status}. Waiting...", progress_callback, 'debug', self.logger)
            await asyncio.sleep(BUILD_POLL_INTERVAL_SECONDS)

    async def fetch_build_log_lines(self, build_id: str) -> List[str]:
        """Most recent build log lines, oldest first"""
        logging_client = self.clients.logging(self.project_id)
        log_filter = f'resource.type="build" AND resource.labels.build_id="{build_id}"'

        entries = await call_with_retry(
            lambda: asyncio.to_thread(
                lambda: list(logging_client.list_entries(
                    filter_=log_filter,
                    order_by=cloud_logging.DESCENDING,
                    max_results=BUILD_LOG_LINES_TO_FETCH
                ))
            ),
            f"logging.list_entries for build {build_id}",
            logger=self.logger
        )
        # Newest first from the API
        return [_entry_text(entry) for entry in reversed(entries)]

    async def _build_log_excerpt(
        self,
        build_id: str,
        log_url: Optional[str],
        progress_callback: Optional[ProgressCallback]
    ) -> Optional[str]:
        await log_and_progress(
            f"Attempting to fetch last {BUILD_LOG_LINES_TO_FETCH} log lines for build {build_id}...",
            progress_callback, 'debug', self.logger
        )
        await asyncio.sleep(BUILD_LOG_PROPAGATION_DELAY_SECONDS)

        try:
            lines = await self.fetch_build_log_lines(build_id)
        except Exception as e:
            await log_and_progress(
                f"Failed to fetch build logs snippet: {e}. Refer to Log URL for full details: {log_url}",
                progress_callback, 'warn', self.logger
            )
            return None

        if not lines:
            await log_and_progress(
                f"No specific log entries retrieved for build {build_id}. "
                f"Refer to Log URL for full details: {log_url}",
                progress_callback, 'warn', self.logger
            )
            return None

        await log_and_progress(
            f"Successfully fetched snippet of build logs for {build_id}.",
            progress_callback, 'info', self.logger
        )
        return f"Last {len(lines)} log lines from build {build_id}:\n" + '\n'.join(lines)

    async def submit_and_await_build(
        self,
        archive_location: str,
        target_image: str,
        has_dockerfile: bool,
        progress_callback: Optional[ProgressCallback] = None
    ) -> BuildJob:
        """
        Build `target_image` from an uploaded source archive.

        Uses the Dockerfile when `has_dockerfile`, buildpacks otherwise.

        Raises:
            BuildFailedError: terminal status other than SUCCESS
        """
        await log_and_progress(
            f"Initiating Cloud Build for {archive_location} in {self.region}...",
            progress_callback, 'info', self.logger
        )
        build_id = await self.submit_build(archive_location, target_image, has_dockerfile)
        await log_and_progress(f"Cloud Build job {build_id} started...", progress_callback, 'info', self.logger)

        build = await self.wait_for_build(build_id, progress_callback)
        job = BuildJob(
            id=build_id,
            status=_status_name(build.status),
            log_location=build.log_url or None,
        )

        if job.succeeded:
            job.result_image_reference = build.results.images[0].name
            await log_and_progress(
                f"Cloud Build job {build_id} completed successfully.",
                progress_callback, 'info', self.logger
            )
            await log_and_progress(f"Image built: {job.result_image_reference}", progress_callback, 'info', self.logger)
            return job

        await log_and_progress(
            f"Cloud Build job {build_id} failed with status: {job.status}",
            progress_callback, 'error', self.logger
        )
        await log_and_progress(f"Build logs: {job.log_location}", progress_callback, 'info', self.logger)

        excerpt = await self._build_log_excerpt(build_id, job.log_location, progress_callback)
        raise BuildFailedError(build_id, job.status, log_excerpt=excerpt, log_url=job.log_location)
