"""
Cloud Storage staging for source archives.
"""

import logging
from typing import Optional, Union

from cloudrun_deployer.clients import ClientRegistry
from cloudrun_deployer.utils.progress import ProgressCallback, log_and_progress
from cloudrun_deployer.utils.retry import call_sdk


class StorageService:
    """Ensures the staging bucket exists and uploads archives to it"""

    def __init__(
        self,
        clients: ClientRegistry,
        project_id: str,
        logger: Optional[Union[logging.Logger, logging.LoggerAdapter]] = None
    ):
        self.clients = clients
        self.project_id = project_id
        self.logger = logger or logging.getLogger(__name__)

    @property
    def storage_client(self):
        return self.clients.storage(self.project_id)

    async def ensure_bucket(
        self,
        bucket_name: str,
        location: str,
        progress_callback: Optional[ProgressCallback] = None
    ):
        """Return the bucket, creating it in `location` when missing"""
        bucket = self.storage_client.bucket(bucket_name)
        exists = await call_sdk(bucket.exists, description=f"bucket.exists {bucket_name}", logger=self.logger)
        if exists:
            await log_and_progress(
                f"Using existing Cloud Storage bucket: {bucket_name}",
                progress_callback, 'debug', self.logger
            )
            return bucket

        await log_and_progress(
            f"Creating Cloud Storage bucket {bucket_name} in {location}...",
            progress_callback, 'info', self.logger
        )
        created = await call_sdk(
            self.storage_client.create_bucket,
            bucket_name,
            location=location,
            description=f"createBucket {bucket_name}",
            logger=self.logger
        )
        await log_and_progress(f"Bucket {bucket_name} created.", progress_callback, 'info', self.logger)
        return created

    async def upload_bytes(
        self,
        bucket,
        data: bytes,
        object_name: str,
        progress_callback: Optional[ProgressCallback] = None
    ) -> str:
        """Upload `data` as `object_name`; returns the gs:// URI"""
        await log_and_progress(
            f"Uploading {object_name} to gs://{bucket.name}...",
            progress_callback, 'info', self.logger
        )
        blob = bucket.blob(object_name)
        await call_sdk(
            blob.upload_from_string,
            data,
            content_type='application/octet-stream',
            description=f"upload {object_name}",
            logger=self.logger
        )
        uri = f"gs://{bucket.name}/{object_name}"
        self.logger.info(f"[GCS] [UPLOAD] Successfully uploaded {len(data)} bytes to {uri}")
        return uri
