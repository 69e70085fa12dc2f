"""
Client registry for the Google Cloud API clients used by a deployment.

Clients are expensive to construct, so one instance is cached per
(kind, project, credential). The registry is passed explicitly to every
service so its lifetime and test substitution stay visible.
"""

import hashlib
import logging
from typing import Any, Callable, Dict, Optional, Tuple

from google.api_core.client_options import ClientOptions

logger = logging.getLogger(__name__)

GLOBAL_SCOPE = 'global'


def _run_services_client(project_id, credentials):
    from google.cloud import run_v2
    return run_v2.ServicesClient(
        credentials=credentials,
        client_options=ClientOptions(quota_project_id=project_id)
    )


def _run_builds_client(project_id, credentials):
    from google.cloud import run_v2
    return run_v2.BuildsClient(
        credentials=credentials,
        client_options=ClientOptions(quota_project_id=project_id)
    )


def _cloudbuild_client(project_id, credentials):
    from google.cloud.devtools import cloudbuild_v1
    return cloudbuild_v1.CloudBuildClient(
        credentials=credentials,
        client_options=ClientOptions(quota_project_id=project_id)
    )


def _service_usage_client(project_id, credentials):
    from google.cloud import service_usage_v1
    return service_usage_v1.ServiceUsageClient(
        credentials=credentials,
        client_options=ClientOptions(quota_project_id=project_id)
    )


def _storage_client(project_id, credentials):
    from google.cloud import storage
    return storage.Client(project=project_id, credentials=credentials)


def _artifact_registry_client(project_id, credentials):
    from google.cloud import artifactregistry_v1
    return artifactregistry_v1.ArtifactRegistryClient(
        credentials=credentials,
        client_options=ClientOptions(quota_project_id=project_id)
    )


def _logging_client(project_id, credentials):
    from google.cloud import logging as cloud_logging
    return cloud_logging.Client(project=project_id, credentials=credentials)


def _billing_client(project_id, credentials):
    # Billing accounts are not project scoped
    from google.cloud import billing_v1
    return billing_v1.CloudBillingClient(credentials=credentials)


def _projects_client(project_id, credentials):
    from google.cloud import resourcemanager_v3
    return resourcemanager_v3.ProjectsClient(credentials=credentials)


CLIENT_FACTORIES: Dict[str, Callable[[Optional[str], Any], Any]] = {
    'run': _run_services_client,
    'builds': _run_builds_client,
    'cloudbuild': _cloudbuild_client,
    'service_usage': _service_usage_client,
    'storage': _storage_client,
    'artifact_registry': _artifact_registry_client,
    'logging': _logging_client,
    'billing': _billing_client,
    'projects': _projects_client,
}


class ClientRegistry:
    """
    Lazily constructs and caches API clients.

    Args:
        credentials: Optional google.auth credentials shared by every client
        access_token: Optional OAuth access token, used when no credentials are given
    """

    def __init__(self, credentials: Any = None, access_token: Optional[str] = None):
        if credentials is None and access_token:
            from google.oauth2.credentials import Credentials
            credentials = Credentials(token=access_token)

        self.credentials = credentials
        self._credential_key = self._make_credential_key(credentials, access_token)
        self._clients: Dict[Tuple[str, str, str], Any] = {}

    @staticmethod
    def _make_credential_key(credentials: Any, access_token: Optional[str]) -> str:
        if access_token:
            return hashlib.sha256(access_token.encode('utf-8')).hexdigest()[:16]
        if credentials is not None:
            return f"creds-{id(credentials)}"
        return 'adc'

    def _key(self, kind: str, project_id: Optional[str]) -> Tuple[str, str, str]:
        return (kind, project_id or GLOBAL_SCOPE, self._credential_key)

    def register(self, kind: str, project_id: Optional[str], client: Any) -> None:
        """Seed the registry with a pre-built client"""
        self._clients[self._key(kind, project_id)] = client

    def get(self, kind: str, project_id: Optional[str] = None) -> Any:
        key = self._key(kind, project_id)
        if key not in self._clients:
            if kind not in CLIENT_FACTORIES:
                raise KeyError(f"Unknown client kind: {kind}")
            logger.debug(f"Creating {kind} client for project {project_id or GLOBAL_SCOPE}")
            self._clients[key] = CLIENT_FACTORIES[kind](project_id, self.credentials)
        return self._clients[key]

    def run(self, project_id: str):
        return self.get('run', project_id)

    def builds(self, project_id: str):
        return self.get('builds', project_id)

    def cloudbuild(self, project_id: str):
        return self.get('cloudbuild', project_id)

    def service_usage(self, project_id: str):
        return self.get('service_usage', project_id)

    def storage(self, project_id: str):
        return self.get('storage', project_id)

    def artifact_registry(self, project_id: str):
        return self.get('artifact_registry', project_id)

    def logging(self, project_id: str):
        return self.get('logging', project_id)

    def billing(self):
        return self.get('billing')

    def projects(self):
        return self.get('projects')
