"""
Cloud Run deployment orchestration: deploy source files or container images
to Cloud Run with API/billing preflight, Cloud Build fallback and dry-run
validation.
"""

from cloudrun_deployer.errors import (
    ArchiveTooLargeError,
    BuildFailedError,
    DeploymentError,
    DryRunFailedError,
    PackagingError,
    PreflightError,
    SourceNotFoundError,
    TransientPermissionError,
    ValidationError,
)
from cloudrun_deployer.services.deployment_service import DeploymentOrchestrator, deploy, deploy_image
from cloudrun_deployer.services.project_service import ProjectService, generate_project_id

__version__ = '0.1.0'

__all__ = [
    'ArchiveTooLargeError',
    'BuildFailedError',
    'DeploymentError',
    'DeploymentOrchestrator',
    'DryRunFailedError',
    'PackagingError',
    'PreflightError',
    'ProjectService',
    'SourceNotFoundError',
    'TransientPermissionError',
    'ValidationError',
    'deploy',
    'deploy_image',
    'generate_project_id',
]
