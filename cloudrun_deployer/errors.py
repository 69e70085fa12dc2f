"""
Deployment error taxonomy.

Every fatal error is raised to the caller after being emitted through the
progress sink by the orchestration facade.
"""

from typing import Optional

from google.api_core import exceptions as google_exceptions


# Remote PERMISSION_DENIED (code 7). IAM propagation on fresh projects is
# eventually consistent, so this is the only class the retry wrapper retries.
TransientPermissionError = google_exceptions.PermissionDenied


class DeploymentError(Exception):
    """Base class for every error raised by the deployment engine"""


class ValidationError(DeploymentError):
    """A required request field is missing"""


class SourceNotFoundError(DeploymentError):
    """A named file or directory does not exist"""

    def __init__(self, path: str):
        self.path = path
        super().__init__(f"File or directory not found: {path}")


class PackagingError(DeploymentError):
    """Source could not be packaged for the direct-source path"""


class ArchiveTooLargeError(PackagingError):
    def __init__(self, size_bytes: int, limit_bytes: int):
        self.size_bytes = size_bytes
        self.limit_bytes = limit_bytes
        super().__init__(
            f"Source archive size ({size_bytes / (1024 * 1024):.2f} MiB) exceeds the "
            f"{limit_bytes / (1024 * 1024):.0f} MiB limit."
        )


class PreflightError(DeploymentError):
    """The project cannot be left in a deployable state"""


class DryRunFailedError(DeploymentError):
    """The platform rejected the service configuration during validate-only"""

    def __init__(self, service_id: str, message: str):
        self.service_id = service_id
        super().__init__(f"Dry run validation failed for service {service_id}: {message}")


class BuildFailedError(DeploymentError):
    """A remote build reached a terminal status other than SUCCESS"""

    def __init__(
        self,
        build_id: str,
        status: str,
        log_excerpt: Optional[str] = None,
        log_url: Optional[str] = None
    ):
        self.build_id = build_id
        self.status = status
        self.log_excerpt = log_excerpt
        self.log_url = log_url

        if log_excerpt:
            snippet = f"\n\n{log_excerpt}"
        else:
            snippet = f"\n\nRefer to Log URL for full details: {log_url}"
        super().__init__(f"Build {build_id} failed.{snippet}")
