"""
Deployment data model: requests, detected attributes, artifacts and build jobs.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Union

from cloudrun_deployer.constants import DEPLOYMENT_CONFIG, Runtimes


@dataclass
class FileContent:
    """An in-memory file to deploy, addressed by its archive-relative name"""
    filename: str
    content: Union[str, bytes]

    def as_bytes(self) -> bytes:
        if isinstance(self.content, bytes):
            return self.content
        return self.content.encode('utf-8')


FileItem = Union[str, FileContent]


@dataclass
class SourceFiles:
    files: List[FileItem]


@dataclass
class SourceImage:
    image_url: str


SourceSpecification = Union[SourceFiles, SourceImage]


def _coerce_file_item(item: Any) -> FileItem:
    if isinstance(item, dict) and 'filename' in item and 'content' in item:
        return FileContent(filename=item['filename'], content=item['content'])
    return item


def _first_present(config: Dict[str, Any], *keys: str) -> Any:
    for key in keys:
        if config.get(key) is not None:
            return config[key]
    return None


@dataclass
class DeploymentRequest:
    project_id: Optional[str]
    service_name: Optional[str]
    region: Optional[str]
    source: SourceSpecification
    skip_invoker_check: bool = False

    @classmethod
    def from_config(cls, config: Dict[str, Any], default_region: Optional[str] = None) -> 'DeploymentRequest':
        """
        Build a request from the caller-facing configuration dict.

        Accepts both snake_case and camelCase keys. An `image_url` selects an
        image deployment, otherwise `files` is used.
        """
        image_url = _first_present(config, 'image_url', 'imageUrl')
        if image_url is not None:
            source: SourceSpecification = SourceImage(image_url=image_url)
        else:
            files = config.get('files') or []
            source = SourceFiles(files=[_coerce_file_item(f) for f in files])

        return cls(
            project_id=_first_present(config, 'project_id', 'projectId'),
            service_name=_first_present(config, 'service_name', 'serviceName'),
            region=config.get('region') or default_region,
            source=source,
            skip_invoker_check=bool(
                _first_present(config, 'skip_invoker_check', 'skip_iam_check', 'skipIamCheck')
            ),
        )


@dataclass(frozen=True)
class DeploymentAttributes:
    """Runtime metadata derived once per request from static inspection of the source"""
    runtime: Optional[str] = None
    command: Optional[List[str]] = None
    args: Optional[List[str]] = None
    base_image: Optional[str] = None
    env_vars: Dict[str, str] = field(default_factory=dict)


# Runtime detection result: NodeRuntime | PythonRuntime | Undetected

@dataclass(frozen=True)
class NodeRuntime:
    command: List[str]
    args: List[str]

    def to_attributes(self) -> DeploymentAttributes:
        return DeploymentAttributes(
            runtime=Runtimes.NODEJS,
            command=list(self.command),
            args=list(self.args),
            base_image=DEPLOYMENT_CONFIG['DEFAULT_NODE_BASE_IMAGE'],
        )


@dataclass(frozen=True)
class PythonRuntime:
    command: List[str]
    args: List[str]

    def to_attributes(self) -> DeploymentAttributes:
        return DeploymentAttributes(
            runtime=Runtimes.PYTHON,
            command=list(self.command),
            args=list(self.args),
            base_image=DEPLOYMENT_CONFIG['DEFAULT_PYTHON_BASE_IMAGE'],
        )


@dataclass(frozen=True)
class Undetected:
    def to_attributes(self) -> DeploymentAttributes:
        return DeploymentAttributes()


DetectionResult = Union[NodeRuntime, PythonRuntime, Undetected]


@dataclass(frozen=True)
class FileDeploymentMetadata:
    has_dockerfile: bool
    attributes: DeploymentAttributes

    @property
    def can_deploy_without_build(self) -> bool:
        """Direct-source deployment needs a detected runtime and no Dockerfile"""
        return not self.has_dockerfile and self.attributes.runtime is not None


@dataclass
class FileEntry:
    """A file map value: either a path on disk or in-memory content"""
    source_path: Optional[str] = None
    content: Optional[bytes] = None


@dataclass
class PackagedArtifact:
    archive_bytes: bytes
    archive_format: str  # 'zip' or 'tar.gz'
    has_dockerfile: bool

    @property
    def size_bytes(self) -> int:
        return len(self.archive_bytes)


@dataclass
class BuildJob:
    id: str
    status: str
    result_image_reference: Optional[str] = None
    log_location: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.status == 'SUCCESS'


@dataclass
class BillingAccount:
    name: str
    display_name: str
    open: bool


@dataclass
class BillingState:
    enabled: bool
    candidate_accounts: List[BillingAccount] = field(default_factory=list)


@dataclass
class StrategyResult:
    strategy: str
    service: Any = None
    error: Optional[BaseException] = None

    @property
    def ok(self) -> bool:
        return self.error is None
