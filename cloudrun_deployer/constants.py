"""
Deployment constants shared by the preflight, packaging, build and run services.
"""

DEPLOYMENT_CONFIG = {
    'REPO_NAME': 'mcp-cloud-run-deployments',
    'ZIP_FILE_NAME': 'source.zip',
    'TARGZ_FILE_NAME': 'source.tar.gz',
    'IMAGE_TAG': 'latest',
    'LABEL_CREATED_BY': 'cloud-run-deployer',
    'BUILD_CLIENT_TAG': 'cloud-run-deployer',
    'DEFAULT_NODE_BASE_IMAGE': 'nodejs22',
    'DEFAULT_PYTHON_BASE_IMAGE': 'python313',
    'NO_BUILD_IMAGE_TAG': 'scratch',
}

# Bootstrapping APIs: checking billing requires the billing API itself
PREREQUISITE_APIS = (
    'serviceusage.googleapis.com',
    'cloudbilling.googleapis.com',
)

REQUIRED_APIS = {
    'SOURCE_DEPLOY': (
        'serviceusage.googleapis.com',
        'iam.googleapis.com',
        'storage.googleapis.com',
        'cloudbuild.googleapis.com',
        'artifactregistry.googleapis.com',
        'run.googleapis.com',
    ),
    'IMAGE_DEPLOY': (
        'serviceusage.googleapis.com',
        'run.googleapis.com',
    ),
}


class DeploymentTypes:
    """Deployment path names, also used as the `deployment-type` label"""
    NO_BUILD = 'no-build'
    IMAGE = 'image'
    WITH_BUILD = 'with-build'


class Runtimes:
    NODEJS = 'nodejs'
    PYTHON = 'python'


# Terminal Cloud Build statuses
BUILD_TERMINAL_STATUSES = frozenset({
    'SUCCESS',
    'FAILURE',
    'INTERNAL_ERROR',
    'TIMEOUT',
    'CANCELLED',
})

BUILD_POLL_INTERVAL_SECONDS = 5
BUILD_LOG_PROPAGATION_DELAY_SECONDS = 10
BUILD_LOG_LINES_TO_FETCH = 100

PERMISSION_RETRY_MAX_ATTEMPTS = 7
PERMISSION_RETRY_FIRST_DELAY_SECONDS = 15
PERMISSION_RETRY_BASE_DELAY_SECONDS = 1

API_ENABLE_RETRY_DELAY_SECONDS = 1

DEFAULT_MAX_DIRECT_SOURCE_BYTES = 250 * 1024 * 1024

BILLING_CONSOLE_URL = 'https://console.cloud.google.com/billing/linkedaccount?project={project_id}'

DOCKERFILE_NAMES = ('Dockerfile', 'dockerfile')
NODE_MANIFEST = 'package.json'
NODE_LOCKFILE = 'package-lock.json'
NODE_DEPENDENCY_DIR = 'node_modules'
PYTHON_MANIFESTS = ('requirements.txt', 'pyproject.toml')
PYTHON_VERSION_PINS = ('runtime.txt', '.python-version')
PYTHON_ENTRYPOINT = 'main.py'
PROCFILE = 'Procfile'
