"""
Source packaging: turns a heterogeneous list of paths and in-memory blobs into
an archive, detects Dockerfile presence and runtime metadata, and stages
sources in a scratch directory for direct-source deployments.
"""

import asyncio
import io
import json
import logging
import os
import posixpath
import re
import shutil
import tarfile
import tempfile
import time
import zipfile
from contextlib import asynccontextmanager
from pathlib import Path
from typing import AsyncIterator, Dict, List, Mapping, Optional, Sequence, Union

from cloudrun_deployer.constants import (
    DOCKERFILE_NAMES,
    NODE_DEPENDENCY_DIR,
    NODE_LOCKFILE,
    NODE_MANIFEST,
    PROCFILE,
    PYTHON_ENTRYPOINT,
    PYTHON_MANIFESTS,
    PYTHON_VERSION_PINS,
    Runtimes,
)
from cloudrun_deployer.errors import PackagingError, SourceNotFoundError
from cloudrun_deployer.models import (
    DeploymentAttributes,
    DetectionResult,
    FileContent,
    FileDeploymentMetadata,
    FileEntry,
    FileItem,
    NodeRuntime,
    PackagedArtifact,
    PythonRuntime,
    Undetected,
)
from cloudrun_deployer.utils.progress import ProgressCallback, log_and_progress

logger = logging.getLogger(__name__)

Logger = Union[logging.Logger, logging.LoggerAdapter]

ARCHIVE_ZIP = 'zip'
ARCHIVE_TARGZ = 'tar.gz'

_DRIVE_PATH = re.compile(r'^/([a-zA-Z])(/.*)?$')

# Root files that runtime detection reads
_DETECTION_FILES = (
    NODE_MANIFEST,
    *PYTHON_MANIFESTS,
    *PYTHON_VERSION_PINS,
    PROCFILE,
    PYTHON_ENTRYPOINT,
)


def normalize_source_path(path: str) -> str:
    """
    Rewrite a drive-letter path (`/c/Users/...`) to its WSL mount
    (`/mnt/c/Users/...`) when it does not exist natively.
    """
    match = _DRIVE_PATH.match(path)
    if match and not os.path.exists(path):
        return f"/mnt/{match.group(1)}{match.group(2) or ''}"
    return path


def _resolve(path: str) -> str:
    return os.path.abspath(normalize_source_path(path))


def _blob_name(filename: str) -> str:
    """Archive-relative name for an in-memory file; must stay inside the source root"""
    name = posixpath.normpath(filename.replace('\\', '/').lstrip('/'))
    if name in ('.', '..') or name.startswith('../') or posixpath.isabs(name):
        raise PackagingError(f"Invalid file name, must be relative to the source root: {filename}")
    return name


def _is_single_folder(files: Sequence[FileItem]) -> bool:
    if len(files) != 1 or not isinstance(files[0], str):
        return False
    return os.path.isdir(_resolve(files[0]))


def _common_base_dir(paths: List[str]) -> str:
    if len(paths) == 1 and os.path.isdir(paths[0]):
        return paths[0]
    parents = [p if os.path.isdir(p) else os.path.dirname(p) for p in paths]
    return os.path.commonpath(parents)


def prepare_file_map(files: Sequence[FileItem]) -> Dict[str, FileEntry]:
    """
    Map archive-relative names to file entries.

    Path names are made relative to a common base: the folder itself for a
    single-folder input, otherwise the lowest common ancestor of the given
    paths. Blob names are used as given. Directories are expanded recursively.

    Raises:
        SourceNotFoundError: a named path does not exist
        PackagingError: an item is neither a path nor a {filename, content} blob
    """
    file_map: Dict[str, FileEntry] = {}

    paths = [_resolve(f) for f in files if isinstance(f, str)]
    for path in paths:
        if not os.path.exists(path):
            raise SourceNotFoundError(path)
    base_dir = _common_base_dir(paths) if paths else ''

    def add_path(resolved: str) -> None:
        if os.path.isdir(resolved):
            for root, dirs, filenames in os.walk(resolved):
                dirs.sort()
                for filename in sorted(filenames):
                    add_path(os.path.join(root, filename))
            return
        relative = os.path.relpath(resolved, base_dir).replace(os.sep, '/')
        file_map[relative] = FileEntry(source_path=resolved)

    for item in files:
        if isinstance(item, str):
            add_path(_resolve(item))
        elif isinstance(item, FileContent):
            file_map[_blob_name(item.filename)] = FileEntry(content=item.as_bytes())
        else:
            raise PackagingError(f"Invalid file format: {item!r}")

    return file_map


def check_if_dockerfile_exists(files: Sequence[FileItem]) -> bool:
    """
    True when a Dockerfile is at the root of a single-folder input, or
    anywhere in a flat list of paths/blobs. Subdirectories of a folder
    input are not searched.
    """
    if _is_single_folder(files):
        folder = _resolve(files[0])
        return any(
            name.lower() in DOCKERFILE_NAMES and os.path.isfile(os.path.join(folder, name))
            for name in os.listdir(folder)
        )

    for item in files:
        if isinstance(item, str):
            name = os.path.basename(item)
        elif isinstance(item, FileContent):
            name = os.path.basename(_blob_name(item.filename))
        else:
            continue
        if name.lower() in DOCKERFILE_NAMES:
            return True
    return False


def _split_command(command: str):
    parts = command.split()
    if not parts:
        return None
    return [parts[0]], parts[1:]


def _detect_python(root_files: Mapping[str, bytes]) -> DetectionResult:
    if any(pin in root_files for pin in PYTHON_VERSION_PINS):
        return Undetected()

    if PROCFILE in root_files:
        try:
            procfile = root_files[PROCFILE].decode('utf-8')
        except UnicodeDecodeError:
            return Undetected()
        for line in procfile.splitlines():
            process_type, _, command = line.partition(':')
            if process_type.strip() == 'web':
                split = _split_command(command)
                if split:
                    return PythonRuntime(command=split[0], args=split[1])
                return Undetected()

    if PYTHON_ENTRYPOINT in root_files:
        return PythonRuntime(command=['python'], args=[PYTHON_ENTRYPOINT])
    return Undetected()


def _detect_node(manifest: bytes) -> DetectionResult:
    try:
        package = json.loads(manifest)
    except (ValueError, UnicodeDecodeError):
        return Undetected()
    if not isinstance(package, dict):
        return Undetected()

    engines = package.get('engines')
    if isinstance(engines, dict) and engines.get('node'):
        return Undetected()

    scripts = package.get('scripts')
    start = scripts.get('start') if isinstance(scripts, dict) else None
    if not isinstance(start, str):
        return Undetected()

    split = _split_command(start)
    if not split:
        return Undetected()
    return NodeRuntime(command=split[0], args=split[1])


def detect_runtime(root_files: Mapping[str, bytes]) -> DetectionResult:
    """
    Classify a source tree from the contents of its root files.

    Pure function: malformed manifests map to Undetected, never raise.
    Python manifests take precedence over package.json.
    """
    if any(name in root_files for name in PYTHON_MANIFESTS):
        return _detect_python(root_files)
    if NODE_MANIFEST in root_files:
        return _detect_node(root_files[NODE_MANIFEST])
    return Undetected()


def _read_root_files(files: Sequence[FileItem]) -> Dict[str, bytes]:
    root_files: Dict[str, bytes] = {}

    if _is_single_folder(files):
        folder = _resolve(files[0])
        for name in _DETECTION_FILES:
            path = os.path.join(folder, name)
            if os.path.isfile(path):
                root_files[name] = Path(path).read_bytes()
        return root_files

    for name, entry in prepare_file_map(files).items():
        if '/' in name or name not in _DETECTION_FILES:
            continue
        if entry.content is not None:
            root_files[name] = entry.content
        else:
            root_files[name] = Path(entry.source_path).read_bytes()
    return root_files


def detect_attributes(files: Sequence[FileItem]) -> DeploymentAttributes:
    """Runtime, command, args and base image derived from the source root"""
    result = detect_runtime(_read_root_files(files))
    logger.debug(f"Runtime detection result: {result}")
    return result.to_attributes()


def make_file_deployment_metadata(files: Sequence[FileItem]) -> FileDeploymentMetadata:
    return FileDeploymentMetadata(
        has_dockerfile=check_if_dockerfile_exists(files),
        attributes=detect_attributes(files),
    )


def create_archive(file_map: Mapping[str, FileEntry], archive_format: str = ARCHIVE_ZIP) -> bytes:
    """Archive a file map in memory as zip or tar.gz"""
    stream = io.BytesIO()

    if archive_format == ARCHIVE_ZIP:
        with zipfile.ZipFile(stream, mode='w', compression=zipfile.ZIP_DEFLATED, compresslevel=9) as archive:
            for name in sorted(file_map):
                entry = file_map[name]
                if entry.source_path:
                    archive.write(entry.source_path, arcname=name)
                else:
                    archive.writestr(name, entry.content or b'')
    elif archive_format == ARCHIVE_TARGZ:
        with tarfile.open(fileobj=stream, mode='w:gz') as tar:
            for name in sorted(file_map):
                entry = file_map[name]
                if entry.source_path:
                    tar.add(entry.source_path, arcname=name)
                else:
                    content = entry.content or b''
                    info = tarfile.TarInfo(name=name)
                    info.size = len(content)
                    info.mtime = int(time.time())
                    tar.addfile(info, io.BytesIO(content))
    else:
        raise PackagingError(f"Unsupported archive format: {archive_format}")

    stream.seek(0)
    return stream.read()


def _has_root_dockerfile(file_map: Mapping[str, FileEntry]) -> bool:
    return any(name.lower() in DOCKERFILE_NAMES for name in file_map)


async def prepare_source(
    files: Sequence[FileItem],
    archive_format: str = ARCHIVE_ZIP,
    progress_callback: Optional[ProgressCallback] = None,
    log: Optional[Logger] = None
) -> PackagedArtifact:
    """Package every given file, unstaged, into a single archive"""
    log = log or logger
    await log_and_progress('Preparing file map...', progress_callback, 'debug', log)
    file_map = await asyncio.to_thread(prepare_file_map, files)

    await log_and_progress(f"Creating {archive_format} archive...", progress_callback, 'debug', log)
    archive_bytes = await asyncio.to_thread(create_archive, file_map, archive_format)

    await log_and_progress(
        f"Files archived successfully. Total size: {len(archive_bytes)} bytes",
        progress_callback, 'info', log
    )
    return PackagedArtifact(
        archive_bytes=archive_bytes,
        archive_format=archive_format,
        has_dockerfile=_has_root_dockerfile(file_map),
    )


def _source_name(files: Sequence[FileItem]) -> str:
    if files and isinstance(files[0], str):
        name = os.path.basename(_resolve(files[0]).rstrip(os.sep))
        if name:
            return name
    return 'source'


def _stage_files(files: Sequence[FileItem], target_dir: str) -> None:
    for name, entry in prepare_file_map(files).items():
        destination = Path(target_dir) / name
        destination.parent.mkdir(parents=True, exist_ok=True)
        if entry.source_path:
            shutil.copy2(entry.source_path, destination)
        else:
            destination.write_bytes(entry.content or b'')


@asynccontextmanager
async def staged_source(
    files: Sequence[FileItem],
    temp_base_dir: str,
    progress_callback: Optional[ProgressCallback] = None,
    log: Optional[Logger] = None
) -> AsyncIterator[str]:
    """
    Copy sources into a fresh scratch directory and yield its path.

    The directory is removed on exit whether or not the body raised.
    """
    log = log or logger
    await asyncio.to_thread(os.makedirs, temp_base_dir, exist_ok=True)
    # mkdtemp guarantees a directory no other attempt shares
    temp_dir = await asyncio.to_thread(
        tempfile.mkdtemp,
        prefix=f"{_source_name(files)}-{int(time.time() * 1000)}-",
        dir=temp_base_dir
    )

    try:
        await log_and_progress(f"Preparing temporary directory: {temp_dir}", progress_callback, 'debug', log)
        await asyncio.to_thread(_stage_files, files, temp_dir)
        yield temp_dir
    finally:
        try:
            await asyncio.to_thread(shutil.rmtree, temp_dir, ignore_errors=False)
        except FileNotFoundError:
            pass
        except OSError as e:
            log.error(f"Failed to cleanup temp directory {temp_dir}: {e}")


async def _install_node_dependencies(
    target_dir: str,
    progress_callback: Optional[ProgressCallback],
    log: Logger
) -> None:
    target = Path(target_dir)
    if not (target / NODE_MANIFEST).exists():
        return

    if (target / NODE_DEPENDENCY_DIR).exists():
        await log_and_progress(
            f"Existing {NODE_DEPENDENCY_DIR} detected. Skipping dependency installation.",
            progress_callback, 'info', log
        )
        return

    if (target / NODE_LOCKFILE).exists():
        cmd = ['npm', 'ci', '--omit=dev']
    else:
        cmd = ['npm', 'install', '--omit=dev']
    npm_command = ' '.join(cmd)

    await log_and_progress(f"Running {npm_command} in {target_dir}...", progress_callback, 'info', log)
    try:
        process = await asyncio.create_subprocess_exec(
            *cmd,
            cwd=target_dir,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE
        )
        _, stderr = await process.communicate()
    except OSError as e:
        await log_and_progress(f"Dependency installation failed: {e}", progress_callback, 'warn', log)
        return

    if process.returncode != 0:
        await log_and_progress(
            f"Dependency installation failed: {stderr.decode(errors='replace').strip()}",
            progress_callback, 'warn', log
        )
        return

    await log_and_progress(f"{npm_command} completed successfully", progress_callback, 'info', log)


async def install_dependencies(
    target_dir: str,
    attributes: DeploymentAttributes,
    progress_callback: Optional[ProgressCallback] = None,
    log: Optional[Logger] = None
) -> None:
    """Install runtime dependencies in a staged directory. Failures are logged, not raised."""
    log = log or logger
    if attributes.runtime == Runtimes.NODEJS:
        await _install_node_dependencies(target_dir, progress_callback, log)
    else:
        log.debug(f"No specific dependency installation logic for runtime: {attributes.runtime}")


async def package_staged_directory(
    staged_dir: str,
    progress_callback: Optional[ProgressCallback] = None,
    log: Optional[Logger] = None
) -> PackagedArtifact:
    """Archive a staged directory as tar.gz for a direct-source deployment"""
    return await prepare_source([staged_dir], ARCHIVE_TARGZ, progress_callback, log)
