"""
Backup pipeline - orchestrates one backup run of a directory.

Workflow:
1. Validate the source directory
2. Create a private scratch directory
3. Rotate old backups of the project (failures are logged, not fatal)
4. Create the archive in the scratch directory
5. Upload it to {backup_root}/{project}/{date_stamp}/{archive name}
6. Remove the scratch directory, whatever happened above
"""

import logging
import os
import shutil
import tempfile
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path

from folderbackup.config import BackupSettings, ConfigurationError
from folderbackup.models import BackupArchive, BackupResult, build_destination_path
from .compression import Archiver
from .retention import RetentionManager, RetentionError
from .storage import RemoteStorage, create_storage
from .uploader import BackupUploader


logger = logging.getLogger(__name__)


@contextmanager
def scratch_directory(temp_dir: str):
    """
    Create a scratch directory owned by one run and remove it on exit.

    Args:
        temp_dir: Parent directory, created if missing

    Yields:
        Path of the scratch directory
    """
    os.makedirs(temp_dir, exist_ok=True)
    path = tempfile.mkdtemp(prefix='folderbackup_', dir=temp_dir)
    try:
        yield path
    finally:
        if os.path.exists(path):
            shutil.rmtree(path)
            logger.debug(f"Removed scratch directory {path}")


class BackupPipeline:
    """
    Runs the complete backup workflow for one source directory.
    """

    def __init__(self, settings: BackupSettings, client: RemoteStorage, archiver: Archiver = None,
                 uploader: BackupUploader = None, retention: RetentionManager = None, clock=None):
        """
        Initialize backup pipeline.

        Args:
            settings: Settings for this run
            client: Remote storage client
            archiver: Archiver (defaults to one for settings.compression_format)
            uploader: BackupUploader (defaults to one built from settings)
            retention: RetentionManager (defaults to one built from settings)
            clock: Callable returning the current datetime, used for the date folder
                (defaults to datetime.now)
        """
        self.settings = settings
        self.client = client
        self.archiver = archiver or Archiver(settings.compression_format)
        self.uploader = uploader or BackupUploader(
            client,
            chunk_size=settings.chunk_size,
            chunk_threshold=settings.effective_chunk_threshold,
            upload_retries=settings.upload_retries
        )
        self.retention = retention or RetentionManager(
            client,
            backup_root=settings.backup_root,
            order=settings.retention_order,
            date_format=settings.date_format
        )
        self.clock = clock or datetime.now
        self.result = None

    def run(self, source_dir: str) -> BackupResult:
        """
        Back up source_dir.

        Returns:
            BackupResult for a successful run

        Raises:
            ConfigurationError: If source_dir is not an existing directory
            ArchiveError: If the archive cannot be created
            UploadError: If the upload fails
        """
        source = self._validate_source(source_dir)
        project_name = source.name

        self.result = BackupResult(project_name=project_name)
        self._log(f"Starting backup of {source} (project: {project_name})")

        try:
            with scratch_directory(self.settings.temp_dir) as scratch_dir:
                self._log(f"Scratch directory: {scratch_dir}")
                self._execute_workflow(source, project_name, scratch_dir)

            self.result.status = 'success'
            self.result.completed_at = datetime.now()
            self._log("Backup completed successfully")

        except Exception as e:
            self.result.status = 'failed'
            self.result.completed_at = datetime.now()
            self.result.error_message = str(e)
            self._log(f"Backup failed: {e}", level=logging.ERROR)
            raise

        return self.result

    def _validate_source(self, source_dir: str) -> Path:
        if not source_dir:
            raise ConfigurationError("No source directory given")

        source = Path(source_dir).expanduser().resolve()
        if not source.is_dir():
            raise ConfigurationError(f"Not an existing directory: {source_dir}")

        return source

    def _execute_workflow(self, source: Path, project_name: str, scratch_dir: str):
        """Execute the main backup workflow steps."""
        # Step 1: Rotate old backups
        self._rotate(project_name)

        # Step 2: Create archive
        self._log(f"Creating archive (format: {self.settings.compression_format})")
        archive_path = self.archiver.archive(str(source), scratch_dir)

        date_stamp = self.clock().strftime(self.settings.date_format)
        archive = BackupArchive(
            local_path=archive_path,
            destination_path=build_destination_path(
                self.settings.backup_root,
                project_name,
                date_stamp,
                os.path.basename(archive_path)
            )
        )
        self.result.size = archive.size
        self._log(f"Archive created: {archive.name} ({archive.size / 1024 / 1024:.2f} MB)")

        # Step 3: Upload
        self._log(f"Uploading to {archive.destination_path}")
        upload = self.uploader.upload(archive)
        self.result.upload = upload
        self.result.destination_path = upload.destination_path
        self._log(f"Uploaded {upload.size} bytes ({upload.mode.value}, {upload.chunks} chunks)")

    def _rotate(self, project_name: str):
        """Apply the retention policy; a failure here does not stop the backup."""
        try:
            decision = self.retention.rotate(project_name, self.settings.max_backups)
        except RetentionError as e:
            self._log(f"Warning: Retention check failed, continuing with backup: {e}", level=logging.WARNING)
            return

        self.result.retention = decision
        if decision.should_delete:
            self._log(f"Deleted oldest backup: {decision.path_to_delete}")

    def _log(self, message: str, level: int = logging.INFO):
        """
        Add a log message with timestamp to the run log.

        Args:
            message: Log message
            level: Logging level for the module logger
        """
        timestamp = datetime.now().strftime('%Y-%m-%d %H:%M:%S')
        self.result.logs.append(f"[{timestamp}] {message}")
        logger.log(level, message)


def run_backup(settings: BackupSettings, source_dir: str, client: RemoteStorage = None) -> BackupResult:
    """
    Run one backup with a storage client created from settings.

    Args:
        settings: Validated settings
        source_dir: Directory to back up
        client: Storage client (created from settings when omitted)

    Returns:
        BackupResult of the run
    """
    if client is None:
        client = create_storage(settings)

    pipeline = BackupPipeline(settings, client)
    return pipeline.run(source_dir)
