"""
Backup module for folderbackup.

This module handles the core backup functionality including:
- Archiving the source directory
- Remote storage clients (Dropbox, S3 and local)
- Single-shot and chunked uploads
- Retention policy enforcement
- Pipeline orchestration
"""

from .executor import BackupPipeline, run_backup
from .compression import Archiver, ArchiveError, create_archive
from .storage import RemoteStorage, DropboxStorage, S3Storage, LocalStorage, StorageError, create_storage
from .uploader import BackupUploader, ChunkedUploadSession, SingleShotUploader, UploadError, ProtocolError, classify
from .retention import RetentionManager, RetentionError, BackupNotFoundError

__all__ = [
    'BackupPipeline',
    'run_backup',
    'Archiver',
    'ArchiveError',
    'create_archive',
    'RemoteStorage',
    'DropboxStorage',
    'S3Storage',
    'LocalStorage',
    'StorageError',
    'create_storage',
    'BackupUploader',
    'ChunkedUploadSession',
    'SingleShotUploader',
    'UploadError',
    'ProtocolError',
    'classify',
    'RetentionManager',
    'RetentionError',
    'BackupNotFoundError'
]
