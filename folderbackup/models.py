"""
Data model for backup runs.

These records only live for the duration of a single pipeline run:
- BackupArchive: archive produced by the Archiver, with its remote destination
- RemoteFolderEntry: one row of a remote folder listing
- RetentionDecision: outcome of the retention check for a project
- UploadResult / BackupResult: run summaries
"""

import os
import posixpath
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import List, Optional


class UploadMode(Enum):
    """How an archive is sent to remote storage."""
    SMALL = 'small'
    CHUNKED = 'chunked'


def build_destination_path(backup_root: str, project_name: str, date_stamp: str, archive_name: str) -> str:
    """
    Build the remote path for an archive.

    Format: {backup_root}/{project_name}/{date_stamp}/{archive_name}

    Args:
        backup_root: Remote root folder (e.g. /backups)
        project_name: Name of the project being backed up
        date_stamp: Date folder name for this run
        archive_name: File name of the archive

    Returns:
        Absolute remote path
    """
    root = '/' + backup_root.strip('/')
    return posixpath.join(root, project_name, date_stamp, archive_name)


@dataclass(frozen=True)
class BackupArchive:
    """A local archive file and the remote path it is uploaded to."""
    local_path: str
    destination_path: str

    @property
    def name(self) -> str:
        return os.path.basename(self.local_path)

    @property
    def size(self) -> int:
        return os.path.getsize(self.local_path)

    def read_bytes(self) -> bytes:
        with open(self.local_path, 'rb') as f:
            return f.read()


@dataclass(frozen=True)
class RemoteFolderEntry:
    """Entry returned by a remote folder listing."""
    name: str
    is_folder: bool


@dataclass(frozen=True)
class RetentionDecision:
    """Whether a project's oldest backup must be removed before a new one lands."""
    should_delete: bool
    path_to_delete: Optional[str] = None
    backup_count: int = 0
    max_backups: int = 0


@dataclass
class UploadResult:
    """Outcome of a successful archive upload."""
    destination_path: str
    size: int
    mode: UploadMode
    chunks: int = 1
    attempts: int = 1


@dataclass
class BackupResult:
    """Summary of one pipeline run."""
    project_name: str
    status: str = 'running'
    started_at: datetime = field(default_factory=datetime.now)
    completed_at: Optional[datetime] = None
    destination_path: Optional[str] = None
    size: Optional[int] = None
    upload: Optional[UploadResult] = None
    retention: Optional[RetentionDecision] = None
    error_message: Optional[str] = None
    logs: List[str] = field(default_factory=list)

    @property
    def succeeded(self) -> bool:
        return self.status == 'success'
