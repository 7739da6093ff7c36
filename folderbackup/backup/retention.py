"""
Retention policy enforcement for backups.

Caps the number of backup folders kept per project. Every backup run lands in
{backup_root}/{project}/{date_stamp}/; when a project holds more folders than
allowed, the oldest one is deleted before the new backup is uploaded.

Ordering of backup folders:
- 'name': plain lexicographic order of the folder names. This matches
  chronological order only while the date format is zero-padded and puts the
  most significant field first, which '%m%d%Y' does not do across years.
- 'date': folder names are parsed with the configured date format; folders
  whose name does not parse are never picked for deletion.
"""

import logging
import posixpath
from datetime import datetime
from typing import List

from folderbackup.models import RemoteFolderEntry, RetentionDecision
from .storage import RemoteStorage, StorageError, FolderNotFoundError


logger = logging.getLogger(__name__)


class RetentionError(Exception):
    """Raised when the retention policy cannot be checked or enforced."""
    pass


class BackupNotFoundError(RetentionError):
    """Raised when a project has no backup folder to rotate."""
    pass


class RetentionManager:
    """
    Manages backup rotation for a project on remote storage.
    """

    def __init__(self, client: RemoteStorage, backup_root: str = '/backups', order: str = 'name',
                 date_format: str = '%m%d%Y'):
        """
        Initialize retention manager.

        Args:
            client: Remote storage client
            backup_root: Remote folder holding one folder per project
            order: Folder ordering, 'name' or 'date'
            date_format: strptime format of backup folder names (used by 'date')
        """
        if order not in ('name', 'date'):
            raise ValueError(f"Invalid retention order: {order}")

        self.client = client
        self.backup_root = '/' + backup_root.strip('/')
        self.order = order
        self.date_format = date_format

    def project_path(self, project_name: str) -> str:
        return posixpath.join(self.backup_root, project_name)

    def exceeds_limit(self, project_name: str, max_backups: int) -> bool:
        """
        Check whether a project holds more backups than allowed.

        Args:
            project_name: Project folder name
            max_backups: Maximum number of backup folders to keep

        Returns:
            True if the project folder has more than max_backups folders;
            False for a project that has never been backed up

        Raises:
            RetentionError: If a listing fails
        """
        return self._count_backups(project_name) > max_backups

    def oldest_backup_path(self, project_name: str) -> str:
        """
        Find the oldest backup folder of a project.

        Returns:
            Full remote path of the folder that sorts first

        Raises:
            BackupNotFoundError: If the project has no backup folder
            RetentionError: If the listing fails
        """
        folders = self._backup_folders(project_name)
        candidates = self._sort(folders)

        if not candidates:
            raise BackupNotFoundError(f"No backup folders found for project: {project_name}")

        return posixpath.join(self.project_path(project_name), candidates[0])

    def decide(self, project_name: str, max_backups: int) -> RetentionDecision:
        """
        Compute the retention decision without deleting anything.

        Raises:
            RetentionError: If a listing fails
        """
        count = self._count_backups(project_name)

        if count <= max_backups:
            return RetentionDecision(should_delete=False, backup_count=count, max_backups=max_backups)

        return RetentionDecision(
            should_delete=True,
            path_to_delete=self.oldest_backup_path(project_name),
            backup_count=count,
            max_backups=max_backups
        )

    def rotate(self, project_name: str, max_backups: int) -> RetentionDecision:
        """
        Delete the oldest backup folder if the project is over its limit.

        Args:
            project_name: Project folder name
            max_backups: Maximum number of backup folders to keep

        Returns:
            The decision that was applied

        Raises:
            RetentionError: If a listing or the delete fails
        """
        decision = self.decide(project_name, max_backups)

        if not decision.should_delete:
            logger.info(
                f"Retention for {project_name}: {decision.backup_count}/{max_backups} backups, nothing to delete"
            )
            return decision

        logger.info(
            f"Retention for {project_name}: {decision.backup_count}/{max_backups} backups, "
            f"deleting {decision.path_to_delete}"
        )

        try:
            self.client.delete(decision.path_to_delete)
        except StorageError as e:
            raise RetentionError(f"Failed to delete {decision.path_to_delete}: {e}")

        return decision

    def _count_backups(self, project_name: str) -> int:
        try:
            root_entries = self.client.list_folder(self.backup_root)
        except FolderNotFoundError:
            logger.debug(f"Backup root {self.backup_root} does not exist yet")
            return 0
        except StorageError as e:
            raise RetentionError(f"Failed to list {self.backup_root}: {e}")

        if not any(e.is_folder and e.name == project_name for e in root_entries):
            logger.debug(f"No backups found for new project: {project_name}")
            return 0

        return len(self._backup_folders(project_name))

    def _backup_folders(self, project_name: str) -> List[RemoteFolderEntry]:
        path = self.project_path(project_name)
        try:
            entries = self.client.list_folder(path)
        except FolderNotFoundError:
            return []
        except StorageError as e:
            raise RetentionError(f"Failed to list {path}: {e}")

        return [e for e in entries if e.is_folder]

    def _sort(self, folders: List[RemoteFolderEntry]) -> List[str]:
        names = [f.name for f in folders]

        if self.order == 'name':
            return sorted(names)

        dated = []
        for name in names:
            try:
                dated.append((datetime.strptime(name, self.date_format), name))
            except ValueError:
                logger.warning(f"Skipping backup folder with unexpected name: {name}")

        return [name for _, name in sorted(dated)]
