"""
Archiver for backup sources.

Packs the full recursive contents of a directory into one file.

Supports multiple formats:
- zip: Standard zip compression (default)
- tar.gz: Gzip compressed tar
- tar.bz2: Bzip2 compressed tar
- tar.xz: LZMA compressed tar
- none: No compression (tar only)
"""

import logging
import os
import tarfile
import zipfile
from pathlib import Path


logger = logging.getLogger(__name__)


class ArchiveError(Exception):
    """Raised when archive creation fails."""
    pass


EXTENSIONS = {
    'zip': 'zip',
    'tar.gz': 'tar.gz',
    'tar.bz2': 'tar.bz2',
    'tar.xz': 'tar.xz',
    'none': 'tar'
}


def create_archive(source_dir: str, output_path: str, compression_format: str = 'zip') -> str:
    """
    Create a compressed archive of a directory.

    Entries are stored relative to source_dir, so the archive root holds the
    directory's contents.

    Args:
        source_dir: Directory to archive
        output_path: Path where archive should be created (without extension)
        compression_format: Format to use ('zip', 'tar.gz', 'tar.bz2', 'tar.xz', 'none')

    Returns:
        Full path to the created archive file

    Raises:
        ArchiveError: If archive creation fails
        ValueError: If compression_format is invalid
    """
    if compression_format not in EXTENSIONS:
        raise ValueError(
            f"Invalid compression format: {compression_format}. "
            f"Valid options: {list(EXTENSIONS.keys())}"
        )

    source = Path(source_dir)
    if not source.is_dir():
        raise ArchiveError(f"Source is not a directory: {source_dir}")

    archive_path = f"{output_path}.{EXTENSIONS[compression_format]}"
    handler = _create_zip if compression_format == 'zip' else _create_tar

    try:
        handler(source, archive_path, compression_format)
        return archive_path
    except Exception as e:
        # Clean up partial archive on failure
        if os.path.exists(archive_path):
            try:
                os.remove(archive_path)
            except OSError:
                logger.warning(f"Failed to remove partial archive: {archive_path}")
        raise ArchiveError(f"Failed to create archive: {e}")


def _create_zip(source: Path, archive_path: str, compression_format: str):
    """
    Create a ZIP archive.

    Args:
        source: Directory to add
        archive_path: Output archive path
        compression_format: Not used for zip, kept for interface consistency
    """
    archive = Path(archive_path).resolve()

    with zipfile.ZipFile(archive_path, 'w', zipfile.ZIP_DEFLATED) as zipf:
        for item in sorted(source.rglob('*')):
            # The archive may be written inside the source tree
            if item.resolve() == archive:
                continue
            relative_path = item.relative_to(source).as_posix()
            if item.is_dir():
                zipf.write(item, relative_path + '/')
            elif item.is_file():
                zipf.write(item, relative_path)


def _create_tar(source: Path, archive_path: str, compression_format: str):
    """
    Create a TAR archive with optional compression.

    Args:
        source: Directory to add
        archive_path: Output archive path
        compression_format: Compression format ('tar.gz', 'tar.bz2', 'tar.xz', 'none')
    """
    mode_map = {
        'tar.gz': 'w:gz',
        'tar.bz2': 'w:bz2',
        'tar.xz': 'w:xz',
        'none': 'w'
    }

    mode = mode_map.get(compression_format, 'w:gz')
    archive = Path(archive_path).resolve()

    with tarfile.open(archive_path, mode) as tar:
        for item in sorted(source.iterdir()):
            if item.resolve() == archive:
                continue
            tar.add(item, arcname=item.name, recursive=True)


def archive_filename(source_dir: str, compression_format: str) -> str:
    """
    Archive file name for a source directory.

    Format: "{folder name} backup.{ext}"
    """
    folder_name = Path(source_dir).resolve().name
    extension = EXTENSIONS.get(compression_format, 'zip')
    return f"{folder_name} backup.{extension}"


def strip_archive_extension(filename: str) -> str:
    """
    Strip archive extension from filename.

    Handles multi-part extensions like .tar.gz, .tar.bz2, .tar.xz
    """
    for extension in ('tar.gz', 'tar.bz2', 'tar.xz', 'zip', 'tar'):
        if filename.endswith('.' + extension):
            return filename[:-(len(extension) + 1)]
    return os.path.splitext(filename)[0]


class Archiver:
    """Produces one archive per backup run."""

    def __init__(self, compression_format: str = 'zip'):
        if compression_format not in EXTENSIONS:
            raise ValueError(
                f"Invalid compression format: {compression_format}. "
                f"Valid options: {list(EXTENSIONS.keys())}"
            )
        self.compression_format = compression_format

    def archive(self, source_dir: str, output_dir: str) -> str:
        """
        Archive source_dir into output_dir.

        Returns:
            Path to the created archive

        Raises:
            ArchiveError: If archive creation fails
        """
        filename = archive_filename(source_dir, self.compression_format)
        output_path = os.path.join(output_dir, strip_archive_extension(filename))

        logger.info(f"Archiving folder {Path(source_dir).name}...")
        archive_path = create_archive(source_dir, output_path, self.compression_format)
        logger.info(f"Successfully archived to {archive_path}")

        return archive_path
