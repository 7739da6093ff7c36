"""Command line entry point - back up one directory and exit."""

import logging
import sys

import click

from folderbackup import __version__, create_pipeline
from folderbackup.config import ConfigurationError
from folderbackup.backup.compression import ArchiveError
from folderbackup.backup.storage import StorageError
from folderbackup.backup.uploader import UploadError


logger = logging.getLogger(__name__)


@click.command()
@click.argument('source_dir', type=click.Path(file_okay=False))
@click.option('--config-name', '-c', default=None,
              type=click.Choice(['development', 'production', 'testing', 'default']),
              help='Configuration to load (default: $FOLDERBACKUP_ENV or production)')
@click.option('--verbose', '-v', is_flag=True, help='Show debug logging on console')
@click.version_option(version=__version__, prog_name='folderbackup')
def main(source_dir, config_name, verbose):
    """Archive SOURCE_DIR and upload it to remote storage.

    The archive lands in {backup_root}/{folder name}/{date}/ on the configured
    storage backend. Older backups of the same folder are rotated out once
    more than MAX_BACKUPS exist.

    Examples:
        # Back up a project with the production configuration
        folderbackup ~/projects/website

        # Back up to the local development storage
        folderbackup ~/projects/website --config-name development
    """
    overrides = {'debug': True} if verbose else {}

    try:
        pipeline = create_pipeline(config_name, **overrides)
        result = pipeline.run(source_dir)
    except ConfigurationError as e:
        click.echo(f"Configuration error: {e}", err=True)
        sys.exit(1)
    except (ArchiveError, UploadError, StorageError) as e:
        # Already logged by the pipeline
        click.echo(f"Backup failed: {e}", err=True)
        sys.exit(1)

    click.echo(f"Uploaded {result.destination_path} ({result.size} bytes)")


if __name__ == '__main__':
    main()
