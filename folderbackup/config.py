import os
from dataclasses import dataclass, fields
from typing import Optional


class ConfigurationError(Exception):
    """Raised when the backup configuration is missing or invalid."""
    pass


# S3 rejects multipart parts smaller than this (except the last one)
S3_MIN_PART_SIZE = 5 * 1024 * 1024

STORAGE_BACKENDS = ('dropbox', 's3', 'local')
RETENTION_ORDERS = ('name', 'date')
COMPRESSION_FORMATS = ('zip', 'tar.gz', 'tar.bz2', 'tar.xz', 'none')

# Read from the environment as strings, parsed when settings are loaded
INT_SETTINGS = ('chunk_size', 'chunk_threshold', 'upload_retries', 'request_timeout', 'max_backups')


def _parse_int(name, value):
    if value is None or isinstance(value, int):
        return value
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ConfigurationError(f"{name.upper()} must be an integer, got: {value!r}")


class Config:
    """Base configuration"""

    # Remote storage
    STORAGE_BACKEND = os.environ.get('STORAGE_BACKEND') or 'dropbox'
    BACKUP_ROOT = os.environ.get('BACKUP_ROOT') or '/backups'

    # Credentials: ACCESS_TOKEN wins over the token file
    ACCESS_TOKEN = os.environ.get('ACCESS_TOKEN')
    ACCESS_TOKEN_FILE = os.environ.get('ACCESS_TOKEN_FILE') or 'token'

    # S3 backend
    S3_BUCKET = os.environ.get('S3_BUCKET')
    S3_REGION = os.environ.get('S3_REGION') or 'us-east-1'
    AWS_ACCESS_KEY_ID = os.environ.get('AWS_ACCESS_KEY_ID')
    AWS_SECRET_ACCESS_KEY = os.environ.get('AWS_SECRET_ACCESS_KEY')

    # Local backend
    LOCAL_STORAGE_DIR = os.environ.get('LOCAL_STORAGE_DIR')

    # Upload
    CHUNK_SIZE = os.environ.get('CHUNK_SIZE') or 128 * 1024
    CHUNK_THRESHOLD = os.environ.get('CHUNK_THRESHOLD') or None
    UPLOAD_RETRIES = os.environ.get('UPLOAD_RETRIES') or 0
    REQUEST_TIMEOUT = os.environ.get('REQUEST_TIMEOUT') or 60

    # Retention
    MAX_BACKUPS = os.environ.get('MAX_BACKUPS') or 5
    DATE_FORMAT = os.environ.get('DATE_FORMAT') or '%m%d%Y'
    RETENTION_ORDER = os.environ.get('RETENTION_ORDER') or 'name'

    # Archive/Temp
    COMPRESSION_FORMAT = os.environ.get('COMPRESSION_FORMAT') or 'zip'
    TEMP_DIR = os.environ.get('TEMP_DIR') or os.path.join(os.getcwd(), 'temp')

    # Logging
    LOG_DIR = os.environ.get('LOG_DIR')
    DEBUG = False


class DevelopmentConfig(Config):
    """Development configuration"""
    DEBUG = True

    # Keep everything on disk next to the project
    BASE_DIR = os.path.abspath(os.path.dirname(os.path.dirname(__file__)))
    DATA_DIR = os.path.join(BASE_DIR, 'data')
    STORAGE_BACKEND = os.environ.get('STORAGE_BACKEND') or 'local'
    LOCAL_STORAGE_DIR = os.environ.get('LOCAL_STORAGE_DIR') or os.path.join(DATA_DIR, 'remote')
    TEMP_DIR = os.path.join(DATA_DIR, 'temp')
    LOG_DIR = os.environ.get('LOG_DIR') or os.path.join(DATA_DIR, 'logs')


class ProductionConfig(Config):
    """Production configuration"""
    DEBUG = False


class TestingConfig(Config):
    """Testing configuration"""
    STORAGE_BACKEND = 'local'
    LOCAL_STORAGE_DIR = None
    ACCESS_TOKEN = None
    CHUNK_SIZE = 1024 * 1024
    CHUNK_THRESHOLD = None
    MAX_BACKUPS = 3
    UPLOAD_RETRIES = 0
    LOG_DIR = None


# Configuration dictionary
config = {
    'development': DevelopmentConfig,
    'production': ProductionConfig,
    'testing': TestingConfig,
    'default': ProductionConfig
}


@dataclass
class BackupSettings:
    """
    Explicit settings for one pipeline run.

    Built from a config class by load_settings() and passed to everything
    that needs configuration.
    """
    storage_backend: str = 'dropbox'
    backup_root: str = '/backups'
    access_token: Optional[str] = None
    access_token_file: str = 'token'
    s3_bucket: Optional[str] = None
    s3_region: str = 'us-east-1'
    aws_access_key_id: Optional[str] = None
    aws_secret_access_key: Optional[str] = None
    local_storage_dir: Optional[str] = None
    chunk_size: int = 128 * 1024
    chunk_threshold: Optional[int] = None
    upload_retries: int = 0
    request_timeout: int = 60
    max_backups: int = 5
    date_format: str = '%m%d%Y'
    retention_order: str = 'name'
    compression_format: str = 'zip'
    temp_dir: str = 'temp'
    log_dir: Optional[str] = None
    debug: bool = False

    @classmethod
    def from_object(cls, obj, **overrides) -> 'BackupSettings':
        """
        Build settings from a config class (upper-case attributes).

        Args:
            obj: Config class or instance
            **overrides: Field values that replace the config values

        Returns:
            BackupSettings instance

        Raises:
            ConfigurationError: If an override is unknown or a number does not parse
        """
        values = {}
        for f in fields(cls):
            attr = f.name.upper()
            if hasattr(obj, attr):
                values[f.name] = getattr(obj, attr)

        unknown = set(overrides) - {f.name for f in fields(cls)}
        if unknown:
            raise ConfigurationError(f"Unknown settings: {sorted(unknown)}")
        values.update(overrides)

        for name in INT_SETTINGS:
            if name in values:
                values[name] = _parse_int(name, values[name])

        return cls(**values)

    @property
    def effective_chunk_threshold(self) -> int:
        """Payloads above this size use a chunked upload session."""
        if self.chunk_threshold is None:
            return self.chunk_size
        return self.chunk_threshold

    def validate(self):
        """
        Check settings that do not need the remote service.

        Raises:
            ConfigurationError: If a setting is invalid
        """
        if self.storage_backend not in STORAGE_BACKENDS:
            raise ConfigurationError(
                f"Invalid storage backend: {self.storage_backend}. "
                f"Valid options: {list(STORAGE_BACKENDS)}"
            )

        if self.chunk_size <= 0:
            raise ConfigurationError(f"Chunk size must be positive, got {self.chunk_size}")

        if self.effective_chunk_threshold < 0:
            raise ConfigurationError("Chunk threshold must not be negative")

        if self.max_backups < 1:
            raise ConfigurationError(f"Max backups must be at least 1, got {self.max_backups}")

        if self.upload_retries < 0:
            raise ConfigurationError("Upload retries must not be negative")

        if self.request_timeout <= 0:
            raise ConfigurationError("Request timeout must be positive")

        if self.retention_order not in RETENTION_ORDERS:
            raise ConfigurationError(
                f"Invalid retention order: {self.retention_order}. "
                f"Valid options: {list(RETENTION_ORDERS)}"
            )

        if self.compression_format not in COMPRESSION_FORMATS:
            raise ConfigurationError(
                f"Invalid compression format: {self.compression_format}. "
                f"Valid options: {list(COMPRESSION_FORMATS)}"
            )

        if self.storage_backend == 's3':
            if not self.s3_bucket:
                raise ConfigurationError("S3_BUCKET is required for the s3 backend")
            if self.chunk_size < S3_MIN_PART_SIZE:
                raise ConfigurationError(
                    f"Chunk size for the s3 backend must be at least {S3_MIN_PART_SIZE} bytes"
                )

        if self.storage_backend == 'local' and not self.local_storage_dir:
            raise ConfigurationError("LOCAL_STORAGE_DIR is required for the local backend")

    def resolve_access_token(self) -> str:
        """
        Return the Dropbox access token, reading the token file if needed.

        Raises:
            ConfigurationError: If no token is configured
        """
        if self.access_token:
            return self.access_token.strip()
        return read_access_token(self.access_token_file)


def read_access_token(path: str) -> str:
    """
    Read an opaque access token from a local file.

    Args:
        path: Path to the token file

    Returns:
        Token with surrounding whitespace removed

    Raises:
        ConfigurationError: If the file is missing or empty
    """
    try:
        with open(path, 'r', encoding='utf-8') as f:
            token = f.read().strip()
    except FileNotFoundError:
        raise ConfigurationError(f"Access token file not found: {path}")
    except OSError as e:
        raise ConfigurationError(f"Failed to read access token file {path}: {e}")

    if not token:
        raise ConfigurationError(f"Access token file is empty: {path}")

    return token


def load_settings(config_name: Optional[str] = None, **overrides) -> BackupSettings:
    """
    Load and validate settings for a named configuration.

    Args:
        config_name: Key into the config dict (defaults to FOLDERBACKUP_ENV or 'production')
        **overrides: Field values that replace the configured ones

    Returns:
        Validated BackupSettings

    Raises:
        ConfigurationError: If the configuration name or a setting is invalid
    """
    if config_name is None:
        config_name = os.environ.get('FOLDERBACKUP_ENV', 'default')

    if config_name not in config:
        raise ConfigurationError(
            f"Unknown configuration: {config_name}. Valid options: {list(config.keys())}"
        )

    settings = BackupSettings.from_object(config[config_name], **overrides)
    settings.validate()
    return settings
