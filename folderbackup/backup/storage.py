"""
Remote storage clients for backup archives.

Every client exposes the same capability set:
upload_whole, session_start/append/finish, list_folder and delete.

Supports:
- DropboxStorage: Dropbox HTTP API v2
- S3Storage: AWS S3 (folders are '/'-delimited key prefixes)
- LocalStorage: A local directory standing in for the remote
"""

import abc
import json
import os
import shutil
import uuid
from pathlib import Path
from typing import Dict, Any, List

import boto3
import requests
from botocore.config import Config as BotoConfig
from botocore.exceptions import ClientError, BotoCoreError

from folderbackup.config import ConfigurationError
from folderbackup.models import RemoteFolderEntry


class StorageError(Exception):
    """Raised when a storage operation fails."""
    pass


class FolderNotFoundError(StorageError):
    """Raised when a remote path does not exist."""
    pass


def _normalize_path(path: str) -> str:
    """Return path as '/a/b' with no trailing slash ('' for the root)."""
    parts = [p for p in path.split('/') if p]
    if not parts:
        return ''
    return '/' + '/'.join(parts)


class RemoteStorage(abc.ABC):
    """Interface of a remote storage client used by the uploader and retention."""

    @abc.abstractmethod
    def upload_whole(self, path: str, data: bytes, overwrite: bool = True):
        """Upload a payload in one request."""

    @abc.abstractmethod
    def session_start(self, data: bytes) -> str:
        """Open an upload session with its first chunk and return the session id."""

    @abc.abstractmethod
    def session_append(self, session_id: str, offset: int, data: bytes):
        """Append a chunk at the given offset of an open session."""

    @abc.abstractmethod
    def session_finish(self, session_id: str, offset: int, data: bytes, path: str):
        """Commit the last chunk and materialize the object at path."""

    @abc.abstractmethod
    def list_folder(self, path: str) -> List[RemoteFolderEntry]:
        """List the direct children of a folder."""

    @abc.abstractmethod
    def delete(self, path: str):
        """Delete a file or a folder with all of its contents."""


class DropboxStorage(RemoteStorage):
    """
    Client for the Dropbox HTTP API v2.

    Authenticates with a single bearer token. Every request carries a timeout,
    so a stalled call surfaces as StorageError instead of blocking forever.
    """

    API_URL = 'https://api.dropboxapi.com/2'
    CONTENT_URL = 'https://content.dropboxapi.com/2'

    def __init__(self, access_token: str, timeout: int = 60, session: requests.Session = None):
        """
        Initialize Dropbox storage client.

        Args:
            access_token: Dropbox OAuth2 bearer token
            timeout: Timeout in seconds for every request
            session: Optional requests session (for connection reuse)
        """
        if not access_token:
            raise StorageError("Dropbox access token is required")

        self.timeout = timeout
        self.http = session or requests.Session()
        self.http.headers.update({'Authorization': f'Bearer {access_token}'})

    def upload_whole(self, path: str, data: bytes, overwrite: bool = True):
        self._content_call('files/upload', {
            'path': _normalize_path(path),
            'mode': 'overwrite' if overwrite else 'add',
            'autorename': False,
            'mute': True
        }, data)

    def session_start(self, data: bytes) -> str:
        response = self._content_call('files/upload_session/start', {'close': False}, data)
        session_id = response.get('session_id')
        if not session_id:
            raise StorageError("Dropbox did not return an upload session id")
        return session_id

    def session_append(self, session_id: str, offset: int, data: bytes):
        self._content_call('files/upload_session/append_v2', {
            'cursor': {'session_id': session_id, 'offset': offset},
            'close': False
        }, data)

    def session_finish(self, session_id: str, offset: int, data: bytes, path: str):
        self._content_call('files/upload_session/finish', {
            'cursor': {'session_id': session_id, 'offset': offset},
            'commit': {
                'path': _normalize_path(path),
                'mode': 'overwrite',
                'autorename': False,
                'mute': True
            }
        }, data)

    def list_folder(self, path: str) -> List[RemoteFolderEntry]:
        entries = []
        response = self._api_call('files/list_folder', {'path': _normalize_path(path)})

        while True:
            for entry in response.get('entries', []):
                entries.append(RemoteFolderEntry(
                    name=entry['name'],
                    is_folder=entry.get('.tag') == 'folder'
                ))

            if not response.get('has_more'):
                break

            response = self._api_call('files/list_folder/continue', {'cursor': response['cursor']})

        return entries

    def delete(self, path: str):
        self._api_call('files/delete_v2', {'path': _normalize_path(path)})

    def _api_call(self, endpoint: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        """POST a JSON RPC request to the API host."""
        return self._post(
            f"{self.API_URL}/{endpoint}",
            headers={'Content-Type': 'application/json'},
            data=json.dumps(payload)
        )

    def _content_call(self, endpoint: str, arg: Dict[str, Any], data: bytes) -> Dict[str, Any]:
        """POST a content upload request; arguments travel in the Dropbox-API-Arg header."""
        return self._post(
            f"{self.CONTENT_URL}/{endpoint}",
            headers={
                'Content-Type': 'application/octet-stream',
                'Dropbox-API-Arg': json.dumps(arg)
            },
            data=data
        )

    def _post(self, url: str, headers: Dict[str, str], data) -> Dict[str, Any]:
        try:
            response = self.http.post(url, headers=headers, data=data, timeout=self.timeout)
        except requests.Timeout as e:
            raise StorageError(f"Dropbox request timed out after {self.timeout}s: {e}")
        except requests.RequestException as e:
            raise StorageError(f"Dropbox request failed: {e}")

        if response.status_code == 409:
            summary = self._error_summary(response)
            if 'not_found' in summary:
                raise FolderNotFoundError(f"Dropbox path not found ({summary})")
            raise StorageError(f"Dropbox rejected request ({summary})")

        if response.status_code >= 400:
            raise StorageError(
                f"Dropbox request failed ({response.status_code}): {response.text[:200]}"
            )

        if not response.content:
            return {}

        try:
            return response.json()
        except ValueError:
            return {}

    @staticmethod
    def _error_summary(response) -> str:
        try:
            return response.json().get('error_summary', 'unknown')
        except ValueError:
            return response.text[:200] or 'unknown'


class S3Storage(RemoteStorage):
    """
    Client for AWS S3.

    Remote paths map to keys without the leading slash. S3 needs the object key
    when a multipart upload is created, so sessions upload to a staging key
    under {staging_prefix} and the finished object is copied onto its
    destination.
    """

    def __init__(self, access_key: str, secret_key: str, bucket_name: str, region: str = 'us-east-1',
                 timeout: int = 60, staging_prefix: str = '.upload_sessions/'):
        """
        Initialize S3 storage client.

        Args:
            access_key: AWS access key ID (None to use the default credential chain)
            secret_key: AWS secret access key
            bucket_name: S3 bucket name
            region: AWS region (default: us-east-1)
            timeout: Connect/read timeout in seconds
            staging_prefix: Key prefix for in-progress upload sessions
        """
        self.bucket_name = bucket_name
        self.region = region
        self.staging_prefix = staging_prefix
        self._sessions = {}

        boto_config = BotoConfig(
            region_name=region,
            connect_timeout=timeout,
            read_timeout=timeout,
            retries={'total_max_attempts': 1}
        )

        try:
            self.s3_client = boto3.client(
                's3',
                aws_access_key_id=access_key,
                aws_secret_access_key=secret_key,
                config=boto_config
            )
        except Exception as e:
            raise StorageError(f"Failed to initialize S3 client: {e}")

    @staticmethod
    def _key(path: str) -> str:
        return _normalize_path(path).lstrip('/')

    def upload_whole(self, path: str, data: bytes, overwrite: bool = True):
        key = self._key(path)

        if not overwrite and self._exists(key):
            raise StorageError(f"S3 object already exists: {key}")

        self._call('upload', self.s3_client.put_object, Bucket=self.bucket_name, Key=key, Body=data)

    def session_start(self, data: bytes) -> str:
        staging_key = f"{self.staging_prefix}{uuid.uuid4().hex}"

        response = self._call(
            'session start',
            self.s3_client.create_multipart_upload,
            Bucket=self.bucket_name,
            Key=staging_key
        )
        upload_id = response['UploadId']

        session = {'key': staging_key, 'upload_id': upload_id, 'parts': [], 'offset': 0}
        self._upload_part(session, data)
        self._sessions[upload_id] = session

        return upload_id

    def session_append(self, session_id: str, offset: int, data: bytes):
        session = self._get_session(session_id, offset)
        self._upload_part(session, data)

    def session_finish(self, session_id: str, offset: int, data: bytes, path: str):
        session = self._get_session(session_id, offset)

        if data:
            self._upload_part(session, data)

        self._call(
            'session finish',
            self.s3_client.complete_multipart_upload,
            Bucket=self.bucket_name,
            Key=session['key'],
            UploadId=session['upload_id'],
            MultipartUpload={'Parts': session['parts']}
        )

        # Managed copy switches to multipart copy for objects over 5GB
        self._call(
            'session commit',
            self.s3_client.copy,
            {'Bucket': self.bucket_name, 'Key': session['key']},
            self.bucket_name,
            self._key(path)
        )
        self._call('session cleanup', self.s3_client.delete_object, Bucket=self.bucket_name, Key=session['key'])

        del self._sessions[session_id]

    def list_folder(self, path: str) -> List[RemoteFolderEntry]:
        prefix = self._key(path)
        if prefix:
            prefix += '/'

        entries = []
        paginator = self.s3_client.get_paginator('list_objects_v2')

        try:
            for page in paginator.paginate(Bucket=self.bucket_name, Prefix=prefix, Delimiter='/'):
                for common in page.get('CommonPrefixes', []):
                    name = common['Prefix'][len(prefix):].rstrip('/')
                    if name and not common['Prefix'].startswith(self.staging_prefix):
                        entries.append(RemoteFolderEntry(name=name, is_folder=True))

                for obj in page.get('Contents', []):
                    name = obj['Key'][len(prefix):]
                    if name:
                        entries.append(RemoteFolderEntry(name=name, is_folder=False))
        except ClientError as e:
            error_code = e.response.get('Error', {}).get('Code', 'Unknown')
            raise StorageError(f"S3 list failed ({error_code}): {e}")
        except BotoCoreError as e:
            raise StorageError(f"S3 list failed: {e}")

        if prefix and not entries:
            raise FolderNotFoundError(f"S3 prefix not found: {prefix}")

        return entries

    def delete(self, path: str):
        key = self._key(path)
        if not key:
            raise StorageError("Refusing to delete the bucket root")

        keys = [key] if self._exists(key) else []

        paginator = self.s3_client.get_paginator('list_objects_v2')
        try:
            for page in paginator.paginate(Bucket=self.bucket_name, Prefix=key + '/'):
                keys.extend(obj['Key'] for obj in page.get('Contents', []))
        except ClientError as e:
            error_code = e.response.get('Error', {}).get('Code', 'Unknown')
            raise StorageError(f"S3 list failed ({error_code}): {e}")
        except BotoCoreError as e:
            raise StorageError(f"S3 list failed: {e}")

        if not keys:
            raise FolderNotFoundError(f"S3 path not found: {key}")

        # delete_objects accepts at most 1000 keys per request
        for start in range(0, len(keys), 1000):
            batch = keys[start:start + 1000]
            response = self._call(
                'delete',
                self.s3_client.delete_objects,
                Bucket=self.bucket_name,
                Delete={'Objects': [{'Key': k} for k in batch], 'Quiet': True}
            )
            errors = response.get('Errors') or []
            if errors:
                raise StorageError(f"S3 delete failed for {len(errors)} objects: {errors[0].get('Message')}")

    def _upload_part(self, session: Dict[str, Any], data: bytes):
        part_number = len(session['parts']) + 1

        response = self._call(
            'upload part',
            self.s3_client.upload_part,
            Bucket=self.bucket_name,
            Key=session['key'],
            PartNumber=part_number,
            UploadId=session['upload_id'],
            Body=data
        )

        session['parts'].append({'PartNumber': part_number, 'ETag': response['ETag']})
        session['offset'] += len(data)

    def _get_session(self, session_id: str, offset: int) -> Dict[str, Any]:
        session = self._sessions.get(session_id)
        if session is None:
            raise StorageError(f"Unknown upload session: {session_id}")

        if offset != session['offset']:
            raise StorageError(
                f"Incorrect offset for session {session_id}: "
                f"got {offset}, expected {session['offset']}"
            )

        return session

    def _exists(self, key: str) -> bool:
        try:
            self.s3_client.head_object(Bucket=self.bucket_name, Key=key)
            return True
        except ClientError as e:
            error_code = e.response.get('Error', {}).get('Code', 'Unknown')
            if error_code in ('404', 'NoSuchKey', 'NotFound'):
                return False
            raise StorageError(f"S3 head failed ({error_code}): {e}")
        except BotoCoreError as e:
            raise StorageError(f"S3 head failed: {e}")

    @staticmethod
    def _call(operation: str, func, *args, **kwargs):
        try:
            return func(*args, **kwargs)
        except ClientError as e:
            error_code = e.response.get('Error', {}).get('Code', 'Unknown')
            raise StorageError(f"S3 {operation} failed ({error_code}): {e}")
        except BotoCoreError as e:
            raise StorageError(f"S3 {operation} failed: {e}")

    def check_bucket(self):
        """
        Make sure the configured bucket exists and is reachable.

        Raises:
            StorageError: If the bucket is missing, forbidden or unreachable
        """
        try:
            self.s3_client.head_bucket(Bucket=self.bucket_name)
        except ClientError as e:
            error_code = e.response.get('Error', {}).get('Code', 'Unknown')
            if error_code in ('404', 'NoSuchBucket'):
                raise StorageError(f"Bucket does not exist: {self.bucket_name}")
            if error_code == '403':
                raise StorageError(f"Access denied to bucket: {self.bucket_name}")
            raise StorageError(f"S3 bucket check failed ({error_code}): {e}")
        except BotoCoreError as e:
            raise StorageError(f"Failed to reach S3: {e}")


class LocalStorage(RemoteStorage):
    """
    Local directory used as remote storage.

    Remote paths are resolved below base_path. Upload sessions are staged in
    {base_path}/.upload_sessions/ and moved onto the destination on finish.
    """

    SESSIONS_DIR = '.upload_sessions'

    def __init__(self, base_path: str):
        """
        Initialize local storage handler.

        Args:
            base_path: Directory that plays the role of the remote root
        """
        self.base_path = Path(base_path)

        try:
            self.base_path.mkdir(parents=True, exist_ok=True)
        except Exception as e:
            raise StorageError(f"Failed to create local storage directory: {e}")

    def _resolve(self, path: str) -> Path:
        relative = _normalize_path(path).lstrip('/')
        if '..' in relative.split('/'):
            raise StorageError(f"Invalid path: {path}")
        return self.base_path / relative

    def _session_file(self, session_id: str) -> Path:
        return self.base_path / self.SESSIONS_DIR / f"{session_id}.part"

    def upload_whole(self, path: str, data: bytes, overwrite: bool = True):
        dest_path = self._resolve(path)

        if dest_path.exists() and not overwrite:
            raise StorageError(f"File already exists: {path}")

        try:
            dest_path.parent.mkdir(parents=True, exist_ok=True)
            dest_path.write_bytes(data)
        except PermissionError as e:
            raise StorageError(f"Permission denied writing to {dest_path}: {e}")
        except OSError as e:
            raise StorageError(f"Failed to store locally: {e}")

    def session_start(self, data: bytes) -> str:
        session_id = uuid.uuid4().hex
        session_file = self._session_file(session_id)

        try:
            session_file.parent.mkdir(parents=True, exist_ok=True)
            session_file.write_bytes(data)
        except OSError as e:
            raise StorageError(f"Failed to start upload session: {e}")

        return session_id

    def session_append(self, session_id: str, offset: int, data: bytes):
        session_file = self._check_session(session_id, offset)

        try:
            with open(session_file, 'ab') as f:
                f.write(data)
        except OSError as e:
            raise StorageError(f"Failed to append to upload session: {e}")

    def session_finish(self, session_id: str, offset: int, data: bytes, path: str):
        session_file = self._check_session(session_id, offset)
        dest_path = self._resolve(path)

        try:
            with open(session_file, 'ab') as f:
                f.write(data)
            dest_path.parent.mkdir(parents=True, exist_ok=True)
            os.replace(session_file, dest_path)
        except OSError as e:
            raise StorageError(f"Failed to finish upload session: {e}")

    def _check_session(self, session_id: str, offset: int) -> Path:
        session_file = self._session_file(session_id)

        if not session_file.exists():
            raise StorageError(f"Unknown upload session: {session_id}")

        committed = session_file.stat().st_size
        if offset != committed:
            raise StorageError(
                f"Incorrect offset for session {session_id}: got {offset}, expected {committed}"
            )

        return session_file

    def list_folder(self, path: str) -> List[RemoteFolderEntry]:
        folder = self._resolve(path)

        if not folder.is_dir():
            raise FolderNotFoundError(f"Folder not found: {path}")

        try:
            return [
                RemoteFolderEntry(name=item.name, is_folder=item.is_dir())
                for item in sorted(folder.iterdir())
                if not (folder == self.base_path and item.name == self.SESSIONS_DIR)
            ]
        except OSError as e:
            raise StorageError(f"Failed to list local folder: {e}")

    def delete(self, path: str):
        full_path = self._resolve(path)

        if full_path == self.base_path:
            raise StorageError("Refusing to delete the storage root")

        if not full_path.exists():
            raise FolderNotFoundError(f"Path not found: {path}")

        try:
            if full_path.is_dir():
                shutil.rmtree(full_path)
            else:
                full_path.unlink()
        except PermissionError as e:
            raise StorageError(f"Permission denied deleting {full_path}: {e}")
        except OSError as e:
            raise StorageError(f"Failed to delete local path: {e}")


def create_storage(settings) -> RemoteStorage:
    """
    Factory function to create the configured storage client.

    Args:
        settings: BackupSettings instance

    Returns:
        RemoteStorage instance

    Raises:
        ConfigurationError: If the backend is unknown, a credential is missing
            or the S3 bucket cannot be reached
    """
    backend = settings.storage_backend

    if backend == 'dropbox':
        return DropboxStorage(
            access_token=settings.resolve_access_token(),
            timeout=settings.request_timeout
        )
    elif backend == 's3':
        if not settings.s3_bucket:
            raise ConfigurationError("S3_BUCKET is required for the s3 backend")
        storage = S3Storage(
            access_key=settings.aws_access_key_id,
            secret_key=settings.aws_secret_access_key,
            bucket_name=settings.s3_bucket,
            region=settings.s3_region,
            timeout=settings.request_timeout
        )
        try:
            storage.check_bucket()
        except StorageError as e:
            raise ConfigurationError(str(e))
        return storage
    elif backend == 'local':
        if not settings.local_storage_dir:
            raise ConfigurationError("LOCAL_STORAGE_DIR is required for the local backend")
        return LocalStorage(settings.local_storage_dir)
    else:
        raise ConfigurationError(f"Unknown storage backend: {backend}")
