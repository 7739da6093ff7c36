"""
Shared pytest fixtures for folderbackup tests.

This module provides fixtures for:
- Test settings with local storage and scratch directories
- An in-memory storage client that records every remote call
- Mock fixtures for external services (S3)
- Temporary source trees and archives
"""

import posixpath

import pytest
import boto3
from moto import mock_aws

from folderbackup.config import load_settings
from folderbackup.models import RemoteFolderEntry, BackupArchive
from folderbackup.backup.storage import RemoteStorage, StorageError, FolderNotFoundError


def _norm(path):
    parts = [p for p in path.split('/') if p]
    return '/' + '/'.join(parts)


class RecordingStorage(RemoteStorage):
    """
    In-memory remote storage.

    Records every call in `calls` as (method, args) and enforces session
    offsets the way a real remote does. Methods listed in `fail_on` raise
    StorageError.
    """

    def __init__(self):
        self.objects = {}
        self.folders = set()
        self.sessions = {}
        self.calls = []
        self.fail_on = set()
        self._next_session = 0

    # Test helpers

    def add_folder(self, path):
        path = _norm(path)
        while path != '/':
            self.folders.add(path)
            path = posixpath.dirname(path)

    def add_object(self, path, data=b''):
        path = _norm(path)
        self.objects[path] = data
        self.add_folder(posixpath.dirname(path))

    def call_names(self):
        return [name for name, _ in self.calls]

    def session_calls(self):
        return [name for name in self.call_names() if name.startswith('session_')]

    # RemoteStorage

    def _record(self, name, *args):
        self.calls.append((name, args))
        if name in self.fail_on:
            raise StorageError(f"{name} failed")

    def upload_whole(self, path, data, overwrite=True):
        self._record('upload_whole', path, len(data), overwrite)
        if not overwrite and _norm(path) in self.objects:
            raise StorageError(f"conflict: {path}")
        self.add_object(path, bytes(data))

    def session_start(self, data):
        self._record('session_start', len(data))
        self._next_session += 1
        session_id = f"session-{self._next_session}"
        self.sessions[session_id] = bytearray(data)
        return session_id

    def session_append(self, session_id, offset, data):
        self._record('session_append', session_id, offset, len(data))
        self._check(session_id, offset)
        self.sessions[session_id].extend(data)

    def session_finish(self, session_id, offset, data, path):
        self._record('session_finish', session_id, offset, len(data), path)
        self._check(session_id, offset)
        payload = self.sessions.pop(session_id)
        payload.extend(data)
        self.add_object(path, bytes(payload))

    def _check(self, session_id, offset):
        if session_id not in self.sessions:
            raise StorageError(f"unknown session: {session_id}")
        if offset != len(self.sessions[session_id]):
            raise StorageError(f"incorrect_offset: {offset}")

    def list_folder(self, path):
        self._record('list_folder', path)
        path = _norm(path)
        if path != '/' and path not in self.folders:
            raise FolderNotFoundError(f"not_found: {path}")

        entries = {}
        for folder in self.folders:
            if posixpath.dirname(folder) == path:
                entries[posixpath.basename(folder)] = True
        for obj in self.objects:
            if posixpath.dirname(obj) == path:
                entries[posixpath.basename(obj)] = False

        return [RemoteFolderEntry(name=name, is_folder=is_folder) for name, is_folder in sorted(entries.items())]

    def delete(self, path):
        self._record('delete', path)
        path = _norm(path)
        if path not in self.folders and path not in self.objects:
            raise FolderNotFoundError(f"not_found: {path}")

        prefix = path + '/'
        self.objects = {k: v for k, v in self.objects.items() if k != path and not k.startswith(prefix)}
        self.folders = {f for f in self.folders if f != path and not f.startswith(prefix)}


@pytest.fixture
def recording_storage():
    """In-memory storage client that records calls."""
    return RecordingStorage()


@pytest.fixture
def settings(tmp_path):
    """
    Testing settings with local storage under tmp_path.

    Chunk size is 1 MiB; retention keeps 3 backups.
    """
    return load_settings(
        'testing',
        local_storage_dir=str(tmp_path / 'remote'),
        temp_dir=str(tmp_path / 'temp'),
    )


@pytest.fixture
def source_tree(tmp_path):
    """
    Create a project directory to back up.

    Creates:
    - website/index.html
    - website/notes.txt
    - website/assets/app.js
    - website/empty/
    """
    project = tmp_path / 'website'
    project.mkdir()
    (project / 'index.html').write_text('<html>home</html>')
    (project / 'notes.txt').write_text('Test content')

    assets = project / 'assets'
    assets.mkdir()
    (assets / 'app.js').write_text('console.log("hi");')

    (project / 'empty').mkdir()

    return project


@pytest.fixture
def make_archive(tmp_path):
    """Factory creating a local archive file of a given size."""
    def _make(size, destination='/backups/website/01152024/website backup.zip'):
        path = tmp_path / f'archive_{size}.zip'
        path.write_bytes((b'0123456789abcdef' * (size // 16 + 1))[:size])
        return BackupArchive(local_path=str(path), destination_path=destination)

    return _make


@pytest.fixture
def mock_s3():
    """
    Mock AWS S3 service using moto.

    Creates a test bucket 'test-bucket' in us-east-1 region.
    """
    with mock_aws():
        s3 = boto3.resource('s3', region_name='us-east-1')
        s3.create_bucket(Bucket='test-bucket')

        yield s3
