"""
Unit tests for archive upload (folderbackup/backup/uploader.py).

Tests size classification, chunk partitioning, the chunked upload session
state machine and BackupUploader dispatch.
"""

from unittest.mock import MagicMock, patch

import pytest

from folderbackup.models import UploadMode
from folderbackup.backup.storage import RemoteStorage, StorageError
from folderbackup.backup.uploader import (
    classify,
    chunk_count,
    partition,
    SingleShotUploader,
    ChunkedUploadSession,
    SessionState,
    BackupUploader,
    ProtocolError,
    UploadError
)


MB = 1024 * 1024


class TestClassify:
    """Test the single-shot/chunked decision."""

    @pytest.mark.parametrize("length,threshold,expected", [
        (0, 0, UploadMode.SMALL),
        (10 * 1024, MB, UploadMode.SMALL),
        (MB, MB, UploadMode.SMALL),
        (MB + 1, MB, UploadMode.CHUNKED),
        (3 * MB, MB, UploadMode.CHUNKED),
        (1, 0, UploadMode.CHUNKED),
    ])
    def test_classify(self, length, threshold, expected):
        assert classify(length, threshold) is expected


class TestPartition:
    """Test chunk partitioning."""

    @pytest.mark.parametrize("length,chunk_size,expected_chunks", [
        (1, 4, 1),
        (4, 4, 1),
        (5, 4, 2),
        (8, 4, 2),
        (9, 4, 3),
        (3 * MB, MB, 3),
    ])
    def test_chunk_count_is_ceiling(self, length, chunk_size, expected_chunks):
        assert chunk_count(length, chunk_size) == expected_chunks
        assert len(partition(b'x' * length, chunk_size)) == expected_chunks

    def test_partition_preserves_payload(self):
        data = bytes(range(256)) * 10
        chunks = partition(data, 300)

        assert b''.join(chunks) == data
        assert all(len(c) == 300 for c in chunks[:-1])
        assert 0 < len(chunks[-1]) <= 300

    def test_exact_multiple_has_no_empty_chunk(self):
        chunks = partition(b'a' * 12, 4)

        assert [len(c) for c in chunks] == [4, 4, 4]

    def test_empty_payload(self):
        assert partition(b'', 4) == []

    def test_invalid_chunk_size(self):
        with pytest.raises(ValueError):
            chunk_count(10, 0)


class TestSingleShotUploader:
    """Test one-request uploads."""

    def test_upload_overwrites(self, recording_storage):
        recording_storage.add_object('/backups/p/01012024/a.zip', b'old')

        SingleShotUploader(recording_storage).upload(b'new', '/backups/p/01012024/a.zip')

        assert recording_storage.objects['/backups/p/01012024/a.zip'] == b'new'
        assert recording_storage.calls[-1] == ('upload_whole', ('/backups/p/01012024/a.zip', 3, True))

    def test_upload_failure_raises_upload_error(self, recording_storage):
        recording_storage.fail_on.add('upload_whole')

        with pytest.raises(UploadError):
            SingleShotUploader(recording_storage).upload(b'data', '/backups/p/d/a.zip')


class TestChunkedUploadSession:
    """Test the start/append/finish state machine."""

    def test_three_chunks(self, recording_storage):
        data = b'a' * 4 + b'b' * 4 + b'c' * 2
        session = ChunkedUploadSession(recording_storage, len(data), 4)

        session.upload(data, '/backups/p/d/a.zip')

        assert recording_storage.session_calls() == ['session_start', 'session_append', 'session_finish']
        assert recording_storage.objects['/backups/p/d/a.zip'] == data
        assert session.state is SessionState.FINISHED
        assert session.bytes_uploaded == len(data)
        assert session.current_chunk_index == session.total_chunks - 1

    def test_offsets_equal_committed_bytes(self, recording_storage):
        data = b'x' * 17
        session = ChunkedUploadSession(recording_storage, len(data), 5)

        session.upload(data, '/backups/p/d/a.zip')

        offsets = [args[1] for name, args in recording_storage.calls if name in ('session_append', 'session_finish')]
        assert offsets == [5, 10, 15]

    def test_single_chunk_goes_from_start_to_finish(self, recording_storage):
        session = ChunkedUploadSession(recording_storage, 3, 4)

        session.upload(b'abc', '/backups/p/d/a.zip')

        assert recording_storage.session_calls() == ['session_start', 'session_finish']
        finish_args = recording_storage.calls[-1][1]
        assert finish_args == ('session-1', 3, 0, '/backups/p/d/a.zip')
        assert recording_storage.objects['/backups/p/d/a.zip'] == b'abc'

    def test_exact_multiple_finishes_with_full_chunk(self, recording_storage):
        session = ChunkedUploadSession(recording_storage, 8, 4)

        session.upload(b'12345678', '/backups/p/d/a.zip')

        assert recording_storage.session_calls() == ['session_start', 'session_finish']
        assert recording_storage.calls[-1][1][1:3] == (4, 4)

    def test_session_id_assigned_after_start(self, recording_storage):
        session = ChunkedUploadSession(recording_storage, 10, 4)
        assert session.session_id is None

        session_id = session.start(b'aaaa')

        assert session_id == 'session-1'
        assert session.session_id == 'session-1'
        assert session.state is SessionState.STARTED
        assert session.bytes_uploaded == 4

    def test_start_failure_leaves_no_session(self, recording_storage):
        recording_storage.fail_on.add('session_start')
        session = ChunkedUploadSession(recording_storage, 10, 4)

        with pytest.raises(UploadError):
            session.start(b'aaaa')

        assert session.session_id is None
        assert session.state is SessionState.FAILED

    def test_append_with_wrong_offset_fails_without_remote_call(self, recording_storage):
        session = ChunkedUploadSession(recording_storage, 12, 4)
        session.start(b'aaaa')

        with pytest.raises(ProtocolError, match='Offset mismatch'):
            session.append(8, b'bbbb')

        assert 'session_append' not in recording_storage.call_names()
        assert session.state is SessionState.FAILED

    def test_finish_with_wrong_offset_fails(self, recording_storage):
        session = ChunkedUploadSession(recording_storage, 12, 4)
        session.start(b'aaaa')
        session.append(4, b'bbbb')

        with pytest.raises(UploadError):
            session.finish(4, b'cccc', '/backups/p/d/a.zip')

        assert 'session_finish' not in recording_storage.call_names()

    def test_append_rejected_for_last_chunk(self, recording_storage):
        session = ChunkedUploadSession(recording_storage, 8, 4)
        session.start(b'aaaa')

        with pytest.raises(UploadError, match='interior'):
            session.append(4, b'bbbb')

    def test_finish_rejected_before_last_chunk(self, recording_storage):
        session = ChunkedUploadSession(recording_storage, 12, 4)
        session.start(b'aaaa')

        with pytest.raises(UploadError, match='last chunk'):
            session.finish(4, b'bbbb', '/backups/p/d/a.zip')

    def test_finish_rejects_short_payload(self, recording_storage):
        session = ChunkedUploadSession(recording_storage, 8, 4)
        session.start(b'aaaa')

        with pytest.raises(UploadError, match='expected 8'):
            session.finish(4, b'bb', '/backups/p/d/a.zip')

    def test_append_before_start_fails(self, recording_storage):
        session = ChunkedUploadSession(recording_storage, 12, 4)

        with pytest.raises(UploadError, match='not open'):
            session.append(0, b'aaaa')

    def test_empty_payload_is_rejected(self, recording_storage):
        session = ChunkedUploadSession(recording_storage, 0, 4)

        with pytest.raises(ProtocolError, match='empty payload'):
            session.upload(b'', '/backups/p/d/a.zip')

        assert recording_storage.calls == []
        assert session.state is SessionState.FAILED

    def test_session_is_consumed_once(self, recording_storage):
        session = ChunkedUploadSession(recording_storage, 4, 4)
        session.upload(b'aaaa', '/backups/p/d/a.zip')

        with pytest.raises(UploadError):
            session.finish(4, b'', '/backups/p/d/b.zip')

        with pytest.raises(UploadError):
            session.start(b'aaaa')

    def test_remote_offset_rejection_is_upload_error(self):
        client = MagicMock(spec=RemoteStorage)
        client.session_start.return_value = 'abc'
        client.session_append.side_effect = StorageError('incorrect_offset')
        session = ChunkedUploadSession(client, 12, 4)

        with pytest.raises(UploadError, match='incorrect_offset'):
            session.upload(b'x' * 12, '/backups/p/d/a.zip')

        client.session_finish.assert_not_called()
        assert session.state is SessionState.FAILED


class TestBackupUploader:
    """Test BackupUploader dispatch."""

    def test_small_archive_uses_single_shot(self, recording_storage, make_archive):
        archive = make_archive(10 * 1024)
        uploader = BackupUploader(recording_storage, chunk_size=MB)

        result = uploader.upload(archive)

        assert result.mode is UploadMode.SMALL
        assert result.chunks == 1
        assert recording_storage.session_calls() == []
        assert recording_storage.call_names() == ['upload_whole']
        assert len(recording_storage.objects[archive.destination_path]) == 10 * 1024

    def test_large_archive_uses_session(self, recording_storage, make_archive):
        archive = make_archive(3 * MB)
        uploader = BackupUploader(recording_storage, chunk_size=MB)

        result = uploader.upload(archive)

        assert result.mode is UploadMode.CHUNKED
        assert result.chunks == 3
        assert recording_storage.call_names() == ['session_start', 'session_append', 'session_finish']
        assert recording_storage.objects[archive.destination_path] == archive.read_bytes()

    def test_threshold_boundary_is_single_shot(self, recording_storage, make_archive):
        archive = make_archive(MB)

        result = BackupUploader(recording_storage, chunk_size=MB).upload(archive)

        assert result.mode is UploadMode.SMALL

    def test_custom_threshold_below_chunk_size(self, recording_storage, make_archive):
        archive = make_archive(2048)

        result = BackupUploader(recording_storage, chunk_size=MB, chunk_threshold=1024).upload(archive)

        assert result.mode is UploadMode.CHUNKED
        assert recording_storage.session_calls() == ['session_start', 'session_finish']

    def test_failure_is_not_retried_by_default(self, recording_storage, make_archive):
        recording_storage.fail_on.add('session_append')
        archive = make_archive(3 * MB)

        with pytest.raises(UploadError):
            BackupUploader(recording_storage, chunk_size=MB).upload(archive)

        assert recording_storage.call_names().count('session_start') == 1
        assert archive.destination_path not in recording_storage.objects

    def test_configured_retries_reupload_whole_archive(self, make_archive):
        client = MagicMock(spec=RemoteStorage)
        client.upload_whole.side_effect = [StorageError('timeout'), None]
        archive = make_archive(100)

        result = BackupUploader(client, chunk_size=MB, upload_retries=2).upload(archive)

        assert result.attempts == 2
        assert client.upload_whole.call_count == 2

    def test_retries_exhausted(self, make_archive):
        client = MagicMock(spec=RemoteStorage)
        client.upload_whole.side_effect = StorageError('quota')

        with pytest.raises(UploadError, match='quota'):
            BackupUploader(client, chunk_size=MB, upload_retries=1).upload(make_archive(100))

        assert client.upload_whole.call_count == 2

    def test_chunked_retry_opens_new_session(self, make_archive):
        client = MagicMock(spec=RemoteStorage)
        client.session_start.side_effect = ['session-1', 'session-2']
        client.session_append.side_effect = [StorageError('timeout'), None]
        archive = make_archive(3 * MB)

        result = BackupUploader(client, chunk_size=MB, upload_retries=1).upload(archive)

        assert result.attempts == 2
        assert [c.args[0] for c in client.session_append.call_args_list] == ['session-1', 'session-2']
        client.session_finish.assert_called_once_with(
            'session-2', 2 * MB, archive.read_bytes()[2 * MB:], archive.destination_path
        )

    @patch.object(ChunkedUploadSession, 'upload', side_effect=ProtocolError('Offset mismatch'))
    def test_protocol_error_is_not_retried(self, mock_session_upload, recording_storage, make_archive):
        with pytest.raises(ProtocolError):
            BackupUploader(recording_storage, chunk_size=MB, upload_retries=2).upload(make_archive(3 * MB))

        assert mock_session_upload.call_count == 1

    def test_negative_retries_rejected(self, recording_storage):
        with pytest.raises(ValueError):
            BackupUploader(recording_storage, chunk_size=MB, upload_retries=-1)

    def test_missing_archive_file(self, recording_storage, make_archive, tmp_path):
        archive = make_archive(10)
        (tmp_path / 'archive_10.zip').unlink()

        with pytest.raises(UploadError, match='Failed to read archive'):
            BackupUploader(recording_storage, chunk_size=MB).upload(archive)
