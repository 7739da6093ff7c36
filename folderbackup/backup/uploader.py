"""
Upload of backup archives to remote storage.

Small archives go up in a single request. Archives larger than the chunk
threshold go through a three-step upload session:

    start (chunk 0) -> append (interior chunks) -> finish (last chunk)

Every append/finish carries the byte offset already committed to the session;
a wrong offset is a protocol error and is never retried.
"""

import logging
import math
from enum import Enum
from typing import List, Optional

from folderbackup.models import BackupArchive, UploadMode, UploadResult
from .storage import RemoteStorage, StorageError


logger = logging.getLogger(__name__)


class UploadError(Exception):
    """Raised when an archive cannot be uploaded."""
    pass


class ProtocolError(UploadError):
    """Raised when a session step is called out of order or with a wrong offset."""
    pass


def classify(byte_length: int, chunk_threshold: int) -> UploadMode:
    """Payloads up to and including the threshold are sent in one request."""
    if byte_length <= chunk_threshold:
        return UploadMode.SMALL
    return UploadMode.CHUNKED


def chunk_count(length: int, chunk_size: int) -> int:
    if chunk_size <= 0:
        raise ValueError(f"Chunk size must be positive, got {chunk_size}")
    return math.ceil(length / chunk_size)


def partition(data: bytes, chunk_size: int) -> List[bytes]:
    """
    Split a payload into fixed-size chunks.

    Only the last chunk may be shorter than chunk_size, and a payload that is
    an exact multiple of chunk_size gets no trailing empty chunk.

    Args:
        data: Payload to split
        chunk_size: Size of every chunk but the last

    Returns:
        List of chunks, in upload order
    """
    total = chunk_count(len(data), chunk_size)
    return [data[i * chunk_size:(i + 1) * chunk_size] for i in range(total)]


class SingleShotUploader:
    """Uploads a whole payload in one overwrite request."""

    def __init__(self, client: RemoteStorage):
        self.client = client

    def upload(self, data: bytes, destination_path: str):
        """
        Upload payload to destination_path, replacing any existing object.

        Raises:
            UploadError: If the request fails or is rejected
        """
        try:
            self.client.upload_whole(destination_path, data, overwrite=True)
        except StorageError as e:
            raise UploadError(f"Upload to {destination_path} failed: {e}")

        logger.info(f"Uploaded {len(data)} bytes to {destination_path}")


class SessionState(Enum):
    NOT_STARTED = 'not_started'
    STARTED = 'started'
    APPENDING = 'appending'
    FINISHED = 'finished'
    FAILED = 'failed'


class ChunkedUploadSession:
    """
    One chunked upload of a payload of known length.

    Tracks the remote session id, the number of bytes committed and the index
    of the chunk last sent. An instance drives exactly one upload; after
    FINISHED or FAILED every further call raises UploadError.
    """

    def __init__(self, client: RemoteStorage, total_length: int, chunk_size: int):
        """
        Args:
            client: Remote storage client
            total_length: Length of the whole payload in bytes
            chunk_size: Size of every chunk but the last
        """
        self.client = client
        self.total_length = total_length
        self.chunk_size = chunk_size
        self.total_chunks = chunk_count(total_length, chunk_size)
        self.session_id = None
        self.bytes_uploaded = 0
        self.current_chunk_index = -1
        self.state = SessionState.NOT_STARTED

    def start(self, first_chunk: bytes) -> str:
        """
        Upload chunk 0 and open the remote session.

        Returns:
            Session id assigned by the remote

        Raises:
            UploadError: If the session cannot be opened
        """
        if self.state is not SessionState.NOT_STARTED:
            self._fail(f"Cannot start a session in state {self.state.value}")

        if self.total_chunks < 1:
            self._fail("Cannot start a session for an empty payload")

        try:
            session_id = self.client.session_start(first_chunk)
        except StorageError as e:
            self._fail(f"Failed to start upload session: {e}", UploadError)

        self.session_id = session_id
        self.current_chunk_index = 0
        self.bytes_uploaded = len(first_chunk)
        self.state = SessionState.STARTED

        logger.debug(f"Started upload session {session_id} with chunk 0 ({len(first_chunk)} bytes)")
        return session_id

    def append(self, offset: int, chunk: bytes):
        """
        Upload an interior chunk.

        Args:
            offset: Number of bytes already committed to the session
            chunk: Chunk payload

        Raises:
            UploadError: On a protocol violation or remote failure
        """
        self._require_open()

        index = self.current_chunk_index + 1
        if not 0 < index < self.total_chunks - 1:
            self._fail(f"Chunk {index} of {self.total_chunks} is not an interior chunk")

        self._check_offset(offset)

        try:
            self.client.session_append(self.session_id, offset, chunk)
        except StorageError as e:
            self._fail(f"Failed to append chunk {index}: {e}", UploadError)

        self.current_chunk_index = index
        self.bytes_uploaded += len(chunk)
        self.state = SessionState.APPENDING

        logger.debug(f"Appended chunk {index} ({len(chunk)} bytes, offset {offset})")

    def finish(self, offset: int, last_chunk: bytes, destination_path: str):
        """
        Upload the last chunk and commit the object at destination_path.

        A single-chunk payload finishes with an empty last_chunk right after
        start().

        Raises:
            UploadError: On a protocol violation or remote failure
        """
        self._require_open()

        index = self.current_chunk_index + 1 if self.total_chunks > 1 else 0
        if index != self.total_chunks - 1:
            self._fail(f"Chunk {index} of {self.total_chunks} is not the last chunk")

        self._check_offset(offset)

        if offset + len(last_chunk) != self.total_length:
            self._fail(
                f"Session would commit {offset + len(last_chunk)} bytes, "
                f"expected {self.total_length}"
            )

        try:
            self.client.session_finish(self.session_id, offset, last_chunk, destination_path)
        except StorageError as e:
            self._fail(f"Failed to finish upload session: {e}", UploadError)

        self.current_chunk_index = index
        self.bytes_uploaded += len(last_chunk)
        self.state = SessionState.FINISHED

        logger.debug(f"Finished upload session {self.session_id} at {destination_path}")

    def upload(self, data: bytes, destination_path: str):
        """
        Run the whole session for a payload.

        Raises:
            UploadError: If any step fails
        """
        if len(data) != self.total_length:
            self._fail(f"Payload is {len(data)} bytes, session expects {self.total_length}")

        if self.total_chunks == 0:
            self._fail("Cannot upload an empty payload in a session")

        chunks = partition(data, self.chunk_size)

        for index, chunk in enumerate(chunks):
            logger.debug(f"Uploading chunk {index + 1}/{self.total_chunks}")

            if index == 0:
                self.start(chunk)
                if self.total_chunks == 1:
                    self.finish(self.bytes_uploaded, b'', destination_path)
            elif index == self.total_chunks - 1:
                self.finish(self.bytes_uploaded, chunk, destination_path)
            else:
                self.append(self.bytes_uploaded, chunk)

        logger.info(f"Uploaded {self.bytes_uploaded} bytes in {self.total_chunks} chunks to {destination_path}")

    def _require_open(self):
        if self.state not in (SessionState.STARTED, SessionState.APPENDING):
            self._fail(f"Upload session is not open (state: {self.state.value})")

    def _check_offset(self, offset: int):
        if offset != self.bytes_uploaded:
            self._fail(
                f"Offset mismatch for session {self.session_id}: "
                f"got {offset}, committed {self.bytes_uploaded}"
            )

    def _fail(self, message: str, error=ProtocolError):
        self.state = SessionState.FAILED
        raise error(message)


class BackupUploader:
    """
    Uploads a backup archive, choosing single-shot or chunked upload by size.

    upload_retries is the number of whole-upload re-attempts after a failure
    (0 means a failure ends the run). A re-attempt always opens a new session.
    Protocol errors are never retried.
    """

    def __init__(self, client: RemoteStorage, chunk_size: int, chunk_threshold: Optional[int] = None,
                 upload_retries: int = 0):
        if chunk_size <= 0:
            raise ValueError(f"Chunk size must be positive, got {chunk_size}")
        if upload_retries < 0:
            raise ValueError(f"Upload retries must not be negative, got {upload_retries}")

        self.client = client
        self.chunk_size = chunk_size
        self.chunk_threshold = chunk_size if chunk_threshold is None else chunk_threshold
        self.upload_retries = upload_retries

    def upload(self, archive: BackupArchive) -> UploadResult:
        """
        Upload archive to its destination path.

        Args:
            archive: Archive to upload

        Returns:
            UploadResult describing the upload

        Raises:
            UploadError: If the archive cannot be read or every attempt fails
            ProtocolError: If a session step breaks the offset or chunk order
        """
        try:
            data = archive.read_bytes()
        except OSError as e:
            raise UploadError(f"Failed to read archive {archive.local_path}: {e}")

        mode = classify(len(data), self.chunk_threshold)
        attempts = self.upload_retries + 1

        for attempt in range(1, attempts + 1):
            try:
                chunks = self._upload_once(data, archive.destination_path, mode)
            except ProtocolError:
                raise
            except UploadError as e:
                if attempt == attempts:
                    raise
                logger.warning(f"Upload attempt {attempt}/{attempts} failed, retrying: {e}")
                continue

            return UploadResult(
                destination_path=archive.destination_path,
                size=len(data),
                mode=mode,
                chunks=chunks,
                attempts=attempt
            )

    def _upload_once(self, data: bytes, destination_path: str, mode: UploadMode) -> int:
        if mode is UploadMode.SMALL:
            SingleShotUploader(self.client).upload(data, destination_path)
            return 1

        session = ChunkedUploadSession(self.client, len(data), self.chunk_size)
        session.upload(data, destination_path)
        return session.total_chunks
