"""Tests for chunked upload business logic."""

import itertools
from io import StringIO

import pytest
from django.core.management import call_command

from server.apps.uploads.exceptions import (
    FileAccessDeniedError,
    FileValidationError,
    IncompleteChunksError,
    InvalidChunkError,
    QuotaExceededError,
    StorageFailureError,
)
from server.apps.uploads.infrastructure.storage import S3StorageProvider
from server.apps.uploads.logic.file_operations import (
    get_file_status,
    read_file_content,
)
from server.apps.uploads.logic.upload_operations import (
    complete_chunked_upload,
    initiate_chunked_upload,
    upload_chunk,
)
from server.apps.uploads.models import (
    FileChunk,
    FileRecord,
    FileStatus,
    StorageQuota,
)

_PARTS = (b'a' * 100, b'b' * 100, b'c' * 100)


@pytest.fixture
def chunked_upload(user, mock_s3, allow_text):
    """Open a three-chunk upload of 300 bytes.

    Returns:
        FileRecord in RECEIVING_CHUNKS.
    """
    return initiate_chunked_upload(
        user,
        'notes.txt',
        'text/plain',
        total_size=300,
        total_chunks=3,
    )


@pytest.mark.django_db
class TestInitiateChunkedUpload:
    """Tests for opening chunked uploads."""

    def test_initiate_opens_receiving_record(self, chunked_upload):
        """Test the record waits for chunks with progress metadata."""
        assert chunked_upload.status == FileStatus.RECEIVING_CHUNKS
        assert chunked_upload.metadata['total_chunks'] == 3
        assert chunked_upload.metadata['chunks_received'] == 0

    def test_initiate_checks_announced_size(self, user, settings, mock_s3):
        """Test an announced size over the limit is refused up front."""
        settings.UPLOADS_MAX_FILE_SIZE = 100

        with pytest.raises(FileValidationError):
            initiate_chunked_upload(user, 'a.txt', 'text/plain', 300, 3)

        assert not FileRecord.objects.filter(user=user).exists()

    def test_initiate_checks_quota(self, user, mock_s3):
        """Test an announced size over the quota is refused up front."""
        StorageQuota.objects.create(user=user, quota_bytes=200, used_bytes=0)

        with pytest.raises(QuotaExceededError):
            initiate_chunked_upload(user, 'a.txt', 'text/plain', 300, 3)

    @pytest.mark.parametrize('total_chunks', [0, 10001])
    def test_initiate_checks_chunk_count(self, user, mock_s3, total_chunks):
        """Test chunk counts outside the allowed range."""
        with pytest.raises(InvalidChunkError):
            initiate_chunked_upload(user, 'a.txt', 'text/plain', 300, total_chunks)


@pytest.mark.django_db
class TestUploadChunk:
    """Tests for receiving chunks."""

    def test_progress_reported(self, user, chunked_upload):
        """Test each chunk updates the progress."""
        progress = upload_chunk(user, chunked_upload.id, 1, _PARTS[1], 3)

        assert progress.chunks_received == 1
        assert progress.total_chunks == 3
        assert not progress.is_complete
        chunked_upload.refresh_from_db()
        assert chunked_upload.metadata['chunks_received'] == 1

    def test_resent_chunk_counted_once(self, user, chunked_upload):
        """Test re-sending an index overwrites it."""
        upload_chunk(user, chunked_upload.id, 0, b'x' * 100, 3)
        progress = upload_chunk(user, chunked_upload.id, 0, _PARTS[0], 3)

        assert progress.chunks_received == 1

    @pytest.mark.parametrize(('chunk_index', 'data', 'total_chunks'), [
        (3, b'a', 3),
        (0, b'a', 4),
        (0, b'', 3),
    ])
    def test_invalid_chunks(
        self,
        user,
        chunked_upload,
        chunk_index,
        data,
        total_chunks,
    ):
        """Test out-of-range index, wrong total and empty chunks."""
        with pytest.raises(InvalidChunkError):
            upload_chunk(user, chunked_upload.id, chunk_index, data, total_chunks)

        assert not FileChunk.objects.filter(file_id=chunked_upload.id).exists()

    def test_chunk_too_large(self, user, settings, chunked_upload):
        """Test chunks over UPLOADS_MAX_CHUNK_SIZE are refused."""
        settings.UPLOADS_MAX_CHUNK_SIZE = 50

        with pytest.raises(InvalidChunkError, match='maximum is 50'):
            upload_chunk(user, chunked_upload.id, 0, _PARTS[0], 3)

    def test_other_user_cannot_send_chunks(
        self,
        other_user,
        chunked_upload,
    ):
        """Test chunks go only to the uploader's own upload."""
        with pytest.raises(FileAccessDeniedError):
            upload_chunk(other_user, chunked_upload.id, 0, _PARTS[0], 3)


@pytest.mark.django_db
class TestCompleteChunkedUpload:
    """Tests for reassembling chunked uploads."""

    @pytest.mark.parametrize('arrival_order', list(itertools.permutations(range(3))))
    def test_any_arrival_order_completes(
        self,
        user,
        chunked_upload,
        stored_keys,
        arrival_order,
    ):
        """Test chunks sent in any order give the 300-byte file 0 + 1 + 2."""
        for index in arrival_order:
            upload_chunk(user, chunked_upload.id, index, _PARTS[index], 3)

        record = complete_chunked_upload(user, chunked_upload.id)

        assert record.status == FileStatus.ACTIVE
        assert record.size_bytes == 300
        assert read_file_content(user, record.id) == b''.join(_PARTS)
        assert StorageQuota.objects.get(user=user).used_bytes == 300
        assert not FileChunk.objects.filter(file_id=record.id).exists()
        assert stored_keys() == [record.storage_path]

    def test_missing_chunk_keeps_upload_open(self, user, chunked_upload):
        """Test completion with a gap can be retried after resending."""
        upload_chunk(user, chunked_upload.id, 0, _PARTS[0], 3)
        upload_chunk(user, chunked_upload.id, 2, _PARTS[2], 3)

        with pytest.raises(IncompleteChunksError) as exc_info:
            complete_chunked_upload(user, chunked_upload.id)

        assert exc_info.value.missing == [1]
        chunked_upload.refresh_from_db()
        assert chunked_upload.status == FileStatus.RECEIVING_CHUNKS

        upload_chunk(user, chunked_upload.id, 1, _PARTS[1], 3)
        record = complete_chunked_upload(user, chunked_upload.id)

        assert record.status == FileStatus.ACTIVE

    def test_invalid_content_fails_and_cleans_chunks(
        self,
        user,
        settings,
        chunked_upload,
        stored_keys,
    ):
        """Test a reassembled file failing validation frees everything."""
        settings.UPLOADS_ALLOWED_MIME_TYPES = ['image/png']
        for index, part in enumerate(_PARTS):
            upload_chunk(user, chunked_upload.id, index, part, 3)

        with pytest.raises(FileValidationError):
            complete_chunked_upload(user, chunked_upload.id)

        chunked_upload.refresh_from_db()
        assert chunked_upload.status == FileStatus.FAILED
        assert not FileChunk.objects.filter(file_id=chunked_upload.id).exists()
        assert stored_keys() == []
        assert StorageQuota.objects.get(user=user).used_bytes == 0

    def test_storage_failure_keeps_chunks_for_reconcile(
        self,
        user,
        monkeypatch,
        chunked_upload,
        stored_keys,
    ):
        """Test chunks survive a failed store until reconcile removes them."""
        def broken_put(self, data, path, content_type=None, metadata=None):
            raise StorageFailureError('disk full')

        for index, part in enumerate(_PARTS):
            upload_chunk(user, chunked_upload.id, index, part, 3)
        monkeypatch.setattr(S3StorageProvider, 'put', broken_put)

        with pytest.raises(StorageFailureError, match='disk full'):
            complete_chunked_upload(user, chunked_upload.id)

        chunked_upload.refresh_from_db()
        assert chunked_upload.status == FileStatus.FAILED
        assert chunked_upload.processing_history[-1]['action'] == 'store'
        chunks = FileChunk.objects.filter(file_id=chunked_upload.id)
        assert stored_keys() == sorted(chunks.values_list('storage_path', flat=True))
        assert chunks.count() == 3
        assert StorageQuota.objects.get(user=user).used_bytes == 0

        call_command('reconcile_uploads', stdout=StringIO())

        assert not FileChunk.objects.filter(file_id=chunked_upload.id).exists()
        assert stored_keys() == []

    def test_quota_taken_meanwhile_fails_upload(self, user, chunked_upload):
        """Test the quota is reserved again at assembly time."""
        for index, part in enumerate(_PARTS):
            upload_chunk(user, chunked_upload.id, index, part, 3)
        StorageQuota.objects.filter(user=user).update(quota_bytes=100)

        with pytest.raises(QuotaExceededError):
            complete_chunked_upload(user, chunked_upload.id)

        chunked_upload.refresh_from_db()
        assert chunked_upload.status == FileStatus.FAILED
        assert not FileChunk.objects.filter(file_id=chunked_upload.id).exists()

    def test_completed_upload_cannot_complete_again(self, user, chunked_upload):
        """Test only receiving uploads can be completed."""
        for index, part in enumerate(_PARTS):
            upload_chunk(user, chunked_upload.id, index, part, 3)
        complete_chunked_upload(user, chunked_upload.id)

        with pytest.raises(InvalidChunkError):
            complete_chunked_upload(user, chunked_upload.id)

    def test_status_report(self, user, chunked_upload):
        """Test status shows chunk progress and the last event."""
        upload_chunk(user, chunked_upload.id, 0, _PARTS[0], 3)

        report = get_file_status(user, chunked_upload.id)

        assert report.status == FileStatus.RECEIVING_CHUNKS
        assert report.chunks_received == 1
        assert report.total_chunks == 3
        assert report.last_event['action'] == 'initiate_chunked'
        assert report.error is None
