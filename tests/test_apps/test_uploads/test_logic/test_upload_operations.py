"""Tests for single and multi-file upload business logic."""

import hashlib

import pytest

from server.apps.uploads.exceptions import (
    ConcurrencyLimitExceededError,
    FileValidationError,
    QuotaExceededError,
    ScannerUnavailableError,
    StorageFailureError,
)
from server.apps.uploads.infrastructure.scanning import (
    EICAR_SIGNATURE,
    SignatureScanner,
)
from server.apps.uploads.infrastructure.storage import S3StorageProvider
from server.apps.uploads.logic.file_operations import read_file_content
from server.apps.uploads.logic.upload_operations import (
    IncomingFile,
    upload_multiple,
    upload_single,
)
from server.apps.uploads.models import (
    EncryptionKey,
    FileCategory,
    FileRecord,
    FileStatus,
    StorageQuota,
)


@pytest.mark.django_db
class TestUploadSingle:
    """Tests for upload_single."""

    def test_image_upload_becomes_active(self, user, mock_s3, png_bytes):
        """Test a valid image is stored, activated and charged to quota."""
        record = upload_single(
            user,
            png_bytes,
            'holiday photo.png',
            'image/png',
            category=FileCategory.IMAGE,
            parent_ref='order-17',
            description='Front view',
            tags=['car', 'front'],
        )

        assert record.status == FileStatus.ACTIVE
        assert record.storage_path == f'image/{record.id}/holiday photo.png'
        assert record.size_bytes == len(png_bytes)
        assert record.detected_mime_type == 'image/png'
        assert len(record.checksum_sha256) == 64
        assert record.parent_ref == 'order-17'
        assert record.metadata['description'] == 'Front view'
        assert record.metadata['tags'] == ['car', 'front']
        assert record.metadata['width'] == 64

        quota = StorageQuota.objects.get(user=user)
        assert quota.used_bytes == len(png_bytes)
        assert quota.usage_by_category == {'image': len(png_bytes)}

    def test_history_follows_lifecycle(self, user, mock_s3, png_bytes):
        """Test history records each status the upload went through."""
        record = upload_single(user, png_bytes, 'a.png', 'image/png')

        statuses = [event['status'] for event in record.processing_history]
        assert statuses[:2] == ['processing', 'active']

    def test_image_derivatives_generated_inline(
        self,
        user,
        stored_keys,
        png_bytes,
    ):
        """Test the inline queue builds optimized copy and thumbnail."""
        record = upload_single(
            user,
            png_bytes,
            'a.png',
            'image/png',
            category=FileCategory.IMAGE,
        )

        version_types = sorted(version['type'] for version in record.versions)
        assert version_types == ['optimized', 'thumbnail']
        assert record.thumbnail_path == f'image/{record.id}/thumbnail.jpg'
        assert stored_keys() == sorted([
            record.storage_path,
            f'image/{record.id}/optimized.jpg',
            f'image/{record.id}/thumbnail.jpg',
        ])

    def test_oversized_file_leaves_quota_unchanged(
        self,
        user,
        settings,
        stored_keys,
        png_bytes,
    ):
        """Test a file over the size limit fails without consuming quota."""
        settings.UPLOADS_MAX_FILE_SIZE = 10
        StorageQuota.objects.create(user=user, quota_bytes=10000, used_bytes=500)

        with pytest.raises(FileValidationError) as exc_info:
            upload_single(user, png_bytes, 'a.png', 'image/png')

        assert exc_info.value.reason == 'file_too_large'
        assert StorageQuota.objects.get(user=user).used_bytes == 500
        assert stored_keys() == []
        record = FileRecord.objects.get(user=user)
        assert record.status == FileStatus.FAILED
        assert record.processing_history[-1]['action'] == 'validate'

    def test_image_over_dimension_rejected_before_storage_write(
        self,
        user,
        settings,
        stored_keys,
        make_png,
    ):
        """Test an image over the pixel maximum never reaches storage."""
        settings.UPLOADS_MAX_IMAGE_DIMENSION = 100

        with pytest.raises(FileValidationError) as exc_info:
            upload_single(user, make_png(width=300, height=80), 'a.png', 'image/png')

        assert exc_info.value.reason == 'image_too_large'
        assert stored_keys() == []
        assert StorageQuota.objects.get(user=user).used_bytes == 0

    def test_malware_rejected(self, user, stored_keys, png_bytes):
        """Test infected files are failed and never stored."""
        with pytest.raises(FileValidationError) as exc_info:
            upload_single(user, png_bytes + EICAR_SIGNATURE, 'a.png', 'image/png')

        assert exc_info.value.reason == 'malware_detected'
        assert stored_keys() == []
        record = FileRecord.objects.get(user=user)
        assert record.status == FileStatus.FAILED
        assert 'Eicar' in record.metadata['error']

    def test_quota_exceeded_creates_nothing(self, user, mock_s3):
        """Test 900 of 1000 used refuses a 200-byte upload."""
        StorageQuota.objects.create(user=user, quota_bytes=1000, used_bytes=900)

        with pytest.raises(QuotaExceededError):
            upload_single(user, b'x' * 200, 'a.png', 'image/png')

        assert StorageQuota.objects.get(user=user).used_bytes == 900
        assert not FileRecord.objects.filter(user=user).exists()

    def test_concurrency_limit(self, user, settings, mock_s3, png_bytes):
        """Test uploads are refused while the user has too many in flight."""
        settings.UPLOADS_MAX_CONCURRENT_UPLOADS = 1
        FileRecord.objects.create(
            user=user,
            original_name='in-flight.png',
            mime_type='image/png',
            size_bytes=10,
            status=FileStatus.PROCESSING,
        )

        with pytest.raises(ConcurrencyLimitExceededError) as exc_info:
            upload_single(user, png_bytes, 'a.png', 'image/png')

        assert exc_info.value.limit == 1
        assert StorageQuota.objects.get(user=user).used_bytes == 0

    def test_concurrency_ignores_other_users(
        self,
        user,
        other_user,
        settings,
        mock_s3,
        png_bytes,
    ):
        """Test the ceiling is per user."""
        settings.UPLOADS_MAX_CONCURRENT_UPLOADS = 1
        FileRecord.objects.create(
            user=other_user,
            original_name='theirs.png',
            mime_type='image/png',
            status=FileStatus.PROCESSING,
        )

        record = upload_single(user, png_bytes, 'a.png', 'image/png')

        assert record.status == FileStatus.ACTIVE

    def test_encrypted_upload(self, user, mock_s3, png_bytes):
        """Test encrypted files store ciphertext and read back as plaintext."""
        record = upload_single(user, png_bytes, 'a.png', 'image/png', encrypt=True)

        stored = mock_s3.Object('uploads', record.storage_path).get()
        assert record.is_encrypted
        assert EncryptionKey.objects.filter(key_id=record.encryption_key_id).exists()
        assert stored['ContentType'] == 'application/octet-stream'
        assert stored['Body'].read() != png_bytes
        assert record.checksum_sha256 == hashlib.sha256(png_bytes).hexdigest()
        assert read_file_content(user, record.id) == png_bytes

    def test_encrypt_at_rest_setting(self, user, settings, mock_s3, png_bytes):
        """Test UPLOADS_ENCRYPT_AT_REST is the default for encrypt."""
        settings.UPLOADS_ENCRYPT_AT_REST = True

        record = upload_single(user, png_bytes, 'a.png', 'image/png')

        assert record.is_encrypted


@pytest.mark.django_db
class TestUploadFailureCompensation:
    """Tests for failures after the record exists."""

    @pytest.fixture
    def quota(self, user):
        """Quota with some usage already counted.

        Returns:
            StorageQuota with 500 bytes used.
        """
        return StorageQuota.objects.create(
            user=user,
            quota_bytes=10 * 1024 * 1024,
            used_bytes=500,
        )

    def test_storage_failure_fails_record(
        self,
        user,
        monkeypatch,
        quota,
        stored_keys,
        png_bytes,
    ):
        """Test a failed write marks the record and returns the reservation."""
        def broken_put(self, data, path, content_type=None, metadata=None):
            raise StorageFailureError(f'Failed to store {path}: disk full')

        monkeypatch.setattr(S3StorageProvider, 'put', broken_put)

        with pytest.raises(StorageFailureError, match='disk full'):
            upload_single(user, png_bytes, 'a.png', 'image/png')

        record = FileRecord.objects.get(user=user)
        assert record.status == FileStatus.FAILED
        assert record.processing_history[-1]['action'] == 'store'
        assert 'disk full' in record.processing_history[-1]['error']
        assert 'disk full' in record.metadata['error']
        quota.refresh_from_db()
        assert quota.used_bytes == 500
        assert stored_keys() == []

    def test_storage_failure_destroys_new_key(
        self,
        user,
        monkeypatch,
        quota,
        png_bytes,
    ):
        """Test the data key of a file that was never stored is destroyed."""
        def broken_put(self, data, path, content_type=None, metadata=None):
            raise StorageFailureError('disk full')

        monkeypatch.setattr(S3StorageProvider, 'put', broken_put)

        with pytest.raises(StorageFailureError):
            upload_single(user, png_bytes, 'a.png', 'image/png', encrypt=True)

        assert not EncryptionKey.objects.exists()
        assert FileRecord.objects.get(user=user).encryption_key_id == ''

    def test_scanner_outage_surfaces_as_storage_failure(
        self,
        user,
        monkeypatch,
        quota,
        stored_keys,
        png_bytes,
    ):
        """Test a scanner without verdict is a system failure, not a rejection."""
        def unavailable(self, data):
            raise ScannerUnavailableError('scanner down')

        monkeypatch.setattr(SignatureScanner, 'scan', unavailable)

        with pytest.raises(StorageFailureError, match='scanner down') as exc_info:
            upload_single(user, png_bytes, 'a.png', 'image/png')

        assert not isinstance(exc_info.value, FileValidationError)
        assert isinstance(exc_info.value.__cause__, ScannerUnavailableError)
        assert FileRecord.objects.get(user=user).status == FileStatus.FAILED
        quota.refresh_from_db()
        assert quota.used_bytes == 500
        assert stored_keys() == []


@pytest.mark.django_db
class TestUploadMultiple:
    """Tests for upload_multiple."""

    def test_partial_failure(self, user, mock_s3, png_bytes, pdf_bytes):
        """Test one bad file doesn't stop the others."""
        result = upload_multiple(user, [
            IncomingFile(png_bytes, 'a.png', 'image/png'),
            IncomingFile(b'plain text\n' * 20, 'notes.txt', 'text/plain'),
            IncomingFile(pdf_bytes, 'b.pdf', 'application/pdf'),
        ], category=FileCategory.DOCUMENT)

        assert [record.original_name for record in result.succeeded] == [
            'a.png',
            'b.pdf',
        ]
        assert result.failed_names == ['notes.txt']
        quota = StorageQuota.objects.get(user=user)
        assert quota.used_bytes == len(png_bytes) + len(pdf_bytes)

    def test_combined_size_checked_up_front(self, user, mock_s3, png_bytes):
        """Test nothing is uploaded when the batch doesn't fit."""
        StorageQuota.objects.create(
            user=user,
            quota_bytes=len(png_bytes) + 1,
            used_bytes=0,
        )

        with pytest.raises(QuotaExceededError):
            upload_multiple(user, [
                IncomingFile(png_bytes, 'a.png', 'image/png'),
                IncomingFile(png_bytes, 'b.png', 'image/png'),
            ])

        assert not FileRecord.objects.filter(user=user).exists()
