"""Database models for uploads app."""

import uuid
from pathlib import Path
from typing import Any, ClassVar, Final, final, override

from django.conf import settings
from django.db import models
from django.utils import timezone

# Constants for field max lengths
_NAME_MAX_LENGTH: Final = 255
_MIME_TYPE_MAX_LENGTH: Final = 255
_PATH_MAX_LENGTH: Final = 1024
_STATUS_MAX_LENGTH: Final = 32
_CHECKSUM_MAX_LENGTH: Final = 64  # SHA256 hex length
_KEY_ID_MAX_LENGTH: Final = 64
_PARENT_REF_MAX_LENGTH: Final = 255

# Default quota: 10 GB in bytes
_DEFAULT_QUOTA_BYTES: Final = 10 * 1024 * 1024 * 1024


class FileCategory(models.TextChoices):
    """What a file is used for in the parent domain."""

    DOCUMENT = 'document', 'Document'
    IMAGE = 'image', 'Image'
    PATTERN = 'pattern', 'Pattern'
    INVOICE = 'invoice', 'Invoice'
    OTHER = 'other', 'Other'


class FileStatus(models.TextChoices):
    """Lifecycle status of a file record.

    Allowed transitions live in ``logic/lifecycle.py``.
    """

    PENDING = 'pending', 'Pending'
    RECEIVING_CHUNKS = 'receiving_chunks', 'Receiving chunks'
    ASSEMBLING = 'assembling', 'Assembling'
    PROCESSING = 'processing', 'Processing'
    ACTIVE = 'active', 'Active'
    FAILED = 'failed', 'Failed'


# Statuses that count against the per-user concurrent upload ceiling
IN_FLIGHT_STATUSES: Final = (
    FileStatus.PENDING.value,
    FileStatus.RECEIVING_CHUNKS.value,
    FileStatus.ASSEMBLING.value,
    FileStatus.PROCESSING.value,
)


class VisibleFileManager(models.Manager['FileRecord']):
    """Default manager hiding soft-deleted records."""

    @override
    def get_queryset(self) -> models.QuerySet['FileRecord']:
        """Exclude soft-deleted files."""
        return super().get_queryset().filter(is_deleted=False)


def _empty_dict() -> dict[str, Any]:
    return {}


def _empty_list() -> list[Any]:
    return []


@final
class FileRecord(models.Model):
    """Durable descriptor of an uploaded file and its processing state.

    Records are never physically removed: deletion sets ``is_deleted``
    and cleans storage. ``objects`` hides deleted records,
    ``all_objects`` sees everything.

    Original bytes live at ``storage_path``; derivatives are listed in
    ``versions`` as ``{'type', 'path', 'size'}`` entries, one per type.
    """

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)

    # Owner relationship
    user = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.CASCADE,
        related_name='uploaded_files',
        db_index=True,
    )

    parent_ref = models.CharField(
        max_length=_PARENT_REF_MAX_LENGTH,
        blank=True,
        default='',
        db_index=True,
        help_text='Opaque id of the owning entity (e.g. an order)',
    )

    original_name = models.CharField(max_length=_NAME_MAX_LENGTH)

    mime_type = models.CharField(
        max_length=_MIME_TYPE_MAX_LENGTH,
        help_text='MIME type declared by the uploader',
    )

    detected_mime_type = models.CharField(
        max_length=_MIME_TYPE_MAX_LENGTH,
        blank=True,
        default='',
        help_text='MIME type sniffed from content via python-magic',
    )

    size_bytes = models.BigIntegerField(
        default=0,
        help_text='File size in bytes (plaintext)',
    )

    checksum_sha256 = models.CharField(
        max_length=_CHECKSUM_MAX_LENGTH,
        blank=True,
        default='',
        help_text='SHA256 hash of the plaintext',
        db_index=True,
    )

    category = models.CharField(
        max_length=_STATUS_MAX_LENGTH,
        choices=FileCategory.choices,
        default=FileCategory.OTHER,
    )

    status = models.CharField(
        max_length=_STATUS_MAX_LENGTH,
        choices=FileStatus.choices,
        default=FileStatus.PENDING,
        db_index=True,
    )

    storage_path = models.CharField(
        max_length=_PATH_MAX_LENGTH,
        blank=True,
        default='',
    )

    thumbnail_path = models.CharField(
        max_length=_PATH_MAX_LENGTH,
        blank=True,
        default='',
    )

    metadata = models.JSONField(default=_empty_dict, blank=True)

    versions = models.JSONField(default=_empty_list, blank=True)

    is_encrypted = models.BooleanField(default=False)

    encryption_key_id = models.CharField(
        max_length=_KEY_ID_MAX_LENGTH,
        blank=True,
        default='',
    )

    processing_history = models.JSONField(default=_empty_list, blank=True)

    # Soft delete
    is_deleted = models.BooleanField(default=False, db_index=True)
    deleted_at = models.DateTimeField(null=True, blank=True)

    # Timestamps
    created_at = models.DateTimeField(auto_now_add=True)
    modified_at = models.DateTimeField(auto_now=True)

    objects: ClassVar[VisibleFileManager] = VisibleFileManager()
    all_objects: ClassVar[models.Manager['FileRecord']] = models.Manager()

    class Meta:
        """Model metadata."""

        verbose_name = 'File record'  # type: ignore[mutable-override]
        verbose_name_plural = 'File records'  # type: ignore[mutable-override]
        ordering = ['-created_at']
        base_manager_name = 'all_objects'

        indexes = [
            # Concurrency ceiling and listing queries
            models.Index(
                fields=['user', 'status'],
                name='uploads_user_status_idx',
            ),
            models.Index(
                fields=['user', '-created_at'],
                name='uploads_user_recent_idx',
            ),
        ]

    @override
    def __str__(self) -> str:
        """String representation."""
        return f'{self.original_name} ({self.status})'

    @property
    def effective_mime_type(self) -> str:
        """Sniffed MIME type when known, declared type otherwise."""
        return self.detected_mime_type or self.mime_type

    @property
    def is_image(self) -> bool:
        """Whether the file content is an image."""
        return self.effective_mime_type.startswith('image/')

    @property
    def is_pdf(self) -> bool:
        """Whether the file content is a PDF document."""
        return self.effective_mime_type == 'application/pdf'

    def get_extension(self) -> str:
        """Extract extension of the original filename.

        Example: 'scan.PDF' -> 'pdf'

        Returns:
            Extension without dot (lowercase).
        """
        extension = Path(self.original_name).suffix
        return extension.lstrip('.').lower()

    def get_storage_paths(self) -> list[str]:
        """Every storage object that belongs to this record.

        Returns:
            Original, thumbnail and derivative paths, without duplicates.
        """
        paths = [self.storage_path, self.thumbnail_path]
        paths.extend(version['path'] for version in self.versions)
        unique: list[str] = []
        for path in paths:
            if path and path not in unique:
                unique.append(path)
        return unique

    def add_history_event(
        self,
        action: str,
        status: str,
        error: str | None = None,
    ) -> None:
        """Append an entry to the processing history (in memory).

        Args:
            action: What was attempted (e.g. 'validate').
            status: Outcome ('succeeded', 'failed', or a file status).
            error: Optional error text.
        """
        event: dict[str, Any] = {
            'timestamp': timezone.now().isoformat(),
            'action': action,
            'status': status,
        }
        if error:
            event['error'] = error
        self.processing_history = [*self.processing_history, event]


@final
class FileChunk(models.Model):
    """One numbered slice of a chunked upload.

    Rows exist only while a chunked upload is being assembled. Deleting a
    row removes its transient object from storage (see signals.py).
    """

    file = models.ForeignKey(
        FileRecord,
        on_delete=models.CASCADE,
        related_name='chunks',
    )

    chunk_index = models.PositiveIntegerField(help_text='0-based position')

    size_bytes = models.BigIntegerField()

    storage_path = models.CharField(max_length=_PATH_MAX_LENGTH)

    processed = models.BooleanField(default=False)

    expires_at = models.DateTimeField(
        null=True,
        blank=True,
        help_text='After this moment the upload counts as abandoned',
    )

    created_at = models.DateTimeField(auto_now_add=True)
    modified_at = models.DateTimeField(auto_now=True)

    class Meta:
        """Model metadata."""

        verbose_name = 'File chunk'  # type: ignore[mutable-override]
        verbose_name_plural = 'File chunks'  # type: ignore[mutable-override]
        ordering = ['file', 'chunk_index']

        constraints = [
            models.UniqueConstraint(
                fields=['file', 'chunk_index'],
                name='uploads_chunk_index_unique',
            ),
        ]

    @override
    def __str__(self) -> str:
        """String representation."""
        return f'{self.file_id}#{self.chunk_index}'


@final
class StorageQuota(models.Model):
    """Storage quota for a user.

    Tracks user's storage limit and current usage. Usage is reserved
    before bytes are written and released again if the upload fails.

    When over quota, users can still read and delete files, but uploads
    are blocked until usage falls below the limit.
    """

    user = models.OneToOneField(
        settings.AUTH_USER_MODEL,
        on_delete=models.CASCADE,
        related_name='storage_quota',
        primary_key=True,
    )

    quota_bytes = models.BigIntegerField(
        default=_DEFAULT_QUOTA_BYTES,
        help_text='Storage quota limit in bytes',
    )

    used_bytes = models.BigIntegerField(
        default=0,
        help_text='Currently used storage in bytes',
    )

    usage_by_category = models.JSONField(
        default=_empty_dict,
        blank=True,
        help_text='Informational per-category breakdown in bytes',
    )

    last_updated = models.DateTimeField(null=True, blank=True)

    class Meta:
        """Model metadata."""

        verbose_name = 'Storage quota'  # type: ignore[mutable-override]
        verbose_name_plural = 'Storage quotas'  # type: ignore[mutable-override]

        constraints = [
            models.CheckConstraint(
                condition=models.Q(quota_bytes__gte=0),
                name='storage_quota_bytes_non_negative',
            ),
            models.CheckConstraint(
                condition=models.Q(used_bytes__gte=0),
                name='storage_used_bytes_non_negative',
            ),
        ]

    @override
    def __str__(self) -> str:
        """String representation."""
        return f'{self.user}: {self.used_bytes}/{self.quota_bytes}'

    def has_space_for(self, size_bytes: int) -> bool:
        """Check if there's enough space for the given size.

        Args:
            size_bytes: Size to check in bytes.

        Returns:
            True if there's enough space, False otherwise.
        """
        return self.used_bytes + size_bytes <= self.quota_bytes

    def available_bytes(self) -> int:
        """Get available storage space.

        Returns:
            Available bytes (never negative).
        """
        available = self.quota_bytes - self.used_bytes
        return max(0, available)


@final
class EncryptionKey(models.Model):
    """Per-file data key, sealed with the master key.

    Ciphertext never lives next to its key: storage objects only carry
    the ``key_id``.
    """

    key_id = models.CharField(max_length=_KEY_ID_MAX_LENGTH, unique=True)

    wrapped_key = models.BinaryField()

    rotated_from = models.CharField(
        max_length=_KEY_ID_MAX_LENGTH,
        blank=True,
        default='',
    )

    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        """Model metadata."""

        verbose_name = 'Encryption key'  # type: ignore[mutable-override]
        verbose_name_plural = 'Encryption keys'  # type: ignore[mutable-override]

    @override
    def __str__(self) -> str:
        """String representation."""
        return self.key_id
