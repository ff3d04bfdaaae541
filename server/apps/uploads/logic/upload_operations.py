"""Business logic for accepting uploads.

Single-request flow::

    reserve quota -> concurrency check -> PENDING -> PROCESSING
    -> validate and scan -> (encrypt) -> store -> ACTIVE
    -> commit quota -> enqueue derivatives

Chunked uploads create the record up front, collect chunks while
``RECEIVING_CHUNKS``, then reassemble (``ASSEMBLING``) and continue with
the same processing path.

Any failure after the record exists leaves it ``FAILED`` with the error
in its history, and returns reserved quota. Validation failures are
re-raised as they are; everything else surfaces as
:class:`StorageFailureError`.
"""

import dataclasses
import logging
import uuid
from collections.abc import Iterable, Sequence
from typing import Any, Final, final

from django.conf import settings

from server.apps.uploads.exceptions import (
    ConcurrencyLimitExceededError,
    FileValidationError,
    IncompleteChunksError,
    InvalidChunkError,
    QuotaExceededError,
    StorageFailureError,
    UploadError,
)
from server.apps.uploads.infrastructure.encryption import (
    FileEncryptor,
    encrypt_at_rest_by_default,
)
from server.apps.uploads.infrastructure.metadata import build_original_path
from server.apps.uploads.infrastructure.storage import get_storage_provider
from server.apps.uploads.logic.chunk_operations import (
    cleanup_chunks,
    combine_chunks,
    get_max_chunk_size,
    get_max_total_chunks,
    missing_indices,
    received_count,
    store_chunk,
)
from server.apps.uploads.logic.derivative_operations import enqueue_derivatives
from server.apps.uploads.logic.file_operations import (
    get_owned_file,
    merge_file_metadata,
)
from server.apps.uploads.logic.lifecycle import transition
from server.apps.uploads.logic.quota_operations import (
    QuotaReservation,
    check_quota,
    reserve_quota,
)
from server.apps.uploads.logic.validation import check_file_size, validate_file
from server.apps.uploads.models import (
    IN_FLIGHT_STATUSES,
    FileCategory,
    FileRecord,
    FileStatus,
)

# User type for Django's dynamic user model
_User = Any

_ENCRYPTED_CONTENT_TYPE: Final = 'application/octet-stream'

logger = logging.getLogger(__name__)


@final
@dataclasses.dataclass(frozen=True, slots=True)
class IncomingFile:
    """One file of a multi-file upload."""

    data: bytes
    original_name: str
    declared_type: str


@final
@dataclasses.dataclass(frozen=True, slots=True)
class MultiUploadResult:
    """Outcome of :func:`upload_multiple`."""

    succeeded: list[FileRecord]
    failed_names: list[str]


@final
@dataclasses.dataclass(frozen=True, slots=True)
class ChunkProgress:
    """How far a chunked upload got."""

    chunks_received: int
    total_chunks: int

    @property
    def is_complete(self) -> bool:
        """Whether every chunk has arrived."""
        return self.chunks_received >= self.total_chunks


def get_max_concurrent_uploads() -> int:
    """Get per-user ceiling of uploads in flight."""
    return getattr(settings, 'UPLOADS_MAX_CONCURRENT_UPLOADS', 5)


def upload_single(  # noqa: WPS211
    user: _User,
    data: bytes,
    original_name: str,
    declared_type: str,
    category: str = FileCategory.OTHER,
    parent_ref: str | None = None,
    encrypt: bool | None = None,
    description: str = '',
    tags: Sequence[str] = (),
) -> FileRecord:
    """Upload a file that fits in one request.

    Args:
        user: Uploading user.
        data: File contents.
        original_name: Filename supplied by the user.
        declared_type: MIME type supplied by the user.
        category: File category.
        parent_ref: Optional id of the owning entity.
        encrypt: Encrypt at rest, defaults to ``UPLOADS_ENCRYPT_AT_REST``.
        description: Optional description stored in metadata.
        tags: Optional tags stored in metadata.

    Returns:
        The active file record.

    Raises:
        QuotaExceededError: If the file doesn't fit the user's quota.
        ConcurrencyLimitExceededError: If too many uploads are in flight.
        FileValidationError: If the file fails validation or scanning.
        StorageFailureError: If anything else fails.
    """
    reservation = reserve_quota(user, len(data), category)
    try:
        _check_concurrency(user)
    except ConcurrencyLimitExceededError:
        reservation.release()
        raise

    record = FileRecord.objects.create(
        user=user,
        parent_ref=parent_ref or '',
        original_name=original_name,
        mime_type=declared_type,
        size_bytes=len(data),
        category=category,
        status=FileStatus.PENDING,
        metadata=_initial_metadata(description, tags),
    )
    logger.info(
        'Upload started: %s (%d bytes) for user %s as %s',
        original_name,
        len(data),
        user.username,
        record.id,
    )

    return _process_upload(record, data, reservation, _should_encrypt(encrypt))


def upload_multiple(
    user: _User,
    files: Iterable[IncomingFile],
    category: str = FileCategory.OTHER,
    parent_ref: str | None = None,
    encrypt: bool | None = None,
) -> MultiUploadResult:
    """Upload several files independently.

    The combined size is checked against the quota once up front. After
    that each file succeeds or fails on its own.

    Args:
        user: Uploading user.
        files: Files to upload.
        category: Category for every file.
        parent_ref: Optional id of the owning entity.
        encrypt: Encrypt at rest, defaults to ``UPLOADS_ENCRYPT_AT_REST``.

    Returns:
        Stored records and names of files that failed.

    Raises:
        QuotaExceededError: If the combined size doesn't fit. Nothing is
            uploaded.
    """
    incoming = list(files)
    check_quota(user, sum(len(item.data) for item in incoming))

    succeeded: list[FileRecord] = []
    failed_names: list[str] = []
    for item in incoming:
        try:
            record = upload_single(
                user,
                item.data,
                item.original_name,
                item.declared_type,
                category=category,
                parent_ref=parent_ref,
                encrypt=encrypt,
            )
        except UploadError as error:
            logger.warning(
                'Upload of %s failed for user %s: %s',
                item.original_name,
                user.username,
                error,
            )
            failed_names.append(item.original_name)
        else:
            succeeded.append(record)

    return MultiUploadResult(succeeded=succeeded, failed_names=failed_names)


def initiate_chunked_upload(  # noqa: WPS211
    user: _User,
    original_name: str,
    declared_type: str,
    total_size: int,
    total_chunks: int,
    category: str = FileCategory.OTHER,
    parent_ref: str | None = None,
    encrypt: bool | None = None,
) -> FileRecord:
    """Open a chunked upload.

    Args:
        user: Uploading user.
        original_name: Filename supplied by the user.
        declared_type: MIME type supplied by the user.
        total_size: Announced size of the whole file.
        total_chunks: Number of chunks that will be sent.
        category: File category.
        parent_ref: Optional id of the owning entity.
        encrypt: Encrypt at rest, defaults to ``UPLOADS_ENCRYPT_AT_REST``.

    Returns:
        Record in ``RECEIVING_CHUNKS``.

    Raises:
        FileValidationError: If the announced size is not acceptable.
        InvalidChunkError: If total_chunks is out of bounds.
        QuotaExceededError: If the announced size doesn't fit.
        ConcurrencyLimitExceededError: If too many uploads are in flight.
    """
    check_file_size(total_size)
    max_chunks = get_max_total_chunks()
    if not 1 <= total_chunks <= max_chunks:
        raise InvalidChunkError(
            f'total_chunks must be between 1 and {max_chunks}, got {total_chunks}',
        )
    check_quota(user, total_size)
    _check_concurrency(user)

    record = FileRecord.objects.create(
        user=user,
        parent_ref=parent_ref or '',
        original_name=original_name,
        mime_type=declared_type,
        size_bytes=total_size,
        category=category,
        status=FileStatus.PENDING,
        metadata={
            'total_chunks': total_chunks,
            'chunks_received': 0,
            'encrypt': _should_encrypt(encrypt),
        },
    )
    logger.info(
        'Chunked upload started: %s (%d bytes in %d chunks) for user %s as %s',
        original_name,
        total_size,
        total_chunks,
        user.username,
        record.id,
    )
    return transition(record.id, FileStatus.RECEIVING_CHUNKS, action='initiate_chunked')


def upload_chunk(
    user: _User,
    file_id: uuid.UUID,
    chunk_index: int,
    data: bytes,
    total_chunks: int,
) -> ChunkProgress:
    """Accept one chunk of a chunked upload.

    Args:
        user: Uploading user.
        file_id: Record returned by :func:`initiate_chunked_upload`.
        chunk_index: 0-based chunk position.
        data: Chunk bytes.
        total_chunks: Number of chunks, must match the announced value.

    Returns:
        Progress after storing the chunk.

    Raises:
        FileAccessDeniedError: If another user owns the upload.
        InvalidChunkError: If the chunk doesn't fit the upload.
        StorageFailureError: If the chunk can't be stored. Safe to resend.
    """
    record = _get_receiving_upload(user, file_id)

    expected_total = record.metadata['total_chunks']
    if total_chunks != expected_total:
        raise InvalidChunkError(
            f'Upload {file_id} has {expected_total} chunks, got {total_chunks}',
        )
    if not 0 <= chunk_index < expected_total:
        raise InvalidChunkError(
            f'Chunk index {chunk_index} out of range 0..{expected_total - 1}',
        )
    if not data:
        raise InvalidChunkError(f'Chunk {chunk_index} is empty')
    max_chunk_size = get_max_chunk_size()
    if len(data) > max_chunk_size:
        raise InvalidChunkError(
            f'Chunk {chunk_index} is {len(data)} bytes, '
            f'maximum is {max_chunk_size}',
        )

    store_chunk(record, chunk_index, data)
    received = received_count(record.id)
    merge_file_metadata(record.id, metadata={'chunks_received': received})

    return ChunkProgress(chunks_received=received, total_chunks=expected_total)


def complete_chunked_upload(user: _User, file_id: uuid.UUID) -> FileRecord:
    """Reassemble a chunked upload and process it.

    With chunks missing the upload stays open, so the caller can resend
    them and try again. Chunks are removed once the file is stored or
    rejected; after a storage or system failure they stay for
    ``reconcile_uploads``.

    Args:
        user: Uploading user.
        file_id: Record returned by :func:`initiate_chunked_upload`.

    Returns:
        The active file record.

    Raises:
        FileAccessDeniedError: If another user owns the upload.
        InvalidChunkError: If the upload is not receiving chunks.
        IncompleteChunksError: If chunks are missing.
        QuotaExceededError: If the assembled file doesn't fit the quota.
        FileValidationError: If the file fails validation or scanning.
        StorageFailureError: If anything else fails.
    """
    record = _get_receiving_upload(user, file_id)
    total_chunks = record.metadata['total_chunks']

    missing = missing_indices(record.id, total_chunks)
    if missing:
        raise IncompleteChunksError(missing, total_chunks)

    record = transition(record.id, FileStatus.ASSEMBLING, action='assemble')
    try:
        data = combine_chunks(record.id, total_chunks)
        reservation = reserve_quota(user, len(data), record.category)
    except Exception as error:
        _mark_failed(record.id, 'assemble', error)
        if isinstance(error, QuotaExceededError):
            cleanup_chunks(record.id)
        if isinstance(error, UploadError):
            raise
        raise StorageFailureError(f'Assembly failed: {error}') from error

    if record.size_bytes != len(data):
        logger.warning(
            'Upload %s announced %d bytes, assembled %d',
            record.id,
            record.size_bytes,
            len(data),
        )
    try:
        stored = _process_upload(
            record,
            data,
            reservation,
            bool(record.metadata.get('encrypt')),
        )
    except FileValidationError:
        cleanup_chunks(record.id)
        raise

    cleanup_chunks(record.id)
    return stored


def _process_upload(
    record: FileRecord,
    data: bytes,
    reservation: QuotaReservation,
    encrypt: bool,
) -> FileRecord:
    """Validate, store and activate a record holding a quota reservation."""
    provider = get_storage_provider()
    encryptor = FileEncryptor() if encrypt else None
    stored_path = ''
    key_id = ''

    try:
        transition(record.id, FileStatus.PROCESSING, action='process')
        validation = validate_file(data, record.mime_type)

        payload = data
        content_type = validation.detected_mime_type
        if encryptor is not None:
            encrypted = encryptor.encrypt(data)
            payload, key_id = encrypted.data, encrypted.key_id
            content_type = _ENCRYPTED_CONTENT_TYPE

        path = build_original_path(record.category, record.id, record.original_name)
        stored_path = provider.put(
            payload,
            path,
            content_type=content_type,
            metadata={'file-id': str(record.id), 'checksum': validation.checksum},
        )

        FileRecord.objects.filter(pk=record.id).update(
            storage_path=stored_path,
            size_bytes=len(data),
            detected_mime_type=validation.detected_mime_type,
            checksum_sha256=validation.checksum,
            is_encrypted=encryptor is not None,
            encryption_key_id=key_id,
        )
        merge_file_metadata(record.id, metadata=validation.metadata)
        record = transition(record.id, FileStatus.ACTIVE, action='store')
    except FileValidationError as error:
        logger.warning('Upload %s rejected: %s', record.id, error)
        _mark_failed(record.id, 'validate', error)
        reservation.release()
        raise
    except Exception as error:
        logger.exception('Upload %s failed', record.id)
        _mark_failed(record.id, 'store', error)
        reservation.release()
        if stored_path:
            provider.rollback(stored_path)
        if encryptor is not None and key_id:
            encryptor.destroy_key(key_id)
        if isinstance(error, StorageFailureError):
            raise
        raise StorageFailureError(f'Upload failed: {error}') from error

    reservation.commit()
    logger.info(
        'Upload complete: %s stored at %s (%d bytes)',
        record.id,
        record.storage_path,
        record.size_bytes,
    )
    enqueue_derivatives(record)
    record.refresh_from_db()
    return record


def _get_receiving_upload(user: _User, file_id: uuid.UUID) -> FileRecord:
    record = get_owned_file(user, file_id)
    if record.status != FileStatus.RECEIVING_CHUNKS:
        raise InvalidChunkError(
            f'Upload {file_id} is {record.status}, not receiving chunks',
        )
    return record


def _check_concurrency(user: _User) -> None:
    limit = get_max_concurrent_uploads()
    in_flight = FileRecord.objects.filter(
        user=user,
        status__in=IN_FLIGHT_STATUSES,
    ).count()
    if in_flight >= limit:
        logger.warning(
            'User %s has %d uploads in flight (limit %d)',
            user.username,
            in_flight,
            limit,
        )
        raise ConcurrencyLimitExceededError(in_flight, limit)


def _mark_failed(file_id: uuid.UUID, action: str, error: Exception) -> None:
    """Move a record to FAILED, logging instead of raising."""
    try:
        transition(file_id, FileStatus.FAILED, action=action, error=str(error))
    except Exception:
        # Log but don't raise - the original error is more useful
        logger.exception('Failed to mark upload %s as failed', file_id)


def _should_encrypt(encrypt: bool | None) -> bool:
    if encrypt is None:
        return encrypt_at_rest_by_default()
    return encrypt


def _initial_metadata(description: str, tags: Sequence[str]) -> dict[str, Any]:
    metadata: dict[str, Any] = {}
    if description:
        metadata['description'] = description
    if tags:
        metadata['tags'] = list(tags)
    return metadata
