"""Business logic for chunked upload assembly.

Each chunk is stored as its own transient object and tracked by a
``FileChunk`` row, so chunks may arrive in any order and concurrently.
Reassembly reads them back by index.
"""

import logging
import uuid
from collections.abc import Iterator
from datetime import timedelta
from typing import Final

from django.conf import settings
from django.db import IntegrityError
from django.utils import timezone

from server.apps.uploads.exceptions import (
    IncompleteChunksError,
    StorageFailureError,
)
from server.apps.uploads.infrastructure.metadata import build_chunk_path
from server.apps.uploads.infrastructure.storage import get_storage_provider
from server.apps.uploads.models import FileChunk, FileRecord

_CHUNK_CONTENT_TYPE: Final = 'application/octet-stream'

logger = logging.getLogger(__name__)


def get_max_chunk_size() -> int:
    """Get maximum size of a single chunk in bytes."""
    return getattr(settings, 'UPLOADS_MAX_CHUNK_SIZE', 5 * 1024 * 1024)


def get_max_total_chunks() -> int:
    """Get maximum number of chunks per upload."""
    return getattr(settings, 'UPLOADS_MAX_TOTAL_CHUNKS', 10000)


def get_chunk_ttl() -> timedelta:
    """Get how long an unfinished chunked upload is kept."""
    return timedelta(seconds=getattr(settings, 'UPLOADS_CHUNK_TTL_SECONDS', 86400))


def store_chunk(
    file_record: FileRecord,
    chunk_index: int,
    data: bytes,
) -> FileChunk:
    """Persist one chunk of a chunked upload.

    Re-sending an index overwrites the stored bytes and updates the
    existing row, so it is never counted twice.

    Args:
        file_record: Record the chunk belongs to.
        chunk_index: 0-based chunk position.
        data: Chunk bytes.

    Returns:
        The chunk row.

    Raises:
        StorageFailureError: If the chunk can't be stored.
    """
    storage_path = build_chunk_path(file_record.id, chunk_index)
    get_storage_provider().put(
        data,
        storage_path,
        content_type=_CHUNK_CONTENT_TYPE,
    )

    defaults = {
        'size_bytes': len(data),
        'storage_path': storage_path,
        'processed': False,
        'expires_at': timezone.now() + get_chunk_ttl(),
    }
    try:
        chunk, _ = FileChunk.objects.update_or_create(
            file=file_record,
            chunk_index=chunk_index,
            defaults=defaults,
        )
    except IntegrityError:
        # Same index inserted concurrently, the row exists now
        logger.info(
            'Chunk %d of %s inserted concurrently, updating',
            chunk_index,
            file_record.id,
        )
        chunk, _ = FileChunk.objects.update_or_create(
            file=file_record,
            chunk_index=chunk_index,
            defaults=defaults,
        )

    logger.debug(
        'Stored chunk %d of %s (%d bytes)',
        chunk_index,
        file_record.id,
        len(data),
    )
    return chunk


def received_indices(file_id: uuid.UUID) -> set[int]:
    """Indices of chunks received so far."""
    return set(
        FileChunk.objects.filter(file_id=file_id).values_list(
            'chunk_index',
            flat=True,
        ),
    )


def received_count(file_id: uuid.UUID) -> int:
    """Number of distinct chunks received so far."""
    return FileChunk.objects.filter(file_id=file_id).count()


def missing_indices(file_id: uuid.UUID, total_chunks: int) -> list[int]:
    """Indices in ``[0, total_chunks)`` not received yet.

    Args:
        file_id: Chunked upload record id.
        total_chunks: Declared number of chunks.

    Returns:
        Sorted missing indices.
    """
    received = received_indices(file_id)
    return [index for index in range(total_chunks) if index not in received]


def iter_chunk_bytes(file_id: uuid.UUID, total_chunks: int) -> Iterator[bytes]:
    """Yield chunk contents in index order.

    Args:
        file_id: Chunked upload record id.
        total_chunks: Declared number of chunks.

    Yields:
        Bytes of each chunk, starting at index 0.

    Raises:
        IncompleteChunksError: If any index is missing.
        StorageFailureError: If a stored chunk differs in length from
            what was received.
    """
    missing = missing_indices(file_id, total_chunks)
    if missing:
        raise IncompleteChunksError(missing, total_chunks)

    provider = get_storage_provider()
    chunks = FileChunk.objects.filter(
        file_id=file_id,
        chunk_index__lt=total_chunks,
    ).order_by('chunk_index')

    for chunk in chunks:
        data = provider.get(chunk.storage_path)
        if len(data) != chunk.size_bytes:
            raise StorageFailureError(
                f'Chunk {chunk.chunk_index} of {file_id} is {len(data)} '
                f'bytes, expected {chunk.size_bytes}',
            )
        yield data


def combine_chunks(file_id: uuid.UUID, total_chunks: int) -> bytes:
    """Reassemble a chunked upload.

    Args:
        file_id: Chunked upload record id.
        total_chunks: Declared number of chunks.

    Returns:
        Concatenated bytes of chunks 0..total_chunks-1.

    Raises:
        IncompleteChunksError: If any index is missing.
        StorageFailureError: If a chunk is missing or truncated in storage.
    """
    combined = b''.join(iter_chunk_bytes(file_id, total_chunks))
    FileChunk.objects.filter(file_id=file_id).update(processed=True)
    logger.info(
        'Combined %d chunks of %s into %d bytes',
        total_chunks,
        file_id,
        len(combined),
    )
    return combined


def cleanup_chunks(file_id: uuid.UUID) -> int:
    """Delete all chunks of an upload.

    Transient objects are removed by the ``FileChunk`` post_delete signal.

    Args:
        file_id: Chunked upload record id.

    Returns:
        Number of chunk rows deleted.
    """
    deleted, _ = FileChunk.objects.filter(file_id=file_id).delete()
    if deleted:
        logger.info('Cleaned up %d chunks of %s', deleted, file_id)
    return deleted
