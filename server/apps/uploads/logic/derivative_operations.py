"""Business logic for derivative generation.

Derivatives are built outside the upload request by jobs from the
secondary-processing queue:

- ``image_derivatives``: optimized JPEG plus square thumbnail
- ``document_preview``: first PDF page thumbnail plus a text snippet

A failed job never changes the file status. The error is recorded in
the processing history and in ``metadata['derivative_errors']``.
Jobs are idempotent: a re-run overwrites the same paths and versions.
"""

import logging
from collections.abc import Callable, Mapping
from typing import Any, Final

from django.conf import settings

from server.apps.uploads.infrastructure.documents import (
    extract_text_snippet,
    render_first_page,
)
from server.apps.uploads.infrastructure.encryption import FileEncryptor
from server.apps.uploads.infrastructure.imaging import (
    render_optimized,
    render_thumbnail,
)
from server.apps.uploads.infrastructure.metadata import build_derivative_path
from server.apps.uploads.infrastructure.queue import (
    DerivativeJob,
    get_derivative_queue,
)
from server.apps.uploads.infrastructure.storage import get_storage_provider
from server.apps.uploads.logic.file_operations import (
    merge_file_metadata,
    read_stored_bytes,
)
from server.apps.uploads.models import FileRecord, FileStatus

IMAGE_DERIVATIVES: Final = 'image_derivatives'
DOCUMENT_PREVIEW: Final = 'document_preview'

OPTIMIZED_VERSION: Final = 'optimized'
THUMBNAIL_VERSION: Final = 'thumbnail'

_JPEG_MIME_TYPE: Final = 'image/jpeg'
_TEXT_SNIPPET_LENGTH: Final = 1000
_ERRORS_KEY: Final = 'derivative_errors'

logger = logging.getLogger(__name__)


def get_optimized_max_dimension() -> int:
    """Get longest side of optimized image copies in pixels."""
    return getattr(settings, 'UPLOADS_OPTIMIZED_MAX_DIMENSION', 2000)


def get_thumbnail_size() -> int:
    """Get side of square thumbnails in pixels."""
    return getattr(settings, 'UPLOADS_THUMBNAIL_SIZE', 300)


def derivative_kinds_for(record: FileRecord) -> list[str]:
    """Derivative jobs that apply to a file.

    Args:
        record: File record with its detected MIME type set.

    Returns:
        Job kinds, empty for formats without derivatives.
    """
    if record.is_image:
        return [IMAGE_DERIVATIVES]
    if record.is_pdf:
        return [DOCUMENT_PREVIEW]
    return []


def enqueue_derivatives(record: FileRecord) -> None:
    """Submit derivative jobs for a freshly activated file.

    Submission failures are recorded on the file and never fail the
    upload.

    Args:
        record: Active file record.
    """
    kinds = derivative_kinds_for(record)
    if not kinds:
        return

    queue = get_derivative_queue()
    for kind in kinds:
        job = DerivativeJob(file_id=str(record.id), derivative_kind=kind)
        try:
            queue.submit(job)
        except Exception as error:
            # Log but don't raise - the file itself is stored
            logger.exception('Failed to enqueue %s for file %s', kind, record.id)
            _record_failure(record, kind, f'Could not enqueue job: {error}')


def run_derivative_job(job: DerivativeJob) -> None:
    """Execute one derivative job.

    Deleted, missing or non-active files are skipped.

    Args:
        job: Job taken from the queue.
    """
    handler = _HANDLERS.get(job.derivative_kind)
    if handler is None:
        logger.error('Unknown derivative kind %s, dropping job', job.derivative_kind)
        return

    try:
        record = FileRecord.objects.get(pk=job.file_id)
    except FileRecord.DoesNotExist:
        logger.warning('File %s is gone, skipping %s', job.file_id, job.derivative_kind)
        return

    if record.status != FileStatus.ACTIVE:
        logger.warning(
            'File %s is %s, skipping %s',
            record.id,
            record.status,
            job.derivative_kind,
        )
        return

    logger.info('Generating %s for file %s', job.derivative_kind, record.id)
    try:
        handler(record, job.params)
    except Exception as error:
        logger.exception(
            'Derivative %s failed for file %s',
            job.derivative_kind,
            record.id,
        )
        _record_failure(record, job.derivative_kind, str(error))


def generate_image_derivatives(
    record: FileRecord,
    params: Mapping[str, Any],
) -> None:
    """Build optimized copy and thumbnail of an image.

    Args:
        record: Active image file.
        params: Optional ``max_dimension`` and ``thumbnail_size`` overrides.
    """
    source = read_stored_bytes(record, record.storage_path)
    max_dimension = int(params.get('max_dimension') or get_optimized_max_dimension())
    thumbnail_size = int(params.get('thumbnail_size') or get_thumbnail_size())

    optimized = _store_derivative(
        record,
        OPTIMIZED_VERSION,
        render_optimized(source, max_dimension),
    )
    thumbnail = _store_derivative(
        record,
        THUMBNAIL_VERSION,
        render_thumbnail(source, thumbnail_size),
    )

    merge_file_metadata(
        record.id,
        metadata={_ERRORS_KEY: {IMAGE_DERIVATIVES: None}},
        versions=[optimized, thumbnail],
        thumbnail_path=thumbnail['path'],
        history={'action': IMAGE_DERIVATIVES, 'status': 'succeeded'},
    )


def generate_document_preview(
    record: FileRecord,
    params: Mapping[str, Any],
) -> None:
    """Build first-page thumbnail and text snippet of a PDF.

    Args:
        record: Active PDF file.
        params: Optional ``thumbnail_size`` override.
    """
    source = read_stored_bytes(record, record.storage_path)
    thumbnail_size = int(params.get('thumbnail_size') or get_thumbnail_size())

    page_image = render_first_page(source)
    thumbnail = _store_derivative(
        record,
        THUMBNAIL_VERSION,
        render_thumbnail(page_image, thumbnail_size),
    )
    text_preview = extract_text_snippet(source, limit=_TEXT_SNIPPET_LENGTH)

    merge_file_metadata(
        record.id,
        metadata={
            'text_preview': text_preview,
            _ERRORS_KEY: {DOCUMENT_PREVIEW: None},
        },
        versions=[thumbnail],
        thumbnail_path=thumbnail['path'],
        history={'action': DOCUMENT_PREVIEW, 'status': 'succeeded'},
    )


def _store_derivative(
    record: FileRecord,
    version_type: str,
    data: bytes,
) -> dict[str, Any]:
    """Store derivative bytes, sealed with the original's key if encrypted.

    Returns:
        Version entry for ``FileRecord.versions``.
    """
    path = build_derivative_path(record.category, record.id, version_type)
    payload = data
    content_type = _JPEG_MIME_TYPE
    if record.is_encrypted:
        payload = FileEncryptor().encrypt(data, key_id=record.encryption_key_id).data
        content_type = 'application/octet-stream'

    get_storage_provider().put(
        payload,
        path,
        content_type=content_type,
        metadata={'file-id': str(record.id), 'version': version_type},
    )
    return {'type': version_type, 'path': path, 'size': len(data)}


def _record_failure(record: FileRecord, kind: str, error: str) -> None:
    merge_file_metadata(
        record.id,
        metadata={_ERRORS_KEY: {kind: error}},
        history={'action': kind, 'status': 'failed', 'error': error},
    )


_HANDLERS: Final[dict[str, Callable[[FileRecord, Mapping[str, Any]], None]]] = {
    IMAGE_DERIVATIVES: generate_image_derivatives,
    DOCUMENT_PREVIEW: generate_document_preview,
}
