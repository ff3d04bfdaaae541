"""Validation and malware scanning of uploaded bytes.

Checks run in order and stop at the first failure:

1. size limit
2. content-sniffed MIME type against the allow-list
3. structural checks (images decode within limits, PDFs parse)
4. malware scan

Every failure raises :class:`FileValidationError` with a short
``reason`` code. Scanner outages raise :class:`ScannerUnavailableError`
instead, since the file itself was not judged.
"""

import dataclasses
import logging
from typing import Any, Final, final

from django.conf import settings

from server.apps.uploads.exceptions import FileValidationError
from server.apps.uploads.infrastructure.documents import (
    UnreadableDocumentError,
    inspect_pdf,
)
from server.apps.uploads.infrastructure.imaging import (
    ImageTooLargeError,
    UnreadableImageError,
    inspect_image,
)
from server.apps.uploads.infrastructure.metadata import (
    calculate_checksum,
    detect_mime_type,
)
from server.apps.uploads.infrastructure.scanning import get_scanner

_PDF_MIME_TYPE: Final = 'application/pdf'

logger = logging.getLogger(__name__)


@final
@dataclasses.dataclass(frozen=True, slots=True)
class ValidationResult:
    """Facts established while validating, reused when finalizing."""

    detected_mime_type: str
    checksum: str
    metadata: dict[str, Any]


def get_max_file_size() -> int:
    """Get maximum accepted file size in bytes."""
    return getattr(settings, 'UPLOADS_MAX_FILE_SIZE', 10 * 1024 * 1024)


def get_allowed_mime_types() -> frozenset[str]:
    """Get MIME types accepted after content sniffing."""
    return frozenset(getattr(settings, 'UPLOADS_ALLOWED_MIME_TYPES', ()))


def get_max_image_dimension() -> int:
    """Get maximum image width and height in pixels."""
    return getattr(settings, 'UPLOADS_MAX_IMAGE_DIMENSION', 4096)


def get_allowed_color_modes() -> frozenset[str]:
    """Get accepted Pillow image modes."""
    return frozenset(getattr(settings, 'UPLOADS_ALLOWED_COLOR_MODES', ()))


def get_max_pdf_pages() -> int:
    """Get maximum page count of PDF documents."""
    return getattr(settings, 'UPLOADS_MAX_PDF_PAGES', 100)


def check_file_size(size_bytes: int) -> None:
    """Check a size against the upload limits.

    Args:
        size_bytes: File size in bytes.

    Raises:
        FileValidationError: If the file is empty or too large.
    """
    if size_bytes <= 0:
        raise FileValidationError('empty_file', 'File is empty')

    max_size = get_max_file_size()
    if size_bytes > max_size:
        raise FileValidationError(
            'file_too_large',
            f'File is {size_bytes} bytes, maximum is {max_size} bytes',
        )


def validate_file(data: bytes, declared_type: str = '') -> ValidationResult:
    """Run every check on file bytes.

    Args:
        data: Complete file contents.
        declared_type: MIME type claimed by the uploader. Only recorded,
            never trusted.

    Returns:
        Sniffed type, checksum and structural metadata.

    Raises:
        FileValidationError: On the first failed check.
        ScannerUnavailableError: If the malware scanner gave no verdict.
    """
    check_file_size(len(data))

    detected_mime_type = detect_mime_type(data)
    if detected_mime_type not in get_allowed_mime_types():
        raise FileValidationError(
            'unsupported_type',
            f'File type {detected_mime_type} is not allowed',
        )

    metadata: dict[str, Any] = {}
    if detected_mime_type.startswith('image/'):
        metadata.update(_check_image(data))
    elif detected_mime_type == _PDF_MIME_TYPE:
        metadata.update(_check_pdf(data))

    if declared_type and declared_type != detected_mime_type:
        logger.info(
            'Declared type %s differs from detected %s',
            declared_type,
            detected_mime_type,
        )
        metadata['declared_mime_type'] = declared_type

    _scan(data)

    return ValidationResult(
        detected_mime_type=detected_mime_type,
        checksum=calculate_checksum(data),
        metadata=metadata,
    )


def _check_image(data: bytes) -> dict[str, Any]:
    max_dimension = get_max_image_dimension()
    try:
        info = inspect_image(data, max_dimension=max_dimension)
    except ImageTooLargeError as error:
        raise FileValidationError('image_too_large', str(error)) from error
    except UnreadableImageError as error:
        raise FileValidationError('corrupt_image', str(error)) from error

    if info.mode not in get_allowed_color_modes():
        raise FileValidationError(
            'unsupported_color_mode',
            f'Color mode {info.mode} is not allowed',
        )
    return info.as_metadata()


def _check_pdf(data: bytes) -> dict[str, Any]:
    try:
        info = inspect_pdf(data)
    except UnreadableDocumentError as error:
        raise FileValidationError('corrupt_document', str(error)) from error

    max_pages = get_max_pdf_pages()
    if info.page_count > max_pages:
        raise FileValidationError(
            'too_many_pages',
            f'PDF has {info.page_count} pages, maximum is {max_pages}',
        )
    return info.as_metadata()


def _scan(data: bytes) -> None:
    result = get_scanner().scan(data)
    if not result.clean:
        logger.warning('Malware detected in upload: %s', result.threat)
        raise FileValidationError(
            'malware_detected',
            f'File rejected by malware scan: {result.threat}',
        )
