"""Metadata extraction and path utilities for uploaded files."""

import hashlib
import re
import uuid
from pathlib import Path
from typing import Final

import magic

_SNIFF_BYTES: Final = 64 * 1024  # libmagic only needs the file head
_FALLBACK_MIME_TYPE: Final = 'application/octet-stream'
_UNSAFE_NAME_CHARS: Final = re.compile(r'[^\w.\- ]')
_MAX_NAME_LENGTH: Final = 200


def detect_mime_type(data: bytes) -> str:
    """Detect MIME type from file contents.

    Uses libmagic (python-magic) on the leading bytes, so a renamed or
    mislabelled file is reported as what it really is.

    Args:
        data: File contents.

    Returns:
        MIME type string (e.g., 'image/jpeg', 'application/pdf').
        Returns 'application/octet-stream' for empty input.
    """
    if not data:
        return _FALLBACK_MIME_TYPE
    return magic.from_buffer(data[:_SNIFF_BYTES], mime=True)


def calculate_checksum(data: bytes) -> str:
    """Calculate SHA256 checksum of file contents.

    Args:
        data: File contents.

    Returns:
        Hex-encoded SHA256 hash string.
    """
    return hashlib.sha256(data).hexdigest()


def sanitize_filename(filename: str) -> str:
    """Make a user supplied filename safe to embed in a storage path.

    Example: '../../etc/pass wd?.pdf' -> 'pass wd_.pdf'

    Args:
        filename: Original filename, possibly with directories.

    Returns:
        Base name with unsafe characters replaced, never empty.
    """
    base_name = Path(filename.replace('\\', '/')).name
    cleaned = _UNSAFE_NAME_CHARS.sub('_', base_name).strip(' .')
    if not cleaned:
        return 'file'
    return cleaned[-_MAX_NAME_LENGTH:]


def get_file_extension(filename: str) -> str:
    """Get file extension from filename.

    Args:
        filename: Filename (e.g., 'document.pdf').

    Returns:
        Extension without dot, lowercase (e.g., 'pdf').
        Returns empty string if no extension.
    """
    extension = Path(filename).suffix
    return extension.lstrip('.').lower()


def build_original_path(
    category: str,
    file_id: uuid.UUID,
    original_name: str,
) -> str:
    """Storage path of the original bytes.

    Args:
        category: File category.
        file_id: File record id.
        original_name: Filename supplied by the uploader.

    Returns:
        Path like 'image/<id>/photo.png'.
    """
    return f'{category}/{file_id}/{sanitize_filename(original_name)}'


def build_derivative_path(
    category: str,
    file_id: uuid.UUID,
    derivative_type: str,
) -> str:
    """Storage path of a derivative (always JPEG).

    Args:
        category: File category.
        file_id: File record id.
        derivative_type: Version type, e.g. 'thumbnail'.

    Returns:
        Path like 'image/<id>/thumbnail.jpg'.
    """
    return f'{category}/{file_id}/{derivative_type}.jpg'


def build_chunk_path(file_id: uuid.UUID, chunk_index: int) -> str:
    """Storage path of a transient chunk.

    Indices are zero-padded so lexicographic order is numeric order.

    Args:
        file_id: File record id.
        chunk_index: 0-based chunk index.

    Returns:
        Path like 'chunks/<id>/000002'.
    """
    return f'chunks/{file_id}/{chunk_index:06d}'
