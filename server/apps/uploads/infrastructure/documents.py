"""PDF inspection (pypdf) and first-page rendering (PyMuPDF)."""

import dataclasses
import io
import logging
from typing import Any, Final, final

import fitz
from pypdf import PdfReader
from pypdf.errors import PdfReadError

_RENDER_ZOOM: Final = 2.0  # 144 dpi, enough for a 300px thumbnail

logger = logging.getLogger(__name__)


class UnreadableDocumentError(ValueError):
    """PDF bytes cannot be parsed."""


@final
@dataclasses.dataclass(frozen=True, slots=True)
class PdfInfo:
    """Facts read from a PDF."""

    page_count: int
    pdf_version: str
    is_encrypted: bool
    info: dict[str, str]

    def as_metadata(self) -> dict[str, Any]:
        """Serialize for ``FileRecord.metadata``."""
        return {
            'page_count': self.page_count,
            'pdf_version': self.pdf_version,
            'is_encrypted_pdf': self.is_encrypted,
            'pdf_info': self.info,
        }


def inspect_pdf(data: bytes) -> PdfInfo:
    """Parse a PDF and count its pages.

    Args:
        data: PDF bytes.

    Returns:
        PDF facts.

    Raises:
        UnreadableDocumentError: If pypdf cannot parse the document.
    """
    try:
        reader = _open_reader(data)
        page_count = len(reader.pages)
        info = _document_info(reader)
    except (PdfReadError, OSError, ValueError, KeyError) as error:
        raise UnreadableDocumentError(f'Cannot parse PDF: {error}') from error

    return PdfInfo(
        page_count=page_count,
        pdf_version=reader.pdf_header.removeprefix('%PDF-'),
        is_encrypted=reader.is_encrypted,
        info=info,
    )


def extract_text_snippet(data: bytes, limit: int = 1000) -> str:
    """Extract leading text of a PDF.

    Args:
        data: PDF bytes.
        limit: Maximum number of characters.

    Returns:
        Text, possibly empty for scanned documents.

    Raises:
        UnreadableDocumentError: If pypdf cannot parse the document.
    """
    try:
        reader = _open_reader(data)
        text_parts: list[str] = []
        collected = 0
        for page in reader.pages:
            page_text = page.extract_text() or ''
            if page_text:
                text_parts.append(page_text)
                collected += len(page_text)
            if collected >= limit:
                break
    except (PdfReadError, OSError, ValueError, KeyError) as error:
        raise UnreadableDocumentError(f'Cannot parse PDF: {error}') from error

    return '\n'.join(text_parts).strip()[:limit]


def render_first_page(data: bytes) -> bytes:
    """Render the first page of a PDF as PNG.

    Args:
        data: PDF bytes.

    Returns:
        PNG bytes.

    Raises:
        UnreadableDocumentError: If the document has no pages or
            PyMuPDF cannot open it.
    """
    try:
        with fitz.open(stream=data, filetype='pdf') as document:
            if document.page_count == 0:
                raise UnreadableDocumentError('PDF has no pages')
            page = document.load_page(0)
            pixmap = page.get_pixmap(matrix=fitz.Matrix(_RENDER_ZOOM, _RENDER_ZOOM))
            return pixmap.tobytes('png')
    except UnreadableDocumentError:
        raise
    except (RuntimeError, ValueError) as error:
        raise UnreadableDocumentError(f'Cannot render PDF: {error}') from error


def _open_reader(data: bytes) -> PdfReader:
    reader = PdfReader(io.BytesIO(data))
    if reader.is_encrypted:
        # Owner-password-only PDFs open with an empty user password
        reader.decrypt('')
    return reader


def _document_info(reader: PdfReader) -> dict[str, str]:
    metadata = reader.metadata
    if not metadata:
        return {}
    return {
        str(key).lstrip('/'): str(value)
        for key, value in metadata.items()
        if value is not None
    }
