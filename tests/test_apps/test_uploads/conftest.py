"""Shared fixtures for uploads app tests."""

import io

import boto3
import pytest
from django.contrib.auth import get_user_model
from moto import mock_aws
from PIL import Image
from pypdf import PdfWriter

User = get_user_model()

_BUCKET_NAME = 'uploads'


def _render_png(
    width: int = 64,
    height: int = 48,
    mode: str = 'RGB',
    color: object = (200, 30, 30),
) -> bytes:
    """Render a solid PNG image.

    Returns:
        PNG bytes.
    """
    image = Image.new(mode, (width, height), color)
    buffer = io.BytesIO()
    image.save(buffer, format='PNG')
    return buffer.getvalue()


def _render_pdf(pages: int = 1) -> bytes:
    """Render a PDF with blank pages.

    Returns:
        PDF bytes.
    """
    writer = PdfWriter()
    for _ in range(pages):
        writer.add_blank_page(width=200, height=200)
    buffer = io.BytesIO()
    writer.write(buffer)
    return buffer.getvalue()


def _bucket_keys(conn) -> list[str]:
    """List object keys in the uploads bucket.

    Returns:
        Sorted keys.
    """
    return sorted(obj.key for obj in conn.Bucket(_BUCKET_NAME).objects.all())


@pytest.fixture(autouse=True)
def upload_settings(settings):
    """Pin pipeline backends to in-process implementations.

    Returns:
        pytest-django settings wrapper.
    """
    settings.UPLOADS_STORAGE_PROVIDER = 's3'
    settings.UPLOADS_QUEUE_BACKEND = 'inline'
    settings.UPLOADS_SCANNER = 'signature'
    settings.UPLOADS_SCANNER_BLOCKED_SHA256 = []
    settings.UPLOADS_ENCRYPT_AT_REST = False
    settings.UPLOADS_ENCRYPTION_MASTER_KEY = 'test-master-key'
    settings.UPLOADS_MAX_CONCURRENT_UPLOADS = 5
    settings.UPLOADS_MAX_FILE_SIZE = 10 * 1024 * 1024
    settings.UPLOADS_ALLOWED_MIME_TYPES = [
        'image/jpeg',
        'image/png',
        'application/pdf',
    ]
    return settings


@pytest.fixture
def user(db):
    """Create test user.

    Returns:
        User instance for testing.
    """
    return User.objects.create_user(
        username='testuser',
        password='testpass123',
        email='test@example.com',
    )


@pytest.fixture
def other_user(db):
    """Create second test user for isolation tests.

    Returns:
        Second user instance.
    """
    return User.objects.create_user(
        username='otheruser',
        password='testpass123',
        email='other@example.com',
    )


@pytest.fixture
def mock_s3():
    """Mock S3 service with uploads bucket.

    Yields:
        boto3 S3 resource with uploads bucket created.
    """
    with mock_aws():
        conn = boto3.resource('s3', region_name='us-east-1')
        conn.create_bucket(Bucket=_BUCKET_NAME)

        yield conn


@pytest.fixture
def png_bytes():
    """Small RGB PNG.

    Returns:
        PNG bytes.
    """
    return _render_png()


@pytest.fixture
def pdf_bytes():
    """One-page PDF.

    Returns:
        PDF bytes.
    """
    return _render_pdf()


@pytest.fixture
def allow_text(settings):
    """Accept plain text uploads, so content can be chosen freely."""
    settings.UPLOADS_ALLOWED_MIME_TYPES = [
        *settings.UPLOADS_ALLOWED_MIME_TYPES,
        'text/plain',
    ]


@pytest.fixture
def make_png():
    """PNG factory taking width, height, mode and color.

    Returns:
        Callable rendering PNG bytes.
    """
    return _render_png


@pytest.fixture
def make_pdf():
    """PDF factory taking a page count.

    Returns:
        Callable rendering PDF bytes.
    """
    return _render_pdf


@pytest.fixture
def stored_keys(mock_s3):
    """Lister of object keys currently in the uploads bucket.

    Returns:
        Callable returning sorted keys.
    """
    return lambda: _bucket_keys(mock_s3)
