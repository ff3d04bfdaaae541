"""Tests for storage providers."""

from urllib.parse import parse_qs, urlsplit

import pytest
from django.core import signing
from django.core.files.storage import FileSystemStorage

from server.apps.uploads.exceptions import StorageFailureError
from server.apps.uploads.infrastructure.storage import (
    LocalStorageProvider,
    S3StorageProvider,
    get_storage_provider,
)


@pytest.fixture
def local_provider(tmp_path):
    """Local provider writing into a temporary directory.

    Returns:
        LocalStorageProvider instance.
    """
    storage = FileSystemStorage(location=tmp_path, base_url='/media/uploads/')
    return LocalStorageProvider(storage)


class TestS3StorageProvider:
    """Tests for the django-storages backed provider."""

    def test_put_and_get(self, mock_s3):
        """Test bytes, content type and metadata are stored as given."""
        provider = S3StorageProvider()

        path = provider.put(
            b'content',
            'image/1/photo.png',
            content_type='image/png',
            metadata={'file-id': '1'},
        )

        stored = mock_s3.Object('uploads', path).get()
        assert path == 'image/1/photo.png'
        assert stored['ContentType'] == 'image/png'
        assert stored['Metadata'] == {'file-id': '1'}
        assert provider.get(path) == b'content'

    def test_put_overwrites_exact_path(self, mock_s3):
        """Test writing the same path twice replaces the object."""
        provider = S3StorageProvider()

        provider.put(b'first', 'chunks/1/000000')
        provider.put(b'second', 'chunks/1/000000')

        assert provider.get('chunks/1/000000') == b'second'

    def test_exists_and_delete(self, mock_s3):
        """Test existence checks before and after deletion."""
        provider = S3StorageProvider()
        provider.put(b'content', 'a/b.txt')

        assert provider.exists('a/b.txt')
        provider.delete('a/b.txt')
        assert not provider.exists('a/b.txt')

    def test_get_missing_object(self, mock_s3):
        """Test reading a missing object raises StorageFailureError."""
        with pytest.raises(StorageFailureError, match='missing.txt'):
            S3StorageProvider().get('missing.txt')

    def test_signed_url(self, mock_s3):
        """Test download URLs are presigned with the requested lifetime."""
        url = S3StorageProvider().signed_url('a/b.txt', 120)

        assert 'a/b.txt' in url
        assert 'Expires=' in url

    def test_rollback_swallows_errors(self, mock_s3):
        """Test rollback of a missing object doesn't raise."""
        S3StorageProvider().rollback('never/written.txt')


class TestLocalStorageProvider:
    """Tests for the filesystem provider."""

    def test_put_get_and_overwrite(self, local_provider, tmp_path):
        """Test exact paths are kept and overwritten."""
        local_provider.put(b'first', 'document/1/a.pdf')
        path = local_provider.put(b'second', 'document/1/a.pdf')

        assert path == 'document/1/a.pdf'
        assert local_provider.get(path) == b'second'
        assert sorted(p.name for p in (tmp_path / 'document' / '1').iterdir()) == [
            'a.pdf',
        ]

    def test_delete(self, local_provider):
        """Test deleted files no longer exist."""
        local_provider.put(b'data', 'x.bin')

        local_provider.delete('x.bin')

        assert not local_provider.exists('x.bin')

    def test_get_missing_file(self, local_provider):
        """Test missing files raise StorageFailureError."""
        with pytest.raises(StorageFailureError):
            local_provider.get('missing.bin')

    def test_signed_url_round_trip(self, local_provider):
        """Test the URL token resolves back to the path."""
        url = local_provider.signed_url('document/1/a.pdf', 60)

        parts = urlsplit(url)
        query = parse_qs(parts.query)
        assert parts.path == '/media/uploads/document/1/a.pdf'
        assert query['expires_in'] == ['60']
        assert local_provider.verify_token(query['token'][0], 60) == 'document/1/a.pdf'

    def test_tampered_token_rejected(self, local_provider):
        """Test a token for another path doesn't verify."""
        url = local_provider.signed_url('document/1/a.pdf', 60)
        token = parse_qs(urlsplit(url).query)['token'][0]
        forged = token.replace('document/1/a.pdf', 'document/2/b.pdf')

        with pytest.raises(signing.BadSignature):
            local_provider.verify_token(forged, 60)


def test_get_storage_provider(settings):
    """Test provider selection by setting."""
    settings.UPLOADS_STORAGE_PROVIDER = 'local'
    assert isinstance(get_storage_provider(), LocalStorageProvider)

    settings.UPLOADS_STORAGE_PROVIDER = 'ftp'
    with pytest.raises(ValueError, match='ftp'):
        get_storage_provider()
