"""Storage providers for uploaded files.

Business logic talks to a :class:`StorageProvider` and never to a
backend directly. Two providers exist:

- ``s3``: django-storages ``S3Storage`` (MinIO, R2, AWS S3)
- ``local``: Django ``FileSystemStorage`` with signed download tokens

Backend errors are surfaced as :class:`StorageFailureError`.
"""

import abc
import logging
from collections.abc import Mapping
from typing import Any, Final, final, override
from urllib.parse import urlencode

from botocore.exceptions import BotoCoreError, ClientError
from django.conf import settings
from django.core import signing
from django.core.files.base import ContentFile
from django.core.files.storage import Storage, storages
from storages.backends.s3 import S3Storage

from server.apps.uploads.exceptions import StorageFailureError

_LOCAL_STORAGE_ALIAS: Final = 'local_uploads'
_DOWNLOAD_SALT: Final = 'uploads.download'
_NOT_FOUND_CODES: Final = frozenset(('404', 'NoSuchKey', 'NotFound'))

logger = logging.getLogger(__name__)


@final
class FileStorage(S3Storage):
    """Custom S3 storage backend for uploaded files.

    Extends django-storages S3Storage with:
    - Raw object writes carrying content type and user metadata
    - Transaction rollback support for failed DB operations
    - Enhanced error logging
    """

    @override
    def delete(self, name: str) -> None:
        """Delete file from S3 with error handling and logging.

        Args:
            name: Storage path of file to delete.

        Raises:
            Exception: If S3 delete fails.
        """
        try:
            logger.info('Deleting file from storage: %s', name)
            super().delete(name)
            logger.info('Successfully deleted file: %s', name)
        except Exception:
            logger.exception('Failed to delete file from storage: %s', name)
            raise

    def put_object(
        self,
        name: str,
        data: bytes,
        content_type: str | None = None,
        metadata: Mapping[str, str] | None = None,
    ) -> str:
        """Write raw bytes to an exact key, overwriting what is there.

        Args:
            name: Object key.
            data: Object body.
            content_type: Optional Content-Type header.
            metadata: Optional user metadata (``x-amz-meta-*``).

        Returns:
            The object key.
        """
        params: dict[str, Any] = {'Body': data}
        if content_type:
            params['ContentType'] = content_type
        if metadata:
            params['Metadata'] = dict(metadata)

        try:
            logger.info('Uploading object to storage: %s', name)
            self.bucket.Object(name).put(**params)
        except Exception:
            logger.exception('Failed to upload object to storage: %s', name)
            raise
        return name

    def get_object(self, name: str) -> bytes:
        """Read an object body.

        Args:
            name: Object key.

        Returns:
            Object bytes.
        """
        response = self.bucket.Object(name).get()
        return response['Body'].read()

    def object_exists(self, name: str) -> bool:
        """Check object presence with a HEAD request.

        Args:
            name: Object key.

        Returns:
            True if the object exists.
        """
        try:
            self.bucket.Object(name).load()
        except ClientError as error:
            if error.response.get('Error', {}).get('Code') in _NOT_FOUND_CODES:
                return False
            raise
        return True

    def rollback_upload(self, name: str) -> None:
        """Delete uploaded file for DB transaction rollback.

        This is a best-effort operation - if deletion fails, the error
        is logged but not raised.

        Args:
            name: Storage path of file to delete.
        """
        try:
            logger.warning('Rolling back upload, deleting file: %s', name)
            self.delete(name)
            logger.info('Successfully rolled back file upload: %s', name)
        except Exception:
            # Log but don't raise - rollback is best-effort
            logger.exception(
                'Failed to rollback upload, orphaned file: %s',
                name,
            )


class StorageProvider(abc.ABC):
    """Where file bytes live. Paths are opaque keys chosen by the caller."""

    @abc.abstractmethod
    def put(
        self,
        data: bytes,
        path: str,
        content_type: str | None = None,
        metadata: Mapping[str, str] | None = None,
    ) -> str:
        """Store bytes at path, replacing existing content.

        Args:
            data: Bytes to store.
            path: Destination key.
            content_type: Optional MIME type for the object.
            metadata: Optional string metadata kept with the object.

        Returns:
            The path the bytes were stored at.

        Raises:
            StorageFailureError: If the backend fails.
        """

    @abc.abstractmethod
    def get(self, path: str) -> bytes:
        """Read bytes stored at path.

        Raises:
            StorageFailureError: If the object is missing or unreadable.
        """

    @abc.abstractmethod
    def delete(self, path: str) -> None:
        """Delete the object at path. Missing objects are not an error."""

    @abc.abstractmethod
    def exists(self, path: str) -> bool:
        """Whether an object is stored at path."""

    @abc.abstractmethod
    def signed_url(self, path: str, expires_in: int) -> str:
        """Time-limited download URL for path."""

    def rollback(self, path: str) -> None:
        """Best-effort delete of bytes written by a failed upload.

        Args:
            path: Path to remove.
        """
        try:
            logger.warning('Rolling back stored object: %s', path)
            self.delete(path)
        except Exception:
            # Log but don't raise - rollback is best-effort
            logger.exception('Failed to roll back stored object: %s', path)


@final
class S3StorageProvider(StorageProvider):
    """Provider backed by the django-storages default storage."""

    def __init__(self, storage: FileStorage | None = None) -> None:
        """Initialize provider.

        Args:
            storage: Storage backend, defaults to ``storages['default']``.
        """
        self._storage = storages['default'] if storage is None else storage

    @override
    def put(
        self,
        data: bytes,
        path: str,
        content_type: str | None = None,
        metadata: Mapping[str, str] | None = None,
    ) -> str:
        try:
            return self._storage.put_object(
                path,
                data,
                content_type=content_type,
                metadata=metadata,
            )
        except (BotoCoreError, ClientError) as error:
            raise StorageFailureError(
                f'Failed to store {path}: {error}',
            ) from error

    @override
    def get(self, path: str) -> bytes:
        try:
            return self._storage.get_object(path)
        except (BotoCoreError, ClientError) as error:
            raise StorageFailureError(
                f'Failed to read {path}: {error}',
            ) from error

    @override
    def delete(self, path: str) -> None:
        try:
            self._storage.delete(path)
        except (BotoCoreError, ClientError) as error:
            raise StorageFailureError(
                f'Failed to delete {path}: {error}',
            ) from error

    @override
    def exists(self, path: str) -> bool:
        try:
            return self._storage.object_exists(path)
        except (BotoCoreError, ClientError) as error:
            raise StorageFailureError(
                f'Failed to check {path}: {error}',
            ) from error

    @override
    def signed_url(self, path: str, expires_in: int) -> str:
        try:
            return self._storage.url(path, expire=expires_in)
        except (BotoCoreError, ClientError) as error:
            raise StorageFailureError(
                f'Failed to sign URL for {path}: {error}',
            ) from error

    @override
    def rollback(self, path: str) -> None:
        self._storage.rollback_upload(path)


@final
class LocalStorageProvider(StorageProvider):
    """Provider backed by a local ``FileSystemStorage``.

    Download URLs carry a ``token`` query parameter signed with
    ``TimestampSigner``; whoever serves ``base_url`` checks it with
    :meth:`verify_token`.
    """

    def __init__(self, storage: Storage | None = None) -> None:
        """Initialize provider.

        Args:
            storage: Storage backend, defaults to ``storages['local_uploads']``.
        """
        self._storage = (
            storages[_LOCAL_STORAGE_ALIAS] if storage is None else storage
        )
        self._signer = signing.TimestampSigner(salt=_DOWNLOAD_SALT)

    @override
    def put(
        self,
        data: bytes,
        path: str,
        content_type: str | None = None,
        metadata: Mapping[str, str] | None = None,
    ) -> str:
        try:
            # FileSystemStorage renames on conflict, paths here are exact
            if self._storage.exists(path):
                self._storage.delete(path)
            self._storage.save(path, ContentFile(data))
        except OSError as error:
            raise StorageFailureError(
                f'Failed to store {path}: {error}',
            ) from error
        logger.info('Stored file on local storage: %s', path)
        return path

    @override
    def get(self, path: str) -> bytes:
        try:
            with self._storage.open(path, 'rb') as stored_file:
                return stored_file.read()
        except OSError as error:
            raise StorageFailureError(
                f'Failed to read {path}: {error}',
            ) from error

    @override
    def delete(self, path: str) -> None:
        try:
            self._storage.delete(path)
        except OSError as error:
            raise StorageFailureError(
                f'Failed to delete {path}: {error}',
            ) from error
        logger.info('Deleted file from local storage: %s', path)

    @override
    def exists(self, path: str) -> bool:
        return self._storage.exists(path)

    @override
    def signed_url(self, path: str, expires_in: int) -> str:
        token = self._signer.sign(path)
        query = urlencode({'token': token, 'expires_in': expires_in})
        return f'{self._storage.url(path)}?{query}'

    def verify_token(self, token: str, max_age: int) -> str:
        """Return the path a download token was issued for.

        Args:
            token: Value of the ``token`` query parameter.
            max_age: Maximum token age in seconds.

        Returns:
            Storage path.

        Raises:
            signing.SignatureExpired: If the token is too old.
            signing.BadSignature: If the token was tampered with.
        """
        return self._signer.unsign(token, max_age=max_age)


def get_storage_provider() -> StorageProvider:
    """Get the provider selected by ``UPLOADS_STORAGE_PROVIDER``.

    Returns:
        Configured storage provider.

    Raises:
        ValueError: If the setting names an unknown provider.
    """
    provider_name = getattr(settings, 'UPLOADS_STORAGE_PROVIDER', 's3')
    if provider_name == 's3':
        return S3StorageProvider()
    if provider_name == 'local':
        return LocalStorageProvider()
    raise ValueError(f'Unknown storage provider: {provider_name}')


def get_signed_url_expiry() -> int:
    """Get default lifetime of download URLs in seconds."""
    return getattr(settings, 'UPLOADS_SIGNED_URL_EXPIRY', 900)
