"""Business logic for stored file access, metadata and deletion."""

import dataclasses
import logging
import uuid
from collections.abc import Iterable, Mapping
from datetime import datetime, timedelta
from typing import Any, Final, final

from django.conf import settings
from django.db import transaction
from django.db.models import QuerySet
from django.utils import timezone
from django.utils.module_loading import import_string

from server.apps.uploads.exceptions import (
    FileAccessDeniedError,
    FileNotAvailableError,
)
from server.apps.uploads.infrastructure.encryption import FileEncryptor
from server.apps.uploads.infrastructure.storage import (
    get_signed_url_expiry,
    get_storage_provider,
)
from server.apps.uploads.logic.chunk_operations import cleanup_chunks
from server.apps.uploads.logic.quota_operations import decrement_usage
from server.apps.uploads.models import FileRecord, FileStatus

# User type for Django's dynamic user model
_User = Any

_METADATA_FIELD: Final = 'metadata'

logger = logging.getLogger(__name__)


@final
@dataclasses.dataclass(frozen=True, slots=True)
class DownloadLink:
    """Time-limited URL for an active file."""

    url: str
    expires_at: datetime


@final
@dataclasses.dataclass(frozen=True, slots=True)
class FileStatusReport:
    """Progress of a file through the pipeline."""

    file_id: uuid.UUID
    status: str
    chunks_received: int | None
    total_chunks: int | None
    last_event: dict[str, Any] | None
    error: str | None


def merge_file_metadata(  # noqa: WPS211
    file_id: uuid.UUID,
    metadata: Mapping[str, Any] | None = None,
    versions: Iterable[Mapping[str, Any]] = (),
    thumbnail_path: str | None = None,
    history: Mapping[str, Any] | None = None,
) -> FileRecord:
    """Field-level upsert into a file record under a row lock.

    Concurrent writers (derivative jobs, chunk progress) each
    touch only their own keys, so no update is lost.

    Metadata merge rules: a ``None`` value deletes the key, and a dict
    value is merged one level deep into an existing dict.
    Versions are upserted by their ``type``.

    A record deleted in the meantime is left untouched, and objects named
    by the new versions or thumbnail are removed from storage again.

    Args:
        file_id: Record to update (deleted records included).
        metadata: Keys to merge into ``metadata``.
        versions: ``{'type', 'path', 'size'}`` entries.
        thumbnail_path: New thumbnail path.
        history: Entry with ``action``, ``status`` and optional ``error``.

    Returns:
        The updated record.
    """
    new_versions = list(versions)
    with transaction.atomic():
        record = FileRecord.all_objects.select_for_update().get(pk=file_id)
        if record.is_deleted:
            _discard_late_objects(record, new_versions, thumbnail_path)
            return record

        update_fields = ['modified_at']

        if metadata:
            record.metadata = _merge_dicts(record.metadata, metadata)
            update_fields.append(_METADATA_FIELD)

        if new_versions:
            record.versions = _upsert_versions(record.versions, new_versions)
            update_fields.append('versions')

        if thumbnail_path is not None:
            record.thumbnail_path = thumbnail_path
            update_fields.append('thumbnail_path')

        if history:
            record.add_history_event(
                history['action'],
                history['status'],
                history.get('error'),
            )
            update_fields.append('processing_history')

        record.save(update_fields=update_fields)

    return record


def get_accessible_file(user: _User, file_id: uuid.UUID) -> FileRecord:
    """Load a file the user may read.

    The uploader always has access. Other users have access when the
    parent-access resolver links them to the file's ``parent_ref``.

    Args:
        user: Requesting user.
        file_id: File record id.

    Returns:
        The file record.

    Raises:
        FileRecord.DoesNotExist: If the file doesn't exist or is deleted.
        FileAccessDeniedError: If the user has no access.
    """
    record = FileRecord.objects.get(pk=file_id)
    if record.user_id == user.pk:
        return record
    if record.parent_ref and _parent_grants_access(user, record.parent_ref):
        return record

    logger.warning(
        'User %s denied access to file %s',
        user.username,
        file_id,
    )
    raise FileAccessDeniedError(f'No access to file {file_id}')


def get_owned_file(user: _User, file_id: uuid.UUID) -> FileRecord:
    """Load a file the user uploaded.

    Raises:
        FileRecord.DoesNotExist: If the file doesn't exist or is deleted.
        FileAccessDeniedError: If another user owns the file.
    """
    record = FileRecord.objects.get(pk=file_id)
    if record.user_id != user.pk:
        raise FileAccessDeniedError(f'File {file_id} belongs to another user')
    return record


def get_download_url(
    user: _User,
    file_id: uuid.UUID,
    expires_in: int | None = None,
) -> DownloadLink:
    """Issue a time-limited download URL and count the download.

    Encrypted files get no URL: storage holds ciphertext only. Use
    :func:`read_file_content` for them.

    Args:
        user: Requesting user.
        file_id: File record id.
        expires_in: URL lifetime in seconds, defaults to
            ``UPLOADS_SIGNED_URL_EXPIRY``.

    Returns:
        URL and its expiry moment.

    Raises:
        FileAccessDeniedError: If the user has no access.
        FileNotAvailableError: If the file is not active or is encrypted.
    """
    record = get_accessible_file(user, file_id)
    if record.status != FileStatus.ACTIVE:
        raise FileNotAvailableError(
            f'File {file_id} is {record.status}, not available for download',
        )
    if record.is_encrypted:
        raise FileNotAvailableError(
            f'File {file_id} is encrypted and cannot be served by URL',
        )

    lifetime = expires_in or get_signed_url_expiry()
    url = get_storage_provider().signed_url(record.storage_path, lifetime)
    now = timezone.now()

    with transaction.atomic():
        locked = FileRecord.all_objects.select_for_update().get(pk=file_id)
        locked.metadata = {
            **locked.metadata,
            'downloads': locked.metadata.get('downloads', 0) + 1,
            'last_downloaded_at': now.isoformat(),
            'last_downloaded_by': user.pk,
        }
        locked.save(update_fields=[_METADATA_FIELD, 'modified_at'])

    logger.info('Issued download URL for file %s to user %s', file_id, user.username)
    return DownloadLink(url=url, expires_at=now + timedelta(seconds=lifetime))


def read_file_content(user: _User, file_id: uuid.UUID) -> bytes:
    """Read plaintext of an active file.

    Args:
        user: Requesting user.
        file_id: File record id.

    Returns:
        File bytes, decrypted when stored encrypted.

    Raises:
        FileAccessDeniedError: If the user has no access.
        FileNotAvailableError: If the file is not active.
        DecryptionFailedError: If stored ciphertext fails authentication.
        StorageFailureError: If the bytes can't be read.
    """
    record = get_accessible_file(user, file_id)
    if record.status != FileStatus.ACTIVE:
        raise FileNotAvailableError(f'File {file_id} is {record.status}')
    return read_stored_bytes(record, record.storage_path)


def read_stored_bytes(record: FileRecord, path: str) -> bytes:
    """Read an object that belongs to record, decrypting if needed.

    Args:
        record: Owning file record.
        path: Original or derivative path.

    Returns:
        Plaintext bytes.
    """
    stored = get_storage_provider().get(path)
    if not record.is_encrypted:
        return stored
    return FileEncryptor().decrypt(stored, record.encryption_key_id)


def get_file_status(user: _User, file_id: uuid.UUID) -> FileStatusReport:
    """Report where a file is in the pipeline.

    Args:
        user: Owner of the file.
        file_id: File record id.

    Returns:
        Status report.
    """
    record = get_owned_file(user, file_id)
    history = record.processing_history
    return FileStatusReport(
        file_id=record.id,
        status=record.status,
        chunks_received=record.metadata.get('chunks_received'),
        total_chunks=record.metadata.get('total_chunks'),
        last_event=history[-1] if history else None,
        error=record.metadata.get('error'),
    )


def list_user_files(
    user: _User,
    category: str | None = None,
    status: str | None = FileStatus.ACTIVE,
) -> QuerySet[FileRecord]:
    """List a user's files, newest first.

    Args:
        user: Owner.
        category: Optional category filter.
        status: Status filter, ``None`` for every status.

    Returns:
        QuerySet of file records.
    """
    files = FileRecord.objects.filter(user=user)
    if category:
        files = files.filter(category=category)
    if status:
        files = files.filter(status=status)
    return files.order_by('-created_at')


def list_parent_files(parent_ref: str) -> QuerySet[FileRecord]:
    """List active files attached to a parent entity, newest first."""
    return FileRecord.objects.filter(
        parent_ref=parent_ref,
        status=FileStatus.ACTIVE,
    ).order_by('-created_at')


def delete_file(user: _User, file_id: uuid.UUID) -> None:
    """Delete a file: storage objects, quota usage, key, then the record.

    Storage deletions are best effort, failures are logged and leave
    orphaned objects behind. The record is soft-deleted and kept.
    Quota and key are settled by whichever of two overlapping deletes
    locks the row first; the other one returns without changes.

    Args:
        user: Owner of the file.
        file_id: File record id.

    Raises:
        FileRecord.DoesNotExist: If the file doesn't exist.
        FileAccessDeniedError: If another user owns the file.
    """
    record = get_owned_file(user, file_id)
    provider = get_storage_provider()

    for path in record.get_storage_paths():
        try:
            provider.delete(path)
        except Exception:
            # Log but don't raise - DB state is the source of truth
            logger.exception('Failed to delete stored object: %s', path)

    cleanup_chunks(record.id)

    with transaction.atomic():
        locked = FileRecord.all_objects.select_for_update().get(pk=file_id)
        if locked.is_deleted:
            logger.info('File %s was already deleted', file_id)
            return
        was_active = locked.status == FileStatus.ACTIVE
        locked.is_deleted = True
        locked.deleted_at = timezone.now()
        locked.add_history_event('delete', 'succeeded')
        locked.save(
            update_fields=[
                'is_deleted',
                'deleted_at',
                'processing_history',
                'modified_at',
            ],
        )
        if was_active:
            decrement_usage(user, locked.size_bytes, locked.category)

    if record.is_encrypted and record.encryption_key_id:
        FileEncryptor().destroy_key(record.encryption_key_id)

    logger.info('Deleted file %s of user %s', file_id, user.username)


def _discard_late_objects(
    record: FileRecord,
    versions: list[Mapping[str, Any]],
    thumbnail_path: str | None,
) -> None:
    """Remove objects written for a record that got deleted meanwhile."""
    paths = {version['path'] for version in versions}
    if thumbnail_path:
        paths.add(thumbnail_path)
    if not paths:
        return

    logger.warning(
        'File %s was deleted while being processed, discarding %d objects',
        record.id,
        len(paths),
    )
    provider = get_storage_provider()
    for path in sorted(paths):
        provider.rollback(path)


def _parent_grants_access(user: _User, parent_ref: str) -> bool:
    resolver_path = getattr(settings, 'UPLOADS_PARENT_ACCESS_RESOLVER', '')
    if not resolver_path:
        return False
    resolver = import_string(resolver_path)
    return bool(resolver(user, parent_ref))


def _merge_dicts(
    current: Mapping[str, Any],
    updates: Mapping[str, Any],
) -> dict[str, Any]:
    merged = dict(current)
    for key, value in updates.items():
        if value is None:
            merged.pop(key, None)
        elif isinstance(value, Mapping) and isinstance(merged.get(key), dict):
            nested = dict(merged[key])
            for nested_key, nested_value in value.items():
                if nested_value is None:
                    nested.pop(nested_key, None)
                else:
                    nested[nested_key] = nested_value
            merged[key] = nested
        elif isinstance(value, Mapping):
            cleaned = {
                nested_key: nested_value
                for nested_key, nested_value in value.items()
                if nested_value is not None
            }
            if cleaned:
                merged[key] = cleaned
        else:
            merged[key] = value
    return merged


def _upsert_versions(
    current: list[dict[str, Any]],
    updates: list[Mapping[str, Any]],
) -> list[dict[str, Any]]:
    by_type = {version['type']: dict(version) for version in current}
    for version in updates:
        by_type[version['type']] = dict(version)
    return list(by_type.values())
