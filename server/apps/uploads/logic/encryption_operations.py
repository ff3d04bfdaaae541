"""Business logic for rotating the keys of encrypted files.

Two operations with different guarantees:

- :func:`rotate_file_key` gives the data key a new id and re-seals it
  with the current master key. Stored bytes are untouched. Protects
  against a leaked key row or a retired master key, not against a
  leaked data key.
- :func:`reencrypt_file` decrypts the original and every derivative and
  seals them with a brand-new data key, then destroys the old key.
"""

import logging
import uuid

from django.db import transaction

from server.apps.uploads.exceptions import (
    FileNotAvailableError,
    StorageFailureError,
)
from server.apps.uploads.infrastructure.encryption import FileEncryptor
from server.apps.uploads.infrastructure.storage import get_storage_provider
from server.apps.uploads.models import FileRecord

logger = logging.getLogger(__name__)


def rotate_file_key(file_id: uuid.UUID) -> FileRecord:
    """Re-identify the data key of an encrypted file.

    Args:
        file_id: Encrypted file record id.

    Returns:
        The updated record.

    Raises:
        FileNotAvailableError: If the file is not encrypted.
    """
    encryptor = FileEncryptor()
    with transaction.atomic():
        record = FileRecord.objects.select_for_update().get(pk=file_id)
        _require_encrypted(record)

        old_key_id = record.encryption_key_id
        record.encryption_key_id = encryptor.rotate_key(old_key_id)
        record.add_history_event('rotate_key', 'succeeded')
        record.save(
            update_fields=[
                'encryption_key_id',
                'processing_history',
                'modified_at',
            ],
        )

    logger.info('Rotated key of file %s', file_id)
    return record


def reencrypt_file(file_id: uuid.UUID) -> FileRecord:
    """Re-encrypt every stored object of a file under a new data key.

    Objects are overwritten in place. If a write fails, objects already
    rewritten are restored from their previous ciphertext and the new key
    is destroyed.

    Args:
        file_id: Encrypted file record id.

    Returns:
        The updated record.

    Raises:
        FileNotAvailableError: If the file is not encrypted.
        DecryptionFailedError: If an object fails authentication.
        StorageFailureError: If an object can't be rewritten.
    """
    record = FileRecord.objects.get(pk=file_id)
    _require_encrypted(record)

    encryptor = FileEncryptor()
    provider = get_storage_provider()
    old_key_id = record.encryption_key_id

    previous = {path: provider.get(path) for path in record.get_storage_paths()}
    plaintexts = {
        path: encryptor.decrypt(envelope, old_key_id)
        for path, envelope in previous.items()
    }

    new_key_id: str | None = None
    rewritten: list[str] = []
    try:
        for path, plaintext in plaintexts.items():
            payload = encryptor.encrypt(plaintext, key_id=new_key_id)
            new_key_id = payload.key_id
            provider.put(payload.data, path, content_type='application/octet-stream')
            rewritten.append(path)
    except Exception as error:
        logger.exception('Re-encryption of file %s failed, restoring', file_id)
        restored = True
        for path in rewritten:
            try:
                provider.put(
                    previous[path],
                    path,
                    content_type='application/octet-stream',
                )
            except Exception:
                restored = False
                logger.exception('Failed to restore %s of file %s', path, file_id)
        # Keep the new key while any object still depends on it
        if new_key_id and restored:
            encryptor.destroy_key(new_key_id)
        raise StorageFailureError(f'Re-encryption failed: {error}') from error

    with transaction.atomic():
        record = FileRecord.objects.select_for_update().get(pk=file_id)
        record.encryption_key_id = new_key_id or old_key_id
        record.add_history_event('reencrypt', 'succeeded')
        record.save(
            update_fields=[
                'encryption_key_id',
                'processing_history',
                'modified_at',
            ],
        )

    if new_key_id:
        encryptor.destroy_key(old_key_id)
    logger.info('Re-encrypted %d objects of file %s', len(rewritten), file_id)
    return record


def _require_encrypted(record: FileRecord) -> None:
    if not record.is_encrypted or not record.encryption_key_id:
        raise FileNotAvailableError(f'File {record.id} is not encrypted')
