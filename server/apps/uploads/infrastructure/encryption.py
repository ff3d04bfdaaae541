"""Encryption at rest for stored files.

Every file gets its own random 256-bit data key. Payloads are sealed with
AES-256-GCM and laid out as::

    nonce (12 bytes) || ciphertext || tag (16 bytes)

Data keys never travel with the ciphertext: they are kept by a
:class:`KeyStore` and addressed by ``key_id``. The database key store
seals each data key with a master key derived by HKDF from
``UPLOADS_ENCRYPTION_MASTER_KEY``.
"""

import abc
import dataclasses
import logging
import os
import secrets
from typing import Final, final, override

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.hkdf import HKDF
from django.conf import settings
from django.db import transaction

from server.apps.uploads.exceptions import DecryptionFailedError
from server.apps.uploads.models import EncryptionKey

NONCE_SIZE: Final = 12
TAG_SIZE: Final = 16
_KEY_BITS: Final = 256
_KEY_ID_BYTES: Final = 16
_MASTER_KEY_SALT: Final = b'uploads.encryption.master-key.v1'
_MASTER_KEY_INFO: Final = b'uploads data key wrapping'

logger = logging.getLogger(__name__)


class KeyNotFoundError(KeyError):
    """Raised by key stores for an unknown or destroyed key id."""


@final
@dataclasses.dataclass(frozen=True, slots=True)
class EncryptedPayload:
    """Sealed bytes plus the id of the key that opens them."""

    data: bytes
    key_id: str


class KeyStore(abc.ABC):
    """Keeps data keys apart from the ciphertext they protect."""

    def generate(self) -> tuple[str, bytes]:
        """Create, store and return a fresh data key.

        Returns:
            Tuple of (key_id, key).
        """
        key_id = secrets.token_hex(_KEY_ID_BYTES)
        key = AESGCM.generate_key(bit_length=_KEY_BITS)
        self.store(key_id, key)
        return key_id, key

    @abc.abstractmethod
    def store(self, key_id: str, key: bytes, rotated_from: str = '') -> None:
        """Persist a data key under key_id."""

    @abc.abstractmethod
    def fetch(self, key_id: str) -> bytes:
        """Return the data key for key_id.

        Raises:
            KeyNotFoundError: If the key is unknown.
        """

    @abc.abstractmethod
    def rotate(self, old_key_id: str) -> str:
        """Move a data key to a new id and forget the old id.

        Returns:
            The new key id.
        """

    @abc.abstractmethod
    def destroy(self, key_id: str) -> None:
        """Forget a data key. Unknown ids are ignored."""


@final
class DatabaseKeyStore(KeyStore):
    """Key store backed by the ``EncryptionKey`` table.

    Data keys are sealed with AES-GCM under the master key, with the key
    id as associated data, so a sealed key copied to another row will not
    open.
    """

    def __init__(self, master_secret: str | None = None) -> None:
        """Initialize key store.

        Args:
            master_secret: Secret the master key is derived from,
                defaults to ``UPLOADS_ENCRYPTION_MASTER_KEY``.
        """
        if master_secret is None:
            master_secret = get_master_secret()
        self._master = AESGCM(derive_master_key(master_secret))

    @override
    def store(self, key_id: str, key: bytes, rotated_from: str = '') -> None:
        EncryptionKey.objects.create(
            key_id=key_id,
            wrapped_key=self._seal(key_id, key),
            rotated_from=rotated_from,
        )
        logger.debug('Stored data key %s', key_id)

    @override
    def fetch(self, key_id: str) -> bytes:
        try:
            row = EncryptionKey.objects.get(key_id=key_id)
        except EncryptionKey.DoesNotExist as error:
            raise KeyNotFoundError(key_id) from error
        return self._unseal(key_id, bytes(row.wrapped_key))

    @override
    def rotate(self, old_key_id: str) -> str:
        new_key_id = secrets.token_hex(_KEY_ID_BYTES)
        with transaction.atomic():
            key = self.fetch(old_key_id)
            self.store(new_key_id, key, rotated_from=old_key_id)
            EncryptionKey.objects.filter(key_id=old_key_id).delete()
        logger.info('Rotated data key %s -> %s', old_key_id, new_key_id)
        return new_key_id

    @override
    def destroy(self, key_id: str) -> None:
        deleted, _ = EncryptionKey.objects.filter(key_id=key_id).delete()
        if deleted:
            logger.info('Destroyed data key %s', key_id)

    def _seal(self, key_id: str, key: bytes) -> bytes:
        nonce = os.urandom(NONCE_SIZE)
        return nonce + self._master.encrypt(nonce, key, key_id.encode())

    def _unseal(self, key_id: str, wrapped: bytes) -> bytes:
        nonce, sealed = wrapped[:NONCE_SIZE], wrapped[NONCE_SIZE:]
        try:
            return self._master.decrypt(nonce, sealed, key_id.encode())
        except InvalidTag as error:
            raise KeyNotFoundError(
                f'Key {key_id} cannot be opened with the master key',
            ) from error


@final
class FileEncryptor:
    """AES-256-GCM envelope encryption for file bytes."""

    def __init__(self, key_store: KeyStore | None = None) -> None:
        """Initialize encryptor.

        Args:
            key_store: Data key store, defaults to the database store.
        """
        self._keys = DatabaseKeyStore() if key_store is None else key_store

    def encrypt(self, data: bytes, key_id: str | None = None) -> EncryptedPayload:
        """Encrypt bytes.

        Args:
            data: Plaintext, may be empty.
            key_id: Existing key to reuse (derivatives of an encrypted
                original). A new key is generated when omitted.

        Returns:
            Envelope and the id of its key.

        Raises:
            KeyNotFoundError: If key_id is given but unknown.
        """
        if key_id is None:
            key_id, key = self._keys.generate()
        else:
            key = self._keys.fetch(key_id)

        nonce = os.urandom(NONCE_SIZE)
        sealed = AESGCM(key).encrypt(nonce, data, None)
        return EncryptedPayload(data=nonce + sealed, key_id=key_id)

    def decrypt(self, envelope: bytes, key_id: str) -> bytes:
        """Decrypt and authenticate an envelope.

        Args:
            envelope: Bytes produced by :meth:`encrypt`.
            key_id: Id of the key the envelope was sealed with.

        Returns:
            Plaintext.

        Raises:
            DecryptionFailedError: If the envelope is truncated, was
                modified, or its key is gone.
        """
        if len(envelope) < NONCE_SIZE + TAG_SIZE:
            raise DecryptionFailedError(
                f'Envelope too short ({len(envelope)} bytes)',
            )

        try:
            key = self._keys.fetch(key_id)
        except KeyNotFoundError as error:
            raise DecryptionFailedError(f'Unknown key: {key_id}') from error

        nonce, sealed = envelope[:NONCE_SIZE], envelope[NONCE_SIZE:]
        try:
            return AESGCM(key).decrypt(nonce, sealed, None)
        except InvalidTag as error:
            raise DecryptionFailedError(
                'Ciphertext failed authentication',
            ) from error

    def rotate_key(self, old_key_id: str) -> str:
        """Re-identify a data key (see ``KeyStore.rotate``).

        Existing envelopes stay valid and open with the returned id.

        Args:
            old_key_id: Current key id.

        Returns:
            New key id.
        """
        return self._keys.rotate(old_key_id)

    def destroy_key(self, key_id: str) -> None:
        """Forget a data key, making its envelopes unreadable."""
        self._keys.destroy(key_id)


def derive_master_key(master_secret: str) -> bytes:
    """Derive the 256-bit key wrapping key from a master secret.

    HKDF-SHA256 with a fixed salt and context, so the same secret always
    yields the same key.

    Args:
        master_secret: Configured secret.

    Returns:
        32 key bytes.
    """
    hkdf = HKDF(
        algorithm=hashes.SHA256(),
        length=_KEY_BITS // 8,
        salt=_MASTER_KEY_SALT,
        info=_MASTER_KEY_INFO,
    )
    return hkdf.derive(master_secret.encode())


def get_master_secret() -> str:
    """Get secret the master key is derived from."""
    return getattr(settings, 'UPLOADS_ENCRYPTION_MASTER_KEY', settings.SECRET_KEY)


def encrypt_at_rest_by_default() -> bool:
    """Whether uploads are encrypted when the caller does not say."""
    return getattr(settings, 'UPLOADS_ENCRYPT_AT_REST', False)
