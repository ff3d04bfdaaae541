"""Exceptions for uploads app."""

from collections.abc import Sequence


class UploadError(Exception):
    """Base class for every error raised by the upload pipeline."""


class QuotaExceededError(UploadError):
    """Raised when upload would exceed user's storage quota."""

    def __init__(
        self,
        quota_bytes: int,
        used_bytes: int,
        required_bytes: int,
    ) -> None:
        """Initialize QuotaExceededError.

        Args:
            quota_bytes: Total quota limit in bytes.
            used_bytes: Currently used bytes.
            required_bytes: Bytes needed for the operation.
        """
        self.quota_bytes = quota_bytes
        self.used_bytes = used_bytes
        self.required_bytes = required_bytes

        available = quota_bytes - used_bytes
        super().__init__(
            f'Quota exceeded: need {required_bytes} bytes, '
            f'only {available} bytes available '
            f'(quota: {quota_bytes}, used: {used_bytes})',
        )


class ConcurrencyLimitExceededError(UploadError):
    """Raised when user already has too many uploads in flight."""

    def __init__(self, active_count: int, limit: int) -> None:
        """Initialize ConcurrencyLimitExceededError.

        Args:
            active_count: Uploads currently in a non-terminal status.
            limit: Configured per-user ceiling.
        """
        self.active_count = active_count
        self.limit = limit
        super().__init__(
            f'Maximum concurrent uploads ({limit}) exceeded: '
            f'{active_count} in progress',
        )


class FileValidationError(UploadError):
    """Raised when a file fails validation or malware scanning.

    Validation failures are final: they are never retried and never
    consume quota.
    """

    def __init__(self, reason: str, message: str) -> None:
        """Initialize FileValidationError.

        Args:
            reason: Short machine-readable code (e.g. 'file_too_large').
            message: Human-readable description.
        """
        self.reason = reason
        super().__init__(message)


class StorageFailureError(UploadError):
    """Raised when the storage backend fails. Safe to retry the upload."""


class IncompleteChunksError(UploadError):
    """Raised when a chunked upload is completed with chunks missing."""

    def __init__(self, missing: Sequence[int], total_chunks: int) -> None:
        """Initialize IncompleteChunksError.

        Args:
            missing: Indices the caller still has to send.
            total_chunks: Declared number of chunks.
        """
        self.missing = list(missing)
        self.total_chunks = total_chunks
        preview = ', '.join(str(index) for index in self.missing[:10])
        if len(self.missing) > 10:
            preview = f'{preview}, ...'
        super().__init__(
            f'Missing {len(self.missing)} of {total_chunks} chunks: {preview}',
        )


class InvalidChunkError(UploadError):
    """Raised when a chunk does not fit the declared chunked upload."""


class DecryptionFailedError(UploadError):
    """Raised when ciphertext cannot be authenticated or its key is gone."""


class IllegalTransitionError(UploadError):
    """Raised on a file status change the lifecycle does not allow."""

    def __init__(self, current: str, target: str) -> None:
        """Initialize IllegalTransitionError.

        Args:
            current: Status the record is in.
            target: Status that was requested.
        """
        self.current = current
        self.target = target
        super().__init__(f'Illegal status transition: {current} -> {target}')


class FileAccessDeniedError(UploadError):
    """Raised when a user acts on a file they are not allowed to touch."""


class FileNotAvailableError(UploadError):
    """Raised when a file exists but cannot be served in its current state."""


class ScannerUnavailableError(UploadError):
    """Raised when the malware scan service cannot be reached."""
