"""Business logic for storage quota operations.

Uploads reserve quota before any byte is written. A reservation is a
single conditional UPDATE, so two concurrent uploads can never both pass
a check that only one of them fits into.
"""

import dataclasses
import logging
from typing import Any, Final, final

from django.conf import settings
from django.db import transaction
from django.db.models import F, Sum  # noqa: WPS347
from django.utils import timezone

from server.apps.uploads.exceptions import QuotaExceededError
from server.apps.uploads.models import FileRecord, FileStatus, StorageQuota

# User type for Django's dynamic user model
_User = Any

# Field name constants to avoid string literal over-use
_USED_BYTES_FIELD: Final = 'used_bytes'  # noqa: WPS226
_CATEGORY_FIELD: Final = 'usage_by_category'
_UPDATED_FIELD: Final = 'last_updated'

_DEFAULT_QUOTA_BYTES: Final = 10 * 1024 * 1024 * 1024

logger = logging.getLogger(__name__)


@final
@dataclasses.dataclass(frozen=True, slots=True)
class QuotaSummary:
    """Snapshot of a user's storage usage."""

    used_bytes: int
    quota_bytes: int
    available_bytes: int
    percentage: float
    by_category: dict[str, int]


@final
class QuotaReservation:
    """Bytes held against a user's quota for one upload.

    Exactly one of :meth:`commit` or :meth:`release` takes effect;
    repeated calls are no-ops.
    """

    def __init__(
        self,
        user: _User,
        size_bytes: int,
        category: str | None = None,
    ) -> None:
        """Initialize reservation (the bytes are already counted).

        Args:
            user: Owner of the quota.
            size_bytes: Reserved bytes.
            category: File category for the usage breakdown.
        """
        self.user = user
        self.size_bytes = size_bytes
        self.category = category
        self._settled = False

    @property
    def is_held(self) -> bool:
        """Whether the reservation is neither committed nor released."""
        return not self._settled

    def commit(self) -> None:
        """Keep the reserved bytes and record them in the breakdown."""
        if self._settled:
            return
        self._settled = True
        _adjust_category_usage(self.user, self.category, self.size_bytes)
        logger.debug(
            'Committed %d reserved bytes for user %s',
            self.size_bytes,
            self.user.username,
        )

    def release(self) -> None:
        """Give the reserved bytes back."""
        if self._settled:
            return
        self._settled = True
        decrement_usage(self.user, self.size_bytes)
        logger.debug(
            'Released %d reserved bytes for user %s',
            self.size_bytes,
            self.user.username,
        )


def get_default_quota_bytes() -> int:
    """Get quota allotted to new users."""
    return getattr(settings, 'UPLOADS_DEFAULT_QUOTA_BYTES', _DEFAULT_QUOTA_BYTES)


def get_or_create_quota(user: _User) -> StorageQuota:
    """Get or create quota for user (on-demand creation).

    Args:
        user: User to get quota for.

    Returns:
        StorageQuota instance for the user.
    """
    quota, created = StorageQuota.objects.get_or_create(
        user=user,
        defaults={'quota_bytes': get_default_quota_bytes()},
    )
    if created:
        logger.info(
            'Created quota for user %s: %d bytes',
            user.username,
            quota.quota_bytes,
        )
    return quota


def check_quota(user: _User, size_bytes: int) -> None:
    """Check if user has enough quota for an upload.

    Does not reserve anything. Creates quota on-demand if it doesn't exist.

    Args:
        user: User to check quota for.
        size_bytes: Size of the upload in bytes.

    Raises:
        QuotaExceededError: If upload would exceed quota.
    """
    quota = get_or_create_quota(user)

    if not quota.has_space_for(size_bytes):
        logger.warning(
            'Quota exceeded for user %s: need %d, have %d available',
            user.username,
            size_bytes,
            quota.available_bytes(),
        )
        raise QuotaExceededError(
            quota_bytes=quota.quota_bytes,
            used_bytes=quota.used_bytes,
            required_bytes=size_bytes,
        )


def reserve_quota(
    user: _User,
    size_bytes: int,
    category: str | None = None,
) -> QuotaReservation:
    """Atomically reserve bytes against user's quota.

    Args:
        user: User to reserve quota for.
        size_bytes: Bytes to reserve.
        category: File category for the usage breakdown on commit.

    Returns:
        Reservation to commit or release.

    Raises:
        QuotaExceededError: If the bytes don't fit. Nothing is reserved.
        ValueError: If size_bytes is negative.
    """
    if size_bytes < 0:
        raise ValueError(f'Cannot reserve negative size: {size_bytes}')

    get_or_create_quota(user)
    updated = StorageQuota.objects.filter(
        user=user,
        used_bytes__lte=F('quota_bytes') - size_bytes,
    ).update(
        used_bytes=F(_USED_BYTES_FIELD) + size_bytes,
        last_updated=timezone.now(),
    )

    if updated == 0:
        quota = StorageQuota.objects.get(user=user)
        logger.warning(
            'Quota reservation refused for user %s: need %d, have %d available',
            user.username,
            size_bytes,
            quota.available_bytes(),
        )
        raise QuotaExceededError(
            quota_bytes=quota.quota_bytes,
            used_bytes=quota.used_bytes,
            required_bytes=size_bytes,
        )

    logger.debug('Reserved %d bytes for user %s', size_bytes, user.username)
    return QuotaReservation(user, size_bytes, category)


def check_and_reserve(user: _User, size_bytes: int) -> bool:
    """Check whether bytes fit, without counting them.

    Pairs with :func:`commit_usage`, which counts the bytes once they
    are stored. Between the two calls another upload may take the
    space; :func:`reserve_quota` holds it atomically instead.

    Args:
        user: User to check quota for.
        size_bytes: Bytes to check.

    Returns:
        True if ``used + size_bytes <= quota``.
    """
    return get_or_create_quota(user).has_space_for(size_bytes)


def increment_usage(
    user: _User,
    size_bytes: int,
    category: str | None = None,
) -> None:
    """Atomically increment user's storage usage.

    Args:
        user: User to increment usage for.
        size_bytes: Bytes to add to usage.
        category: Optional category to credit in the breakdown.
    """
    with transaction.atomic():
        updated = StorageQuota.objects.filter(user=user).update(
            used_bytes=F(_USED_BYTES_FIELD) + size_bytes,
            last_updated=timezone.now(),
        )

        if updated == 0:
            # Quota doesn't exist yet, create it
            quota = get_or_create_quota(user)
            quota.used_bytes = size_bytes
            quota.last_updated = timezone.now()
            quota.save(update_fields=[_USED_BYTES_FIELD, _UPDATED_FIELD])

        _adjust_category_usage(user, category, size_bytes)

    logger.debug(
        'Incremented usage for user %s by %d bytes',
        user.username,
        size_bytes,
    )


def decrement_usage(
    user: _User,
    size_bytes: int,
    category: str | None = None,
) -> None:
    """Atomically decrement user's storage usage.

    Prevents negative values by clamping to 0.

    Args:
        user: User to decrement usage for.
        size_bytes: Bytes to subtract from usage.
        category: Optional category to debit in the breakdown.
    """
    with transaction.atomic():
        try:
            quota = StorageQuota.objects.select_for_update().get(user=user)
        except StorageQuota.DoesNotExist:
            # No quota exists, nothing to decrement
            logger.debug(
                'No quota exists for user %s, skipping decrement',
                user.username,
            )
            return

        # Calculate new usage, clamping to 0
        new_usage = max(0, quota.used_bytes - size_bytes)
        quota.used_bytes = new_usage
        quota.last_updated = timezone.now()
        if category:
            breakdown = dict(quota.usage_by_category)
            key = str(category)
            breakdown[key] = max(0, breakdown.get(key, 0) - size_bytes)
            quota.usage_by_category = breakdown
        quota.save(
            update_fields=[_USED_BYTES_FIELD, _CATEGORY_FIELD, _UPDATED_FIELD],
        )

    logger.debug(
        'Decremented usage for user %s by %d bytes (new: %d)',
        user.username,
        size_bytes,
        new_usage,
    )


def commit_usage(
    user: _User,
    delta_bytes: int,
    category: str | None = None,
) -> None:
    """Apply a signed usage change.

    Args:
        user: User whose usage changes.
        delta_bytes: Positive to add, negative to subtract (floored at 0).
        category: Optional category for the breakdown.
    """
    if delta_bytes > 0:
        increment_usage(user, delta_bytes, category)
    elif delta_bytes < 0:
        decrement_usage(user, -delta_bytes, category)
    # If delta_bytes == 0, no adjustment needed


def get_quota_summary(user: _User) -> QuotaSummary:
    """Summarize user's storage usage.

    Args:
        user: User to summarize.

    Returns:
        Usage snapshot.
    """
    quota = get_or_create_quota(user)
    if quota.quota_bytes:
        percentage = round(quota.used_bytes / quota.quota_bytes * 100, 2)
    else:
        percentage = 0.0
    return QuotaSummary(
        used_bytes=quota.used_bytes,
        quota_bytes=quota.quota_bytes,
        available_bytes=quota.available_bytes(),
        percentage=percentage,
        by_category=dict(quota.usage_by_category),
    )


def recalculate_usage(user: _User) -> int:
    """Recalculate user's storage usage from stored files.

    Only active, non-deleted files count. Useful for fixing drift after
    crashes between a storage write and its quota update.

    Args:
        user: User to recalculate usage for.

    Returns:
        New calculated usage in bytes.
    """
    active_files = FileRecord.objects.filter(user=user, status=FileStatus.ACTIVE)
    by_category = {
        row['category']: row['total']
        for row in active_files.values('category').annotate(
            total=Sum('size_bytes'),
        )
    }
    total = sum(by_category.values())

    with transaction.atomic():
        quota = get_or_create_quota(user)
        old_usage = quota.used_bytes
        quota.used_bytes = total
        quota.usage_by_category = by_category
        quota.last_updated = timezone.now()
        quota.save(
            update_fields=[_USED_BYTES_FIELD, _CATEGORY_FIELD, _UPDATED_FIELD],
        )

    logger.info(
        'Recalculated usage for user %s: %d -> %d bytes',
        user.username,
        old_usage,
        total,
    )

    return total


def _adjust_category_usage(
    user: _User,
    category: str | None,
    size_bytes: int,
) -> None:
    """Credit bytes to one category of the informational breakdown."""
    with transaction.atomic():
        quota = StorageQuota.objects.select_for_update().get(user=user)
        if category:
            breakdown = dict(quota.usage_by_category)
            breakdown[str(category)] = breakdown.get(str(category), 0) + size_bytes
            quota.usage_by_category = breakdown
        quota.last_updated = timezone.now()
        quota.save(update_fields=[_CATEGORY_FIELD, _UPDATED_FIELD])
