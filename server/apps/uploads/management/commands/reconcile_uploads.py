"""Management command to fail abandoned uploads and clean their chunks."""

import logging
from datetime import timedelta
from typing import Any, Final

from django.conf import settings
from django.core.management.base import BaseCommand
from django.db.models import QuerySet
from django.utils import timezone

from server.apps.uploads.logic.chunk_operations import cleanup_chunks, get_chunk_ttl
from server.apps.uploads.logic.lifecycle import transition
from server.apps.uploads.logic.quota_operations import recalculate_usage
from server.apps.uploads.models import (
    FileChunk,
    FileRecord,
    FileStatus,
    StorageQuota,
)

_DEFAULT_BATCH_SIZE: Final = 1000
_DEFAULT_STALE_SECONDS: Final = 3600

logger = logging.getLogger(__name__)


class Command(BaseCommand):
    """Fail uploads stuck in a non-terminal status and free their chunks.

    - chunked uploads that got no chunk for ``UPLOADS_CHUNK_TTL_SECONDS``
    - uploads stuck pending, assembling or processing for
      ``UPLOADS_STALE_UPLOAD_SECONDS`` (a crashed request)
    - leftover chunks of finished or deleted uploads

    Quota reserved by a crashed request is not returned automatically;
    run with ``--recalculate-quotas`` to rebuild usage from active files.
    """

    help = 'Fail abandoned uploads and remove their chunks'

    def add_arguments(self, parser: Any) -> None:
        """Add command line arguments.

        Args:
            parser: Argument parser.
        """
        parser.add_argument(
            '--dry-run',
            action='store_true',
            help='Show what would be reconciled without changing anything',
        )
        parser.add_argument(
            '--batch-size',
            type=int,
            default=_DEFAULT_BATCH_SIZE,
            help=f'Max uploads to process (default: {_DEFAULT_BATCH_SIZE})',
        )
        parser.add_argument(
            '--recalculate-quotas',
            action='store_true',
            help='Rebuild every quota from active files afterwards',
        )

    def handle(self, *args: Any, **options: Any) -> None:
        """Execute the reconcile command.

        Args:
            args: Positional arguments (unused).
            options: Command options.
        """
        dry_run = options['dry_run']
        batch_size = options['batch_size']
        now = timezone.now()

        abandoned = FileRecord.objects.filter(
            status=FileStatus.RECEIVING_CHUNKS,
            modified_at__lte=now - get_chunk_ttl(),
        )
        stale = FileRecord.objects.filter(
            status__in=[
                FileStatus.PENDING,
                FileStatus.ASSEMBLING,
                FileStatus.PROCESSING,
            ],
            modified_at__lte=now - _get_stale_age(),
        )

        failed_count, errors = self._fail_uploads(
            abandoned,
            'Chunked upload abandoned',
            batch_size,
            dry_run,
        )
        stale_count, stale_errors = self._fail_uploads(
            stale,
            'Upload stalled',
            batch_size,
            dry_run,
        )
        failed_count += stale_count
        errors += stale_errors

        leftover = self._cleanup_leftover_chunks(dry_run)

        if options['recalculate_quotas'] and not dry_run:
            for quota in StorageQuota.objects.select_related('user'):
                recalculate_usage(quota.user)
            self.stdout.write('Recalculated quotas')

        prefix = 'Would fail' if dry_run else 'Failed'
        self.stdout.write(
            self.style.SUCCESS(
                f'{prefix} {failed_count} uploads, '
                f'{leftover} leftover chunks, {errors} errors',
            ),
        )

    def _fail_uploads(
        self,
        uploads: QuerySet[FileRecord],
        reason: str,
        batch_size: int,
        dry_run: bool,
    ) -> tuple[int, int]:
        count = 0
        errors = 0
        for record in uploads.order_by('modified_at')[:batch_size]:
            if dry_run:
                self.stdout.write(
                    f'Would fail: {record.original_name} ({record.id}, '
                    f'status: {record.status}, last change: {record.modified_at})',
                )
                count += 1
                continue

            try:
                transition(record.id, FileStatus.FAILED, action='reconcile', error=reason)
                cleanup_chunks(record.id)
            except Exception as exc:
                self.stderr.write(f'Failed to reconcile {record.id}: {exc}')
                logger.exception('Failed to reconcile upload %s', record.id)
                errors += 1
            else:
                logger.info('Reconciled upload %s: %s', record.id, reason)
                count += 1
        return count, errors

    def _cleanup_leftover_chunks(self, dry_run: bool) -> int:
        """Remove chunks whose upload is no longer receiving chunks."""
        leftover = FileChunk.objects.exclude(
            file__status=FileStatus.RECEIVING_CHUNKS,
            file__is_deleted=False,
        )
        file_ids = set(leftover.values_list('file_id', flat=True))
        if dry_run:
            return leftover.count()

        removed = 0
        for file_id in file_ids:
            removed += cleanup_chunks(file_id)
        return removed


def _get_stale_age() -> timedelta:
    return timedelta(
        seconds=getattr(
            settings,
            'UPLOADS_STALE_UPLOAD_SECONDS',
            _DEFAULT_STALE_SECONDS,
        ),
    )
