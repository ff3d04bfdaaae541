"""File record lifecycle.

Every status change goes through :func:`transition`, which checks the
transition table under a row lock and appends to the processing history::

    PENDING ──────────────► PROCESSING ──► ACTIVE
       │                        │
       ├──► RECEIVING_CHUNKS ──► ASSEMBLING ──► PROCESSING
       │          │                  │
       └──────────┴──────────────────┴──────► FAILED
"""

import logging
import uuid
from typing import Final

from django.db import transaction

from server.apps.uploads.exceptions import IllegalTransitionError
from server.apps.uploads.models import FileRecord, FileStatus

ALLOWED_TRANSITIONS: Final[dict[str, frozenset[str]]] = {
    FileStatus.PENDING.value: frozenset((
        FileStatus.PROCESSING.value,
        FileStatus.RECEIVING_CHUNKS.value,
        FileStatus.FAILED.value,
    )),
    FileStatus.RECEIVING_CHUNKS.value: frozenset((
        FileStatus.ASSEMBLING.value,
        FileStatus.FAILED.value,
    )),
    FileStatus.ASSEMBLING.value: frozenset((
        FileStatus.PROCESSING.value,
        FileStatus.FAILED.value,
    )),
    FileStatus.PROCESSING.value: frozenset((
        FileStatus.ACTIVE.value,
        FileStatus.FAILED.value,
    )),
    FileStatus.ACTIVE.value: frozenset(),
    FileStatus.FAILED.value: frozenset(),
}

logger = logging.getLogger(__name__)


def can_transition(current: str, target: str) -> bool:
    """Check whether the lifecycle allows current -> target.

    Args:
        current: Current status.
        target: Requested status.

    Returns:
        True if the edge exists.
    """
    return str(target) in ALLOWED_TRANSITIONS.get(str(current), frozenset())


def is_terminal(status: str) -> bool:
    """Whether no transition leaves status."""
    return not ALLOWED_TRANSITIONS.get(str(status))


def transition(
    file_id: uuid.UUID,
    target: str,
    action: str = 'status_change',
    error: str | None = None,
) -> FileRecord:
    """Move a file record to a new status.

    Args:
        file_id: Record to update.
        target: Requested status.
        action: What caused the change, stored in the history entry.
        error: Optional error text, also stored as ``metadata['error']``
            when the record fails.

    Returns:
        The updated record.

    Raises:
        IllegalTransitionError: If the edge is not in the table.
        FileRecord.DoesNotExist: If the record doesn't exist.
    """
    target = str(target)
    with transaction.atomic():
        record = FileRecord.all_objects.select_for_update().get(pk=file_id)
        current = record.status
        if not can_transition(current, target):
            raise IllegalTransitionError(current, target)

        record.status = target
        record.add_history_event(action, target, error)
        if error and target == FileStatus.FAILED:
            record.metadata = {**record.metadata, 'error': error}
        record.save(
            update_fields=[
                'status',
                'processing_history',
                'metadata',
                'modified_at',
            ],
        )

    logger.info(
        'File %s: %s -> %s (%s)',
        file_id,
        current,
        target,
        action,
    )
    return record
