"""Signal handlers for uploads app."""

import logging

from django.db.models.signals import post_delete
from django.dispatch import receiver

from server.apps.uploads.infrastructure.storage import get_storage_provider
from server.apps.uploads.models import FileChunk

logger = logging.getLogger(__name__)


@receiver(post_delete, sender=FileChunk)
def delete_chunk_from_storage(
    sender: type[FileChunk],
    instance: FileChunk,
    **kwargs: object,
) -> None:
    """Delete the transient chunk object when its row is deleted.

    Chunk rows are removed after reassembly and by the reconcile
    command, either way the bytes in storage must go with them.

    Args:
        sender: The FileChunk model class.
        instance: The FileChunk instance being deleted.
        **kwargs: Additional signal arguments.
    """
    if not instance.storage_path:
        return

    storage_name = instance.storage_path
    logger.debug('Deleting chunk from storage after DB delete: %s', storage_name)

    try:
        get_storage_provider().delete(storage_name)
    except Exception:
        # Log but don't raise - DB delete already succeeded
        logger.exception(
            'Failed to delete chunk from storage (orphaned): %s',
            storage_name,
        )
