"""Signal handlers for files app."""

import logging

from django.db import transaction
from django.db.models.signals import post_delete
from django.dispatch import receiver

from server.apps.files.exceptions import StorageError
from server.apps.files.infrastructure.storage import StorageBackend
from server.apps.files.models import File

logger = logging.getLogger(__name__)


@receiver(post_delete, sender=File)
def delete_file_from_storage(
    sender: type[File],
    instance: File,
    **kwargs: object,
) -> None:
    """Delete the bytes of a File once its deletion is committed.

    Runs for every deleted record, including derivatives removed by
    the cascade from their original. If the surrounding transaction
    rolls back, the bytes stay untouched.

    Args:
        sender: The File model class.
        instance: The File instance being deleted.
        **kwargs: Additional signal arguments.
    """
    if not instance.path:
        return

    disk = instance.disk
    path = instance.path
    transaction.on_commit(lambda: _delete_bytes(disk, path))


def _delete_bytes(disk: str, path: str) -> None:
    backend = StorageBackend()
    logger.info('Deleting file from storage after DB delete: %s:%s', disk, path)
    try:
        if backend.exists(disk, path):
            backend.delete(disk, path)
            logger.info('File deleted from storage: %s:%s', disk, path)
        else:
            logger.warning(
                'File not found in storage (already deleted?): %s:%s',
                disk,
                path,
            )
    except StorageError:
        # DB delete already succeeded, sweep_orphans collects the bytes
        logger.exception(
            'Failed to delete file from storage (orphaned): %s:%s',
            disk,
            path,
        )
