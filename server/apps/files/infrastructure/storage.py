"""Storage backends for file disks."""

import logging
from collections.abc import Iterable, Iterator
from datetime import datetime
from typing import final, override

from django.core.files.base import ContentFile
from django.core.files.storage import Storage, StorageHandler, storages
from django.core.files.storage.handler import InvalidStorageError
from storages.backends.s3 import S3Storage

from server.apps.files.exceptions import StorageError, StorageWriteError

logger = logging.getLogger(__name__)


@final
class FileStorage(S3Storage):
    """S3 storage for file disks that never renames on conflict.

    Paths are claimed by the name generator before bytes are written,
    so an object already stored under the name belongs to someone
    else and the save fails instead of picking another name.
    """

    @override
    def get_available_name(
        self,
        name: str,
        max_length: int | None = None,
    ) -> str:
        """Return ``name`` unchanged if it is free.

        Args:
            name: Storage path for the file.
            max_length: Optional maximum length for the filename.

        Returns:
            The requested name.

        Raises:
            FileExistsError: If an object is already stored there.
        """
        if self.exists(name):
            logger.warning('Refusing to overwrite stored file: %s', name)
            raise FileExistsError(f'{name} already exists')
        return super().get_available_name(name, max_length)


@final
class StorageBackend:
    """Byte storage addressed by ``(disk, path)``.

    Disks are the aliases configured in ``STORAGES``. Every method
    translates backend exceptions into ``StorageError`` so callers
    never depend on a particular storage implementation.
    """

    def __init__(self, handler: StorageHandler | None = None) -> None:
        """Initialize StorageBackend.

        Args:
            handler: Storage handler to resolve disks from,
                Django's global ``storages`` by default.
        """
        self._storages = handler if handler is not None else storages

    def get_disk(self, disk: str) -> Storage:
        """Resolve a disk alias to its storage.

        Args:
            disk: Storage alias.

        Returns:
            Configured storage instance.

        Raises:
            StorageError: If the alias is not configured.
        """
        try:
            return self._storages[disk]
        except InvalidStorageError as error:
            raise StorageError(disk, '', 'unknown disk') from error

    def has_disk(self, disk: str) -> bool:
        """Check whether a disk alias is configured.

        Args:
            disk: Storage alias.

        Returns:
            True if the alias exists in ``STORAGES``.
        """
        return disk in self._storages.backends

    def write(self, disk: str, path: str, data: bytes) -> str:
        """Write bytes to exactly the given path.

        Storages rename on conflict rather than fail, so a renamed
        save is undone and reported as a failed write.

        Args:
            disk: Storage alias.
            path: Path relative to the disk root.
            data: Bytes to store.

        Returns:
            Path the bytes were written to.

        Raises:
            StorageWriteError: If the bytes were not stored at ``path``.
        """
        storage = self._get_disk_for_write(disk, path)
        try:
            saved_name = storage.save(path, ContentFile(data))
        except Exception as error:
            raise StorageWriteError(disk, path, str(error)) from error

        if saved_name != path:
            self._discard(disk, saved_name)
            raise StorageWriteError(disk, path, 'path is already taken')

        logger.debug('Wrote %d bytes to %s:%s', len(data), disk, path)
        return saved_name

    def exists(self, disk: str, path: str) -> bool:
        """Check whether a path exists on a disk.

        Args:
            disk: Storage alias.
            path: Path relative to the disk root.

        Returns:
            True if bytes are stored at ``path``.

        Raises:
            StorageError: If the disk cannot be queried.
        """
        storage = self.get_disk(disk)
        try:
            return storage.exists(path)
        except Exception as error:
            raise StorageError(disk, path, str(error)) from error

    def read(self, disk: str, path: str) -> bytes:
        """Read all bytes stored at a path.

        Args:
            disk: Storage alias.
            path: Path relative to the disk root.

        Returns:
            File content.

        Raises:
            StorageError: If the file cannot be read.
        """
        storage = self.get_disk(disk)
        try:
            with storage.open(path, 'rb') as stored:
                return stored.read()
        except Exception as error:
            raise StorageError(disk, path, str(error)) from error

    def delete(self, disk: str, path: str) -> None:
        """Delete bytes stored at a path.

        Args:
            disk: Storage alias.
            path: Path relative to the disk root.

        Raises:
            StorageError: If the file cannot be deleted.
        """
        storage = self.get_disk(disk)
        try:
            storage.delete(path)
        except Exception as error:
            raise StorageError(disk, path, str(error)) from error

    def modified_at(self, disk: str, path: str) -> datetime:
        """Last modification time of a stored file.

        Args:
            disk: Storage alias.
            path: Path relative to the disk root.

        Returns:
            Aware datetime when ``USE_TZ`` is on.

        Raises:
            StorageError: If the time cannot be read.
        """
        storage = self.get_disk(disk)
        try:
            return storage.get_modified_time(path)
        except Exception as error:
            raise StorageError(disk, path, str(error)) from error

    def rollback(self, written: Iterable[tuple[str, str]]) -> list[tuple[str, str]]:
        """Delete bytes written by a failed operation.

        This is a best-effort operation: failures are logged, not
        raised, and reported back so they can be swept later.

        Args:
            written: ``(disk, path)`` pairs to delete.

        Returns:
            Pairs that could not be deleted (orphaned bytes).
        """
        orphaned = []
        for disk, path in written:
            try:
                logger.warning('Rolling back write, deleting file: %s:%s', disk, path)
                self.delete(disk, path)
            except StorageError:
                # The sweep_orphans command can handle orphaned files
                logger.exception(
                    'Failed to rollback write, orphaned file: %s:%s',
                    disk,
                    path,
                )
                orphaned.append((disk, path))
        return orphaned

    def walk(self, disk: str, prefix: str = '') -> Iterator[str]:
        """Yield every file path stored on a disk below a prefix.

        Args:
            disk: Storage alias.
            prefix: Folder to start from, disk root by default.

        Yields:
            File paths relative to the disk root.

        Raises:
            StorageError: If a folder cannot be listed.
        """
        storage = self.get_disk(disk)
        try:
            folders, files = storage.listdir(prefix)
        except FileNotFoundError:
            return
        except Exception as error:
            raise StorageError(disk, prefix, str(error)) from error
        for name in files:
            yield _join(prefix, name)
        for folder in folders:
            yield from self.walk(disk, _join(prefix, folder))

    def _get_disk_for_write(self, disk: str, path: str) -> Storage:
        try:
            return self.get_disk(disk)
        except StorageError as error:
            raise StorageWriteError(disk, path, 'unknown disk') from error

    def _discard(self, disk: str, path: str) -> None:
        try:
            self.delete(disk, path)
        except StorageError:
            logger.exception('Failed to discard renamed file: %s:%s', disk, path)


def _join(prefix: str, name: str) -> str:
    if not prefix:
        return name
    return f'{prefix.rstrip("/")}/{name}'
