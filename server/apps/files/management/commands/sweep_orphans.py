"""Management command to delete stored bytes no File record points to."""

import logging
from collections.abc import Iterable
from datetime import timedelta
from itertools import batched, product
from typing import Any, Final

from django.conf import settings
from django.core.management.base import BaseCommand, CommandError
from django.utils import timezone

from server.apps.files.exceptions import StorageError
from server.apps.files.infrastructure.storage import StorageBackend
from server.apps.files.models import DEFAULT_DISK, File

_DEFAULT_MIN_AGE_MINUTES: Final = 60
_DEFAULT_BATCH_SIZE: Final = 1000
# Mime groups the default name pattern starts paths with
_DEFAULT_PREFIXES: Final = (
    'application',
    'audio',
    'font',
    'image',
    'message',
    'model',
    'multipart',
    'text',
    'video',
)

logger = logging.getLogger(__name__)


class Command(BaseCommand):
    """Delete bytes left behind by failed ingestions or storage deletes."""

    help = 'Delete stored files that no File record references'

    def add_arguments(self, parser: Any) -> None:
        """Add command line arguments.

        Args:
            parser: Argument parser.
        """
        parser.add_argument(
            '--disk',
            action='append',
            dest='disks',
            help='Disk to sweep, may repeat (default: FILES_DEFAULT_DISK)',
        )
        parser.add_argument(
            '--prefix',
            action='append',
            dest='prefixes',
            help=(
                'Folder to sweep, may repeat '
                '(default: FILES_SWEEP_PREFIXES)'
            ),
        )
        parser.add_argument(
            '--dry-run',
            action='store_true',
            help='Show what would be deleted without deleting',
        )
        parser.add_argument(
            '--min-age-minutes',
            type=int,
            default=_DEFAULT_MIN_AGE_MINUTES,
            help=(
                'Skip files younger than this, they may belong to a running '
                f'ingestion (default: {_DEFAULT_MIN_AGE_MINUTES})'
            ),
        )
        parser.add_argument(
            '--batch-size',
            type=int,
            default=_DEFAULT_BATCH_SIZE,
            help=f'Paths checked per query (default: {_DEFAULT_BATCH_SIZE})',
        )

    def handle(self, *args: Any, **options: Any) -> None:
        """Execute the sweep command.

        Args:
            args: Positional arguments (unused).
            options: Command options.

        Raises:
            CommandError: If a disk is not configured or a prefix is empty.
        """
        backend = StorageBackend()
        disks = options['disks'] or [
            getattr(settings, 'FILES_DEFAULT_DISK', DEFAULT_DISK),
        ]
        unknown = [disk for disk in disks if not backend.has_disk(disk)]
        if unknown:
            raise CommandError(f'Unknown disk(s): {", ".join(unknown)}')

        prefixes = _normalize_prefixes(
            options['prefixes']
            or getattr(settings, 'FILES_SWEEP_PREFIXES', _DEFAULT_PREFIXES),
        )

        cutoff = timezone.now() - timedelta(minutes=options['min_age_minutes'])
        self.stdout.write(
            f'Looking for orphaned files older than {cutoff} '
            f'under {", ".join(prefixes)}',
        )

        found = 0
        deleted = 0
        batch_size = max(1, options['batch_size'])
        for disk, prefix in product(disks, prefixes):
            for batch in batched(backend.walk(disk, prefix), batch_size):
                for path in self._orphans(disk, batch):
                    if not self._is_old_enough(backend, disk, path, cutoff):
                        continue
                    found += 1
                    if options['dry_run']:
                        self.stdout.write(f'Would delete: {disk}:{path}')
                        continue
                    if self._delete(backend, disk, path):
                        deleted += 1

        if options['dry_run']:
            self.stdout.write(
                self.style.SUCCESS(f'Would delete {found} orphaned files'),
            )
        else:
            self.stdout.write(
                self.style.SUCCESS(
                    f'Deleted {deleted} orphaned files, {found - deleted} failed',
                ),
            )

    def _orphans(self, disk: str, paths: tuple[str, ...]) -> list[str]:
        known = set(
            File.objects.filter(disk=disk, path__in=paths).values_list('path', flat=True),
        )
        return [path for path in paths if path not in known]

    def _is_old_enough(
        self,
        backend: StorageBackend,
        disk: str,
        path: str,
        cutoff: Any,
    ) -> bool:
        try:
            return backend.modified_at(disk, path) <= cutoff
        except StorageError:
            logger.warning('Cannot read modification time, skipping: %s:%s', disk, path)
            return False

    def _delete(self, backend: StorageBackend, disk: str, path: str) -> bool:
        try:
            backend.delete(disk, path)
        except StorageError as exc:
            self.stderr.write(f'Failed to delete {disk}:{path}: {exc}')
            logger.exception('Failed to delete orphaned file: %s:%s', disk, path)
            return False
        logger.info('Deleted orphaned file: %s:%s', disk, path)
        return True


def _normalize_prefixes(prefixes: Iterable[str]) -> list[str]:
    """Strip slashes and drop prefixes nested in another one.

    Args:
        prefixes: Folders given on the command line or in settings.

    Returns:
        Sorted folders to walk.

    Raises:
        CommandError: If a prefix would sweep the whole disk.
    """
    normalized = sorted({prefix.strip().strip('/') for prefix in prefixes})
    if not normalized or '' in normalized:
        raise CommandError('Prefixes must name a folder, not the disk root')

    kept: list[str] = []
    for prefix in normalized:
        if not any(prefix.startswith(f'{parent}/') for parent in kept):
            kept.append(prefix)
    return kept
