"""Management command to ingest a local file through the pipeline."""

import logging
from pathlib import Path
from typing import Any

from django.contrib.auth import get_user_model
from django.core.management.base import BaseCommand, CommandError

from server.apps.files.exceptions import PipelineError, ValidationError
from server.apps.files.logic.ingestion import ingest_system_file
from server.apps.files.models import FileSource

User = get_user_model()
logger = logging.getLogger(__name__)


class Command(BaseCommand):
    """Store a local file, derive its modifications and record them."""

    help = 'Ingest a local file and create its derivatives'

    def add_arguments(self, parser: Any) -> None:
        """Add command line arguments.

        Args:
            parser: Argument parser.
        """
        parser.add_argument('path', help='Path of the file to ingest')
        parser.add_argument(
            '--author',
            required=True,
            help='Username of the owner',
        )
        parser.add_argument('--title', help='Title (default: from filename)')
        parser.add_argument('--description', help='Description')
        parser.add_argument('--disk', help='Storage alias (default: FILES_DEFAULT_DISK)')
        parser.add_argument(
            '--source',
            choices=[FileSource.SYSTEM, FileSource.INTERNET],
            default=FileSource.SYSTEM,
            help='Where the bytes came from (default: system)',
        )

    def handle(self, *args: Any, **options: Any) -> None:
        """Execute the ingest command.

        Args:
            args: Positional arguments (unused).
            options: Command options.

        Raises:
            CommandError: If the file, author or ingestion is invalid.
        """
        path = Path(options['path'])
        if not path.is_file():
            raise CommandError(f'No such file: {path}')

        try:
            author = User.objects.get(username=options['author'])
        except User.DoesNotExist as exc:
            raise CommandError(f'Unknown author: {options["author"]}') from exc

        fields = {
            name: options[name]
            for name in ('title', 'description')
            if options[name] is not None
        }
        try:
            result = ingest_system_file(
                author,
                path.read_bytes(),
                path.name,
                fields=fields,
                disk=options['disk'],
                source=options['source'],
            )
        except ValidationError as exc:
            raise CommandError(f'Invalid file metadata: {exc.errors}') from exc
        except PipelineError as exc:
            logger.exception('Failed to ingest %s', path)
            raise CommandError(f'Failed to ingest {path}: {exc}') from exc

        for warning in result.warnings:
            self.stderr.write(f'Warning: {warning.handler}: {warning.message}')
        for derivative in result.derivatives:
            self.stdout.write(
                f'  {derivative.handler}/{derivative.handler_mode}: {derivative}',
            )
        self.stdout.write(
            self.style.SUCCESS(
                f'Ingested {result.original} (ID: {result.original.id}) '
                f'with {len(result.derivatives)} derivatives',
            ),
        )
