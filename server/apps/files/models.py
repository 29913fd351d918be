"""Database models for files app."""

from pathlib import Path
from typing import Any, Final, final, override

from django.conf import settings
from django.core.validators import RegexValidator
from django.db import models

# Constants for field max lengths
_TITLE_MAX_LENGTH: Final = 255
_MIME_MAX_LENGTH: Final = 255
_EXTENSION_MAX_LENGTH: Final = 32
_SLUG_MAX_LENGTH: Final = 255
_NAME_MAX_LENGTH: Final = 64  # disk, driver, handler, handler_mode

# Record defaults shared with the pipeline
DEFAULT_DISK: Final = 'public'
DEFAULT_MIME: Final = 'application/octet-stream'
OTHER_DRIVER: Final = 'other'
ORIGINAL_HANDLER: Final = 'original'
DEFAULT_HANDLER_MODE: Final = 'default'

# Extensions become part of storage paths
validate_extension: Final = RegexValidator(
    r'\A[0-9A-Za-z]+\Z',
    'Extension may only contain letters and digits.',
)


class FileSource(models.TextChoices):
    """Where the bytes of a file came from."""

    USER_DEVICE = 'user-device', 'User device'
    SYSTEM = 'system', 'System'
    INTERNET = 'internet', 'Internet'
    COPY = 'copy', 'Copy'


class FileQuerySet(models.QuerySet['File']):
    """Common File lookups."""

    def originals(self) -> 'FileQuerySet':
        """Files that are not derived from another file."""
        return self.filter(parent__isnull=True)

    def modifications_of(self, parent_id: int) -> 'FileQuerySet':
        """Derivatives produced from the given original."""
        return self.filter(parent_id=parent_id)

    def servable(self) -> 'FileQuerySet':
        """Files that may be served to users (inactive files never are)."""
        return self.filter(active=True)

    def published(self) -> 'FileQuerySet':
        """Servable files reachable through their direct-link slug."""
        return self.servable().filter(published=True)


@final
class File(models.Model):
    """Metadata record for one stored artifact.

    A record is either an *original* (``parent`` is empty) or a
    *derivative* produced from an original by a processing handler.
    Derivation is exactly one level deep: derivatives are never parents.

    The bytes live on ``disk`` (a ``STORAGES`` alias) under ``path``.
    Provenance fields (``path``, ``parent``, ``driver``, ``handler``)
    are written once by the pipeline and never edited afterwards.
    """

    source = models.CharField(
        max_length=_NAME_MAX_LENGTH,
        choices=FileSource.choices,
        default=FileSource.USER_DEVICE,
        db_index=True,
    )

    # Original this file was derived from, empty for originals
    parent = models.ForeignKey(
        'self',
        on_delete=models.CASCADE,
        related_name='modifications',
        null=True,
        blank=True,
        db_index=True,
    )

    path = models.TextField(
        help_text='Path relative to the disk root',
    )

    size = models.PositiveBigIntegerField(
        default=0,
        help_text='File size in bytes',
    )

    disk = models.CharField(
        max_length=_NAME_MAX_LENGTH,
        default=DEFAULT_DISK,
        help_text='STORAGES alias holding the bytes',
    )

    mime = models.CharField(
        max_length=_MIME_MAX_LENGTH,
        default=DEFAULT_MIME,
        db_index=True,
    )

    driver = models.CharField(
        max_length=_NAME_MAX_LENGTH,
        default=OTHER_DRIVER,
        db_index=True,
        help_text='Processing driver, "other" when none applies',
    )

    handler = models.CharField(
        max_length=_NAME_MAX_LENGTH,
        default=ORIGINAL_HANDLER,
        db_index=True,
        help_text='Handler that produced the file, "original" if none',
    )

    handler_mode = models.CharField(
        max_length=_NAME_MAX_LENGTH,
        default=DEFAULT_HANDLER_MODE,
        db_index=True,
        help_text='Sub-classification of the handler output',
    )

    title = models.CharField(
        max_length=_TITLE_MAX_LENGTH,
    )

    extension = models.CharField(
        max_length=_EXTENSION_MAX_LENGTH,
        null=True,
        blank=True,
        validators=[validate_extension],
    )

    description = models.TextField(
        null=True,
        blank=True,
    )

    author = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.CASCADE,
        related_name='files',
        db_index=True,
    )

    active = models.BooleanField(
        default=True,
        db_index=True,
        help_text='Inactive files are never served',
    )

    published = models.BooleanField(
        default=False,
        db_index=True,
        help_text='Published files are reachable by their slug',
    )

    slug = models.SlugField(
        max_length=_SLUG_MAX_LENGTH,
        null=True,
        blank=True,
    )

    # Driver-specific attributes, every key is optional
    options = models.JSONField(
        default=dict,
        blank=True,
    )

    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    objects = FileQuerySet.as_manager()

    class Meta:
        """Model metadata."""

        verbose_name = 'File'  # type: ignore[mutable-override]
        verbose_name_plural = 'Files'  # type: ignore[mutable-override]
        ordering = ['id']

        indexes = [
            models.Index(
                fields=['parent', 'handler', 'handler_mode'],
                name='files_parent_handler_idx',
            ),
        ]

        constraints = [
            models.CheckConstraint(
                condition=models.Q(size__gte=0),
                name='files_size_non_negative',
            ),
            # Only one published file may own a slug
            models.UniqueConstraint(
                fields=['slug'],
                condition=models.Q(published=True),
                name='files_published_slug_unique',
            ),
        ]

    @override
    def __str__(self) -> str:
        """String representation."""
        return f'{self.disk}:{self.path}'

    @property
    def is_original(self) -> bool:
        """Whether this file has no parent."""
        return self.parent_id is None

    def get_option(self, key: str, default: Any = None) -> Any:
        """Read a driver-specific option.

        Options have no fixed schema, so every read must supply
        the value to use when the key is absent.

        Args:
            key: Option name.
            default: Value returned when the option is missing.

        Returns:
            Stored option value or ``default``.
        """
        if not isinstance(self.options, dict):
            return default
        return self.options.get(key, default)

    def get_filename(self) -> str:
        """Extract filename from path.

        Example: 'image/2026-01-31/abc.png' -> 'abc.png'

        Returns:
            Filename without folders.
        """
        return Path(self.path).name

    def get_folder_path(self) -> str:
        """Extract folder path from path.

        Example: 'image/2026-01-31/abc.png' -> 'image/2026-01-31'

        Returns:
            Folder path (parent directory of file).
        """
        return str(Path(self.path).parent)

    def get_download_name(self) -> str:
        """Human-readable name offered when the file is downloaded.

        Returns:
            Title with the extension appended when one is known.
        """
        if self.extension:
            return f'{self.title}.{self.extension}'
        return self.title
