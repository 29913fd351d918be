"""Persistence and queries for File records.

The repository is the only place that writes File rows. Callers pass
plain mappings; anything outside the relevant allow-list is dropped
silently so extra request data never reaches the database.
"""

import logging
from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from typing import Any, Final, final

from django.core.exceptions import ValidationError as DjangoValidationError
from django.db import DatabaseError, IntegrityError, transaction
from django.db.models import Q

from server.apps.files.exceptions import RepositoryError, ValidationError
from server.apps.files.models import File

logger = logging.getLogger(__name__)

DEFAULT_PAGE_SIZE: Final = 25
MAX_PAGE_SIZE: Final = 200

# Fields a new record may be created with
FILLABLE_FIELDS: Final = frozenset((
    'source',
    'path',
    'size',
    'disk',
    'mime',
    'driver',
    'handler',
    'handler_mode',
    'title',
    'extension',
    'description',
    'author_id',
    'active',
    'published',
    'slug',
    'options',
))

# Fields a metadata edit may change, provenance is never editable
EDITABLE_FIELDS: Final = frozenset((
    'title',
    'description',
    'active',
    'published',
    'slug',
))

FILTERABLE_FIELDS: Final = frozenset((
    'id',
    'source',
    'parent_id',
    'path',
    'size',
    'disk',
    'mime',
    'driver',
    'handler',
    'handler_mode',
    'title',
    'extension',
    'author_id',
    'active',
    'published',
    'slug',
    'created_at',
    'updated_at',
))

_LOOKUPS: Final = frozenset((
    'exact',
    'iexact',
    'contains',
    'icontains',
    'startswith',
    'in',
    'gt',
    'gte',
    'lt',
    'lte',
    'range',
    'isnull',
))


@final
@dataclass(frozen=True)
class FilePage:
    """One page of a keyset-paginated listing.

    Pages are keyed by the last id seen, so rows inserted while a
    client pages through results never shift page boundaries.
    """

    items: list[File]
    next_cursor: int | None

    @property
    def has_more(self) -> bool:
        """Whether another page follows."""
        return self.next_cursor is not None


def guard_fields(data: Mapping[str, Any], allowed: Iterable[str]) -> dict[str, Any]:
    """Keep only allow-listed keys of a mapping.

    Args:
        data: Caller-supplied values.
        allowed: Keys that may pass.

    Returns:
        New dict with the allowed keys only.
    """
    allowed = frozenset(allowed)
    dropped = sorted(key for key in data if key not in allowed)
    if dropped:
        logger.debug('Dropping guarded fields: %s', ', '.join(dropped))
    return {key: value for key, value in data.items() if key in allowed}


def build_criteria(criteria: Mapping[str, Any]) -> Q:
    """Translate filter criteria to a query expression.

    Keys are field names, optionally with a lookup suffix
    (``size__gte``). A mapping value applies several lookups to the
    same field, e.g. ``{'size': {'gte': 10, 'lt': 100}}``.

    Args:
        criteria: Field conditions.

    Returns:
        Combined query expression.

    Raises:
        ValidationError: If a field or lookup is not supported.
    """
    query = Q()
    errors: dict[str, list[str]] = {}
    for key, condition in criteria.items():
        field, _, lookup = key.partition('__')
        if field not in FILTERABLE_FIELDS:
            errors.setdefault(key, []).append('Unknown field.')
            continue

        if isinstance(condition, Mapping):
            conditions = dict(condition)
        else:
            conditions = {lookup or 'exact': condition}

        for name, value in conditions.items():
            if name not in _LOOKUPS:
                errors.setdefault(key, []).append(f'Unsupported lookup {name!r}.')
                continue
            query &= Q(**{f'{field}__{name}': value})

    if errors:
        raise ValidationError(errors)
    return query


@final
class FileRepository:
    """Creates, queries and edits File records."""

    def filter(
        self,
        criteria: Mapping[str, Any] | None = None,
        *,
        after: int | None = None,
        limit: int = DEFAULT_PAGE_SIZE,
    ) -> FilePage:
        """List files matching criteria, ordered by id.

        Args:
            criteria: Field conditions, see ``build_criteria``.
            after: Cursor returned with the previous page.
            limit: Page size, capped at ``MAX_PAGE_SIZE``.

        Returns:
            Page of matching files.

        Raises:
            ValidationError: If criteria or limit are invalid.
        """
        if limit < 1:
            raise ValidationError({'limit': ['Must be a positive number.']})
        limit = min(limit, MAX_PAGE_SIZE)

        queryset = File.objects.filter(build_criteria(criteria or {})).order_by('id')
        if after is not None:
            queryset = queryset.filter(id__gt=after)

        items = list(queryset[:limit + 1])
        if len(items) > limit:
            items = items[:limit]
            return FilePage(items=items, next_cursor=items[-1].id)
        return FilePage(items=items, next_cursor=None)

    def find(self, file_id: int) -> File:
        """Get a file by id.

        Raises:
            File.DoesNotExist: If the file does not exist.
        """
        return File.objects.get(id=file_id)

    def find_published(self, slug: str) -> File:
        """Get the file a direct link points to.

        Only active, published files are reachable.

        Args:
            slug: Direct-link slug.

        Returns:
            Published file.

        Raises:
            File.DoesNotExist: If no servable file owns the slug.
        """
        return File.objects.published().get(slug=slug)

    def find_with_modifications(self, file_id: int) -> tuple[File, list[File]]:
        """Get a file together with its derivatives.

        Args:
            file_id: ID of the original.

        Returns:
            The file and its derivatives ordered by id.

        Raises:
            File.DoesNotExist: If the file does not exist.
        """
        original = File.objects.get(id=file_id)
        modifications = list(
            File.objects.modifications_of(original.id).order_by('id'),
        )
        return original, modifications

    def create_with_guarded_fields(self, data: Mapping[str, Any]) -> File:
        """Create an original record from allow-listed fields only.

        Keys outside ``FILLABLE_FIELDS`` are dropped, never rejected.

        Args:
            data: Field values.

        Returns:
            Created original.

        Raises:
            RepositoryError: If a database constraint is violated.
        """
        fields = guard_fields(data, FILLABLE_FIELDS)
        try:
            with transaction.atomic():
                file_instance = File.objects.create(**fields)
        except (IntegrityError, DatabaseError) as error:
            logger.exception('Failed to create file record: %s', fields.get('path'))
            raise RepositoryError(f'Cannot create file record: {error}') from error

        logger.info(
            'File record created: %s (ID: %d)',
            file_instance,
            file_instance.id,
        )
        return file_instance

    def create_modifications(
        self,
        parent_id: int,
        files: Iterable[Mapping[str, Any]],
    ) -> list[File]:
        """Create all derivatives of an original, or none of them.

        Args:
            parent_id: ID of the original.
            files: Field values of each derivative.

        Returns:
            Created derivatives in input order.

        Raises:
            RepositoryError: If the parent is missing or is itself a
                derivative, or a database constraint is violated.
        """
        instances = [
            File(**guard_fields(fields, FILLABLE_FIELDS), parent_id=parent_id)
            for fields in files
        ]
        try:
            with transaction.atomic():
                parent = File.objects.select_for_update().filter(id=parent_id).first()
                if parent is None:
                    raise RepositoryError(f'Parent file {parent_id} does not exist')
                if not parent.is_original:
                    raise RepositoryError(
                        f'File {parent_id} is a derivative and cannot have derivatives',
                    )
                created = File.objects.bulk_create(instances)
        except (IntegrityError, DatabaseError) as error:
            logger.exception('Failed to create derivatives of file %d', parent_id)
            raise RepositoryError(
                f'Cannot create derivatives of file {parent_id}: {error}',
            ) from error

        logger.info('Created %d derivatives of file %d', len(created), parent_id)
        return created

    def update(self, file_id: int, fields: Mapping[str, Any]) -> File:
        """Edit the metadata of a file.

        Only ``EDITABLE_FIELDS`` change, the rest is dropped.

        Args:
            file_id: ID of the file.
            fields: New values.

        Returns:
            Updated file.

        Raises:
            File.DoesNotExist: If the file does not exist.
            ValidationError: If a value is malformed.
            RepositoryError: If a database constraint is violated.
        """
        changes = guard_fields(fields, EDITABLE_FIELDS)
        file_instance = File.objects.get(id=file_id)
        for name, value in changes.items():
            setattr(file_instance, name, value)
        validate_fields(file_instance, changes)

        try:
            with transaction.atomic():
                file_instance.save(update_fields=[*changes, 'updated_at'])
        except (IntegrityError, DatabaseError) as error:
            logger.exception('Failed to update file record: ID=%d', file_id)
            raise RepositoryError(f'Cannot update file {file_id}: {error}') from error

        logger.info(
            'File record updated: ID=%d (%s)',
            file_id,
            ', '.join(sorted(changes)) or 'no changes',
        )
        return file_instance

    def delete(self, file_id: int) -> None:
        """Delete a file and, for an original, all its derivatives.

        Bytes are removed from storage by the post_delete signal
        once the transaction commits.

        Args:
            file_id: ID of the file.

        Raises:
            File.DoesNotExist: If the file does not exist.
            RepositoryError: If the rows cannot be deleted.
        """
        try:
            with transaction.atomic():
                file_instance = File.objects.get(id=file_id)
                deleted, _ = file_instance.delete()
        except File.DoesNotExist:
            logger.exception('File not found: ID=%d', file_id)
            raise
        except DatabaseError as error:
            logger.exception('Failed to delete file from database: ID=%d', file_id)
            raise RepositoryError(f'Cannot delete file {file_id}: {error}') from error

        logger.info('Deleted file ID=%d with %d record(s)', file_id, deleted)


def validate_fields(file_instance: File, fields: Iterable[str]) -> None:
    """Run model field validation on selected fields only.

    Args:
        file_instance: Unsaved or changed file.
        fields: Names of the fields to validate.

    Raises:
        ValidationError: If any selected field is invalid.
    """
    selected = set(fields)
    excluded = {
        field.name
        for field in File._meta.get_fields()
        if field.concrete and field.name not in selected
    }
    try:
        file_instance.clean_fields(exclude=excluded)
    except DjangoValidationError as error:
        raise ValidationError(error.message_dict) from error
