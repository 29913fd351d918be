"""Entry points that feed files into the derivation pipeline."""

import functools
import logging
from collections.abc import Mapping
from pathlib import Path
from typing import IO, Any

from django.contrib.auth import get_user_model
from django.core.files.base import File as DjangoFile
from django.core.signals import setting_changed
from django.dispatch import receiver

from server.apps.files.infrastructure.storage import StorageBackend
from server.apps.files.logic.pipeline import (
    DerivationPipeline,
    IngestionRequest,
    IngestionResult,
)
from server.apps.files.models import File, FileSource

User = get_user_model()
logger = logging.getLogger(__name__)

_PIPELINE_SETTINGS = frozenset((
    'FILES_HANDLERS',
    'FILES_DEFAULT_DISK',
    'FILES_NAME_PATTERN',
    'FILES_NAME_ATTEMPTS',
    'FILES_DERIVATIVE_TIMEOUT',
    'FILES_MAX_WORKERS',
    'STORAGES',
))


@functools.cache
def get_pipeline() -> DerivationPipeline:
    """Process-wide pipeline configured from settings.

    Returns:
        Shared pipeline instance.
    """
    return DerivationPipeline.from_settings()


@receiver(setting_changed)
def reset_pipeline(*, setting: str, **kwargs: object) -> None:
    """Rebuild the pipeline when tests override its settings.

    Args:
        setting: Name of the changed setting.
        **kwargs: Additional signal arguments.
    """
    if setting in _PIPELINE_SETTINGS:
        get_pipeline.cache_clear()


def upload_file(  # noqa: WPS211
    author: User,
    uploaded: DjangoFile | IO[bytes],
    *,
    filename: str | None = None,
    fields: Mapping[str, Any] | None = None,
    disk: str | None = None,
    handler_parameters: Mapping[str, Mapping[str, Any]] | None = None,
    original_handler_parameters: Mapping[str, Mapping[str, Any]] | None = None,
    timeout: float | None = None,
) -> IngestionResult:
    """Ingest a file uploaded from a user device.

    Args:
        author: Owner of the created records.
        uploaded: Uploaded file or any binary file object.
        filename: Client filename, taken from ``uploaded.name`` if empty.
        fields: Title, description, slug and visibility flags.
        disk: Storage alias, the configured default if empty.
        handler_parameters: Derivative handler option overrides keyed
            by handler name.
        original_handler_parameters: Original handler option overrides
            keyed by handler name.
        timeout: Derivative stage deadline in seconds.

    Returns:
        The original, its derivatives and handler warnings.

    Raises:
        PipelineError: If ingestion fails, see ``DerivationPipeline``.
    """
    name = filename or Path(getattr(uploaded, 'name', None) or '').name
    logger.info('Uploading file %s for user %d', name, author.pk)
    return get_pipeline().ingest(IngestionRequest(
        data=_read_all(uploaded),
        filename=name,
        author_id=author.pk,
        mime=getattr(uploaded, 'content_type', None),
        fields=fields or {},
        source=FileSource.USER_DEVICE,
        disk=disk,
        handler_parameters=handler_parameters or {},
        original_handler_parameters=original_handler_parameters or {},
        timeout=timeout,
    ))


def ingest_system_file(
    author: User,
    data: bytes,
    filename: str,
    *,
    fields: Mapping[str, Any] | None = None,
    disk: str | None = None,
    source: str = FileSource.SYSTEM,
) -> IngestionResult:
    """Ingest bytes produced or fetched by the system itself.

    Args:
        author: Owner of the created records.
        data: File content.
        filename: Name the content is known by.
        fields: Title, description, slug and visibility flags.
        disk: Storage alias, the configured default if empty.
        source: Provenance, ``system`` or ``internet``.

    Returns:
        The original, its derivatives and handler warnings.

    Raises:
        PipelineError: If ingestion fails, see ``DerivationPipeline``.
    """
    logger.info('Ingesting %s file %s for user %d', source, filename, author.pk)
    return get_pipeline().ingest(IngestionRequest(
        data=data,
        filename=filename,
        author_id=author.pk,
        fields=fields or {},
        source=source,
        disk=disk,
    ))


def copy_file(
    file_id: int,
    author: User,
    *,
    fields: Mapping[str, Any] | None = None,
    disk: str | None = None,
) -> IngestionResult:
    """Ingest the bytes of an existing file as a new original.

    The copy runs the full pipeline again, so it gets its own name and
    its own derivatives. Title and description carry over unless
    ``fields`` overrides them. The copy starts unpublished since
    slugs belong to the copied file.

    Args:
        file_id: ID of the file to copy.
        author: Owner of the copy.
        fields: Metadata overrides for the copy.
        disk: Target storage alias, the source disk if empty.

    Returns:
        The copy, its derivatives and handler warnings.

    Raises:
        File.DoesNotExist: If the file does not exist.
        PipelineError: If reading the bytes or ingestion fails.
    """
    source_file = File.objects.get(id=file_id)
    data = StorageBackend().read(source_file.disk, source_file.path)

    copy_fields = {
        'title': source_file.title,
        'description': source_file.description,
        'active': source_file.active,
        **(fields or {}),
    }
    logger.info(
        'Copying file %s (ID: %d) for user %d',
        source_file,
        source_file.id,
        author.pk,
    )
    return get_pipeline().ingest(IngestionRequest(
        data=data,
        filename=source_file.get_download_name(),
        author_id=author.pk,
        mime=source_file.mime,
        extension=source_file.extension,
        fields=copy_fields,
        source=FileSource.COPY,
        disk=disk or source_file.disk,
    ))


def _read_all(uploaded: DjangoFile | IO[bytes]) -> bytes:
    if isinstance(uploaded, DjangoFile):
        uploaded.seek(0)
        return b''.join(uploaded.chunks())
    return uploaded.read()
