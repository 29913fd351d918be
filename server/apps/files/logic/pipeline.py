"""Derivation pipeline: stores an original and derives files from it.

An ingestion moves through these states::

    received -> stored -> original_handled -> derivatives_handled
             -> persisted -> completed

and ends in ``failed`` from any earlier state. Bytes written before
a fatal failure in the handler stages are deleted again. Bytes left
behind by a failed persistence are kept and collected later by the
``sweep_orphans`` command.
"""

import enum
import logging
import time
from collections.abc import Mapping
from concurrent.futures import Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field, replace
from pathlib import PurePosixPath
from types import MappingProxyType
from typing import Any, Final, final

from django.conf import settings
from django.contrib.auth import get_user_model
from django.db import transaction

from server.apps.files.exceptions import (
    GenerationError,
    HandlerError,
    PipelineError,
    RepositoryError,
    StorageError,
    StorageWriteError,
    ValidationError,
)
from server.apps.files.handlers.base import (
    DerivationContext,
    Derivative,
    SourceFile,
    WriteJournal,
)
from server.apps.files.handlers.registry import (
    DriverConfig,
    HandlerDescriptor,
    HandlerRegistry,
    get_registry,
)
from server.apps.files.infrastructure.metadata import (
    detect_mime_type,
    extension_for_mime,
    get_file_extension,
    title_from_filename,
)
from server.apps.files.infrastructure.naming import DEFAULT_ATTEMPTS, NameGenerator
from server.apps.files.infrastructure.storage import StorageBackend
from server.apps.files.logic.repository import (
    FileRepository,
    guard_fields,
    validate_fields,
)
from server.apps.files.models import (
    DEFAULT_DISK,
    DEFAULT_HANDLER_MODE,
    DEFAULT_MIME,
    ORIGINAL_HANDLER,
    File,
    FileSource,
)

User = get_user_model()
logger = logging.getLogger(__name__)

DEFAULT_PATTERN: Final = (
    '{mime<value:group>}/{date<format:Y-m-d>}/{string<length:25>}.{extension}'
)
DEFAULT_MAX_WORKERS: Final = 4

# Caller-supplied fields that may reach the original record
CALLER_FIELDS: Final = frozenset((
    'title',
    'description',
    'active',
    'published',
    'slug',
))

# Basic properties stored in columns rather than options
_COLUMN_PROPERTIES: Final = frozenset(('size', 'mime', 'extension'))


class IngestionState(enum.StrEnum):
    """States of one ingestion request."""

    RECEIVED = 'received'
    STORED = 'stored'
    ORIGINAL_HANDLED = 'original_handled'
    DERIVATIVES_HANDLED = 'derivatives_handled'
    PERSISTED = 'persisted'
    COMPLETED = 'completed'
    FAILED = 'failed'


# Failing in these states deletes every byte written for the request
_ROLLBACK_STATES: Final = frozenset((
    IngestionState.STORED,
    IngestionState.ORIGINAL_HANDLED,
))


@final
@dataclass(frozen=True)
class IngestionRequest:
    """Raw bytes and client metadata of one file to ingest.

    Attributes:
        data: File content.
        filename: Client filename, used for the title and extension.
        author_id: ID of the user the records belong to.
        mime: Client-claimed mime, used only when content sniffing
            and the filename cannot tell.
        extension: Client-claimed extension without dot.
        fields: Record fields, filtered through ``CALLER_FIELDS``.
        source: Where the bytes came from.
        disk: Storage alias, the pipeline default when empty.
        handler_parameters: Option overrides for derivative stage
            handlers, keyed by handler name.
        original_handler_parameters: Option overrides for original
            stage handlers, keyed by handler name.
        timeout: Derivative stage deadline in seconds.
    """

    data: bytes
    filename: str
    author_id: int
    mime: str | None = None
    extension: str | None = None
    fields: Mapping[str, Any] = field(default_factory=dict)
    source: str = FileSource.USER_DEVICE
    disk: str | None = None
    handler_parameters: Mapping[str, Mapping[str, Any]] = field(default_factory=dict)
    original_handler_parameters: Mapping[str, Mapping[str, Any]] = field(
        default_factory=dict,
    )
    timeout: float | None = None


@final
@dataclass(frozen=True)
class HandlerWarning:
    """A non-fatal handler failure reported with a successful result."""

    handler: str
    stage: str
    message: str


@final
@dataclass(frozen=True)
class IngestionResult:
    """Records created by one successful ingestion."""

    original: File
    derivatives: list[File]
    warnings: list[HandlerWarning]

    @property
    def files(self) -> list[File]:
        """The original followed by its derivatives."""
        return [self.original, *self.derivatives]


@final
@dataclass(frozen=True)
class _FileInfo:
    filename: str
    title: str
    mime: str
    extension: str
    disk: str
    fields: Mapping[str, Any]


@final
class _Run:
    """Mutable bookkeeping of one ingestion."""

    def __init__(self) -> None:
        self.state = IngestionState.RECEIVED
        self.journal = WriteJournal()
        self.warnings: list[HandlerWarning] = []
        self.original: tuple[str, str] | None = None

    def advance(self, state: IngestionState) -> None:
        logger.debug('Ingestion %s -> %s', self.state, state)
        self.state = state


@final
class DerivationPipeline:
    """Runs ingestion requests through storage, handlers and persistence.

    The pipeline holds no per-request state and may serve concurrent
    requests. Its collaborators are passed in explicitly; use
    ``from_settings`` to build one from the Django settings.
    """

    def __init__(  # noqa: WPS211
        self,
        registry: HandlerRegistry,
        *,
        backend: StorageBackend | None = None,
        repository: FileRepository | None = None,
        names: NameGenerator | None = None,
        default_disk: str = DEFAULT_DISK,
        pattern: str = DEFAULT_PATTERN,
        timeout: float | None = None,
        max_workers: int = DEFAULT_MAX_WORKERS,
    ) -> None:
        """Initialize DerivationPipeline.

        Args:
            registry: Handler chains per driver.
            backend: Byte storage, Django ``STORAGES`` by default.
            repository: File record persistence.
            names: Generator for storage paths.
            default_disk: Disk used when a request names none.
            pattern: Name pattern for drivers without their own.
            timeout: Default derivative stage deadline in seconds.
            max_workers: Handlers run concurrently per request.
        """
        self._registry = registry
        self._backend = backend or StorageBackend()
        self._repository = repository or FileRepository()
        self._names = names or NameGenerator(self._backend)
        self._default_disk = default_disk
        self._pattern = pattern
        self._timeout = timeout
        self._max_workers = max(1, max_workers)

    @classmethod
    def from_settings(cls) -> 'DerivationPipeline':
        """Build a pipeline from the ``FILES_*`` settings.

        Returns:
            Configured pipeline.
        """
        backend = StorageBackend()
        return cls(
            get_registry(),
            backend=backend,
            names=NameGenerator(
                backend,
                attempts=getattr(settings, 'FILES_NAME_ATTEMPTS', DEFAULT_ATTEMPTS),
            ),
            default_disk=getattr(settings, 'FILES_DEFAULT_DISK', DEFAULT_DISK),
            pattern=getattr(settings, 'FILES_NAME_PATTERN', DEFAULT_PATTERN),
            timeout=getattr(settings, 'FILES_DERIVATIVE_TIMEOUT', None),
            max_workers=getattr(settings, 'FILES_MAX_WORKERS', DEFAULT_MAX_WORKERS),
        )

    def ingest(self, request: IngestionRequest) -> IngestionResult:
        """Store a file, derive files from it and record all of them.

        Args:
            request: Bytes and metadata to ingest.

        Returns:
            Created original, its derivatives and handler warnings.

        Raises:
            ValidationError: If request metadata is malformed.
            GenerationError: If no free storage name was found.
            StorageWriteError: If the original could not be stored.
            HandlerError: If a mandatory handler failed or the
                derivative stage missed its deadline.
            RepositoryError: If the records could not be persisted.
        """
        run = _Run()
        try:
            info = self._validate(request)
            driver = self._registry.get_driver(
                self._registry.driver_for_mime(info.mime),
            )
            source = self._store(run, request, info, driver)
            source = self._handle_original(run, source, driver, request)
            derivatives, properties = self._handle_derivatives(
                run,
                source,
                driver,
                request,
            )
            original, modifications = self._persist(
                run,
                request,
                info,
                source,
                derivatives,
                properties,
            )
        except PipelineError as error:
            self._fail(run, error)
            raise
        except Exception as error:
            failure = _unexpected_failure(run.state, error)
            self._fail(run, failure)
            raise failure from error

        run.advance(IngestionState.COMPLETED)
        logger.info(
            'Ingested %s (ID: %d) with %d derivative(s) and %d warning(s)',
            original,
            original.id,
            len(modifications),
            len(run.warnings),
        )
        return IngestionResult(
            original=original,
            derivatives=modifications,
            warnings=list(run.warnings),
        )

    def _validate(self, request: IngestionRequest) -> _FileInfo:
        """Check request shape before anything is written."""
        errors: dict[str, list[str]] = {}

        if not isinstance(request.data, (bytes, bytearray)):
            errors['data'] = ['File content must be bytes.']

        filename = PurePosixPath(str(request.filename or '').replace('\\', '/')).name
        if not filename:
            errors['filename'] = ['Filename is required.']

        author_id = request.author_id
        if isinstance(author_id, bool) or not isinstance(author_id, int) or author_id < 1:
            errors['author_id'] = ['Author is required.']
        elif not User.objects.filter(pk=author_id).exists():
            errors['author_id'] = [f'Author {author_id} does not exist.']

        if request.source not in FileSource.values:
            errors['source'] = [f'Unknown source {request.source!r}.']

        disk = request.disk or self._default_disk
        if not self._backend.has_disk(disk):
            errors['disk'] = [f'Unknown disk {disk!r}.']

        if not isinstance(request.fields, Mapping):
            errors['fields'] = ['Fields must be a mapping.']

        for name in ('mime', 'extension'):
            value = getattr(request, name)
            if value is not None and not isinstance(value, str):
                errors[name] = [f'{name.capitalize()} must be a string.']

        for name in ('handler_parameters', 'original_handler_parameters'):
            if not _is_parameter_mapping(getattr(request, name)):
                errors[name] = ['Parameters must map handler names to mappings.']

        if errors:
            raise ValidationError(errors)

        fields = guard_fields(request.fields, CALLER_FIELDS)
        title = fields.get('title') or title_from_filename(filename) or filename
        fields['title'] = title

        data = bytes(request.data)
        mime = detect_mime_type(data, filename)
        if mime == DEFAULT_MIME and request.mime:
            mime = request.mime.strip().lower()

        extension = (request.extension or '').lstrip('.').lower()
        if not extension:
            extension = _extension_from_filename(filename, mime)
        validate_fields(
            File(**fields, mime=mime, extension=extension),
            [*fields, 'mime', 'extension'],
        )

        return _FileInfo(
            filename=filename,
            title=title,
            mime=mime,
            extension=extension,
            disk=disk,
            fields=MappingProxyType(fields),
        )

    def _store(
        self,
        run: _Run,
        request: IngestionRequest,
        info: _FileInfo,
        driver: DriverConfig,
    ) -> SourceFile:
        """Name and write the original bytes."""
        data = bytes(request.data)
        context = {
            'mime': info.mime,
            'extension': info.extension,
            'filename': info.filename,
            'driver': driver.name,
            'handler': ORIGINAL_HANDLER,
            'handler_mode': DEFAULT_HANDLER_MODE,
        }
        pattern = driver.pattern or self._pattern
        try:
            path = self._names.generate(
                pattern,
                context,
                disk=info.disk,
            )
        except StorageWriteError:
            raise
        except StorageError as error:
            raise StorageWriteError(error.disk, error.path, str(error)) from error
        except PipelineError:
            raise
        except Exception as error:
            raise GenerationError(pattern, str(error)) from error

        try:
            self._backend.write(info.disk, path, data)
        finally:
            self._names.release(info.disk, path)

        run.original = (info.disk, path)
        run.advance(IngestionState.STORED)
        return SourceFile(
            disk=info.disk,
            path=path,
            data=data,
            filename=info.filename,
            mime=info.mime,
            extension=info.extension,
            driver=driver.name,
        )

    def _handle_original(
        self,
        run: _Run,
        source: SourceFile,
        driver: DriverConfig,
        request: IngestionRequest,
    ) -> SourceFile:
        """Run the original chain in order, accumulating properties."""
        parameters = request.original_handler_parameters
        basic: dict[str, Any] = {}
        additional: dict[str, Any] = {}
        for descriptor in driver.original:
            current = replace(
                source,
                basic=MappingProxyType(dict(basic)),
                additional=MappingProxyType(dict(additional)),
            )
            try:
                handler = descriptor.build(parameters.get(descriptor.name))
                basic_part = handler.extract_basic_properties(current)
                additional_part = handler.extract_additional_properties(current)
            except Exception as error:
                self._handler_failed(run, descriptor, error)
                continue
            basic.update(basic_part)
            additional.update(additional_part)

        run.advance(IngestionState.ORIGINAL_HANDLED)
        return replace(
            source,
            basic=MappingProxyType(basic),
            additional=MappingProxyType(additional),
        )

    def _handle_derivatives(
        self,
        run: _Run,
        source: SourceFile,
        driver: DriverConfig,
        request: IngestionRequest,
    ) -> tuple[list[Derivative], dict[str, Any]]:
        """Fan out the derivative chain and join every handler.

        Handlers run in waves: a handler starts once every handler it
        depends on has finished. Handlers of one wave run concurrently.
        """
        derivatives: list[Derivative] = []
        properties: dict[str, Any] = {}
        outputs: dict[str, tuple[Derivative, ...]] = {}
        failed: set[str] = set()

        timeout = request.timeout if request.timeout is not None else self._timeout
        deadline = None if timeout is None else time.monotonic() + timeout
        pending = list(driver.handlers)

        executor = ThreadPoolExecutor(
            max_workers=self._max_workers,
            thread_name_prefix='file-handler',
        )
        try:
            while pending:
                wave = [
                    descriptor for descriptor in pending
                    if all(dep in outputs or dep in failed for dep in descriptor.depends_on)
                ]
                pending = [descriptor for descriptor in pending if descriptor not in wave]

                futures: dict[str, Future[tuple[list[Derivative], Mapping[str, Any]]]] = {}
                for descriptor in wave:
                    blocked = sorted(set(descriptor.depends_on) & failed)
                    if blocked:
                        failed.add(descriptor.name)
                        self._handler_failed(run, descriptor, HandlerError(
                            descriptor.name,
                            f'depends on failed handler(s) {", ".join(blocked)}',
                        ))
                        continue
                    context = DerivationContext(
                        descriptor,
                        backend=self._backend,
                        names=self._names,
                        journal=run.journal,
                        disk=source.disk,
                        pattern=driver.pattern or self._pattern,
                        parameters=request.handler_parameters.get(descriptor.name),
                        outputs={dep: outputs[dep] for dep in descriptor.depends_on},
                    )
                    futures[descriptor.name] = executor.submit(
                        _run_handler,
                        descriptor,
                        source,
                        context,
                    )

                self._join(run, futures, deadline)

                for descriptor in wave:
                    future = futures.get(descriptor.name)
                    if future is None:
                        continue
                    error = future.exception()
                    if error is not None:
                        failed.add(descriptor.name)
                        self._discard_writes(run, descriptor)
                        self._handler_failed(run, descriptor, error)
                        continue
                    produced, extracted = future.result()
                    outputs[descriptor.name] = tuple(produced)
                    derivatives.extend(produced)
                    if extracted:
                        properties[descriptor.name] = dict(extracted)
        finally:
            executor.shutdown(wait=False, cancel_futures=True)

        run.advance(IngestionState.DERIVATIVES_HANDLED)
        return derivatives, properties

    def _join(
        self,
        run: _Run,
        futures: Mapping[str, Future[Any]],
        deadline: float | None,
    ) -> None:
        """Wait for a wave, failing the stage when the deadline passes."""
        if not futures:
            return
        remaining = None if deadline is None else max(0.0, deadline - time.monotonic())
        _, not_done = wait(futures.values(), timeout=remaining)
        if not not_done:
            return

        for future in not_done:
            future.cancel()
        late = sorted(name for name, future in futures.items() if future in not_done)
        logger.error('Derivative stage deadline exceeded, abandoning: %s', ', '.join(late))
        raise HandlerError(
            ', '.join(late),
            'derivative stage deadline exceeded',
            stage=run.state,
        )

    def _persist(  # noqa: WPS211
        self,
        run: _Run,
        request: IngestionRequest,
        info: _FileInfo,
        source: SourceFile,
        derivatives: list[Derivative],
        properties: Mapping[str, Any],
    ) -> tuple[File, list[File]]:
        """Create the original and derivative records in one transaction."""
        basic = source.basic
        options = {
            key: value for key, value in basic.items()
            if key not in _COLUMN_PROPERTIES
        }
        options.update(source.additional)
        options.update(properties)

        detected_mime = basic.get('mime')
        mime = info.mime if detected_mime in {None, DEFAULT_MIME} else detected_mime

        original_data = {
            **info.fields,
            'source': request.source,
            'disk': source.disk,
            'path': source.path,
            'size': source.size,
            'mime': mime,
            'extension': basic.get('extension') or info.extension,
            'driver': source.driver,
            'handler': ORIGINAL_HANDLER,
            'handler_mode': DEFAULT_HANDLER_MODE,
            'author_id': request.author_id,
            'options': options,
        }
        modification_data = [
            {
                'title': info.title,
                'source': FileSource.SYSTEM,
                'disk': derivative.disk,
                'path': derivative.path,
                'size': derivative.size,
                'mime': derivative.mime,
                'extension': derivative.extension,
                'driver': source.driver,
                'handler': derivative.handler,
                'handler_mode': derivative.handler_mode,
                'author_id': request.author_id,
                'active': info.fields.get('active', True),
                'options': dict(derivative.options),
            }
            for derivative in derivatives
        ]

        with transaction.atomic():
            original = self._repository.create_with_guarded_fields(original_data)
            modifications = self._repository.create_modifications(
                original.id,
                modification_data,
            )

        run.advance(IngestionState.PERSISTED)
        return original, modifications

    def _handler_failed(
        self,
        run: _Run,
        descriptor: HandlerDescriptor,
        error: BaseException,
    ) -> None:
        """Record an optional failure or raise a mandatory one."""
        if descriptor.mandatory:
            logger.error(
                'Mandatory handler %s failed in state %s: %s',
                descriptor.name,
                run.state,
                error,
            )
            raise HandlerError(
                descriptor.name,
                str(error),
                stage=run.state,
            ) from error

        logger.warning(
            'Optional handler %s failed in state %s: %s',
            descriptor.name,
            run.state,
            error,
        )
        run.warnings.append(HandlerWarning(
            handler=descriptor.name,
            stage=run.state,
            message=str(error),
        ))

    def _discard_writes(self, run: _Run, descriptor: HandlerDescriptor) -> None:
        """Delete bytes a failed handler wrote before failing."""
        written = run.journal.written(descriptor.name)
        if written:
            self._backend.rollback(written)
        run.journal.forget(descriptor.name)

    def _fail(self, run: _Run, error: PipelineError) -> None:
        """Move to the failed state and undo writes where required."""
        failed_in = run.state
        if error.stage is None:
            error.stage = failed_in

        written = run.journal.close()
        if failed_in in _ROLLBACK_STATES:
            self._rollback(run, written)
        elif run.original is not None:
            logger.error(
                'Ingestion failed in state %s, keeping orphaned bytes: %s',
                failed_in,
                ', '.join(f'{disk}:{path}' for disk, path in [run.original, *written]),
            )

        run.advance(IngestionState.FAILED)
        logger.warning('Ingestion failed in state %s: %s', failed_in, error)

    def _rollback(self, run: _Run, written: list[tuple[str, str]]) -> None:
        to_delete = list(written)
        if run.original is not None:
            to_delete.append(run.original)
        orphaned = self._backend.rollback(to_delete)
        if orphaned:
            logger.error('Rollback left %d orphaned file(s)', len(orphaned))


def _run_handler(
    descriptor: HandlerDescriptor,
    source: SourceFile,
    context: DerivationContext,
) -> tuple[list[Derivative], Mapping[str, Any]]:
    """Execute one derivative-stage handler in a worker thread."""
    handler = descriptor.build(context.parameters)
    if not descriptor.produces_bytes:
        return [], handler.extract_additional_properties(source)

    produced = list(handler.produce(source, context))
    for derivative in produced:
        if not isinstance(derivative, Derivative):
            raise HandlerError(
                descriptor.name,
                f'returned {type(derivative).__name__} instead of a Derivative',
            )
    return produced, {}


def _is_parameter_mapping(parameters: Any) -> bool:
    return isinstance(parameters, Mapping) and all(
        isinstance(value, Mapping) for value in parameters.values()
    )


def _extension_from_filename(filename: str, mime: str) -> str:
    """Filename extension if it is usable in a path, else one for the mime."""
    extension = get_file_extension(filename)
    if extension:
        try:
            validate_fields(File(extension=extension), ['extension'])
        except ValidationError:
            logger.debug('Ignoring unusable extension %r of %s', extension, filename)
        else:
            return extension
    return extension_for_mime(mime)


def _unexpected_failure(state: IngestionState, error: Exception) -> PipelineError:
    """Error of the failing stage for an exception no stage anticipated."""
    reason = f'unexpected failure: {error}'
    if state == IngestionState.RECEIVED:
        return ValidationError({'request': [reason]})
    if state in _ROLLBACK_STATES:
        return HandlerError('pipeline', reason, stage=state)
    return RepositoryError(f'Cannot persist file records, {reason}')
