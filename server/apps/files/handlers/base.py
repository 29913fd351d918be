"""Contract every processing handler implements.

A handler is one step of a driver's chain. Handlers in the *original*
chain extract properties of the stored original. Handlers in the
derivative chain either extract more properties or, when their
descriptor declares ``produces_bytes``, produce derivative files
through the ``DerivationContext`` they are given.
"""

import logging
import threading
from collections.abc import Mapping
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import TYPE_CHECKING, Any, Final, final

from server.apps.files.exceptions import HandlerError
from server.apps.files.models import DEFAULT_HANDLER_MODE

if TYPE_CHECKING:
    from server.apps.files.handlers.registry import HandlerDescriptor
    from server.apps.files.infrastructure.naming import NameGenerator
    from server.apps.files.infrastructure.storage import StorageBackend

logger = logging.getLogger(__name__)

_EMPTY: Final[Mapping[str, Any]] = MappingProxyType({})


def merge_options(
    descriptor: 'HandlerDescriptor',
    parameters: Mapping[str, Any] | None = None,
) -> Mapping[str, Any]:
    """Configured handler options with caller overrides applied.

    Callers may only override options that are configured, unknown
    keys are ignored.

    Args:
        descriptor: Descriptor holding the configured options.
        parameters: Caller overrides for this handler.

    Returns:
        Read-only merged options.
    """
    merged = dict(descriptor.options)
    for key, value in (parameters or _EMPTY).items():
        if key in merged:
            merged[key] = value
        else:
            logger.debug(
                'Ignoring unknown parameter %r for handler %s',
                key,
                descriptor.name,
            )
    return MappingProxyType(merged)


@final
@dataclass(frozen=True)
class SourceFile:
    """The stored original as seen by handlers.

    ``basic`` and ``additional`` hold the properties extracted so far;
    derivative handlers always see the completed original stage.
    """

    disk: str
    path: str
    data: bytes
    filename: str
    mime: str
    extension: str
    driver: str
    basic: Mapping[str, Any] = field(default_factory=dict)
    additional: Mapping[str, Any] = field(default_factory=dict)

    @property
    def size(self) -> int:
        """Size of the stored bytes."""
        return len(self.data)


@final
@dataclass(frozen=True)
class Derivative:
    """File-shaped metadata of one written derivative."""

    handler: str
    disk: str
    path: str
    size: int
    mime: str
    extension: str
    handler_mode: str = DEFAULT_HANDLER_MODE
    options: Mapping[str, Any] = field(default_factory=dict)


@final
class WriteJournal:
    """Thread-safe record of every path written during one ingestion.

    Once closed, late writes from abandoned handlers are refused
    and removed so a rolled back run leaves no bytes behind.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._entries: list[tuple[str, str, str]] = []
        self._closed = False

    @property
    def closed(self) -> bool:
        """Whether the journal refuses new entries."""
        with self._lock:
            return self._closed

    def record(self, handler: str, disk: str, path: str) -> bool:
        """Record a written path.

        Args:
            handler: Handler that wrote the bytes.
            disk: Storage alias.
            path: Written path.

        Returns:
            False if the journal is already closed.
        """
        with self._lock:
            if self._closed:
                return False
            self._entries.append((handler, disk, path))
            return True

    def written(self, handler: str | None = None) -> list[tuple[str, str]]:
        """Paths written so far, optionally by one handler only.

        Args:
            handler: Handler name to filter by.

        Returns:
            ``(disk, path)`` pairs in write order.
        """
        with self._lock:
            return [
                (disk, path)
                for owner, disk, path in self._entries
                if handler is None or owner == handler
            ]

    def forget(self, handler: str) -> None:
        """Drop the entries of a handler whose writes were undone.

        Args:
            handler: Handler name.
        """
        with self._lock:
            self._entries = [
                entry for entry in self._entries if entry[0] != handler
            ]

    def close(self) -> list[tuple[str, str]]:
        """Refuse further entries.

        Returns:
            Every ``(disk, path)`` pair recorded so far.
        """
        with self._lock:
            self._closed = True
            return [(disk, path) for _, disk, path in self._entries]


@final
class DerivationContext:
    """What a handler may use while producing derivatives.

    Names come from the shared ``NameGenerator``, bytes go through the
    ``StorageBackend`` and every write is journaled for rollback.
    """

    def __init__(  # noqa: WPS211
        self,
        descriptor: 'HandlerDescriptor',
        *,
        backend: 'StorageBackend',
        names: 'NameGenerator',
        journal: WriteJournal,
        disk: str,
        pattern: str,
        parameters: Mapping[str, Any] | None = None,
        outputs: Mapping[str, tuple[Derivative, ...]] | None = None,
    ) -> None:
        """Initialize DerivationContext.

        Args:
            descriptor: Descriptor of the running handler.
            backend: Storage to write derivative bytes to.
            names: Generator for derivative paths.
            journal: Journal of the current ingestion.
            disk: Storage alias derivatives are written to.
            pattern: Name pattern for derivative paths.
            parameters: Caller overrides for the handler options.
            outputs: Derivatives of the handlers this one depends on.
        """
        self.descriptor = descriptor
        self._backend = backend
        self._names = names
        self._journal = journal
        self._disk = disk
        self._pattern = pattern
        self.parameters = MappingProxyType(dict(parameters or _EMPTY))
        self.outputs = MappingProxyType(dict(outputs or {}))

    @property
    def options(self) -> Mapping[str, Any]:
        """Handler options with the caller parameters of this run."""
        return merge_options(self.descriptor, self.parameters)

    def save(
        self,
        data: bytes,
        *,
        source: SourceFile,
        mime: str,
        extension: str,
        handler_mode: str = DEFAULT_HANDLER_MODE,
        options: Mapping[str, Any] | None = None,
    ) -> Derivative:
        """Name, write and journal one derivative.

        Args:
            data: Derivative bytes.
            source: Original the derivative was produced from.
            mime: Derivative MIME type.
            extension: Derivative extension without dot.
            handler_mode: Sub-classification of this output.
            options: Driver-specific attributes of the derivative.

        Returns:
            Metadata of the written derivative.

        Raises:
            HandlerError: If the ingestion was abandoned meanwhile.
        """
        handler = self.descriptor.name
        if self._journal.closed:
            raise HandlerError(handler, 'ingestion was abandoned')

        path = self._names.generate(
            self._pattern,
            {
                'mime': mime,
                'extension': extension,
                'filename': source.filename,
                'driver': source.driver,
                'handler': handler,
                'handler_mode': handler_mode,
            },
            disk=self._disk,
        )
        try:
            self._backend.write(self._disk, path, data)
        finally:
            self._names.release(self._disk, path)

        if not self._journal.record(handler, self._disk, path):
            self._backend.rollback([(self._disk, path)])
            raise HandlerError(handler, 'ingestion was abandoned')

        return Derivative(
            handler=handler,
            disk=self._disk,
            path=path,
            size=len(data),
            mime=mime,
            extension=extension,
            handler_mode=handler_mode,
            options=dict(options or {}),
        )


class Handler:
    """Base class for processing handlers.

    Subclasses override the extraction hooks they support. Handlers
    whose descriptor declares ``produces_bytes`` must override
    ``produce``. Instances are built per ingestion and may be run in
    worker threads, so they must not share mutable state.
    """

    def __init__(
        self,
        descriptor: 'HandlerDescriptor',
        parameters: Mapping[str, Any] | None = None,
    ) -> None:
        """Initialize Handler.

        Args:
            descriptor: Registry descriptor this handler was built from.
            parameters: Caller overrides for the configured options.
        """
        self.descriptor = descriptor
        self.options = merge_options(descriptor, parameters)

    @property
    def name(self) -> str:
        """Unique handler name within its driver."""
        return self.descriptor.name

    def extract_basic_properties(self, source: SourceFile) -> Mapping[str, Any]:
        """Properties stored in File columns (size, mime, extension).

        Args:
            source: File being handled.

        Returns:
            Property values keyed by name.
        """
        return {}

    def extract_additional_properties(
        self,
        source: SourceFile,
    ) -> Mapping[str, Any]:
        """Driver-specific properties stored in File options.

        Args:
            source: File being handled.

        Returns:
            Property values keyed by name.
        """
        return {}

    def produce(
        self,
        source: SourceFile,
        context: DerivationContext,
    ) -> list[Derivative]:
        """Produce derivative files.

        Args:
            source: Original with its completed properties.
            context: Naming, storage and options for this run.

        Returns:
            Derivatives written through ``context.save``.
        """
        raise NotImplementedError(
            f'{type(self).__name__} does not produce derivatives',
        )

    @classmethod
    def can_produce(cls) -> bool:
        """Whether the class overrides ``produce``."""
        return cls.produce is not Handler.produce
