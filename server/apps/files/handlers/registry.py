"""Registry of handler chains per driver.

The registry is built once from the ``FILES_HANDLERS`` setting and
never mutated afterwards; resolving a chain is a pure lookup.
"""

import functools
import logging
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Final, final

from django.conf import settings
from django.core.exceptions import ImproperlyConfigured
from django.core.signals import setting_changed
from django.dispatch import receiver
from django.utils.module_loading import import_string

from server.apps.files.handlers.base import Handler
from server.apps.files.infrastructure.metadata import mime_group
from server.apps.files.models import OTHER_DRIVER

logger = logging.getLogger(__name__)

_EMPTY: Final[Mapping[str, Any]] = MappingProxyType({})


@final
@dataclass(frozen=True)
class HandlerDescriptor:
    """Configuration of one handler in a driver chain.

    Attributes:
        name: Unique handler name within the driver.
        handler_class: Class implementing the handler contract.
        mandatory: Whether a failure aborts the whole ingestion.
        produces_bytes: Whether the handler writes derivative files.
        depends_on: Handlers of the same chain whose output it needs.
        options: Handler parameters, e.g. resize modes.
    """

    name: str
    handler_class: type[Handler]
    mandatory: bool = False
    produces_bytes: bool = False
    depends_on: tuple[str, ...] = ()
    options: Mapping[str, Any] = field(default_factory=lambda: _EMPTY)

    def build(self, parameters: Mapping[str, Any] | None = None) -> Handler:
        """Create a fresh handler instance.

        Args:
            parameters: Caller overrides for the configured options.

        Returns:
            Handler bound to this descriptor.
        """
        return self.handler_class(self, parameters)


@final
@dataclass(frozen=True)
class DriverConfig:
    """Handler chains of one driver."""

    name: str
    mimes: tuple[str, ...] = ()
    pattern: str | None = None
    original: tuple[HandlerDescriptor, ...] = ()
    handlers: tuple[HandlerDescriptor, ...] = ()


@final
class HandlerRegistry:
    """Maps drivers and mimes to ordered handler chains.

    Mimes are matched exactly first, then by mime group. Anything
    left over is handled by the ``other`` driver, which always exists.
    """

    def __init__(self, drivers: Iterable[DriverConfig]) -> None:
        """Initialize HandlerRegistry.

        Args:
            drivers: Validated driver configurations.

        Raises:
            ImproperlyConfigured: If two drivers claim the same mime.
        """
        indexed = {driver.name: driver for driver in drivers}
        indexed.setdefault(OTHER_DRIVER, DriverConfig(name=OTHER_DRIVER))
        self._drivers = MappingProxyType(indexed)

        by_mime: dict[str, str] = {}
        for driver in indexed.values():
            for mime in driver.mimes:
                key = mime.strip().lower()
                owner = by_mime.setdefault(key, driver.name)
                if owner != driver.name:
                    raise ImproperlyConfigured(
                        f'Mime {mime!r} is claimed by drivers '
                        f'{owner!r} and {driver.name!r}',
                    )
        self._by_mime = MappingProxyType(by_mime)

    @classmethod
    def from_config(cls, config: Mapping[str, Mapping[str, Any]]) -> 'HandlerRegistry':
        """Build a registry from a ``FILES_HANDLERS``-shaped mapping.

        Args:
            config: Driver name to driver configuration.

        Returns:
            Registry indexing the configuration.

        Raises:
            ImproperlyConfigured: If the configuration is invalid.
        """
        return cls(
            _build_driver(name, driver_config)
            for name, driver_config in config.items()
        )

    @property
    def drivers(self) -> tuple[str, ...]:
        """Names of all configured drivers."""
        return tuple(self._drivers)

    def driver_for_mime(self, mime: str) -> str:
        """Resolve the driver that handles a mime.

        Args:
            mime: Full MIME type.

        Returns:
            Driver name, ``other`` when no driver claims the mime.
        """
        key = mime.strip().lower()
        exact = self._by_mime.get(key)
        if exact is not None:
            return exact
        return self._by_mime.get(mime_group(key), OTHER_DRIVER)

    def get_driver(self, driver: str) -> DriverConfig:
        """Configuration of a driver.

        Args:
            driver: Driver name.

        Returns:
            Driver configuration.

        Raises:
            KeyError: If the driver is not configured.
        """
        return self._drivers[driver]

    def original_chain(self, driver: str) -> tuple[HandlerDescriptor, ...]:
        """Handlers run on the stored original, in order."""
        return self.get_driver(driver).original

    def derivative_chain(self, driver: str) -> tuple[HandlerDescriptor, ...]:
        """Handlers run after the original stage, in order."""
        return self.get_driver(driver).handlers


def _build_driver(name: str, config: Mapping[str, Any]) -> DriverConfig:
    original = tuple(
        _build_descriptor(name, raw) for raw in config.get('original', ())
    )
    handlers = tuple(
        _build_descriptor(name, raw) for raw in config.get('handlers', ())
    )
    _validate_chains(name, original, handlers)
    return DriverConfig(
        name=name,
        mimes=tuple(config.get('mimes', ())),
        pattern=config.get('pattern'),
        original=original,
        handlers=handlers,
    )


def _build_descriptor(driver: str, raw: Mapping[str, Any]) -> HandlerDescriptor:
    name = raw.get('name')
    if not name:
        raise ImproperlyConfigured(f'Driver {driver!r} has a handler without name')

    handler_class = raw.get('handler')
    if isinstance(handler_class, str):
        try:
            handler_class = import_string(handler_class)
        except ImportError as error:
            raise ImproperlyConfigured(
                f'Cannot import handler {name!r} of driver {driver!r}: {error}',
            ) from error
    if not (isinstance(handler_class, type) and issubclass(handler_class, Handler)):
        raise ImproperlyConfigured(
            f'Handler {name!r} of driver {driver!r} is not a Handler subclass',
        )

    produces_bytes = bool(raw.get('produces_bytes', False))
    if produces_bytes and not handler_class.can_produce():
        raise ImproperlyConfigured(
            f'Handler {name!r} of driver {driver!r} cannot produce bytes',
        )

    return HandlerDescriptor(
        name=name,
        handler_class=handler_class,
        mandatory=bool(raw.get('mandatory', False)),
        produces_bytes=produces_bytes,
        depends_on=tuple(raw.get('depends_on', ())),
        options=MappingProxyType(dict(raw.get('options', {}))),
    )


def _validate_chains(
    driver: str,
    original: tuple[HandlerDescriptor, ...],
    handlers: tuple[HandlerDescriptor, ...],
) -> None:
    seen: set[str] = set()
    for descriptor in (*original, *handlers):
        if descriptor.name in seen:
            raise ImproperlyConfigured(
                f'Driver {driver!r} declares handler {descriptor.name!r} twice',
            )
        seen.add(descriptor.name)

    for descriptor in original:
        if descriptor.produces_bytes:
            raise ImproperlyConfigured(
                f'Original handler {descriptor.name!r} of driver {driver!r} '
                'cannot produce bytes',
            )
        if descriptor.depends_on:
            raise ImproperlyConfigured(
                f'Original handler {descriptor.name!r} of driver {driver!r} '
                'runs in order and cannot declare dependencies',
            )

    # Dependencies must be declared earlier, which also rules out cycles
    declared: set[str] = set()
    for descriptor in handlers:
        unknown = set(descriptor.depends_on) - declared
        if unknown:
            raise ImproperlyConfigured(
                f'Handler {descriptor.name!r} of driver {driver!r} depends on '
                f'{sorted(unknown)!r}, which are not declared before it',
            )
        declared.add(descriptor.name)


@functools.cache
def get_registry() -> HandlerRegistry:
    """Registry built from the ``FILES_HANDLERS`` setting.

    Returns:
        Process-wide registry instance.
    """
    registry = HandlerRegistry.from_config(getattr(settings, 'FILES_HANDLERS', {}))
    logger.info('Loaded handler registry with drivers: %s', ', '.join(registry.drivers))
    return registry


@receiver(setting_changed)
def reset_registry(*, setting: str, **kwargs: object) -> None:
    """Rebuild the registry when tests override ``FILES_HANDLERS``.

    Args:
        setting: Name of the changed setting.
        **kwargs: Additional signal arguments.
    """
    if setting == 'FILES_HANDLERS':
        get_registry.cache_clear()
