"""Unique storage names generated from token patterns.

A pattern mixes literal text with tokens in curly braces::

    {mime<value:group>}/{date<format:Y-m-d>}/{string<length:25>}.{extension}

Supported tokens:

- ``{mime<value:group>}`` renders the mime group (``image/png`` -> ``image``),
  ``value:subtype`` renders the subtype and a bare ``{mime}`` renders the
  whole mime with ``/`` replaced by ``-``
- ``{date<format:F>}`` renders the current time with the PHP-style
  format characters understood by ``django.utils.dateformat``
- ``{string<length:N>}`` renders N random alphanumeric characters
- any other ``{key}`` is looked up verbatim in the rendering context

Parameters are ``name:value`` pairs separated by commas.
"""

import logging
import posixpath
import re
import threading
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from datetime import datetime
from typing import TYPE_CHECKING, Any, Final, final

from django.utils import dateformat, timezone
from django.utils.crypto import get_random_string

from server.apps.files.exceptions import GenerationError
from server.apps.files.infrastructure.metadata import mime_group, mime_subtype

if TYPE_CHECKING:
    from server.apps.files.infrastructure.storage import StorageBackend

logger = logging.getLogger(__name__)

DEFAULT_ATTEMPTS: Final = 10

_TOKEN_RE: Final = re.compile(
    r'\{(?P<kind>[A-Za-z_][\w-]*)(?:<(?P<params>[^<>{}]*)>)?\}',
)
_DEFAULT_DATE_FORMAT: Final = 'Y-m-d'
_DEFAULT_STRING_LENGTH: Final = 16
_RANDOM_KIND: Final = 'string'


@final
@dataclass(frozen=True)
class Token:
    """One ``{kind<params>}`` placeholder of a pattern."""

    kind: str
    params: Mapping[str, str]

    @property
    def is_random(self) -> bool:
        """Whether rendering the token twice may give different text."""
        return self.kind == _RANDOM_KIND


def parse_pattern(pattern: str) -> tuple[str | Token, ...]:
    """Split a pattern into literal text and tokens.

    Args:
        pattern: Name pattern.

    Returns:
        Literal strings and ``Token`` objects in pattern order.

    Raises:
        GenerationError: If the pattern is empty or malformed.
    """
    if not pattern:
        raise GenerationError(pattern, 'pattern is empty')

    segments: list[str | Token] = []
    position = 0
    for match in _TOKEN_RE.finditer(pattern):
        _append_literal(segments, pattern, pattern[position:match.start()])
        segments.append(Token(
            kind=match.group('kind'),
            params=_parse_params(pattern, match.group('params') or ''),
        ))
        position = match.end()
    _append_literal(segments, pattern, pattern[position:])
    return tuple(segments)


def _append_literal(segments: list[str | Token], pattern: str, text: str) -> None:
    if not text:
        return
    if any(char in text for char in '{}<>'):
        raise GenerationError(pattern, f'malformed token near {text!r}')
    segments.append(text)


def _parse_params(pattern: str, raw: str) -> dict[str, str]:
    params = {}
    for pair in filter(None, (part.strip() for part in raw.split(','))):
        name, separator, value = pair.partition(':')
        if not separator or not name.strip():
            raise GenerationError(pattern, f'malformed parameter {pair!r}')
        params[name.strip()] = value.strip()
    return params


@final
class _ClaimRegistry:
    """Process-wide locks and claimed names per ``(disk, directory)``.

    A claimed name has been handed out but may not be written yet,
    so the storage existence check alone cannot see it.
    """

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: dict[tuple[str, str], threading.Lock] = {}
        self._claimed: set[tuple[str, str]] = set()

    def lock_for(self, disk: str, directory: str) -> threading.Lock:
        with self._guard:
            return self._locks.setdefault((disk, directory), threading.Lock())

    def is_claimed(self, disk: str, path: str) -> bool:
        with self._guard:
            return (disk, path) in self._claimed

    def claim(self, disk: str, path: str) -> None:
        with self._guard:
            self._claimed.add((disk, path))

    def release(self, disk: str, path: str) -> None:
        with self._guard:
            self._claimed.discard((disk, path))


_claims: Final = _ClaimRegistry()


@final
class NameGenerator:
    """Generates storage paths that are free on a disk.

    Checking that a name is free and handing it out happens under a
    lock keyed by disk and target directory. The name stays claimed
    until ``release`` is called, which callers do once the bytes are
    written, so two concurrent generators never return the same path.
    """

    def __init__(
        self,
        backend: 'StorageBackend',
        *,
        attempts: int = DEFAULT_ATTEMPTS,
        clock: Callable[[], datetime] = timezone.now,
    ) -> None:
        """Initialize NameGenerator.

        Args:
            backend: Storage used for the existence check.
            attempts: Candidate names to try before giving up.
            clock: Source of the current time for date tokens.
        """
        self._backend = backend
        self._attempts = max(1, attempts)
        self._clock = clock

    def generate(
        self,
        pattern: str,
        context: Mapping[str, Any],
        directory: str = '',
        *,
        disk: str,
    ) -> str:
        """Render a pattern into a path that is free on the disk.

        Only random tokens are re-rendered between attempts. A pattern
        without random tokens gets a single attempt.

        Args:
            pattern: Name pattern.
            context: Values for mime and plain tokens.
            directory: Folder on the disk the name is placed in.
            disk: Storage alias the name must be free on.

        Returns:
            Claimed path relative to the disk root.

        Raises:
            GenerationError: If no free name was found.
        """
        segments = parse_pattern(pattern)
        now = self._clock()
        fixed = [
            segment if isinstance(segment, str) else _render_fixed(pattern, segment, context, now)
            for segment in segments
        ]
        has_random = any(
            isinstance(segment, Token) and segment.is_random
            for segment in segments
        )
        attempts = self._attempts if has_random else 1

        for attempt in range(1, attempts + 1):
            name = ''.join(
                _render_random(pattern, segment) if rendered is None else rendered
                for segment, rendered in zip(segments, fixed, strict=True)
            )
            path = _join_path(pattern, directory, name)
            if self._try_claim(disk, path):
                logger.debug('Generated name %s:%s (attempt %d)', disk, path, attempt)
                return path
            logger.info('Name collision on %s:%s (attempt %d)', disk, path, attempt)

        raise GenerationError(
            pattern,
            f'no free name after {attempts} attempt(s)',
            attempts=attempts,
        )

    def release(self, disk: str, path: str) -> None:
        """Release a claimed path.

        Args:
            disk: Storage alias the path was claimed on.
            path: Path returned by ``generate``.
        """
        _claims.release(disk, path)

    def _try_claim(self, disk: str, path: str) -> bool:
        with _claims.lock_for(disk, posixpath.dirname(path)):
            if _claims.is_claimed(disk, path):
                return False
            if self._backend.exists(disk, path):
                return False
            _claims.claim(disk, path)
            return True


def _render_fixed(
    pattern: str,
    token: Token,
    context: Mapping[str, Any],
    now: datetime,
) -> str | None:
    """Render a token that does not change between attempts.

    Returns ``None`` for random tokens, which are rendered per attempt.
    """
    if token.is_random:
        return None
    if token.kind == 'date':
        date_format = token.params.get('format', _DEFAULT_DATE_FORMAT)
        return dateformat.format(now, date_format)
    if token.kind == 'mime':
        return _render_mime(pattern, token, context)
    value = context.get(token.kind)
    if value is None or value == '':
        raise GenerationError(pattern, f'no value for {{{token.kind}}}')
    return str(value)


def _render_mime(pattern: str, token: Token, context: Mapping[str, Any]) -> str:
    mime = context.get('mime')
    if not mime:
        raise GenerationError(pattern, 'no value for {mime}')
    part = token.params.get('value')
    if part == 'group':
        return mime_group(mime)
    if part == 'subtype':
        return mime_subtype(mime)
    if part is None:
        return str(mime).lower().replace('/', '-')
    raise GenerationError(pattern, f'unknown mime value {part!r}')


def _render_random(pattern: str, token: str | Token) -> str:
    if isinstance(token, str):
        raise GenerationError(pattern, 'literal text has no rendering')
    raw_length = token.params.get('length', str(_DEFAULT_STRING_LENGTH))
    try:
        length = int(raw_length)
    except ValueError as error:
        raise GenerationError(pattern, f'invalid length {raw_length!r}') from error
    if length <= 0:
        raise GenerationError(pattern, f'invalid length {raw_length!r}')
    return get_random_string(length)


def _join_path(pattern: str, directory: str, name: str) -> str:
    path = posixpath.normpath(posixpath.join(directory.strip('/'), name))
    if path.startswith(('/', '..')) or '/../' in f'/{path}/':
        raise GenerationError(pattern, f'rendered path {path!r} leaves the disk')
    return path
