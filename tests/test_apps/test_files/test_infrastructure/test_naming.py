"""Tests for unique storage name generation."""

import re
import threading
from concurrent.futures import ThreadPoolExecutor
from datetime import UTC, datetime
from unittest import mock

import pytest

from server.apps.files.exceptions import GenerationError
from server.apps.files.infrastructure import naming
from server.apps.files.infrastructure.naming import (
    NameGenerator,
    Token,
    parse_pattern,
)

_CONTEXT = {'mime': 'image/png', 'extension': 'png', 'handler': 'resize'}
_FIXED_NOW = datetime(2026, 1, 31, 12, 30, tzinfo=UTC)


@pytest.fixture(autouse=True)
def fresh_claims(monkeypatch):
    """Isolate claimed names between tests."""
    monkeypatch.setattr(naming, '_claims', naming._ClaimRegistry())


class FakeBackend:
    """Existence checks against an in-memory set of paths."""

    def __init__(self, existing=()):
        self.existing = set(existing)
        self.lock = threading.Lock()

    def exists(self, disk, path):
        with self.lock:
            return (disk, path) in self.existing

    def add(self, disk, path):
        with self.lock:
            self.existing.add((disk, path))


def _generator(backend=None, **kwargs):
    return NameGenerator(backend or FakeBackend(), clock=lambda: _FIXED_NOW, **kwargs)


def test_parse_pattern_splits_tokens():
    """Test literal text and tokens come out in order."""
    segments = parse_pattern('{mime<value:group>}/{string<length:8>}.{extension}')

    assert segments == (
        Token(kind='mime', params={'value': 'group'}),
        '/',
        Token(kind='string', params={'length': '8'}),
        '.',
        Token(kind='extension', params={}),
    )
    assert segments[2].is_random
    assert not segments[0].is_random


@pytest.mark.parametrize('pattern', [
    '',
    'files/{string<length:8>',
    'files/{string<length>}',
    'files/}{',
])
def test_parse_pattern_rejects_malformed(pattern):
    """Test malformed patterns raise GenerationError."""
    with pytest.raises(GenerationError):
        parse_pattern(pattern)


def test_generate_scenario_pattern():
    """Test group, random segment and extension render as documented."""
    generator = _generator()

    path = generator.generate(
        '{mime<value:group>}/{string<length:8>}.{extension}',
        _CONTEXT,
        disk='public',
    )

    assert re.fullmatch(r'image/[A-Za-z0-9]{8}\.png', path)


def test_generate_date_and_mime_variants():
    """Test date formats and mime value variants."""
    generator = _generator()

    path = generator.generate(
        '{date<format:Y/m/d>}/{mime<value:subtype>}-{mime}-{handler}.{extension}',
        _CONTEXT,
        disk='public',
    )

    assert path == '2026/01/31/png-image-png-resize.png'


def test_generate_places_name_in_directory():
    """Test the directory argument prefixes the rendered name."""
    path = _generator().generate('{handler}.{extension}', _CONTEXT, 'derived/', disk='public')

    assert path == 'derived/resize.png'


def test_generate_missing_context_value():
    """Test a token without a context value raises."""
    with pytest.raises(GenerationError, match='driver'):
        _generator().generate('{driver}/{string}', _CONTEXT, disk='public')


def test_generate_rejects_invalid_length():
    """Test a non-numeric random length raises."""
    with pytest.raises(GenerationError, match='length'):
        _generator().generate('{string<length:abc>}', _CONTEXT, disk='public')


def test_generate_rejects_escaping_path():
    """Test rendered names never leave the disk root."""
    context = {**_CONTEXT, 'handler': '..'}

    with pytest.raises(GenerationError, match='leaves the disk'):
        _generator().generate('{handler}/{string}', context, disk='public')


def test_generate_retries_random_tokens_on_collision():
    """Test only the random segment changes between attempts."""
    backend = FakeBackend(existing=[('public', 'image/AAAAAAAA.png')])
    generator = _generator(backend)

    with mock.patch(
        'server.apps.files.infrastructure.naming.get_random_string',
        side_effect=['AAAAAAAA', 'BBBBBBBB'],
    ) as random_string:
        path = generator.generate(
            '{mime<value:group>}/{string<length:8>}.{extension}',
            _CONTEXT,
            disk='public',
        )

    assert path == 'image/BBBBBBBB.png'
    assert random_string.call_count == 2


def test_generate_gives_up_after_attempts():
    """Test exhaustion raises GenerationError with the attempt count."""
    backend = FakeBackend(existing=[('public', 'image/AAAAAAAA.png')])
    generator = _generator(backend, attempts=3)

    with mock.patch(
        'server.apps.files.infrastructure.naming.get_random_string',
        return_value='AAAAAAAA',
    ):
        with pytest.raises(GenerationError) as exc_info:
            generator.generate('image/{string<length:8>}.png', _CONTEXT, disk='public')

    assert exc_info.value.attempts == 3


def test_generate_without_random_tokens_tries_once():
    """Test a fixed pattern that is taken fails immediately."""
    backend = FakeBackend(existing=[('public', 'image/resize.png')])

    with pytest.raises(GenerationError) as exc_info:
        _generator(backend).generate('image/{handler}.png', _CONTEXT, disk='public')

    assert exc_info.value.attempts == 1


def test_claimed_name_is_not_handed_out_twice():
    """Test a claimed but unwritten name counts as taken until released."""
    generator = _generator()

    first = generator.generate('image/{handler}.png', _CONTEXT, disk='public')
    with pytest.raises(GenerationError):
        generator.generate('image/{handler}.png', _CONTEXT, disk='public')

    generator.release('public', first)
    assert generator.generate('image/{handler}.png', _CONTEXT, disk='public') == first
    generator.release('public', first)


def test_same_name_on_other_disk_is_free():
    """Test claims are scoped to one disk."""
    generator = _generator()

    first = generator.generate('image/{handler}.png', _CONTEXT, disk='public')
    second = generator.generate('image/{handler}.png', _CONTEXT, disk='local')

    assert first == second
    generator.release('public', first)
    generator.release('local', second)


def test_concurrent_generation_never_collides():
    """Test concurrent generators in one directory get distinct names."""
    backend = FakeBackend()
    generator = _generator(backend, attempts=50)
    # One random character forces retries between 40 names
    pattern = 'image/{string<length:1>}.png'

    def claim_and_write(_):
        path = generator.generate(pattern, _CONTEXT, disk='public')
        backend.add('public', path)
        generator.release('public', path)
        return path

    with ThreadPoolExecutor(max_workers=8) as executor:
        paths = list(executor.map(claim_and_write, range(40)))

    assert len(set(paths)) == len(paths)
