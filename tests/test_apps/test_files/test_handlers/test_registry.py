"""Tests for the handler registry."""

import pytest
from django.core.exceptions import ImproperlyConfigured

from server.apps.files.handlers.base import Handler
from server.apps.files.handlers.image import ResizeHandler
from server.apps.files.handlers.properties import PropertiesHandler
from server.apps.files.handlers.registry import (
    HandlerRegistry,
    get_registry,
)


def _config(**image_overrides):
    image = {
        'mimes': ['image/png', 'image/jpeg'],
        'original': [
            {'name': 'properties', 'handler': PropertiesHandler, 'mandatory': True},
        ],
        'handlers': [
            {
                'name': 'resize',
                'handler': 'server.apps.files.handlers.image.ResizeHandler',
                'produces_bytes': True,
                'options': {'modes': {'small': [10, 10]}},
            },
        ],
    }
    image.update(image_overrides)
    return {'image': image, 'video': {'mimes': ['video']}}


def test_driver_for_mime():
    """Test exact mimes win, then groups, then the other driver."""
    registry = HandlerRegistry.from_config(_config())

    assert registry.driver_for_mime('image/png') == 'image'
    assert registry.driver_for_mime('IMAGE/JPEG') == 'image'
    assert registry.driver_for_mime('video/mp4') == 'video'
    assert registry.driver_for_mime('image/gif') == 'other'
    assert registry.driver_for_mime('application/pdf') == 'other'


def test_other_driver_always_exists():
    """Test a registry without drivers still resolves every mime."""
    registry = HandlerRegistry.from_config({})

    assert registry.drivers == ('other',)
    assert registry.original_chain('other') == ()
    assert registry.derivative_chain('other') == ()


def test_chains_keep_configured_order_and_options():
    """Test descriptors carry class, flags and options."""
    registry = HandlerRegistry.from_config(_config())

    (properties,) = registry.original_chain('image')
    (resize,) = registry.derivative_chain('image')

    assert properties.handler_class is PropertiesHandler
    assert properties.mandatory
    assert resize.handler_class is ResizeHandler
    assert resize.produces_bytes
    assert not resize.mandatory
    assert resize.options['modes'] == {'small': [10, 10]}
    assert isinstance(resize.build(), ResizeHandler)


def test_unknown_driver_raises_key_error():
    """Test asking for an unconfigured driver raises KeyError."""
    registry = HandlerRegistry.from_config(_config())

    with pytest.raises(KeyError):
        registry.get_driver('audio')


def test_duplicate_mime_is_rejected():
    """Test two drivers cannot claim one mime."""
    config = _config()
    config['video']['mimes'] = ['image/png']

    with pytest.raises(ImproperlyConfigured, match='image/png'):
        HandlerRegistry.from_config(config)


@pytest.mark.parametrize(('overrides', 'message'), [
    ({'original': [{'handler': PropertiesHandler}]}, 'without name'),
    ({'original': [{'name': 'x', 'handler': 'no.such.Handler'}]}, 'Cannot import'),
    ({'original': [{'name': 'x', 'handler': object}]}, 'not a Handler'),
    (
        {'handlers': [{'name': 'p', 'handler': PropertiesHandler, 'produces_bytes': True}]},
        'cannot produce bytes',
    ),
    (
        {'original': [{'name': 'r', 'handler': ResizeHandler, 'produces_bytes': True}]},
        'cannot produce bytes',
    ),
    (
        {'handlers': [{'name': 'r', 'handler': ResizeHandler, 'depends_on': ['later']}]},
        'not declared before',
    ),
    (
        {'handlers': [
            {'name': 'properties', 'handler': PropertiesHandler},
        ]},
        'twice',
    ),
])
def test_invalid_configuration(overrides, message):
    """Test misconfigured chains fail at load time."""
    with pytest.raises(ImproperlyConfigured, match=message):
        HandlerRegistry.from_config(_config(**overrides))


def test_can_produce_tracks_override():
    """Test only handlers overriding produce may produce bytes."""
    assert ResizeHandler.can_produce()
    assert not PropertiesHandler.can_produce()
    assert not Handler.can_produce()


def test_registry_from_settings_is_rebuilt_on_change(settings):
    """Test overriding FILES_HANDLERS rebuilds the shared registry."""
    default = get_registry()
    assert 'image' in default.drivers

    settings.FILES_HANDLERS = {'video': {'mimes': ['video']}}

    assert get_registry().drivers == ('video', 'other')
