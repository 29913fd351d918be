"""Settings for the file derivation pipeline.

``FILES_HANDLERS`` maps a driver name to the mimes it accepts, an
optional name pattern and two ordered handler chains:

- ``original`` runs on the stored original and extracts its properties
- ``handlers`` runs afterwards and may produce derivative files

A mime entry is either a full mime (``image/png``) or a mime group
(``image``). Files no driver claims fall back to the ``other`` driver.
The mapping is read once per process and never mutated.
"""

from typing import Any, Final

from decouple import Csv

from server.settings.components import config, optional_seconds

FILES_DEFAULT_DISK: Final = config('FILES_DEFAULT_DISK', default='public')

FILES_NAME_PATTERN: Final = config(
    'FILES_NAME_PATTERN',
    default=(
        '{mime<value:group>}/{date<format:Y-m-d>}/'
        '{string<length:25>}.{extension}'
    ),
)

# Attempts to find a free name before giving up
FILES_NAME_ATTEMPTS: Final = config(
    'FILES_NAME_ATTEMPTS',
    cast=int,
    default=10,
)

# Seconds the derivative stage may run, empty or ``none`` disables the deadline
FILES_DERIVATIVE_TIMEOUT = config(
    'FILES_DERIVATIVE_TIMEOUT',
    cast=optional_seconds,
    default='60',
)

FILES_MAX_WORKERS: Final = config('FILES_MAX_WORKERS', cast=int, default=4)

# Top-level folders sweep_orphans may delete from. The default name
# pattern starts every path with a mime group.
FILES_SWEEP_PREFIXES: Final = config(
    'FILES_SWEEP_PREFIXES',
    cast=Csv(post_process=tuple),
    default='application,audio,font,image,message,model,multipart,text,video',
)

_HANDLERS_MODULE: Final = 'server.apps.files.handlers'

_PROPERTIES_HANDLER: Final[dict[str, Any]] = {
    'name': 'properties',
    'handler': f'{_HANDLERS_MODULE}.properties.PropertiesHandler',
    'mandatory': True,
    'options': {'checksum': True},
}

FILES_HANDLERS: Final[dict[str, dict[str, Any]]] = {
    'image': {
        'mimes': ['image/jpeg', 'image/png', 'image/gif', 'image/webp'],
        'original': [
            _PROPERTIES_HANDLER,
            {
                'name': 'dimensions',
                'handler': f'{_HANDLERS_MODULE}.image.ImagePropertiesHandler',
                'mandatory': True,
            },
        ],
        'handlers': [
            {
                'name': 'resize',
                'handler': f'{_HANDLERS_MODULE}.image.ResizeHandler',
                'produces_bytes': True,
                'options': {
                    'modes': {
                        'small': [320, 320],
                        'normal': [1280, 1280],
                    },
                    'quality': 85,
                },
            },
            {
                'name': 'thumbnail',
                'handler': f'{_HANDLERS_MODULE}.image.ThumbnailHandler',
                'produces_bytes': True,
                'options': {
                    'modes': {
                        'thumbnail-small': [150, 150],
                    },
                    'quality': 80,
                },
            },
            {
                'name': 'preview',
                'handler': f'{_HANDLERS_MODULE}.image.PreviewHandler',
                'produces_bytes': True,
                'options': {
                    'size': [800, 800],
                    'quality': 70,
                },
            },
        ],
    },
    'other': {
        'mimes': [],
        'original': [_PROPERTIES_HANDLER],
        'handlers': [],
    },
}
