"""Main settings file composed with django-split-settings.

Components are included in order, then the environment-specific file
selected by the ``DJANGO_ENV`` variable (``development`` by default).
An optional ``environments/local.py`` may override anything for a
single machine and is never committed.
"""

from os import environ

from split_settings.tools import include, optional

environ.setdefault('DJANGO_ENV', 'development')
_ENV = environ['DJANGO_ENV']

_base_settings = (
    'components/common.py',
    'components/logging.py',
    'components/storages.py',
    'components/files.py',
    # Select the right env:
    'environments/{0}.py'.format(_ENV),
    # Optionally override some settings:
    optional('environments/local.py'),
)

include(*_base_settings)
