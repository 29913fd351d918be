"""Settings for production.

Values that must never take defaults are read without one, so a
missing variable stops the process at startup.
"""

from server.settings.components import config, optional_seconds

DEBUG = False

SECRET_KEY = config('DJANGO_SECRET_KEY')

ALLOWED_HOSTS = config(
    'DOMAIN_NAMES',
    cast=lambda names: [name.strip() for name in names.split(',')],
)

FILES_DERIVATIVE_TIMEOUT = config(
    'FILES_DERIVATIVE_TIMEOUT',
    cast=optional_seconds,
    default='120',
)
