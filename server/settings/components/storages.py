"""Django storage configuration for the file disks.

Every ``STORAGES`` alias is a *disk* a File record may live on:

- ``public`` is S3-compatible storage (MinIO locally, any S3 API in
  production) and is the default disk for ingested files
- ``local`` keeps bytes on the local filesystem under ``MEDIA_ROOT``
"""

from typing import Any, Final

from server.settings.components import BASE_DIR, config

AWS_STORAGE_BUCKET_NAME: Final = config(
    'AWS_STORAGE_BUCKET_NAME',
    default='files',
)

_S3_OPTIONS: Final[dict[str, Any]] = {
    'bucket_name': AWS_STORAGE_BUCKET_NAME,
    'access_key': config('AWS_ACCESS_KEY_ID', default='testing'),
    'secret_key': config('AWS_SECRET_ACCESS_KEY', default='testing'),
    'endpoint_url': config(
        'AWS_S3_ENDPOINT_URL',
        default=None,
    ),
    'region_name': config(
        'AWS_S3_REGION_NAME',
        default='us-east-1',
    ),
    'file_overwrite': False,  # Never replace bytes of another record
    'default_acl': None,  # Inherit bucket ACL
}

# Storage configuration dictionary
# Uses S3-compatible storage for files, local storage for static files
STORAGES: Final[dict[str, dict[str, Any]]] = {
    'default': {
        'BACKEND': 'storages.backends.s3.S3Storage',
        'OPTIONS': _S3_OPTIONS,
    },
    'public': {
        'BACKEND': 'server.apps.files.infrastructure.storage.FileStorage',
        'OPTIONS': _S3_OPTIONS,
    },
    'local': {
        'BACKEND': 'django.core.files.storage.FileSystemStorage',
        'OPTIONS': {
            'location': config(
                'FILES_LOCAL_ROOT',
                default=str(BASE_DIR.joinpath('media', 'files')),
            ),
        },
    },
    'staticfiles': {
        # Keep static files separate from user files
        'BACKEND': 'django.contrib.staticfiles.storage.StaticFilesStorage',
    },
}
