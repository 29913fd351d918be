"""Shared fixtures for files app tests."""

from io import BytesIO

import boto3
import pytest
from django.contrib.auth import get_user_model
from moto import mock_aws
from PIL import Image

User = get_user_model()


@pytest.fixture
def user(db):
    """Create test user.

    Returns:
        User instance for testing.
    """
    return User.objects.create_user(
        username='testuser',
        password='testpass123',
        email='test@example.com',
    )


@pytest.fixture
def other_user(db):
    """Create second test user for ownership tests.

    Returns:
        Second user instance.
    """
    return User.objects.create_user(
        username='otheruser',
        password='testpass123',
        email='other@example.com',
    )


@pytest.fixture
def mock_s3(settings):
    """Mock S3 service with the configured files bucket.

    Yields:
        boto3 S3 bucket resource backing the ``public`` disk.
    """
    with mock_aws():
        conn = boto3.resource('s3', region_name='us-east-1')
        bucket = conn.create_bucket(Bucket=settings.AWS_STORAGE_BUCKET_NAME)
        yield bucket


@pytest.fixture
def local_disk(settings, tmp_path):
    """Point the ``local`` disk at a temporary folder and make it default.

    Returns:
        Root folder of the local disk.
    """
    storages = {alias: dict(config) for alias, config in settings.STORAGES.items()}
    storages['local'] = {
        'BACKEND': 'django.core.files.storage.FileSystemStorage',
        'OPTIONS': {'location': str(tmp_path)},
    }
    settings.STORAGES = storages
    settings.FILES_DEFAULT_DISK = 'local'
    return tmp_path


def _stored_files(root):
    return sorted(
        str(path.relative_to(root))
        for path in root.rglob('*')
        if path.is_file()
    )


def _make_image(
    size: tuple[int, int] = (640, 480),
    image_format: str = 'PNG',
    mode: str = 'RGB',
) -> bytes:
    """Encode a solid-color test image."""
    color = (200, 40, 40, 255) if mode == 'RGBA' else (200, 40, 40)
    buffer = BytesIO()
    Image.new(mode, size, color[:len(mode)]).save(buffer, format=image_format)
    return buffer.getvalue()


@pytest.fixture
def png_bytes():
    """Encoded 640x480 PNG."""
    return _make_image()


@pytest.fixture
def jpeg_bytes():
    """Encoded 640x480 JPEG."""
    return _make_image(image_format='JPEG')


@pytest.fixture
def make_image():
    """Factory encoding solid-color test images."""
    return _make_image


@pytest.fixture
def disk_files():
    """Lister of every file path below a local disk root."""
    return _stored_files


@pytest.fixture
def low_pixel_limit(monkeypatch):
    """Make Pillow reject the fixture images as decompression bombs."""
    monkeypatch.setattr(Image, 'MAX_IMAGE_PIXELS', 1000)
