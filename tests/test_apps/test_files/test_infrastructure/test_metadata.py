"""Tests for metadata utilities."""

import pytest

from server.apps.files.infrastructure.metadata import (
    calculate_checksum,
    detect_mime_type,
    extension_for_mime,
    get_file_extension,
    mime_group,
    mime_subtype,
    title_from_filename,
)


def test_detect_mime_type():
    """Test MIME type detection from filename."""
    content = b'content'

    assert detect_mime_type(content, 'test.pdf') == 'application/pdf'
    assert detect_mime_type(content, 'test.txt') == 'text/plain'


def test_detect_mime_type_unknown():
    """Test MIME type detection for unknown extension."""
    result = detect_mime_type(b'content', 'test.unknown')
    assert result == 'application/octet-stream'


def test_detect_mime_type_sniffs_images(png_bytes, jpeg_bytes):
    """Test image content wins over a misleading filename."""
    assert detect_mime_type(png_bytes, 'photo.jpg') == 'image/png'
    assert detect_mime_type(jpeg_bytes, 'photo.txt') == 'image/jpeg'
    assert detect_mime_type(png_bytes, 'no-extension') == 'image/png'


def test_detect_mime_type_oversized_image(png_bytes, low_pixel_limit):
    """Test images too large to open are identified by their filename."""
    assert detect_mime_type(png_bytes, 'huge.png') == 'image/png'
    assert detect_mime_type(png_bytes, 'huge') == 'application/octet-stream'


def test_calculate_checksum():
    """Test SHA256 checksum calculation."""
    checksum = calculate_checksum(b'test content')

    # Should be 64 character hex string
    assert len(checksum) == 64
    assert all(c in '0123456789abcdef' for c in checksum)
    assert calculate_checksum(b'test content') == checksum
    assert calculate_checksum(b'other content') != checksum


@pytest.mark.parametrize(('mime', 'group', 'subtype'), [
    ('image/png', 'image', 'png'),
    ('Image/SVG+XML', 'image', 'svg+xml'),
    ('application/octet-stream', 'application', 'octet-stream'),
    ('text', 'text', ''),
])
def test_mime_parts(mime, group, subtype):
    """Test splitting a mime into group and subtype."""
    assert mime_group(mime) == group
    assert mime_subtype(mime) == subtype


def test_get_file_extension():
    """Test extension extraction from filename."""
    assert get_file_extension('test.pdf') == 'pdf'
    assert get_file_extension('archive.tar.GZ') == 'gz'
    assert get_file_extension('noextension') == ''


def test_extension_for_mime():
    """Test extension fallback from mime."""
    assert extension_for_mime('application/pdf') == 'pdf'
    assert extension_for_mime('application/x-unknown-thing') == 'bin'


def test_title_from_filename():
    """Test title strips folders and extension."""
    assert title_from_filename('holiday photo.jpg') == 'holiday photo'
    assert title_from_filename('notes') == 'notes'
