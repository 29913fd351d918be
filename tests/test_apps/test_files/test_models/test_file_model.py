"""Tests for File model."""

import pytest
from django.core.exceptions import ValidationError
from django.db import IntegrityError, transaction

from server.apps.files.models import (
    DEFAULT_DISK,
    DEFAULT_HANDLER_MODE,
    DEFAULT_MIME,
    ORIGINAL_HANDLER,
    OTHER_DRIVER,
    File,
    FileSource,
)


def _create(author, **fields):
    defaults = {'title': 'photo', 'path': 'image/2026-01-31/abc.png'}
    return File.objects.create(author=author, **{**defaults, **fields})


@pytest.mark.django_db
def test_file_defaults(user):
    """Test a bare record gets the documented defaults."""
    file_instance = _create(user)

    assert file_instance.source == FileSource.USER_DEVICE
    assert file_instance.parent is None
    assert file_instance.size == 0
    assert file_instance.disk == DEFAULT_DISK
    assert file_instance.mime == DEFAULT_MIME
    assert file_instance.driver == OTHER_DRIVER
    assert file_instance.handler == ORIGINAL_HANDLER
    assert file_instance.handler_mode == DEFAULT_HANDLER_MODE
    assert file_instance.active is True
    assert file_instance.published is False
    assert file_instance.options == {}
    assert file_instance.is_original


@pytest.mark.django_db
def test_file_model_str(user):
    """Test File __str__ shows disk and path."""
    file_instance = _create(user, disk='local')

    assert str(file_instance) == 'local:image/2026-01-31/abc.png'


@pytest.mark.django_db
def test_file_path_helpers(user):
    """Test filename and folder extraction from path."""
    file_instance = _create(user)

    assert file_instance.get_filename() == 'abc.png'
    assert file_instance.get_folder_path() == 'image/2026-01-31'


@pytest.mark.django_db
def test_file_download_name(user):
    """Test download name combines title and extension."""
    with_extension = _create(user, title='holiday', extension='jpg')
    without_extension = _create(user, title='notes', path='other/notes')

    assert with_extension.get_download_name() == 'holiday.jpg'
    assert without_extension.get_download_name() == 'notes'


@pytest.mark.django_db
def test_get_option_uses_default_for_missing_key(user):
    """Test options are read with a default at every access."""
    file_instance = _create(user, options={'width': 640})

    assert file_instance.get_option('width') == 640
    assert file_instance.get_option('height') is None
    assert file_instance.get_option('height', 0) == 0


@pytest.mark.django_db
def test_modifications_relation(user):
    """Test derivatives are reachable from their original."""
    original = _create(user)
    derivative = _create(user, parent=original, handler='resize', handler_mode='small')

    assert list(original.modifications.all()) == [derivative]
    assert not derivative.is_original
    assert list(File.objects.originals()) == [original]
    assert list(File.objects.modifications_of(original.id)) == [derivative]


@pytest.mark.django_db
def test_published_queryset_skips_inactive(user):
    """Test inactive files are never servable, even when published."""
    visible = _create(user, published=True, slug='visible')
    _create(user, published=True, slug='hidden', active=False)
    _create(user, slug='draft')

    assert list(File.objects.published()) == [visible]


@pytest.mark.django_db
def test_published_slug_is_unique(user):
    """Test two published files cannot share a slug."""
    _create(user, published=True, slug='shared')

    with pytest.raises(IntegrityError), transaction.atomic():
        _create(user, published=True, slug='shared')


@pytest.mark.django_db
def test_unpublished_files_may_share_slug(user):
    """Test the slug constraint only binds published files."""
    _create(user, published=True, slug='shared')
    _create(user, slug='shared')
    _create(user, slug='shared')

    assert File.objects.filter(slug='shared').count() == 3


@pytest.mark.django_db
def test_deleting_original_cascades_to_derivatives(user):
    """Test derivatives are deleted with their original."""
    original = _create(user)
    _create(user, parent=original, handler='resize')
    _create(user, parent=original, handler='preview')

    original.delete()

    assert File.objects.count() == 0


@pytest.mark.django_db
def test_negative_size_is_rejected(user):
    """Test the database refuses negative sizes."""
    with pytest.raises(IntegrityError), transaction.atomic():
        _create(user, size=-1)


@pytest.mark.parametrize('extension', ['tar/gz', 'x' * 40, 'j pg', '.png'])
def test_extension_must_be_plain(extension):
    """Test extensions that would alter storage paths are invalid."""
    file_instance = File(title='photo', path='image/abc', extension=extension)

    with pytest.raises(ValidationError) as exc_info:
        file_instance.clean_fields(exclude={'author'})

    assert 'extension' in exc_info.value.message_dict
