"""Tests for sweep_orphans management command."""

from io import StringIO

import pytest
from django.core.management import call_command
from django.core.management.base import CommandError

from server.apps.files.infrastructure.storage import StorageBackend
from server.apps.files.models import File


@pytest.fixture
def stored(user, local_disk):
    """One referenced and two orphaned files on the local disk."""
    backend = StorageBackend()
    backend.write('local', 'image/kept.png', b'kept')
    backend.write('local', 'image/orphan.png', b'orphan')
    backend.write('local', 'text/2026/orphan.txt', b'orphan')
    return File.objects.create(
        author=user,
        title='kept',
        disk='local',
        path='image/kept.png',
    )


@pytest.mark.django_db
class TestSweepOrphansCommand:
    """Tests for sweep_orphans management command."""

    def test_sweep_deletes_unreferenced_files(self, stored, local_disk, disk_files):
        """Test only files without a record are deleted."""
        out = StringIO()
        call_command('sweep_orphans', '--disk', 'local', '--min-age-minutes', '0', stdout=out)

        assert disk_files(local_disk) == ['image/kept.png']
        assert 'Deleted 2 orphaned files, 0 failed' in out.getvalue()

    def test_sweep_dry_run_keeps_files(self, stored, local_disk, disk_files):
        """Test dry run only reports what would be deleted."""
        out = StringIO()
        call_command(
            'sweep_orphans',
            '--disk',
            'local',
            '--min-age-minutes',
            '0',
            '--dry-run',
            stdout=out,
        )

        assert len(disk_files(local_disk)) == 3
        assert 'Would delete: local:image/orphan.png' in out.getvalue()
        assert 'Would delete 2 orphaned files' in out.getvalue()

    def test_sweep_skips_recent_files(self, stored, local_disk, disk_files):
        """Test young files may belong to a running ingestion."""
        out = StringIO()
        call_command('sweep_orphans', '--disk', 'local', stdout=out)

        assert len(disk_files(local_disk)) == 3
        assert 'Deleted 0 orphaned files' in out.getvalue()

    def test_sweep_small_batches(self, stored, local_disk, disk_files):
        """Test batching does not change the outcome."""
        call_command(
            'sweep_orphans',
            '--disk',
            'local',
            '--min-age-minutes',
            '0',
            '--batch-size',
            '1',
            stdout=StringIO(),
        )

        assert disk_files(local_disk) == ['image/kept.png']

    def test_sweep_default_disk(self, stored, local_disk, disk_files):
        """Test the configured default disk is swept when none is given."""
        call_command('sweep_orphans', '--min-age-minutes', '0', stdout=StringIO())

        assert disk_files(local_disk) == ['image/kept.png']

    def test_sweep_leaves_foreign_folders_alone(self, stored, local_disk, disk_files):
        """Test files outside the swept prefixes are never deleted."""
        backend = StorageBackend()
        backend.write('local', 'backups/db-dump.sql', b'dump')
        backend.write('local', 'dump.sql', b'dump')

        call_command('sweep_orphans', '--disk', 'local', '--min-age-minutes', '0', stdout=StringIO())

        assert disk_files(local_disk) == ['backups/db-dump.sql', 'dump.sql', 'image/kept.png']

    def test_sweep_given_prefix_only(self, stored, local_disk, disk_files):
        """Test --prefix limits the sweep to the given folders."""
        out = StringIO()
        call_command(
            'sweep_orphans',
            '--disk',
            'local',
            '--prefix',
            '/text/',
            '--prefix',
            'text/2026',
            '--min-age-minutes',
            '0',
            stdout=out,
        )

        assert disk_files(local_disk) == ['image/kept.png', 'image/orphan.png']
        assert 'Deleted 1 orphaned files, 0 failed' in out.getvalue()

    def test_sweep_prefixes_from_settings(self, stored, local_disk, disk_files, settings):
        """Test FILES_SWEEP_PREFIXES sets the default folders."""
        settings.FILES_SWEEP_PREFIXES = ('image',)

        call_command('sweep_orphans', '--disk', 'local', '--min-age-minutes', '0', stdout=StringIO())

        assert disk_files(local_disk) == ['image/kept.png', 'text/2026/orphan.txt']

    def test_sweep_refuses_disk_root(self, stored, local_disk, disk_files):
        """Test an empty prefix cannot sweep the whole disk."""
        with pytest.raises(CommandError, match='disk root'):
            call_command('sweep_orphans', '--disk', 'local', '--prefix', '/', stdout=StringIO())

        assert len(disk_files(local_disk)) == 3

    def test_sweep_unknown_disk(self):
        """Test unknown disks are rejected."""
        with pytest.raises(CommandError, match='nowhere'):
            call_command('sweep_orphans', '--disk', 'nowhere', stdout=StringIO())

    def test_sweep_s3_disk(self, user, mock_s3):
        """Test orphans are found in the S3 bucket."""
        backend = StorageBackend()
        backend.write('public', 'image/kept.png', b'kept')
        backend.write('public', 'image/orphan.png', b'orphan')
        File.objects.create(author=user, title='kept', disk='public', path='image/kept.png')

        call_command(
            'sweep_orphans',
            '--disk',
            'public',
            '--min-age-minutes',
            '0',
            stdout=StringIO(),
        )

        assert [obj.key for obj in mock_s3.objects.all()] == ['image/kept.png']
