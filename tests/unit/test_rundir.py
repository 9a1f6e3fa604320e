"""
Unit tests for run directories (nightbackup/backup/rundir.py).
"""

from datetime import date
from unittest.mock import patch

import pytest
from freezegun import freeze_time

from nightbackup.backup.rundir import (
    RunDirectoryError,
    RunDirectoryManager,
    RunExistsError,
    date_from_name,
    make_date_key,
    parse_date_key
)


class TestDateKeys:
    """Test date key formatting and parsing."""

    def test_make_date_key(self):
        assert make_date_key(date(2023, 11, 6)) == '231106mon'
        assert make_date_key(date(2024, 2, 29)) == '240229thu'

    def test_parse_date_key(self):
        assert parse_date_key('231106mon') == date(2023, 11, 6)

    @pytest.mark.parametrize('key', ['231106tue', '231306mon', '23110mon', 'backup', ''])
    def test_parse_invalid_date_key(self, key):
        """Malformed keys and wrong weekdays are rejected."""
        assert parse_date_key(key) is None

    def test_date_from_name_trailing_key(self):
        assert date_from_name('231106mon') == date(2023, 11, 6)
        assert date_from_name('old-231106mon') == date(2023, 11, 6)

    def test_date_from_name_no_key(self):
        assert date_from_name('lost+found') is None
        assert date_from_name('231106mon.bak') is None


class TestRunDirectoryManager:
    """Test acquiring today's run directory."""

    def test_acquire_creates_directory(self, tmp_path):
        """The directory (and missing parents) are created."""
        root = tmp_path / 'deep' / 'backups'
        manager = RunDirectoryManager(str(root), today=date(2023, 11, 6))

        run_dir = manager.acquire_today()

        assert run_dir.path == root / '231106mon'
        assert run_dir.path.is_dir()
        assert run_dir.date_key == '231106mon'

    @freeze_time('2023-11-07 02:30:00')
    def test_defaults_to_current_date(self, tmp_path):
        manager = RunDirectoryManager(str(tmp_path))

        assert manager.date_key == '231107tue'

    def test_existing_run_without_force(self, tmp_path):
        """A second run on the same day is refused and changes nothing."""
        manager = RunDirectoryManager(str(tmp_path), today=date(2023, 11, 6))
        run_dir = manager.acquire_today()
        artifact = run_dir.path / 'etc.tgz.enc'
        artifact.write_bytes(b'first run')

        with pytest.raises(RunExistsError, match='231106mon'):
            manager.acquire_today()

        assert artifact.read_bytes() == b'first run'

    def test_existing_run_with_force(self, tmp_path):
        """Forcing replaces the earlier run entirely."""
        manager = RunDirectoryManager(str(tmp_path), today=date(2023, 11, 6))
        first = manager.acquire_today()
        (first.path / 'etc.tgz.enc').write_bytes(b'first run')
        (first.path / 'nested').mkdir()

        second = manager.acquire_today(force=True)

        assert second.path.is_dir()
        assert list(second.path.iterdir()) == []

    def test_root_under_regular_file(self, tmp_path):
        blocker = tmp_path / 'blocker'
        blocker.write_text('not a directory')
        manager = RunDirectoryManager(str(blocker / 'sub'), today=date(2023, 11, 6))

        with pytest.raises(RunDirectoryError, match='Failed to create run directory'):
            manager.acquire_today()

    def test_forced_removal_failure(self, tmp_path):
        manager = RunDirectoryManager(str(tmp_path), today=date(2023, 11, 6))
        manager.acquire_today()

        with patch('nightbackup.backup.rundir.shutil.rmtree', side_effect=OSError('busy')):
            with pytest.raises(RunDirectoryError, match='Failed to remove'):
                manager.acquire_today(force=True)

        assert (tmp_path / '231106mon').is_dir()

    def test_artifacts_lists_files_sorted(self, tmp_path):
        run_dir = RunDirectoryManager(str(tmp_path), today=date(2023, 11, 6)).acquire_today()
        (run_dir.path / 'b.tgz.enc').write_bytes(b'b')
        (run_dir.path / 'a.tgz.enc').write_bytes(b'a')
        (run_dir.path / 'subdir').mkdir()

        assert [p.name for p in run_dir.artifacts()] == ['a.tgz.enc', 'b.tgz.enc']

    def test_artifact_path(self, tmp_path):
        run_dir = RunDirectoryManager(str(tmp_path), today=date(2023, 11, 6)).acquire_today()

        assert run_dir.artifact_path('etc', '.tgz.enc') == run_dir.path / 'etc.tgz.enc'
