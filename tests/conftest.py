"""
Shared pytest fixtures for nightbackup tests.

This module provides fixtures for:
- Settings pointing at temporary directories
- Encryption key files and a settings-secret cipher
- Mocked S3 via moto
- Temporary source files and dated run directories
"""

from datetime import date, timedelta

import pytest
import boto3
from moto import mock_aws

from nightbackup.config import Settings
from nightbackup.backup.rundir import make_date_key
from nightbackup.backup.storage import S3Storage
from nightbackup.utils.crypto import SecretCipher


TEST_HOST = 'host.example.com'


@pytest.fixture
def key_file(tmp_path):
    """Encryption key file holding a test passphrase."""
    path = tmp_path / 'backup.key'
    path.write_text('test_passphrase_123\n')
    return path


@pytest.fixture
def backup_root(tmp_path):
    root = tmp_path / 'backups'
    root.mkdir()
    return root


@pytest.fixture
def make_settings(tmp_path, backup_root):
    """
    Build Settings for tests.

    Pipelines use `gzip -c` and `cat` so no encryption tool is needed, and
    the remote store is off unless a test turns it on.
    """
    def _make(**overrides):
        values = {
            'host': TEST_HOST,
            'config_root': str(tmp_path / 'etc'),
            'backup_root': str(backup_root),
            'aws_access_key_id': None,
            'aws_secret_access_key': None,
            'aws_region': 'us-east-1',
            'compress_command': ('gzip', '-c'),
            'encrypt_command': ('cat',),
        }
        values.update(overrides)
        return Settings(**values)

    return _make


@pytest.fixture
def settings(make_settings):
    return make_settings()


@pytest.fixture
def remote_settings(make_settings):
    """Settings with (fake) S3 credentials."""
    return make_settings(
        aws_access_key_id='test_access_key',
        aws_secret_access_key='test_secret_key'
    )


@pytest.fixture(scope='function')
def cipher():
    """
    SecretCipher for the test passphrase with a fresh salt.

    Passphrase: test_passphrase_123
    """
    return SecretCipher('test_passphrase_123')


@pytest.fixture
def mock_s3():
    """
    Mock AWS S3 service using moto.

    Yields a boto3 S3 resource; no buckets exist initially.
    """
    with mock_aws():
        yield boto3.resource('s3', region_name='us-east-1')


@pytest.fixture
def s3_storage(mock_s3):
    return S3Storage(
        access_key='test_access_key',
        secret_key='test_secret_key',
        region='us-east-1'
    )


@pytest.fixture
def temp_files(tmp_path):
    """
    Create temporary test files and directories.

    Creates:
    - data/test_file1.txt
    - data/test_file2.log
    - data/nested/test_file3.txt
    - data/cache/junk.tmp (excluded in tests)
    - single.txt (10 bytes)
    """
    data = tmp_path / 'data'
    data.mkdir()
    (data / 'test_file1.txt').write_text('Test content 1')
    (data / 'test_file2.log').write_text('Test log content')

    nested_dir = data / 'nested'
    nested_dir.mkdir()
    (nested_dir / 'test_file3.txt').write_text('Nested test content')

    cache_dir = data / 'cache'
    cache_dir.mkdir()
    (cache_dir / 'junk.tmp').write_text('junk')

    (tmp_path / 'single.txt').write_bytes(b'0123456789')

    return tmp_path


@pytest.fixture
def make_run_dirs(backup_root):
    """Create run directories dated the given number of days before `today`."""
    def _make(today: date, ages):
        names = []
        for age in ages:
            name = make_date_key(today - timedelta(days=age))
            (backup_root / name).mkdir(exist_ok=True)
            (backup_root / name / 'item.tgz.enc').write_bytes(b'data')
            names.append(name)
        return names

    return _make
