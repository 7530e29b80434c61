"""
Shared pytest fixtures for backstow tests.

This module provides fixtures for:
- Sample directories and configuration entities
- Mock fixtures for external services (S3, SSH)
- Working directory isolation
"""

import io
import logging
from unittest.mock import MagicMock, patch

import pytest
import boto3
from moto import mock_aws

from backstow.models import (
    Archive, Compression, Configuration, Credential, Database, DatabaseKind,
    Destination, DestinationKind, Directory, Encryption
)


@pytest.fixture(autouse=True)
def aws_credentials(monkeypatch):
    """Fake AWS credentials so boto3 never reaches a real account."""
    monkeypatch.setenv('AWS_ACCESS_KEY_ID', 'testing')
    monkeypatch.setenv('AWS_SECRET_ACCESS_KEY', 'testing')
    monkeypatch.setenv('AWS_SECURITY_TOKEN', 'testing')
    monkeypatch.setenv('AWS_SESSION_TOKEN', 'testing')
    monkeypatch.setenv('AWS_DEFAULT_REGION', 'eu-central-1')


@pytest.fixture
def work_dir(tmp_path, monkeypatch):
    """
    Change into an empty working directory for the duration of a test.

    Archives, dumps and intermediates are created relative to the cwd.
    """
    work = tmp_path / 'work'
    work.mkdir()
    monkeypatch.chdir(work)
    return work


@pytest.fixture
def source_dir(tmp_path):
    """
    Create a directory tree to archive.

    Creates:
    - data/app.conf
    - data/logs/today.log
    """
    data = tmp_path / 'src' / 'data'
    (data / 'logs').mkdir(parents=True)
    (data / 'app.conf').write_text('listen = 8080\n')
    (data / 'logs' / 'today.log').write_text('started\n')
    return data


@pytest.fixture
def mysql_database():
    return Database(
        id='mysql-local',
        kind=DatabaseKind.MYSQL,
        name='shop',
        credential=Credential(username='root', password='secret')
    )


@pytest.fixture
def encryption():
    return Encryption(id='default', cipher='aes-256-cbc', password='passphrase')


@pytest.fixture
def local_destination(tmp_path):
    return Destination(id='nas', kind=DestinationKind.DIRECTORY, path=str(tmp_path / 'backups'))


@pytest.fixture
def s3_destination():
    return Destination(
        id='cloud',
        kind=DestinationKind.S3,
        s3_bucket='test-bucket',
        s3_region='eu-central-1'
    )


@pytest.fixture
def sample_configuration(work_dir, source_dir, local_destination):
    """Configuration with one daily tar.bz2 archive of source_dir."""
    archive = Archive(
        name='daily-{date:year}-{date:month}-{date:day}',
        destination=local_destination,
        compression=Compression.TAR_BZ2,
        directories=(Directory(name=str(source_dir)),)
    )
    return Configuration(
        working_directory=str(work_dir),
        archives=(archive,),
        destinations=(local_destination,)
    )


@pytest.fixture
def mock_s3():
    """
    Mock AWS S3 service using moto.

    Creates a test bucket 'test-bucket' in eu-central-1.
    """
    with mock_aws():
        s3 = boto3.resource('s3', region_name='eu-central-1')
        s3.create_bucket(
            Bucket='test-bucket',
            CreateBucketConfiguration={'LocationConstraint': 'eu-central-1'}
        )
        yield s3


@pytest.fixture
def mock_ssh_client():
    """
    Mock paramiko SSHClient for SSH/SFTP testing.

    Yields the patched class; the SFTP session is
    ``mock_ssh_client.return_value.open_sftp.return_value``.
    """
    with patch('backstow.backup.storage.SSHClient') as mock_ssh:
        mock_sftp = MagicMock()
        mock_ssh.return_value.open_sftp.return_value = mock_sftp
        mock_ssh.return_value.connect.return_value = None
        yield mock_ssh


@pytest.fixture
def progress_stream():
    """Stream collecting progress lines."""
    return io.StringIO()


@pytest.fixture
def restore_logging():
    """Put the root logger back after code that calls configure_logging."""
    root = logging.getLogger()
    handlers = root.handlers[:]
    level = root.level
    yield
    for handler in root.handlers:
        if handler not in handlers:
            handler.close()
    root.handlers = handlers
    root.setLevel(level)
