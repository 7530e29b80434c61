"""
Unit tests for storage handlers (backstow/backup/storage.py).

Tests LocalStorage, S3Storage and SSHStorage for storing backup archives
and fetching the newest one back.
"""

import stat
from datetime import datetime, timezone
from unittest.mock import patch

import paramiko
import pytest
from botocore.exceptions import ResponseStreamingError

from backstow.backup.storage import (
    LocalStorage,
    S3Storage,
    SSHStorage,
    create_storage,
    parse_timestamp
)
from backstow.errors import StorageError, TransferError
from backstow.models import Archive, Compression, Destination, DestinationKind, Encryption


def make_archive(name, compression=Compression.TAR, encryption=None, destination=None):
    return Archive(
        name=name,
        destination=destination or Destination(id='d', kind=DestinationKind.DIRECTORY),
        compression=compression,
        encryption=encryption
    )


def sftp_entry(filename, mtime, size=4, mode=stat.S_IFREG | 0o644):
    attributes = paramiko.SFTPAttributes()
    attributes.filename = filename
    attributes.st_mtime = mtime
    attributes.st_size = size
    attributes.st_mode = mode
    return attributes


class TestLocalStorage:
    """Test LocalStorage for moving archives into a directory."""

    def test_store_moves_files(self, work_dir, tmp_path):
        (work_dir / 'daily.tar.bz2').write_bytes(b'archive')
        storage = LocalStorage(str(tmp_path / 'backups'))

        stored = storage.store(['daily.tar.bz2'])

        assert stored == [str(tmp_path / 'backups' / 'daily.tar.bz2')]
        assert (tmp_path / 'backups' / 'daily.tar.bz2').read_bytes() == b'archive'
        assert not (work_dir / 'daily.tar.bz2').exists()

    def test_store_falls_back_to_copy(self, work_dir, tmp_path):
        (work_dir / 'daily.tar').write_bytes(b'archive')
        storage = LocalStorage(str(tmp_path / 'backups'))

        with patch('backstow.backup.storage.os.rename', side_effect=OSError('cross-device link')):
            storage.store(['daily.tar'])

        assert (tmp_path / 'backups' / 'daily.tar').read_bytes() == b'archive'
        assert not (work_dir / 'daily.tar').exists()

    def test_store_rename_and_copy_failure_raises(self, work_dir, tmp_path):
        storage = LocalStorage(str(tmp_path / 'backups'))

        with pytest.raises(StorageError, match='Unable to rename and copy'):
            storage.store(['missing.tar'])

    def test_store_unusable_directory_raises(self, work_dir, tmp_path):
        (tmp_path / 'blocker').write_text('a file, not a directory')
        storage = LocalStorage(str(tmp_path / 'blocker' / 'backups'))

        with pytest.raises(StorageError, match='Unable to create archive path'):
            storage.store([])

    def test_fetch_latest_weekday_candidates(self, tmp_path):
        backups = tmp_path / 'backups'
        backups.mkdir()
        for name in ('weekly-Mon.tar', 'weekly-Tue.tar', 'weekly-Sat.tar'):
            (backups / name).write_bytes(b'x')
        created = {'weekly-Mon.tar': 100.0, 'weekly-Tue.tar': 300.0, 'weekly-Sat.tar': 200.0}

        def creation_time(path):
            name = path.rsplit('/', 1)[-1]
            if name not in created:
                raise FileNotFoundError(path)
            return created[name]

        with patch('backstow.backup.storage._creation_time', side_effect=creation_time):
            latest = LocalStorage(str(backups)).fetch_latest(make_archive('weekly-{date:weekday}'))

        assert latest == str(backups / 'weekly-Tue')

    def test_fetch_latest_uses_full_suffix_chain(self, tmp_path):
        backups = tmp_path / 'backups'
        backups.mkdir()
        (backups / 'nightly.tar.bz2').write_bytes(b'x')
        (backups / 'nightly.tar.bz2.enc').write_bytes(b'x')
        archive = make_archive(
            'nightly',
            compression=Compression.TAR_BZ2,
            encryption=Encryption(id='e', cipher='aes-256-cbc', password='p')
        )

        latest = LocalStorage(str(backups)).fetch_latest(archive)

        assert latest == str(backups / 'nightly')

    def test_fetch_latest_nothing_found(self, tmp_path):
        latest = LocalStorage(str(tmp_path)).fetch_latest(make_archive('weekly-{date:weekday}'))

        assert latest is None


class TestS3Storage:
    """Test S3Storage for AWS S3 operations."""

    def test_upload_uses_file_name_as_key(self, mock_s3, work_dir):
        (work_dir / 'daily-2024-03-07.tar.bz2').write_bytes(b'test data' * 100)
        storage = S3Storage(bucket_name='test-bucket', region='eu-central-1')

        key = storage.upload('daily-2024-03-07.tar.bz2')

        assert key == 'daily-2024-03-07.tar.bz2'
        head = mock_s3.meta.client.head_object(Bucket='test-bucket', Key=key)
        assert head['ContentLength'] == 900
        assert head['ServerSideEncryption'] == 'AES256'

    def test_store_removes_uploaded_files(self, mock_s3, work_dir):
        (work_dir / 'a.tar').write_bytes(b'a')
        (work_dir / 'b.tar').write_bytes(b'b')
        storage = S3Storage(bucket_name='test-bucket')

        uploaded = storage.store(['a.tar', 'b.tar'])

        assert uploaded == ['a.tar', 'b.tar']
        assert not (work_dir / 'a.tar').exists()
        assert not (work_dir / 'b.tar').exists()

    def test_store_failure_keeps_local_file(self, mock_s3, work_dir):
        (work_dir / 'a.tar').write_bytes(b'a')
        storage = S3Storage(bucket_name='no-such-bucket')

        uploaded = storage.store(['a.tar'])

        assert uploaded == []
        assert (work_dir / 'a.tar').exists()

    def test_store_continues_after_failure(self, mock_s3, work_dir):
        (work_dir / 'b.tar').write_bytes(b'b')
        storage = S3Storage(bucket_name='test-bucket')

        uploaded = storage.store(['missing.tar', 'b.tar'])

        assert uploaded == ['b.tar']

    def test_list_objects_with_prefix(self, mock_s3):
        client = mock_s3.meta.client
        client.put_object(Bucket='test-bucket', Key='daily-1.tar', Body=b'1')
        client.put_object(Bucket='test-bucket', Key='weekly-1.tar', Body=b'2')

        objects = S3Storage(bucket_name='test-bucket').list_objects('daily-')

        assert [obj['Key'] for obj in objects] == ['daily-1.tar']
        assert objects[0]['Size'] == 1

    def test_fetch_latest_downloads_newest(self, mock_s3, tmp_path, progress_stream):
        client = mock_s3.meta.client
        client.put_object(Bucket='test-bucket', Key='daily-2024-03-06.tar.bz2', Body=b'old')
        client.put_object(Bucket='test-bucket', Key='daily-2024-03-07.tar.bz2', Body=b'new')
        storage = S3Storage(bucket_name='test-bucket', download_dir=str(tmp_path),
                            progress_stream=progress_stream)
        listing = [
            {'Key': 'daily-2024-03-06.tar.bz2', 'LastModified': '2024-03-06T02:00:00.000Z', 'Size': 3},
            {'Key': 'daily-2024-03-07.tar.bz2', 'LastModified': '2024-03-07T02:00:00Z', 'Size': 3},
            {'Key': 'daily-broken.tar.bz2', 'LastModified': 'yesterday', 'Size': 3},
        ]

        with patch.object(storage, 'list_objects', return_value=listing) as mock_list:
            latest = storage.fetch_latest(
                make_archive('daily-{date:year}-{date:month}-{date:day}', Compression.TAR_BZ2)
            )

        mock_list.assert_called_once_with('daily-')
        assert latest == str(tmp_path / 'daily-2024-03-07')
        assert (tmp_path / 'daily-2024-03-07.tar.bz2').read_bytes() == b'new'
        assert 'downloading...' in progress_stream.getvalue()

    def test_fetch_latest_tie_takes_first(self, mock_s3, tmp_path, progress_stream):
        client = mock_s3.meta.client
        client.put_object(Bucket='test-bucket', Key='a-1.tar', Body=b'1')
        client.put_object(Bucket='test-bucket', Key='a-2.tar', Body=b'2')
        storage = S3Storage(bucket_name='test-bucket', download_dir=str(tmp_path),
                            progress_stream=progress_stream)
        same = datetime(2024, 3, 7, tzinfo=timezone.utc)
        listing = [
            {'Key': 'a-1.tar', 'LastModified': same, 'Size': 1},
            {'Key': 'a-2.tar', 'LastModified': same, 'Size': 1},
        ]

        with patch.object(storage, 'list_objects', return_value=listing):
            latest = storage.fetch_latest(make_archive('a-{date:day}'))

        assert latest == str(tmp_path / 'a-1')

    def test_interrupted_download_removes_partial_file(self, mock_s3, tmp_path):
        mock_s3.meta.client.put_object(Bucket='test-bucket', Key='weekly-Mon.tar', Body=b'archive')
        storage = S3Storage(bucket_name='test-bucket', download_dir=str(tmp_path))

        def interrupted(body, chunk_size=1024):
            yield b'partial'
            raise ResponseStreamingError(error='connection reset')

        with patch('botocore.response.StreamingBody.iter_chunks', interrupted):
            with pytest.raises(TransferError, match='S3 download of weekly-Mon.tar'):
                storage.download('weekly-Mon.tar', str(tmp_path / 'weekly-Mon.tar'))

        assert not (tmp_path / 'weekly-Mon.tar').exists()

    def test_fetch_latest_empty_bucket(self, mock_s3, tmp_path):
        storage = S3Storage(bucket_name='test-bucket', download_dir=str(tmp_path))

        assert storage.fetch_latest(make_archive('daily-{date:day}')) is None


class TestParseTimestamp:
    """Test object timestamp normalisation."""

    def test_fractional_seconds(self):
        assert parse_timestamp('2024-03-07T02:00:00.123Z') == datetime(
            2024, 3, 7, 2, 0, 0, 123000, tzinfo=timezone.utc
        )

    def test_whole_seconds(self):
        assert parse_timestamp('2024-03-07T02:00:00Z') == datetime(
            2024, 3, 7, 2, tzinfo=timezone.utc
        )

    def test_aware_datetime_kept(self):
        value = datetime(2024, 3, 7, tzinfo=timezone.utc)
        assert parse_timestamp(value) == value

    def test_unparsable(self):
        assert parse_timestamp('07.03.2024') is None
        assert parse_timestamp(None) is None


class TestSSHStorage:
    """Test SSHStorage for SFTP transfers."""

    def test_store_uploads_and_verifies(self, mock_ssh_client, work_dir):
        (work_dir / 'daily.tar.bz2').write_bytes(b'x' * 100)
        mock_sftp = mock_ssh_client.return_value.open_sftp.return_value
        mock_sftp.stat.return_value.st_size = 100
        remote_file = mock_sftp.open.return_value.__enter__.return_value

        storage = SSHStorage(server='backup.example.com', username='backup',
                             password='secret', remote_path='archives')
        uploaded = storage.store(['daily.tar.bz2'])

        connect_kwargs = mock_ssh_client.return_value.connect.call_args[1]
        assert connect_kwargs['hostname'] == 'backup.example.com'
        assert connect_kwargs['username'] == 'backup'
        assert connect_kwargs['password'] == 'secret'
        assert connect_kwargs['port'] == 22

        assert uploaded == ['archives/daily.tar.bz2']
        mock_sftp.open.assert_called_once_with('archives/daily.tar.bz2', 'wb')
        remote_file.write.assert_called_once_with(b'x' * 100)
        mock_sftp.chmod.assert_called_once_with('archives/daily.tar.bz2', 0o644)
        assert not (work_dir / 'daily.tar.bz2').exists()
        mock_ssh_client.return_value.close.assert_called_once()

    def test_store_writes_in_chunks(self, mock_ssh_client, work_dir):
        (work_dir / 'big.tar').write_bytes(b'y' * (32 * 1024 + 10))
        mock_sftp = mock_ssh_client.return_value.open_sftp.return_value
        mock_sftp.stat.return_value.st_size = 32 * 1024 + 10
        remote_file = mock_sftp.open.return_value.__enter__.return_value

        SSHStorage(server='h', username='u', password='p').store(['big.tar'])

        sizes = [len(c[0][0]) for c in remote_file.write.call_args_list]
        assert sizes == [32 * 1024, 10]

    def test_store_size_mismatch_keeps_file(self, mock_ssh_client, work_dir):
        (work_dir / 'daily.tar').write_bytes(b'x' * 100)
        mock_sftp = mock_ssh_client.return_value.open_sftp.return_value
        mock_sftp.stat.return_value.st_size = 50

        uploaded = SSHStorage(server='h', username='u', password='p').store(['daily.tar'])

        assert uploaded == []
        assert (work_dir / 'daily.tar').exists()
        mock_sftp.remove.assert_called_once_with('daily.tar')

    def test_store_interrupted_write_removes_remote_file(self, mock_ssh_client, work_dir):
        (work_dir / 'daily.tar').write_bytes(b'x' * 100)
        mock_sftp = mock_ssh_client.return_value.open_sftp.return_value
        remote_file = mock_sftp.open.return_value.__enter__.return_value
        remote_file.write.side_effect = OSError('connection reset')

        uploaded = SSHStorage(server='h', username='u', password='p',
                              remote_path='archives').store(['daily.tar'])

        assert uploaded == []
        assert (work_dir / 'daily.tar').exists()
        mock_sftp.remove.assert_called_once_with('archives/daily.tar')
        mock_sftp.chmod.assert_not_called()

    def test_store_remote_cleanup_failure_keeps_local_file(self, mock_ssh_client, work_dir):
        (work_dir / 'daily.tar').write_bytes(b'x' * 100)
        mock_sftp = mock_ssh_client.return_value.open_sftp.return_value
        mock_sftp.stat.return_value.st_size = 50
        mock_sftp.remove.side_effect = OSError('permission denied')

        uploaded = SSHStorage(server='h', username='u', password='p').store(['daily.tar'])

        assert uploaded == []
        assert (work_dir / 'daily.tar').exists()

    def test_store_unreadable_local_file_leaves_server_untouched(self, mock_ssh_client, work_dir):
        mock_sftp = mock_ssh_client.return_value.open_sftp.return_value

        uploaded = SSHStorage(server='h', username='u', password='p').store(['missing.tar'])

        assert uploaded == []
        mock_sftp.open.assert_not_called()
        mock_sftp.remove.assert_not_called()

    def test_store_authentication_failure(self, mock_ssh_client, work_dir):
        (work_dir / 'daily.tar').write_bytes(b'x')
        mock_ssh_client.return_value.connect.side_effect = paramiko.AuthenticationException('denied')

        uploaded = SSHStorage(server='h', username='u', password='p').store(['daily.tar'])

        assert uploaded == []
        assert (work_dir / 'daily.tar').exists()

    def test_fetch_latest_downloads_newest_match(self, mock_ssh_client, tmp_path, progress_stream):
        mock_sftp = mock_ssh_client.return_value.open_sftp.return_value
        mock_sftp.listdir_attr.return_value = [
            sftp_entry('daily-Mon.tar', 100),
            sftp_entry('daily-Tue.tar', 200),
            sftp_entry('other.tar', 300),
            sftp_entry('daily-dir', 400, mode=stat.S_IFDIR | 0o755),
        ]
        remote_file = mock_sftp.open.return_value.__enter__.return_value
        remote_file.read.side_effect = [b'data', b'']

        storage = SSHStorage(server='h', username='u', password='p', remote_path='archives',
                             download_dir=str(tmp_path), progress_stream=progress_stream)
        latest = storage.fetch_latest(make_archive('daily-{date:weekday}'))

        assert latest == str(tmp_path / 'daily-Tue')
        mock_sftp.listdir_attr.assert_called_once_with('archives')
        mock_sftp.open.assert_called_once_with('archives/daily-Tue.tar', 'rb')
        assert (tmp_path / 'daily-Tue.tar').read_bytes() == b'data'
        mock_ssh_client.return_value.close.assert_called_once()

    def test_fetch_latest_interrupted_download_removes_partial_file(self, mock_ssh_client, tmp_path):
        mock_sftp = mock_ssh_client.return_value.open_sftp.return_value
        mock_sftp.listdir_attr.return_value = [sftp_entry('daily-Mon.tar', 100)]
        remote_file = mock_sftp.open.return_value.__enter__.return_value
        remote_file.read.side_effect = [b'partial', paramiko.SSHException('channel closed')]

        storage = SSHStorage(server='h', username='u', password='p', download_dir=str(tmp_path))

        with pytest.raises(TransferError, match='Failed to download'):
            storage.fetch_latest(make_archive('daily-{date:weekday}'))

        assert not (tmp_path / 'daily-Mon.tar').exists()
        mock_ssh_client.return_value.close.assert_called_once()

    def test_fetch_latest_nothing_matches(self, mock_ssh_client, tmp_path):
        mock_sftp = mock_ssh_client.return_value.open_sftp.return_value
        mock_sftp.listdir_attr.return_value = [sftp_entry('other.tar', 100)]

        storage = SSHStorage(server='h', username='u', password='p', download_dir=str(tmp_path))

        assert storage.fetch_latest(make_archive('daily-{date:weekday}')) is None
        mock_sftp.listdir_attr.assert_called_once_with('.')


class TestCreateStorage:
    """Test the destination factory."""

    def test_directory(self, tmp_path):
        storage = create_storage(Destination(id='d', kind=DestinationKind.DIRECTORY, path=str(tmp_path)))

        assert isinstance(storage, LocalStorage)
        assert storage.path == str(tmp_path)

    def test_s3(self, mock_s3):
        storage = create_storage(Destination(id='s', kind=DestinationKind.S3, s3_bucket='test-bucket'))

        assert isinstance(storage, S3Storage)
        assert storage.bucket_name == 'test-bucket'

    def test_ssh(self):
        storage = create_storage(Destination(
            id='h', kind=DestinationKind.SSH, server='h', username='u', password='p', path='x'
        ))

        assert isinstance(storage, SSHStorage)
        assert storage.remote_path == 'x'

    def test_none(self):
        assert create_storage(Destination(id='n', kind=DestinationKind.NONE)) is None
