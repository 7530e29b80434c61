"""
Storage destinations for backup archives.

Supports:
- LocalStorage: Move archives into a local directory
- S3Storage: Upload to an S3 bucket (AES256 server side encryption)
- SSHStorage: Copy to an SSH server over SFTP

Every destination offers ``store(files)`` for backups and
``fetch_latest(archive)`` for restores. ``fetch_latest`` returns the
archive's base path (pipeline suffixes stripped) or None when nothing
matching exists.
"""

import logging
import os
import posixpath
import shutil
import stat
from datetime import datetime, timezone
from typing import IO, Any, Dict, List, Optional

import boto3
import paramiko
from botocore.exceptions import BotoCoreError, ClientError
from paramiko import AutoAddPolicy, SSHClient

from backstow.config import Config
from backstow.errors import StorageError, TransferError
from backstow.models import Archive, Destination, DestinationKind, Encryption
from .compression import remove_partial_file
from .naming import candidate_archive_names, literal_prefix, strip_archive_suffixes
from .progress import ProgressReporter, ProgressStats


logger = logging.getLogger(__name__)


def _strip_suffixes(path: str, archive: Archive) -> str:
    encryption_extension = Encryption.extension if archive.encryption else ''
    return strip_archive_suffixes(path, archive.compression.extension, encryption_extension)


def _creation_time(path: str) -> float:
    stat_result = os.stat(path)
    # st_birthtime only exists on BSD/macOS (and Python 3.12+ on Windows)
    return getattr(stat_result, 'st_birthtime', stat_result.st_ctime)


class LocalStorage:
    """
    Handler for storing backups in a local directory.

    Archives are placed directly under the directory by file name.
    """

    def __init__(self, path: str):
        """
        Initialize local storage handler.

        Args:
            path: Directory holding the archives
        """
        self.path = path

    def store(self, files: List[str]) -> List[str]:
        """
        Move archive files into the directory.

        A failed rename falls back to copy and delete; a failure to delete
        the source after a successful copy is ignored.

        Args:
            files: Local files to move

        Returns:
            Paths of the stored files

        Raises:
            StorageError: If the directory can't be created or a file can be
                neither renamed nor copied
        """
        try:
            os.makedirs(self.path, exist_ok=True)
        except OSError as e:
            raise StorageError(f"Unable to create archive path: '{self.path}': {e}")

        stored = []
        for file_path in files:
            target = os.path.join(self.path, os.path.basename(file_path))
            logger.info(f"Moving {file_path} to {target}")

            try:
                os.rename(file_path, target)
            except OSError as rename_error:
                logger.debug(f"Rename failed ({rename_error}), copying instead")
                try:
                    shutil.copyfile(file_path, target)
                except OSError as copy_error:
                    raise StorageError(
                        f"Unable to rename and copy '{file_path}' to '{target}': {copy_error}"
                    )
                try:
                    os.remove(file_path)
                except OSError:
                    pass

            stored.append(target)

        return stored

    def fetch_latest(self, archive: Archive) -> Optional[str]:
        """
        Find the newest stored archive matching the name template.

        Every restore candidate name is looked up with the archive's suffix
        chain; the file created last wins.

        Returns:
            Base path of the newest archive, or None
        """
        newest_path = None
        newest_time = None

        for name in candidate_archive_names(archive.name):
            base_path = os.path.join(self.path, name)
            full_path = f"{base_path}{archive.file_extension}"

            try:
                created = _creation_time(full_path)
            except OSError:
                continue

            if newest_time is None or created > newest_time:
                newest_path = base_path
                newest_time = created

        if newest_path is None:
            logger.warning(f"No archive matching '{archive.name}' found in {self.path}")
        else:
            logger.info(f"Found latest archive: {newest_path}{archive.file_extension}")

        return newest_path


class S3Storage:
    """
    Handler for uploading backups to AWS S3 (or an S3 compatible service).

    Object keys are the archive file names.
    """

    def __init__(self, bucket_name: str, region: str = 'eu-central-1',
                 endpoint_url: Optional[str] = None,
                 access_key: Optional[str] = None, secret_key: Optional[str] = None,
                 download_dir: str = '.', progress_stream: Optional[IO] = None):
        """
        Initialize S3 storage handler.

        Credentials default to boto3's lookup chain (environment, shared
        credentials file, instance profile).

        Args:
            bucket_name: S3 bucket name
            region: AWS region
            endpoint_url: Custom endpoint for S3 compatible services
            access_key: AWS access key ID
            secret_key: AWS secret access key
            download_dir: Where fetch_latest writes the downloaded archive
            progress_stream: Stream for the download progress line
        """
        self.bucket_name = bucket_name
        self.region = region
        self.download_dir = download_dir
        self.progress_stream = progress_stream

        client_kwargs = {'region_name': region}
        if endpoint_url:
            client_kwargs['endpoint_url'] = endpoint_url
        if access_key and secret_key:
            client_kwargs['aws_access_key_id'] = access_key
            client_kwargs['aws_secret_access_key'] = secret_key

        try:
            self.s3_client = boto3.client('s3', **client_kwargs)
        except (BotoCoreError, ValueError) as e:
            raise TransferError(f"Failed to initialize S3 client: {e}")

    def store(self, files: List[str]) -> List[str]:
        """
        Upload archive files, removing each local file once it is uploaded.

        A failed upload is logged and the local file is kept; the remaining
        files are still attempted.

        Returns:
            Keys of the uploaded objects
        """
        uploaded = []

        for file_path in files:
            try:
                key = self.upload(file_path)
            except TransferError as e:
                logger.error(f"Upload of {file_path} failed: {e}")
                continue

            uploaded.append(key)
            try:
                os.remove(file_path)
            except OSError as e:
                logger.warning(f"Unable to remove uploaded file {file_path}: {e}")

        return uploaded

    def upload(self, local_path: str) -> str:
        """
        Upload a single file.

        Args:
            local_path: Path to local archive file

        Returns:
            S3 key of uploaded file

        Raises:
            TransferError: If upload fails
        """
        key = os.path.basename(local_path)

        try:
            file_size = os.path.getsize(local_path)
        except OSError as e:
            raise TransferError(f"Local file not readable: {local_path}: {e}")

        logger.info(f"Uploading {local_path} to s3://{self.bucket_name}/{key}")

        try:
            with open(local_path, 'rb') as f:
                self.s3_client.put_object(
                    Bucket=self.bucket_name,
                    Key=key,
                    Body=f,
                    ContentLength=file_size,
                    ServerSideEncryption='AES256'
                )
        except ClientError as e:
            error_code = e.response.get('Error', {}).get('Code', 'Unknown')
            raise TransferError(f"S3 upload failed ({error_code}): {e}")
        except (BotoCoreError, OSError) as e:
            raise TransferError(f"S3 upload failed: {e}")

        return key

    def list_objects(self, prefix: str) -> List[Dict[str, Any]]:
        """
        List objects in S3 with given prefix.

        Args:
            prefix: S3 key prefix to filter by

        Returns:
            List of dicts with 'Key', 'LastModified', and 'Size' keys

        Raises:
            TransferError: If listing fails
        """
        try:
            objects = []
            paginator = self.s3_client.get_paginator('list_objects_v2')

            for page in paginator.paginate(Bucket=self.bucket_name, Prefix=prefix):
                for obj in page.get('Contents', []):
                    objects.append({
                        'Key': obj.get('Key'),
                        'LastModified': obj.get('LastModified'),
                        'Size': obj.get('Size')
                    })

            return objects

        except ClientError as e:
            error_code = e.response.get('Error', {}).get('Code', 'Unknown')
            raise TransferError(f"S3 list failed ({error_code}): {e}")
        except BotoCoreError as e:
            raise TransferError(f"Failed to list S3 objects: {e}")

    def fetch_latest(self, archive: Archive) -> Optional[str]:
        """
        Download the most recently modified object matching the archive.

        Objects are listed under the literal prefix of the name template.
        Objects without a usable timestamp are ignored; on equal timestamps
        the first listed object wins.

        Returns:
            Base path of the downloaded archive, or None if nothing matched

        Raises:
            TransferError: If listing or downloading fails
        """
        objects = self.list_objects(literal_prefix(archive.name))
        if not objects:
            logger.warning("No S3 objects found.")
            return None

        latest_key = None
        latest_modified = None
        for obj in objects:
            if not obj['Key']:
                continue
            modified = parse_timestamp(obj['LastModified'])
            if modified is None:
                continue
            if latest_modified is None or modified > latest_modified:
                latest_key = obj['Key']
                latest_modified = modified

        if latest_key is None:
            logger.warning("No S3 key found.")
            return None

        logger.info(f"Found latest key: {latest_key}")
        local_path = os.path.join(self.download_dir, posixpath.basename(latest_key))
        self.download(latest_key, local_path)

        return _strip_suffixes(local_path, archive)

    def download(self, key: str, local_path: str):
        """
        Download an object while reporting progress.

        Raises:
            TransferError: If the object can't be fetched or written
        """
        try:
            response = self.s3_client.get_object(Bucket=self.bucket_name, Key=key)
        except ClientError as e:
            error_code = e.response.get('Error', {}).get('Code', 'Unknown')
            raise TransferError(f"S3 download of {key} failed ({error_code}): {e}")
        except BotoCoreError as e:
            raise TransferError(f"S3 download of {key} failed: {e}")

        stats = ProgressStats(total_length=response.get('ContentLength'))
        body = response['Body']

        try:
            with open(local_path, 'wb') as f, \
                    ProgressReporter(stats, Config.PROGRESS_INTERVAL, self.progress_stream):
                for chunk in body.iter_chunks(chunk_size=Config.BUFFER_SIZE):
                    f.write(chunk)
                    stats.record(len(chunk))
        except (BotoCoreError, OSError) as e:
            remove_partial_file(local_path)
            raise TransferError(f"S3 download of {key} to {local_path} failed: {e}")
        finally:
            body.close()


def parse_timestamp(value: Any) -> Optional[datetime]:
    """
    Normalise an object timestamp to an aware datetime.

    Returns None for values that can not be understood.
    """
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, str):
        parsed = None
        for fmt in ('%Y-%m-%dT%H:%M:%S.%fZ', '%Y-%m-%dT%H:%M:%SZ'):
            try:
                parsed = datetime.strptime(value, fmt)
                break
            except ValueError:
                continue
        if parsed is None:
            logger.debug(f"Ignoring unparsable timestamp: {value!r}")
            return None
    else:
        return None

    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class SSHStorage:
    """
    Handler for copying backups to a server via SSH/SFTP.

    One password authenticated session is used per store or fetch.
    """

    def __init__(self, server: str, username: str, password: str,
                 remote_path: str = '', port: int = Config.SSH_PORT,
                 download_dir: str = '.', progress_stream: Optional[IO] = None):
        """
        Initialize SSH storage handler.

        Args:
            server: SSH hostname or IP
            username: SSH username
            password: SSH password
            remote_path: Remote directory (default: login directory)
            port: SSH port
            download_dir: Where fetch_latest writes the downloaded archive
            progress_stream: Stream for the download progress line
        """
        self.server = server
        self.username = username
        self.password = password
        self.remote_path = remote_path
        self.port = port
        self.download_dir = download_dir
        self.progress_stream = progress_stream

        self.ssh_client = None
        self.sftp_client = None

    def _connect(self):
        """
        Establish SSH connection.

        Raises:
            TransferError: If connection fails
        """
        try:
            self.ssh_client = SSHClient()
            self.ssh_client.set_missing_host_key_policy(AutoAddPolicy())
            self.ssh_client.connect(
                hostname=self.server,
                port=self.port,
                username=self.username,
                password=self.password,
                timeout=30
            )
            self.sftp_client = self.ssh_client.open_sftp()

        except paramiko.AuthenticationException as e:
            self.close()
            raise TransferError(f"SSH authentication failed for {self.username}@{self.server}: {e}")
        except (paramiko.SSHException, OSError) as e:
            self.close()
            raise TransferError(f"Failed to connect to {self.server}:{self.port}: {e}")

    def close(self):
        """Close SSH/SFTP connections."""
        if self.sftp_client:
            try:
                self.sftp_client.close()
            except (paramiko.SSHException, OSError) as e:
                logger.debug(f"Error closing SFTP session: {e}")
            self.sftp_client = None

        if self.ssh_client:
            self.ssh_client.close()
            self.ssh_client = None

    def _remote_file(self, filename: str) -> str:
        if self.remote_path:
            return posixpath.join(self.remote_path, filename)
        return filename

    def store(self, files: List[str]) -> List[str]:
        """
        Copy archive files to the server, removing each local file once sent.

        Connection and per-file failures are logged; files that were not
        sent stay on disk.

        Returns:
            Remote paths of the copied files
        """
        try:
            self._connect()
        except TransferError as e:
            logger.error(f"Skipping upload of {len(files)} file(s): {e}")
            return []

        uploaded = []
        try:
            for file_path in files:
                try:
                    remote = self.upload(file_path)
                except TransferError as e:
                    logger.error(f"Upload of {file_path} failed: {e}")
                    continue

                uploaded.append(remote)
                try:
                    os.remove(file_path)
                except OSError as e:
                    logger.warning(f"Unable to remove uploaded file {file_path}: {e}")
        finally:
            self.close()

        return uploaded

    def upload(self, local_path: str) -> str:
        """
        Stream one file to the server in SCP sized chunks.

        Requires an open session.

        Raises:
            TransferError: If the file can't be read or written remotely
        """
        remote = self._remote_file(os.path.basename(local_path))
        remote_opened = False

        try:
            file_size = os.path.getsize(local_path)
            logger.info(f"Uploading {local_path} ({file_size} bytes) to {self.server}:{remote}")

            with open(local_path, 'rb') as local_file, \
                    self.sftp_client.open(remote, 'wb') as remote_file:
                remote_opened = True
                remote_file.set_pipelined(True)
                while True:
                    chunk = local_file.read(Config.SCP_CHUNK_SIZE)
                    if not chunk:
                        break
                    remote_file.write(chunk)

            self.sftp_client.chmod(remote, 0o644)

            remote_size = self.sftp_client.stat(remote).st_size
            if remote_size != file_size:
                raise TransferError(
                    f"Remote file {remote} has {remote_size} bytes, expected {file_size}"
                )

        except TransferError:
            self._remove_remote(remote)
            raise
        except (paramiko.SSHException, OSError) as e:
            if remote_opened:
                self._remove_remote(remote)
            raise TransferError(f"Failed to upload {local_path} to {self.server}:{remote}: {e}")

        return remote

    def _remove_remote(self, remote: str):
        # Incomplete uploads must not stay on the server
        try:
            self.sftp_client.remove(remote)
        except (paramiko.SSHException, OSError) as e:
            logger.warning(f"Unable to remove partial upload {self.server}:{remote}: {e}")

    def fetch_latest(self, archive: Archive) -> Optional[str]:
        """
        Download the newest remote file whose name starts with the template's
        literal prefix.

        Returns:
            Base path of the downloaded archive, or None if nothing matched

        Raises:
            TransferError: If connecting, listing or downloading fails
        """
        prefix = literal_prefix(archive.name)
        self._connect()

        try:
            try:
                entries = self.sftp_client.listdir_attr(self.remote_path or '.')
            except (paramiko.SSHException, OSError) as e:
                raise TransferError(f"Failed to list {self.server}:{self.remote_path or '.'}: {e}")

            latest = None
            for entry in entries:
                if not entry.filename.startswith(prefix):
                    continue
                if entry.st_mode is not None and stat.S_ISDIR(entry.st_mode):
                    continue
                if entry.st_mtime is None:
                    continue
                if latest is None or entry.st_mtime > latest.st_mtime:
                    latest = entry

            if latest is None:
                logger.warning(f"No remote file matching '{prefix}' found on {self.server}")
                return None

            logger.info(f"Found latest remote file: {latest.filename}")
            local_path = os.path.join(self.download_dir, latest.filename)
            self.download(self._remote_file(latest.filename), local_path, latest.st_size)

        finally:
            self.close()

        return _strip_suffixes(local_path, archive)

    def download(self, remote: str, local_path: str, size: Optional[int] = None):
        """
        Download one file while reporting progress. Requires an open session.

        Raises:
            TransferError: If reading or writing fails
        """
        stats = ProgressStats(total_length=size)

        try:
            with self.sftp_client.open(remote, 'rb') as remote_file, \
                    open(local_path, 'wb') as local_file, \
                    ProgressReporter(stats, Config.PROGRESS_INTERVAL, self.progress_stream):
                remote_file.prefetch(size)
                while True:
                    chunk = remote_file.read(Config.SCP_CHUNK_SIZE)
                    if not chunk:
                        break
                    local_file.write(chunk)
                    stats.record(len(chunk))
        except (paramiko.SSHException, OSError) as e:
            remove_partial_file(local_path)
            raise TransferError(f"Failed to download {self.server}:{remote}: {e}")


def create_storage(destination: Destination, download_dir: str = '.',
                   progress_stream: Optional[IO] = None):
    """
    Factory function to create appropriate storage handler.

    Args:
        destination: Configured destination
        download_dir: Where remote fetches write their files
        progress_stream: Stream for download progress output

    Returns:
        LocalStorage, S3Storage or SSHStorage instance, or None for
        destinations of kind 'none'
    """
    if destination.kind is DestinationKind.DIRECTORY:
        return LocalStorage(destination.path)
    elif destination.kind is DestinationKind.S3:
        return S3Storage(
            bucket_name=destination.s3_bucket,
            region=destination.s3_region,
            endpoint_url=destination.s3_endpoint,
            download_dir=download_dir,
            progress_stream=progress_stream
        )
    elif destination.kind is DestinationKind.SSH:
        return SSHStorage(
            server=destination.server,
            username=destination.username,
            password=destination.password,
            remote_path=destination.path,
            download_dir=download_dir,
            progress_stream=progress_stream
        )
    return None
