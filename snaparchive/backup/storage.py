"""
Backup targets: remote destinations an archive is copied to after creation.

Supports:
- LocalTarget: Copy to a local or UNC directory
- S3Target: Upload to AWS S3 (or an S3-compatible endpoint)
- SFTPTarget: Upload to a remote host via SSH/SFTP
"""

import logging
import os
import posixpath
import shutil
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

import boto3
import paramiko
from boto3.exceptions import S3UploadFailedError
from botocore.exceptions import BotoCoreError, ClientError
from paramiko import AutoAddPolicy, SSHClient

from snaparchive.models import BackupTarget
from .errors import TransferError

logger = logging.getLogger(__name__)


class LocalTarget:
    """
    Copies archives into a directory (local path or UNC share).
    """

    def __init__(self, settings: Dict[str, Any]):
        self.path = settings.get('path')
        if not self.path:
            raise TransferError("Local target requires 'path'")

    def transfer(self, local_path: str) -> str:
        """
        Copy archive into the target directory.

        Returns:
            Full path of the copied file

        Raises:
            TransferError: If the copy fails
        """
        if not os.path.exists(local_path):
            raise TransferError(f"Local file not found: {local_path}")

        dest_dir = Path(self.path)
        dest_path = dest_dir / os.path.basename(local_path)

        try:
            dest_dir.mkdir(parents=True, exist_ok=True)
            shutil.copy2(local_path, dest_path)
            return str(dest_path)
        except PermissionError as e:
            raise TransferError(f"Permission denied writing to {dest_path}: {e}")
        except OSError as e:
            raise TransferError(f"Failed to copy to {dest_path}: {e}")

    def list_archives(self, base_name: str, extension: str) -> List[Dict[str, Any]]:
        """
        List archives of one naming pattern in the target directory.

        Returns:
            List of dicts with 'location' and 'modified' keys
        """
        dest_dir = Path(self.path)
        if not dest_dir.exists():
            return []

        try:
            archives = []
            for file_path in dest_dir.iterdir():
                name = file_path.name
                if file_path.is_file() and name.startswith(base_name) and name.endswith(extension):
                    archives.append({
                        'location': str(file_path),
                        'modified': datetime.fromtimestamp(file_path.stat().st_mtime, timezone.utc)
                    })
            return archives
        except OSError as e:
            raise TransferError(f"Failed to list {dest_dir}: {e}")

    def delete(self, location: str):
        try:
            if os.path.exists(location):
                os.remove(location)
        except OSError as e:
            raise TransferError(f"Failed to delete {location}: {e}")


class S3Target:
    """
    Uploads archives to an S3 bucket under an optional key prefix:
    {prefix}/{filename}
    """

    def __init__(self, settings: Dict[str, Any]):
        """
        Initialize S3 target.

        Args:
            settings: Target settings with keys:
                - bucket: S3 bucket name
                - region: AWS region (default: us-east-1)
                - prefix: Key prefix (optional)
                - access_key / secret_key: Credentials (optional, otherwise
                  the boto3 default credential chain is used)
                - endpoint_url: S3-compatible endpoint (optional)
        """
        self.bucket_name = settings.get('bucket')
        if not self.bucket_name:
            raise TransferError("S3 target requires 'bucket'")

        self.region = settings.get('region', 'us-east-1')
        self.prefix = (settings.get('prefix') or '').strip('/')

        client_kwargs = {'region_name': self.region}
        if settings.get('access_key') and settings.get('secret_key'):
            client_kwargs['aws_access_key_id'] = settings['access_key']
            client_kwargs['aws_secret_access_key'] = settings['secret_key']
        if settings.get('endpoint_url'):
            client_kwargs['endpoint_url'] = settings['endpoint_url']

        try:
            self.s3_client = boto3.client('s3', **client_kwargs)
        except (BotoCoreError, ValueError) as e:
            raise TransferError(f"Failed to initialize S3 client: {e}")

    def _key_for(self, filename: str) -> str:
        return f"{self.prefix}/{filename}" if self.prefix else filename

    def transfer(self, local_path: str) -> str:
        """
        Upload archive to S3.

        Returns:
            S3 key of uploaded file

        Raises:
            TransferError: If upload fails
        """
        if not os.path.exists(local_path):
            raise TransferError(f"Local file not found: {local_path}")

        s3_key = self._key_for(os.path.basename(local_path))

        try:
            # upload_file switches to multipart for large archives
            self.s3_client.upload_file(local_path, self.bucket_name, s3_key)
            return s3_key
        except ClientError as e:
            error_code = e.response.get('Error', {}).get('Code', 'Unknown')
            raise TransferError(f"S3 upload failed ({error_code}): {e}")
        except (BotoCoreError, S3UploadFailedError) as e:
            raise TransferError(f"S3 upload failed: {e}")

    def list_archives(self, base_name: str, extension: str) -> List[Dict[str, Any]]:
        """
        List archives of one naming pattern under the prefix.

        Raises:
            TransferError: If listing fails
        """
        try:
            archives = []
            paginator = self.s3_client.get_paginator('list_objects_v2')
            key_prefix = self._key_for(base_name)

            for page in paginator.paginate(Bucket=self.bucket_name, Prefix=key_prefix):
                for obj in page.get('Contents', []):
                    if obj['Key'].endswith(extension):
                        archives.append({
                            'location': obj['Key'],
                            'modified': obj['LastModified']
                        })

            return archives

        except ClientError as e:
            error_code = e.response.get('Error', {}).get('Code', 'Unknown')
            raise TransferError(f"S3 list failed ({error_code}): {e}")
        except BotoCoreError as e:
            raise TransferError(f"Failed to list S3 objects: {e}")

    def delete(self, location: str):
        try:
            self.s3_client.delete_object(Bucket=self.bucket_name, Key=location)
        except ClientError as e:
            error_code = e.response.get('Error', {}).get('Code', 'Unknown')
            raise TransferError(f"S3 delete failed ({error_code}): {e}")
        except BotoCoreError as e:
            raise TransferError(f"Failed to delete from S3: {e}")


class SFTPTarget:
    """
    Uploads archives to a remote directory via SSH/SFTP.
    """

    def __init__(self, settings: Dict[str, Any]):
        """
        Initialize SFTP target.

        Args:
            settings: Target settings with keys:
                - host: SSH hostname or IP
                - port: SSH port (default 22)
                - username: SSH username
                - password: SSH password (optional if using key)
                - private_key: Path to private key file (optional)
                - path: Remote directory
        """
        self.host = settings.get('host') or settings.get('hostname')
        self.port = int(settings.get('port', 22))
        self.username = settings.get('username')
        self.password = settings.get('password')
        self.private_key_path = settings.get('private_key')
        self.remote_dir = settings.get('path') or '.'

        if not self.host or not self.username:
            raise TransferError("SFTP target requires 'host' and 'username'")

        self.ssh_client = None
        self.sftp_client = None

    def _connect(self):
        """
        Establish SSH connection.

        Raises:
            TransferError: If connection fails
        """
        if self.sftp_client is not None:
            return

        connect_kwargs = {
            'hostname': self.host,
            'port': self.port,
            'username': self.username,
            'timeout': 30
        }

        if self.password:
            connect_kwargs['password'] = self.password
        elif self.private_key_path:
            key_path = Path(self.private_key_path).expanduser()
            if not key_path.exists():
                raise TransferError(f"Private key not found: {self.private_key_path}")
            connect_kwargs['key_filename'] = str(key_path)
        else:
            raise TransferError("Either password or private_key must be provided")

        try:
            self.ssh_client = SSHClient()
            self.ssh_client.set_missing_host_key_policy(AutoAddPolicy())
            self.ssh_client.connect(**connect_kwargs)
            self.sftp_client = self.ssh_client.open_sftp()
        except paramiko.AuthenticationException as e:
            self.close()
            raise TransferError(f"SSH authentication failed: {e}")
        except (paramiko.SSHException, OSError) as e:
            self.close()
            raise TransferError(f"Failed to connect to {self.host}: {e}")

    def transfer(self, local_path: str) -> str:
        """
        Upload archive to the remote directory.

        Returns:
            Remote path of the uploaded file

        Raises:
            TransferError: If connection or upload fails
        """
        if not os.path.exists(local_path):
            raise TransferError(f"Local file not found: {local_path}")

        self._connect()
        remote_path = posixpath.join(self.remote_dir, os.path.basename(local_path))

        try:
            self.sftp_client.put(local_path, remote_path)
            return remote_path
        except PermissionError:
            raise TransferError(f"Permission denied writing remote file: {remote_path}")
        except (paramiko.SSHException, OSError) as e:
            raise TransferError(f"Failed to upload {local_path} to {remote_path}: {e}")

    def list_archives(self, base_name: str, extension: str) -> List[Dict[str, Any]]:
        self._connect()
        try:
            archives = []
            for item in self.sftp_client.listdir_attr(self.remote_dir):
                name = item.filename
                if name.startswith(base_name) and name.endswith(extension):
                    archives.append({
                        'location': posixpath.join(self.remote_dir, name),
                        'modified': datetime.fromtimestamp(item.st_mtime or 0, timezone.utc)
                    })
            return archives
        except (paramiko.SSHException, OSError) as e:
            raise TransferError(f"Failed to list remote directory {self.remote_dir}: {e}")

    def delete(self, location: str):
        self._connect()
        try:
            self.sftp_client.remove(location)
        except (paramiko.SSHException, OSError) as e:
            raise TransferError(f"Failed to delete remote file {location}: {e}")

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


def create_target(target: BackupTarget):
    """
    Factory function to create the handler for a backup target.

    Raises:
        ValueError: If the target type is invalid
        TransferError: If required settings are missing
    """
    if target.type in ('local', 'unc'):
        return LocalTarget(target.settings)
    elif target.type == 's3':
        return S3Target(target.settings)
    elif target.type == 'sftp':
        return SFTPTarget(target.settings)
    else:
        raise ValueError(f"Invalid target type: {target.type}")


def apply_target_retention(handler, base_name: str, extension: str, keep_count: Optional[int]) -> List[str]:
    """
    Keep only the newest `keep_count` archives of a pattern on a target.

    Runs after the new archive has been transferred, so it counts too.
    A missing or non-positive keep count keeps everything.

    Returns:
        Locations that were deleted
    """
    if not keep_count or int(keep_count) <= 0:
        return []

    archives = handler.list_archives(base_name, extension)
    archives.sort(key=lambda a: a['modified'], reverse=True)

    deleted = []
    for archive in archives[int(keep_count):]:
        try:
            handler.delete(archive['location'])
            deleted.append(archive['location'])
            logger.info(f"Deleted old remote archive: {archive['location']}")
        except TransferError as e:
            logger.error(str(e))

    return deleted
