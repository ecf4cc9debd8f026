"""
Artifact storage.

- ArtifactStoreGateway: remote object store interface (put/get/delete/list + probe)
- S3Gateway: AWS S3 or any S3-compatible endpoint
- LocalStorage: backup files on the local filesystem
"""

import os
from abc import ABC, abstractmethod
from datetime import datetime
from pathlib import Path
from typing import Optional, Dict, List, Any

import boto3
from boto3.exceptions import S3UploadFailedError
from botocore.config import Config as BotoConfig
from botocore.exceptions import ClientError, BotoCoreError


class StoreError(Exception):
    """Raised when a storage operation fails."""
    pass


def generate_remote_key(path_prefix: Optional[str], target_name: str, file_name: str,
                        now: Optional[datetime] = None) -> str:
    """
    Build the remote object key: {prefix}/{target}/{YYYY}/{MM}/{file}.

    The prefix segment is left out when the prefix is empty.
    """
    now = now or datetime.utcnow()
    key = f"{target_name}/{now.year}/{now.month:02d}/{file_name}"
    prefix = (path_prefix or '').strip('/')
    if prefix:
        key = f"{prefix}/{key}"
    return key


def _client_error_code(error: ClientError) -> str:
    return error.response.get('Error', {}).get('Code', 'Unknown')


class ArtifactStoreGateway(ABC):
    """Remote object store used for offsite copies."""

    @abstractmethod
    def put(self, bucket: str, key: str, local_path: str, metadata: Optional[Dict[str, str]] = None):
        pass

    @abstractmethod
    def get(self, bucket: str, key: str, dest_path: str):
        pass

    @abstractmethod
    def delete(self, bucket: str, key: str):
        pass

    @abstractmethod
    def list_objects(self, bucket: str, prefix: str = '') -> List[Dict[str, Any]]:
        pass

    @abstractmethod
    def test_connection(self, bucket: str) -> bool:
        pass


class S3Gateway(ArtifactStoreGateway):
    """
    S3 gateway built on boto3.

    Uploads are stored with server-side encryption (AES256). A custom
    endpoint switches to path-style addressing for S3-compatible services.
    """

    def __init__(self, access_key: str, secret_key: str, region: str = 'us-east-1',
                 endpoint: Optional[str] = None):
        """
        Initialize S3 gateway.

        Args:
            access_key: Access key ID
            secret_key: Secret access key
            region: Region name (default: us-east-1)
            endpoint: Optional endpoint URL of an S3-compatible service
        """
        self.region = region
        self.endpoint = endpoint

        client_kwargs = {
            'aws_access_key_id': access_key,
            'aws_secret_access_key': secret_key,
            'region_name': region,
        }
        if endpoint:
            client_kwargs['endpoint_url'] = endpoint
            client_kwargs['config'] = BotoConfig(s3={'addressing_style': 'path'})

        try:
            self.s3_client = boto3.client('s3', **client_kwargs)
        except (BotoCoreError, ValueError) as e:
            raise StoreError(f"Failed to initialize S3 client: {e}")

    @classmethod
    def from_config(cls, remote_config, secrets) -> 'S3Gateway':
        """
        Build a gateway from a RemoteStoreConfig, decrypting its credentials.

        Args:
            remote_config: RemoteStoreConfig record
            secrets: Secret resolver with decrypt()
        """
        return cls(
            access_key=secrets.decrypt(remote_config.access_key_encrypted),
            secret_key=secrets.decrypt(remote_config.secret_key_encrypted),
            region=remote_config.region,
            endpoint=remote_config.endpoint or None,
        )

    def put(self, bucket, key, local_path, metadata=None):
        """
        Upload a local file.

        Raises:
            StoreError: If the file is missing or the upload fails
        """
        if not os.path.exists(local_path):
            raise StoreError(f"Local file not found: {local_path}")

        extra_args = {'ServerSideEncryption': 'AES256'}
        if metadata:
            extra_args['Metadata'] = {name: str(value) for name, value in metadata.items()}

        try:
            self.s3_client.upload_file(local_path, bucket, key, ExtraArgs=extra_args)
        except ClientError as e:
            raise StoreError(f"S3 upload failed ({_client_error_code(e)}): {e}")
        except (BotoCoreError, S3UploadFailedError) as e:
            raise StoreError(f"S3 upload failed: {e}")

    def get(self, bucket, key, dest_path):
        """
        Download an object to dest_path.

        Raises:
            StoreError: If the download fails
        """
        try:
            self.s3_client.download_file(bucket, key, dest_path)
        except ClientError as e:
            raise StoreError(f"S3 download of {key} failed ({_client_error_code(e)}): {e}")
        except BotoCoreError as e:
            raise StoreError(f"S3 download of {key} failed: {e}")

    def delete(self, bucket, key):
        try:
            self.s3_client.delete_object(Bucket=bucket, Key=key)
        except ClientError as e:
            raise StoreError(f"S3 delete failed ({_client_error_code(e)}): {e}")
        except BotoCoreError as e:
            raise StoreError(f"S3 delete failed: {e}")

    def list_objects(self, bucket, prefix=''):
        """
        List objects under a prefix.

        Returns:
            List of dicts with 'Key', 'LastModified', and 'Size' keys
        """
        try:
            objects = []
            paginator = self.s3_client.get_paginator('list_objects_v2')

            for page in paginator.paginate(Bucket=bucket, Prefix=prefix):
                for obj in page.get('Contents', []):
                    objects.append({
                        'Key': obj['Key'],
                        'LastModified': obj['LastModified'],
                        'Size': obj['Size']
                    })

            return objects

        except ClientError as e:
            raise StoreError(f"S3 list failed ({_client_error_code(e)}): {e}")
        except BotoCoreError as e:
            raise StoreError(f"Failed to list S3 objects: {e}")

    def test_connection(self, bucket):
        """
        Check that the bucket exists and is accessible.

        Raises:
            StoreError: If the bucket cannot be reached
        """
        try:
            self.s3_client.head_bucket(Bucket=bucket)
            return True
        except ClientError as e:
            error_code = _client_error_code(e)
            if error_code == '404':
                raise StoreError(f"Bucket does not exist: {bucket}")
            elif error_code == '403':
                raise StoreError(f"Access denied to bucket: {bucket}")
            else:
                raise StoreError(f"S3 connection test failed ({error_code}): {e}")
        except BotoCoreError as e:
            raise StoreError(f"Failed to connect to S3: {e}")


class LocalStorage:
    """
    Backup files on the local filesystem, one directory per target:
    {base_path}/{target_name}/{file_name}
    """

    def __init__(self, base_path: str):
        self.base_path = Path(base_path)

        try:
            self.base_path.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise StoreError(f"Failed to create local storage directory: {e}")

    def path_for(self, target_name: str, file_name: str) -> str:
        """Absolute path for a new backup file; creates the target directory."""
        target_dir = self.base_path / target_name
        try:
            target_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise StoreError(f"Failed to create directory {target_dir}: {e}")
        return str(target_dir / file_name)

    def delete(self, path: str) -> bool:
        """
        Delete a backup file.

        Returns:
            True if a file was removed, False if it was already gone

        Raises:
            StoreError: If deletion fails
        """
        full_path = Path(path)

        try:
            if full_path.exists():
                full_path.unlink()
                return True
            return False
        except PermissionError as e:
            raise StoreError(f"Permission denied deleting {full_path}: {e}")
        except OSError as e:
            raise StoreError(f"Failed to delete local file: {e}")
