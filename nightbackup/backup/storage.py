"""
Storage handlers for backup artifacts.

Supports:
- S3Storage: the remote object store; one bucket per run and host
- LocalStorage: the local backup root holding run directories
"""

import os
import shutil
import logging
from pathlib import Path
from typing import Any, Dict, List, Optional

import boto3
from botocore.exceptions import ClientError, BotoCoreError

from nightbackup.config import ConfigurationError, Settings


logger = logging.getLogger(__name__)

# Error codes meaning "bucket or object does not exist (yet)"
NOT_FOUND_CODES = {'404', 'NoSuchBucket', 'NoSuchKey', 'NotFound'}

MULTIPART_THRESHOLD = 100 * 1024 * 1024  # 100MB
MULTIPART_CHUNK_SIZE = 10 * 1024 * 1024  # 10MB


class StorageError(Exception):
    """Raised when storage operation fails."""
    pass


def _error_code(error: ClientError) -> str:
    return str(error.response.get('Error', {}).get('Code', 'Unknown'))


def is_not_found(error: ClientError) -> bool:
    return _error_code(error) in NOT_FOUND_CODES


class S3Storage:
    """
    Handler for the remote S3 store.

    Each run is mirrored into its own bucket ("container"), named
    `backup.<YYMMDDwww>.<host>`; objects are named after the artifacts.
    """

    def __init__(
        self,
        access_key: str,
        secret_key: str,
        region: str = 'us-east-1',
        endpoint_url: Optional[str] = None
    ):
        """
        Initialize S3 storage handler.

        Args:
            access_key: AWS access key ID
            secret_key: AWS secret access key
            region: AWS region (default: us-east-1)
            endpoint_url: Optional S3-compatible endpoint
        """
        self.region = region

        try:
            self.s3_client = boto3.client(
                's3',
                aws_access_key_id=access_key,
                aws_secret_access_key=secret_key,
                region_name=region,
                endpoint_url=endpoint_url
            )
        except Exception as e:
            raise StorageError(f"Failed to initialize S3 client: {e}")

    @classmethod
    def from_settings(cls, settings: Settings) -> 'S3Storage':
        """
        Create a handler from run settings.

        Raises:
            ConfigurationError: If credentials are missing
        """
        if not settings.aws_access_key_id:
            raise ConfigurationError("aws_access_key_id is not configured")

        return cls(
            access_key=settings.aws_access_key_id,
            secret_key=settings.resolve_aws_secret(),
            region=settings.aws_region,
            endpoint_url=settings.s3_endpoint_url
        )

    def container_exists(self, name: str) -> bool:
        """
        Check whether a bucket exists.

        Raises:
            StorageError: On any error other than "not found"
        """
        try:
            self.s3_client.head_bucket(Bucket=name)
            return True
        except ClientError as e:
            if is_not_found(e):
                return False
            raise StorageError(f"S3 head bucket failed ({_error_code(e)}): {e}")
        except BotoCoreError as e:
            raise StorageError(f"S3 head bucket failed: {e}")

    def ensure_container(self, name: str) -> bool:
        """
        Create a bucket unless it already exists.

        Returns:
            True if the bucket was created, False if it already existed

        Raises:
            StorageError: If creation fails
        """
        if self.container_exists(name):
            return False

        kwargs = {'Bucket': name}
        if self.region != 'us-east-1':
            kwargs['CreateBucketConfiguration'] = {'LocationConstraint': self.region}

        try:
            self.s3_client.create_bucket(**kwargs)
        except ClientError as e:
            # Lost a race with ourselves; the bucket is there now
            if _error_code(e) == 'BucketAlreadyOwnedByYou':
                return False
            raise StorageError(f"S3 create bucket failed ({_error_code(e)}): {e}")
        except BotoCoreError as e:
            raise StorageError(f"S3 create bucket failed: {e}")

        logger.info(f"Created bucket {name}")
        return True

    def list_containers(self) -> List[str]:
        """
        List all bucket names.

        Raises:
            StorageError: If listing fails
        """
        try:
            response = self.s3_client.list_buckets()
        except ClientError as e:
            raise StorageError(f"S3 list buckets failed ({_error_code(e)}): {e}")
        except BotoCoreError as e:
            raise StorageError(f"S3 list buckets failed: {e}")

        return [bucket['Name'] for bucket in response.get('Buckets', [])]

    def list_objects(self, container: str, prefix: str = '') -> List[Dict[str, Any]]:
        """
        List objects in a bucket.

        Args:
            container: Bucket name
            prefix: Optional key prefix to filter by

        Returns:
            List of dicts with 'Key', 'LastModified', and 'Size' keys

        Raises:
            StorageError: If listing fails
        """
        try:
            objects = []
            paginator = self.s3_client.get_paginator('list_objects_v2')

            for page in paginator.paginate(Bucket=container, Prefix=prefix):
                for obj in page.get('Contents', []):
                    objects.append({
                        'Key': obj['Key'],
                        'LastModified': obj['LastModified'],
                        'Size': obj['Size']
                    })

            return objects

        except ClientError as e:
            raise StorageError(f"S3 list failed ({_error_code(e)}): {e}")
        except BotoCoreError as e:
            raise StorageError(f"S3 list failed: {e}")

    def object_exists(self, container: str, key: str) -> bool:
        """
        Check whether an object exists.

        Raises:
            StorageError: On any error other than "not found"
        """
        try:
            self.s3_client.head_object(Bucket=container, Key=key)
            return True
        except ClientError as e:
            if is_not_found(e):
                return False
            raise StorageError(f"S3 head object failed ({_error_code(e)}): {e}")
        except BotoCoreError as e:
            raise StorageError(f"S3 head object failed: {e}")

    def upload(self, container: str, local_path: str, key: Optional[str] = None) -> str:
        """
        Upload a file to a bucket.

        Args:
            container: Bucket name
            local_path: Path to local file
            key: Object key (default: the file's name)

        Returns:
            Object key of uploaded file

        Raises:
            StorageError: If upload fails
        """
        if not os.path.exists(local_path):
            raise StorageError(f"Local file not found: {local_path}")

        key = key or os.path.basename(local_path)

        try:
            file_size = os.path.getsize(local_path)

            # Use multipart upload for large artifacts
            if file_size > MULTIPART_THRESHOLD:
                self._multipart_upload(container, local_path, key)
            else:
                self._simple_upload(container, local_path, key)

            return key

        except ClientError as e:
            raise StorageError(f"S3 upload failed ({_error_code(e)}): {e}")
        except BotoCoreError as e:
            raise StorageError(f"S3 upload failed: {e}")
        except OSError as e:
            raise StorageError(f"Failed to read {local_path}: {e}")

    def _simple_upload(self, container: str, local_path: str, key: str):
        with open(local_path, 'rb') as f:
            self.s3_client.put_object(
                Bucket=container,
                Key=key,
                Body=f
            )

    def _multipart_upload(self, container: str, local_path: str, key: str):
        """
        Upload large file using multipart upload.

        The upload is aborted if any part fails.
        """
        response = self.s3_client.create_multipart_upload(
            Bucket=container,
            Key=key
        )
        upload_id = response['UploadId']

        parts = []

        try:
            with open(local_path, 'rb') as f:
                part_number = 1

                while True:
                    data = f.read(MULTIPART_CHUNK_SIZE)
                    if not data:
                        break

                    response = self.s3_client.upload_part(
                        Bucket=container,
                        Key=key,
                        PartNumber=part_number,
                        UploadId=upload_id,
                        Body=data
                    )

                    parts.append({
                        'PartNumber': part_number,
                        'ETag': response['ETag']
                    })

                    part_number += 1

            self.s3_client.complete_multipart_upload(
                Bucket=container,
                Key=key,
                UploadId=upload_id,
                MultipartUpload={'Parts': parts}
            )

        except Exception:
            try:
                self.s3_client.abort_multipart_upload(
                    Bucket=container,
                    Key=key,
                    UploadId=upload_id
                )
            except (ClientError, BotoCoreError) as abort_error:
                logger.warning(f"Failed to abort multipart upload of {key}: {abort_error}")
            raise

    def delete_object(self, container: str, key: str):
        """
        Delete an object from a bucket.

        Raises:
            StorageError: If deletion fails
        """
        try:
            self.s3_client.delete_object(
                Bucket=container,
                Key=key
            )
        except ClientError as e:
            raise StorageError(f"S3 delete failed ({_error_code(e)}): {e}")
        except BotoCoreError as e:
            raise StorageError(f"S3 delete failed: {e}")

    def delete_container(self, name: str):
        """
        Delete an (empty) bucket.

        Raises:
            StorageError: If deletion fails
        """
        try:
            self.s3_client.delete_bucket(Bucket=name)
        except ClientError as e:
            raise StorageError(f"S3 delete bucket failed ({_error_code(e)}): {e}")
        except BotoCoreError as e:
            raise StorageError(f"S3 delete bucket failed: {e}")


class LocalStorage:
    """
    Handler for the local backup root.

    Entries are the direct children of base_path, normally one run
    directory per day.
    """

    def __init__(self, base_path: str):
        self.base_path = Path(base_path)

    def list_entries(self) -> List[str]:
        """
        List entry names under the backup root.

        Returns:
            Sorted names, or an empty list if the root does not exist

        Raises:
            StorageError: If listing fails
        """
        if not self.base_path.exists():
            return []

        try:
            return sorted(entry.name for entry in self.base_path.iterdir())
        except OSError as e:
            raise StorageError(f"Failed to list {self.base_path}: {e}")

    def remove(self, name: str):
        """
        Remove an entry (a run directory or a stray file).

        Raises:
            StorageError: If removal fails
        """
        full_path = self.base_path / name

        try:
            if full_path.is_dir() and not full_path.is_symlink():
                shutil.rmtree(full_path)
            elif full_path.exists() or full_path.is_symlink():
                full_path.unlink()
        except PermissionError as e:
            raise StorageError(f"Permission denied deleting {full_path}: {e}")
        except OSError as e:
            raise StorageError(f"Failed to delete {full_path}: {e}")
