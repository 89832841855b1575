"""
Upload of finished archives to S3-compatible object storage.
"""

import logging
import os
from datetime import datetime
from typing import Optional

import boto3
from botocore.exceptions import (
    BotoCoreError,
    ClientError,
    EndpointConnectionError,
    NoCredentialsError,
    PartialCredentialsError,
)


logger = logging.getLogger(__name__)

ARCHIVE_SUFFIX = '.tar.gz'

# S3 error codes meaning the credentials or the endpoint/bucket were rejected
AUTH_ERROR_CODES = {
    '401',
    '403',
    'AccessDenied',
    'AllAccessDisabled',
    'ExpiredToken',
    'InvalidAccessKeyId',
    'InvalidBucketName',
    'InvalidToken',
    'NoSuchBucket',
    'SignatureDoesNotMatch',
}


class StorageError(Exception):
    """Raised when storage operation fails."""
    pass


class UploadAuthError(StorageError):
    """Raised when the endpoint rejects the credentials or the bucket."""
    pass


class UploadTransferError(StorageError):
    """Raised when the transfer itself fails."""
    pass


def generate_archive_name(name_format: str, started_at: datetime) -> str:
    """
    Generate the object name of a run's archive.

    Args:
        name_format: strftime format, e.g. '%Y-%m-%d-%H-%M-%S'
        started_at: Run start time

    Returns:
        Object name, e.g. '2024-01-15-02-00-00.tar.gz'
    """
    return f"{started_at.strftime(name_format)}{ARCHIVE_SUFFIX}"


class S3Storage:
    """
    Handler for uploading backups to an S3-compatible bucket.
    """

    # Files above this size are sent with a multipart upload
    MULTIPART_THRESHOLD = 100 * 1024 * 1024
    CHUNK_SIZE = 10 * 1024 * 1024

    def __init__(self, endpoint: str, key_id: str, secret_access_key: str, bucket_name: str,
                 region: str = 'us-east-1', secure: bool = True):
        """
        Initialize S3 storage handler.

        Args:
            endpoint: Host (and optional port) of the object storage service,
                or a full URL. Empty means AWS S3.
            key_id: Access key ID
            secret_access_key: Secret access key
            bucket_name: Destination bucket
            region: Region name (default: us-east-1)
            secure: Use HTTPS when endpoint has no scheme
        """
        self.bucket_name = bucket_name
        self.region = region
        self.endpoint_url = self._endpoint_url(endpoint, secure)

        try:
            self.s3_client = boto3.client(
                's3',
                endpoint_url=self.endpoint_url,
                aws_access_key_id=key_id,
                aws_secret_access_key=secret_access_key,
                region_name=region
            )
        except (BotoCoreError, ValueError) as e:
            raise UploadAuthError(f"Failed to initialize S3 client: {e}") from e

    @staticmethod
    def _endpoint_url(endpoint: str, secure: bool) -> Optional[str]:
        if not endpoint:
            return None
        if '://' in endpoint:
            return endpoint
        scheme = 'https' if secure else 'http'
        return f"{scheme}://{endpoint}"

    @classmethod
    def from_config(cls, upload_config) -> 'S3Storage':
        return cls(
            endpoint=upload_config.endpoint,
            key_id=upload_config.key_id,
            secret_access_key=upload_config.secret_access_key,
            bucket_name=upload_config.bucket,
            region=upload_config.region,
            secure=upload_config.secure
        )

    def upload(self, local_path: str, object_name: str,
               content_type: str = 'application/x-tar') -> str:
        """
        Upload a closed archive file.

        Args:
            local_path: Path to local archive file
            object_name: Destination object key
            content_type: Content-Type stored with the object

        Returns:
            Object key of uploaded file

        Raises:
            UploadAuthError: If credentials, endpoint or bucket are rejected
            UploadTransferError: If the transfer fails
        """
        if not os.path.exists(local_path):
            raise UploadTransferError(f"Local file not found: {local_path}")

        try:
            file_size = os.path.getsize(local_path)

            if file_size > self.MULTIPART_THRESHOLD:
                self._multipart_upload(local_path, object_name, content_type)
            else:
                self._simple_upload(local_path, object_name, content_type)

            return object_name

        except ClientError as e:
            error_code = e.response.get('Error', {}).get('Code', 'Unknown')
            if error_code in AUTH_ERROR_CODES:
                raise UploadAuthError(f"S3 upload rejected ({error_code}): {e}") from e
            raise UploadTransferError(f"S3 upload failed ({error_code}): {e}") from e
        except (NoCredentialsError, PartialCredentialsError) as e:
            raise UploadAuthError(f"S3 credentials rejected: {e}") from e
        except EndpointConnectionError as e:
            raise UploadTransferError(f"S3 endpoint unreachable: {e}") from e
        except BotoCoreError as e:
            raise UploadTransferError(f"S3 upload failed: {e}") from e
        except OSError as e:
            raise UploadTransferError(f"Failed to read {local_path}: {e}") from e

    def _simple_upload(self, local_path: str, object_name: str, content_type: str):
        with open(local_path, 'rb') as f:
            self.s3_client.put_object(
                Bucket=self.bucket_name,
                Key=object_name,
                Body=f,
                ContentType=content_type
            )

    def _multipart_upload(self, local_path: str, object_name: str, content_type: str):
        """
        Upload large file in CHUNK_SIZE parts, aborting the upload on error.
        """
        response = self.s3_client.create_multipart_upload(
            Bucket=self.bucket_name,
            Key=object_name,
            ContentType=content_type
        )
        upload_id = response['UploadId']

        parts = []

        try:
            with open(local_path, 'rb') as f:
                part_number = 1

                while True:
                    data = f.read(self.CHUNK_SIZE)
                    if not data:
                        break

                    response = self.s3_client.upload_part(
                        Bucket=self.bucket_name,
                        Key=object_name,
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
                Bucket=self.bucket_name,
                Key=object_name,
                UploadId=upload_id,
                MultipartUpload={'Parts': parts}
            )

        except Exception:
            try:
                self.s3_client.abort_multipart_upload(
                    Bucket=self.bucket_name,
                    Key=object_name,
                    UploadId=upload_id
                )
            except (ClientError, BotoCoreError) as abort_error:
                logger.warning(f"Failed to abort multipart upload {upload_id}: {abort_error}")
            raise
