"""
Object storage backend (Amazon S3 and S3-compatible services).

The boto3 client is created once per run and shared by all workers
(botocore clients are thread-safe). Region, credentials, storage class,
timeouts and the retry budget are connection-time settings.

Files up to ``Config.MULTIPART_THRESHOLD`` are sent with one ``PutObject``;
larger files use a multipart upload. An interrupted multipart upload of the
same key is picked up again on the next run: parts already on the server
whose ETag matches the MD5 of the local chunk are not re-sent.
"""

from __future__ import annotations

import hashlib
import logging
import math
import os
from typing import Any, Dict, List, Optional, Union

import boto3
from botocore.config import Config as BotoConfig
from botocore.exceptions import (
    BotoCoreError,
    ClientError,
    ConnectTimeoutError,
    EndpointConnectionError,
    NoCredentialsError,
    PartialCredentialsError,
    ReadTimeoutError,
)
from botocore.exceptions import ConnectionError as BotoConnectionError

from ..config import Config, ObjectStorageTarget
from ..errors import TransportError, TransportErrorKind, translate_os_error
from .base import RemoteEntry, Transport, join_remote, normalize_remote_path

logger = logging.getLogger('syncbox.transport.s3')

# S3 rejects parts below 5 MiB except the last one
MIN_PART_SIZE = 5 * 1024 * 1024

_AUTH_CODES = {
    'InvalidAccessKeyId', 'SignatureDoesNotMatch', 'ExpiredToken', 'InvalidToken',
    'TokenRefreshRequired', 'AuthFailure', 'UnrecognizedClientException', 'InvalidClientTokenId',
}
_NOT_FOUND_CODES = {'NoSuchKey', 'NotFound', '404', 'NoSuchUpload'}
_PERMISSION_CODES = {'AccessDenied', 'AllAccessDisabled', 'Forbidden', '403', 'InvalidObjectState'}
_TRANSIENT_CODES = {
    'RequestTimeout', 'RequestTimeoutException', 'SlowDown', 'ServiceUnavailable',
    'InternalError', 'Throttling', 'ThrottlingException', '500', '503',
}


def translate_s3_error(exc: Exception, path: Optional[str] = None) -> TransportError:
    """
    Map botocore exceptions to a :class:`TransportError`.

    A missing bucket is reported as CONNECTION_FAILED: no call against it
    can succeed.
    """
    if isinstance(exc, ClientError):
        error = exc.response.get('Error', {})
        code = str(error.get('Code', ''))
        message = error.get('Message') or code or str(exc)
        if code in _AUTH_CODES:
            return TransportError(TransportErrorKind.AUTH_FAILED, message, path)
        if code == 'NoSuchBucket':
            return TransportError(TransportErrorKind.CONNECTION_FAILED, f"bucket does not exist: {message}", path)
        if code in _NOT_FOUND_CODES:
            return TransportError(TransportErrorKind.NOT_FOUND, message, path)
        if code in _TRANSIENT_CODES:
            return TransportError(TransportErrorKind.TIMEOUT, message, path)
        if code in _PERMISSION_CODES:
            return TransportError(TransportErrorKind.PERMISSION_DENIED, message, path)
        return TransportError(TransportErrorKind.PERMISSION_DENIED, f"{code}: {message}", path)
    if isinstance(exc, (NoCredentialsError, PartialCredentialsError)):
        return TransportError(TransportErrorKind.AUTH_FAILED, str(exc), path)
    if isinstance(exc, (ConnectTimeoutError, ReadTimeoutError)):
        return TransportError(TransportErrorKind.TIMEOUT, str(exc), path)
    if isinstance(exc, (EndpointConnectionError, BotoConnectionError)):
        return TransportError(TransportErrorKind.CONNECTION_FAILED, str(exc), path)
    if isinstance(exc, BotoCoreError):
        return TransportError(TransportErrorKind.PERMISSION_DENIED, str(exc), path)
    if isinstance(exc, OSError):
        return translate_os_error(exc, path)
    return TransportError(TransportErrorKind.CONNECTION_FAILED, str(exc), path)


def create_client(target: ObjectStorageTarget, max_pool_connections: int = 10) -> Any:
    """
    Create an S3 client with bounded timeouts and retries.

    Without explicit keys boto3's default credential chain applies.
    """
    timeout = target.timeout or Config.TRANSPORT_TIMEOUT
    config = BotoConfig(
        connect_timeout=timeout,
        read_timeout=timeout,
        retries={"max_attempts": Config.S3_MAX_ATTEMPTS, "mode": "standard"},
        max_pool_connections=max(10, max_pool_connections),
    )
    kwargs: Dict[str, Any] = {"config": config}
    if target.region:
        kwargs["region_name"] = target.region
    if target.endpoint_url:
        kwargs["endpoint_url"] = target.endpoint_url
    if target.access_key and target.secret_key:
        kwargs["aws_access_key_id"] = target.access_key
        kwargs["aws_secret_access_key"] = target.secret_key
    return boto3.client("s3", **kwargs)


class ObjectStorageTransport(Transport):
    """
    Synchronize into a bucket, under an optional key prefix.

    Args:
        target: Bucket and connection parameters
        client: Pre-built boto3 S3 client (tests, custom sessions)
        concurrency: Worker count, used to size the HTTP connection pool
    """

    name = "s3"

    def __init__(self, target: ObjectStorageTarget, client: Any = None, concurrency: int = 1) -> None:
        self.target = target
        self.bucket = target.bucket
        self.prefix = target.directory.strip('/')
        self.storage_class = target.storage_class
        if client is None:
            try:
                client = create_client(target, max_pool_connections=concurrency)
            except (BotoCoreError, ValueError) as e:
                raise TransportError(TransportErrorKind.CONNECTION_FAILED, f"cannot create S3 client: {e}")
        self.client = client

    def __repr__(self) -> str:
        return f"ObjectStorageTransport({self.target!r})"

    def _key(self, path: str) -> str:
        return join_remote(self.prefix, normalize_remote_path(path))

    def _relative(self, key: str) -> str:
        if self.prefix and key.startswith(self.prefix + '/'):
            return key[len(self.prefix) + 1:]
        return key

    def list(self, prefix: str = "") -> List[RemoteEntry]:
        key_prefix = self._key(prefix) + "/" if prefix else (self.prefix + '/' if self.prefix else '')
        entries: List[RemoteEntry] = []
        try:
            paginator = self.client.get_paginator("list_objects_v2")
            for page in paginator.paginate(Bucket=self.bucket, Prefix=key_prefix):
                for obj in page.get("Contents", []) or []:
                    key = obj["Key"]
                    if key.endswith('/'):
                        continue  # directory placeholder
                    entries.append(RemoteEntry(self._relative(key), int(obj.get("Size", 0))))
        except (BotoCoreError, ClientError) as e:
            raise translate_s3_error(e, prefix or None)
        entries.sort(key=lambda e: e.path)
        return entries

    def exists(self, path: str) -> bool:
        try:
            self.client.head_object(Bucket=self.bucket, Key=self._key(path))
        except ClientError as e:
            error = translate_s3_error(e, path)
            if error.kind == TransportErrorKind.NOT_FOUND:
                return False
            raise error
        except BotoCoreError as e:
            raise translate_s3_error(e, path)
        return True

    def upload(self, local_path: Union[str, os.PathLike], remote_path: str) -> int:
        key = self._key(remote_path)
        try:
            size = os.path.getsize(local_path)
            if size > Config.MULTIPART_THRESHOLD:
                self._upload_multipart(local_path, key, size)
            else:
                with open(local_path, 'rb') as body:
                    self.client.put_object(
                        Bucket=self.bucket,
                        Key=key,
                        Body=body,
                        ContentLength=size,
                        StorageClass=self.storage_class,
                    )
        except (BotoCoreError, ClientError, OSError) as e:
            raise translate_s3_error(e, remote_path)
        logger.debug(f"Uploaded s3://{self.bucket}/{key} ({size} bytes)")
        return size

    def download(self, remote_path: str, local_path: Union[str, os.PathLike]) -> int:
        key = self._key(remote_path)
        received = 0
        try:
            response = self.client.get_object(Bucket=self.bucket, Key=key)
            body = response["Body"]
            with open(local_path, 'wb') as dst:
                for chunk in iter(lambda: body.read(Config.COPY_CHUNK_SIZE), b''):
                    dst.write(chunk)
                    received += len(chunk)
        except (BotoCoreError, ClientError, OSError) as e:
            raise translate_s3_error(e, remote_path)
        logger.debug(f"Downloaded s3://{self.bucket}/{key} ({received} bytes)")
        return received

    def delete(self, remote_path: str) -> None:
        try:
            self.client.delete_object(Bucket=self.bucket, Key=self._key(remote_path))
        except (BotoCoreError, ClientError) as e:
            raise translate_s3_error(e, remote_path)

    def close(self) -> None:
        close = getattr(self.client, 'close', None)
        if close is not None:
            close()

    # ------------------------------------------------------------------
    # Multipart upload
    # ------------------------------------------------------------------

    @staticmethod
    def part_size_for(size: int) -> int:
        """
        Part size for a file of ``size`` bytes.

        ``Config.MULTIPART_CHUNK_SIZE``, grown when needed to stay within
        ``Config.MAX_MULTIPART_PARTS``.

        Example:
            >>> ObjectStorageTransport.part_size_for(250 * 1024 * 1024) // (1024 * 1024)
            100
        """
        part_size = max(Config.MULTIPART_CHUNK_SIZE, MIN_PART_SIZE)
        return max(part_size, math.ceil(size / Config.MAX_MULTIPART_PARTS))

    def _find_pending_upload(self, key: str) -> Optional[str]:
        """Return the most recent unfinished multipart upload id for ``key``."""
        response = self.client.list_multipart_uploads(Bucket=self.bucket, Prefix=key)
        uploads = [u for u in response.get("Uploads", []) or [] if u.get("Key") == key]
        if not uploads:
            return None
        uploads.sort(key=lambda u: u["Initiated"])
        return uploads[-1]["UploadId"]

    def _uploaded_parts(self, key: str, upload_id: str) -> Dict[int, Dict[str, Any]]:
        parts: Dict[int, Dict[str, Any]] = {}
        paginator = self.client.get_paginator("list_parts")
        for page in paginator.paginate(Bucket=self.bucket, Key=key, UploadId=upload_id):
            for part in page.get("Parts", []) or []:
                parts[part["PartNumber"]] = part
        return parts

    def _upload_multipart(self, local_path: Union[str, os.PathLike], key: str, size: int) -> None:
        """Send ``local_path`` in parts; on failure the upload is left open for the next run."""
        part_size = self.part_size_for(size)
        upload_id = self._find_pending_upload(key)
        existing: Dict[int, Dict[str, Any]] = {}
        if upload_id is not None:
            try:
                existing = self._uploaded_parts(key, upload_id)
                logger.info(f"Resuming multipart upload of {key} ({len(existing)} part(s) already sent)")
            except ClientError as e:
                if translate_s3_error(e).kind != TransportErrorKind.NOT_FOUND:
                    raise
                upload_id = None
        if upload_id is None:
            response = self.client.create_multipart_upload(
                Bucket=self.bucket, Key=key, StorageClass=self.storage_class,
            )
            upload_id = response["UploadId"]

        completed: List[Dict[str, Any]] = []
        with open(local_path, 'rb') as f:
            part_number = 1
            while True:
                chunk = f.read(part_size)
                if not chunk:
                    break
                etag = self._reusable_etag(existing.get(part_number), chunk)
                if etag is None:
                    response = self.client.upload_part(
                        Bucket=self.bucket, Key=key, UploadId=upload_id,
                        PartNumber=part_number, Body=chunk,
                    )
                    etag = response["ETag"]
                else:
                    logger.debug(f"Reusing part {part_number} of {key}")
                completed.append({"ETag": etag, "PartNumber": part_number})
                part_number += 1

        self.client.complete_multipart_upload(
            Bucket=self.bucket, Key=key, UploadId=upload_id,
            MultipartUpload={"Parts": completed},
        )

    @staticmethod
    def _reusable_etag(part: Optional[Dict[str, Any]], chunk: bytes) -> Optional[str]:
        if part is None or part.get("Size") != len(chunk):
            return None
        etag = str(part.get("ETag", ""))
        if etag.strip('"').lower() != hashlib.md5(chunk).hexdigest():
            return None
        return etag
