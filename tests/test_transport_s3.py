#!/usr/bin/env python
"""
Object storage transport tests
==============================

A real boto3 client is built with dummy credentials and driven through
``botocore.stub.Stubber``, so request parameters are checked against the
S3 API model without any network access.
"""

import datetime
import hashlib
import io
import unittest
from pathlib import Path
from tempfile import TemporaryDirectory

import boto3
from botocore.exceptions import ClientError, EndpointConnectionError, NoCredentialsError, ReadTimeoutError
from botocore.response import StreamingBody
from botocore.stub import ANY, Stubber

from syncbox.config import Config, ObjectStorageTarget
from syncbox.errors import TransportError, TransportErrorKind
from syncbox.transport import ObjectStorageTransport, RemoteEntry
from syncbox.transport.s3 import MIN_PART_SIZE, create_client, translate_s3_error

MiB = 1024 * 1024


def _client():
    return boto3.client(
        "s3",
        region_name="us-east-1",
        aws_access_key_id="testing",
        aws_secret_access_key="testing",
    )


def _client_error(code, operation="PutObject", status=400):
    return ClientError({"Error": {"Code": code, "Message": f"{code} message"},
                        "ResponseMetadata": {"HTTPStatusCode": status}}, operation)


class S3TestCase(unittest.TestCase):

    def setUp(self):
        self._tmp = TemporaryDirectory()
        self.local = Path(self._tmp.name)
        self.client = _client()
        self.stub = Stubber(self.client)
        self.stub.activate()
        self.transport = ObjectStorageTransport(
            ObjectStorageTarget("bucket", directory="/backup/"), client=self.client,
        )

    def tearDown(self):
        self.stub.deactivate()
        Config.reset_defaults()
        self._tmp.cleanup()

    def _source(self, name: str, data: bytes) -> Path:
        path = self.local / name
        path.write_bytes(data)
        return path


class TestObjectStorageBasics(S3TestCase):
    """put/head/list/delete requests"""

    def test_upload_small_file(self):
        self.stub.add_response(
            "put_object", {"ETag": '"abc"'},
            {"Bucket": "bucket", "Key": "backup/docs/a.txt", "Body": ANY,
             "ContentLength": 5, "StorageClass": "STANDARD"},
        )
        sent = self.transport.upload(self._source("a.txt", b"hello"), "docs/a.txt")
        self.assertEqual(sent, 5)
        self.stub.assert_no_pending_responses()

    def test_storage_class_applied(self):
        transport = ObjectStorageTransport(
            ObjectStorageTarget("bucket", storage_class="STANDARD_IA"), client=self.client,
        )
        self.stub.add_response(
            "put_object", {},
            {"Bucket": "bucket", "Key": "a.txt", "Body": ANY,
             "ContentLength": 1, "StorageClass": "STANDARD_IA"},
        )
        transport.upload(self._source("a.txt", b"a"), "a.txt")
        self.stub.assert_no_pending_responses()

    def test_exists(self):
        self.stub.add_response("head_object", {"ContentLength": 5},
                               {"Bucket": "bucket", "Key": "backup/a.txt"})
        self.stub.add_client_error("head_object", service_error_code="404",
                                   service_message="Not Found", http_status_code=404)
        self.assertTrue(self.transport.exists("a.txt"))
        self.assertFalse(self.transport.exists("b.txt"))

    def test_list_strips_prefix(self):
        self.stub.add_response(
            "list_objects_v2",
            {"Contents": [{"Key": "backup/z/b.txt", "Size": 2},
                          {"Key": "backup/a.txt", "Size": 1},
                          {"Key": "backup/empty/", "Size": 0}],
             "IsTruncated": False},
            {"Bucket": "bucket", "Prefix": "backup/"},
        )
        self.assertEqual(self.transport.list(), [RemoteEntry("a.txt", 1), RemoteEntry("z/b.txt", 2)])

    def test_list_under_prefix(self):
        self.stub.add_response("list_objects_v2", {"IsTruncated": False},
                               {"Bucket": "bucket", "Prefix": "backup/docs/"})
        self.assertEqual(self.transport.list("docs"), [])

    def test_delete(self):
        self.stub.add_response("delete_object", {}, {"Bucket": "bucket", "Key": "backup/a/b.txt"})
        self.transport.delete("a/b.txt")
        self.stub.assert_no_pending_responses()

    def test_download(self):
        data = b"remote manifest"
        self.stub.add_response(
            "get_object", {"Body": StreamingBody(io.BytesIO(data), len(data)), "ContentLength": len(data)},
            {"Bucket": "bucket", "Key": "backup/.syncbox.json.gz"},
        )

        received = self.transport.download(".syncbox.json.gz", self.local / "fetched.gz")

        self.assertEqual(received, len(data))
        self.assertEqual((self.local / "fetched.gz").read_bytes(), data)
        self.stub.assert_no_pending_responses()

    def test_download_missing_key_is_not_found(self):
        self.stub.add_client_error("get_object", service_error_code="NoSuchKey", http_status_code=404)
        with self.assertRaises(TransportError) as ctx:
            self.transport.download(".syncbox.json.gz", self.local / "fetched.gz")
        self.assertEqual(ctx.exception.kind, TransportErrorKind.NOT_FOUND)


class TestObjectStorageErrors(S3TestCase):
    """Service errors surface as TransportError"""

    def test_access_denied_is_per_file(self):
        self.stub.add_client_error("put_object", service_error_code="AccessDenied",
                                   service_message="Access Denied", http_status_code=403)
        with self.assertRaises(TransportError) as ctx:
            self.transport.upload(self._source("a.txt", b"a"), "a.txt")
        self.assertEqual(ctx.exception.kind, TransportErrorKind.PERMISSION_DENIED)
        self.assertEqual(ctx.exception.path, "a.txt")

    def test_bad_credentials_are_fatal(self):
        self.stub.add_client_error("delete_object", service_error_code="InvalidAccessKeyId",
                                   http_status_code=403)
        with self.assertRaises(TransportError) as ctx:
            self.transport.delete("a.txt")
        self.assertEqual(ctx.exception.kind, TransportErrorKind.AUTH_FAILED)
        self.assertTrue(ctx.exception.is_fatal)

    def test_missing_bucket_is_fatal(self):
        self.stub.add_client_error("list_objects_v2", service_error_code="NoSuchBucket",
                                   http_status_code=404)
        with self.assertRaises(TransportError) as ctx:
            self.transport.list()
        self.assertEqual(ctx.exception.kind, TransportErrorKind.CONNECTION_FAILED)

    def test_missing_local_file(self):
        with self.assertRaises(TransportError) as ctx:
            self.transport.upload(self.local / "missing", "a.txt")
        self.assertEqual(ctx.exception.kind, TransportErrorKind.NOT_FOUND)

    def test_error_translation(self):
        cases = [
            (_client_error("SignatureDoesNotMatch"), TransportErrorKind.AUTH_FAILED),
            (_client_error("NoSuchKey"), TransportErrorKind.NOT_FOUND),
            (_client_error("SlowDown", status=503), TransportErrorKind.TIMEOUT),
            (_client_error("InternalError", status=500), TransportErrorKind.TIMEOUT),
            (_client_error("InvalidObjectState"), TransportErrorKind.PERMISSION_DENIED),
            (_client_error("EntityTooLarge"), TransportErrorKind.PERMISSION_DENIED),
            (NoCredentialsError(), TransportErrorKind.AUTH_FAILED),
            (ReadTimeoutError(endpoint_url="https://s3.amazonaws.com"), TransportErrorKind.TIMEOUT),
            (EndpointConnectionError(endpoint_url="https://s3.amazonaws.com"), TransportErrorKind.CONNECTION_FAILED),
        ]
        for exc, kind in cases:
            with self.subTest(exc=exc):
                self.assertEqual(translate_s3_error(exc, "k").kind, kind)


class TestMultipartUpload(S3TestCase):
    """Large files: multipart upload and resumption"""

    def setUp(self):
        super().setUp()
        Config.MULTIPART_THRESHOLD = 1024
        Config.MULTIPART_CHUNK_SIZE = 1  # raised to the 5 MiB minimum
        self.part1 = b"a" * MIN_PART_SIZE
        self.part2 = b"b" * MiB
        self.path = self._source("big.bin", self.part1 + self.part2)
        self.key = "backup/big.bin"

    def test_part_size(self):
        Config.reset_defaults()
        self.assertEqual(ObjectStorageTransport.part_size_for(250 * MiB), 100 * MiB)
        Config.MAX_MULTIPART_PARTS = 10
        self.assertEqual(ObjectStorageTransport.part_size_for(2000 * MiB), 200 * MiB)
        Config.MULTIPART_CHUNK_SIZE = 1
        Config.MAX_MULTIPART_PARTS = 10000
        self.assertEqual(ObjectStorageTransport.part_size_for(6 * MiB), MIN_PART_SIZE)

    def test_new_multipart_upload(self):
        self.stub.add_response("list_multipart_uploads", {"Uploads": []},
                               {"Bucket": "bucket", "Prefix": self.key})
        self.stub.add_response("create_multipart_upload", {"UploadId": "u1"},
                               {"Bucket": "bucket", "Key": self.key, "StorageClass": "STANDARD"})
        for number in (1, 2):
            self.stub.add_response(
                "upload_part", {"ETag": f'"e{number}"'},
                {"Bucket": "bucket", "Key": self.key, "UploadId": "u1", "PartNumber": number, "Body": ANY},
            )
        self.stub.add_response(
            "complete_multipart_upload", {},
            {"Bucket": "bucket", "Key": self.key, "UploadId": "u1",
             "MultipartUpload": {"Parts": [{"ETag": '"e1"', "PartNumber": 1},
                                           {"ETag": '"e2"', "PartNumber": 2}]}},
        )

        sent = self.transport.upload(self.path, "big.bin")

        self.assertEqual(sent, len(self.part1) + len(self.part2))
        self.stub.assert_no_pending_responses()

    def test_resumes_latest_pending_upload(self):
        """Parts whose size and MD5 match are reused, the rest is sent"""
        part1_etag = '"%s"' % hashlib.md5(self.part1).hexdigest()
        self.stub.add_response(
            "list_multipart_uploads",
            {"Uploads": [
                {"Key": self.key, "UploadId": "old",
                 "Initiated": datetime.datetime(2024, 1, 1, tzinfo=datetime.timezone.utc)},
                {"Key": self.key, "UploadId": "u0",
                 "Initiated": datetime.datetime(2024, 2, 1, tzinfo=datetime.timezone.utc)},
                {"Key": self.key + ".bak", "UploadId": "other",
                 "Initiated": datetime.datetime(2024, 3, 1, tzinfo=datetime.timezone.utc)},
            ]},
            {"Bucket": "bucket", "Prefix": self.key},
        )
        self.stub.add_response(
            "list_parts",
            {"Parts": [{"PartNumber": 1, "ETag": part1_etag, "Size": len(self.part1)},
                       {"PartNumber": 2, "ETag": '"stale"', "Size": 12}],
             "IsTruncated": False},
            {"Bucket": "bucket", "Key": self.key, "UploadId": "u0"},
        )
        self.stub.add_response(
            "upload_part", {"ETag": '"e2"'},
            {"Bucket": "bucket", "Key": self.key, "UploadId": "u0", "PartNumber": 2, "Body": ANY},
        )
        self.stub.add_response(
            "complete_multipart_upload", {},
            {"Bucket": "bucket", "Key": self.key, "UploadId": "u0",
             "MultipartUpload": {"Parts": [{"ETag": part1_etag, "PartNumber": 1},
                                           {"ETag": '"e2"', "PartNumber": 2}]}},
        )

        self.transport.upload(self.path, "big.bin")

        self.stub.assert_no_pending_responses()

    def test_failed_part_leaves_upload_open(self):
        """A failing part surfaces as TransportError without aborting the upload"""
        self.stub.add_response("list_multipart_uploads", {}, {"Bucket": "bucket", "Prefix": self.key})
        self.stub.add_response("create_multipart_upload", {"UploadId": "u1"})
        self.stub.add_client_error("upload_part", service_error_code="RequestTimeout", http_status_code=400)

        with self.assertRaises(TransportError) as ctx:
            self.transport.upload(self.path, "big.bin")

        self.assertEqual(ctx.exception.kind, TransportErrorKind.TIMEOUT)
        self.stub.assert_no_pending_responses()


class TestCreateClient(unittest.TestCase):
    """Client construction from the target"""

    def test_connection_settings(self):
        target = ObjectStorageTarget("bucket", region="eu-central-1", access_key="AK", secret_key="SK",
                                     endpoint_url="http://localhost:9000", timeout=7)
        client = create_client(target, max_pool_connections=16)

        self.assertEqual(client.meta.region_name, "eu-central-1")
        self.assertEqual(client.meta.endpoint_url, "http://localhost:9000")
        self.assertEqual(client.meta.config.connect_timeout, 7)
        self.assertEqual(client.meta.config.read_timeout, 7)
        self.assertEqual(client.meta.config.max_pool_connections, 16)
        self.assertEqual(client.meta.config.retries["mode"], "standard")


if __name__ == "__main__":
    unittest.main()
