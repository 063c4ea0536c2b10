"""Tests for S3 storage client."""

from io import BytesIO
from unittest.mock import MagicMock, patch

import pytest
from botocore.exceptions import ClientError

from bucketfront.app.services.transfer_client import (
    ObjectTransferClient,
    TransferConfig,
    UploadDeadlineExceededError,
)
from bucketfront.infra.storage.client import (
    CompletedPart,
    MultipartUpload,
    NoSuchObjectError,
    ObjectPage,
    StorageError,
)
from bucketfront.infra.storage.s3_client import S3StorageClient
from tests.services.mock_storage import FakeClock


def _client_error(code: str, operation: str = "GetObject") -> ClientError:
    return ClientError({"Error": {"Code": code, "Message": code}}, operation)


class TestS3StorageClient:
    """Test S3StorageClient implementation."""

    @pytest.fixture
    def mock_s3(self):
        """Mock boto3 S3 client."""
        mock_client = MagicMock()
        with patch.object(S3StorageClient, "_build_client", return_value=mock_client):
            yield mock_client

    @pytest.fixture
    def mock_settings(self):
        """Create mock settings for S3."""
        settings = MagicMock()
        settings.S3_ENDPOINT_URL = "http://localhost:9000"
        settings.S3_REGION = "us-east-1"
        settings.S3_ACCESS_KEY_ID = "test-key"
        settings.S3_SECRET_ACCESS_KEY = "test-secret"
        settings.S3_USE_SSL = False
        settings.S3_ADDRESSING_STYLE = "path"
        settings.S3_CONNECT_TIMEOUT = 5.0
        settings.S3_READ_TIMEOUT = 10.0
        settings.S3_MAX_ATTEMPTS = 2
        settings.STORAGE_PART_SIZE_BYTES = 8
        return settings

    @pytest.fixture
    def client(self, mock_s3, mock_settings):
        """Create S3StorageClient with mocked boto3."""
        return S3StorageClient(settings=mock_settings)

    def test_build_client_passes_timeouts_and_retries(self, mock_settings):
        with patch("boto3.client") as boto_client:
            S3StorageClient(settings=mock_settings)

        kwargs = boto_client.call_args[1]
        assert boto_client.call_args[0] == ("s3",)
        assert kwargs["endpoint_url"] == "http://localhost:9000"
        assert kwargs["use_ssl"] is False
        config = kwargs["config"]
        assert config.connect_timeout == 5.0
        assert config.read_timeout == 10.0
        assert config.retries == {"max_attempts": 2, "mode": "standard"}
        assert config.s3 == {"addressing_style": "path"}

    def test_small_object_uses_single_put(self, client, mock_s3):
        writer = client.open_write(
            bucket="test-bucket", object_key="test/key", content_type="text/plain"
        )
        writer.write(b"abc")
        writer.write(b"de")
        writer.commit()

        mock_s3.put_object.assert_called_once_with(
            Bucket="test-bucket",
            Key="test/key",
            Body=b"abcde",
            ContentType="text/plain",
        )
        mock_s3.create_multipart_upload.assert_not_called()

    def test_large_object_switches_to_multipart(self, client, mock_s3):
        mock_s3.create_multipart_upload.return_value = {"UploadId": "up-1"}
        mock_s3.upload_part.side_effect = lambda **kw: {"ETag": f'"etag{kw["PartNumber"]}"'}

        writer = client.open_write(bucket="test-bucket", object_key="big/key")
        writer.write(b"0123456789")
        writer.write(b"abcdefghij")
        assert writer.upload_id == "up-1"
        writer.commit()

        bodies = [c[1]["Body"] for c in mock_s3.upload_part.call_args_list]
        assert bodies == [b"01234567", b"89abcdef", b"ghij"]
        mock_s3.complete_multipart_upload.assert_called_once_with(
            Bucket="test-bucket",
            Key="big/key",
            UploadId="up-1",
            MultipartUpload={
                "Parts": [
                    {"ETag": '"etag1"', "PartNumber": 1},
                    {"ETag": '"etag2"', "PartNumber": 2},
                    {"ETag": '"etag3"', "PartNumber": 3},
                ]
            },
        )
        mock_s3.put_object.assert_not_called()

    def test_abort_after_parts_aborts_multipart(self, client, mock_s3):
        mock_s3.create_multipart_upload.return_value = {"UploadId": "up-2"}
        mock_s3.upload_part.return_value = {"ETag": '"e"'}

        writer = client.open_write(bucket="test-bucket", object_key="big/key")
        writer.write(b"0123456789")
        writer.abort()
        writer.abort()

        mock_s3.abort_multipart_upload.assert_called_once_with(
            Bucket="test-bucket", Key="big/key", UploadId="up-2"
        )
        mock_s3.complete_multipart_upload.assert_not_called()

    def test_abort_before_any_part_sends_nothing(self, client, mock_s3):
        writer = client.open_write(bucket="test-bucket", object_key="k")
        writer.write(b"abc")
        writer.abort()

        mock_s3.put_object.assert_not_called()
        mock_s3.abort_multipart_upload.assert_not_called()

    def test_write_after_commit_fails(self, client, mock_s3):
        writer = client.open_write(bucket="test-bucket", object_key="k")
        writer.commit()

        with pytest.raises(StorageError, match="already closed"):
            writer.write(b"late")

    def test_failed_commit_can_be_aborted(self, client, mock_s3):
        mock_s3.create_multipart_upload.return_value = {"UploadId": "up-3"}
        mock_s3.upload_part.return_value = {"ETag": '"e"'}
        mock_s3.complete_multipart_upload.side_effect = Exception("S3 error")

        writer = client.open_write(bucket="test-bucket", object_key="k")
        writer.write(b"0123456789")
        with pytest.raises(StorageError, match="Failed to complete multipart upload"):
            writer.commit()
        writer.abort()

        mock_s3.abort_multipart_upload.assert_called_once()

    def test_put_object_exception(self, client, mock_s3):
        mock_s3.put_object.side_effect = Exception("S3 error")

        writer = client.open_write(bucket="test-bucket", object_key="k")
        with pytest.raises(StorageError, match="Failed to put object"):
            writer.commit()

    def test_abort_after_commit_deletes_object(self, client, mock_s3):
        writer = client.open_write(bucket="test-bucket", object_key="k")
        writer.write(b"abc")
        writer.commit()
        writer.abort()

        mock_s3.delete_object.assert_called_once_with(Bucket="test-bucket", Key="k")

    def test_commit_landing_after_abort_is_deleted(self, client, mock_s3):
        writer = client.open_write(bucket="test-bucket", object_key="k")
        writer.write(b"abc")
        mock_s3.put_object.side_effect = lambda **kw: writer.abort()

        with pytest.raises(StorageError, match="after the write was aborted"):
            writer.commit()

        mock_s3.delete_object.assert_called_once_with(Bucket="test-bucket", Key="k")

    def test_multipart_started_after_abort_is_aborted(self, client, mock_s3):
        writer = client.open_write(bucket="test-bucket", object_key="big/key")

        def create(**kwargs):
            writer.abort()
            return {"UploadId": "up-4"}

        mock_s3.create_multipart_upload.side_effect = create

        with pytest.raises(StorageError, match="aborted"):
            writer.write(b"0123456789")

        mock_s3.abort_multipart_upload.assert_called_once_with(
            Bucket="test-bucket", Key="big/key", UploadId="up-4"
        )
        mock_s3.upload_part.assert_not_called()

    def test_delete_object_exception(self, client, mock_s3):
        mock_s3.delete_object.side_effect = Exception("S3 error")

        with pytest.raises(StorageError, match="Failed to delete object"):
            client.delete_object(bucket="test-bucket", object_key="k")

    def test_upload_deadline_covers_put_object(self, mock_s3, mock_settings):
        mock_settings.STORAGE_PART_SIZE_BYTES = 8 * 1024 * 1024
        store = S3StorageClient(settings=mock_settings)
        clock = FakeClock()
        mock_s3.put_object.side_effect = lambda **kw: clock.advance(120.0)
        transfer = ObjectTransferClient(
            store,
            TransferConfig(bucket_name="test-bucket", key_prefix="test-files/", operation_timeout=50.0),
            clock=clock,
        )
        try:
            with pytest.raises(UploadDeadlineExceededError):
                transfer.upload(BytesIO(b"x" * 1024), "img.png")
        finally:
            transfer.close(wait=True)

        mock_s3.put_object.assert_called_once()
        mock_s3.delete_object.assert_called_once_with(
            Bucket="test-bucket", Key="test-files/img.png"
        )

    def test_init_multipart_upload(self, client, mock_s3):
        """Test initiating multipart upload."""
        mock_s3.create_multipart_upload.return_value = {
            "UploadId": "test-upload-id",
            "Bucket": "test-bucket",
            "Key": "test/key",
        }

        result = client.init_multipart_upload(
            bucket="test-bucket",
            object_key="test/key",
            content_type="application/pdf",
        )

        assert isinstance(result, MultipartUpload)
        assert result.upload_id == "test-upload-id"
        mock_s3.create_multipart_upload.assert_called_once_with(
            Bucket="test-bucket",
            Key="test/key",
            ContentType="application/pdf",
        )

    def test_init_multipart_upload_missing_upload_id(self, client, mock_s3):
        mock_s3.create_multipart_upload.return_value = {}

        with pytest.raises(StorageError, match="S3 response missing UploadId"):
            client.init_multipart_upload(bucket="test-bucket", object_key="test/key")

    def test_upload_part_missing_etag(self, client, mock_s3):
        mock_s3.upload_part.return_value = {}

        with pytest.raises(StorageError, match="S3 response missing ETag"):
            client.upload_part(
                bucket="test-bucket",
                object_key="test/key",
                upload_id="u",
                part_number=1,
                body=b"x",
            )

    def test_complete_multipart_upload_sorts_parts(self, client, mock_s3):
        client.complete_multipart_upload(
            bucket="test-bucket",
            object_key="test/key",
            upload_id="test-upload-id",
            parts=[
                CompletedPart(part_number=2, etag="etag2"),
                CompletedPart(part_number=1, etag="etag1"),
            ],
        )

        call_args = mock_s3.complete_multipart_upload.call_args
        assert call_args[1]["MultipartUpload"]["Parts"] == [
            {"ETag": "etag1", "PartNumber": 1},
            {"ETag": "etag2", "PartNumber": 2},
        ]

    def test_abort_multipart_upload_exception(self, client, mock_s3):
        mock_s3.abort_multipart_upload.side_effect = Exception("S3 error")

        with pytest.raises(StorageError, match="Failed to abort multipart upload"):
            client.abort_multipart_upload(
                bucket="test-bucket",
                object_key="test/key",
                upload_id="test-upload-id",
            )

    def test_open_read_streams_body(self, client, mock_s3):
        body = MagicMock()
        body.read.side_effect = [b"hello", b""]
        mock_s3.get_object.return_value = {
            "Body": body,
            "ContentLength": 5,
            "ContentType": "text/plain",
        }

        reader = client.open_read(bucket="test-bucket", object_key="test/key")

        assert reader.content_length == 5
        assert reader.content_type == "text/plain"
        assert reader.read(1024) == b"hello"
        assert reader.read(1024) == b""
        reader.close()
        body.close.assert_called_once()
        mock_s3.get_object.assert_called_once_with(Bucket="test-bucket", Key="test/key")

    def test_open_read_without_length(self, client, mock_s3):
        mock_s3.get_object.return_value = {"Body": MagicMock()}

        reader = client.open_read(bucket="test-bucket", object_key="test/key")

        assert reader.content_length is None
        assert reader.content_type is None

    @pytest.mark.parametrize("code", ["NoSuchKey", "404", "AccessDenied"])
    def test_open_read_missing_object(self, client, mock_s3, code):
        mock_s3.get_object.side_effect = _client_error(code)

        with pytest.raises(NoSuchObjectError):
            client.open_read(bucket="test-bucket", object_key="missing")

    def test_open_read_transport_error(self, client, mock_s3):
        mock_s3.get_object.side_effect = _client_error("InternalError")

        with pytest.raises(StorageError, match="Failed to open object") as exc_info:
            client.open_read(bucket="test-bucket", object_key="k")

        assert not isinstance(exc_info.value, NoSuchObjectError)

    def test_reader_wraps_body_errors(self, client, mock_s3):
        body = MagicMock()
        body.read.side_effect = Exception("connection reset")
        mock_s3.get_object.return_value = {"Body": body, "ContentLength": 3}

        reader = client.open_read(bucket="test-bucket", object_key="k")

        with pytest.raises(StorageError, match="Failed to read object body"):
            reader.read(10)

    def test_list_page_truncated(self, client, mock_s3):
        mock_s3.list_objects_v2.return_value = {
            "Contents": [{"Key": "a"}, {"Key": "b"}],
            "IsTruncated": True,
            "NextContinuationToken": "tok-2",
        }

        page = client.list_page(
            bucket="test-bucket",
            prefix="test-files/",
            continuation_token="tok-1",
            page_size=2,
        )

        assert page == ObjectPage(keys=("a", "b"), next_token="tok-2")
        mock_s3.list_objects_v2.assert_called_once_with(
            Bucket="test-bucket",
            MaxKeys=2,
            Prefix="test-files/",
            ContinuationToken="tok-1",
        )

    def test_list_page_last_page(self, client, mock_s3):
        mock_s3.list_objects_v2.return_value = {
            "Contents": [{"Key": "c"}],
            "IsTruncated": False,
        }

        page = client.list_page(bucket="test-bucket")

        assert page == ObjectPage(keys=("c",), next_token=None)
        assert mock_s3.list_objects_v2.call_args[1] == {
            "Bucket": "test-bucket",
            "MaxKeys": 1000,
        }

    def test_list_page_empty_bucket(self, client, mock_s3):
        mock_s3.list_objects_v2.return_value = {"KeyCount": 0, "IsTruncated": False}

        assert client.list_page(bucket="test-bucket") == ObjectPage(keys=(), next_token=None)

    def test_list_page_missing_token(self, client, mock_s3):
        mock_s3.list_objects_v2.return_value = {"Contents": [], "IsTruncated": True}

        with pytest.raises(StorageError, match="missing NextContinuationToken"):
            client.list_page(bucket="test-bucket")

    def test_list_page_exception(self, client, mock_s3):
        mock_s3.list_objects_v2.side_effect = _client_error("NoSuchBucket", "ListObjectsV2")

        with pytest.raises(StorageError, match="Failed to list objects"):
            client.list_page(bucket="test-bucket")

    def test_check_bucket(self, client, mock_s3):
        client.check_bucket(bucket="test-bucket")

        mock_s3.head_bucket.assert_called_once_with(Bucket="test-bucket")

    def test_check_bucket_exception(self, client, mock_s3):
        mock_s3.head_bucket.side_effect = _client_error("404", "HeadBucket")

        with pytest.raises(StorageError, match="Bucket is not reachable"):
            client.check_bucket(bucket="test-bucket")
