"""对象存储适配层测试：key 生成、本地分片会话与 S3 调用映射。"""

import io
from datetime import datetime, timezone

import boto3
import pytest
from botocore.stub import Stubber

from app.packages.drive.core.exceptions import StorageProviderError
from app.packages.drive.services.object_store import (
    CompletedPart,
    LocalObjectStore,
    S3ObjectStore,
    sanitize_filename,
)


@pytest.fixture()
def s3_store():
    client = boto3.client(
        "s3",
        region_name="us-east-1",
        aws_access_key_id="testing",
        aws_secret_access_key="testing",
    )
    store = S3ObjectStore(bucket="drive-bucket", region="us-east-1", client=client)
    with Stubber(client) as stubber:
        yield store, stubber
        stubber.assert_no_pending_responses()


def test_sanitize_filename():
    assert sanitize_filename("my report (final).pdf") == "my_report__final_.pdf"
    assert sanitize_filename("季度.pdf") == "__.pdf"
    assert sanitize_filename("../../etc/passwd") == "passwd"
    assert sanitize_filename("...") == "file"
    assert len(sanitize_filename("a" * 500 + ".txt")) == 200


def test_unique_keys_do_not_collide(tmp_path):
    store = LocalObjectStore(root=tmp_path, url_prefix="http://testserver/api/v1")
    keys = {store.make_unique_key(7, "photo 1.png", "uploads/company-3") for _ in range(50)}
    assert len(keys) == 50
    for key in keys:
        assert key.startswith("uploads/company-3/user-7/")
        assert key.endswith("-photo_1.png")


def test_local_store_rejects_keys_outside_root(tmp_path):
    store = LocalObjectStore(root=tmp_path, url_prefix="http://testserver")
    with pytest.raises(StorageProviderError):
        store.object_path("../../outside.txt")


def test_local_multipart_validates_parts(tmp_path):
    store = LocalObjectStore(root=tmp_path, url_prefix="http://testserver")
    upload_id = store.initiate_multipart("a/b.bin", "application/octet-stream")
    etag_1 = store.put_part(upload_id, 1, io.BytesIO(b"hello "))
    etag_2 = store.put_part(upload_id, 2, io.BytesIO(b"world"))

    with pytest.raises(StorageProviderError):
        store.complete_multipart("a/b.bin", upload_id, [CompletedPart(2, etag_2), CompletedPart(1, etag_1)])
    with pytest.raises(StorageProviderError):
        store.complete_multipart("a/b.bin", upload_id, [CompletedPart(1, "bogus"), CompletedPart(2, etag_2)])

    etag = store.complete_multipart("a/b.bin", upload_id, [CompletedPart(1, f'"{etag_1}"'), CompletedPart(2, etag_2)])
    assert etag.endswith("-2")
    meta = store.head_object("a/b.bin")
    assert meta.size == 11
    assert meta.etag == etag
    assert meta.content_type == "application/octet-stream"

    store.delete_object("a/b.bin")
    store.delete_object("a/b.bin")
    assert store.head_object("a/b.bin") is None


def test_s3_head_object_missing_returns_none(s3_store):
    store, stubber = s3_store
    stubber.add_client_error(
        "head_object",
        service_error_code="404",
        http_status_code=404,
        expected_params={"Bucket": "drive-bucket", "Key": "missing.txt"},
    )
    assert store.head_object("missing.txt") is None


def test_s3_head_object_metadata(s3_store):
    store, stubber = s3_store
    modified = datetime(2024, 5, 1, tzinfo=timezone.utc)
    stubber.add_response(
        "head_object",
        {"ContentLength": 2048, "ETag": '"abc123"', "ContentType": "image/png", "LastModified": modified},
        {"Bucket": "drive-bucket", "Key": "photo.png"},
    )
    meta = store.head_object("photo.png")
    assert meta.size == 2048
    assert meta.etag == "abc123"
    assert meta.content_type == "image/png"
    assert meta.last_modified == modified


def test_s3_provider_errors_are_wrapped(s3_store):
    store, stubber = s3_store
    stubber.add_client_error("head_object", service_error_code="403", http_status_code=403)
    with pytest.raises(StorageProviderError) as exc_info:
        store.head_object("secret.txt")
    assert exc_info.value.status_code == 502
    assert exc_info.value.data["operation"] == "head_object"


def test_s3_multipart_lifecycle(s3_store):
    store, stubber = s3_store
    stubber.add_response(
        "create_multipart_upload",
        {"UploadId": "upload-1", "Bucket": "drive-bucket", "Key": "big.bin"},
        {"Bucket": "drive-bucket", "Key": "big.bin", "ContentType": "application/zip"},
    )
    stubber.add_response(
        "complete_multipart_upload",
        {"ETag": '"final-2"'},
        {
            "Bucket": "drive-bucket",
            "Key": "big.bin",
            "UploadId": "upload-1",
            "MultipartUpload": {"Parts": [{"ETag": '"e1"', "PartNumber": 1}, {"ETag": '"e2"', "PartNumber": 2}]},
        },
    )
    stubber.add_client_error("abort_multipart_upload", service_error_code="NoSuchUpload", http_status_code=404)

    assert store.initiate_multipart("big.bin", "application/zip") == "upload-1"
    etag = store.complete_multipart("big.bin", "upload-1", [CompletedPart(1, "e1"), CompletedPart(2, '"e2"')])
    assert etag == "final-2"
    store.abort_multipart("big.bin", "upload-1")


def test_s3_presigned_urls_are_signed():
    store = S3ObjectStore(
        bucket="drive-bucket",
        region="us-east-1",
        access_key_id="testing",
        secret_access_key="testing",
    )
    upload = store.create_presigned_upload("uploads/user-1/a.txt", "text/plain", 900)
    assert upload.method == "PUT"
    assert upload.headers == {"Content-Type": "text/plain"}
    assert "X-Amz-Signature" in upload.url
    assert "X-Amz-Expires=900" in upload.url

    part = store.create_presigned_part("uploads/user-1/a.txt", "upload-9", 3, 3600)
    assert "partNumber=3" in part.url
    assert "uploadId=upload-9" in part.url

    download = store.create_presigned_download("uploads/user-1/a.txt", 300, attachment=True, filename="a.txt")
    assert "response-content-disposition=attachment" in download.url
