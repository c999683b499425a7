from botocore.exceptions import NoCredentialsError
from moto import mock_aws
from s3_folderstore.errors import BackendUnavailable
from s3_folderstore.errors import ConfigurationMissing
from s3_folderstore.errors import CredentialsInvalid
from s3_folderstore.errors import NotFound
from s3_folderstore.interfaces import IObjectStoreClient
from s3_folderstore.s3client import S3Client

import boto3
import pytest


@pytest.fixture
def s3_env():
    with mock_aws():
        boto3.client("s3", region_name="us-east-1").create_bucket(Bucket="test-bucket")
        yield


@pytest.fixture
def client(s3_env):
    return S3Client(bucket_name="test-bucket", region_name="us-east-1")


@pytest.fixture
def prefixed_client(s3_env):
    return S3Client(bucket_name="test-bucket", prefix="myprefix", region_name="us-east-1")


class TestS3ClientInterface:
    def test_interface_provided(self, client):
        assert IObjectStoreClient.providedBy(client)


class TestConfiguration:
    def test_missing_bucket_name(self, s3_env):
        with pytest.raises(ConfigurationMissing):
            S3Client(bucket_name="", region_name="us-east-1")

    def test_missing_credentials_file(self, s3_env, tmp_path):
        with pytest.raises(ConfigurationMissing):
            S3Client(
                bucket_name="test-bucket",
                region_name="us-east-1",
                credentials_file=str(tmp_path / "nope.ini"),
            )

    def test_invalid_prefix(self, s3_env):
        with pytest.raises(ValueError):
            S3Client(bucket_name="test-bucket", prefix="a b", region_name="us-east-1")
        with pytest.raises(ValueError):
            S3Client(bucket_name="test-bucket", prefix="a/../b", region_name="us-east-1")


class TestUploadDownload:
    def test_upload_returns_record(self, client):
        record = client.upload(b"hello", "photos/image.jpg")
        assert record.name == "photos/image.jpg"
        assert record.size == 5
        assert record.content_type == "image/jpeg"
        assert record.bucket == "test-bucket"

    def test_upload_and_download_roundtrip(self, client):
        client.upload(b"hello blob data", "test/key.bin")
        assert client.download("test/key.bin") == b"hello blob data"

    def test_upload_file(self, client, tmp_path):
        src = tmp_path / "source.txt"
        src.write_bytes(b"from disk")
        record = client.upload_file(str(src), "docs/source.txt")
        assert record.size == 9
        assert client.download("docs/source.txt") == b"from disk"

    def test_download_stream(self, client):
        client.upload(b"x" * 1024, "big.bin")
        stream = client.download_stream("big.bin")
        try:
            assert stream.read() == b"x" * 1024
        finally:
            stream.close()

    def test_download_file_atomic(self, client, tmp_path):
        client.upload(b"atomic test", "atomic/key.bin")
        dst = tmp_path / "sub" / "final.bin"
        client.download_file("atomic/key.bin", str(dst))
        assert dst.read_bytes() == b"atomic test"
        assert [p.name for p in dst.parent.iterdir()] == ["final.bin"]

    def test_download_missing_raises_not_found(self, client, tmp_path):
        with pytest.raises(NotFound):
            client.download("missing.bin")
        with pytest.raises(NotFound):
            client.download_file("missing.bin", str(tmp_path / "x.bin"))
        assert list(tmp_path.iterdir()) == []


class TestCopyDelete:
    def test_copy(self, client):
        client.upload(b"copy me", "a/source.txt")
        record = client.copy("a/source.txt", "b/target.txt")
        assert record.name == "b/target.txt"
        assert record.size == 7
        assert client.download("b/target.txt") == b"copy me"
        assert client.exists("a/source.txt")

    def test_copy_missing_source(self, client):
        with pytest.raises(NotFound):
            client.copy("nope.txt", "b/target.txt")

    def test_delete(self, client):
        client.upload(b"delete me", "del/key.bin")
        assert client.exists("del/key.bin")
        client.delete("del/key.bin")
        assert not client.exists("del/key.bin")

    def test_delete_nonexistent_does_not_raise(self, client):
        client.delete("nonexistent/key.bin")


class TestHead:
    def test_head_object_exists(self, client):
        client.upload(b"head test", "head/key.txt")
        record = client.head("head/key.txt")
        assert record.size == 9
        assert record.content_type == "text/plain"
        assert record.updated.tzinfo is not None

    def test_head_object_missing(self, client):
        assert client.head("missing/key.bin") is None


class TestList:
    def test_list_with_delimiter(self, client):
        client.upload(b"", "photos/.keep")
        client.upload(b"1", "photos/a.jpg")
        client.upload(b"2", "photos/b.jpg")
        client.upload(b"3", "photos/2024/c.jpg")

        records, prefixes = client.list("photos/")
        assert sorted(r.name for r in records) == [
            "photos/.keep",
            "photos/a.jpg",
            "photos/b.jpg",
        ]
        assert prefixes == ["photos/2024/"]

    def test_list_root(self, client):
        client.upload(b"1", "top.txt")
        client.upload(b"2", "photos/a.jpg")
        records, prefixes = client.list("")
        assert [r.name for r in records] == ["top.txt"]
        assert prefixes == ["photos/"]

    def test_list_is_paginated_transparently(self, client):
        for i in range(1005):
            client.upload(b"", f"many/{i:04d}.txt")
        records, _prefixes = client.list("many/")
        assert len(records) == 1005

    def test_list_empty(self, client):
        assert client.list("nonexistent/") == ([], [])

    def test_has_prefix(self, client):
        client.upload(b"1", "photos/a.jpg")
        assert client.has_prefix("photos/")
        assert not client.has_prefix("videos/")


class TestPrefix:
    def test_prefix_isolation(self, s3_env):
        client_a = S3Client(bucket_name="test-bucket", prefix="ns_a", region_name="us-east-1")
        client_b = S3Client(bucket_name="test-bucket", prefix="ns_b", region_name="us-east-1")
        client_a.upload(b"isolation", "key.bin")
        assert client_a.exists("key.bin")
        assert not client_b.exists("key.bin")

    def test_list_strips_prefix(self, prefixed_client):
        prefixed_client.upload(b"1", "photos/a.jpg")
        prefixed_client.upload(b"2", "photos/2024/b.jpg")
        records, prefixes = prefixed_client.list("photos/")
        assert [r.name for r in records] == ["photos/a.jpg"]
        assert prefixes == ["photos/2024/"]

    def test_root_listing_stays_in_namespace(self, s3_env):
        other = S3Client(bucket_name="test-bucket", prefix="myprefixx", region_name="us-east-1")
        other.upload(b"1", "leak.txt")
        client = S3Client(bucket_name="test-bucket", prefix="myprefix", region_name="us-east-1")
        client.upload(b"1", "mine.txt")
        records, _prefixes = client.list("")
        assert [r.name for r in records] == ["mine.txt"]

    def test_raw_key_has_prefix(self, prefixed_client):
        prefixed_client.upload(b"data", "raw/key.bin")
        s3 = boto3.client("s3", region_name="us-east-1")
        resp = s3.list_objects_v2(Bucket="test-bucket", Prefix="myprefix/")
        assert [obj["Key"] for obj in resp["Contents"]] == ["myprefix/raw/key.bin"]


class TestMediaLinks:
    def test_path_style_media_link(self, client):
        record = client.upload(b"1", "photos/image.jpg")
        assert record.media_link == "https://s3.amazonaws.com/test-bucket/photos/image.jpg"

    def test_media_link_prefixes(self, client):
        assert client.media_link_prefixes() == (
            "https://s3.amazonaws.com/test-bucket",
            "https://test-bucket.s3.amazonaws.com",
        )

    def test_signed_media_link_has_query(self, s3_env):
        client = S3Client(
            bucket_name="test-bucket",
            region_name="us-east-1",
            addressing_style="path",
            signed_urls=True,
        )
        record = client.upload(b"1", "photos/image.jpg")
        assert record.media_link.startswith(
            "https://s3.amazonaws.com/test-bucket/photos/image.jpg?"
        )


class TestErrorTranslation:
    def test_no_credentials(self, client, monkeypatch):
        def fail(**kwargs):
            raise NoCredentialsError()

        monkeypatch.setattr(client._client, "delete_object", fail)
        with pytest.raises(CredentialsInvalid):
            client.delete("key.bin")

    def test_missing_bucket_is_backend_unavailable(self, s3_env):
        client = S3Client(bucket_name="no-such-bucket", region_name="us-east-1")
        with pytest.raises(BackendUnavailable) as exc_info:
            client.list("")
        assert not isinstance(exc_info.value, CredentialsInvalid)
        assert exc_info.value.__cause__ is not None
