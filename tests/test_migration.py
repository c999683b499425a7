from moto import mock_aws
from s3_folderstore.cache import ListingCache
from s3_folderstore.cache import MemoryCacheBackend
from s3_folderstore.driver import S3FolderDriver
from s3_folderstore.errors import BackendUnavailable
from s3_folderstore.interfaces import IFileIndex
from s3_folderstore.migration import CopyJob
from s3_folderstore.migration import DirectoryFileIndex
from s3_folderstore.migration import like_to_glob
from s3_folderstore.migration import main
from s3_folderstore.migration import ManifestFileIndex
from s3_folderstore.migration import MoveJob
from s3_folderstore.migration import parse_limit
from s3_folderstore.s3client import S3Client

import boto3
import os
import pytest
import tempfile


@pytest.fixture
def s3_env():
    with mock_aws():
        boto3.client("s3", region_name="us-east-1").create_bucket(Bucket="test-bucket")
        yield


@pytest.fixture
def client(s3_env):
    return S3Client(bucket_name="test-bucket", region_name="us-east-1")


@pytest.fixture
def driver(client, tmp_path):
    instance = S3FolderDriver(
        client,
        ListingCache(5, MemoryCacheBackend()),
        storage_uid=5,
        temp_dir=str(tmp_path / "tmp"),
    )
    yield instance
    instance.close()


@pytest.fixture
def source(tmp_path):
    base = tmp_path / "fileadmin"
    (base / "a" / "b").mkdir(parents=True)
    (base / "top.txt").write_bytes(b"top")
    (base / "a" / "x.txt").write_bytes(b"x")
    (base / "a" / "b" / "y.jpg").write_bytes(b"y")
    return base


@pytest.fixture
def log_dir(tmp_path, monkeypatch):
    path = tmp_path / "logs"
    path.mkdir()
    monkeypatch.setattr(tempfile, "tempdir", str(path))
    return path


@pytest.fixture
def config_file(s3_env, tmp_path):
    path = tmp_path / "storage.conf"
    path.write_text(
        "<s3folderstore>\n"
        "  storage-uid 5\n"
        "  bucket-name test-bucket\n"
        "  s3-region us-east-1\n"
        f"  temp-dir {tmp_path / 'cli-tmp'}\n"
        "</s3folderstore>\n"
    )
    return str(path)


class TestHelpers:
    def test_like_to_glob(self):
        assert like_to_glob("%.pdf") == "*.pdf"
        assert like_to_glob("/apps/%") == "/apps/*"
        assert like_to_glob("file_1.txt") == "file?1.txt"

    @pytest.mark.parametrize(
        "value, expected",
        [("", (0, None)), ("100", (0, 100)), ("20,100", (20, 100)), (" 5 , 10 ", (5, 10))],
    )
    def test_parse_limit(self, value, expected):
        assert parse_limit(value) == expected


class TestFileIndexes:
    def test_directory_index(self, source):
        index = DirectoryFileIndex(str(source))
        assert IFileIndex.providedBy(index)
        assert list(index.list_identifiers()) == ["/top.txt", "/a/x.txt", "/a/b/y.jpg"]
        assert index.reassign("/top.txt", 5)

    def test_manifest_index(self, tmp_path):
        manifest = tmp_path / "manifest.txt"
        manifest.write_text("# exported files\na/x.txt\n\n/top.txt\n")
        index = ManifestFileIndex(str(manifest))
        assert IFileIndex.providedBy(index)
        assert list(index.list_identifiers()) == ["/a/x.txt", "/top.txt"]


class TestCopyJob:
    def test_copies_everything(self, driver, client, source):
        assert CopyJob(str(source), driver).run() == 3
        assert client.download("top.txt") == b"top"
        assert client.download("a/b/y.jpg") == b"y"
        assert client.exists("a/.keep")
        assert client.exists("a/b/.keep")
        assert (source / "a" / "x.txt").exists()
        assert driver.cache.enabled

    def test_include_filter(self, driver, client, source):
        assert CopyJob(str(source), driver, include="%.jpg").run() == 1
        assert client.exists("a/b/y.jpg")
        assert not client.exists("top.txt")

    def test_exclude_filter(self, driver, client, source):
        assert CopyJob(str(source), driver, exclude=["/a/%"]).run() == 1
        assert client.exists("top.txt")
        assert not client.exists("a/x.txt")

    def test_offset_and_limit(self, driver, client, source):
        job = CopyJob(str(source), driver, offset=1, limit=1)
        assert job.select() == ["/a/x.txt"]
        assert job.run() == 1

    def test_missing_file_skipped(self, driver, source, tmp_path):
        manifest = tmp_path / "manifest.txt"
        manifest.write_text("top.txt\ngone.txt\n")
        job = CopyJob(str(source), driver, index=ManifestFileIndex(str(manifest)))
        assert job.run() == 1

    def test_listing_refreshed_afterwards(self, driver, source):
        assert driver.list_files_in_folder("/a/") == []
        CopyJob(str(source), driver).run()
        assert driver.list_files_in_folder("/a/") == ["/a/x.txt"]


class TestMoveJob:
    def test_moves_everything(self, driver, client, source):
        job = MoveJob(str(source), driver)
        assert job.run() == 3
        assert client.download("a/x.txt") == b"x"
        assert not (source / "a" / "x.txt").exists()
        assert not (source / "top.txt").exists()
        assert job.missing == []
        assert job.failed == []

    def test_missing_files_logged(self, driver, source, tmp_path, log_dir):
        manifest = tmp_path / "manifest.txt"
        manifest.write_text("top.txt\ngone.txt\na/lost.txt\n")
        job = MoveJob(str(source), driver, index=ManifestFileIndex(str(manifest)))
        assert job.run() == 1
        assert job.missing == ["/gone.txt", "/a/lost.txt"]
        logs = os.listdir(log_dir)
        assert len(logs) == 1
        assert logs[0].startswith(f"missing-files-{os.getpid()}-")
        assert (log_dir / logs[0]).read_text() == "/gone.txt\n/a/lost.txt\n"

    def test_failed_upload_keeps_source(self, driver, client, source, monkeypatch):
        def fail(local_path, key, content_type=None):
            raise BackendUnavailable("S3 upload failed")

        monkeypatch.setattr(client, "upload_file", fail)
        job = MoveJob(str(source), driver)
        assert job.run() == 0
        assert job.failed == ["/top.txt", "/a/x.txt", "/a/b/y.jpg"]
        assert (source / "top.txt").exists()
        assert driver.cache.enabled

    def test_source_kept_when_reassign_declined(self, driver, client, source):
        class ReadOnlyIndex(DirectoryFileIndex):
            def reassign(self, identifier, storage_uid):
                return False

        job = MoveJob(str(source), driver, index=ReadOnlyIndex(str(source)))
        assert job.run() == 3
        assert client.exists("top.txt")
        assert (source / "top.txt").exists()


class TestCommandLine:
    def test_copy(self, config_file, source, client):
        assert main(["--config", config_file, "copy", str(source)]) == 0
        assert client.exists("a/b/y.jpg")
        assert (source / "a" / "b" / "y.jpg").exists()

    def test_copy_with_filter_and_limit(self, config_file, source, client):
        argv = ["--config", config_file, "copy", str(source), "--filter", "%.txt", "--limit", "1"]
        assert main(argv) == 0
        assert client.exists("top.txt")
        assert not client.exists("a/x.txt")

    def test_move_confirmed(self, config_file, source, client):
        assert main(["-s", "--config", config_file, "move", str(source), "-y"]) == 0
        assert client.exists("a/x.txt")
        assert not (source / "a" / "x.txt").exists()

    def test_move_asks_for_confirmation(self, config_file, source, client, monkeypatch):
        monkeypatch.setattr("builtins.input", lambda prompt: "n")
        assert main(["--config", config_file, "move", str(source)]) == 0
        assert not client.exists("top.txt")
        assert (source / "top.txt").exists()

    def test_move_with_manifest(self, config_file, source, client, tmp_path, monkeypatch):
        manifest = tmp_path / "manifest.txt"
        manifest.write_text("a/x.txt\n")
        monkeypatch.setattr("builtins.input", lambda prompt: "")
        assert main(["--config", config_file, "move", str(source), "--manifest", str(manifest)]) == 0
        assert client.exists("a/x.txt")
        assert not client.exists("top.txt")

    def test_flush_cache(self, config_file):
        assert main(["--config", config_file, "flush-cache"]) == 0

    def test_configuration_error(self, s3_env, tmp_path):
        path = tmp_path / "broken.conf"
        path.write_text("<s3folderstore>\n  s3-region us-east-1\n</s3folderstore>\n")
        assert main(["--config", str(path), "flush-cache"]) == 1

    def test_command_required(self, config_file):
        with pytest.raises(SystemExit):
            main(["--config", config_file])
