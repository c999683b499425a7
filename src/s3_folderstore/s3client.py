from botocore.config import Config
from botocore.exceptions import BotoCoreError
from botocore.exceptions import ClientError
from botocore.exceptions import NoCredentialsError
from botocore.exceptions import PartialCredentialsError
from s3_folderstore.errors import BackendUnavailable
from s3_folderstore.errors import ConfigurationMissing
from s3_folderstore.errors import CredentialsInvalid
from s3_folderstore.errors import NotFound
from s3_folderstore.interfaces import IObjectStoreClient
from s3_folderstore.records import guess_content_type
from s3_folderstore.records import ObjectRecord
from s3_folderstore.records import utcnow
from urllib.parse import quote
from urllib.parse import urlsplit
from zope.interface import implementer

import boto3
import botocore.session
import contextlib
import logging
import os
import re
import tempfile


logger = logging.getLogger(__name__)

_NOT_FOUND_CODES = frozenset({"404", "NoSuchKey", "NotFound"})
_AUTH_CODES = frozenset(
    {
        "403",
        "AccessDenied",
        "ExpiredToken",
        "InvalidAccessKeyId",
        "InvalidToken",
        "SignatureDoesNotMatch",
    }
)


@implementer(IObjectStoreClient)
class S3Client:
    """Thin boto3 wrapper presenting an S3 bucket as a flat key space."""

    def __init__(
        self,
        bucket_name,
        prefix="",
        endpoint_url=None,
        region_name=None,
        aws_access_key_id=None,
        aws_secret_access_key=None,
        credentials_file=None,
        profile_name=None,
        use_ssl=True,
        addressing_style="auto",
        connect_timeout=60,
        read_timeout=60,
        signed_urls=False,
        signed_url_expiry=3600,
    ):
        if not bucket_name:
            raise ConfigurationMissing(
                "Missing the bucket name. Please add one to the storage configuration."
            )
        self.bucket_name = bucket_name
        self._prefix = prefix.strip("/") if prefix else ""
        self._signed_urls = signed_urls
        self._signed_url_expiry = signed_url_expiry

        if self._prefix:
            if not re.fullmatch(r"[a-zA-Z0-9._/-]*", self._prefix):
                raise ValueError(
                    f"s3-prefix contains invalid characters: {self._prefix!r}. "
                    "Only alphanumeric characters, dots, hyphens, underscores, "
                    "and slashes are allowed."
                )
            if ".." in self._prefix:
                raise ValueError(f"s3-prefix must not contain '..': {self._prefix!r}")

        config = Config(
            s3={"addressing_style": addressing_style},
            connect_timeout=connect_timeout,
            read_timeout=read_timeout,
        )

        kwargs = {"config": config}
        if endpoint_url:
            kwargs["endpoint_url"] = endpoint_url
        if region_name:
            kwargs["region_name"] = region_name
        if aws_access_key_id:
            kwargs["aws_access_key_id"] = aws_access_key_id
        if aws_secret_access_key:
            kwargs["aws_secret_access_key"] = aws_secret_access_key
        kwargs["use_ssl"] = use_ssl
        if not use_ssl:
            logger.warning(
                "S3 SSL is disabled: data and credentials are transmitted in cleartext"
            )

        self._client = self._session(credentials_file, profile_name).client(
            "s3", **kwargs
        )

    @staticmethod
    def _session(credentials_file, profile_name):
        if credentials_file:
            if not os.path.isfile(credentials_file):
                raise ConfigurationMissing(
                    f"The credentials file {credentials_file!r} does not exist. "
                    "Either the file is missing or you need to adjust your settings."
                )
            core = botocore.session.Session(profile=profile_name)
            core.set_config_variable("credentials_file", credentials_file)
            return boto3.session.Session(botocore_session=core)
        if profile_name:
            return boto3.session.Session(profile_name=profile_name)
        return boto3

    def _full_key(self, key):
        if self._prefix:
            return f"{self._prefix}/{key}"
        return key

    def _logical_key(self, full_key):
        if self._prefix:
            return full_key[len(self._prefix) + 1 :]
        return full_key

    def _wrap_error(self, e, operation, key):
        """Translate a botocore error, logging the original at DEBUG."""
        logger.debug("S3 %s failed for key=%s: %s", operation, key, e)
        if isinstance(e, (NoCredentialsError, PartialCredentialsError)):
            raise CredentialsInvalid(f"S3 {operation} failed: no usable credentials") from e
        if isinstance(e, ClientError):
            code = e.response.get("Error", {}).get("Code", "Unknown")
            if code in _NOT_FOUND_CODES:
                raise NotFound(f"No object found for key={key}") from e
            if code in _AUTH_CODES:
                raise CredentialsInvalid(
                    f"S3 {operation} failed for key={key}: {code}"
                ) from e
        else:
            code = type(e).__name__
        raise BackendUnavailable(f"S3 {operation} failed for key={key}: {code}") from e

    # -- records and links --

    def _record(self, key, size, content_type, modified):
        return ObjectRecord(
            name=key,
            size=size,
            content_type=content_type,
            created=modified,
            updated=modified,
            bucket=self.bucket_name,
            media_link=self.media_link(key),
        )

    def media_link(self, key):
        full_key = self._full_key(key)
        if self._signed_urls:
            return self._client.generate_presigned_url(
                "get_object",
                Params={"Bucket": self.bucket_name, "Key": full_key},
                ExpiresIn=self._signed_url_expiry,
            )
        endpoint = self._client.meta.endpoint_url.rstrip("/")
        return f"{endpoint}/{self.bucket_name}/{quote(full_key)}"

    def media_link_prefixes(self):
        """Path-style and virtual-hosted URL prefixes of the bucket."""
        endpoint = self._client.meta.endpoint_url.rstrip("/")
        parts = urlsplit(endpoint)
        return (
            f"{endpoint}/{self.bucket_name}",
            f"{parts.scheme}://{self.bucket_name}.{parts.netloc}",
        )

    # -- writes --

    def upload(self, data, key, content_type=None):
        content_type = content_type or guess_content_type(key)
        try:
            self._client.put_object(
                Bucket=self.bucket_name,
                Key=self._full_key(key),
                Body=data,
                ContentType=content_type,
            )
        except (ClientError, BotoCoreError) as e:
            self._wrap_error(e, "upload", key)
        return self._record(key, len(data), content_type, utcnow())

    def upload_file(self, local_path, key, content_type=None):
        content_type = content_type or guess_content_type(key)
        try:
            self._client.upload_file(
                local_path,
                self.bucket_name,
                self._full_key(key),
                ExtraArgs={"ContentType": content_type},
            )
        except (ClientError, BotoCoreError) as e:
            self._wrap_error(e, "upload", key)
        return self._record(key, os.path.getsize(local_path), content_type, utcnow())

    def copy(self, source_key, dest_key):
        try:
            self._client.copy(
                {"Bucket": self.bucket_name, "Key": self._full_key(source_key)},
                self.bucket_name,
                self._full_key(dest_key),
            )
        except (ClientError, BotoCoreError) as e:
            self._wrap_error(e, "copy", source_key)
        record = self.head(dest_key)
        if record is None:
            raise NotFound(f"Copy target {dest_key} vanished")
        return record

    def delete(self, key):
        try:
            self._client.delete_object(Bucket=self.bucket_name, Key=self._full_key(key))
        except (ClientError, BotoCoreError) as e:
            self._wrap_error(e, "delete", key)

    # -- reads --

    def download(self, key):
        return self.download_stream(key).read()

    def download_stream(self, key):
        try:
            response = self._client.get_object(
                Bucket=self.bucket_name, Key=self._full_key(key)
            )
        except (ClientError, BotoCoreError) as e:
            self._wrap_error(e, "download", key)
        return response["Body"]

    def download_file(self, key, local_path):
        target_dir = os.path.dirname(local_path) or "."
        os.makedirs(target_dir, exist_ok=True, mode=0o700)
        fd, tmp_path = tempfile.mkstemp(dir=target_dir, suffix=".download.tmp")
        try:
            os.close(fd)
            try:
                self._client.download_file(
                    self.bucket_name, self._full_key(key), tmp_path
                )
            except (ClientError, BotoCoreError) as e:
                self._wrap_error(e, "download", key)
            os.replace(tmp_path, local_path)
        except BaseException:
            with contextlib.suppress(OSError):
                os.unlink(tmp_path)
            raise

    def head(self, key):
        try:
            response = self._client.head_object(
                Bucket=self.bucket_name, Key=self._full_key(key)
            )
        except ClientError as e:
            if e.response["Error"]["Code"] in _NOT_FOUND_CODES:
                return None
            self._wrap_error(e, "head", key)
        except BotoCoreError as e:
            self._wrap_error(e, "head", key)
        return self._record(
            key,
            response["ContentLength"],
            response.get("ContentType") or guess_content_type(key),
            response["LastModified"],
        )

    def exists(self, key):
        return self.head(key) is not None

    def list(self, prefix="", delimiter="/"):
        if prefix:
            full_prefix = self._full_key(prefix)
        else:
            full_prefix = f"{self._prefix}/" if self._prefix else ""
        params = {"Bucket": self.bucket_name, "Prefix": full_prefix}
        if delimiter:
            params["Delimiter"] = delimiter

        records = []
        prefixes = []
        paginator = self._client.get_paginator("list_objects_v2")
        try:
            for page in paginator.paginate(**params):
                for obj in page.get("Contents", []):
                    key = self._logical_key(obj["Key"])
                    records.append(
                        self._record(
                            key, obj["Size"], guess_content_type(key), obj["LastModified"]
                        )
                    )
                for common in page.get("CommonPrefixes", []):
                    prefixes.append(self._logical_key(common["Prefix"]))
        except (ClientError, BotoCoreError) as e:
            self._wrap_error(e, "list", prefix)
        return records, prefixes

    def has_prefix(self, prefix):
        try:
            response = self._client.list_objects_v2(
                Bucket=self.bucket_name, Prefix=self._full_key(prefix), MaxKeys=1
            )
        except (ClientError, BotoCoreError) as e:
            self._wrap_error(e, "list", prefix)
        return response.get("KeyCount", 0) > 0
