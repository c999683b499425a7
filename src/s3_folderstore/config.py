from s3_folderstore.errors import ConfigurationMissing

import io
import os
import ZConfig


_SCHEMA_PATH = os.path.join(os.path.dirname(__file__), "schema.xml")
_schema = None


def _get_schema():
    global _schema
    if _schema is None:
        _schema = ZConfig.loadSchema(_SCHEMA_PATH)
    return _schema


class DriverFactory:
    """ZConfig factory for S3FolderDriver."""

    def __init__(self, config):
        self.config = config
        self.name = config.getSectionName()

    def get(self, key):
        """Return the setting for key as a string.

        Keys are spelled as in the configuration file (``bucket-name``).
        """
        value = getattr(self.config, key.replace("-", "_"), None)
        if value is None or value == "":
            raise ConfigurationMissing(
                f"Missing the {key!r} setting. Please add it to the storage configuration."
            )
        return str(value)

    def open(self):
        from s3_folderstore.cache import FileCacheBackend
        from s3_folderstore.cache import ListingCache
        from s3_folderstore.cache import MemoryCacheBackend
        from s3_folderstore.driver import S3FolderDriver
        from s3_folderstore.s3client import S3Client

        config = self.config

        s3_client = S3Client(
            bucket_name=self.get("bucket-name"),
            prefix=config.s3_prefix,
            endpoint_url=config.s3_endpoint_url,
            region_name=config.s3_region,
            aws_access_key_id=config.s3_access_key,
            aws_secret_access_key=config.s3_secret_key,
            credentials_file=config.s3_credentials_file,
            profile_name=config.s3_profile,
            use_ssl=config.s3_use_ssl,
            addressing_style=config.s3_addressing_style,
            signed_urls=config.s3_signed_urls,
        )
        if config.cache_dir:
            backend = FileCacheBackend(config.cache_dir)
        else:
            backend = MemoryCacheBackend()
        cache = ListingCache(
            config.storage_uid,
            backend,
            lifetime=config.cache_lifetime,
            enabled=config.cache_enabled,
        )
        return S3FolderDriver(
            s3_client,
            cache,
            storage_uid=config.storage_uid,
            base_uri=config.base_uri or "",
            temp_dir=config.temp_dir,
        )


def load_factory(path):
    config, _handler = ZConfig.loadConfig(_get_schema(), path)
    return config.storage


def factory_from_string(text):
    config, _handler = ZConfig.loadConfigFile(_get_schema(), io.StringIO(text))
    return config.storage


def driver_from_string(text):
    return factory_from_string(text).open()
