from s3_folderstore import paths
from s3_folderstore.cache import ListingCache
from s3_folderstore.errors import FolderNotEmpty
from s3_folderstore.errors import InvalidFileName
from s3_folderstore.errors import InvalidPath
from s3_folderstore.errors import NotFound
from s3_folderstore.errors import ObjectStoreError
from s3_folderstore.errors import OperationNotSupported
from s3_folderstore.errors import PartialFailure
from s3_folderstore.interfaces import IHierarchicalDriver
from zope.interface import implementer

import contextlib
import hashlib
import logging
import os
import posixpath
import re
import shutil
import sys
import tempfile
import unicodedata


logger = logging.getLogger(__name__)

_UNSAFE_FILENAME_RE = re.compile(r"[^.A-Za-z0-9_-]")
_CHUNK_SIZE = 64 * 1024


def _by_name(item):
    return (paths.basename(item[0]).lower(), item[0])


_FILE_SORT_KEYS = {
    "name": _by_name,
    "file": _by_name,
    "tstamp": lambda item: (item[1].updated, item[0]),
    "size": lambda item: (item[1].size, item[0]),
    "fileext": lambda item: (posixpath.splitext(item[0])[1].lower(), item[0]),
}


@implementer(IHierarchicalDriver)
class S3FolderDriver:
    """Folder/file tree over a flat S3 bucket.

    Folders are key prefixes made visible by a zero-byte ``.keep`` marker.
    Listings are served from an in-process dict, then from the shared
    ListingCache, then from a single prefix/delimiter listing call.

    Mutations flush the affected cache tag before touching the backend.
    Recursive folder operations run with the cache suppressed and flush
    everything on the way out. They are not atomic: a backend failure
    partway raises PartialFailure, already copied or deleted objects stay
    as they are. Nothing coordinates concurrent writers in other processes.
    """

    def __init__(self, client, cache=None, storage_uid=0, base_uri="", temp_dir=None):
        self._client = client
        self.storage_uid = storage_uid
        self._cache = cache if cache is not None else ListingCache(storage_uid)
        self._base_uri = base_uri or ""
        self._temp_dir = temp_dir or tempfile.mkdtemp(prefix="s3folderstore-")
        os.makedirs(self._temp_dir, exist_ok=True, mode=0o700)
        self._cached_files = {}  # {folder identifier: {file identifier: ObjectRecord}}
        self._cached_folders = {}  # {folder identifier: [folder identifiers]}

    def __repr__(self):
        return (
            f"<S3FolderDriver storage={self.storage_uid} "
            f"bucket={self._client.bucket_name!r}>"
        )

    @property
    def client(self):
        return self._client

    @property
    def cache(self):
        return self._cache

    def new_instance(self):
        """Fresh driver sharing client and cache, with empty request state."""
        instance_temp = tempfile.mkdtemp(dir=self._temp_dir)
        return S3FolderDriver(
            self._client,
            self._cache,
            storage_uid=self.storage_uid,
            base_uri=self._base_uri,
            temp_dir=instance_temp,
        )

    def close(self):
        close_backend = getattr(getattr(self._cache, "backend", None), "close", None)
        if close_backend is not None:
            close_backend()
        with contextlib.suppress(OSError):
            shutil.rmtree(self._temp_dir)

    # -- identifiers --

    def _canonical_path(self, identifier):
        segments = []
        for segment in identifier.split(paths.SEPARATOR):
            if segment in ("", "."):
                continue
            if segment == "..":
                raise InvalidPath(f"Identifier {identifier!r} must not contain '..'")
            segments.append(segment)
        return paths.SEPARATOR + paths.SEPARATOR.join(segments)

    def canonicalize_file_identifier(self, identifier):
        return self._canonical_path(identifier)

    def canonicalize_folder_identifier(self, identifier):
        return paths.compute_folder_identifier(self._canonical_path(identifier))

    def hash_identifier(self, identifier):
        return hashlib.sha1(
            identifier.encode("utf-8"), usedforsecurity=False
        ).hexdigest()

    def hash(self, identifier, algorithm="sha1"):
        return hashlib.new(
            algorithm, identifier.encode("utf-8"), usedforsecurity=False
        ).hexdigest()

    def get_root_level_folder(self):
        return paths.ROOT_FOLDER_IDENTIFIER

    def get_default_folder(self):
        return self.get_root_level_folder()

    def get_permissions(self, identifier):
        # Object stores have no per-object permissions we could map.
        return {"r": True, "w": True}

    def get_file_in_folder(self, file_name, folder):
        return paths.compute_file_identifier(paths.combine_folder_and_file(folder, file_name))

    def get_folder_in_folder(self, folder_name, folder):
        return paths.combine_folder_and_folder_name(folder, folder_name)

    def is_within(self, container, identifier):
        container = self._canonical_path(container)
        entry = self._canonical_path(identifier)
        if container == entry:
            return True
        if container != paths.SEPARATOR:
            container += paths.SEPARATOR
        return entry.startswith(container)

    def sanitize_file_name(self, name):
        decomposed = unicodedata.normalize("NFKD", name)
        ascii_name = "".join(c for c in decomposed if not unicodedata.combining(c))
        clean = _UNSAFE_FILENAME_RE.sub("_", ascii_name.strip()).rstrip(".")
        if not clean:
            raise InvalidFileName(f"File name {name!r} is invalid.")
        return clean

    # -- cache --

    def flush_cache(self):
        self._flush_folder_cache()
        self._flush_file_cache()

    def _flush_file_cache(self):
        self._cache.flush_file_tag()
        self._cached_files = {}

    def _flush_folder_cache(self):
        self._cache.flush_folder_tag()
        self._cached_folders = {}

    @contextlib.contextmanager
    def cache_suppressed(self):
        """Keep intermediate listings of a multi-step operation out of the cache.

        The cache is re-enabled and flushed on every exit path.
        """
        try:
            with self._cache.suppressed():
                yield self
        finally:
            self.flush_cache()

    def _fetch_listing(self, folder):
        """One prefix/delimiter listing of folder; fills both caches."""
        logger.debug("Listing objects in folder %s", folder)
        records, prefixes = self._client.list(paths.folder_prefix(folder), paths.SEPARATOR)
        files = {}
        for record in records:
            if paths.is_keep_file(record.name) or record.name.endswith(paths.SEPARATOR):
                continue
            files[paths.compute_file_identifier(record.name)] = record
        folders = [paths.compute_folder_identifier(prefix) for prefix in prefixes]

        self._cache.set_files(folder, files)
        self._cache.set_folders(folder, folders)
        if self._cache.enabled:
            self._cached_files[folder] = files
            self._cached_folders[folder] = folders
        return files, folders

    def _files(self, folder):
        if self._cache.enabled and folder in self._cached_files:
            return self._cached_files[folder]
        files = self._cache.get_files(folder)
        if files is None:
            files, _folders = self._fetch_listing(folder)
        elif self._cache.enabled:
            self._cached_files[folder] = files
        return files

    def _folders(self, folder):
        if self._cache.enabled and folder in self._cached_folders:
            return self._cached_folders[folder]
        folders = self._cache.get_folders(folder)
        if folders is None:
            _files, folders = self._fetch_listing(folder)
        elif self._cache.enabled:
            self._cached_folders[folder] = folders
        return folders

    def _descendant_folders(self, folder):
        """Every folder below folder, depth-first, deepest first."""
        result = []
        for sub_folder in self._folders(folder):
            result.extend(self._descendant_folders(sub_folder))
            result.append(sub_folder)
        return result

    def _walk(self, folder):
        """Yield (folder, records) for folder and all descendants, children first.

        Goes straight to the backend; records include marker objects.
        """
        records, prefixes = self._client.list(paths.folder_prefix(folder), paths.SEPARATOR)
        for prefix in prefixes:
            yield from self._walk(paths.compute_folder_identifier(prefix))
        yield folder, records

    def _get_object_record(self, identifier):
        folder = paths.parent_folder(identifier)
        if self._cache.enabled and folder in self._cached_files:
            files = self._cached_files[folder]
        else:
            files = self._cache.get_files(folder)
        if files is not None and identifier in files:
            return files[identifier]
        return self._client.head(paths.normalize(identifier))

    # -- files --

    def file_exists(self, identifier):
        if not identifier or identifier.endswith(paths.SEPARATOR):
            return False
        identifier = self.canonicalize_file_identifier(identifier)
        exists = self._get_object_record(identifier) is not None
        if not exists:
            logger.debug("No file found for identifier %s", identifier)
        return exists

    def file_exists_in_folder(self, file_name, folder):
        return self.file_exists(self.get_file_in_folder(file_name, folder))

    def get_file_info(self, identifier, properties=()):
        identifier = self.canonicalize_file_identifier(identifier)
        record = self._get_object_record(identifier)
        if record is None:
            raise NotFound(
                f"Could not retrieve the file info, no file found for {identifier!r}"
            )
        folder = paths.parent_folder(identifier)
        info = {
            "identifier_hash": self.hash_identifier(identifier),
            "folder_hash": self.hash_identifier(folder),
            "creation_date": int(record.created.timestamp()),
            "modification_date": int(record.updated.timestamp()),
            "mime_type": record.content_type,
            "extension": posixpath.splitext(record.name)[1].lstrip("."),
            "size": record.size,
            "storage": self.storage_uid,
            "identifier": identifier,
            "name": posixpath.basename(record.name),
        }
        if properties:
            info = {key: value for key, value in info.items() if key in properties}
        return info

    def get_public_url(self, identifier):
        identifier = self.canonicalize_file_identifier(identifier)
        record = self._get_object_record(identifier)
        if record is None:
            raise NotFound(f"No file found for {identifier!r}")
        public_url = record.media_link
        if self._base_uri:
            for prefix in self._client.media_link_prefixes():
                if public_url.startswith(prefix + paths.SEPARATOR):
                    remainder = public_url[len(prefix) :].split("?", 1)[0]
                    public_url = self._base_uri.rstrip(paths.SEPARATOR) + remainder
                    break
        return public_url

    def get_file_contents(self, identifier):
        key = paths.normalize(self.canonicalize_file_identifier(identifier))
        return self._client.download(key)

    def dump_file_contents(self, identifier, output=None):
        key = paths.normalize(self.canonicalize_file_identifier(identifier))
        output = output if output is not None else sys.stdout.buffer
        with contextlib.closing(self._client.download_stream(key)) as stream:
            shutil.copyfileobj(stream, output, _CHUNK_SIZE)

    def get_local_copy(self, identifier, writable=True):
        """Download a file for local processing and return the path.

        Read-only copies are reused while they exist and are non-empty, so
        never modify one. Writable copies are always fresh. The caller
        removes the file when done.
        """
        identifier = self.canonicalize_file_identifier(identifier)
        key = paths.normalize(identifier)
        extension = posixpath.splitext(key)[1]
        if writable:
            fd, local_path = tempfile.mkstemp(dir=self._temp_dir, suffix=extension)
            os.close(fd)
        else:
            local_path = self._local_copy_path(identifier)
            if os.path.isfile(local_path) and os.path.getsize(local_path):
                return local_path

        logger.info("Downloading %s for local processing to %s", identifier, local_path)
        try:
            self._client.download_file(key, local_path)
        except BaseException:
            if writable:
                with contextlib.suppress(OSError):
                    os.remove(local_path)
            raise
        return local_path

    def _local_copy_path(self, identifier):
        extension = posixpath.splitext(identifier)[1]
        return os.path.join(self._temp_dir, self.hash_identifier(identifier) + extension)

    def _discard_local_copy(self, identifier):
        with contextlib.suppress(OSError):
            os.remove(self._local_copy_path(identifier))

    def add_file(self, local_path, target_folder, new_name="", remove_original=True):
        self._flush_file_cache()

        file_name = self.sanitize_file_name(new_name or os.path.basename(local_path))
        folder = self.canonicalize_folder_identifier(target_folder)
        key = paths.combine_folder_and_file(folder, file_name)

        logger.info("Uploading %s to %s", local_path, key)
        record = self._client.upload_file(local_path, key)
        logger.info("Uploaded %s (%d bytes)", key, record.size)

        identifier = paths.compute_file_identifier(record.name)
        self._discard_local_copy(identifier)
        if remove_original:
            os.remove(local_path)
        return identifier

    def replace_file(self, identifier, local_path):
        identifier = self.canonicalize_file_identifier(identifier)
        self._flush_file_cache()
        key = paths.normalize(identifier)
        logger.info("Replacing %s with %s", key, local_path)
        self._client.upload_file(local_path, key)
        logger.info("Replaced %s", key)
        self._discard_local_copy(identifier)
        return True

    def create_file(self, file_name, parent_folder):
        raise OperationNotSupported("Creating empty files is not supported")

    def set_file_contents(self, identifier, contents):
        raise OperationNotSupported(
            "Setting file contents is not supported, use replace_file"
        )

    def delete_file(self, identifier):
        identifier = self.canonicalize_file_identifier(identifier)
        self._flush_file_cache()
        key = paths.normalize(identifier)
        logger.info("Deleting %s", key)
        self._client.delete(key)
        logger.info("Deleted %s", key)
        self._discard_local_copy(identifier)
        return True

    def copy_file_within_storage(self, identifier, target_folder, file_name):
        self._flush_file_cache()
        source_key = paths.normalize(self.canonicalize_file_identifier(identifier))
        target_key = paths.combine_folder_and_file(
            self.canonicalize_folder_identifier(target_folder), file_name
        )
        logger.info("Copying %s to %s", source_key, target_key)
        record = self._client.copy(source_key, target_key)
        logger.info("Copied %s to %s", source_key, record.name)
        new_identifier = paths.compute_file_identifier(record.name)
        self._discard_local_copy(new_identifier)
        return new_identifier

    def move_file_within_storage(self, identifier, target_folder, file_name):
        identifier = self.canonicalize_file_identifier(identifier)
        target_identifier = self.get_file_in_folder(
            file_name, self.canonicalize_folder_identifier(target_folder)
        )
        if target_identifier == identifier:
            return identifier
        # No rename in object stores: copy, then delete the source.
        new_identifier = self.copy_file_within_storage(identifier, target_folder, file_name)
        self.delete_file(identifier)
        return new_identifier

    def rename_file(self, identifier, new_name):
        identifier = self.canonicalize_file_identifier(identifier)
        if paths.SEPARATOR not in new_name:
            parent = paths.parent_folder(identifier)
            new_identifier = self.get_file_in_folder(self.sanitize_file_name(new_name), parent)
        else:
            new_identifier = self.canonicalize_file_identifier(new_name)
        return self.move_file_within_storage(
            identifier,
            paths.parent_folder(new_identifier),
            paths.basename(new_identifier),
        )

    # -- folders --

    def folder_exists(self, folder):
        folder = self.canonicalize_folder_identifier(folder)
        if folder == paths.ROOT_FOLDER_IDENTIFIER:
            return True
        if self._client.exists(paths.final_folder_identifier(folder)):
            return True
        # Prefixes written by other tools have no marker.
        return self._client.has_prefix(paths.folder_prefix(folder))

    def folder_exists_in_folder(self, folder_name, folder):
        return self.folder_exists(self.get_folder_in_folder(folder_name, folder))

    def get_folder_info(self, folder):
        folder = self.canonicalize_folder_identifier(folder)
        if not self.folder_exists(folder):
            raise NotFound(f"No folder found for {folder!r}")
        return {
            "identifier": folder,
            "name": paths.basename(folder),
            "storage": self.storage_uid,
        }

    def is_folder_empty(self, folder):
        folder = self.canonicalize_folder_identifier(folder)
        return not self._files(folder) and not self._folders(folder)

    def create_folder(self, name, parent=paths.ROOT_FOLDER_IDENTIFIER, recursive=False):
        if not paths.normalize(name):
            raise InvalidFileName(f"Folder name {name!r} is invalid.")
        self._flush_folder_cache()

        parent = self.canonicalize_folder_identifier(parent)
        folder = self.canonicalize_folder_identifier(
            paths.combine_folder_and_folder_name(parent, name)
        )
        targets = [folder]
        if recursive:
            current = paths.parent_folder(folder)
            while current != paths.ROOT_FOLDER_IDENTIFIER:
                targets.insert(0, current)
                current = paths.parent_folder(current)

        for target in targets:
            key = paths.final_folder_identifier(target)
            logger.info("Creating folder %s", target)
            self._client.upload(b"", key)
            logger.info("Created folder marker %s", key)
        return folder

    def delete_folder(self, folder, recursive=False):
        folder = self.canonicalize_folder_identifier(folder)
        if folder == paths.ROOT_FOLDER_IDENTIFIER:
            raise InvalidPath("The root folder cannot be deleted")
        if not recursive and not self.is_folder_empty(folder):
            raise FolderNotEmpty(f"Folder {folder!r} is not empty")

        deleted = []
        with self.cache_suppressed():
            tree = list(self._walk(folder))
            try:
                for current, records in tree:
                    for record in records:
                        logger.info("Deleting %s from folder %s", record.name, current)
                        self._client.delete(record.name)
                        deleted.append(record.name)
                        self._discard_local_copy(paths.compute_file_identifier(record.name))
            except ObjectStoreError as e:
                raise PartialFailure(
                    f"Deleting folder {folder} stopped after {len(deleted)} objects: {e}",
                    deleted,
                ) from e
        logger.info("Deleted folder %s (%d objects)", folder, len(deleted))
        return True

    def rename_folder(self, folder, new_name):
        folder = self.canonicalize_folder_identifier(folder)
        if folder == paths.ROOT_FOLDER_IDENTIFIER:
            raise InvalidPath("The root folder cannot be renamed")
        return self.move_folder_within_storage(folder, paths.parent_folder(folder), new_name)

    def copy_folder_within_storage(self, source, target_parent, new_name):
        return self._copy_or_move_folder(source, target_parent, new_name, delete_source=False)

    def move_folder_within_storage(self, source, target_parent, new_name):
        return self._copy_or_move_folder(source, target_parent, new_name, delete_source=True)

    def _copy_or_move_folder(self, source, target_parent, new_name, delete_source):
        source = self.canonicalize_folder_identifier(source)
        target = self.canonicalize_folder_identifier(
            paths.combine_folder_and_folder_name(
                self.canonicalize_folder_identifier(target_parent), new_name
            )
        )
        if source == paths.ROOT_FOLDER_IDENTIFIER:
            raise InvalidPath("The root folder cannot be copied or moved")
        if source == target or (delete_source and self.is_within(source, target)):
            raise InvalidPath(f"Cannot move or copy {source!r} onto {target!r}")

        source_prefix = paths.normalize_folder(source)
        target_prefix = paths.normalize_folder(target)
        operation = "Moving" if delete_source else "Copying"
        touched = {}
        with self.cache_suppressed():
            tree = list(self._walk(source))
            marker = paths.final_folder_identifier(target)
            if not self._client.exists(marker):
                self._client.upload(b"", marker)

            try:
                for _current, records in tree:
                    for record in records:
                        target_key = target_prefix + record.name[len(source_prefix) :]
                        logger.info("%s %s to %s", operation, record.name, target_key)
                        self._client.copy(record.name, target_key)
                        old_identifier = paths.compute_file_identifier(record.name)
                        new_identifier = paths.compute_file_identifier(target_key)
                        self._discard_local_copy(new_identifier)
                        if not paths.is_keep_file(record.name):
                            touched[old_identifier] = new_identifier
                        if delete_source:
                            self._client.delete(record.name)
                            self._discard_local_copy(old_identifier)
            except ObjectStoreError as e:
                raise PartialFailure(
                    f"{operation} folder {source} stopped after {len(touched)} files: {e}",
                    touched,
                ) from e
        logger.info("%s folder %s to %s done (%d files)", operation, source, target, len(touched))
        return touched

    # -- enumeration --

    def list_files_in_folder(
        self,
        folder,
        start=0,
        count=0,
        recursive=False,
        filters=(),
        sort="",
        sort_reverse=False,
    ):
        if not folder:
            raise ValueError("Folder identifier must not be empty")
        folder = self.canonicalize_folder_identifier(folder)
        files = dict(self._files(folder))
        if recursive:
            for sub_folder in self._descendant_folders(folder):
                files.update(self._files(sub_folder))

        entries = [
            (identifier, record)
            for identifier, record in files.items()
            if self._accepted(filters, identifier)
        ]
        entries = self._sorted(entries, _FILE_SORT_KEYS, sort, sort_reverse)
        return [identifier for identifier, _record in self._page(entries, start, count)]

    def list_folders_in_folder(
        self,
        folder,
        start=0,
        count=0,
        recursive=False,
        filters=(),
        sort="",
        sort_reverse=False,
    ):
        if not folder:
            raise ValueError("Folder identifier must not be empty")
        folder = self.canonicalize_folder_identifier(folder)
        if recursive:
            folders = self._descendant_folders(folder)
        else:
            folders = list(self._folders(folder))

        entries = [(identifier, None) for identifier in folders if self._accepted(filters, identifier)]
        # Folders carry no metadata, every sort key falls back to the name.
        entries = self._sorted(entries, {"name": _by_name}, sort, sort_reverse)
        return [identifier for identifier, _none in self._page(entries, start, count)]

    def count_files_in_folder(self, folder, recursive=False, filters=()):
        return len(self.list_files_in_folder(folder, recursive=recursive, filters=filters))

    def count_folders_in_folder(self, folder, recursive=False, filters=()):
        return len(self.list_folders_in_folder(folder, recursive=recursive, filters=filters))

    @staticmethod
    def _accepted(filters, identifier):
        name = paths.basename(identifier)
        return all(accept(name, identifier) for accept in filters)

    @staticmethod
    def _sorted(entries, sort_keys, sort, reverse):
        if not sort:
            return entries[::-1] if reverse else entries
        key = sort_keys.get(sort, sort_keys["name"])
        return sorted(entries, key=key, reverse=reverse)

    @staticmethod
    def _page(entries, start, count):
        if count > 0:
            return entries[start : start + count]
        return entries[start:]
