from zope.interface import Attribute
from zope.interface import Interface


class IObjectStoreClient(Interface):
    """Abstraction over a flat, S3-compatible object store."""

    bucket_name = Attribute("Name of the bucket all keys live in.")

    def upload(data, key, content_type=None):
        """Store bytes under key, return an ObjectRecord."""

    def upload_file(local_path, key, content_type=None):
        """Store a local file under key, return an ObjectRecord."""

    def download(key):
        """Return the object's content as bytes."""

    def download_stream(key):
        """Return a readable binary stream of the object's content."""

    def download_file(key, local_path):
        """Download an object to a local file (atomic via temp+rename)."""

    def copy(source_key, dest_key):
        """Server-side copy, return the ObjectRecord of the new object."""

    def delete(key):
        """Delete an object."""

    def exists(key):
        """Return True if an object exists under key."""

    def head(key):
        """Return the ObjectRecord for key, or None if not found."""

    def list(prefix="", delimiter="/"):
        """Return (records, sub_prefixes) below prefix, all pages."""

    def has_prefix(prefix):
        """Return True if at least one key starts with prefix."""

    def media_link_prefixes():
        """Return the canonical URL prefixes media links start with."""


class ICacheBackend(Interface):
    """Tagged key/value store with per-entry lifetime."""

    def get(key):
        """Return stored data or None (missing or expired)."""

    def set(key, data, tag, lifetime):
        """Store JSON-compatible data under key, tagged and time-boxed."""

    def flush_by_tag(tag):
        """Remove every entry carrying tag."""

    def flush():
        """Remove every entry."""


class IListingCache(Interface):
    """Read-through cache of folder listings for one storage scope."""

    enabled = Attribute("False while caching is suppressed.")

    def get_files(folder_identifier):
        """Return {file identifier: ObjectRecord} or None on a miss."""

    def set_files(folder_identifier, records):
        """Cache the file listing of a folder under the "file" tag."""

    def get_folders(folder_identifier):
        """Return a list of sub-folder identifiers or None on a miss."""

    def set_folders(folder_identifier, identifiers):
        """Cache the sub-folder listing of a folder under the "folder" tag."""

    def flush_file_tag():
        """Drop all file listings."""

    def flush_folder_tag():
        """Drop all folder listings."""

    def flush_all():
        """Drop everything cached for any scope."""

    def enable():
        """Resume caching."""

    def disable():
        """Turn every get into a miss and every set into a no-op; flushes still apply."""

    def suppressed():
        """Context manager disabling the cache, restoring it on exit."""


class IFileIndex(Interface):
    """Host-side record of which files belong to which storage."""

    def list_identifiers():
        """Yield the file identifiers known for the source storage."""

    def reassign(identifier, storage_uid):
        """Record that identifier now lives in storage_uid, return bool."""


class IHierarchicalDriver(Interface):
    """Folder/file view over a flat object store, as consumed by the host."""

    storage_uid = Attribute("Identifier of the storage scope served.")

    # -- files --

    def add_file(local_path, target_folder, new_name="", remove_original=True):
        """Upload a local file into a folder, return its identifier."""

    def replace_file(identifier, local_path):
        """Replace a file's contents with a local file."""

    def delete_file(identifier):
        """Delete a file."""

    def rename_file(identifier, new_name):
        """Rename a file, return the new identifier."""

    def copy_file_within_storage(identifier, target_folder, file_name):
        """Copy a file, return the new identifier."""

    def move_file_within_storage(identifier, target_folder, file_name):
        """Move a file, return the new identifier."""

    def get_file_contents(identifier):
        """Return a file's contents as bytes."""

    def dump_file_contents(identifier, output=None):
        """Stream a file's contents to a binary file object."""

    def file_exists(identifier):
        """Return True if the file exists."""

    def get_file_info(identifier, properties=()):
        """Return a dict describing the file."""

    def get_public_url(identifier):
        """Return a public URL for the file."""

    def get_local_copy(identifier, writable=True):
        """Download to a local temporary path and return it."""

    def sanitize_file_name(name):
        """Return a name limited to [.A-Za-z0-9_-]."""

    # -- folders --

    def create_folder(name, parent="/", recursive=False):
        """Create a folder, return its identifier."""

    def delete_folder(folder, recursive=False):
        """Delete a folder."""

    def folder_exists(folder):
        """Return True if the folder exists."""

    def rename_folder(folder, new_name):
        """Rename a folder, return {old file identifier: new}."""

    def copy_folder_within_storage(source, target_parent, new_name):
        """Copy a folder tree, return {old file identifier: new}."""

    def move_folder_within_storage(source, target_parent, new_name):
        """Move a folder tree, return {old file identifier: new}."""

    def is_folder_empty(folder):
        """Return True if the folder has no files and no sub-folders."""

    def is_within(container, identifier):
        """Return True if identifier is container or lies below it."""

    # -- enumeration --

    def list_files_in_folder(
        folder, start=0, count=0, recursive=False, filters=(), sort="",
        sort_reverse=False,
    ):
        """Return a page of file identifiers."""

    def list_folders_in_folder(
        folder, start=0, count=0, recursive=False, filters=(), sort="",
        sort_reverse=False,
    ):
        """Return a page of folder identifiers."""

    def count_files_in_folder(folder, recursive=False, filters=()):
        """Return the number of files in a folder."""

    def count_folders_in_folder(folder, recursive=False, filters=()):
        """Return the number of sub-folders in a folder."""
