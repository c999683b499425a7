"""Conversion between hierarchical identifiers and flat object keys.

Identifiers are what the host sees: ``/photos/image.jpg`` for a file,
``/photos/`` for a folder and ``/`` for the root. Keys are what the object
store sees: ``photos/image.jpg``. A folder only "exists" in the store
through a zero-byte marker object, ``photos/.keep``.
"""

import posixpath


SEPARATOR = "/"
ROOT_FOLDER_IDENTIFIER = "/"
KEEP_FILE = ".keep"


def normalize(identifier):
    return identifier.strip(SEPARATOR)


def normalize_folder(identifier):
    return normalize(identifier) + SEPARATOR


def folder_prefix(identifier):
    """Listing prefix for a folder; the root lists from the empty prefix."""
    normalized = normalize(identifier)
    return normalized + SEPARATOR if normalized else ""


def compute_file_identifier(key):
    return SEPARATOR + key.lstrip(SEPARATOR)


def compute_folder_identifier(key):
    normalized = normalize(key)
    if not normalized:
        return ROOT_FOLDER_IDENTIFIER
    return SEPARATOR + normalized + SEPARATOR


def combine_folder_and_file(folder, filename):
    # Only the base name is kept, "../x" or "a/b" can't escape the folder.
    return normalize(normalize_folder(folder) + posixpath.basename(filename))


def combine_folder_and_folder_name(folder, name):
    return compute_folder_identifier(normalize_folder(folder) + normalize(name))


def final_folder_identifier(folder):
    """Key of the marker object that makes ``folder`` exist."""
    return combine_folder_and_file(folder, KEEP_FILE)


def is_keep_file(key):
    return posixpath.basename(key) == KEEP_FILE


def parent_folder(identifier):
    normalized = normalize(identifier)
    return compute_folder_identifier(posixpath.dirname(normalized))


def basename(identifier):
    return posixpath.basename(normalize(identifier))
