"""Operator jobs copying or moving local files into a bucket storage."""

from s3_folderstore import paths
from s3_folderstore.errors import ObjectStoreError
from s3_folderstore.interfaces import IFileIndex
from zope.interface import implementer

import argparse
import fnmatch
import logging
import os
import sys
import tempfile
import uuid


logger = logging.getLogger(__name__)


@implementer(IFileIndex)
class DirectoryFileIndex:
    """Every regular file below base_path is a file of the source storage."""

    def __init__(self, base_path):
        self.base_path = base_path

    def list_identifiers(self):
        for dirpath, dirnames, filenames in os.walk(self.base_path):
            dirnames.sort()
            for fn in sorted(filenames):
                relative = os.path.relpath(os.path.join(dirpath, fn), self.base_path)
                yield paths.compute_file_identifier(relative.replace(os.sep, paths.SEPARATOR))

    def reassign(self, identifier, storage_uid):
        return True


@implementer(IFileIndex)
class ManifestFileIndex:
    """File identifiers listed one per line; blank lines and # comments skipped."""

    def __init__(self, manifest_path):
        self.manifest_path = manifest_path

    def list_identifiers(self):
        with open(self.manifest_path, encoding="utf-8") as f:
            for line in f:
                line = line.strip()
                if line and not line.startswith("#"):
                    yield paths.compute_file_identifier(line)

    def reassign(self, identifier, storage_uid):
        return True


def like_to_glob(pattern):
    """Accept SQL LIKE wildcards (% and _) next to shell ones."""
    return pattern.replace("%", "*").replace("_", "?")


def parse_limit(value):
    """``"100"`` is a limit, ``"20,100"`` an offset and a limit."""
    if not value:
        return 0, None
    parts = [part.strip() for part in value.split(",") if part.strip()]
    if len(parts) == 1:
        return 0, int(parts[0])
    return int(parts[0]), int(parts[1])


class MigrationJob:
    """Select files from a local source storage for transfer to a driver."""

    def __init__(
        self,
        source_dir,
        driver,
        index=None,
        include="",
        exclude=(),
        offset=0,
        limit=None,
    ):
        self.source_dir = source_dir
        self.driver = driver
        self.index = index if index is not None else DirectoryFileIndex(source_dir)
        self.include = like_to_glob(include) if include else ""
        self.exclude = [like_to_glob(pattern) for pattern in exclude if pattern]
        self.offset = offset
        self.limit = limit
        self._known_folders = set()

    def select(self):
        identifiers = [
            identifier
            for identifier in self.index.list_identifiers()
            if (not self.include or fnmatch.fnmatchcase(identifier, self.include))
            and not any(fnmatch.fnmatchcase(identifier, p) for p in self.exclude)
        ]
        end = self.offset + self.limit if self.limit is not None else None
        return identifiers[self.offset : end]

    def local_path(self, identifier):
        return os.path.join(self.source_dir, *paths.normalize(identifier).split(paths.SEPARATOR))

    def ensure_folder(self, folder):
        """Create the target folder marker once per run when it is missing."""
        if folder in self._known_folders or folder == paths.ROOT_FOLDER_IDENTIFIER:
            return
        if not self.driver.folder_exists(folder):
            self.driver.create_folder(folder, recursive=True)
        self._known_folders.add(folder)


class CopyJob(MigrationJob):
    def run(self):
        files = self.select()
        logger.info(
            "Copying %d files from %s to storage %s",
            len(files),
            self.source_dir,
            self.driver.storage_uid,
        )
        counter = 0
        with self.driver.cache_suppressed():
            for identifier in files:
                local_path = self.local_path(identifier)
                if not os.path.isfile(local_path):
                    logger.warning("Missing file %s", identifier)
                    continue
                folder = paths.parent_folder(identifier)
                self.ensure_folder(folder)
                logger.info("Copying %s", identifier)
                self.driver.add_file(
                    local_path, folder, paths.basename(identifier), remove_original=False
                )
                counter += 1
        logger.info("Number of files copied: %d", counter)
        return counter


class MoveJob(MigrationJob):
    """Upload files to the identical key, then remove the local original.

    The local file is only deleted once the upload succeeded and the index
    accepted the new storage. Files missing on disk are collected in
    ``missing`` and written to a log file for follow-up.
    """

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.missing = []
        self.failed = []

    def run(self):
        files = self.select()
        logger.info(
            "Moving %d files from %s to storage %s",
            len(files),
            self.source_dir,
            self.driver.storage_uid,
        )
        counter = 0
        with self.driver.cache_suppressed():
            for identifier in files:
                local_path = self.local_path(identifier)
                if not os.path.isfile(local_path):
                    logger.warning("Missing file %s", identifier)
                    self.missing.append(identifier)
                    continue
                logger.info("Moving %s", identifier)
                self.ensure_folder(paths.parent_folder(identifier))
                try:
                    self.driver.client.upload_file(local_path, paths.normalize(identifier))
                except ObjectStoreError:
                    logger.error("Upload of %s failed, source kept", identifier, exc_info=True)
                    self.failed.append(identifier)
                    continue
                if self.index.reassign(identifier, self.driver.storage_uid):
                    os.remove(local_path)
                counter += 1
        logger.info("Number of files moved: %d", counter)
        if self.missing:
            self.write_log("missing", self.missing)
        return counter

    def write_log(self, kind, identifiers):
        log_path = os.path.join(
            tempfile.gettempdir(),
            f"{kind}-files-{os.getpid()}-{uuid.uuid4().hex}-log",
        )
        with open(log_path, "w", encoding="utf-8") as f:
            f.writelines(f"{identifier}\n" for identifier in identifiers)
        logger.warning(
            "Found %d %s files. A log file has been written at %s",
            len(identifiers),
            kind,
            log_path,
        )
        return log_path


def _confirm(question):
    answer = input(f"{question} [Y/n] ").strip().lower()
    return answer in ("", "y", "yes")


def build_parser():
    parser = argparse.ArgumentParser(
        prog="s3-folderstore",
        description="Bulk operations against an S3 folder storage",
    )
    parser.add_argument("--config", required=True, help="ZConfig file of the target storage")
    parser.add_argument("-s", "--silent", action="store_true", help="Mute output as much as possible")
    subparsers = parser.add_subparsers(dest="command", required=True)

    for name, help_text in (
        ("copy", "Copy files from a local storage directory to the bucket"),
        ("move", "Move files from a local storage directory to the bucket"),
    ):
        sub = subparsers.add_parser(name, help=help_text)
        sub.add_argument("source", help="Base path of the local source storage")
        sub.add_argument("--manifest", help="File listing the identifiers to transfer")
        sub.add_argument("--filter", default="", help='Include pattern, e.g. --filter="%%.pdf"')
        sub.add_argument(
            "--exclude",
            default="",
            help='Comma separated exclude patterns, e.g. --exclude="/apps/%%,/_temp/%%"',
        )
        sub.add_argument("--limit", default="", help="Limit or offset,limit, e.g. 0,100")
        if name == "move":
            sub.add_argument("-y", "--yes", action="store_true", help="Accept everything by default")

    subparsers.add_parser("flush-cache", help="Flush the listing cache of the storage")
    return parser


def main(argv=None):
    from s3_folderstore.config import load_factory

    args = build_parser().parse_args(argv)
    logging.basicConfig(
        level=logging.WARNING if args.silent else logging.INFO,
        format="%(message)s",
    )

    try:
        driver = load_factory(args.config).open()
    except ObjectStoreError as e:
        logger.error("%s", e)
        return 1

    try:
        if args.command == "flush-cache":
            driver.cache.flush_all()
            return 0

        offset, limit = parse_limit(args.limit)
        index = ManifestFileIndex(args.manifest) if args.manifest else None
        job_class = MoveJob if args.command == "move" else CopyJob
        job = job_class(
            args.source,
            driver,
            index=index,
            include=args.filter,
            exclude=args.exclude.split(","),
            offset=offset,
            limit=limit,
        )
        if args.command == "move" and not args.yes:
            files = job.select()
            if not files:
                logger.info("No files found, no work for me!")
                return 0
            logger.warning(
                "I will move %d files from %s to storage %s",
                len(files),
                args.source,
                driver.storage_uid,
            )
            if not _confirm("Shall I continue?"):
                logger.info("Script aborted")
                return 0
        job.run()
        return 0
    finally:
        driver.close()


if __name__ == "__main__":
    sys.exit(main())
