class ObjectStoreError(Exception):
    """Base class for all s3_folderstore errors."""


class ConfigurationMissing(ObjectStoreError):
    """A required setting (bucket name, credentials file, ...) is absent."""


class BackendUnavailable(ObjectStoreError):
    """Talking to the object store failed.

    Wraps botocore errors to avoid leaking infrastructure details; the
    original exception is chained.
    """


class CredentialsInvalid(BackendUnavailable):
    """The object store rejected or could not find the credentials."""


class NotFound(ObjectStoreError):
    """No file or folder exists for the requested identifier."""


class InvalidFileName(ObjectStoreError, ValueError):
    pass


class InvalidPath(ObjectStoreError, ValueError):
    pass


class OperationNotSupported(ObjectStoreError, NotImplementedError):
    pass


class FolderNotEmpty(ObjectStoreError):
    pass


class PartialFailure(ObjectStoreError):
    """A recursive multi-object operation stopped partway.

    ``completed`` holds whatever was done before the failure: a mapping of
    old to new file identifiers for copy/move, a list of deleted keys for
    folder deletion. Nothing is rolled back.
    """

    def __init__(self, message, completed):
        super().__init__(message)
        self.completed = completed
