from typing import Any


class DataBlobError(Exception):
    """Base class for all asyncdatablobs errors."""

    pass


class StorageError(DataBlobError):
    """Raised when the underlying blob store fails.

    Carries the operation and blob name the failure happened on, plus the
    original exception (also chained as ``__cause__`` where raised with
    ``from``).
    """

    def __init__(
        self,
        message: str,
        operation: str | None = None,
        blob_name: str | None = None,
        cause: BaseException | None = None,
    ) -> None:
        super().__init__(message)
        self.operation = operation
        self.blob_name = blob_name
        self.cause = cause


class BlobNotFoundError(StorageError):
    """Raised when a requested blob does not exist."""

    pass


class BlobAlreadyExistsError(StorageError):
    """Raised when a conditional create collides with an existing blob."""

    pass


class ConflictError(StorageError):
    """Raised when a version-token precondition fails on write or delete."""

    pass


class BlobNotModifiedError(StorageError):
    """Raised by a conditional read when the blob still matches the given token."""

    pass


class AuthorizationError(StorageError):
    """Raised when the credential lacks permission for the operation."""

    pass


class ContainerAlreadyExistsError(StorageError):
    pass


class ContainerNotFoundError(StorageError):
    pass


class SchemaValidationError(DataBlobError):
    """Raised when content does not conform to its JSON schema."""

    def __init__(
        self, message: str, content: Any, validation_errors: list[str]
    ) -> None:
        super().__init__(message)
        self.content = content
        self.validation_errors = validation_errors


class SchemaIntegrityError(DataBlobError):
    """Raised when the stored schema differs from the declared one."""

    pass


class SchemaLoadError(DataBlobError):
    """Raised when a schema version cannot be fetched or compiled."""

    pass


class CongestionError(DataBlobError):
    """Raised when modify runs out of retries on version conflicts."""

    pass


class BlobSerializationError(DataBlobError):
    """Raised when content cannot be (de)serialized."""

    pass
