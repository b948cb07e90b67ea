"""
asyncdatablobs
==============

Async JSON document store on blob storage, with versioned JSON-schema
validation and optimistic-concurrency updates. Backed by Azure Blob Storage
or the local filesystem.

Main entry points:
- DataContainer: a container of schema-validated blobs
- DocumentBlob, AppendLogBlob: the two blob variants
- SchemaRegistry, RetryPolicy: schema versions and update backoff
- LocalFileAdapter, AzureBlobAdapter: storage backends
- SchemaValidationError, CongestionError, ...: exceptions

Example:
    from asyncdatablobs import DataContainer, LocalFileAdapter

    container = DataContainer("settings", LocalFileAdapter("./data"), schema)
    await container.init()
    doc = await container.create_document("user-1", {"theme": "dark"})
    await doc.modify(lambda content: content.update(theme="light"))
"""

import importlib.metadata

from .blobs import AppendLogBlob, DataBlob, DocumentBlob
from .container import BlobListing, DataContainer
from .errors import (
    AuthorizationError,
    BlobAlreadyExistsError,
    BlobNotFoundError,
    BlobNotModifiedError,
    BlobSerializationError,
    ConflictError,
    CongestionError,
    ContainerAlreadyExistsError,
    ContainerNotFoundError,
    DataBlobError,
    SchemaIntegrityError,
    SchemaLoadError,
    SchemaValidationError,
    StorageError,
)
from .logging_config import configure_logging, get_logger
from .retry import RetryPolicy
from .schema_registry import SchemaRegistry, ValidationResult
from .settings import Settings, get_settings, store_from_settings
from .storage_protocols import (
    BlobInfo,
    BlobKind,
    BlobPage,
    BlobProperties,
    BlobStore,
    StoredBlob,
    WriteConditions,
    WriteResult,
)
from .local_file_adapter import LocalFileAdapter
from .azure_blob_adapter import AzureBlobAdapter

try:
    __version__ = importlib.metadata.version(__name__)
except importlib.metadata.PackageNotFoundError:
    __version__ = "0.0.0"

__all__ = [
    "DataContainer",
    "BlobListing",
    "DocumentBlob",
    "AppendLogBlob",
    "DataBlob",
    "SchemaRegistry",
    "ValidationResult",
    "RetryPolicy",
    "Settings",
    "get_settings",
    "store_from_settings",
    "configure_logging",
    "get_logger",
    "BlobStore",
    "BlobKind",
    "BlobInfo",
    "BlobPage",
    "BlobProperties",
    "StoredBlob",
    "WriteConditions",
    "WriteResult",
    "LocalFileAdapter",
    "AzureBlobAdapter",
    "DataBlobError",
    "StorageError",
    "BlobNotFoundError",
    "BlobAlreadyExistsError",
    "BlobNotModifiedError",
    "ConflictError",
    "AuthorizationError",
    "ContainerAlreadyExistsError",
    "ContainerNotFoundError",
    "SchemaValidationError",
    "SchemaIntegrityError",
    "SchemaLoadError",
    "CongestionError",
    "BlobSerializationError",
]
