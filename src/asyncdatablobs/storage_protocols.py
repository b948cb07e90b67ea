from dataclasses import dataclass, field
from enum import Enum
from typing import Protocol


class BlobKind(Enum):
    BLOCK = "BlockBlob"  # Whole-object writes, holds JSON documents
    APPEND = "AppendBlob"  # Append-only, holds JSON fragment logs
    PAGE = "PageBlob"  # Not supported by the data layer


@dataclass
class BlobProperties:
    """Opaque pass-through properties stored alongside a blob."""

    content_type: str | None = None
    content_encoding: str | None = None
    content_language: str | None = None
    content_disposition: str | None = None
    cache_control: str | None = None
    metadata: dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class WriteConditions:
    """Preconditions for a write, read or delete.

    ``if_match``: only if the blob's current version token equals this one.
    ``if_none_match``: only if the blob's version token differs (reads).
    ``only_if_absent``: only if no blob with that name exists (writes).
    """

    if_match: str | None = None
    if_none_match: str | None = None
    only_if_absent: bool = False


@dataclass
class WriteResult:
    version_token: str | None


@dataclass
class StoredBlob:
    content: bytes
    version_token: str | None
    kind: BlobKind
    properties: BlobProperties


@dataclass
class BlobInfo:
    name: str
    kind: BlobKind
    version_token: str | None = None
    properties: BlobProperties = field(default_factory=BlobProperties)


@dataclass
class BlobPage:
    entries: list[BlobInfo]
    next_continuation_token: str | None = None


class BlobStore(Protocol):
    """Protocol for a blob storage backend.

    Implementations translate their native failures to the exceptions in
    ``asyncdatablobs.errors``.
    """

    # True when the credential is scoped to an already provisioned container
    container_provisioned: bool

    async def create_container(self, container_name: str) -> None:
        """Create a container; raise ContainerAlreadyExistsError if present."""
        ...

    async def delete_container(self, container_name: str) -> None:
        """Delete a container and everything in it."""
        ...

    async def put_blob(
        self,
        container_name: str,
        blob_name: str,
        properties: BlobProperties,
        content: bytes,
        conditions: WriteConditions | None = None,
    ) -> WriteResult:
        """Write a block blob, replacing any previous content."""
        ...

    async def create_append_blob(
        self,
        container_name: str,
        blob_name: str,
        properties: BlobProperties,
        conditions: WriteConditions | None = None,
    ) -> WriteResult:
        """Create an empty append blob."""
        ...

    async def append_block(
        self,
        container_name: str,
        blob_name: str,
        properties: BlobProperties,
        content: bytes,
    ) -> WriteResult:
        """Append bytes to the end of an existing append blob."""
        ...

    async def get_blob(
        self,
        container_name: str,
        blob_name: str,
        conditions: WriteConditions | None = None,
    ) -> StoredBlob:
        """Download a blob; raise BlobNotModifiedError on if_none_match hit."""
        ...

    async def get_blob_properties(
        self, container_name: str, blob_name: str
    ) -> BlobInfo:
        """Return kind, version token and properties of a blob."""
        ...

    async def delete_blob(
        self,
        container_name: str,
        blob_name: str,
        conditions: WriteConditions | None = None,
    ) -> None:
        """Delete a blob."""
        ...

    async def list_blobs(
        self,
        container_name: str,
        prefix: str | None = None,
        continuation_token: str | None = None,
        max_results: int | None = None,
    ) -> BlobPage:
        """Return one page of blobs in name order."""
        ...

    async def close(self) -> None:
        """Close any resources/connections."""
        ...
