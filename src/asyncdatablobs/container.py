import asyncio
import inspect
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable

from .blobs import AppendLogBlob, DataBlob, DocumentBlob
from .errors import BlobNotFoundError, ContainerAlreadyExistsError
from .logging_config import get_logger
from .retry import RetryPolicy
from .schema_registry import SchemaRegistry, ValidationResult, is_schema_blob_name
from .serializers import JSONValue
from .storage_protocols import BlobInfo, BlobKind, BlobProperties, BlobStore


@dataclass
class BlobListing:
    blobs: list[DataBlob] = field(default_factory=list)
    continuation_token: str | None = None


class DataContainer:
    """
    A container whose blobs hold JSON validated against a versioned schema.

    Call ``init`` before anything else: it makes sure the container exists
    and that the declared schema matches the one stored for its version.

    Example:
        async with DataContainer(
            "settings", LocalFileAdapter("./data"), schema, schema_version=2
        ) as container:
            await container.init()
            doc = await container.create_document("user-1", {"theme": "dark"})
            await doc.modify(lambda c: c.update(theme="light"))
    """

    def __init__(
        self,
        name: str,
        store: BlobStore,
        schema: dict[str, Any],
        schema_version: int = 1,
        retry_policy: RetryPolicy | None = None,
        logger: Any = None,
    ) -> None:
        if not isinstance(name, str) or not name:
            raise ValueError("Container name must be a non-empty string")
        self._name = name
        self.store = store
        self.retry_policy = retry_policy or RetryPolicy()
        self.log = (logger or get_logger("asyncdatablobs")).bind(container=name)
        self.registry = SchemaRegistry(
            store, name, schema, schema_version=schema_version, logger=self.log
        )
        self._initialized = False

    @property
    def name(self) -> str:
        return self._name

    @property
    def schema(self) -> dict[str, Any]:
        return self.registry.schema

    @property
    def schema_version(self) -> int:
        return self.registry.schema_version

    @property
    def initialized(self) -> bool:
        return self._initialized

    def __repr__(self) -> str:
        return f"DataContainer(name={self._name!r}, schema_version={self.schema_version})"

    async def __aenter__(self) -> "DataContainer":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    async def close(self) -> None:
        await self.store.close()

    async def init(self) -> None:
        await self.ensure_container()
        await self.registry.ensure_current_schema_cached()
        self._initialized = True
        self.log.info("container_initialized", schema_version=self.schema_version)

    async def ensure_container(self) -> None:
        """Create the underlying container unless it already exists.

        Skipped for credentials scoped to a pre-provisioned container, which
        usually lack the permission to create one.
        """
        if self.store.container_provisioned:
            return
        try:
            await self.store.create_container(self._name)
        except ContainerAlreadyExistsError:
            pass

    async def remove_container(self) -> None:
        await self.store.delete_container(self._name)
        self._initialized = False
        self.log.info("container_removed")

    def _require_init(self) -> None:
        if not self._initialized:
            raise RuntimeError(
                f"Container '{self._name}' is not initialized, call init() first"
            )

    async def validate(
        self, content: JSONValue, version: int | None = None
    ) -> ValidationResult:
        return await self.registry.validate(content, version)

    def document(
        self,
        name: str,
        properties: BlobProperties | None = None,
        cache_content: bool = False,
    ) -> DocumentBlob:
        """Return an unbound handle; nothing is stored until ``create``."""
        self._require_init()
        return DocumentBlob(self, name, properties, cache_content=cache_content)

    def append_log(
        self, name: str, properties: BlobProperties | None = None
    ) -> AppendLogBlob:
        self._require_init()
        return AppendLogBlob(self, name, properties)

    async def create_document(
        self,
        name: str,
        content: JSONValue,
        properties: BlobProperties | None = None,
        cache_content: bool = False,
        fail_if_exists: bool = False,
    ) -> DocumentBlob:
        blob = self.document(name, properties, cache_content=cache_content)
        await blob.create(content, fail_if_exists=fail_if_exists)
        return blob

    async def create_append_log(
        self,
        name: str,
        content: JSONValue = None,
        properties: BlobProperties | None = None,
        fail_if_exists: bool = False,
    ) -> AppendLogBlob:
        blob = self.append_log(name, properties)
        await blob.create(fail_if_exists=fail_if_exists)
        if content is not None:
            await blob.append(content)
        return blob

    def _wrap(self, entry: BlobInfo, cache_content: bool = False) -> DataBlob | None:
        if is_schema_blob_name(entry.name):
            return None
        if entry.kind == BlobKind.BLOCK:
            return DocumentBlob(
                self, entry.name, entry.properties, cache_content=cache_content
            )
        if entry.kind == BlobKind.APPEND:
            return AppendLogBlob(self, entry.name, entry.properties)
        # Page blobs are not supported
        return None

    async def list_blobs(
        self,
        prefix: str | None = None,
        continuation_token: str | None = None,
        max_results: int | None = None,
    ) -> BlobListing:
        """
        Return one page of document and append-log handles.

        Schema blobs and unsupported blob kinds are left out, so a page may
        hold fewer than ``max_results`` handles even when more follow.
        """
        self._require_init()
        page = await self.store.list_blobs(
            self._name,
            prefix=prefix,
            continuation_token=continuation_token,
            max_results=max_results,
        )
        blobs = [blob for blob in map(self._wrap, page.entries) if blob is not None]
        return BlobListing(blobs=blobs, continuation_token=page.next_continuation_token)

    async def scan_documents(
        self,
        handler: Callable[[DocumentBlob], Awaitable[Any] | Any],
        prefix: str | None = None,
        concurrency_limit: int | None = None,
    ) -> int:
        """
        Call ``handler`` with a fresh DocumentBlob for every document.

        Pages are processed one after another; handlers for the documents of a
        page run concurrently, at most ``concurrency_limit`` at a time. The
        first handler error cancels the rest of the page and propagates.
        Returns the number of handler calls.
        """
        if not callable(handler):
            raise TypeError("handler must be callable")
        if concurrency_limit is not None and concurrency_limit < 1:
            raise ValueError("concurrency_limit must be at least 1")
        self._require_init()

        semaphore = asyncio.Semaphore(concurrency_limit) if concurrency_limit else None

        async def run(blob: DocumentBlob) -> None:
            if semaphore is None:
                result = handler(blob)
                if inspect.isawaitable(result):
                    await result
                return
            async with semaphore:
                result = handler(blob)
                if inspect.isawaitable(result):
                    await result

        handled = 0
        continuation_token = None
        while True:
            page = await self.store.list_blobs(
                self._name,
                prefix=prefix,
                continuation_token=continuation_token,
                max_results=concurrency_limit,
            )
            documents = [
                DocumentBlob(self, entry.name, entry.properties)
                for entry in page.entries
                if entry.kind == BlobKind.BLOCK and not is_schema_blob_name(entry.name)
            ]

            tasks = [asyncio.ensure_future(run(doc)) for doc in documents]
            try:
                await asyncio.gather(*tasks)
            except BaseException:
                for task in tasks:
                    task.cancel()
                await asyncio.gather(*tasks, return_exceptions=True)
                raise
            handled += len(documents)

            continuation_token = page.next_continuation_token
            if not continuation_token:
                break

        self.log.debug("documents_scanned", count=handled)
        return handled

    async def load_blob(self, name: str, cache_content: bool = False) -> DataBlob | None:
        """
        Look up the kind of ``name`` and return a loaded handle for it.

        Returns None for schema blobs and unsupported kinds. Raises
        BlobNotFoundError if nothing is stored under ``name``.
        """
        if not isinstance(name, str) or not name:
            raise ValueError("The name of the blob must be specified")
        self._require_init()
        info = await self.store.get_blob_properties(self._name, name)
        blob = self._wrap(info, cache_content=cache_content)
        if blob is None:
            return None
        await blob.load()
        return blob

    async def remove_blob(self, name: str, ignore_if_not_exists: bool = False) -> bool:
        """Delete ``name`` without loading it. Returns True if it was deleted."""
        if not isinstance(name, str) or not name:
            raise ValueError("The name of the blob must be specified")
        self._require_init()
        try:
            await self.store.delete_blob(self._name, name)
        except BlobNotFoundError:
            if ignore_if_not_exists:
                return False
            raise
        return True
