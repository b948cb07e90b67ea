"""
Handles for the two blob variants a DataContainer manages.

- DocumentBlob: one JSON document stored as a versioned envelope, updated
  with optimistic concurrency.
- AppendLogBlob: an append-only sequence of JSON fragments.

Handles are always issued by a DataContainer and share its store, schema
registry, retry policy and logger.
"""

import asyncio
import copy
import dataclasses
import inspect
from typing import TYPE_CHECKING, Any, Callable

from .errors import (
    BlobNotFoundError,
    BlobNotModifiedError,
    CongestionError,
    ConflictError,
    SchemaValidationError,
)
from .serializers import Envelope, EnvelopeSerializer, JSONSerializer, JSONValue
from .storage_protocols import BlobKind, BlobProperties, StoredBlob, WriteConditions

if TYPE_CHECKING:
    from .container import DataContainer

JSON_CONTENT_TYPE = "application/json"


def _own_properties(properties: BlobProperties | None) -> BlobProperties:
    """Copy of ``properties`` with the JSON content type filled in."""
    if properties is None:
        return BlobProperties(content_type=JSON_CONTENT_TYPE)
    owned = dataclasses.replace(properties)
    owned.metadata = dict(owned.metadata)
    if owned.content_type is None:
        owned.content_type = JSON_CONTENT_TYPE
    return owned


class _BlobHandle:
    kind: BlobKind

    def __init__(
        self,
        container: "DataContainer",
        name: str,
        properties: BlobProperties | None = None,
    ) -> None:
        if not isinstance(name, str) or not name:
            raise ValueError("Blob name must be a non-empty string")
        self.container = container
        self.name = name
        self.properties = _own_properties(properties)
        self._store = container.store
        self._log = container.log.bind(blob=name, blob_kind=self.kind.value)
        self._removed = False

    def __repr__(self) -> str:
        return f"{type(self).__name__}(container={self.container.name!r}, name={self.name!r})"

    def _ensure_not_removed(self, operation: str) -> None:
        if self._removed:
            raise BlobNotFoundError(
                f"Blob '{self.name}' was removed through this handle",
                operation=operation,
                blob_name=self.name,
            )

    async def _validate(self, content: Any, version: int) -> None:
        result = await self.container.registry.validate(content, version)
        if not result.valid:
            self._log.debug(
                "schema_validation_failed",
                schema_version=version,
                errors=result.errors,
            )
            raise SchemaValidationError(
                f"Content of blob '{self.name}' does not match schema "
                f"version {version} of container '{self.container.name}'",
                content=content,
                validation_errors=result.errors,
            )

    def _refresh_properties(self, properties: BlobProperties) -> None:
        self.properties = _own_properties(properties)


class DocumentBlob(_BlobHandle):
    """
    A JSON document persisted as ``{"content": ..., "version": n}``.

    ``version`` is the schema version the stored content conforms to. It is
    the container's current version for new documents and whatever the
    envelope says after a load. ``version_token`` is the opaque concurrency
    marker from the last successful write or read; ``None`` while the handle
    is unbound.

    With ``cache_content`` the handle keeps a private copy of the last
    content it read or wrote, and ``load`` skips the download when the store
    reports the blob unchanged. Callers always get their own copy back.
    """

    kind = BlobKind.BLOCK

    def __init__(
        self,
        container: "DataContainer",
        name: str,
        properties: BlobProperties | None = None,
        cache_content: bool = False,
        version: int | None = None,
    ) -> None:
        super().__init__(container, name, properties)
        self.cache_content = cache_content
        self.version = container.schema_version if version is None else version
        self.version_token: str | None = None
        self.content: JSONValue = None
        self._content_cached = False
        self._envelopes = EnvelopeSerializer()

    @property
    def is_bound(self) -> bool:
        return self.version_token is not None

    def _cache(self, content: JSONValue) -> None:
        if self.cache_content:
            self.content = copy.deepcopy(content)
            self._content_cached = True
        else:
            self.content = None
            self._content_cached = False

    async def create(self, content: JSONValue, fail_if_exists: bool = False) -> None:
        """
        Validate and store ``content``.

        Overwrites an existing blob of the same name unless ``fail_if_exists``
        is set, in which case BlobAlreadyExistsError is raised instead.
        """
        if content is None:
            raise ValueError("The content of the blob must be provided")
        self._ensure_not_removed("create")

        version = self.version
        await self._validate(content, version)
        data = self._envelopes.serialize(Envelope(content=content, version=version))

        conditions = WriteConditions(only_if_absent=True) if fail_if_exists else None
        result = await self._store.put_blob(
            self.container.name, self.name, self.properties, data, conditions
        )
        self.version = version
        self.version_token = result.version_token
        self._cache(content)
        self._log.debug("document_created", schema_version=version)

    async def load(self) -> JSONValue:
        """
        Fetch, unwrap and validate the document against the schema version it
        was written with. Raises BlobNotFoundError if it does not exist.
        """
        self._ensure_not_removed("load")

        conditions = None
        if self.cache_content and self._content_cached and self.version_token:
            conditions = WriteConditions(if_none_match=self.version_token)

        stored = await self._fetch(conditions)
        if stored is None:
            return copy.deepcopy(self.content)

        envelope = self._envelopes.deserialize(stored.content)
        await self._validate(envelope.content, envelope.version)

        self.version = envelope.version
        self.version_token = stored.version_token
        self._refresh_properties(stored.properties)
        self._cache(envelope.content)
        return envelope.content

    async def _fetch(self, conditions: WriteConditions | None) -> StoredBlob | None:
        try:
            return await self._store.get_blob(
                self.container.name, self.name, conditions
            )
        except BlobNotModifiedError:
            self._log.debug("document_not_modified")
            return None

    async def modify(
        self,
        modifier: Callable[[Any], Any],
        properties: BlobProperties | None = None,
    ) -> JSONValue:
        """
        Apply ``modifier`` to a fresh copy of the content and store the result.

        ``modifier`` receives its own copy of the current content. It may edit
        it in place and return None, or return the new content. The result is
        validated against the container's *current* schema version, so this
        is also how documents are upgraded to a newer schema.

        The write is conditional on the version token seen by the load; on a
        conflict the whole load/modify/validate/write cycle is retried with
        backoff. Exceptions from ``modifier`` and validation failures are
        never retried. Raises CongestionError when the retry budget runs out.
        """
        if not callable(modifier):
            raise TypeError("The modifier must be callable")
        self._ensure_not_removed("modify")

        policy = self.container.retry_policy
        current_version = self.container.schema_version
        attempts_used = 0
        while True:
            content = await self.load()
            token = self.version_token

            returned = modifier(content)
            if inspect.isawaitable(returned):
                returned = await returned
            modified = content if returned is None else returned
            write_properties = (
                self.properties if properties is None else _own_properties(properties)
            )

            await self._validate(modified, current_version)
            data = self._envelopes.serialize(
                Envelope(content=modified, version=current_version)
            )

            try:
                result = await self._store.put_blob(
                    self.container.name,
                    self.name,
                    write_properties,
                    data,
                    WriteConditions(if_match=token),
                )
            except ConflictError as e:
                attempts_used += 1
                if attempts_used >= policy.retries:
                    self._log.error("modify_retries_exhausted", attempts=attempts_used)
                    raise CongestionError(
                        f"Maximum number of retries ({policy.retries}) exhausted "
                        f"while updating blob '{self.name}', check for congestion"
                    ) from e
                delay = policy.compute_delay(attempts_used)
                self._log.warning(
                    "modify_conflict_retrying", attempts=attempts_used, delay=delay
                )
                await asyncio.sleep(delay)
                continue

            self.version = current_version
            self.version_token = result.version_token
            self.properties = write_properties
            self._cache(modified)
            return modified

    async def remove(
        self, ignore_changes: bool = False, ignore_if_not_exists: bool = False
    ) -> bool:
        """
        Delete the document. Returns True if something was deleted.

        Unless ``ignore_changes`` is set the delete is conditional on the last
        known version token and raises ConflictError if the blob changed
        since. ``ignore_if_not_exists`` turns a missing blob into ``False``.
        """
        if self._removed:
            if ignore_if_not_exists:
                return False
            self._ensure_not_removed("remove")

        conditions = None
        if not ignore_changes and self.version_token is not None:
            conditions = WriteConditions(if_match=self.version_token)
        try:
            await self._store.delete_blob(self.container.name, self.name, conditions)
        except BlobNotFoundError:
            if ignore_if_not_exists:
                return False
            raise

        self._removed = True
        self.version_token = None
        self._cache(None)
        self._log.debug("document_removed")
        return True


class AppendLogBlob(_BlobHandle):
    """
    An append-only log of JSON fragments.

    Fragments are validated against the container's current schema and
    written back to back with no separator. Content is never cached and
    never rewritten; the log can only be removed as a whole.
    """

    kind = BlobKind.APPEND

    def __init__(
        self,
        container: "DataContainer",
        name: str,
        properties: BlobProperties | None = None,
    ) -> None:
        super().__init__(container, name, properties)
        self._json = JSONSerializer()

    async def create(self, fail_if_exists: bool = False) -> None:
        self._ensure_not_removed("create")
        conditions = WriteConditions(only_if_absent=True) if fail_if_exists else None
        await self._store.create_append_blob(
            self.container.name, self.name, self.properties, conditions
        )
        self._log.debug("append_log_created")

    async def append(self, content: JSONValue) -> None:
        self._ensure_not_removed("append")
        await self._validate(content, self.container.schema_version)
        data = self._json.serialize(content)
        await self._store.append_block(
            self.container.name, self.name, self.properties, data
        )

    async def load(self) -> bytes:
        """Return the raw concatenation of every fragment appended so far."""
        self._ensure_not_removed("load")
        stored = await self._store.get_blob(self.container.name, self.name)
        self._refresh_properties(stored.properties)
        return stored.content

    async def remove(self, ignore_if_not_exists: bool = False) -> bool:
        if self._removed:
            if ignore_if_not_exists:
                return False
            self._ensure_not_removed("remove")
        try:
            await self._store.delete_blob(self.container.name, self.name)
        except BlobNotFoundError:
            if ignore_if_not_exists:
                return False
            raise
        self._removed = True
        return True


DataBlob = DocumentBlob | AppendLogBlob
