from contextlib import contextmanager
from typing import Any, Iterator
from urllib.parse import urlsplit

from azure.core import MatchConditions
from azure.core.exceptions import (
    AzureError,
    ClientAuthenticationError,
    HttpResponseError,
    ResourceExistsError,
    ResourceModifiedError,
    ResourceNotFoundError,
    ResourceNotModifiedError,
)
from azure.storage.blob import BlobType, ContentSettings
from azure.storage.blob.aio import BlobServiceClient

from .errors import (
    AuthorizationError,
    BlobAlreadyExistsError,
    BlobNotFoundError,
    BlobNotModifiedError,
    ConflictError,
    ContainerAlreadyExistsError,
    ContainerNotFoundError,
    StorageError,
)
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

_BLOB_KINDS = {
    BlobType.BLOCKBLOB: BlobKind.BLOCK,
    BlobType.APPENDBLOB: BlobKind.APPEND,
    BlobType.PAGEBLOB: BlobKind.PAGE,
}


@contextmanager
def _translate_errors(
    operation: str, container_name: str, blob_name: str | None = None
) -> Iterator[None]:
    """Map azure-core exceptions onto the asyncdatablobs error taxonomy."""
    target = f"blob '{blob_name}'" if blob_name else f"container '{container_name}'"
    context: dict[str, Any] = {"operation": operation, "blob_name": blob_name}
    try:
        yield
    except ResourceNotModifiedError as e:
        raise BlobNotModifiedError(f"{target} not modified", cause=e, **context) from e
    except ResourceModifiedError as e:
        raise ConflictError(f"ETag mismatch for {target}", cause=e, **context) from e
    except ResourceNotFoundError as e:
        if getattr(e, "error_code", None) == "ContainerNotFound" or blob_name is None:
            raise ContainerNotFoundError(
                f"Container '{container_name}' not found", cause=e, **context
            ) from e
        raise BlobNotFoundError(f"{target} not found", cause=e, **context) from e
    except ResourceExistsError as e:
        if (
            getattr(e, "error_code", None) == "ContainerAlreadyExists"
            or blob_name is None
        ):
            raise ContainerAlreadyExistsError(
                f"Container '{container_name}' already exists", cause=e, **context
            ) from e
        raise BlobAlreadyExistsError(f"{target} already exists", cause=e, **context) from e
    except ClientAuthenticationError as e:
        raise AuthorizationError(
            f"Not authorized to {operation} {target}", cause=e, **context
        ) from e
    except HttpResponseError as e:
        status = getattr(e, "status_code", None)
        if status == 412:
            raise ConflictError(f"ETag mismatch for {target}", cause=e, **context) from e
        if status == 304:
            raise BlobNotModifiedError(
                f"{target} not modified", cause=e, **context
            ) from e
        if status == 403:
            raise AuthorizationError(
                f"Not authorized to {operation} {target}", cause=e, **context
            ) from e
        raise StorageError(
            f"Failed to {operation} {target}: {e.message}", cause=e, **context
        ) from e
    except AzureError as e:
        # Transport failures such as ServiceRequestError
        raise StorageError(
            f"Failed to {operation} {target}: {e.message}", cause=e, **context
        ) from e


def _content_settings(properties: BlobProperties) -> ContentSettings:
    return ContentSettings(
        content_type=properties.content_type,
        content_encoding=properties.content_encoding,
        content_language=properties.content_language,
        content_disposition=properties.content_disposition,
        cache_control=properties.cache_control,
    )


def _properties(azure_properties: Any) -> BlobProperties:
    settings = azure_properties.content_settings
    return BlobProperties(
        content_type=settings.content_type,
        content_encoding=settings.content_encoding,
        content_language=settings.content_language,
        content_disposition=settings.content_disposition,
        cache_control=settings.cache_control,
        metadata=dict(azure_properties.metadata or {}),
    )


def _kind(blob_type: Any) -> BlobKind:
    if isinstance(blob_type, BlobType):
        return _BLOB_KINDS[blob_type]
    return BlobKind(blob_type)


def _write_kwargs(conditions: WriteConditions | None) -> dict[str, Any]:
    if conditions is None:
        return {}
    if conditions.only_if_absent:
        return {"match_condition": MatchConditions.IfMissing}
    if conditions.if_match is not None:
        return {
            "etag": conditions.if_match,
            "match_condition": MatchConditions.IfNotModified,
        }
    return {}


class AzureBlobAdapter(BlobStore):
    """Azure Blob Storage backend built on the async SDK."""

    def __init__(
        self, blob_service_client: BlobServiceClient, container_provisioned: bool = False
    ):
        """
        Create an adapter from an existing BlobServiceClient.
        This allows custom authentication and configuration.

        Set ``container_provisioned`` when the credential is scoped to a single
        container that already exists (for example a container SAS).
        """
        self._client = blob_service_client
        self.container_provisioned = container_provisioned

    @classmethod
    def from_connection_string(cls, connection_string: str) -> "AzureBlobAdapter":
        """
        Convenience builder: create adapter from a connection string.
        """
        client = BlobServiceClient.from_connection_string(connection_string)
        return cls(client)

    @classmethod
    def from_container_sas_url(cls, sas_url: str) -> "AzureBlobAdapter":
        """
        Convenience builder: create adapter from a container SAS URL
        (``https://<account>.blob.core.windows.net/<container>?<sas>``).
        """
        parts = urlsplit(sas_url)
        if not parts.query:
            raise ValueError("SAS URL must carry a SAS token as its query string")
        account_url = f"{parts.scheme}://{parts.netloc}"
        client = BlobServiceClient(account_url, credential=parts.query)
        return cls(client, container_provisioned=True)

    async def close(self) -> None:
        await self._client.close()

    def _blob_client(self, container_name: str, blob_name: str) -> Any:
        return self._client.get_blob_client(container=container_name, blob=blob_name)

    async def create_container(self, container_name: str) -> None:
        with _translate_errors("create_container", container_name):
            await self._client.create_container(container_name)

    async def delete_container(self, container_name: str) -> None:
        with _translate_errors("delete_container", container_name):
            await self._client.delete_container(container_name)

    async def put_blob(
        self,
        container_name: str,
        blob_name: str,
        properties: BlobProperties,
        content: bytes,
        conditions: WriteConditions | None = None,
    ) -> WriteResult:
        # The SDK expresses "only if absent" as overwrite=False
        only_if_absent = conditions is not None and conditions.only_if_absent
        kwargs = {} if only_if_absent else _write_kwargs(conditions)
        blob_client = self._blob_client(container_name, blob_name)
        with _translate_errors("put_blob", container_name, blob_name):
            result = await blob_client.upload_blob(
                content,
                blob_type=BlobType.BLOCKBLOB,
                overwrite=not only_if_absent,
                content_settings=_content_settings(properties),
                metadata=properties.metadata or None,
                **kwargs,
            )
        return WriteResult(version_token=result.get("etag"))

    async def create_append_blob(
        self,
        container_name: str,
        blob_name: str,
        properties: BlobProperties,
        conditions: WriteConditions | None = None,
    ) -> WriteResult:
        blob_client = self._blob_client(container_name, blob_name)
        with _translate_errors("create_append_blob", container_name, blob_name):
            result = await blob_client.create_append_blob(
                content_settings=_content_settings(properties),
                metadata=properties.metadata or None,
                **_write_kwargs(conditions),
            )
        return WriteResult(version_token=result.get("etag"))

    async def append_block(
        self,
        container_name: str,
        blob_name: str,
        properties: BlobProperties,
        content: bytes,
    ) -> WriteResult:
        blob_client = self._blob_client(container_name, blob_name)
        with _translate_errors("append_block", container_name, blob_name):
            result = await blob_client.append_block(content)
        return WriteResult(version_token=result.get("etag"))

    async def get_blob(
        self,
        container_name: str,
        blob_name: str,
        conditions: WriteConditions | None = None,
    ) -> StoredBlob:
        kwargs: dict[str, Any] = {}
        if conditions is not None and conditions.if_none_match is not None:
            kwargs = {
                "etag": conditions.if_none_match,
                "match_condition": MatchConditions.IfModified,
            }
        elif conditions is not None and conditions.if_match is not None:
            kwargs = {
                "etag": conditions.if_match,
                "match_condition": MatchConditions.IfNotModified,
            }
        blob_client = self._blob_client(container_name, blob_name)
        with _translate_errors("get_blob", container_name, blob_name):
            stream = await blob_client.download_blob(**kwargs)
            content = await stream.readall()
        return StoredBlob(
            content=content,
            version_token=stream.properties.etag,
            kind=_kind(stream.properties.blob_type),
            properties=_properties(stream.properties),
        )

    async def get_blob_properties(
        self, container_name: str, blob_name: str
    ) -> BlobInfo:
        blob_client = self._blob_client(container_name, blob_name)
        with _translate_errors("get_blob_properties", container_name, blob_name):
            props = await blob_client.get_blob_properties()
        return BlobInfo(
            name=blob_name,
            kind=_kind(props.blob_type),
            version_token=props.etag,
            properties=_properties(props),
        )

    async def delete_blob(
        self,
        container_name: str,
        blob_name: str,
        conditions: WriteConditions | None = None,
    ) -> None:
        kwargs: dict[str, Any] = {}
        if conditions is not None and conditions.if_match is not None:
            kwargs = {
                "etag": conditions.if_match,
                "match_condition": MatchConditions.IfNotModified,
            }
        blob_client = self._blob_client(container_name, blob_name)
        with _translate_errors("delete_blob", container_name, blob_name):
            await blob_client.delete_blob(**kwargs)

    async def list_blobs(
        self,
        container_name: str,
        prefix: str | None = None,
        continuation_token: str | None = None,
        max_results: int | None = None,
    ) -> BlobPage:
        container_client = self._client.get_container_client(container_name)
        with _translate_errors("list_blobs", container_name):
            pages = container_client.list_blobs(
                name_starts_with=prefix,
                include=["metadata"],
                results_per_page=max_results,
            ).by_page(continuation_token=continuation_token)
            async for page in pages:
                entries = [
                    BlobInfo(
                        name=blob.name,
                        kind=_kind(blob.blob_type),
                        version_token=blob.etag,
                        properties=_properties(blob),
                    )
                    async for blob in page
                ]
                return BlobPage(
                    entries=entries, next_continuation_token=pages.continuation_token
                )
        return BlobPage(entries=[])
