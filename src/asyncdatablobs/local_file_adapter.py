import asyncio
import json
import os
import shutil
import uuid
from contextlib import contextmanager
from dataclasses import asdict
from pathlib import Path
from typing import Any, Iterator

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

# Sidecar records and staging files live beside the containers, not in them
_PROPERTIES_DIR = ".properties"
_STAGING_DIR = ".staging"


def _ensure_within(base: Path, target: Path, strict: bool = True) -> Path:
    """
    Resolve target path and ensure it is inside base path.
    strict=True will fail if the target does not exist (good for read/delete).
    strict=False allows non-existing targets (good for upload), but still checks parent dir strictly.
    """
    base_resolved = base.resolve(strict=True)
    if strict:
        target_resolved = target.resolve(strict=True)
    else:
        # Resolve the nearest existing ancestor strictly to catch symlink escapes
        ancestor = target.parent
        while not ancestor.exists():
            ancestor = ancestor.parent
        ancestor.resolve(strict=True)
        target_resolved = target.resolve()
    if not target_resolved.is_relative_to(base_resolved):
        raise ValueError(
            f"Path {target_resolved} escapes base directory {base_resolved}"
        )
    return target_resolved


def _new_version_token() -> str:
    return f'"{uuid.uuid4().hex}"'


@contextmanager
def _translate_os_errors(
    operation: str, container_name: str, blob_name: str | None = None
) -> Iterator[None]:
    """Surface filesystem failures as StorageError."""
    target = f"blob '{blob_name}'" if blob_name else f"container '{container_name}'"
    try:
        yield
    except OSError as e:
        raise StorageError(
            f"Failed to {operation} {target}: {e}",
            operation=operation,
            blob_name=blob_name,
            cause=e,
        ) from e


class LocalFileAdapter(BlobStore):
    """
    Local filesystem backend.

    Each container is a directory under ``base_path`` and each blob a file in
    it. Kind, version token and properties of a blob are kept in a JSON
    sidecar under ``base_path/.properties``. Conditional writes are atomic
    for all callers sharing one adapter instance.

    A ``read_only`` adapter never touches the filesystem beyond reading, so
    ``base_path`` must already exist.
    """

    def __init__(
        self,
        base_path: str | os.PathLike,
        read_only: bool = False,
        container_provisioned: bool = False,
    ):
        self._base_path = Path(base_path).resolve()
        if not read_only:
            self._base_path.mkdir(parents=True, exist_ok=True)
            (self._base_path / _PROPERTIES_DIR).mkdir(exist_ok=True)
            (self._base_path / _STAGING_DIR).mkdir(exist_ok=True)
        self.read_only = read_only
        self.container_provisioned = container_provisioned
        self._locks: dict[str, asyncio.Lock] = {}

    @property
    def base_path(self) -> Path:
        return self._base_path

    async def close(self) -> None:
        pass

    # ---------------------------
    # Paths and bookkeeping
    # ---------------------------

    def _lock_for(self, container_name: str, blob_name: str) -> asyncio.Lock:
        key = f"{container_name}/{blob_name}"
        if key not in self._locks:
            self._locks[key] = asyncio.Lock()
        return self._locks[key]

    def _container_dir(self, container_name: str, must_exist: bool = True) -> Path:
        if (
            not container_name
            or container_name.startswith(".")
            or "/" in container_name
            or "\\" in container_name
        ):
            raise ValueError(f"Invalid container name '{container_name}'")
        path = _ensure_within(
            self._base_path, self._base_path / container_name, strict=False
        )
        if must_exist and not path.is_dir():
            raise ContainerNotFoundError(
                f"Container '{container_name}' not found", operation="resolve"
            )
        return path

    def _blob_paths(self, container_name: str, blob_name: str) -> tuple[Path, Path]:
        # Sidecar directories are created lazily by _write_file
        container_dir = self._container_dir(container_name)
        properties_dir = self._base_path / _PROPERTIES_DIR / container_name
        data_path = _ensure_within(
            container_dir, container_dir / blob_name, strict=False
        )
        record_path = _ensure_within(
            self._base_path, properties_dir / f"{blob_name}.json", strict=False
        )
        return data_path, record_path

    def _read_record(
        self, data_path: Path, record_path: Path, container_dir: Path
    ) -> dict[str, Any] | None:
        if not data_path.is_file():
            return None
        # Strict resolve to catch symlink escapes
        _ensure_within(container_dir, data_path, strict=True)
        if not record_path.is_file():
            # Files dropped in by hand are plain block blobs
            return {"kind": BlobKind.BLOCK.value, "version_token": None, "properties": {}}
        return json.loads(record_path.read_text("utf-8"))

    def _write_file(self, path: Path, data: bytes) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        staging = self._base_path / _STAGING_DIR / uuid.uuid4().hex
        staging.write_bytes(data)
        try:
            os.replace(staging, path)
        except OSError:
            staging.unlink(missing_ok=True)
            raise

    def _write_record(
        self, record_path: Path, kind: BlobKind, properties: BlobProperties
    ) -> str:
        token = _new_version_token()
        record = {
            "kind": kind.value,
            "version_token": token,
            "properties": asdict(properties),
        }
        self._write_file(record_path, json.dumps(record).encode("utf-8"))
        return token

    def _check_writable(self, operation: str, blob_name: str | None = None) -> None:
        if self.read_only:
            raise AuthorizationError(
                "This adapter is read-only",
                operation=operation,
                blob_name=blob_name,
            )

    @staticmethod
    def _check_conditions(
        record: dict[str, Any] | None,
        conditions: WriteConditions | None,
        operation: str,
        blob_name: str,
    ) -> None:
        if conditions is None:
            return
        if conditions.only_if_absent and record is not None:
            raise BlobAlreadyExistsError(
                f"Blob '{blob_name}' already exists",
                operation=operation,
                blob_name=blob_name,
            )
        if conditions.if_match is not None and (
            record is None or record["version_token"] != conditions.if_match
        ):
            raise ConflictError(
                f"Version token mismatch for blob '{blob_name}'",
                operation=operation,
                blob_name=blob_name,
            )

    @staticmethod
    def _info(blob_name: str, record: dict[str, Any]) -> BlobInfo:
        return BlobInfo(
            name=blob_name,
            kind=BlobKind(record["kind"]),
            version_token=record["version_token"],
            properties=BlobProperties(**record["properties"]),
        )

    @staticmethod
    def _not_found(blob_name: str, operation: str) -> BlobNotFoundError:
        return BlobNotFoundError(
            f"Blob '{blob_name}' not found", operation=operation, blob_name=blob_name
        )

    # ---------------------------
    # Containers
    # ---------------------------

    async def create_container(self, container_name: str) -> None:
        self._check_writable("create_container")
        with _translate_os_errors("create_container", container_name):
            path = self._container_dir(container_name, must_exist=False)
            if path.is_dir():
                raise ContainerAlreadyExistsError(
                    f"Container '{container_name}' already exists",
                    operation="create_container",
                )
            path.mkdir(parents=True)

    async def delete_container(self, container_name: str) -> None:
        self._check_writable("delete_container")
        with _translate_os_errors("delete_container", container_name):
            path = self._container_dir(container_name)
            shutil.rmtree(path)
            shutil.rmtree(
                self._base_path / _PROPERTIES_DIR / container_name, ignore_errors=True
            )
        self._locks = {
            key: lock
            for key, lock in self._locks.items()
            if not key.startswith(f"{container_name}/")
        }

    # ---------------------------
    # Blobs
    # ---------------------------

    async def put_blob(
        self,
        container_name: str,
        blob_name: str,
        properties: BlobProperties,
        content: bytes,
        conditions: WriteConditions | None = None,
    ) -> WriteResult:
        self._check_writable("put_blob", blob_name)
        with _translate_os_errors("put_blob", container_name, blob_name):
            container_dir = self._container_dir(container_name)
            data_path, record_path = self._blob_paths(container_name, blob_name)
            async with self._lock_for(container_name, blob_name):
                record = self._read_record(data_path, record_path, container_dir)
                self._check_conditions(record, conditions, "put_blob", blob_name)
                self._write_file(data_path, bytes(content))
                token = self._write_record(record_path, BlobKind.BLOCK, properties)
        return WriteResult(version_token=token)

    async def create_append_blob(
        self,
        container_name: str,
        blob_name: str,
        properties: BlobProperties,
        conditions: WriteConditions | None = None,
    ) -> WriteResult:
        self._check_writable("create_append_blob", blob_name)
        with _translate_os_errors("create_append_blob", container_name, blob_name):
            container_dir = self._container_dir(container_name)
            data_path, record_path = self._blob_paths(container_name, blob_name)
            async with self._lock_for(container_name, blob_name):
                record = self._read_record(data_path, record_path, container_dir)
                self._check_conditions(
                    record, conditions, "create_append_blob", blob_name
                )
                self._write_file(data_path, b"")
                token = self._write_record(record_path, BlobKind.APPEND, properties)
        return WriteResult(version_token=token)

    async def append_block(
        self,
        container_name: str,
        blob_name: str,
        properties: BlobProperties,
        content: bytes,
    ) -> WriteResult:
        self._check_writable("append_block", blob_name)
        with _translate_os_errors("append_block", container_name, blob_name):
            container_dir = self._container_dir(container_name)
            data_path, record_path = self._blob_paths(container_name, blob_name)
            async with self._lock_for(container_name, blob_name):
                record = self._read_record(data_path, record_path, container_dir)
                if record is None:
                    raise self._not_found(blob_name, "append_block")
                if record["kind"] != BlobKind.APPEND.value:
                    raise StorageError(
                        f"Blob '{blob_name}' is not an append blob",
                        operation="append_block",
                        blob_name=blob_name,
                    )
                with data_path.open("ab") as f:
                    f.write(bytes(content))
                token = self._write_record(
                    record_path,
                    BlobKind.APPEND,
                    BlobProperties(**record["properties"]),
                )
        return WriteResult(version_token=token)

    async def get_blob(
        self,
        container_name: str,
        blob_name: str,
        conditions: WriteConditions | None = None,
    ) -> StoredBlob:
        with _translate_os_errors("get_blob", container_name, blob_name):
            container_dir = self._container_dir(container_name)
            data_path, record_path = self._blob_paths(container_name, blob_name)
            async with self._lock_for(container_name, blob_name):
                record = self._read_record(data_path, record_path, container_dir)
                if record is None:
                    raise self._not_found(blob_name, "get_blob")
                if (
                    conditions is not None
                    and conditions.if_none_match is not None
                    and record["version_token"] == conditions.if_none_match
                ):
                    raise BlobNotModifiedError(
                        f"Blob '{blob_name}' not modified",
                        operation="get_blob",
                        blob_name=blob_name,
                    )
                self._check_conditions(record, conditions, "get_blob", blob_name)
                content = data_path.read_bytes()
        info = self._info(blob_name, record)
        return StoredBlob(
            content=content,
            version_token=info.version_token,
            kind=info.kind,
            properties=info.properties,
        )

    async def get_blob_properties(
        self, container_name: str, blob_name: str
    ) -> BlobInfo:
        with _translate_os_errors("get_blob_properties", container_name, blob_name):
            container_dir = self._container_dir(container_name)
            data_path, record_path = self._blob_paths(container_name, blob_name)
            record = self._read_record(data_path, record_path, container_dir)
        if record is None:
            raise self._not_found(blob_name, "get_blob_properties")
        return self._info(blob_name, record)

    async def delete_blob(
        self,
        container_name: str,
        blob_name: str,
        conditions: WriteConditions | None = None,
    ) -> None:
        self._check_writable("delete_blob", blob_name)
        with _translate_os_errors("delete_blob", container_name, blob_name):
            container_dir = self._container_dir(container_name)
            data_path, record_path = self._blob_paths(container_name, blob_name)
            async with self._lock_for(container_name, blob_name):
                record = self._read_record(data_path, record_path, container_dir)
                if record is None:
                    raise self._not_found(blob_name, "delete_blob")
                self._check_conditions(record, conditions, "delete_blob", blob_name)
                data_path.unlink()
                record_path.unlink(missing_ok=True)

    async def list_blobs(
        self,
        container_name: str,
        prefix: str | None = None,
        continuation_token: str | None = None,
        max_results: int | None = None,
    ) -> BlobPage:
        """
        List blobs in name order. The continuation token is the name of the
        last blob returned.
        """
        with _translate_os_errors("list_blobs", container_name):
            container_dir = self._container_dir(container_name)
            names: list[str] = []
            for path in container_dir.rglob("*"):
                if path.is_file():
                    # Strict resolve to catch symlink escapes
                    _ensure_within(container_dir, path, strict=True)
                    rel_path = path.relative_to(container_dir).as_posix()
                    if prefix and not rel_path.startswith(prefix):
                        continue
                    if continuation_token and rel_path <= continuation_token:
                        continue
                    names.append(rel_path)
            names.sort()

            next_token = None
            if max_results is not None and len(names) > max_results:
                names = names[:max_results]
                next_token = names[-1]

            entries = []
            for name in names:
                data_path, record_path = self._blob_paths(container_name, name)
                record = self._read_record(data_path, record_path, container_dir)
                if record is not None:
                    entries.append(self._info(name, record))
        return BlobPage(entries=entries, next_continuation_token=next_token)
