"""
Per-container registry of JSON schemas, keyed by integer schema version.

Each version is persisted once as its own blob (``.schema.v<version>``) in
the container. The current version is written on first use and verified on
every later ``init``; older versions are fetched lazily when a document
written under them is loaded.
"""

import copy
import re
from dataclasses import dataclass, field
from typing import Any

from jsonschema.exceptions import SchemaError
from jsonschema.protocols import Validator
from jsonschema.validators import validator_for

from .errors import (
    AuthorizationError,
    BlobAlreadyExistsError,
    BlobNotFoundError,
    BlobSerializationError,
    SchemaIntegrityError,
    SchemaLoadError,
)
from .logging_config import get_logger
from .serializers import JSONSerializer, canonical_json
from .storage_protocols import BlobProperties, BlobStore, WriteConditions

SCHEMA_BLOB_PREFIX = ".schema.v"
_SCHEMA_BLOB_PATTERN = re.compile(r"^\.schema\.v\d+$", re.IGNORECASE)


def schema_blob_name(version: int) -> str:
    return f"{SCHEMA_BLOB_PREFIX}{version}"


def is_schema_blob_name(blob_name: str) -> bool:
    """True for the internal blobs that hold schema definitions."""
    return bool(_SCHEMA_BLOB_PATTERN.match(blob_name))


@dataclass
class ValidationResult:
    valid: bool
    errors: list[str] = field(default_factory=list)


def _format_error(error: Any) -> str:
    location = "/".join(str(p) for p in error.absolute_path)
    return f"{location or '<root>'}: {error.message}"


class SchemaRegistry:
    """
    Compiles and caches one validator per schema version.

    Compilation on a cache miss is not synchronized: two concurrent misses
    for the same version may both compile, and the last one wins.
    """

    def __init__(
        self,
        store: BlobStore,
        container_name: str,
        schema: dict[str, Any],
        schema_version: int = 1,
        logger: Any = None,
    ) -> None:
        if not isinstance(schema, dict):
            raise TypeError("schema must be a JSON object (dict)")
        if (
            not isinstance(schema_version, int)
            or isinstance(schema_version, bool)
            or schema_version < 1
        ):
            raise ValueError("schema_version must be a positive integer")
        self._store = store
        self._container_name = container_name
        self._json = JSONSerializer()
        self._log = logger or get_logger("asyncdatablobs")
        self._validators: dict[int, Validator] = {}
        self.schema = copy.deepcopy(schema)
        self.schema_version = schema_version

    @property
    def cached_versions(self) -> list[int]:
        return sorted(self._validators)

    async def ensure_current_schema_cached(self) -> None:
        """
        Verify the stored copy of the current schema, or store it if missing.

        Raises SchemaIntegrityError when a stored copy exists and differs
        from the declared schema.
        """
        blob_name = schema_blob_name(self.schema_version)
        try:
            stored = await self._store.get_blob(self._container_name, blob_name)
        except BlobNotFoundError:
            saved = await self._save_schema()
            if saved:
                return
            # Somebody else stored it first; verify theirs
            stored = await self._store.get_blob(self._container_name, blob_name)

        try:
            stored_schema = self._json.deserialize(stored.content)
        except BlobSerializationError as e:
            raise SchemaIntegrityError(
                f"Stored schema '{blob_name}' in container "
                f"'{self._container_name}' is not valid JSON"
            ) from e

        if canonical_json(stored_schema) != canonical_json(self.schema):
            self._log.error(
                "schema_integrity_mismatch",
                schema_version=self.schema_version,
                schema_blob=blob_name,
            )
            raise SchemaIntegrityError(
                f"The stored schema '{blob_name}' in container "
                f"'{self._container_name}' is not the same as the declared schema"
            )
        self._log.debug("schema_verified", schema_version=self.schema_version)

    async def _save_schema(self) -> bool:
        """
        Store the current schema. Returns False if it already existed.

        A read-only credential cannot store it; that is tolerated and the
        registry trusts whatever a read-write client provisioned.
        """
        blob_name = schema_blob_name(self.schema_version)
        try:
            await self._store.put_blob(
                self._container_name,
                blob_name,
                BlobProperties(content_type="application/json"),
                canonical_json(self.schema).encode("utf-8"),
                WriteConditions(only_if_absent=True),
            )
        except AuthorizationError:
            self._log.warning(
                "schema_save_not_authorized",
                schema_version=self.schema_version,
                schema_blob=blob_name,
            )
            return True
        except BlobAlreadyExistsError:
            return False
        self._log.info("schema_saved", schema_version=self.schema_version)
        return True

    async def get_validator(self, version: int) -> Validator:
        validator = self._validators.get(version)
        if validator is not None:
            return validator

        if version == self.schema_version:
            schema = self.schema
        else:
            schema = await self._load_schema(version)

        validator = self._compile(schema, version)
        self._validators[version] = validator
        return validator

    async def _load_schema(self, version: int) -> dict[str, Any]:
        blob_name = schema_blob_name(version)
        try:
            stored = await self._store.get_blob(self._container_name, blob_name)
        except BlobNotFoundError as e:
            raise SchemaLoadError(
                f"Schema version {version} not found in container "
                f"'{self._container_name}'"
            ) from e
        try:
            schema = self._json.deserialize(stored.content)
        except BlobSerializationError as e:
            raise SchemaLoadError(
                f"Schema version {version} is not valid JSON"
            ) from e
        if not isinstance(schema, dict):
            raise SchemaLoadError(f"Schema version {version} is not a JSON object")

        # Schemas stored before the $id rename carry the identifier as 'id'
        if "id" in schema and "$id" not in schema:
            schema["$id"] = schema.pop("id")

        self._log.debug("schema_loaded", schema_version=version)
        return schema

    def _compile(self, schema: dict[str, Any], version: int) -> Validator:
        cls = validator_for(schema)
        try:
            cls.check_schema(schema)
        except SchemaError as e:
            raise SchemaLoadError(
                f"Schema version {version} is not a valid JSON schema: {e.message}"
            ) from e
        return cls(schema, format_checker=cls.FORMAT_CHECKER)

    async def validate(self, content: Any, version: int | None = None) -> ValidationResult:
        """Validate ``content`` against ``version`` (current when omitted)."""
        if version is None:
            version = self.schema_version
        validator = await self.get_validator(version)
        found = sorted(
            validator.iter_errors(content), key=lambda e: [str(p) for p in e.path]
        )
        errors = [_format_error(e) for e in found]
        return ValidationResult(valid=not errors, errors=errors)
