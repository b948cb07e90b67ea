import json
from dataclasses import dataclass
from typing import Any, Protocol

from .errors import BlobSerializationError

JSONScalar = str | int | float | bool | None
JSONValue = JSONScalar | list["JSONValue"] | dict[str, "JSONValue"]


def canonical_json(obj: Any) -> str:
    """Deterministic JSON text: sorted keys, no insignificant whitespace."""
    return json.dumps(obj, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


class Serializer(Protocol):
    def serialize(self, obj: Any) -> bytes: ...
    def deserialize(self, data: bytes) -> Any: ...


@dataclass
class Envelope:
    content: JSONValue
    version: int


class JSONSerializer(Serializer):
    """Plain JSON to UTF-8 bytes. Used for schemas and append-log fragments."""

    def serialize(self, obj: Any) -> bytes:
        try:
            return json.dumps(obj, separators=(",", ":"), allow_nan=False).encode(
                "utf-8"
            )
        except (TypeError, ValueError) as e:
            raise BlobSerializationError(f"Value is not JSON-serializable: {e}") from e

    def deserialize(self, data: bytes) -> JSONValue:
        try:
            return json.loads(data.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            raise BlobSerializationError(f"Invalid JSON data: {e}") from e


class EnvelopeSerializer(Serializer):
    """Wraps document content as ``{"content": ..., "version": n}``."""

    def __init__(self, json_serializer: JSONSerializer | None = None) -> None:
        self._json = json_serializer or JSONSerializer()

    def serialize(self, obj: Envelope) -> bytes:
        return self._json.serialize({"content": obj.content, "version": obj.version})

    def deserialize(self, data: bytes) -> Envelope:
        raw = self._json.deserialize(data)
        if not isinstance(raw, dict) or "content" not in raw:
            raise BlobSerializationError("Document is not a {content, version} envelope")
        version = raw.get("version")
        # bool is an int subclass, reject it explicitly
        if not isinstance(version, int) or isinstance(version, bool) or version < 1:
            raise BlobSerializationError(f"Invalid envelope schema version: {version!r}")
        return Envelope(content=raw["content"], version=version)
