import os
import sys

import pytest

from asyncdatablobs import (
    AuthorizationError,
    BlobAlreadyExistsError,
    BlobKind,
    BlobNotFoundError,
    BlobNotModifiedError,
    BlobProperties,
    ConflictError,
    ContainerAlreadyExistsError,
    ContainerNotFoundError,
    LocalFileAdapter,
    StorageError,
    WriteConditions,
)

pytestmark = pytest.mark.local

CONTAINER = "test-container"


@pytest.fixture
def adapter(tmp_path):
    return LocalFileAdapter(tmp_path / "storage")


@pytest.mark.asyncio
async def test_container_lifecycle(adapter):
    await adapter.create_container(CONTAINER)
    with pytest.raises(ContainerAlreadyExistsError):
        await adapter.create_container(CONTAINER)

    await adapter.delete_container(CONTAINER)
    with pytest.raises(ContainerNotFoundError):
        await adapter.delete_container(CONTAINER)
    with pytest.raises(ContainerNotFoundError):
        await adapter.get_blob(CONTAINER, "anything")


@pytest.mark.asyncio
async def test_put_get_roundtrip_keeps_properties(adapter):
    await adapter.create_container(CONTAINER)
    properties = BlobProperties(
        content_type="application/json",
        content_language="de-DE",
        metadata={"owner": "tests"},
    )
    written = await adapter.put_blob(CONTAINER, "a.json", properties, b"{}")

    stored = await adapter.get_blob(CONTAINER, "a.json")
    assert stored.content == b"{}"
    assert stored.kind == BlobKind.BLOCK
    assert stored.version_token == written.version_token
    assert stored.properties == properties

    info = await adapter.get_blob_properties(CONTAINER, "a.json")
    assert info.kind == BlobKind.BLOCK
    assert info.version_token == written.version_token


@pytest.mark.asyncio
async def test_every_write_gets_a_new_token(adapter):
    await adapter.create_container(CONTAINER)
    first = await adapter.put_blob(CONTAINER, "same", BlobProperties(), b"x")
    second = await adapter.put_blob(CONTAINER, "same", BlobProperties(), b"x")
    assert first.version_token != second.version_token


@pytest.mark.asyncio
async def test_conditional_writes(adapter):
    await adapter.create_container(CONTAINER)
    first = await adapter.put_blob(CONTAINER, "blob", BlobProperties(), b"first")

    with pytest.raises(BlobAlreadyExistsError):
        await adapter.put_blob(
            CONTAINER,
            "blob",
            BlobProperties(),
            b"x",
            WriteConditions(only_if_absent=True),
        )
    with pytest.raises(ConflictError):
        await adapter.put_blob(
            CONTAINER,
            "blob",
            BlobProperties(),
            b"x",
            WriteConditions(if_match="wrong"),
        )
    second = await adapter.put_blob(
        CONTAINER,
        "blob",
        BlobProperties(),
        b"second",
        WriteConditions(if_match=first.version_token),
    )
    assert (await adapter.get_blob(CONTAINER, "blob")).content == b"second"

    with pytest.raises(ConflictError):
        await adapter.delete_blob(
            CONTAINER, "blob", WriteConditions(if_match=first.version_token)
        )
    await adapter.delete_blob(
        CONTAINER, "blob", WriteConditions(if_match=second.version_token)
    )
    with pytest.raises(BlobNotFoundError):
        await adapter.delete_blob(CONTAINER, "blob")


@pytest.mark.asyncio
async def test_conditional_read(adapter):
    await adapter.create_container(CONTAINER)
    written = await adapter.put_blob(CONTAINER, "blob", BlobProperties(), b"data")

    with pytest.raises(BlobNotModifiedError):
        await adapter.get_blob(
            CONTAINER, "blob", WriteConditions(if_none_match=written.version_token)
        )
    stored = await adapter.get_blob(
        CONTAINER, "blob", WriteConditions(if_none_match="stale")
    )
    assert stored.content == b"data"


@pytest.mark.asyncio
async def test_append_blob(adapter):
    await adapter.create_container(CONTAINER)
    await adapter.create_append_blob(CONTAINER, "log", BlobProperties())
    await adapter.append_block(CONTAINER, "log", BlobProperties(), b"a")
    await adapter.append_block(CONTAINER, "log", BlobProperties(), b"b")

    stored = await adapter.get_blob(CONTAINER, "log")
    assert stored.kind == BlobKind.APPEND
    assert stored.content == b"ab"

    with pytest.raises(BlobNotFoundError):
        await adapter.append_block(CONTAINER, "missing", BlobProperties(), b"a")

    await adapter.put_blob(CONTAINER, "block", BlobProperties(), b"x")
    with pytest.raises(StorageError):
        await adapter.append_block(CONTAINER, "block", BlobProperties(), b"a")


@pytest.mark.asyncio
async def test_list_blobs_with_prefix_and_pages(adapter):
    await adapter.create_container(CONTAINER)
    for name in ("a1.txt", "a2.txt", "b1.txt", "nested/a3.txt"):
        await adapter.put_blob(CONTAINER, name, BlobProperties(), b"x")

    page = await adapter.list_blobs(CONTAINER, prefix="a")
    assert [entry.name for entry in page.entries] == ["a1.txt", "a2.txt"]
    assert page.next_continuation_token is None

    first = await adapter.list_blobs(CONTAINER, max_results=3)
    assert [entry.name for entry in first.entries] == ["a1.txt", "a2.txt", "b1.txt"]
    rest = await adapter.list_blobs(
        CONTAINER, continuation_token=first.next_continuation_token, max_results=3
    )
    assert [entry.name for entry in rest.entries] == ["nested/a3.txt"]
    assert rest.next_continuation_token is None


@pytest.mark.asyncio
async def test_read_only_adapter(tmp_path):
    writer = LocalFileAdapter(tmp_path)
    await writer.create_container(CONTAINER)
    await writer.put_blob(CONTAINER, "blob", BlobProperties(), b"data")

    reader = LocalFileAdapter(tmp_path, read_only=True)
    assert (await reader.get_blob(CONTAINER, "blob")).content == b"data"
    with pytest.raises(AuthorizationError):
        await reader.put_blob(CONTAINER, "blob", BlobProperties(), b"new")
    with pytest.raises(AuthorizationError):
        await reader.delete_blob(CONTAINER, "blob")
    with pytest.raises(AuthorizationError):
        await reader.create_container("another")


@pytest.mark.asyncio
async def test_reads_do_not_create_sidecar_directories(tmp_path):
    (tmp_path / CONTAINER).mkdir()
    reader = LocalFileAdapter(tmp_path, read_only=True)
    with pytest.raises(BlobNotFoundError):
        await reader.get_blob(CONTAINER, "missing")
    assert sorted(p.name for p in tmp_path.iterdir()) == [CONTAINER]

    writer = LocalFileAdapter(tmp_path)
    with pytest.raises(BlobNotFoundError):
        await writer.get_blob_properties(CONTAINER, "missing")
    assert not (tmp_path / ".properties" / CONTAINER).exists()

    await writer.put_blob(CONTAINER, "blob", BlobProperties(), b"data")
    assert (tmp_path / ".properties" / CONTAINER / "blob.json").is_file()


@pytest.mark.asyncio
async def test_filesystem_errors_are_wrapped(adapter):
    await adapter.create_container(CONTAINER)
    name = "n" * 300

    with pytest.raises(StorageError) as excinfo:
        await adapter.put_blob(CONTAINER, name, BlobProperties(), b"x")
    assert type(excinfo.value) is StorageError
    assert excinfo.value.operation == "put_blob"
    assert excinfo.value.blob_name == name
    assert isinstance(excinfo.value.cause, OSError)
    assert list((adapter.base_path / ".staging").iterdir()) == []

    with pytest.raises(StorageError):
        await adapter.create_append_blob(CONTAINER, name, BlobProperties())


@pytest.mark.asyncio
async def test_local_path_traversal_protection(adapter):
    await adapter.create_container(CONTAINER)

    with pytest.raises(ValueError) as excinfo:
        await adapter.get_blob(CONTAINER, "../../etc/passwd")
    assert "escapes base directory" in str(excinfo.value)

    with pytest.raises(ValueError):
        await adapter.create_container("../outside_container")
    with pytest.raises(ValueError):
        await adapter.create_container(".properties")


@pytest.mark.asyncio
async def test_symlink_outside_protection(adapter, tmp_path):
    if not hasattr(os, "symlink"):
        pytest.skip("Symlinks not supported on this platform")
    if sys.platform == "win32":
        # Windows requires admin or Developer Mode for symlinks
        try:
            test_link = tmp_path / "test_link"
            test_target = tmp_path / "test_target"
            test_target.write_text("x")
            test_link.symlink_to(test_target)
        except OSError:
            pytest.skip("Symlink creation not permitted on this Windows system")

    await adapter.create_container(CONTAINER)

    # Create a file outside the container
    outside_file = tmp_path / "outside.txt"
    outside_file.write_text("secret")

    # Create a symlink inside the container pointing to the outside file
    (adapter.base_path / CONTAINER / "link.txt").symlink_to(outside_file)

    # Download should fail due to symlink escape
    with pytest.raises(ValueError):
        await adapter.get_blob(CONTAINER, "link.txt")

    # Delete should also fail
    with pytest.raises(ValueError):
        await adapter.delete_blob(CONTAINER, "link.txt")

    assert outside_file.exists(), "Outside file should not be deleted"
