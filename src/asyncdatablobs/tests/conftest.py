import contextlib
import os
import uuid

import pytest
import pytest_asyncio
from dotenv import load_dotenv

from asyncdatablobs import (
    AzureBlobAdapter,
    ContainerNotFoundError,
    DataContainer,
    LocalFileAdapter,
    RetryPolicy,
)

load_dotenv()

# Azure config (Azurite works too)
CONN_STR = os.environ.get("AZURE_CONN_STR")

SCHEMA_V1 = {
    "$schema": "http://json-schema.org/draft-06/schema#",
    "title": "test json schema",
    "type": "object",
    "properties": {
        "value": {"type": "integer"},
    },
    "additionalProperties": False,
    "required": ["value"],
}

SCHEMA_V2 = {
    "$schema": "http://json-schema.org/draft-06/schema#",
    "title": "test json schema v2",
    "type": "object",
    "properties": {
        "value": {"type": "integer"},
        "newValue": {"type": "integer"},
    },
    "additionalProperties": False,
    "required": ["value", "newValue"],
}

LOG_SCHEMA = {
    "$schema": "http://json-schema.org/draft-06/schema#",
    "title": "test log schema",
    "type": "object",
    "properties": {
        "event": {"type": "string"},
        "level": {"type": "integer"},
    },
    "additionalProperties": False,
    "required": ["event"],
}

PERMISSIVE_SCHEMA = {
    "$schema": "http://json-schema.org/draft-06/schema#",
    "title": "any object",
    "type": "object",
}

FAST_RETRIES = RetryPolicy(retries=10, delay_factor=0.001, max_delay=0.01)


def unique_name(suffix: str) -> str:
    return f"test-{suffix}-{uuid.uuid4().hex[:12]}"


# ---------------------------
# Parametrize backends
# ---------------------------
@pytest_asyncio.fixture(
    params=[
        pytest.param("azure", marks=pytest.mark.azure),
        pytest.param("local", marks=pytest.mark.local),
    ]
)
async def backend(request, tmp_path):
    """Fixture that provides either an Azure or a local blob store."""
    if request.param == "azure":
        if not CONN_STR:
            pytest.skip("Azure backend not configured (AZURE_CONN_STR missing)")
        adapter = AzureBlobAdapter.from_connection_string(CONN_STR)
    else:
        # Use pytest's tmp_path for safe temporary storage
        adapter = LocalFileAdapter(tmp_path / "storage")
    yield adapter
    await adapter.close()


@pytest_asyncio.fixture
async def make_container(backend):
    """Factory for initialized containers; removes them after the test."""
    created = []

    async def factory(
        schema=SCHEMA_V1, name=None, schema_version=1, retry_policy=FAST_RETRIES
    ):
        container = DataContainer(
            name or unique_name("container"),
            backend,
            schema,
            schema_version=schema_version,
            retry_policy=retry_policy,
        )
        await container.init()
        created.append(container.name)
        return container

    yield factory

    for name in set(created):
        cleanup = DataContainer(name, backend, SCHEMA_V1)
        with contextlib.suppress(ContainerNotFoundError):
            await cleanup.remove_container()
