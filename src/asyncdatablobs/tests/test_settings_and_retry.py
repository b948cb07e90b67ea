import logging

import pytest
import structlog
from structlog.testing import capture_logs

from asyncdatablobs import (
    AzureBlobAdapter,
    BlobSerializationError,
    LocalFileAdapter,
    RetryPolicy,
    configure_logging,
    get_logger,
    get_settings,
    store_from_settings,
)
from asyncdatablobs.serializers import (
    Envelope,
    EnvelopeSerializer,
    JSONSerializer,
    canonical_json,
)

_ENV_VARS = (
    "DATABLOBS_AZURE_SAS_URL",
    "DATABLOBS_AZURE_CONN_STR",
    "DATABLOBS_LOCAL_PATH",
    "DATABLOBS_UPDATE_RETRIES",
    "DATABLOBS_UPDATE_DELAY_FACTOR",
    "DATABLOBS_UPDATE_RANDOMIZATION_FACTOR",
    "DATABLOBS_UPDATE_MAX_DELAY",
    "DATABLOBS_LOG_FORMAT",
)


@pytest.fixture
def clean_env(monkeypatch):
    for name in _ENV_VARS:
        monkeypatch.delenv(name, raising=False)
    return monkeypatch


# ---------------------------
# RetryPolicy
# ---------------------------


def test_retry_policy_defaults():
    policy = RetryPolicy()
    assert policy.retries == 10
    assert policy.delay_factor == 0.1
    assert policy.randomization_factor == 0.25
    assert policy.max_delay == 30.0


def test_compute_delay_doubles_and_caps():
    policy = RetryPolicy(delay_factor=0.1, max_delay=1.0, uniform=lambda lo, hi: 1.0)
    assert [policy.compute_delay(n) for n in range(1, 6)] == pytest.approx(
        [0.2, 0.4, 0.8, 1.0, 1.0]
    )


def test_compute_delay_jitter_bounds():
    bounds = []

    def uniform(low, high):
        bounds.append((low, high))
        return high

    policy = RetryPolicy(delay_factor=0.1, randomization_factor=0.5, uniform=uniform)
    assert policy.compute_delay(2) == pytest.approx(0.6)
    assert bounds == [(0.5, 1.5)]


@pytest.mark.parametrize(
    "kwargs",
    [
        {"retries": 0},
        {"delay_factor": -0.1},
        {"randomization_factor": 1.5},
        {"max_delay": -1},
    ],
)
def test_retry_policy_rejects_invalid_values(kwargs):
    with pytest.raises(ValueError):
        RetryPolicy(**kwargs)


# ---------------------------
# Settings
# ---------------------------


def test_settings_defaults(clean_env):
    settings = get_settings(dotenv=False)
    assert settings.azure_sas_url == ""
    assert settings.local_path == ""
    assert settings.log_format == "json"
    assert settings.retry_policy() == RetryPolicy()


def test_settings_read_environment(clean_env):
    clean_env.setenv("DATABLOBS_UPDATE_RETRIES", "4")
    clean_env.setenv("DATABLOBS_UPDATE_DELAY_FACTOR", "250")
    clean_env.setenv("DATABLOBS_UPDATE_MAX_DELAY", "2000")
    clean_env.setenv("DATABLOBS_LOG_FORMAT", "Console")

    settings = get_settings(dotenv=False)

    policy = settings.retry_policy()
    assert policy.retries == 4
    assert policy.delay_factor == pytest.approx(0.25)
    assert policy.max_delay == pytest.approx(2.0)
    assert settings.log_format == "console"


@pytest.mark.parametrize(
    "name, value",
    [
        ("DATABLOBS_UPDATE_RETRIES", "many"),
        ("DATABLOBS_UPDATE_DELAY_FACTOR", "fast"),
        ("DATABLOBS_LOG_FORMAT", "xml"),
    ],
)
def test_settings_reject_invalid_values(clean_env, name, value):
    clean_env.setenv(name, value)
    with pytest.raises(ValueError):
        get_settings(dotenv=False)


def test_store_from_settings_local(clean_env, tmp_path):
    clean_env.setenv("DATABLOBS_LOCAL_PATH", str(tmp_path / "data"))
    store = store_from_settings(get_settings(dotenv=False))
    assert isinstance(store, LocalFileAdapter)
    assert store.base_path == (tmp_path / "data").resolve()


@pytest.mark.asyncio
async def test_store_from_settings_prefers_sas_url(clean_env, tmp_path):
    clean_env.setenv("DATABLOBS_LOCAL_PATH", str(tmp_path))
    clean_env.setenv(
        "DATABLOBS_AZURE_SAS_URL",
        "https://account.blob.core.windows.net/container?sv=2022-11-02&sig=abc",
    )
    store = store_from_settings(get_settings(dotenv=False))
    try:
        assert isinstance(store, AzureBlobAdapter)
        assert store.container_provisioned
    finally:
        await store.close()


def test_sas_url_without_token_is_rejected():
    with pytest.raises(ValueError):
        AzureBlobAdapter.from_container_sas_url(
            "https://account.blob.core.windows.net/container"
        )


def test_store_from_settings_requires_a_backend(clean_env):
    with pytest.raises(ValueError):
        store_from_settings(get_settings(dotenv=False))


# ---------------------------
# Serializers
# ---------------------------


def test_canonical_json_ignores_key_order():
    assert canonical_json({"b": 1, "a": {"d": 2, "c": 3}}) == canonical_json(
        {"a": {"c": 3, "d": 2}, "b": 1}
    )
    assert canonical_json({"b": 1, "a": 2}) == '{"a":2,"b":1}'


def test_envelope_roundtrip():
    serializer = EnvelopeSerializer()
    data = serializer.serialize(Envelope(content={"value": 1}, version=3))
    assert data == b'{"content":{"value":1},"version":3}'
    assert serializer.deserialize(data) == Envelope(content={"value": 1}, version=3)


@pytest.mark.parametrize(
    "data",
    [
        b"not json",
        b"[1, 2]",
        b'{"version": 1}',
        b'{"content": {}, "version": 0}',
        b'{"content": {}, "version": "1"}',
        b'{"content": {}, "version": true}',
        b'{"content": {}}',
    ],
)
def test_envelope_rejects_malformed_data(data):
    with pytest.raises(BlobSerializationError):
        EnvelopeSerializer().deserialize(data)


def test_json_serializer_rejects_unserializable_values():
    serializer = JSONSerializer()
    with pytest.raises(BlobSerializationError):
        serializer.serialize({"when": object()})
    with pytest.raises(BlobSerializationError):
        serializer.serialize({"value": float("nan")})


# ---------------------------
# Logging
# ---------------------------


def test_get_logger_binds_name():
    with capture_logs() as logs:
        get_logger("asyncdatablobs.test").info("hello", answer=42)
    assert logs == [
        {
            "event": "hello",
            "answer": 42,
            "logger": "asyncdatablobs.test",
            "log_level": "info",
        }
    ]


def test_configure_logging_filters_below_level(capsys):
    try:
        configure_logging(level=logging.WARNING, log_format="json")
        log = structlog.get_logger("filtered")
        log.info("hidden")
        log.warning("shown", blob="doc")
        out = capsys.readouterr().out
        assert "hidden" not in out
        assert '"event": "shown"' in out
        assert '"blob": "doc"' in out
    finally:
        structlog.reset_defaults()
