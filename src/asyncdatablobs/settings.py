from __future__ import annotations

import os
from dataclasses import dataclass

from dotenv import load_dotenv

from .azure_blob_adapter import AzureBlobAdapter
from .local_file_adapter import LocalFileAdapter
from .retry import RetryPolicy
from .storage_protocols import BlobStore


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return float(raw)
    except ValueError as e:
        raise ValueError(f"{name} must be a number, got {raw!r}") from e


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw)
    except ValueError as e:
        raise ValueError(f"{name} must be an integer, got {raw!r}") from e


@dataclass(frozen=True)
class Settings:
    # Storage backend, first one set wins
    azure_sas_url: str
    azure_connection_string: str
    local_path: str

    # Optimistic-concurrency retries for DocumentBlob.modify
    update_retries: int
    update_delay_factor: float
    update_randomization_factor: float
    update_max_delay: float

    # "json" or "console"
    log_format: str

    def retry_policy(self) -> RetryPolicy:
        return RetryPolicy(
            retries=self.update_retries,
            delay_factor=self.update_delay_factor,
            randomization_factor=self.update_randomization_factor,
            max_delay=self.update_max_delay,
        )


def get_settings(dotenv: bool = True) -> Settings:
    """Read settings from the environment (and a ``.env`` file if present)."""
    if dotenv:
        load_dotenv()

    log_format = os.getenv("DATABLOBS_LOG_FORMAT", "json").strip().lower()
    if log_format not in ("json", "console"):
        raise ValueError(
            f"DATABLOBS_LOG_FORMAT must be 'json' or 'console', got {log_format!r}"
        )

    return Settings(
        azure_sas_url=os.getenv("DATABLOBS_AZURE_SAS_URL", "").strip(),
        azure_connection_string=os.getenv("DATABLOBS_AZURE_CONN_STR", "").strip(),
        local_path=os.getenv("DATABLOBS_LOCAL_PATH", "").strip(),
        update_retries=_env_int("DATABLOBS_UPDATE_RETRIES", 10),
        # Milliseconds in the environment, seconds in RetryPolicy
        update_delay_factor=_env_float("DATABLOBS_UPDATE_DELAY_FACTOR", 100) / 1000,
        update_randomization_factor=_env_float(
            "DATABLOBS_UPDATE_RANDOMIZATION_FACTOR", 0.25
        ),
        update_max_delay=_env_float("DATABLOBS_UPDATE_MAX_DELAY", 30_000) / 1000,
        log_format=log_format,
    )


def store_from_settings(settings: Settings) -> BlobStore:
    """Build the configured backend: SAS URL, connection string, local path."""
    if settings.azure_sas_url:
        return AzureBlobAdapter.from_container_sas_url(settings.azure_sas_url)
    if settings.azure_connection_string:
        return AzureBlobAdapter.from_connection_string(settings.azure_connection_string)
    if settings.local_path:
        return LocalFileAdapter(settings.local_path)
    raise ValueError(
        "No storage configured: set DATABLOBS_AZURE_SAS_URL, "
        "DATABLOBS_AZURE_CONN_STR or DATABLOBS_LOCAL_PATH"
    )
