from __future__ import annotations

import os
from functools import lru_cache
from pathlib import Path
from typing import Any, Dict, Literal, Optional

from dotenv import load_dotenv
from omegaconf import DictConfig, OmegaConf
from omegaconf.errors import OmegaConfBaseException
from pydantic import BaseModel, Field, ValidationError

from .errors import ConfigurationError

CONFIG_PATH = Path(__file__).resolve().parent / "config" / "config.yaml"

# Environment variable -> dotted config key
ENV_OVERRIDES: Dict[str, str] = {
    "UPLOAD_MAX_CONCURRENT": "scheduler.max_concurrent",
    "UPLOAD_TRANSFER_BACKEND": "transfer.backend",
    "UPLOAD_INGEST_URL": "transfer.ingest_url",
    "UPLOAD_REQUEST_TIMEOUT": "transfer.request_timeout",
    "S3_BUCKET_NAME": "transfer.s3_bucket",
    "UPLOAD_S3_PREFIX": "transfer.s3_prefix",
    "UPLOAD_PRESIGN_EXPIRATION": "transfer.presign_expiration",
    "UPLOAD_DB_PATH": "storage.db_path",
    "UPLOAD_LOG_LEVEL": "logging.level",
}


class SchedulerSettings(BaseModel):
    max_concurrent: int = Field(3, gt=0)


class TransferSettings(BaseModel):
    backend: Literal["http", "s3"] = "http"
    ingest_url: str = "http://localhost:3000/api/import/folder"
    request_timeout: float = Field(120.0, gt=0)
    s3_bucket: str = ""
    s3_prefix: str = "uploads"
    presign_expiration: int = Field(3600, gt=0)


class StorageSettings(BaseModel):
    db_path: Path = Path("data/uploads.db")


class LoggingSettings(BaseModel):
    level: str = "INFO"


class UploadSettings(BaseModel):
    scheduler: SchedulerSettings = Field(default_factory=SchedulerSettings)
    transfer: TransferSettings = Field(default_factory=TransferSettings)
    storage: StorageSettings = Field(default_factory=StorageSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)


@lru_cache(maxsize=1)
def _load_default_config() -> DictConfig:
    if not CONFIG_PATH.exists():
        raise ConfigurationError(f"Default config not found at {CONFIG_PATH}")
    return OmegaConf.load(CONFIG_PATH)


def _env_config(environ: Optional[Dict[str, str]] = None) -> DictConfig:
    environ = os.environ if environ is None else environ
    dotlist = [f"{key}={environ[name]}" for name, key in ENV_OVERRIDES.items() if environ.get(name, "").strip()]
    return OmegaConf.from_dotlist(dotlist)


def make_runtime_config(overrides: Optional[Dict[str, Any]] = None, environ: Optional[Dict[str, str]] = None) -> DictConfig:
    """
    Merge packaged defaults, environment overrides and explicit overrides.

    Later sources win. The defaults are in struct mode, so an override for a
    key that does not exist is rejected.
    """
    base = OmegaConf.create(OmegaConf.to_container(_load_default_config(), resolve=False))
    OmegaConf.set_struct(base, True)
    try:
        merged = OmegaConf.merge(base, _env_config(environ), OmegaConf.create(overrides or {}))
    except OmegaConfBaseException as exc:
        raise ConfigurationError(f"Invalid configuration override: {exc}") from exc
    return DictConfig(merged)


def load_settings(overrides: Optional[Dict[str, Any]] = None, environ: Optional[Dict[str, str]] = None) -> UploadSettings:
    """
    Build validated settings for the service.

    Reads a ``.env`` file (if present) before consulting the environment.

    Raises:
        ConfigurationError: If any value fails validation
    """
    if environ is None:
        load_dotenv()
    config = make_runtime_config(overrides, environ)
    container = OmegaConf.to_container(config, resolve=True)
    try:
        return UploadSettings.model_validate(container)
    except ValidationError as exc:
        raise ConfigurationError(f"Invalid upload settings: {exc}") from exc
