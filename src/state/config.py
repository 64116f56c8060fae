from __future__ import annotations

import logging
import os
from typing import Dict, Iterable, Mapping, Optional

import boto3
from botocore.exceptions import ClientError
from pydantic import BaseModel, Field

from common.compression import CompressionOptions
from common.crypto import EncryptionOptions

from .adapters import StorageAdapter
from .layers import compose_storage
from .migration import MigrationEngine
from .models import Migration


logger = logging.getLogger(__name__)

# Environment variable names
ENV_NAME = "PERSIST_NAME"
ENV_SECRET = "PERSIST_SECRET"
ENV_ALGORITHM = "PERSIST_ALGORITHM"
ENV_KDF_ITERATIONS = "PERSIST_KDF_ITERATIONS"
ENV_COMPRESS = "PERSIST_COMPRESS"
ENV_COMPRESS_MIN_SIZE = "PERSIST_COMPRESS_MIN_SIZE"
ENV_SCHEMA_VERSION = "PERSIST_SCHEMA_VERSION"
ENV_STRICT_MIGRATIONS = "PERSIST_STRICT_MIGRATIONS"
ENV_PARAM_PREFIX = "PERSIST_PARAM_PREFIX"  # optional; SSM prefix holding "secret"

_TRUTHY = {"1", "true", "yes", "on"}


def _getenv(name: str, default: Optional[str] = None) -> Optional[str]:
    val = os.environ.get(name)
    return val if val not in (None, "") else default


def _require(v: Optional[str], what: str) -> str:
    if not v:
        raise RuntimeError(f"Missing required configuration: {what}")
    return v


def _int_env(name: str) -> Optional[int]:
    raw = _getenv(name)
    if raw is None:
        return None
    try:
        return int(raw)
    except ValueError:
        raise RuntimeError(f"Invalid integer for {name}: {raw!r}") from None


def _load_ssm_params(prefix: str, names: Iterable[str]) -> Dict[str, Optional[str]]:
    ssm = boto3.client("ssm")
    out: Dict[str, Optional[str]] = {k: None for k in names}
    for name in names:
        full = f"{prefix}{name}"
        try:
            resp = ssm.get_parameter(Name=full, WithDecryption=True)
        except ClientError as e:
            # Leave as None if parameter missing or access denied
            code = e.response.get("Error", {}).get("Code")
            if code in ("ParameterNotFound", "AccessDeniedException"):
                out[name] = None
                continue
            raise
        val = resp.get("Parameter", {}).get("Value")
        out[name] = val if isinstance(val, str) and val != "" else None
    return out


class PersistSettings(BaseModel):
    """
    Which layers to apply and how, for one persisted store.

    - `secret` set: encryption layer enabled with `encryption` options.
    - `compression` set: compression layer enabled.
    - `schema_version` set: migration layer enabled (steps are code, passed
      to `create_persist_storage`).
    """

    name: str = Field(..., min_length=1, description="Storage key of the persisted state")
    secret: Optional[str] = None
    encryption: EncryptionOptions = Field(default_factory=EncryptionOptions)
    compression: Optional[CompressionOptions] = None
    schema_version: Optional[int] = Field(default=None, ge=0)
    strict_migrations: bool = False

    @classmethod
    def from_env(cls) -> "PersistSettings":
        name = _require(_getenv(ENV_NAME), ENV_NAME)

        secret = _getenv(ENV_SECRET)
        prefix = _getenv(ENV_PARAM_PREFIX)
        if secret is None and prefix is not None:
            secret = _load_ssm_params(prefix, ["secret"]).get("secret")
            if secret is None:
                logger.warning("no secret found under SSM prefix %s; encryption disabled", prefix)

        enc_fields: Dict[str, object] = {}
        algorithm = _getenv(ENV_ALGORITHM)
        if algorithm is not None:
            enc_fields["algorithm"] = algorithm
        iterations = _int_env(ENV_KDF_ITERATIONS)
        if iterations is not None:
            enc_fields["iterations"] = iterations
        encryption = EncryptionOptions.model_validate(enc_fields)

        compression = None
        min_size = _int_env(ENV_COMPRESS_MIN_SIZE)
        if (_getenv(ENV_COMPRESS) or "").lower() in _TRUTHY or min_size is not None:
            compression = CompressionOptions() if min_size is None else CompressionOptions(min_size=min_size)

        return cls(
            name=name,
            secret=secret,
            encryption=encryption,
            compression=compression,
            schema_version=_int_env(ENV_SCHEMA_VERSION),
            strict_migrations=(_getenv(ENV_STRICT_MIGRATIONS) or "").lower() in _TRUTHY,
        )


def create_persist_storage(
    base: StorageAdapter,
    settings: PersistSettings,
    migrations: Optional[Mapping[int, Migration]] = None,
) -> StorageAdapter:
    """Build the layered adapter described by `settings` on top of `base`."""
    engine = None
    if settings.schema_version is not None:
        engine = MigrationEngine(settings.schema_version, migrations, strict=settings.strict_migrations)
    elif migrations:
        raise ValueError("migrations given but settings.schema_version is not set")
    return compose_storage(
        base,
        migration=engine,
        compression=settings.compression,
        secret=settings.secret,
        encryption=settings.encryption if settings.secret is not None else None,
    )


__all__ = ["PersistSettings", "create_persist_storage"]
