from __future__ import annotations

from typing import Literal

from pydantic import AliasChoices, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_REGION = "us-east-5"


class StoreSettings(BaseSettings):
    """Configuration for the remote S3-compatible bucket."""

    model_config = SettingsConfigDict(
        env_prefix="",
        env_file=".env",
        case_sensitive=False,
        extra="ignore",
    )

    endpoint: str | None = Field(
        default=None,
        validation_alias=AliasChoices("S3_SHUFFLE_ENDPOINT", "ENDPOINT"),
    )
    access_key: str | None = Field(
        default=None,
        validation_alias=AliasChoices("S3_SHUFFLE_KEY_ID", "KEY_ID"),
    )
    secret_key: str | None = Field(
        default=None,
        validation_alias=AliasChoices(
            "S3_SHUFFLE_APPLICATION_KEY",
            "APPLICATION_KEY",
        ),
    )
    bucket: str | None = Field(
        default=None,
        validation_alias=AliasChoices("S3_SHUFFLE_BUCKET", "BUCKET_NAME"),
    )
    region: str | None = Field(
        default=None,
        validation_alias=AliasChoices("S3_SHUFFLE_REGION", "REGION"),
    )
    default_region: str = Field(
        default=DEFAULT_REGION,
        validation_alias="S3_SHUFFLE_DEFAULT_REGION",
    )
    addressing_style: Literal["auto", "virtual", "path"] = Field(
        default="path",
        validation_alias="S3_SHUFFLE_ADDRESSING_STYLE",
    )

    @field_validator("endpoint", "access_key", "secret_key", "bucket", "region")
    @classmethod
    def _blank_as_missing(cls, value: str | None) -> str | None:
        if value is None:
            return None
        value = value.strip()
        return value or None

    @property
    def effective_region(self) -> str:
        """Region passed to boto3, falling back to the default region."""
        return self.region or self.default_region


class GatewaySettings(BaseSettings):
    """Configuration for the local cache and the HTTP surface."""

    model_config = SettingsConfigDict(
        env_prefix="",
        env_file=".env",
        case_sensitive=False,
        extra="ignore",
    )

    cache_dir: str = Field(
        default="cache",
        validation_alias="S3_SHUFFLE_CACHE_DIR",
    )
    chunk_size: int = Field(
        default=1024 * 1024,
        gt=0,
        validation_alias="S3_SHUFFLE_CHUNK_SIZE",
    )
    failure_ttl: float | None = Field(
        default=None,
        validation_alias="S3_SHUFFLE_FAILURE_TTL",
    )
    trust_existing: bool = Field(
        default=True,
        validation_alias="S3_SHUFFLE_TRUST_EXISTING",
    )
    static_dir: str = Field(
        default="static",
        validation_alias="S3_SHUFFLE_STATIC_DIR",
    )

    @field_validator("failure_ttl", mode="before")
    @classmethod
    def _parse_failure_ttl(cls, value: object) -> object:
        if isinstance(value, str) and value.strip().lower() in {"", "none", "never"}:
            return None
        return value


def load_store_settings_from_env() -> StoreSettings:
    """Load bucket settings from environment variables.

    Returns:
        StoreSettings instance populated from environment variables.
    """
    return StoreSettings()


def load_gateway_settings_from_env() -> GatewaySettings:
    """Load cache and server settings from environment variables.

    Returns:
        GatewaySettings instance populated from environment variables.
    """
    return GatewaySettings()
