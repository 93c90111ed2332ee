"""Application configuration models for the edge proxy."""

from __future__ import annotations

from ipaddress import IPv4Network, IPv6Network
from pathlib import Path
from typing import Annotated, Optional

from pydantic import Field, HttpUrl, RedisDsn, SecretStr, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict


DEFAULT_NON_CACHEABLE_PREFIXES = [
    "/wp-admin",
    "/wp-login.php",
    "/wp-json",
    "/xmlrpc.php",
    "/wp-cron.php",
    "/wp-comments-post.php",
]


def env_field(default, env_name: str):
    return Field(default, validation_alias=env_name)


class EdgeProxySettings(BaseSettings):
    """Runtime settings for the caching edge proxy."""

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", populate_by_name=True)

    origin_url: HttpUrl = env_field(..., "EDGE_ORIGIN_URL")
    backend_enabled: bool = env_field(True, "EDGE_BACKEND_ENABLED")
    debug: bool = env_field(False, "EDGE_DEBUG")
    redis_url: RedisDsn = env_field(..., "EDGE_REDIS_URL")
    redirect_key_prefix: str = env_field("", "EDGE_REDIRECT_KEY_PREFIX")
    storage_path: Path = env_field(Path("./edge-cache"), "EDGE_STORAGE_PATH")
    s3_endpoint_url: Optional[str] = env_field(None, "EDGE_S3_ENDPOINT")
    s3_bucket: Optional[str] = env_field(None, "EDGE_S3_BUCKET")
    s3_region: Optional[str] = env_field(None, "EDGE_S3_REGION")
    s3_max_retries: int = env_field(3, "EDGE_S3_MAX_RETRIES")
    s3_retry_base_seconds: float = env_field(0.2, "EDGE_S3_RETRY_BASE")
    s3_retry_max_seconds: float = env_field(2.0, "EDGE_S3_RETRY_MAX")
    s3_circuit_breaker_failures: int = env_field(5, "EDGE_S3_CIRCUIT_FAILURES")
    s3_circuit_breaker_reset_seconds: float = env_field(30.0, "EDGE_S3_CIRCUIT_RESET")
    cache_max_age_seconds: int = env_field(3600, "EDGE_CACHE_MAX_AGE")
    non_cacheable_prefixes: Annotated[list[str], NoDecode] = Field(
        default_factory=lambda: list(DEFAULT_NON_CACHEABLE_PREFIXES),
        validation_alias="EDGE_NON_CACHEABLE_PREFIXES",
    )
    origin_timeout_seconds: float = env_field(30.0, "EDGE_ORIGIN_TIMEOUT")
    origin_follow_redirects: bool = env_field(False, "EDGE_ORIGIN_FOLLOW_REDIRECTS")
    origin_preserve_host: bool = env_field(True, "EDGE_ORIGIN_PRESERVE_HOST")
    single_flight: bool = env_field(False, "EDGE_SINGLE_FLIGHT")
    admin_prefix: str = env_field("/_edge", "EDGE_ADMIN_PREFIX")
    metrics_token: Optional[SecretStr] = env_field(None, "EDGE_METRICS_TOKEN")
    metrics_allowed_networks: Annotated[list[IPv4Network | IPv6Network], NoDecode] = Field(
        default_factory=list,
        validation_alias="EDGE_METRICS_ALLOWED_NETWORKS",
    )
    write_drain_timeout_seconds: float = env_field(10.0, "EDGE_WRITE_DRAIN_TIMEOUT")
    log_level: str = env_field("INFO", "EDGE_LOG_LEVEL")
    otel_exporter_endpoint: Optional[str] = env_field(None, "EDGE_OTEL_EXPORTER_ENDPOINT")
    otel_exporter_headers: Optional[str] = env_field(None, "EDGE_OTEL_EXPORTER_HEADERS")
    otel_sampler_ratio: float = env_field(0.1, "EDGE_OTEL_SAMPLER_RATIO")

    @field_validator("non_cacheable_prefixes", "metrics_allowed_networks", mode="before")
    @classmethod
    def _split_csv(cls, value):
        if isinstance(value, str):
            return [item.strip() for item in value.split(",") if item.strip()]
        return value

    @field_validator("admin_prefix", mode="before")
    @classmethod
    def _normalize_admin_prefix(cls, value):
        if isinstance(value, str):
            value = "/" + value.strip().strip("/")
        return value

    @property
    def effective_log_level(self) -> str:
        return "DEBUG" if self.debug else self.log_level

    @property
    def cache_control(self) -> str:
        return f"public, max-age={self.cache_max_age_seconds}"
