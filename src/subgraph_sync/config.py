"""
Subgraph Sync Configuration System.

Type-safe configuration built on Pydantic. Settings can be loaded from:
1. Environment variables (prefixed with SUBGRAPH_SYNC_)
2. Config file (TOML or JSON)
3. CLI arguments (highest priority)

Example usage:
    from subgraph_sync.config import Settings

    # Load from environment
    settings = Settings()

    # Or with explicit values
    settings = Settings(
        partitions=[
            {"name": "sepolia", "chain_id": 11155111, "url": "https://..."},
        ],
        writes={"backend": "sqlite", "sqlite_path": "sync.db"},
    )

Partitions are usually provided as JSON:
    export SUBGRAPH_SYNC_PARTITIONS='[{"name": "sepolia", "chain_id": 11155111, "url": "..."}]'
"""

from __future__ import annotations

import json
from enum import Enum
from pathlib import Path
from typing import Any, Self

from pydantic import BaseModel, Field, SecretStr, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class StoreBackend(str, Enum):
    """Relational store used for entities and checkpoints."""

    D1 = "d1"
    SQLITE = "sqlite"


class CheckpointBackend(str, Enum):
    """Where checkpoints are persisted."""

    RELATIONAL = "relational"
    FILE = "file"


class PartitionConfig(BaseModel):
    """One upstream source instance (one chain's subgraph)."""

    name: str = Field(description="Partition name used on the CLI and in checkpoints")
    chain_id: int = Field(ge=1, description="Chain id, scopes every stored row")
    url: str = Field(description="GraphQL endpoint of the subgraph")
    api_key: SecretStr | None = Field(
        default=None,
        description="Bearer credential for this endpoint (falls back to upstream.api_key)",
    )

    @field_validator("name")
    @classmethod
    def normalize_name(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("partition name must not be empty")
        return v


class UpstreamConfig(BaseModel):
    """Upstream retrieval and resilience options."""

    api_key: SecretStr = Field(
        default=SecretStr(""),
        description="Default bearer credential for all partitions",
    )
    timeout_seconds: float = Field(
        default=60.0,
        gt=0,
        description="Per-request timeout",
    )
    page_size: int = Field(
        default=500,
        ge=1,
        le=1000,
        description="Records requested per page",
    )
    max_retries: int = Field(
        default=3,
        ge=0,
        le=20,
        description="Retries for transient errors (per page)",
    )
    backoff_base: float = Field(
        default=0.75,
        gt=0,
        description="First backoff delay in seconds, doubled per attempt",
    )
    backoff_max: float = Field(
        default=30.0,
        gt=0,
        description="Backoff ceiling in seconds",
    )
    jitter: float = Field(
        default=0.25,
        ge=0,
        description="Uniform random jitter added to each backoff (seconds)",
    )
    max_skip: int = Field(
        default=5000,
        ge=0,
        description="Deepest offset the upstream accepts",
    )
    max_items: int = Field(
        default=250_000,
        ge=1,
        description="Upper bound of records fetched per section per pass",
    )


class WriteConfig(BaseModel):
    """Downstream relational store options."""

    backend: StoreBackend = Field(
        default=StoreBackend.D1,
        description="Relational store backend (d1/sqlite)",
    )
    sqlite_path: Path = Field(
        default=Path("subgraph-sync.db"),
        description="SQLite database file when backend is sqlite",
    )
    batch_size: int = Field(
        default=50,
        ge=1,
        le=1000,
        description="Write operations per flush",
    )
    use_batch: bool = Field(
        default=True,
        description="Use the native batch call when the store supports it",
    )
    max_retries: int = Field(
        default=3,
        ge=0,
        le=10,
        description="Retries per operation in sequential mode",
    )
    retry_base: float = Field(
        default=0.2,
        gt=0,
        description="First sequential retry delay in seconds",
    )
    timeout_seconds: float = Field(
        default=30.0,
        gt=0,
        description="D1 request timeout",
    )


class GraphDBConfig(BaseModel):
    """Graph store (GraphDB) options. Disabled when base_url is empty."""

    base_url: str = Field(default="", description="GraphDB base URL")
    repository: str = Field(default="", description="GraphDB repository id")
    username: str = Field(default="", description="Basic auth user")
    password: SecretStr = Field(default=SecretStr(""), description="Basic auth password")
    cf_access_client_id: str = Field(default="", description="Cloudflare Access client id")
    cf_access_client_secret: SecretStr = Field(
        default=SecretStr(""),
        description="Cloudflare Access client secret",
    )
    timeout_seconds: float = Field(default=60.0, gt=0)
    query_cache_ttl: float = Field(
        default=30.0,
        ge=0,
        description="Seconds a read query response is reused (0 = no cache)",
    )
    max_upload_bytes: int = Field(
        default=2_500_000,
        ge=1024,
        description="Largest document uploaded in one request",
    )

    @property
    def enabled(self) -> bool:
        return bool(self.base_url and self.repository)


class SyncOptions(BaseModel):
    """Options controlling sync behavior."""

    sections: list[str] = Field(
        default_factory=list,
        description="Sections or groups to sync (empty = all sections)",
    )
    checkpoint_backend: CheckpointBackend = Field(
        default=CheckpointBackend.RELATIONAL,
        description="Where checkpoints are stored",
    )
    checkpoint_file: Path = Field(
        default=Path(".subgraph-sync-checkpoints.json"),
        description="Checkpoint file when checkpoint_backend is file",
    )
    fetch_documents: bool = Field(
        default=False,
        description="Fetch registration documents referenced by agentURI",
    )
    document_timeout_seconds: float = Field(default=10.0, gt=0)
    ipfs_gateway: str = Field(
        default="https://ipfs.io/ipfs/",
        description="Gateway used to resolve ipfs:// URIs",
    )
    max_concurrent_partitions: int = Field(
        default=4,
        ge=1,
        le=32,
        description="Partitions synchronized at the same time",
    )
    optional_rate_limit_unbounded: bool = Field(
        default=True,
        description="Retry rate limits without bound for optional sections",
    )


class WatchConfig(BaseModel):
    """Watch (continuous polling) options."""

    interval_seconds: float = Field(
        default=60.0,
        gt=0,
        description="Target time between pass starts",
    )
    min_delay_seconds: float = Field(
        default=1.0,
        ge=0,
        description="Minimum pause between passes, even if a pass overruns",
    )


class LoggingConfig(BaseModel):
    """Logging configuration."""

    level: str = Field(
        default="INFO",
        pattern="^(DEBUG|INFO|WARNING|ERROR|CRITICAL)$",
        description="Log level",
    )
    file: Path | None = Field(
        default=None,
        description="Log file path (None = console only)",
    )
    format: str = Field(
        default="rich",
        pattern="^(rich|json|simple)$",
        description="Log format: rich (colored), json, or simple",
    )
    max_file_size_mb: int = Field(
        default=10,
        ge=1,
        le=100,
        description="Max log file size before rotation",
    )
    backup_count: int = Field(
        default=3,
        ge=1,
        le=10,
        description="Number of rotated log files to keep",
    )


class Settings(BaseSettings):
    """
    Main settings class for Subgraph Sync.

    Built directly, values come from (highest first):
    1. Explicit constructor arguments
    2. Environment variables (SUBGRAPH_SYNC_* prefix)
    3. .env file
    4. Defaults

    A config file loaded with ``from_file`` replaces sources 2 and 3.

    Example:
        export SUBGRAPH_SYNC_CLOUDFLARE_API_TOKEN="your-token"
        export SUBGRAPH_SYNC_UPSTREAM__PAGE_SIZE=250
        settings = Settings()
    """

    model_config = SettingsConfigDict(
        env_prefix="SUBGRAPH_SYNC_",
        env_nested_delimiter="__",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    partitions: list[PartitionConfig] = Field(
        default_factory=list,
        description="Upstream partitions to synchronize",
    )

    # Cloudflare D1 credentials
    cloudflare_api_token: SecretStr = Field(
        default=SecretStr(""),
        description="Cloudflare API token with D1 permissions",
    )
    cloudflare_account_id: str = Field(
        default="",
        description="Cloudflare account ID",
    )
    cloudflare_d1_database_id: str = Field(
        default="",
        description="D1 database UUID",
    )

    # Nested configs
    upstream: UpstreamConfig = Field(default_factory=UpstreamConfig)
    writes: WriteConfig = Field(default_factory=WriteConfig)
    graphdb: GraphDBConfig = Field(default_factory=GraphDBConfig)
    sync: SyncOptions = Field(default_factory=SyncOptions)
    watch: WatchConfig = Field(default_factory=WatchConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    @field_validator("cloudflare_api_token", mode="before")
    @classmethod
    def validate_token(cls, v: Any) -> SecretStr:
        """Handle token from various sources."""
        if isinstance(v, SecretStr):
            return v
        if isinstance(v, str):
            return SecretStr(v)
        return SecretStr("")

    @model_validator(mode="after")
    def check_unique_partitions(self) -> Self:
        """Partition names key the checkpoint namespace, so they must be unique."""
        seen: set[str] = set()
        for partition in self.partitions:
            if partition.name in seen:
                raise ValueError(f"Duplicate partition name: {partition.name}")
            seen.add(partition.name)
        return self

    @classmethod
    def from_file(cls, path: Path | str) -> "Settings":
        """Load settings from a TOML or JSON config file."""
        path = Path(path)
        if not path.exists():
            raise FileNotFoundError(f"Config file not found: {path}")

        content = path.read_text()

        if path.suffix in (".toml", ".tml"):
            import tomllib

            data = tomllib.loads(content)
        elif path.suffix == ".json":
            data = json.loads(content)
        else:
            raise ValueError(f"Unsupported config format: {path.suffix}")

        return cls.model_validate(data)

    def to_file(self, path: Path | str) -> None:
        """Save current settings to a JSON config file with secrets redacted."""
        path = Path(path)
        data = self.model_dump(mode="json", exclude_none=True)

        # Mask sensitive data
        data["cloudflare_api_token"] = "***REDACTED***"
        data["upstream"]["api_key"] = "***REDACTED***"
        data["graphdb"]["password"] = "***REDACTED***"
        data["graphdb"]["cf_access_client_secret"] = "***REDACTED***"
        for partition in data.get("partitions", []):
            if "api_key" in partition:
                partition["api_key"] = "***REDACTED***"

        path.write_text(json.dumps(data, indent=2))

    def api_key_for(self, partition: PartitionConfig) -> str:
        """Bearer credential for a partition, falling back to the shared key."""
        if partition.api_key and partition.api_key.get_secret_value():
            return partition.api_key.get_secret_value()
        return self.upstream.api_key.get_secret_value()

    def select_partitions(self, names: list[str] | None = None) -> list[PartitionConfig]:
        """Return the configured partitions matching names (all when empty)."""
        if not names:
            return list(self.partitions)
        by_name = {p.name: p for p in self.partitions}
        by_chain = {str(p.chain_id): p for p in self.partitions}
        selected: list[PartitionConfig] = []
        for name in names:
            partition = by_name.get(name) or by_chain.get(name)
            if partition is None:
                raise ValueError(f"Unknown partition: {name}")
            if partition not in selected:
                selected.append(partition)
        return selected

    def validate_credentials(self) -> list[str]:
        """Validate that required credentials are present. Returns list of errors."""
        errors = []
        if not self.partitions:
            errors.append("at least one partition is required")
        if self.writes.backend == StoreBackend.D1:
            if not self.cloudflare_api_token.get_secret_value():
                errors.append("cloudflare_api_token is required")
            if not self.cloudflare_account_id:
                errors.append("cloudflare_account_id is required")
            if not self.cloudflare_d1_database_id:
                errors.append("cloudflare_d1_database_id is required")
        if self.graphdb.base_url and not self.graphdb.repository:
            errors.append("graphdb.repository is required when graphdb.base_url is set")
        return errors


def load_settings(
    config_file: Path | str | None = None,
    **overrides: Any,
) -> Settings:
    """
    Load settings with optional config file and overrides.

    Args:
        config_file: Optional path to config file
        **overrides: Settings to override (highest priority)

    Returns:
        Configured Settings instance
    """
    if config_file:
        settings = Settings.from_file(config_file)
        if overrides:
            data = settings.model_dump()
            data.update(overrides)
            return Settings.model_validate(data)
        return settings
    return Settings(**overrides)
