"""Configuration management using YAML and Pydantic."""

import os
import re
from pathlib import Path
from typing import Any, Optional

import yaml
from pydantic import BaseModel, Field, field_validator, model_validator

from vault.exceptions import ConfigurationError


def _substitute_env_vars(value: str) -> str:
    """Substitute environment variables in string.

    Supports ${VAR} and ${VAR:-default} syntax.

    Args:
        value: String potentially containing env var references

    Returns:
        String with environment variables substituted
    """
    pattern = r"\$\{([^}:]+)(?::-([^}]*))?\}"

    def replacer(match: re.Match[str]) -> str:
        var_name = match.group(1)
        default = match.group(2)
        env_value = os.getenv(var_name)
        if env_value is not None:
            return env_value
        if default is not None:
            return default
        raise ValueError(f"Environment variable {var_name} not set and no default provided")

    return re.sub(pattern, replacer, value)


def _substitute_env_in_dict(data: Any) -> Any:
    """Recursively substitute environment variables in a parsed YAML structure."""
    if isinstance(data, dict):
        return {key: _substitute_env_in_dict(value) for key, value in data.items()}
    elif isinstance(data, list):
        return [_substitute_env_in_dict(item) for item in data]
    elif isinstance(data, str):
        return _substitute_env_vars(data)
    return data


class DatabaseConfig(BaseModel):
    """Database configuration."""

    name: str = Field(description="Database name")
    host: str = Field(default="localhost", description="Database host")
    port: int = Field(default=5432, description="Database port", gt=0, lt=65536)
    user: str = Field(description="Database user")
    password_env: Optional[str] = Field(
        default=None,
        description="Environment variable name containing database password (preferred)",
    )
    password: Optional[str] = Field(
        default=None,
        description="Database password (development only - use password_env in production)",
    )
    family: str = Field(
        default="postgres",
        description="Database family of the site; only postgres is supported by the asyncpg driver",
    )
    schema_name: str = Field(default="public", description="Schema holding the site tables", alias="schema")
    table_prefix: str = Field(default="", description="Prefix of every site table (e.g. 'mdl_')")
    pool_size: int = Field(default=5, description="Connection pool size", gt=0, le=50)

    model_config = {"populate_by_name": True}

    @field_validator("family")
    @classmethod
    def validate_family(cls, v: str) -> str:
        """Validate database family."""
        if v != "postgres":
            raise ValueError("family must be 'postgres', the only family the database driver connects to")
        return v

    @model_validator(mode="after")
    def validate_password_source(self) -> "DatabaseConfig":
        """Validate that exactly one password source is provided."""
        if not self.password_env and not self.password:
            raise ValueError("Either 'password_env' or 'password' must be provided.")
        if self.password_env and self.password:
            raise ValueError("Cannot specify both 'password_env' and 'password'.")
        return self

    def get_password(self) -> str:
        """Get password from environment variable or config file.

        Returns:
            Database password

        Raises:
            ValueError: If password cannot be retrieved
        """
        if self.password_env:
            password = os.getenv(self.password_env)
            if not password:
                raise ValueError(f"Environment variable {self.password_env} not set")
            return password
        if self.password:
            return self.password
        raise ValueError("No password source configured")


class StorageConfig(BaseModel):
    """Remote archive storage configuration."""

    type: str = Field(default="s3", description="Transport type (s3, local)")
    bucket: Optional[str] = Field(default=None, description="S3 bucket name")
    prefix: str = Field(default="", description="Key prefix under which backups are stored")
    region: str = Field(default="us-east-1", description="AWS region")
    endpoint: Optional[str] = Field(
        default=None,
        description="S3 endpoint URL (null for AWS S3, or custom endpoint for S3-compatible)",
    )
    aws_access_key_id: Optional[str] = Field(default=None, alias="access_key_id")
    aws_secret_access_key: Optional[str] = Field(default=None, alias="secret_access_key")
    local_dir: Optional[str] = Field(
        default=None,
        description="Directory used as remote storage when type is 'local'",
    )
    max_attempts: int = Field(
        default=4,
        description="Total attempts per S3 request (botocore retry configuration)",
        ge=1,
    )
    request_timeout: int = Field(
        default=3600,
        description="Read timeout in seconds for segment transfers",
        gt=0,
    )

    model_config = {"populate_by_name": True}

    @field_validator("type")
    @classmethod
    def validate_type(cls, v: str) -> str:
        """Validate storage type."""
        if v not in ("s3", "local"):
            raise ValueError("type must be 's3' or 'local'")
        return v

    @model_validator(mode="after")
    def validate_target(self) -> "StorageConfig":
        """Validate that the selected transport has a destination."""
        if self.type == "s3" and not self.bucket:
            raise ValueError("'bucket' is required for s3 storage")
        if self.type == "local" and not self.local_dir:
            raise ValueError("'local_dir' is required for local storage")
        if (self.aws_access_key_id is None) != (self.aws_secret_access_key is None):
            raise ValueError("Both access_key_id and secret_access_key must be provided together")
        return self

    def get_credentials(self) -> Optional[dict[str, str]]:
        """Get explicit AWS credentials, or None to use the default credential chain."""
        if self.aws_access_key_id and self.aws_secret_access_key:
            return {
                "aws_access_key_id": self.aws_access_key_id,
                "aws_secret_access_key": self.aws_secret_access_key,
            }
        return None


class BackupConfig(BaseModel):
    """Backup pipeline configuration."""

    upload_size: int = Field(
        default=1024 * 1024 * 1024,
        description="Uncompressed bytes added to a segment before it is uploaded and a new one started",
        gt=0,
    )
    dbfile_size: int = Field(
        default=2 * 1024 * 1024,
        description="Approximate size of one table dump chunk file",
        gt=0,
    )
    dataroot: Optional[str] = Field(default=None, description="Path to the unstructured file tree")
    filedir: Optional[str] = Field(default=None, description="Path to the content-hash addressed store")
    schema_dirs: dict[str, str] = Field(
        default_factory=dict,
        description="Component name to directory containing its install.xml",
    )
    exclude_tables: list[str] = Field(
        default_factory=list,
        description="Tables (without prefix) excluded from backup",
    )
    exclude_dataroot: list[str] = Field(
        default_factory=list,
        description="Top-level dataroot entries excluded from backup",
    )
    work_dir: Optional[str] = Field(
        default=None,
        description="Directory for temporary files (system temp dir when unset)",
    )


class RestoreConfig(BaseModel):
    """Restore pipeline configuration."""

    work_dir: Optional[str] = Field(
        default=None,
        description="Directory where downloaded segments are extracted (system temp dir when unset)",
    )
    sessions_table: Optional[str] = Field(
        default="sessions",
        description="Table holding user sessions, purged after the database is restored",
    )
    files_table: str = Field(default="files", description="Table referencing content-store blobs")
    contenthash_column: str = Field(default="contenthash", description="Content hash column of files_table")
    cache_dirs: list[str] = Field(
        default_factory=lambda: ["cache", "localcache"],
        description="Dataroot sub-directories removed before and after the database restore",
    )


class OperationsConfig(BaseModel):
    """Operation lifecycle configuration."""

    lock_timeout: int = Field(
        default=60 * 60,
        description="Seconds without activity after which an in-progress operation is stuck",
        gt=0,
    )
    log_max_length: int = Field(
        default=1333,
        description="Maximum length of one operation log message",
        gt=0,
    )


class MonitoringConfig(BaseModel):
    """Monitoring and metrics configuration."""

    metrics_enabled: bool = Field(default=False, description="Enable Prometheus metrics")
    metrics_port: int = Field(default=8000, description="Port for Prometheus metrics endpoint", gt=0, lt=65536)
    progress_port: int = Field(default=8001, description="Port for the progress polling endpoint", gt=0, lt=65536)


class VaultConfig(BaseModel):
    """Root configuration model."""

    version: str = Field(description="Configuration version")
    database: DatabaseConfig = Field(description="Database configuration")
    storage: StorageConfig = Field(description="Remote storage configuration")
    backup: BackupConfig = Field(default_factory=BackupConfig, description="Backup settings")
    restore: RestoreConfig = Field(default_factory=RestoreConfig, description="Restore settings")
    operations: OperationsConfig = Field(default_factory=OperationsConfig, description="Operation settings")
    monitoring: MonitoringConfig = Field(default_factory=MonitoringConfig, description="Monitoring settings")

    @field_validator("version")
    @classmethod
    def validate_version(cls, v: str) -> str:
        """Validate configuration version."""
        if v not in ["1.0"]:
            raise ValueError(f"Unsupported configuration version: {v}")
        return v


def load_config(config_path: Path) -> VaultConfig:
    """Load and validate configuration from YAML file.

    Args:
        config_path: Path to YAML configuration file

    Returns:
        Validated configuration object

    Raises:
        ConfigurationError: If configuration is invalid
    """
    try:
        with open(config_path, encoding="utf-8") as f:
            raw_config = yaml.safe_load(f)

        if not raw_config:
            raise ValueError("Configuration file is empty")

        config_data = _substitute_env_in_dict(raw_config)
        return VaultConfig.model_validate(config_data)

    except FileNotFoundError:
        raise ConfigurationError(
            f"Configuration file not found: {config_path}",
            context={"path": str(config_path)},
        ) from None
    except yaml.YAMLError as e:
        raise ConfigurationError(
            f"Invalid YAML in configuration file: {e}",
            context={"path": str(config_path)},
        ) from e
    except Exception as e:
        raise ConfigurationError(
            f"Configuration validation failed: {e}",
            context={"path": str(config_path)},
        ) from e
