"""
Configuration management for the media offload migrator.

This module provides centralized configuration with validation using Pydantic.
All configuration values are loaded from environment variables with sensible defaults.
"""

from typing import Optional, Literal
from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


DEFAULT_ALLOWED_EXTENSIONS = [
    'jpg', 'jpeg', 'png', 'gif', 'webp', 'svg',
    'pdf', 'doc', 'docx', 'mp4', 'mp3', 'zip',
]


class DatabaseConfig(BaseSettings):
    """Database connection and pool configuration."""

    model_config = SettingsConfigDict(env_prefix='DB_', case_sensitive=False)

    host: str = Field(default='localhost', description='Database host')
    port: int = Field(default=5432, description='Database port')
    name: str = Field(default='media_offload', alias='POSTGRES_DB', description='Database name')
    user: str = Field(default='offload_user', alias='POSTGRES_USER', description='Database user')
    password: str = Field(default='offload_password', alias='POSTGRES_PASSWORD', description='Database password')

    # Connection pool settings
    pool_size: int = Field(default=10, description='Connection pool size')
    pool_timeout: int = Field(default=30, description='Pool timeout in seconds')

    @field_validator('pool_size')
    @classmethod
    def validate_pool_size(cls, v: int) -> int:
        """A batch holds one connection for its lease, so at least two are needed."""
        if v < 2:
            raise ValueError('pool_size must be at least 2')
        return v

    @property
    def connection_string(self) -> str:
        """Generate PostgreSQL connection string."""
        return f"postgresql://{self.user}:{self.password}@{self.host}:{self.port}/{self.name}"


class StorageConfig(BaseSettings):
    """S3-compatible object storage configuration."""

    model_config = SettingsConfigDict(env_prefix='S3_', case_sensitive=False)

    endpoint_url: Optional[str] = Field(default=None, description='S3-compatible endpoint URL')
    region: str = Field(default='us-east-1', description='Bucket region')
    bucket: str = Field(default='', description='Bucket name')
    folder: str = Field(default='', description='Optional key prefix inside the bucket')
    access_key: Optional[str] = Field(default=None, description='Access key id')
    secret_key: Optional[str] = Field(default=None, description='Secret access key')
    cdn_domain: Optional[str] = Field(default=None, description='Public CDN domain used for object URLs')
    acl: Optional[str] = Field(default='public-read', description='Canned ACL applied to uploads')
    path_style: bool = Field(default=True, description='Use path-style addressing')
    connect_timeout: int = Field(default=10, description='Connect timeout in seconds')
    read_timeout: int = Field(default=60, description='Read timeout in seconds')

    @field_validator('folder')
    @classmethod
    def strip_folder(cls, v: str) -> str:
        """Normalize the folder to have no surrounding slashes."""
        return v.strip().strip('/')

    @field_validator('cdn_domain')
    @classmethod
    def validate_cdn_domain(cls, v: Optional[str]) -> Optional[str]:
        """Accept a bare host or a URL; store the bare host."""
        if v is None:
            return v
        domain = v.strip()
        for scheme in ('https://', 'http://'):
            if domain.lower().startswith(scheme):
                domain = domain[len(scheme):]
        domain = domain.rstrip('/')
        if not domain or ' ' in domain or '/' in domain:
            raise ValueError(f'Invalid CDN domain: {v!r}')
        return domain

    def is_configured(self) -> bool:
        """Check whether enough settings are present to talk to a bucket."""
        return bool(self.bucket)


class MigrationConfig(BaseSettings):
    """Batch migration configuration."""

    model_config = SettingsConfigDict(env_prefix='MIGRATION_', case_sensitive=False)

    uploads_root: str = Field(default='./uploads', description='Directory whose files are migrated')
    batch_size: int = Field(default=10, description='Files processed per batch')
    recent_errors_limit: int = Field(default=10, description='Errors included in progress snapshots')
    allowed_extensions: list[str] = Field(
        default_factory=lambda: list(DEFAULT_ALLOWED_EXTENSIONS),
        description='File extensions to migrate (empty list migrates everything)'
    )
    follow_symlinks: bool = Field(default=False, description='Follow symlinked files and directories')
    delete_local: bool = Field(default=False, description='Delete local files after a successful upload')
    backend: Literal['postgres', 'memory'] = Field(
        default='postgres',
        description='Where run state and markers are kept'
    )
    driver_enabled: bool = Field(default=False, description='Run batches from an in-process background loop')
    driver_interval_seconds: float = Field(default=2.0, description='Pause between driver batches')

    @field_validator('batch_size', 'recent_errors_limit')
    @classmethod
    def validate_positive(cls, v: int) -> int:
        """Validate batch size and error limit are positive."""
        if v <= 0:
            raise ValueError('Value must be positive')
        return v

    @field_validator('allowed_extensions')
    @classmethod
    def normalize_extensions(cls, v: list[str]) -> list[str]:
        """Lowercase extensions and drop leading dots."""
        return [ext.strip().lower().lstrip('.') for ext in v if ext.strip()]

    @field_validator('driver_interval_seconds')
    @classmethod
    def validate_interval(cls, v: float) -> float:
        if v < 0:
            raise ValueError('driver_interval_seconds must be non-negative')
        return v


class APIConfig(BaseSettings):
    """API server configuration."""

    model_config = SettingsConfigDict(env_prefix='API_', case_sensitive=False)

    host: str = Field(default='0.0.0.0', description='API host')
    port: int = Field(default=8000, description='API port')
    reload: bool = Field(default=False, description='Enable auto-reload for development')
    log_level: Literal['debug', 'info', 'warning', 'error', 'critical'] = Field(
        default='info',
        description='Logging level'
    )
    cors_origins: list[str] = Field(
        default=['*'],
        description='CORS allowed origins'
    )
    require_auth: bool = Field(default=False, description='Require API keys from non-loopback clients')
    require_action_token: bool = Field(default=True, description='Require anti-forgery tokens on mutating routes')
    token_secret: Optional[str] = Field(default=None, description='Secret used to sign action tokens')
    token_lifetime_seconds: int = Field(default=86400, description='Action token lifetime in seconds')

    @field_validator('token_lifetime_seconds')
    @classmethod
    def validate_lifetime(cls, v: int) -> int:
        """Tokens tick at half their lifetime, so it must be at least 2 seconds."""
        if v < 2:
            raise ValueError('token_lifetime_seconds must be at least 2')
        return v


class AppConfig(BaseSettings):
    """Main application configuration."""

    model_config = SettingsConfigDict(
        env_file='.env',
        env_file_encoding='utf-8',
        case_sensitive=False,
        extra='ignore'
    )

    # Environment
    environment: Literal['development', 'staging', 'production'] = Field(
        default='development',
        description='Application environment'
    )
    debug: bool = Field(default=False, description='Debug mode')

    # Sub-configurations
    database: DatabaseConfig = Field(default_factory=DatabaseConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    migration: MigrationConfig = Field(default_factory=MigrationConfig)
    api: APIConfig = Field(default_factory=APIConfig)

    @model_validator(mode='after')
    def validate_production_secrets(self) -> 'AppConfig':
        """Production deployments must sign action tokens with a shared secret."""
        if (
            self.environment == 'production'
            and self.api.require_action_token
            and not self.api.token_secret
        ):
            raise ValueError('API_TOKEN_SECRET is required in production')
        return self

    @classmethod
    def load(cls) -> 'AppConfig':
        """Load configuration from environment."""
        return cls(
            database=DatabaseConfig(),
            storage=StorageConfig(),
            migration=MigrationConfig(),
            api=APIConfig(),
        )

    def is_production(self) -> bool:
        """Check if running in production."""
        return self.environment == 'production'

    def is_development(self) -> bool:
        """Check if running in development."""
        return self.environment == 'development'


# Global configuration instance
_config: Optional[AppConfig] = None


def get_config() -> AppConfig:
    """Get or create global configuration instance."""
    global _config
    if _config is None:
        _config = AppConfig.load()
    return _config


def reload_config() -> AppConfig:
    """Reload configuration from environment."""
    global _config
    _config = AppConfig.load()
    return _config
