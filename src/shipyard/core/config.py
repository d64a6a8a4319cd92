"""Configuration management for Shipyard."""

from typing import Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from shipyard.core.exceptions import ConfigurationError


class Settings(BaseSettings):
    """Environment configuration: service options and deployment secrets."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Trigger service
    host: str = Field("0.0.0.0", description="Trigger service host")
    port: int = Field(8000, description="Trigger service port")
    trigger_token: Optional[str] = Field(None, description="Bearer token for manual deploys")
    webhook_secret: Optional[str] = Field(None, description="HMAC secret for push webhooks")

    # Pipeline
    pipeline_file: str = Field("shipyard.yaml", description="Pipeline YAML file")
    artifacts_dir: str = Field(".shipyard/artifacts", description="Local deployment unit directory")
    artifact_retention_days: float = Field(1.0, description="Days a deployment unit is kept")

    # Remote host (CI secrets)
    remote_host: Optional[str] = Field(None, description="Deployment host address")
    remote_user: Optional[str] = Field(None, description="SSH username")
    remote_password: Optional[str] = Field(None, description="SSH password")
    remote_private_key: Optional[str] = Field(
        None, description="SSH private key material or path to a key file"
    )
    remote_key_passphrase: Optional[str] = Field(None, description="Private key passphrase")
    remote_port: int = Field(22, description="SSH port")
    remote_deploy_dir: Optional[str] = Field(None, description="Remote directory for image archives")
    ssh_timeout_seconds: float = Field(30.0, description="SSH connect timeout")
    ssh_strict_host_keys: bool = Field(False, description="Reject hosts missing from known_hosts")

    # Observability
    log_level: str = Field("INFO")
    log_format: str = Field("json")
    metrics_enabled: bool = Field(True)

    @field_validator("log_format")
    @classmethod
    def validate_log_format(cls, v: str) -> str:
        """Only json and console renderers exist."""
        v = v.lower()
        if v not in ("json", "console"):
            raise ValueError(f"LOG_FORMAT must be 'json' or 'console', got: {v}")
        return v

    @field_validator("remote_port", "port")
    @classmethod
    def validate_port(cls, v: int) -> int:
        if v < 1 or v > 65535:
            raise ValueError(f"port must be between 1 and 65535, got: {v}")
        return v

    @field_validator("remote_deploy_dir")
    @classmethod
    def strip_trailing_slash(cls, v: Optional[str]) -> Optional[str]:
        if v and len(v) > 1:
            return v.rstrip("/")
        return v

    @property
    def has_credential(self) -> bool:
        return bool(self.remote_password or self.remote_private_key)

    def require_remote(self) -> None:
        """Fail fast when the deployment secrets are incomplete."""
        missing = []
        if not self.remote_host:
            missing.append("REMOTE_HOST")
        if not self.remote_user:
            missing.append("REMOTE_USER")
        if not self.remote_deploy_dir:
            missing.append("REMOTE_DEPLOY_DIR")
        if not self.has_credential:
            missing.append("REMOTE_PASSWORD or REMOTE_PRIVATE_KEY")
        if missing:
            raise ConfigurationError(
                f"Missing remote deployment settings: {', '.join(missing)}",
                code="missing_remote_settings",
            )
