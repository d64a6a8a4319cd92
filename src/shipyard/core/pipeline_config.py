"""Pipeline definition loaded from shipyard.yaml."""

import re
from enum import Enum
from pathlib import Path
from typing import List, Optional, Union

import structlog
import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator

from shipyard.core.exceptions import ConfigurationError

logger = structlog.get_logger()


class BuildTool(str, Enum):
    MAVEN = "maven"
    GRADLE = "gradle"


class BuildConfig(BaseModel):
    """How the Java artifact is produced."""

    tool: BuildTool = Field(BuildTool.MAVEN, description="Build tool")
    skip_tests: bool = Field(True, description="Skip test execution")
    gradle_task: str = Field("bootJar", description="Gradle task producing the jar")
    args: List[str] = Field(default_factory=list, description="Extra build tool arguments")
    artifact_glob: Optional[str] = Field(None, description="Glob for the built jar, relative to project_dir")
    timeout_seconds: int = Field(1800, description="Build tool timeout")

    @property
    def resolved_artifact_glob(self) -> str:
        if self.artifact_glob:
            return self.artifact_glob
        if self.tool == BuildTool.GRADLE:
            return "build/libs/*.jar"
        return "target/*.jar"


class ImageConfig(BaseModel):
    """Container image recipe and naming."""

    repository: str = Field(..., description="Image repository name")
    dockerfile: str = Field("Dockerfile", description="Recipe path, relative to project_dir")
    generate_dockerfile: bool = Field(True, description="Render the default recipe when none exists")
    build_image: str = Field("eclipse-temurin:17-jdk", description="Base image of the transient build stage")
    runtime_image: str = Field("eclipse-temurin:17-jre", description="Base image of the runtime stage")
    runtime_user: str = Field("app", description="Non-privileged user owning the artifact")
    runtime_uid: int = Field(10001, description="UID of the runtime user")
    jvm_options: List[str] = Field(default_factory=list)
    build_timeout_seconds: int = Field(900)

    @field_validator("repository")
    @classmethod
    def validate_repository(cls, v: str) -> str:
        v = v.strip()
        if not v or v != v.lower() or " " in v:
            raise ValueError(f"image repository must be a lowercase name without spaces, got: {v!r}")
        return v

    @field_validator("runtime_user")
    @classmethod
    def validate_runtime_user(cls, v: str) -> str:
        if v.strip() in ("", "root", "0"):
            raise ValueError("runtime_user must be a non-privileged user")
        return v.strip()

    @field_validator("runtime_uid")
    @classmethod
    def validate_runtime_uid(cls, v: int) -> int:
        if v <= 0:
            raise ValueError("runtime_uid must be a non-root uid")
        return v


class DeployConfig(BaseModel):
    """Remote container slot definition."""

    container_name: str = Field(..., description="Fixed name of the container slot")
    host_port: int = Field(8080, description="Published host port")
    container_port: int = Field(8080, description="Port the service listens on")
    restart_policy: str = Field("unless-stopped")
    docker_binary: str = Field("docker", description="Container engine command on the remote host")
    run_args: List[str] = Field(default_factory=list, description="Extra docker run arguments")
    remove_archive: bool = Field(True, description="Delete the archive after loading it")
    lock_timeout_seconds: float = Field(300.0)
    lock_poll_seconds: float = Field(2.0)
    health_path: Optional[str] = Field(None, description="Optional HTTP path checked after apply")
    health_timeout_seconds: float = Field(30.0)

    @field_validator("host_port", "container_port")
    @classmethod
    def validate_port(cls, v: int) -> int:
        if v < 1 or v > 65535:
            raise ValueError(f"port must be between 1 and 65535, got: {v}")
        return v

    @field_validator("container_name")
    @classmethod
    def validate_container_name(cls, v: str) -> str:
        if not re.match(r"^[a-zA-Z0-9][a-zA-Z0-9_.-]*$", v):
            raise ValueError(f"invalid container name: {v!r}")
        return v

    @field_validator("health_path")
    @classmethod
    def normalize_health_path(cls, v: Optional[str]) -> Optional[str]:
        if v and not v.startswith("/"):
            return "/" + v
        return v


class TriggerConfig(BaseModel):
    """Which pushes start a run."""

    branches: List[str] = Field(default_factory=lambda: ["main"])
    revision_length: int = Field(8, description="Revision prefix length used in tags")

    @field_validator("revision_length")
    @classmethod
    def validate_revision_length(cls, v: int) -> int:
        if v not in (7, 8):
            raise ValueError(f"revision_length must be 7 or 8, got: {v}")
        return v


class PipelineConfig(BaseModel):
    """Complete pipeline definition."""

    app: str = Field(..., description="Application name")
    project_dir: str = Field(".", description="Java project root")
    build: BuildConfig = Field(default_factory=BuildConfig)
    image: ImageConfig
    deploy: DeployConfig
    trigger: TriggerConfig = Field(default_factory=TriggerConfig)

    @classmethod
    def for_app(cls, app: str, **overrides) -> "PipelineConfig":
        """Build a config using the app name for the image and the container."""
        data = {
            "app": app,
            "image": {"repository": app.lower()},
            "deploy": {"container_name": app},
        }
        data.update(overrides)
        return cls(**data)


def load_pipeline_config(path: Union[str, Path], base_dir: Optional[Path] = None) -> PipelineConfig:
    """Load and validate a pipeline YAML file.

    ``project_dir`` is resolved relative to the YAML file's directory
    unless it is absolute.
    """
    path = Path(path)
    if base_dir is not None and not path.is_absolute():
        path = base_dir / path
    if not path.exists():
        raise ConfigurationError(f"Pipeline file not found: {path}", code="pipeline_file_missing")

    try:
        with open(path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
    except yaml.YAMLError as exc:
        raise ConfigurationError(f"Invalid YAML in {path}: {exc}", code="pipeline_yaml") from exc

    if not isinstance(data, dict):
        raise ConfigurationError(f"Pipeline file must contain a mapping: {path}", code="pipeline_yaml")

    # app name is the default for image repository and container name
    app = data.get("app")
    if app:
        data.setdefault("image", {})
        data.setdefault("deploy", {})
        if isinstance(data["image"], dict):
            data["image"].setdefault("repository", str(app).lower())
        if isinstance(data["deploy"], dict):
            data["deploy"].setdefault("container_name", str(app))

    try:
        config = PipelineConfig(**data)
    except ValidationError as exc:
        raise ConfigurationError(f"Invalid pipeline file {path}: {exc}", code="pipeline_invalid") from exc

    project_dir = Path(config.project_dir)
    if not project_dir.is_absolute():
        config.project_dir = str((path.parent / project_dir).resolve())

    logger.debug("Pipeline config loaded", path=str(path), app=config.app)
    return config
