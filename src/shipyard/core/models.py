"""Core data models for Shipyard."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, List, Optional

from pydantic import BaseModel, Field


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class DeploymentUnit(BaseModel):
    """One build's packaged image, identified by its tag."""

    tag: str = Field(..., description="{branch}-{short-revision}")
    branch: str = Field(..., description="Normalized branch name")
    revision: str = Field(..., description="Revision prefix used in the tag")
    full_revision: str = Field(..., description="Revision identifier as given")
    image: str = Field(..., description="Image reference repository:tag")
    artifact_path: Optional[str] = Field(None, description="Built jar")
    archive_path: str = Field(..., description="Exported image archive")
    archive_sha256: str = Field(..., description="SHA256 of the archive")
    archive_size: int = Field(..., description="Archive size in bytes")
    created_at: datetime = Field(default_factory=utc_now)
    expires_at: Optional[datetime] = Field(None, description="Retention expiry")

    @property
    def archive_name(self) -> str:
        return f"{self.tag}.tar"

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        if self.expires_at is None:
            return False
        return (now or utc_now()) >= self.expires_at


class ContainerSlot(BaseModel):
    """State of the fixed-name container on the remote host."""

    name: str
    present: bool = False
    running: bool = False
    image: Optional[str] = None
    container_id: Optional[str] = None

    @property
    def tag(self) -> Optional[str]:
        if not self.image or ":" not in self.image.rsplit("/", 1)[-1]:
            return None
        return self.image.rsplit(":", 1)[1]

    @property
    def state(self) -> str:
        if not self.present:
            return "absent"
        return f"{'running' if self.running else 'stopped'}({self.tag or self.image})"


class ApplyResult(BaseModel):
    """Outcome of a remote apply."""

    previous: ContainerSlot
    image: str
    container_id: str
    downtime_ms: float = Field(..., description="Gap between removing the old container and starting the new one")
    health: Optional[bool] = None


class RunStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class StageStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"


class StageName(str, Enum):
    TAG = "tag"
    BUILD = "build"
    IMAGE = "image"
    EXPORT = "export"
    TRANSFER = "transfer"
    APPLY = "apply"


BUILD_JOB_STAGES = [StageName.TAG, StageName.BUILD, StageName.IMAGE, StageName.EXPORT]
DEPLOY_JOB_STAGES = [StageName.TRANSFER, StageName.APPLY]


class StageResult(BaseModel):
    stage: StageName
    status: StageStatus = StageStatus.PENDING
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    duration_ms: Optional[float] = None
    error: Optional[str] = None


class RunRecord(BaseModel):
    """Bookkeeping for one pipeline run."""

    run_id: str = Field(default_factory=lambda: uuid.uuid4().hex[:12])
    trigger: str = Field("cli", description="cli, push or manual")
    branch: Optional[str] = None
    revision: Optional[str] = None
    tag: Optional[str] = None
    status: RunStatus = RunStatus.PENDING
    createdAt: datetime = Field(default_factory=utc_now)
    updatedAt: datetime = Field(default_factory=utc_now)
    details: Dict[str, str] = Field(default_factory=dict)
    stages: List[StageResult] = Field(default_factory=list)

    @classmethod
    def create(cls, stages: List[StageName], **kwargs) -> "RunRecord":
        return cls(stages=[StageResult(stage=s) for s in stages], **kwargs)

    def stage(self, name: StageName) -> StageResult:
        for result in self.stages:
            if result.stage == name:
                return result
        result = StageResult(stage=name)
        self.stages.append(result)
        return result

    def update_status(self, status: RunStatus, details: Optional[Dict[str, str]] = None):
        self.status = status
        self.updatedAt = utc_now()
        if details:
            self.details.update(details)

    def skip_pending(self) -> None:
        """Mark every stage that never started as skipped."""
        for result in self.stages:
            if result.status == StageStatus.PENDING:
                result.status = StageStatus.SKIPPED

    @property
    def is_active(self) -> bool:
        return self.status in (RunStatus.PENDING, RunStatus.RUNNING)
