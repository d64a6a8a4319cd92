"""Pipeline orchestration: build job and deploy job, strictly sequential."""

from __future__ import annotations

from contextlib import ExitStack, contextmanager
from pathlib import Path
from typing import Callable, Iterator, List, Optional

import structlog

from shipyard.build.artifacts import ArtifactStore
from shipyard.build.image import ImageBuilder
from shipyard.build.java import JavaBuilder
from shipyard.build.tagging import generate_tag, normalize_branch, short_revision
from shipyard.core.config import Settings
from shipyard.core.models import (
    BUILD_JOB_STAGES,
    DEPLOY_JOB_STAGES,
    ApplyResult,
    ContainerSlot,
    DeploymentUnit,
    RunRecord,
    RunStatus,
    StageName,
    StageResult,
    StageStatus,
    utc_now,
)
from shipyard.core.pipeline_config import PipelineConfig
from shipyard.deploy.apply import RemoteApplier
from shipyard.deploy.health import health_url, wait_for_health
from shipyard.deploy.lock import break_lock
from shipyard.deploy.ssh import RemoteHost
from shipyard.deploy.transfer import transfer_archive
from shipyard.utils.logging import bind_run_context, clear_run_context
from shipyard.utils.metrics import PIPELINE_RUNS, STAGE_DURATION, STAGE_FAILURES
from shipyard.utils.stage_metrics import StageTimer

logger = structlog.get_logger()


class Pipeline:
    """Runs tag -> build -> image -> export, then transfer -> apply.

    Every stage failure ends the run: the error is recorded on the
    ``RunRecord``, later stages are marked skipped, and the error is
    re-raised to the caller.
    """

    def __init__(
        self,
        settings: Settings,
        config: PipelineConfig,
        *,
        remote_factory: Optional[Callable[[], RemoteHost]] = None,
        java_builder: Optional[JavaBuilder] = None,
        image_builder: Optional[ImageBuilder] = None,
        store: Optional[ArtifactStore] = None,
    ):
        self.settings = settings
        self.config = config
        self.project_dir = Path(config.project_dir)
        self.remote_factory = remote_factory or (lambda: RemoteHost.from_settings(settings))
        self.java_builder = java_builder or JavaBuilder(config.build, self.project_dir)
        self.image_builder = image_builder or ImageBuilder(config.image, config.deploy, self.project_dir)
        self.store = store or ArtifactStore(settings.artifacts_dir, settings.artifact_retention_days)
        self.timer = StageTimer()

    def tag_for(self, branch: str, revision: str) -> str:
        return generate_tag(branch, revision, self.config.trigger.revision_length)

    def image_for(self, tag: str) -> str:
        return f"{self.config.image.repository}:{tag}"

    @contextmanager
    def _tracked(self, record: RunRecord) -> Iterator[RunRecord]:
        # only the outermost job finalizes the run status
        owner = record.status != RunStatus.RUNNING
        if owner:
            self.timer = StageTimer()
            record.update_status(RunStatus.RUNNING)
        try:
            yield record
        except Exception as exc:
            if owner:
                record.skip_pending()
                record.update_status(
                    RunStatus.FAILED,
                    {"error": str(exc), "error_type": exc.__class__.__name__},
                )
                PIPELINE_RUNS.labels(outcome="failed").inc()
                self.timer.finish()
                logger.error(
                    "Pipeline run failed",
                    run_id=record.run_id,
                    error_type=exc.__class__.__name__,
                    error=str(exc),
                    timings=self.timer.to_dict(),
                )
            raise
        else:
            if owner:
                record.update_status(RunStatus.SUCCEEDED)
                PIPELINE_RUNS.labels(outcome="succeeded").inc()
                self.timer.finish()
                logger.info("Pipeline run succeeded", run_id=record.run_id, tag=record.tag, timings=self.timer.to_dict())
        finally:
            if owner:
                clear_run_context()

    @contextmanager
    def _stage(self, record: RunRecord, name: StageName) -> Iterator[StageResult]:
        result = record.stage(name)
        result.status = StageStatus.RUNNING
        result.started_at = utc_now()
        self.timer.start(name)
        logger.info("Stage started", stage=name.value, run_id=record.run_id)
        try:
            yield result
        except Exception as exc:
            result.status = StageStatus.FAILED
            result.error = str(exc)
            STAGE_FAILURES.labels(stage=name.value, error=exc.__class__.__name__).inc()
            logger.error("Stage failed", stage=name.value, error_type=exc.__class__.__name__, error=str(exc))
            raise
        else:
            result.status = StageStatus.SUCCEEDED
            logger.info("Stage finished", stage=name.value)
        finally:
            result.finished_at = utc_now()
            result.duration_ms = self.timer.stop(name)
            STAGE_DURATION.labels(stage=name.value).observe(result.duration_ms / 1000.0)

    def build_job(self, branch: str, revision: str, record: Optional[RunRecord] = None) -> DeploymentUnit:
        """Produce a deployment unit for ``(branch, revision)``."""
        record = record or RunRecord.create(BUILD_JOB_STAGES, branch=branch, revision=revision)
        record.branch, record.revision = branch, revision

        with self._tracked(record):
            with self._stage(record, StageName.TAG):
                tag = self.tag_for(branch, revision)
                record.tag = tag
                bind_run_context(record.run_id, tag)

            with self._stage(record, StageName.BUILD):
                artifact = self.java_builder.build()

            with self._stage(record, StageName.IMAGE):
                image = self.image_builder.build(artifact, tag)

            with self._stage(record, StageName.EXPORT):
                archive = self.store.archive_path(tag)
                sha256, size = self.image_builder.export(image, archive)
                created_at = utc_now()
                unit = DeploymentUnit(
                    tag=tag,
                    branch=normalize_branch(branch),
                    revision=short_revision(revision, self.config.trigger.revision_length),
                    full_revision=revision.strip(),
                    image=image,
                    artifact_path=str(artifact),
                    archive_path=str(archive),
                    archive_sha256=sha256,
                    archive_size=size,
                    created_at=created_at,
                    expires_at=self.store.expiry_for(created_at),
                )
                manifest = self.store.write_manifest(unit)
                record.details["manifest"] = str(manifest)

            self.store.prune()

        return unit

    def deploy_job(self, unit: DeploymentUnit, record: Optional[RunRecord] = None) -> ApplyResult:
        """Transfer the unit's archive and swap the remote container.

        The deploy lock is held from before the upload until the swap is
        done, so runs of the same tag never share an archive on the host.
        """
        record = record or RunRecord.create(
            DEPLOY_JOB_STAGES, branch=unit.branch, revision=unit.revision, tag=unit.tag
        )
        record.tag = unit.tag
        bind_run_context(record.run_id, unit.tag)

        with self._tracked(record):
            with ExitStack() as stack:
                with self._stage(record, StageName.TRANSFER):
                    self.settings.require_remote()
                    remote = self.remote_factory()
                    stack.callback(remote.close)
                    remote.connect()
                    applier = RemoteApplier(remote, self.config.deploy, self.settings.remote_deploy_dir)
                    stack.enter_context(applier.deploy_lock({"run_id": record.run_id, "tag": unit.tag}))
                    remote_archive = transfer_archive(remote, unit, self.settings.remote_deploy_dir)

                with self._stage(record, StageName.APPLY):
                    result = applier.swap(unit.image, remote_archive)
                    record.details["container_id"] = result.container_id
                    record.details["previous"] = result.previous.state
                    record.details["downtime_ms"] = f"{result.downtime_ms:.1f}"

            self._check_health(result, record)

        return result

    def run(self, branch: str, revision: str, record: Optional[RunRecord] = None) -> RunRecord:
        """Full pipeline: build job, then deploy job."""
        record = record or RunRecord.create(
            BUILD_JOB_STAGES + DEPLOY_JOB_STAGES, branch=branch, revision=revision
        )
        with self._tracked(record):
            # no point building what cannot be deployed
            self.settings.require_remote()
            unit = self.build_job(branch, revision, record)
            self.deploy_job(unit, record)
        return record

    def _check_health(self, result: ApplyResult, record: RunRecord) -> None:
        # advisory only; a failed check does not fail the run
        path = self.config.deploy.health_path
        if not path:
            return
        url = health_url(self.settings.remote_host, self.config.deploy.host_port, path)
        result.health = wait_for_health(url, self.config.deploy.health_timeout_seconds)
        record.details["health"] = "passed" if result.health else "failed"

    def _with_remote(self, fn: Callable[[RemoteHost], object]):
        self.settings.require_remote()
        remote = self.remote_factory()
        with remote:
            return fn(remote)

    def rollback(self, tag: str) -> ApplyResult:
        """Manually restore a previous tag already present on the remote host."""
        image = self.image_for(tag)
        record = RunRecord.create([StageName.APPLY], trigger="rollback", tag=tag)
        bind_run_context(record.run_id, tag)
        logger.warning("Manual rollback requested", tag=tag, image=image)

        with self._tracked(record):
            with self._stage(record, StageName.APPLY):
                result = self._with_remote(
                    lambda remote: RemoteApplier(remote, self.config.deploy, self.settings.remote_deploy_dir).apply(
                        image, None, owner={"run_id": record.run_id, "tag": tag, "rollback": True}
                    )
                )
            self._check_health(result, record)
        return result

    def status(self) -> ContainerSlot:
        return self._with_remote(
            lambda remote: RemoteApplier(remote, self.config.deploy, self.settings.remote_deploy_dir).inspect_slot()
        )

    def unlock(self) -> bool:
        return self._with_remote(lambda remote: break_lock(remote, self.settings.remote_deploy_dir))

    def prune(self) -> List[str]:
        return self.store.prune()
