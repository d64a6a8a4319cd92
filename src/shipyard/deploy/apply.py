"""Remote apply stage: load the image and replace the named container."""

from __future__ import annotations

import time
from typing import List, Optional

import structlog

from shipyard.core.exceptions import (
    RemoteApplyFailure,
    RemoteCommandError,
    TransferFailure,
)
from shipyard.core.models import ApplyResult, ContainerSlot
from shipyard.core.pipeline_config import DeployConfig
from shipyard.deploy.lock import RemoteDeployLock
from shipyard.deploy.ssh import RemoteHost, join_command, quote

logger = structlog.get_logger()

INSPECT_FORMAT = "{{.Id}}|{{.Config.Image}}|{{.State.Running}}"


class RemoteApplier:
    """Runs the container engine commands for one named slot."""

    def __init__(self, remote: RemoteHost, config: DeployConfig, remote_dir: str):
        self.remote = remote
        self.config = config
        self.remote_dir = remote_dir
        self.docker = config.docker_binary

    def _docker(self, *args: str, check: bool = True):
        command = join_command([self.docker, *args])
        try:
            return self.remote.run(command, check=check)
        except RemoteCommandError as exc:
            raise RemoteApplyFailure(
                f"{' '.join(args[:2])} failed (exit {exc.exit_code}): {exc.stderr.strip()}",
                code="remote_command_failed",
            ) from exc
        except TransferFailure as exc:
            raise RemoteApplyFailure(f"Remote host unavailable during apply: {exc}", code="connection_lost") from exc

    def inspect_slot(self) -> ContainerSlot:
        """Current state of the named container; absence is not an error."""
        name = self.config.container_name
        result = self._docker("container", "inspect", "--format", INSPECT_FORMAT, name, check=False)
        if not result.ok:
            if "no such" in (result.stderr + result.stdout).lower():
                return ContainerSlot(name=name)
            raise RemoteApplyFailure(
                f"Cannot inspect container {name}: {result.stderr.strip()}",
                code="inspect_failed",
            )

        container_id, image, running = (result.stdout.strip().split("|") + ["", "", ""])[:3]
        return ContainerSlot(
            name=name,
            present=True,
            running=running.strip().lower() == "true",
            image=image or None,
            container_id=container_id or None,
        )

    def image_exists(self, image: str) -> bool:
        return self._docker("image", "inspect", "--format", "{{.Id}}", image, check=False).ok

    def load_archive(self, remote_archive: str) -> None:
        logger.info("Loading image archive", remote_path=remote_archive)
        self._docker("load", "--input", remote_archive)

    def remove_slot(self) -> ContainerSlot:
        """Stop and remove the named container if it exists."""
        slot = self.inspect_slot()
        if not slot.present:
            logger.info("No existing container to remove", container=slot.name)
            return slot

        if slot.running:
            logger.info("Stopping container", container=slot.name, image=slot.image)
            self._docker("stop", slot.name)
        self._docker("rm", slot.name)
        logger.info("Removed container", container=slot.name, previous=slot.state)
        return slot

    def run_args(self, image: str) -> List[str]:
        return [
            "run", "--detach",
            "--name", self.config.container_name,
            "--publish", f"{self.config.host_port}:{self.config.container_port}",
            "--restart", self.config.restart_policy,
            *self.config.run_args,
            image,
        ]

    def start_container(self, image: str) -> str:
        """Start the new container and confirm it is running the new image."""
        name = self.config.container_name
        logger.info(
            "Starting container",
            container=name,
            image=image,
            port=f"{self.config.host_port}:{self.config.container_port}",
        )
        try:
            result = self._docker(*self.run_args(image))
        except RemoteApplyFailure:
            self._discard_failed(name)
            raise

        container_id = result.stdout.strip().splitlines()[-1] if result.stdout.strip() else ""
        slot = self.inspect_slot()
        if not slot.running or slot.image != image:
            logs = self._docker("logs", "--tail", "50", name, check=False)
            self._discard_failed(name)
            raise RemoteApplyFailure(
                f"Container {name} did not stay running on {image}: "
                f"{(logs.stdout + logs.stderr).strip()[-1000:]}",
                code="container_not_running",
            )
        return slot.container_id or container_id

    def _discard_failed(self, name: str) -> None:
        # leave the slot absent rather than holding a dead container
        result = self._docker("rm", "--force", name, check=False)
        if result.ok:
            logger.warning("Removed failed container; slot is empty", container=name)

    def remove_archive(self, remote_archive: str) -> None:
        result = self.remote.run(f"rm -f {quote(remote_archive)}", check=False)
        if not result.ok:
            logger.warning("Could not remove image archive", remote_path=remote_archive, stderr=result.stderr.strip())

    def deploy_lock(self, owner: Optional[dict] = None) -> RemoteDeployLock:
        return RemoteDeployLock(
            self.remote,
            self.remote_dir,
            owner=owner,
            timeout=self.config.lock_timeout_seconds,
            poll_interval=self.config.lock_poll_seconds,
        )

    def swap(self, image: str, remote_archive: Optional[str] = None) -> ApplyResult:
        """Replace the named container; the caller must hold the deploy lock.

        Loads ``remote_archive`` first when given; otherwise the image must
        already be in the remote image store (manual rollback). There is no
        automatic rollback: a failed start leaves the slot absent.
        """
        if remote_archive:
            self.load_archive(remote_archive)
        if not self.image_exists(image):
            raise RemoteApplyFailure(f"Image {image} is not present on the remote host", code="image_missing")

        previous = self.remove_slot()
        removed_at = time.monotonic()
        container_id = self.start_container(image)
        downtime_ms = (time.monotonic() - removed_at) * 1000.0

        if remote_archive and self.config.remove_archive:
            self.remove_archive(remote_archive)

        logger.info(
            "Container replaced",
            container=self.config.container_name,
            previous=previous.state,
            image=image,
            downtime_ms=round(downtime_ms, 1),
        )
        return ApplyResult(
            previous=previous,
            image=image,
            container_id=container_id,
            downtime_ms=downtime_ms,
        )

    def apply(
        self,
        image: str,
        remote_archive: Optional[str] = None,
        owner: Optional[dict] = None,
    ) -> ApplyResult:
        """Take the deploy lock and swap the named container for ``image``."""
        try:
            with self.deploy_lock(owner):
                return self.swap(image, remote_archive)
        except TransferFailure as exc:
            raise RemoteApplyFailure(f"Remote host unavailable during apply: {exc}", code="connection_lost") from exc
