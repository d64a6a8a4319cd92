"""Transfer stage: copy the image archive to the remote host."""

from __future__ import annotations

import posixpath
import socket
from pathlib import Path

import paramiko
import structlog

from shipyard.core.exceptions import (
    NetworkUnreachable,
    RemoteCommandError,
    RemotePathNotWritable,
    TransferFailure,
)
from shipyard.core.models import DeploymentUnit
from shipyard.deploy.ssh import RemoteHost, quote

logger = structlog.get_logger()

PARTIAL_SUFFIX = ".partial"


def remote_archive_path(remote_dir: str, unit: DeploymentUnit) -> str:
    return posixpath.join(remote_dir, unit.archive_name)


def _remote_sha256(remote: RemoteHost, path: str):
    """SHA256 of a remote file, or None when sha256sum is unavailable."""
    result = remote.run(f"sha256sum {quote(path)}", check=False)
    if not result.ok or not result.stdout.strip():
        return None
    return result.stdout.split()[0].lower()


def _discard(remote: RemoteHost, path: str) -> None:
    try:
        remote.remove(path)
    except (OSError, paramiko.SSHException) as exc:
        logger.warning("Could not remove partial archive", path=path, error=str(exc))


def transfer_archive(remote: RemoteHost, unit: DeploymentUnit, remote_dir: str) -> str:
    """Upload the unit's archive and return its final remote path.

    The archive is written under a ``.partial`` name and only renamed to its
    final name after size and checksum match the unit.
    """
    local = Path(unit.archive_path)
    if not local.is_file():
        raise TransferFailure(f"Local archive not found: {local}", code="archive_missing")

    final_path = remote_archive_path(remote_dir, unit)
    partial_path = final_path + PARTIAL_SUFFIX

    try:
        remote.run(f"mkdir -p {quote(remote_dir)} && test -w {quote(remote_dir)}")
    except RemoteCommandError as exc:
        raise RemotePathNotWritable(
            f"Remote directory {remote_dir} is not writable: {exc.stderr.strip()}",
            code="remote_dir_not_writable",
        ) from exc

    logger.info(
        "Uploading image archive",
        archive=str(local),
        remote_path=final_path,
        size=unit.archive_size,
    )
    try:
        remote_size = remote.upload(local, partial_path)
    except PermissionError as exc:
        raise RemotePathNotWritable(f"Permission denied writing {partial_path}: {exc}", code="remote_dir_not_writable") from exc
    except (socket.timeout, EOFError, paramiko.SSHException) as exc:
        _discard(remote, partial_path)
        raise NetworkUnreachable(f"Upload of {local.name} interrupted: {exc}", code="upload_interrupted") from exc
    except OSError as exc:
        _discard(remote, partial_path)
        raise TransferFailure(f"Upload of {local.name} failed: {exc}", code="upload_failed") from exc

    if remote_size != unit.archive_size:
        _discard(remote, partial_path)
        raise TransferFailure(
            f"Remote archive size {remote_size} does not match local size {unit.archive_size}",
            code="size_mismatch",
        )

    remote_sha = _remote_sha256(remote, partial_path)
    if remote_sha is None:
        logger.warning("sha256sum unavailable on remote host; size check only", remote_path=partial_path)
    elif remote_sha != unit.archive_sha256:
        _discard(remote, partial_path)
        raise TransferFailure(
            f"Remote archive checksum {remote_sha} does not match {unit.archive_sha256}",
            code="checksum_mismatch",
        )

    try:
        remote.rename(partial_path, final_path)
    except (OSError, paramiko.SSHException) as exc:
        _discard(remote, partial_path)
        raise RemotePathNotWritable(f"Could not move archive into place at {final_path}: {exc}", code="rename_failed") from exc

    logger.info("Image archive transferred", remote_path=final_path, sha256=unit.archive_sha256)
    return final_path
