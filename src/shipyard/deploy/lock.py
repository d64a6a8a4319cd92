"""Remote deploy lock serializing applies to the container slot."""

from __future__ import annotations

import json
import posixpath
import socket
import time
from datetime import datetime, timezone
from typing import Callable, Optional

import structlog

from shipyard.core.exceptions import DeployLockError, RemoteApplyFailure, TransferFailure
from shipyard.deploy.ssh import RemoteHost, quote

logger = structlog.get_logger()

LOCK_DIR_NAME = ".shipyard.lock"
OWNER_FILE = "owner.json"


def lock_path(remote_dir: str) -> str:
    return posixpath.join(remote_dir, LOCK_DIR_NAME)


class RemoteDeployLock:
    """Lock directory on the remote host, created atomically with ``mkdir``.

    A held lock is polled with growing intervals until ``timeout`` seconds
    have passed. There is no stale-lock expiry; ``break_lock`` removes a lock
    left behind by an aborted run.
    """

    def __init__(
        self,
        remote: RemoteHost,
        remote_dir: str,
        *,
        owner: Optional[dict] = None,
        timeout: float = 300.0,
        poll_interval: float = 2.0,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.remote = remote
        self.remote_dir = remote_dir
        self.path = lock_path(remote_dir)
        self.owner = {
            "host": socket.gethostname(),
            "acquired_at": datetime.now(timezone.utc).isoformat(),
            **(owner or {}),
        }
        self.timeout = timeout
        self.poll_interval = poll_interval
        self._sleep = sleep
        self.acquired = False

    def current_owner(self) -> Optional[dict]:
        result = self.remote.run(f"cat {quote(posixpath.join(self.path, OWNER_FILE))}", check=False)
        if not result.ok:
            return None
        try:
            return json.loads(result.stdout)
        except ValueError:
            return {"raw": result.stdout.strip()}

    def acquire(self) -> None:
        start = time.monotonic()
        interval = self.poll_interval
        attempt = 0

        while True:
            attempt += 1
            result = self.remote.run(f"mkdir -p {quote(self.remote_dir)} && mkdir {quote(self.path)}", check=False)
            if result.ok:
                break

            exists = self.remote.run(f"test -d {quote(self.path)}", check=False)
            if not exists.ok:
                raise RemoteApplyFailure(
                    f"Cannot create deploy lock {self.path}: {result.stderr.strip()}",
                    code="lock_unwritable",
                )

            elapsed = time.monotonic() - start
            if elapsed >= self.timeout:
                raise DeployLockError(
                    f"Deploy lock {self.path} held by {self.current_owner()} for over {self.timeout:.0f}s",
                    code="lock_timeout",
                )
            logger.info(
                "Deploy lock held, waiting",
                lock=self.path,
                attempt=attempt,
                owner=self.current_owner(),
            )
            self._sleep(min(interval, max(0.0, self.timeout - elapsed)))
            interval = min(interval * 1.5, 30.0)

        payload = json.dumps(self.owner)
        self.remote.run(
            f"printf '%s' {quote(payload)} > {quote(posixpath.join(self.path, OWNER_FILE))}",
            check=False,
        )
        self.acquired = True
        logger.info("Deploy lock acquired", lock=self.path)

    def release(self) -> None:
        if not self.acquired:
            return
        self.acquired = False
        try:
            result = self.remote.run(f"rm -rf {quote(self.path)}", check=False)
        except TransferFailure as exc:
            logger.error("Lost connection before releasing deploy lock", lock=self.path, error=str(exc))
            return
        if result.ok:
            logger.info("Deploy lock released", lock=self.path)
        else:
            logger.error("Failed to release deploy lock", lock=self.path, stderr=result.stderr.strip())

    def __enter__(self) -> "RemoteDeployLock":
        self.acquire()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.release()


def break_lock(remote: RemoteHost, remote_dir: str) -> bool:
    """Remove a leftover deploy lock. Returns True if one existed."""
    path = lock_path(remote_dir)
    exists = remote.run(f"test -d {quote(path)}", check=False).ok
    if exists:
        remote.run(f"rm -rf {quote(path)}")
        logger.warning("Deploy lock removed manually", lock=path)
    return exists
