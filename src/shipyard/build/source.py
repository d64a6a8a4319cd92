"""Resolve the branch and revision a run builds."""

import os
from pathlib import Path
from typing import Optional, Tuple, Union

import structlog

from shipyard.core.exceptions import CommandError, InvalidInputError
from shipyard.utils.commands import run_command

logger = structlog.get_logger()

# Checked in order; GITHUB_HEAD_REF is only set for pull request events
BRANCH_ENV_VARS = ("GITHUB_HEAD_REF", "GITHUB_REF_NAME", "CI_COMMIT_REF_NAME", "BRANCH_NAME")
REVISION_ENV_VARS = ("GITHUB_SHA", "CI_COMMIT_SHA", "GIT_COMMIT")


def _from_env(names: Tuple[str, ...]) -> Optional[str]:
    for name in names:
        value = os.getenv(name, "").strip()
        if value:
            return value
    return None


def _git(args, project_dir: Path) -> Optional[str]:
    try:
        result = run_command(["git", *args], cwd=project_dir, timeout=30)
    except CommandError as exc:
        logger.debug("git lookup failed", args=args, error=str(exc))
        return None
    value = result.stdout.strip()
    return value or None


def resolve_source(
    branch: Optional[str] = None,
    revision: Optional[str] = None,
    project_dir: Union[str, Path] = ".",
) -> Tuple[str, str]:
    """Return ``(branch, revision)``, filling gaps from CI env vars, then git."""
    project_dir = Path(project_dir)

    if not branch:
        branch = _from_env(BRANCH_ENV_VARS)
    if not branch:
        branch = _git(["rev-parse", "--abbrev-ref", "HEAD"], project_dir)
        # detached checkouts report HEAD
        if branch == "HEAD":
            branch = None

    if not revision:
        revision = _from_env(REVISION_ENV_VARS)
    if not revision:
        revision = _git(["rev-parse", "HEAD"], project_dir)

    if not branch:
        raise InvalidInputError("Could not determine branch name", code="empty_branch")
    if not revision:
        raise InvalidInputError("Could not determine revision", code="empty_revision")

    logger.info("Resolved source", branch=branch, revision=revision)
    return branch, revision
