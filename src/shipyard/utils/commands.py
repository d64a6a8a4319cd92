"""Running external tools (build tool, container engine, git)."""

import os
import subprocess
from pathlib import Path
from typing import Dict, List, Optional, Union

import structlog

from shipyard.core.exceptions import CommandError

logger = structlog.get_logger()

OUTPUT_TAIL_CHARS = 2000


def _tail(text: str, limit: int = OUTPUT_TAIL_CHARS) -> str:
    if len(text) <= limit:
        return text
    return text[-limit:]


def run_command(
    cmd: List[str],
    *,
    cwd: Optional[Union[str, Path]] = None,
    env: Optional[Dict[str, str]] = None,
    timeout: Optional[float] = None,
) -> subprocess.CompletedProcess:
    """Run a command to completion and raise CommandError unless it exits 0.

    stdout and stderr are captured; on failure the tail of the combined
    output is attached to the error.
    """
    full_env = None
    if env:
        full_env = {**os.environ, **env}

    logger.info("Running command", command=" ".join(cmd), cwd=str(cwd) if cwd else None)

    try:
        result = subprocess.run(
            cmd,
            cwd=str(cwd) if cwd else None,
            env=full_env,
            capture_output=True,
            text=True,
            timeout=timeout,
        )
    except FileNotFoundError as exc:
        raise CommandError(
            f"Command not found: {cmd[0]}",
            command=cmd,
            code="command_not_found",
        ) from exc
    except subprocess.TimeoutExpired as exc:
        raise CommandError(
            f"Command timed out after {timeout}s: {cmd[0]}",
            command=cmd,
            code="command_timeout",
        ) from exc

    if result.returncode != 0:
        output = _tail((result.stdout or "") + (result.stderr or ""))
        logger.error(
            "Command failed",
            command=" ".join(cmd),
            returncode=result.returncode,
            output=output[-500:],
        )
        raise CommandError(
            f"Command exited with status {result.returncode}: {' '.join(cmd)}",
            command=cmd,
            exit_code=result.returncode,
            output=output,
            code="command_failed",
        )

    return result
