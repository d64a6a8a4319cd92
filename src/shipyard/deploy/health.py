"""Post-deploy HTTP health check."""

import time
from typing import Callable

import httpx
import structlog

logger = structlog.get_logger()


def wait_for_health(
    url: str,
    timeout_seconds: float = 30.0,
    *,
    sleep: Callable[[float], None] = time.sleep,
) -> bool:
    """Poll ``url`` until it answers 200 or the timeout passes, with backoff."""
    deadline = time.monotonic() + timeout_seconds
    backoff = 0.5

    with httpx.Client(timeout=5.0) as client:
        while time.monotonic() < deadline:
            try:
                resp = client.get(url)
                if resp.status_code == 200:
                    logger.info("Health check passed", url=url)
                    return True
                logger.debug("Health check not ready", url=url, status_code=resp.status_code)
            except (httpx.ConnectError, httpx.TimeoutException):
                pass
            except httpx.HTTPError as e:
                logger.debug("Health check exception", url=url, error=str(e))

            sleep(min(backoff, max(0.0, deadline - time.monotonic())))
            backoff = min(backoff * 1.5, 5.0)

    logger.warning("Health check failed", url=url, timeout=timeout_seconds)
    return False


def health_url(host: str, port: int, path: str) -> str:
    if not path.startswith("/"):
        path = "/" + path
    if ":" in host and not host.startswith("["):
        host = f"[{host}]"
    return f"http://{host}:{port}{path}"
