"""Provider health checks: a tiny text completion against each configured backend."""

import asyncio
import logging
import time
from dataclasses import dataclass

from snapsolve.models import ErrorKind
from snapsolve.providers.base import AIProvider, classify_exception

logger = logging.getLogger(__name__)

PING_PROMPT = "Reply with the word OK only."
PING_MAX_TOKENS = 16
DEFAULT_TIMEOUT_SEC = 15.0


@dataclass(frozen=True)
class HealthResult:
    ok: bool
    error: str = ""
    kind: ErrorKind | None = None
    latency_sec: float = 0.0


async def check_provider(provider: AIProvider, timeout: float = DEFAULT_TIMEOUT_SEC) -> HealthResult:
    """Ping one provider without images. Never raises."""
    start = time.monotonic()
    try:
        await asyncio.wait_for(
            provider.complete(PING_PROMPT, stage="extraction", max_tokens=PING_MAX_TOKENS),
            timeout=timeout,
        )
    except TimeoutError:
        return HealthResult(False, f"No reply within {timeout:g}s", ErrorKind.RETRYABLE_TRANSIENT)
    except Exception as exc:
        logger.debug("Health check for %s failed: %s", provider.name(), exc)
        return HealthResult(False, str(exc), classify_exception(exc))
    return HealthResult(True, latency_sec=time.monotonic() - start)


async def run_health_checks(
    providers: dict[str, AIProvider],
    timeout: float = DEFAULT_TIMEOUT_SEC,
) -> dict[str, HealthResult]:
    """Ping all providers concurrently, keyed by provider name."""
    names = list(providers)
    results = await asyncio.gather(*(check_provider(providers[name], timeout) for name in names))
    return dict(zip(names, results))
