"""
Retry helper for transient collaborator failures.

Wraps an async call and retries it with exponential back-off. Used for
embedding generation and similarity search, whose failures are
transient by contract.
"""
import asyncio
import logging
from typing import Any, Awaitable, Callable, Tuple, Type

from config import RETRIEVAL_CONFIG

logger = logging.getLogger(__name__)


async def retry_async(
    func: Callable[[], Awaitable[Any]],
    *,
    description: str,
    max_retries: int = RETRIEVAL_CONFIG["max_retries"],
    base_delay: float = RETRIEVAL_CONFIG["retry_base_delay"],
    factor: float = RETRIEVAL_CONFIG["retry_factor"],
    retry_on: Tuple[Type[BaseException], ...] = (Exception,),
) -> Any:
    """
    Await ``func()``, retrying up to ``max_retries`` times on failure.

    The delay before retry ``n`` (1-based) is ``base_delay * factor ** (n - 1)``.
    The last exception is re-raised once retries are exhausted.
    """
    attempt = 0
    while True:
        try:
            return await func()
        except retry_on as exc:
            if attempt >= max_retries:
                logger.error(f"{description} failed after {attempt + 1} attempts: {exc}")
                raise
            delay = base_delay * (factor ** attempt)
            attempt += 1
            logger.warning(
                f"{description} failed ({exc}); retry {attempt}/{max_retries} in {delay:.2f}s"
            )
            await asyncio.sleep(delay)
