from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable, TypeVar

from tenacity import (
    Retrying,
    before_sleep_log,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from .errors import TransportError

logger = logging.getLogger(__name__)

T = TypeVar("T")


def _is_unreachable(exc: BaseException) -> bool:
    return isinstance(exc, TransportError) and exc.code == TransportError.UNREACHABLE


@dataclass
class RetryPolicy:
    """Caller-side retry for calls that failed to reach the authority.

    Rejections (HTTP errors, cStat rejections, identity problems) are never
    retried.
    """

    max_attempts: int = 3
    wait_seconds: float = 5
    max_wait_seconds: float = 60

    def call(self, func: Callable[..., T], *args, **kwargs) -> T:
        retrying = Retrying(
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_exponential(multiplier=self.wait_seconds, max=self.max_wait_seconds),
            retry=retry_if_exception(_is_unreachable),
            before_sleep=before_sleep_log(logger, logging.WARNING),
            reraise=True,
        )
        return retrying(func, *args, **kwargs)
