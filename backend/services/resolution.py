"""Retrying Instagram resolution with a fallback ladder."""

import random
import time
from typing import Callable, List, Optional, Sequence

from log_config import get_logger

from .extractors import (
    ExtractionError,
    ExtractionResult,
    FailureKind,
    error_from_exception,
)

logger = get_logger(__name__)

Extractor = Callable[[str], ExtractionResult]
PrivateProbe = Callable[[str], bool]


def backoff_delay(attempt: int, step_sec: float, max_sec: float) -> float:
    """Delay after the ``attempt``-th failed attempt (1-based)."""
    return min(float(step_sec) * max(int(attempt), 1), float(max_sec))


class ResolutionClient:
    """
    Resolve a content page URL into media URLs.

    - primary extractor: up to ``max_attempts`` calls with increasing backoff
    - PRIVATE short-circuits everything (retrying cannot change access control)
    - rate-limited failures add a fixed cooldown on top of the backoff
    - fallbacks are tried once each, then the optional private probe
    """

    def __init__(
        self,
        primary: Extractor,
        fallbacks: Sequence[Extractor] = (),
        private_probe: Optional[PrivateProbe] = None,
        max_attempts: int = 3,
        backoff_step_sec: float = 2.0,
        backoff_max_sec: float = 8.0,
        rate_limit_cooldown_sec: float = 5.0,
        initial_jitter_max_sec: float = 0.5,
        sleep: Callable[[float], None] = time.sleep,
        jitter: Callable[[float, float], float] = random.uniform,
    ) -> None:
        self.primary = primary
        self.fallbacks = list(fallbacks)
        self.private_probe = private_probe
        self.max_attempts = max(int(max_attempts), 1)
        self.backoff_step_sec = backoff_step_sec
        self.backoff_max_sec = backoff_max_sec
        self.rate_limit_cooldown_sec = rate_limit_cooldown_sec
        self.initial_jitter_max_sec = initial_jitter_max_sec
        self._sleep = sleep
        self._jitter = jitter

    def _pause(self, seconds: float) -> None:
        if seconds > 0:
            self._sleep(seconds)

    @staticmethod
    def _call(extractor: Extractor, url: str) -> ExtractionResult:
        name = getattr(extractor, "name", getattr(extractor, "__name__", "extractor"))
        try:
            result = extractor(url)
        except ExtractionError:
            raise
        except Exception as exc:
            raise error_from_exception(exc, str(name)) from exc

        if result is None or not result.media_urls:
            raise ExtractionError(FailureKind.TRANSIENT, f"{name}: empty media URL list")
        return result

    def _run_primary(self, url: str, max_attempts: int) -> ExtractionResult:
        if self.initial_jitter_max_sec > 0:
            self._pause(self._jitter(0.0, self.initial_jitter_max_sec))

        last_error: Optional[ExtractionError] = None
        for attempt in range(1, max_attempts + 1):
            try:
                result = self._call(self.primary, url)
                if attempt > 1:
                    logger.info("[resolve] succeeded on attempt %d/%d", attempt, max_attempts)
                return result
            except ExtractionError as exc:
                last_error = exc
                logger.warning(
                    "[resolve] attempt %d/%d failed kind=%s: %s",
                    attempt,
                    max_attempts,
                    exc.kind.value,
                    exc.message,
                )
                if exc.kind == FailureKind.PRIVATE:
                    raise
                if attempt >= max_attempts:
                    break
                delay = backoff_delay(attempt, self.backoff_step_sec, self.backoff_max_sec)
                if exc.rate_limited:
                    delay += self.rate_limit_cooldown_sec
                self._pause(delay)

        raise last_error

    def resolve(self, url: str, max_attempts: Optional[int] = None) -> ExtractionResult:
        attempts = max(int(max_attempts or self.max_attempts), 1)
        try:
            return self._run_primary(url, attempts)
        except ExtractionError as exc:
            if exc.kind == FailureKind.PRIVATE:
                raise
            primary_error = exc

        fallback_errors: List[str] = []
        for fallback in self.fallbacks:
            try:
                result = self._call(fallback, url)
                logger.info("[resolve] fallback %s succeeded", result.extractor or "extractor")
                return result
            except ExtractionError as exc:
                if exc.kind == FailureKind.PRIVATE:
                    raise
                fallback_errors.append(exc.message)
                logger.warning("[resolve] fallback failed kind=%s: %s", exc.kind.value, exc.message)

        if self.private_probe is not None and self.private_probe(url):
            raise ExtractionError(
                FailureKind.PRIVATE,
                "profile page reports a private account",
                cause=primary_error,
            )

        kind = primary_error.kind
        if kind not in (FailureKind.TRANSIENT, FailureKind.UNKNOWN):
            kind = FailureKind.UNKNOWN
        message = primary_error.message
        if fallback_errors:
            message = f"{message} | " + " | ".join(fallback_errors)
        raise ExtractionError(kind, message, cause=primary_error.cause or primary_error)


__all__ = ["ResolutionClient", "backoff_delay"]
