"""Exponential backoff around async calls, with an optional dead-letter fallback."""

from __future__ import annotations

import asyncio
import random as _random
import re
from dataclasses import dataclass, field, replace
from typing import Any, Awaitable, Callable, Generic, TypeVar

from sentinel_bridge.context import PipelineContext
from sentinel_bridge.dead_letter import DeadLetterSink
from sentinel_bridge.events import EventEmitter
from sentinel_bridge.models import ProcessingError

T = TypeVar("T")

RETRY_ATTEMPT = "retry-attempt"
RETRY_EXHAUSTED = "retry-exhausted"
DEAD_LETTERED = "dead-lettered"

JITTER_RATIO = 0.25

_COMMON_TRANSIENT = ("ECONNRESET", "ENOTFOUND", "ETIMEDOUT", "500", "502", "503", "504")


@dataclass(frozen=True, slots=True)
class RetryPolicy:
    """Immutable retry parameters; an empty matcher set retries every error."""

    max_retries: int = 3
    initial_backoff_ms: int = 1000
    max_backoff_ms: int = 30000
    backoff_multiplier: float = 2.0
    enable_jitter: bool = True
    retryable_errors: tuple[str, ...] = field(default_factory=tuple)

    def __post_init__(self) -> None:
        if self.max_retries < 0:
            raise ValueError("max_retries must not be negative")
        if self.initial_backoff_ms < 0 or self.max_backoff_ms < 0:
            raise ValueError("backoff durations must not be negative")
        if self.backoff_multiplier < 1:
            raise ValueError("backoff_multiplier must be at least 1")

    @classmethod
    def default(cls) -> RetryPolicy:
        return cls(
            retryable_errors=(
                "ECONNREFUSED",
                "NETWORK_ERROR",
                "TIMEOUT",
                "SERVICE_UNAVAILABLE",
                "429",
                *_COMMON_TRANSIENT,
            )
        )

    @classmethod
    def for_object_store(cls) -> RetryPolicy:
        return cls(
            max_retries=5,
            initial_backoff_ms=500,
            max_backoff_ms=20000,
            retryable_errors=(
                "ThrottlingException",
                "RequestTimeout",
                "ServiceUnavailable",
                "InternalError",
                "SlowDown",
                "RequestTimeTooSkewed",
                "NETWORK_ERROR",
                *_COMMON_TRANSIENT,
            ),
        )

    @classmethod
    def for_ingestion(cls, **overrides: Any) -> RetryPolicy:
        policy = cls(
            max_retries=4,
            initial_backoff_ms=800,
            max_backoff_ms=25000,
            backoff_multiplier=2.5,
            retryable_errors=(
                "TooManyRequests",
                "InternalServerError",
                "BadGateway",
                "ServiceUnavailable",
                "GatewayTimeout",
                "NETWORK_ERROR",
                "TIMEOUT",
                "RATE_LIMITED",
                "TEMPORARY_FAILURE",
                "429",
                *_COMMON_TRANSIENT,
            ),
        )
        return replace(policy, **overrides) if overrides else policy

    def base_delay_ms(self, attempt: int) -> float:
        """Un-jittered delay before the retry that follows 0-based ``attempt``."""
        return min(float(self.max_backoff_ms), self.initial_backoff_ms * self.backoff_multiplier**attempt)


def error_code(exc: BaseException) -> str:
    code = getattr(exc, "code", None)
    return str(code) if code not in (None, "") else type(exc).__name__


def matches(pattern: str, exc: BaseException) -> bool:
    """One retryable-error matcher: ``/regex/``, exact code, or message substring."""
    if not pattern or not pattern.strip():
        return False
    code = error_code(exc)
    message = str(exc)
    if len(pattern) > 1 and pattern.startswith("/") and pattern.endswith("/"):
        regex = re.compile(pattern[1:-1], re.IGNORECASE)
        return bool(regex.search(code) or regex.search(message))
    needle = pattern.lower()
    if code.lower() == needle:
        return True
    return len(pattern.strip()) > 1 and needle in message.lower()


@dataclass(slots=True)
class RetryOutcome(Generic[T]):
    value: T | None
    attempts: int
    dead_lettered: bool = False
    dead_letter_id: str | None = None
    error: BaseException | None = None


class RetryExhausted(Exception):
    """Carries the attempt count alongside the final error."""

    def __init__(self, error: BaseException, attempts: int) -> None:
        super().__init__(str(error))
        self.error = error
        self.attempts = attempts


class RetryHandler:
    """
    Runs an async operation under a RetryPolicy.

    Each invocation walks ``attempt 0 .. max_retries``: a non-retryable error
    aborts at once, a retryable one waits (``asyncio.sleep``) and tries again,
    and running out of attempts is reported as exhaustion.
    """

    def __init__(
        self,
        policy: RetryPolicy | None = None,
        *,
        dead_letter: DeadLetterSink | None = None,
        context: PipelineContext | None = None,
        operation: str = "default",
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        random: Callable[[], float] = _random.random,
    ) -> None:
        self.policy = policy or RetryPolicy.default()
        self.dead_letter = dead_letter
        self.context = context or PipelineContext()
        self.operation = operation
        self.events = EventEmitter(RETRY_ATTEMPT, RETRY_EXHAUSTED, DEAD_LETTERED)
        self._logger = self.context.bind("retry", operation=operation)
        self._sleep = sleep
        self._random = random

    def subscribe(self, event: str, handler: Callable[..., Any]) -> Callable[[], None]:
        return self.events.subscribe(event, handler)

    def is_retryable(self, exc: BaseException) -> bool:
        if not self.policy.retryable_errors:
            return True
        return any(matches(pattern, exc) for pattern in self.policy.retryable_errors)

    def backoff_ms(self, attempt: int) -> float:
        delay = self.policy.base_delay_ms(attempt)
        if self.policy.enable_jitter:
            delay += (self._random() - 0.5) * 2 * delay * JITTER_RATIO
        return max(0.0, min(float(self.policy.max_backoff_ms), delay))

    async def execute(self, operation: Callable[[], Awaitable[T]], *, description: str | None = None) -> T:
        """Return the operation's value or raise its last error."""
        try:
            value, _ = await self._run(operation, description)
        except RetryExhausted as exhausted:
            raise exhausted.error from None
        return value

    async def execute_with_dead_letter(
        self,
        operation: Callable[[], Awaitable[T]],
        item: Any,
        *,
        description: str | None = None,
    ) -> RetryOutcome[T]:
        """Like ``execute`` but hands the item to the dead-letter sink on failure.

        Without a sink the final error propagates.
        """
        try:
            value, attempts = await self._run(operation, description)
        except RetryExhausted as exhausted:
            if self.dead_letter is None:
                raise exhausted.error from None
            error = exhausted.error
            item_id = await self.dead_letter.send(
                item,
                ProcessingError.from_exception(error, operation=self.operation),
                context=description,
                retry_count=exhausted.attempts - 1,
            )
            self.context.metrics.dead_lettered.inc()
            self._logger.error(
                "retry.dead_lettered",
                description=description,
                dead_letter_id=item_id,
                attempts=exhausted.attempts,
                error=str(error),
            )
            await self.events.emit(DEAD_LETTERED, item, error)
            return RetryOutcome(
                value=None,
                attempts=exhausted.attempts,
                dead_lettered=True,
                dead_letter_id=item_id,
                error=error,
            )
        return RetryOutcome(value=value, attempts=attempts)

    async def _run(self, operation: Callable[[], Awaitable[T]], description: str | None) -> tuple[T, int]:
        max_attempts = self.policy.max_retries + 1
        for attempt in range(max_attempts):
            try:
                return await operation(), attempt + 1
            except Exception as exc:
                if not self.is_retryable(exc):
                    self._logger.warning(
                        "retry.not_retryable",
                        description=description,
                        code=error_code(exc),
                        error=str(exc),
                    )
                    raise RetryExhausted(exc, attempt + 1) from exc

                if attempt + 1 >= max_attempts:
                    self._logger.error(
                        "retry.exhausted",
                        description=description,
                        attempts=max_attempts,
                        error=str(exc),
                    )
                    await self.events.emit(RETRY_EXHAUSTED, exc, max_attempts)
                    raise RetryExhausted(exc, max_attempts) from exc

                delay_ms = self.backoff_ms(attempt)
                self.context.metrics.retry_attempts.labels(operation=self.operation).inc()
                self._logger.warning(
                    "retry.attempt",
                    description=description,
                    attempt=attempt + 1,
                    delay_ms=round(delay_ms, 1),
                    code=error_code(exc),
                    error=str(exc),
                )
                await self.events.emit(RETRY_ATTEMPT, attempt + 1, exc, delay_ms)
                await self._sleep(delay_ms / 1000)
        raise AssertionError("unreachable")  # pragma: no cover
