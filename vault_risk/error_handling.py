"""
Error taxonomy and the single retrying call path used for every external read
"""
import asyncio
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Dict, Generic, List, Optional, TypeVar

import httpx
import structlog
from tenacity import (
    AsyncRetrying, RetryCallState, retry_if_exception_type,
    stop_after_attempt, wait_exponential
)

logger = structlog.get_logger()

T = TypeVar("T")


# Exception classes for different error scenarios
class ExternalAPIError(Exception):
    """Raised when an external API or RPC call fails"""
    pass


class DecodeError(Exception):
    """Raised when a response has an unexpected shape or is missing a field"""
    pass


class DatabaseError(Exception):
    """Raised when database operations fail"""
    pass


class ConfigurationError(Exception):
    """Raised when configuration is invalid"""
    pass


# Failures worth another attempt; decode failures never are
TRANSIENT_ERRORS = (ExternalAPIError, httpx.HTTPError, asyncio.TimeoutError)


class ErrorCollector:
    """Collects and analyzes errors for better observability"""

    def __init__(self, max_errors: int = 1000):
        self.errors: List[Dict] = []
        self.error_counts: Dict[str, int] = {}
        self.max_errors = max_errors

    def record_error(self, error: Exception, context: Optional[Dict[str, Any]] = None):
        """Record an error with context"""
        error_type = type(error).__name__
        self.errors.append({
            "timestamp": datetime.now(timezone.utc),
            "type": error_type,
            "message": str(error),
            "context": context or {},
        })

        if len(self.errors) > self.max_errors:
            self.errors = self.errors[-self.max_errors:]

        self.error_counts[error_type] = self.error_counts.get(error_type, 0) + 1

    def errors_by_type(self) -> Dict[str, int]:
        return dict(self.error_counts)

    def get_error_summary(self, hours: int = 24) -> Dict:
        """Get error summary for the last N hours"""
        cutoff_time = datetime.now(timezone.utc) - timedelta(hours=hours)
        recent_errors = [error for error in self.errors if error["timestamp"] > cutoff_time]

        error_types: Dict[str, Dict] = {}
        for error in recent_errors:
            bucket = error_types.setdefault(error["type"], {"count": 0, "examples": []})
            bucket["count"] += 1
            if len(bucket["examples"]) < 3:
                bucket["examples"].append({
                    "message": error["message"],
                    "context": error["context"],
                })

        return {
            "time_window_hours": hours,
            "total_errors": len(recent_errors),
            "error_types": error_types,
        }


@dataclass
class CallOutcome(Generic[T]):
    """What a resilient call produced. On failure ``value`` holds the fallback."""

    value: Optional[T]
    ok: bool
    attempts: int
    error: Optional[str] = None


class ResilientCaller:
    """Runs external calls with a per-attempt timeout, bounded retries and a fallback.

    Exhaustion never raises: the caller gets a ``CallOutcome`` with ``ok=False``
    and decides how to degrade.
    """

    def __init__(
        self,
        timeout: float = 10.0,
        max_attempts: int = 3,
        base_delay: float = 0.5,
        max_delay: float = 5.0,
        error_collector: Optional[ErrorCollector] = None,
        metrics=None,
    ):
        self.timeout = timeout
        self.max_attempts = max(1, max_attempts)
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.error_collector = error_collector or ErrorCollector()
        self.metrics = metrics

    @classmethod
    def from_settings(cls, settings, error_collector=None, metrics=None) -> "ResilientCaller":
        return cls(
            timeout=settings.EXTERNAL_CALL_TIMEOUT_SECONDS,
            max_attempts=settings.EXTERNAL_CALL_MAX_ATTEMPTS,
            base_delay=settings.RETRY_BASE_DELAY_SECONDS,
            max_delay=settings.RETRY_MAX_DELAY_SECONDS,
            error_collector=error_collector,
            metrics=metrics,
        )

    @staticmethod
    def _log_retry(name: str) -> Callable[[RetryCallState], None]:
        def before_sleep(retry_state: RetryCallState):
            error = retry_state.outcome.exception() if retry_state.outcome else None
            logger.warning(
                "Retrying external call",
                call=name,
                attempt=retry_state.attempt_number,
                error=str(error),
            )
        return before_sleep

    async def call(
        self,
        name: str,
        operation: Callable[[], Awaitable[T]],
        fallback: Optional[T] = None,
        timeout: Optional[float] = None,
    ) -> CallOutcome[T]:
        attempts = 0
        per_attempt_timeout = timeout if timeout is not None else self.timeout

        try:
            async for attempt in AsyncRetrying(
                stop=stop_after_attempt(self.max_attempts),
                wait=wait_exponential(multiplier=self.base_delay, max=self.max_delay),
                retry=retry_if_exception_type(TRANSIENT_ERRORS),
                before_sleep=self._log_retry(name),
                reraise=True,
            ):
                with attempt:
                    attempts = attempt.retry_state.attempt_number
                    value = await asyncio.wait_for(operation(), timeout=per_attempt_timeout)
        except DecodeError as e:
            logger.warning("External call returned undecodable data", call=name, error=str(e))
            return self._failed(name, e, fallback, attempts)
        except Exception as e:
            logger.error("External call failed", call=name, attempts=attempts, error=str(e))
            return self._failed(name, e, fallback, attempts)

        if self.metrics:
            self.metrics.increment("external_calls_ok", tags={"call": name})
        return CallOutcome(value=value, ok=True, attempts=attempts)

    def _failed(self, name: str, error: Exception, fallback, attempts: int) -> CallOutcome:
        self.error_collector.record_error(error, {"call": name, "attempts": attempts})
        if self.metrics:
            self.metrics.increment("external_calls_failed", tags={"call": name})
        message = str(error) or type(error).__name__
        return CallOutcome(value=fallback, ok=False, attempts=attempts, error=message)
