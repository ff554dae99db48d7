"""
Per-dependency circuit breaking with explicit fallbacks.

Outbound calls never raise across this boundary. A gateway operation
returns a tagged outcome (Success, RemoteError or Unavailable); the
breaker updates its counters from that outcome and either returns the
successful value or hands the failure to the call-site fallback, which
decides whether to degrade (e.g. return stale data) or raise a typed
domain error.

Breaker state is shared by every caller of a dependency and guarded by a
lock; no state is tied to an individual job.
"""

from __future__ import annotations

import logging
import threading
import time
from enum import Enum
from typing import Any, Awaitable, Callable, Literal, TypeVar, Union

import httpx
from pydantic import BaseModel, ConfigDict
from tenacity import (
    AsyncRetrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from signflow.app.core.config import BreakerSettings, Settings

logger = logging.getLogger("signflow.resilience")

T = TypeVar("T")


# ----------------------------------------------------------------------
# Call outcomes
# ----------------------------------------------------------------------

class Success(BaseModel):
    kind: Literal["success"] = "success"
    value: Any = None

    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)


class RemoteError(BaseModel):
    """The dependency answered, but not with a usable result."""

    kind: Literal["remote_error"] = "remote_error"
    code: int
    detail: str = ""

    model_config = ConfigDict(frozen=True)

    @property
    def is_fault(self) -> bool:
        """Server-side faults count against the breaker; client errors do not."""
        return self.code >= 500


class Unavailable(BaseModel):
    """The dependency could not be reached or the breaker refused the call."""

    kind: Literal["unavailable"] = "unavailable"
    reason: str

    model_config = ConfigDict(frozen=True)


CallOutcome = Union[Success, RemoteError, Unavailable]
Failure = Union[RemoteError, Unavailable]

CIRCUIT_OPEN = "circuit_open"


class Dependency(str, Enum):
    SIGNING_API = "signing_api"
    HASH_SDK = "hash_sdk"
    ESEAL = "eseal"
    LTV = "ltv"
    PROVIDER_TOKEN = "provider_token"


class CircuitState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


# ----------------------------------------------------------------------
# Circuit breaker
# ----------------------------------------------------------------------

class CircuitBreaker:
    """
    CLOSED  - calls pass, consecutive failures are counted
    OPEN    - calls go straight to the fallback until the cool-down elapses
    HALF_OPEN - up to ``half_open_max_calls`` trial calls; success closes,
                failure re-opens
    """

    def __init__(
        self,
        name: str,
        *,
        failure_threshold: int = 5,
        cooldown_seconds: float = 30.0,
        half_open_max_calls: int = 1,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.name = name
        self.failure_threshold = failure_threshold
        self.cooldown_seconds = cooldown_seconds
        self.half_open_max_calls = half_open_max_calls
        self._clock = clock

        self._state = CircuitState.CLOSED
        self._failures = 0
        self._opened_at = 0.0
        self._trial_calls = 0
        self._lock = threading.Lock()

    @classmethod
    def from_settings(
        cls,
        name: str,
        settings: BreakerSettings,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> "CircuitBreaker":
        return cls(
            name,
            failure_threshold=settings.failure_threshold,
            cooldown_seconds=settings.cooldown_seconds,
            half_open_max_calls=settings.half_open_max_calls,
            clock=clock,
        )

    @property
    def state(self) -> CircuitState:
        with self._lock:
            self._refresh()
            return self._state

    @property
    def failures(self) -> int:
        with self._lock:
            return self._failures

    # ------------------------------------------------------------------
    # State bookkeeping
    # ------------------------------------------------------------------

    def _refresh(self) -> None:
        if (
            self._state is CircuitState.OPEN
            and self._clock() - self._opened_at >= self.cooldown_seconds
        ):
            self._state = CircuitState.HALF_OPEN
            self._trial_calls = 0

    def _try_acquire(self) -> bool:
        with self._lock:
            self._refresh()
            if self._state is CircuitState.CLOSED:
                return True
            if self._state is CircuitState.HALF_OPEN:
                if self._trial_calls < self.half_open_max_calls:
                    self._trial_calls += 1
                    return True
            return False

    def _open(self) -> None:
        self._state = CircuitState.OPEN
        self._opened_at = self._clock()
        self._trial_calls = 0

    def record_success(self) -> None:
        with self._lock:
            if self._state is not CircuitState.CLOSED:
                logger.info("circuit_closed", extra={"dependency": self.name})
            self._state = CircuitState.CLOSED
            self._failures = 0
            self._trial_calls = 0

    def record_failure(self) -> None:
        with self._lock:
            self._failures += 1
            if self._state is CircuitState.HALF_OPEN:
                self._open()
            elif (
                self._state is CircuitState.CLOSED
                and self._failures >= self.failure_threshold
            ):
                self._open()
            else:
                return

        logger.warning(
            "circuit_opened",
            extra={"dependency": self.name, "failures": self._failures},
        )

    def force_open(self) -> None:
        """Operational override: stop calling the dependency immediately."""
        with self._lock:
            self._open()

    def reset(self) -> None:
        with self._lock:
            self._state = CircuitState.CLOSED
            self._failures = 0
            self._opened_at = 0.0
            self._trial_calls = 0

    # ------------------------------------------------------------------
    # Call execution
    # ------------------------------------------------------------------

    async def call(
        self,
        operation: Callable[[], Awaitable[CallOutcome]],
        *,
        fallback: Callable[[Failure], T],
    ) -> T:
        """
        Run ``operation`` under the breaker.

        Returns the success value, or whatever ``fallback`` returns for a
        refused or failed call. ``fallback`` may raise.
        """
        if not self._try_acquire():
            logger.warning(
                "circuit_short_circuit",
                extra={"dependency": self.name},
            )
            return fallback(Unavailable(reason=CIRCUIT_OPEN))

        try:
            outcome = await operation()
        except Exception:
            self.record_failure()
            raise

        if isinstance(outcome, Success):
            self.record_success()
            return outcome.value

        if isinstance(outcome, RemoteError) and not outcome.is_fault:
            # Reachable and answering; a rejected request is not an outage.
            self.record_success()
        else:
            self.record_failure()

        logger.warning(
            "dependency_call_failed",
            extra={
                "dependency": self.name,
                "outcome": outcome.kind,
                "code": getattr(outcome, "code", None),
                "reason": getattr(outcome, "reason", None),
            },
        )
        return fallback(outcome)


class BreakerRegistry:
    """Holds the independently configured breaker of each dependency."""

    def __init__(self, breakers: dict[Dependency, CircuitBreaker]) -> None:
        missing = set(Dependency) - set(breakers)
        if missing:
            raise ValueError(f"Missing breakers: {sorted(d.value for d in missing)}")
        self._breakers = dict(breakers)

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> "BreakerRegistry":
        tuning = {
            Dependency.SIGNING_API: settings.breaker_signing_api,
            Dependency.HASH_SDK: settings.breaker_hash_sdk,
            Dependency.ESEAL: settings.breaker_eseal,
            Dependency.LTV: settings.breaker_ltv,
            Dependency.PROVIDER_TOKEN: settings.breaker_provider_token,
        }
        return cls(
            {
                dep: CircuitBreaker.from_settings(dep.value, cfg, clock=clock)
                for dep, cfg in tuning.items()
            }
        )

    def get(self, dependency: Dependency) -> CircuitBreaker:
        return self._breakers[dependency]

    def snapshot(self) -> dict[str, str]:
        return {dep.value: b.state.value for dep, b in self._breakers.items()}


# ----------------------------------------------------------------------
# HTTP transport helper
# ----------------------------------------------------------------------

_CONNECT_ERRORS = (httpx.ConnectError, httpx.ConnectTimeout)


async def send_request(
    client: httpx.AsyncClient,
    method: str,
    url: str,
    *,
    attempts: int = 2,
    **kwargs,
) -> CallOutcome:
    """
    Issue one HTTP request and classify the result.

    Only connection-establishment failures are retried: the request never
    reached the remote, so a retry cannot duplicate side effects.
    """
    try:
        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(attempts),
            wait=wait_exponential(multiplier=0.2, max=2),
            retry=retry_if_exception_type(_CONNECT_ERRORS),
            reraise=True,
        ):
            with attempt:
                response = await client.request(method, url, **kwargs)
    except httpx.TimeoutException:
        return Unavailable(reason="timeout")
    except httpx.TransportError as exc:
        return Unavailable(reason=type(exc).__name__)

    if response.is_success:
        return Success(value=response)

    return RemoteError(
        code=response.status_code,
        detail=f"HTTP {response.status_code}",
    )
