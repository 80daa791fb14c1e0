"""Resilient access to the upstream inference backend."""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Mapping, Optional, Protocol

import httpx

from .errors import CircuitOpenError, ClassifierFailure, GatewayTimeout

logger = logging.getLogger(__name__)


class CircuitState(str, Enum):
    CLOSED = "CLOSED"
    OPEN = "OPEN"
    HALF_OPEN = "HALF_OPEN"


@dataclass(frozen=True)
class CircuitStats:
    name: str
    state: CircuitState
    failure_count: int
    success_count: int
    total_failures: int
    total_successes: int
    total_rejected: int
    retry_after: float

    def as_dict(self) -> dict[str, object]:
        return {
            "name": self.name,
            "state": self.state.value,
            "failure_count": self.failure_count,
            "success_count": self.success_count,
            "total_failures": self.total_failures,
            "total_successes": self.total_successes,
            "total_rejected": self.total_rejected,
            "retry_after": round(self.retry_after, 3),
        }


class CircuitBreaker:
    """CLOSED/OPEN/HALF_OPEN state machine driven by an injected clock.

    ``failure_threshold`` consecutive failures open the circuit. After
    ``reset_timeout`` seconds the next request moves it to HALF_OPEN, where
    ``success_threshold`` consecutive successes close it again and any failure
    re-opens it.
    """

    def __init__(
        self,
        name: str = "inference",
        *,
        failure_threshold: int = 10,
        success_threshold: int = 3,
        reset_timeout: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.name = name
        self._failure_threshold = failure_threshold
        self._success_threshold = success_threshold
        self._reset_timeout = reset_timeout
        self._clock = clock

        self._state = CircuitState.CLOSED
        self._failure_count = 0
        self._success_count = 0
        self._opened_at: Optional[float] = None

        self._total_failures = 0
        self._total_successes = 0
        self._total_rejected = 0

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------
    @property
    def state(self) -> CircuitState:
        return self._state

    def allow_request(self) -> bool:
        """Return ``True`` if a call may be attempted right now."""

        if self._state is CircuitState.OPEN:
            if self.retry_after() > 0:
                self._total_rejected += 1
                return False
            self._transition(CircuitState.HALF_OPEN)
            self._success_count = 0
        return True

    def retry_after(self) -> float:
        if self._state is not CircuitState.OPEN or self._opened_at is None:
            return 0.0
        return max(0.0, self._reset_timeout - (self._clock() - self._opened_at))

    def record_success(self) -> None:
        self._total_successes += 1
        self._failure_count = 0
        if self._state is CircuitState.HALF_OPEN:
            self._success_count += 1
            if self._success_count >= self._success_threshold:
                self._transition(CircuitState.CLOSED)
                self._success_count = 0

    def record_failure(self) -> None:
        self._total_failures += 1
        self._failure_count += 1
        self._success_count = 0
        if self._state is CircuitState.HALF_OPEN:
            logger.warning("Circuit %s failed while HALF_OPEN", self.name)
            self._open()
        elif self._state is CircuitState.CLOSED and self._failure_count >= self._failure_threshold:
            logger.error(
                "Circuit %s reached %s consecutive failures", self.name, self._failure_count
            )
            self._open()

    def reset(self) -> None:
        logger.info("Circuit %s manually reset", self.name)
        self._transition(CircuitState.CLOSED)
        self._failure_count = 0
        self._success_count = 0
        self._opened_at = None

    def stats(self) -> CircuitStats:
        return CircuitStats(
            name=self.name,
            state=self._state,
            failure_count=self._failure_count,
            success_count=self._success_count,
            total_failures=self._total_failures,
            total_successes=self._total_successes,
            total_rejected=self._total_rejected,
            retry_after=self.retry_after(),
        )

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------
    def _open(self) -> None:
        self._transition(CircuitState.OPEN)
        self._opened_at = self._clock()

    def _transition(self, state: CircuitState) -> None:
        if state is not self._state:
            logger.info("Circuit %s: %s -> %s", self.name, self._state.value, state.value)
        self._state = state


@dataclass(frozen=True)
class RetryPolicy:
    """Exponential backoff applied inside a single gateway attempt."""

    max_retries: int = 2
    base_delay: float = 3.0
    max_delay: float = 30.0

    def delay_for(self, retry: int) -> float:
        return min(self.max_delay, self.base_delay * (2 ** retry))


@dataclass(frozen=True)
class InferenceRequest:
    """Request sent to the inference backend for one classifier layer."""

    layer: str
    content: str
    profile: Optional[Mapping[str, object]] = None
    reputation: Optional[Mapping[str, object]] = None

    def as_payload(self) -> Dict[str, object]:
        payload: Dict[str, object] = {"layer": self.layer, "content": self.content}
        if self.profile is not None:
            payload["profile"] = dict(self.profile)
        if self.reputation is not None:
            payload["reputation"] = dict(self.reputation)
        return payload


class InferenceBackend(Protocol):
    """Anything that turns an :class:`InferenceRequest` into a JSON mapping."""

    def __call__(self, request: InferenceRequest) -> Awaitable[Mapping[str, Any]]:
        ...


class HttpInferenceBackend:
    """httpx client posting classification requests to the inference service."""

    def __init__(
        self,
        base_url: str,
        *,
        path: str = "/v1/classify/{layer}",
        timeout: float = 180.0,
        api_key: Optional[str] = None,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        headers = {"Content-Type": "application/json"}
        if api_key:
            headers["Authorization"] = f"Bearer {api_key}"
        self._path = path
        self._client = client or httpx.AsyncClient(base_url=base_url, timeout=timeout, headers=headers)

    async def __call__(self, request: InferenceRequest) -> Mapping[str, Any]:
        response = await self._client.post(self._path.format(layer=request.layer), json=request.as_payload())
        response.raise_for_status()
        payload = response.json()
        if not isinstance(payload, Mapping):
            raise ClassifierFailure(
                f"{request.layer} backend returned {type(payload).__name__}, expected an object",
                layer=request.layer,
            )
        return payload

    async def aclose(self) -> None:
        await self._client.aclose()

    async def __aenter__(self) -> "HttpInferenceBackend":
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()


@dataclass(frozen=True)
class GatewayStats:
    total_requests: int
    successful_requests: int
    failed_requests: int
    total_retries: int
    circuit: CircuitStats

    def as_dict(self) -> dict[str, object]:
        return {
            "total_requests": self.total_requests,
            "successful_requests": self.successful_requests,
            "failed_requests": self.failed_requests,
            "total_retries": self.total_retries,
            "circuit": self.circuit.as_dict(),
        }


class ResilienceGateway:
    """Bounded-concurrency client with retry and circuit breaking.

    The breaker decides whether an attempt is made at all; retries with
    exponential backoff happen inside the attempt, and every failed try is
    reported to the breaker.
    """

    def __init__(
        self,
        backend: InferenceBackend,
        *,
        breaker: Optional[CircuitBreaker] = None,
        max_concurrency: int = 1,
        timeout: float = 180.0,
        retry: Optional[RetryPolicy] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._backend = backend
        self._breaker = breaker or CircuitBreaker()
        self._semaphore = asyncio.Semaphore(max_concurrency)
        self._timeout = timeout
        self._retry = retry or RetryPolicy()
        self._sleep = sleep

        self._total_requests = 0
        self._successful_requests = 0
        self._failed_requests = 0
        self._total_retries = 0

    @classmethod
    def from_settings(cls, settings, backend: Optional[InferenceBackend] = None) -> "ResilienceGateway":
        if backend is None:
            backend = HttpInferenceBackend(
                settings.inference_base_url,
                path=settings.inference_path,
                timeout=settings.request_timeout,
                api_key=settings.inference_api_key,
            )
        breaker = CircuitBreaker(
            failure_threshold=settings.circuit_failure_threshold,
            success_threshold=settings.circuit_success_threshold,
            reset_timeout=settings.circuit_reset_timeout,
        )
        retry = RetryPolicy(
            max_retries=settings.max_retries,
            base_delay=settings.retry_base_delay,
            max_delay=settings.retry_max_delay,
        )
        return cls(
            backend,
            breaker=breaker,
            max_concurrency=settings.pool_size,
            timeout=settings.request_timeout,
            retry=retry,
        )

    @property
    def breaker(self) -> CircuitBreaker:
        return self._breaker

    async def invoke(self, request: InferenceRequest) -> Mapping[str, Any]:
        """Call the backend, raising :class:`CircuitOpenError` or :class:`ClassifierFailure`."""

        self._total_requests += 1
        self._check_circuit()
        async with self._semaphore:
            # The circuit may have opened while this call waited for a slot.
            self._check_circuit()
            return await self._attempt(request)

    def stats(self) -> GatewayStats:
        return GatewayStats(
            total_requests=self._total_requests,
            successful_requests=self._successful_requests,
            failed_requests=self._failed_requests,
            total_retries=self._total_retries,
            circuit=self._breaker.stats(),
        )

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------
    def _check_circuit(self) -> None:
        if not self._breaker.allow_request():
            logger.warning("Circuit %s OPEN, rejecting request", self._breaker.name)
            raise CircuitOpenError(self._breaker.name, self._breaker.retry_after())

    async def _attempt(self, request: InferenceRequest) -> Mapping[str, Any]:
        retry = 0
        while True:
            try:
                response = await asyncio.wait_for(self._backend(request), timeout=self._timeout)
            except asyncio.CancelledError:
                # A caller's shorter deadline cut the call off; the backend was still too slow.
                self._breaker.record_failure()
                self._failed_requests += 1
                logger.warning("%s request cancelled before the backend answered", request.layer)
                raise
            except asyncio.TimeoutError as exc:
                failure: ClassifierFailure = GatewayTimeout(
                    f"{request.layer} request timed out after {self._timeout}s", layer=request.layer
                )
                cause: BaseException = exc
            except (httpx.HTTPError, ClassifierFailure, OSError, ValueError) as exc:
                failure = ClassifierFailure(f"{request.layer} request failed: {exc}", layer=request.layer)
                cause = exc
            else:
                self._breaker.record_success()
                self._successful_requests += 1
                return response

            self._breaker.record_failure()
            if retry >= self._retry.max_retries or self._breaker.state is CircuitState.OPEN:
                self._failed_requests += 1
                logger.error("%s (after %s retries)", failure, retry)
                raise failure from cause

            delay = self._retry.delay_for(retry)
            retry += 1
            self._total_retries += 1
            logger.warning(
                "%s, retrying in %.1fs (attempt %s/%s)", failure, delay, retry, self._retry.max_retries
            )
            await self._sleep(delay)


__all__ = [
    "CircuitBreaker",
    "CircuitState",
    "CircuitStats",
    "GatewayStats",
    "HttpInferenceBackend",
    "InferenceBackend",
    "InferenceRequest",
    "ResilienceGateway",
    "RetryPolicy",
]
