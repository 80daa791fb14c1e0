from __future__ import annotations

import asyncio
import json
import sys
from pathlib import Path

import httpx
import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from guardcore.errors import CircuitOpenError, ClassifierFailure, GatewayTimeout
from guardcore.gateway import (
    CircuitBreaker,
    CircuitState,
    HttpInferenceBackend,
    InferenceRequest,
    ResilienceGateway,
    RetryPolicy,
)
from guardcore.fusion import ANALYSIS_FAILED, ThreatAggregator
from guardcore.signals import FastClassification, FastResult, GatewayClassifier, gateway_providers


class FakeClock:
    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class ScriptedBackend:
    """Backend that replays a script of payloads and exceptions."""

    def __init__(self, *outcomes):
        self.outcomes = list(outcomes)
        self.calls = 0

    async def __call__(self, request: InferenceRequest):
        self.calls += 1
        outcome = self.outcomes.pop(0) if len(self.outcomes) > 1 else self.outcomes[0]
        if isinstance(outcome, BaseException):
            raise outcome
        return outcome


class SleepRecorder:
    def __init__(self) -> None:
        self.delays = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


def _request(layer: str = "fast") -> InferenceRequest:
    return InferenceRequest(layer=layer, content="hello")


def test_breaker_full_cycle() -> None:
    clock = FakeClock()
    breaker = CircuitBreaker(failure_threshold=10, success_threshold=3, reset_timeout=60, clock=clock)

    for _ in range(9):
        breaker.record_failure()
    assert breaker.state is CircuitState.CLOSED
    breaker.record_failure()
    assert breaker.state is CircuitState.OPEN

    clock.advance(30)
    assert not breaker.allow_request()
    assert breaker.retry_after() == pytest.approx(30)

    clock.advance(30)
    assert breaker.allow_request()
    assert breaker.state is CircuitState.HALF_OPEN

    breaker.record_success()
    breaker.record_success()
    assert breaker.state is CircuitState.HALF_OPEN
    breaker.record_success()
    assert breaker.state is CircuitState.CLOSED
    assert breaker.stats().total_rejected == 1


def test_breaker_half_open_failure_reopens() -> None:
    clock = FakeClock()
    breaker = CircuitBreaker(failure_threshold=2, reset_timeout=10, clock=clock)
    breaker.record_failure()
    breaker.record_failure()
    clock.advance(10)
    assert breaker.allow_request()
    breaker.record_success()
    breaker.record_failure()
    assert breaker.state is CircuitState.OPEN
    assert not breaker.allow_request()


def test_success_resets_consecutive_failures() -> None:
    breaker = CircuitBreaker(failure_threshold=3, clock=FakeClock())
    breaker.record_failure()
    breaker.record_failure()
    breaker.record_success()
    breaker.record_failure()
    breaker.record_failure()
    assert breaker.state is CircuitState.CLOSED


def test_retry_policy_backoff_is_capped() -> None:
    policy = RetryPolicy(max_retries=5, base_delay=3.0, max_delay=20.0)
    assert [policy.delay_for(n) for n in range(4)] == [3.0, 6.0, 12.0, 20.0]


def test_gateway_retries_then_succeeds() -> None:
    backend = ScriptedBackend(httpx.ConnectError("refused"), httpx.ConnectError("refused"), {"ok": True})
    sleep = SleepRecorder()
    gateway = ResilienceGateway(backend, breaker=CircuitBreaker(clock=FakeClock()), sleep=sleep)

    result = asyncio.run(gateway.invoke(_request()))

    assert result == {"ok": True}
    assert backend.calls == 3
    assert sleep.delays == [3.0, 6.0]
    stats = gateway.stats()
    assert stats.total_retries == 2
    assert stats.successful_requests == 1
    assert stats.circuit.total_failures == 2
    assert stats.circuit.failure_count == 0


def test_gateway_raises_classifier_failure_after_retries() -> None:
    backend = ScriptedBackend(ClassifierFailure("bad payload"))
    gateway = ResilienceGateway(backend, breaker=CircuitBreaker(clock=FakeClock()), sleep=SleepRecorder())

    with pytest.raises(ClassifierFailure) as excinfo:
        asyncio.run(gateway.invoke(_request("intent")))

    assert excinfo.value.layer == "intent"
    assert backend.calls == 3
    assert gateway.stats().failed_requests == 1


def test_gateway_timeout_is_typed() -> None:
    class SlowBackend:
        async def __call__(self, request):
            await asyncio.sleep(1)
            return {}

    gateway = ResilienceGateway(
        SlowBackend(),
        breaker=CircuitBreaker(clock=FakeClock()),
        timeout=0.01,
        retry=RetryPolicy(max_retries=0),
    )

    with pytest.raises(GatewayTimeout) as excinfo:
        asyncio.run(gateway.invoke(_request()))

    assert isinstance(excinfo.value, TimeoutError)
    assert isinstance(excinfo.value, ClassifierFailure)
    assert gateway.breaker.stats().total_failures == 1


def test_open_circuit_fails_fast_without_backend_call() -> None:
    backend = ScriptedBackend(httpx.ConnectError("down"))
    clock = FakeClock()
    gateway = ResilienceGateway(
        backend,
        breaker=CircuitBreaker(failure_threshold=2, clock=clock),
        retry=RetryPolicy(max_retries=5),
        sleep=SleepRecorder(),
    )

    with pytest.raises(ClassifierFailure):
        asyncio.run(gateway.invoke(_request()))
    # Retrying stops as soon as the circuit opens.
    assert backend.calls == 2
    assert gateway.breaker.state is CircuitState.OPEN

    with pytest.raises(CircuitOpenError):
        asyncio.run(gateway.invoke(_request()))
    assert backend.calls == 2

    clock.advance(60)
    backend.outcomes = [{"ok": True}]
    assert asyncio.run(gateway.invoke(_request())) == {"ok": True}
    assert gateway.breaker.state is CircuitState.HALF_OPEN


def test_http_backend_posts_layer_payload() -> None:
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["path"] = request.url.path
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json={"classification": "spam", "confidence": 0.7})

    client = httpx.AsyncClient(base_url="http://inference.test", transport=httpx.MockTransport(handler))
    backend = HttpInferenceBackend("http://inference.test", client=client)

    async def run():
        async with backend:
            return await backend(InferenceRequest(layer="fast", content="buy now", reputation={"score": 40}))

    payload = asyncio.run(run())

    assert payload["classification"] == "spam"
    assert seen["path"] == "/v1/classify/fast"
    assert seen["body"] == {"layer": "fast", "content": "buy now", "reputation": {"score": 40}}


def test_http_error_surfaces_as_classifier_failure() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(503, json={"error": "overloaded"})

    client = httpx.AsyncClient(base_url="http://inference.test", transport=httpx.MockTransport(handler))
    backend = HttpInferenceBackend("http://inference.test", client=client)
    gateway = ResilienceGateway(
        backend, breaker=CircuitBreaker(clock=FakeClock()), retry=RetryPolicy(max_retries=1), sleep=SleepRecorder()
    )

    with pytest.raises(ClassifierFailure):
        asyncio.run(gateway.invoke(_request()))
    assert gateway.stats().total_retries == 1


def test_gateway_classifier_parses_payload() -> None:
    backend = ScriptedBackend({"classification": "SCAM", "confidence": 0.91, "reason": "link"})
    gateway = ResilienceGateway(backend, breaker=CircuitBreaker(clock=FakeClock()))
    classifier = GatewayClassifier(gateway, "fast", FastResult)

    result = asyncio.run(classifier.analyze("free nitro"))

    assert result.classification is FastClassification.SCAM
    assert result.confidence == pytest.approx(0.91)


def test_unknown_label_becomes_uncertain() -> None:
    assert FastResult.from_payload({"classification": "weird", "confidence": 0.9}).uncertain
    assert FastResult.from_payload({"classification": "spam"}).uncertain
    assert FastResult.from_payload({"classification": "clean", "confidence": 85}).confidence == pytest.approx(0.85)


def test_layer_deadline_counts_against_breaker() -> None:
    class HangingBackend:
        async def __call__(self, request: InferenceRequest):
            await asyncio.Event().wait()

    breaker = CircuitBreaker(failure_threshold=1)
    gateway = ResilienceGateway(HangingBackend(), breaker=breaker, timeout=180)
    aggregator = ThreatAggregator(gateway_providers(gateway), layer_timeout=0.05)

    result = asyncio.run(aggregator.aggregate("hello"))

    assert result.action_reason == ANALYSIS_FAILED
    assert breaker.state is CircuitState.OPEN
    assert gateway.stats().failed_requests == 1
