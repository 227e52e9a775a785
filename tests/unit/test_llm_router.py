"""
Unit Tests for the resilience router.
"""

import pytest

from conftest import ScriptedBackend
from core.exceptions import AuthOrConfigError, ErrorCode, FallbackExhaustedError, TransientBackendError
from research_agents.circuit_breaker import CircuitState


def transient(name="a"):
    return TransientBackendError(name, "HTTP 503", status_code=503)


class TestProviderOrder:
    """Order resolution."""

    def test_preferred_first_then_registration_order(self, make_router):
        router = make_router(ScriptedBackend("a"), ScriptedBackend("b"), ScriptedBackend("c"), preferred_backend="b")
        assert router.resolve_order() == ["b", "a", "c"]

    def test_override_order_is_deduplicated(self, make_router):
        router = make_router(ScriptedBackend("a"), ScriptedBackend("b"))
        assert router.resolve_order(provider_order=["b", "a", "b"]) == ["b", "a"]

    def test_configured_order_used_without_override(self, make_router):
        router = make_router(ScriptedBackend("a"), ScriptedBackend("b"), ScriptedBackend("c"), provider_order=["c", "a"])
        assert router.resolve_order() == ["c", "a"]
        assert router.resolve_order(provider_order=["b"]) == ["b"]

    def test_per_call_preferred_goes_before_configured_order(self, make_router):
        router = make_router(ScriptedBackend("a"), ScriptedBackend("b"), ScriptedBackend("c"), provider_order=["a", "b"])
        assert router.resolve_order(preferred="c") == ["c", "a", "b"]
        assert router.resolve_order(preferred="b") == ["b", "a"]

    @pytest.mark.asyncio
    async def test_generate_text_honours_provider_with_configured_order(self, make_router):
        c = ScriptedBackend("c", ["from c"])
        router = make_router(ScriptedBackend("a", ["from a"]), c, provider_order=["a"])

        response = await router.generate_text("x", provider="c")
        assert response.provider == "c"
        assert c.prompts == ["x"]

    def test_disabled_and_unconfigured_are_skipped(self, make_router):
        router = make_router(ScriptedBackend("a"), ScriptedBackend("b", available=False), ScriptedBackend("c"))
        assert router.resolve_order(enabled={"a": False}) == ["c"]
        assert router.get_available_backends() == ["a", "c"]
        assert router.is_backend_available("a")
        assert not router.is_backend_available("b")
        assert not router.is_backend_available("missing")


class TestFallback:
    """Fallback across backends."""

    @pytest.mark.asyncio
    async def test_preferred_backend_answers(self, make_router):
        a = ScriptedBackend("a", ["hello from a"])
        router = make_router(a, ScriptedBackend("b"))

        response = await router.generate_text("hi")
        assert response.provider == "a"
        assert response.text == "hello from a"

    @pytest.mark.asyncio
    async def test_a_fails_b_answers(self, make_router, sleep):
        """A exhausts its retries, B answers, A records exactly one breaker failure."""
        a = ScriptedBackend("a", [transient()])
        b = ScriptedBackend("b", ["from b"])
        router = make_router(a, b)

        response = await router.generate_text("question", provider_order=["a", "b"])

        assert response.provider == "b"
        assert response.text == "from b"
        assert len(a.prompts) == 3
        assert sleep.delays == [1.0, 2.0]
        assert router.breakers.get("a").failure_count == 1
        assert router.breakers.get("b").failure_count == 0

    @pytest.mark.asyncio
    async def test_system_prompt_is_prefixed(self, make_router):
        a = ScriptedBackend("a", ["ok"])
        router = make_router(a)

        await router.generate_text("the task", system_prompt="You are terse.")
        assert a.prompts == ["You are terse.\n\nthe task"]

    @pytest.mark.asyncio
    async def test_auth_error_not_retried(self, make_router, sleep):
        a = ScriptedBackend("a", [AuthOrConfigError("a", "unauthorized (HTTP 401)")])
        b = ScriptedBackend("b", ["ok"])
        router = make_router(a, b)

        response = await router.generate_text("x")
        assert response.provider == "b"
        assert len(a.prompts) == 1
        assert sleep.delays == []
        assert router.breakers.get("a").failure_count == 1

    @pytest.mark.asyncio
    async def test_all_fail_lists_each_reason(self, make_router):
        router = make_router(ScriptedBackend("a", [transient("a")]), ScriptedBackend("b", [transient("b")]))

        with pytest.raises(FallbackExhaustedError) as exc_info:
            await router.generate_text("x")

        assert exc_info.value.code == ErrorCode.ALL_BACKENDS_FAILED
        assert set(exc_info.value.failures) == {"a", "b"}
        assert "HTTP 503" in exc_info.value.failures["a"]

    @pytest.mark.asyncio
    async def test_no_backends_available(self, make_router):
        router = make_router(ScriptedBackend("a", available=False))
        with pytest.raises(FallbackExhaustedError) as exc_info:
            await router.generate_text("x")
        assert exc_info.value.failures == {"a": "not configured"}


class TestRouterBreakers:
    """Breaker integration."""

    @pytest.mark.asyncio
    async def test_open_circuit_is_skipped_without_calling(self, make_router, clock):
        a = ScriptedBackend("a", ["never"])
        b = ScriptedBackend("b", ["from b"])
        router = make_router(a, b, clock=clock)

        breaker = router.breakers.get("a")
        for _ in range(5):
            breaker.record_failure()
        assert breaker.state == CircuitState.OPEN

        response = await router.generate_text("x")
        assert response.provider == "b"
        assert a.prompts == []
        assert router.get_health()["backends"]["a"]["skipped_open"] == 1

    @pytest.mark.asyncio
    async def test_five_failed_calls_trip_the_breaker(self, make_router, clock):
        a = ScriptedBackend("a", [transient()])
        router = make_router(a, clock=clock, max_attempts=1)

        for _ in range(5):
            with pytest.raises(FallbackExhaustedError):
                await router.generate_text("x")

        assert router.breakers.get("a").state == CircuitState.OPEN
        with pytest.raises(FallbackExhaustedError) as exc_info:
            await router.generate_text("x")
        assert "circuit open" in exc_info.value.failures["a"]
        assert len(a.prompts) == 5

    @pytest.mark.asyncio
    async def test_health_is_idempotent(self, make_router):
        router = make_router(ScriptedBackend("a", ["ok"]))
        await router.generate_text("x")
        assert router.get_health() == router.get_health()
