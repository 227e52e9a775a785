"""
Resilience Router for Text Generation

Tries generation backends in a resolved order until one answers:

1. Order: caller override, else a per-call preferred backend followed by
   the configured provider_order, else the preferred backend followed by
   the other registered backends in registration order. Duplicates are
   dropped and disabled or unconfigured backends are skipped.
2. Each backend sits behind its own circuit breaker. An open breaker
   rejects immediately and the router moves on.
3. Each backend call races a request timeout and is retried with
   exponential backoff. Auth/config errors are not retried and count as a
   breaker failure straight away; otherwise one breaker failure is
   recorded once the retries are spent.
4. If nothing answers, FallbackExhaustedError lists each backend's reason.

Usage:
    router = LLMRouter(build_backends(settings), CircuitBreakerRegistry())
    response = await router.generate_text(prompt, system_prompt="You are ...")
    response.provider, response.model, response.text
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Mapping, Optional

from core.exceptions import FallbackExhaustedError, is_auth_or_config_error
from .circuit_breaker import CircuitBreakerRegistry, CircuitOpenError
from .llm_backends import GenerationBackend, GenerationOptions, LLMResponse
from .retry_strategy import RetryPolicy, SleepFunc, race_timeout, retry_async

logger = logging.getLogger(__name__)


@dataclass
class RouterConfig:
    """Router tuning."""
    preferred_backend: str = "gemini"
    request_timeout: float = 30.0
    max_attempts: int = 3
    retry_delay: float = 1.0
    max_tokens: int = 2000
    temperature: float = 0.7
    provider_order: List[str] = field(default_factory=list)


@dataclass
class BackendStats:
    calls: int = 0
    successes: int = 0
    failures: int = 0
    skipped_open: int = 0


class LLMRouter:
    """Circuit-breaker-protected multi-backend generation."""

    def __init__(
        self,
        backends: Mapping[str, GenerationBackend],
        breakers: CircuitBreakerRegistry,
        config: Optional[RouterConfig] = None,
        sleep: SleepFunc = asyncio.sleep
    ):
        self.config = config or RouterConfig()
        self.breakers = breakers
        self._backends: Dict[str, GenerationBackend] = {}
        self._stats: Dict[str, BackendStats] = {}
        self._sleep = sleep
        self.retry_policy = RetryPolicy(
            max_attempts=self.config.max_attempts,
            base_delay=self.config.retry_delay,
        )
        for name, backend in backends.items():
            self.register_backend(backend, name=name)

    def register_backend(self, backend: GenerationBackend, name: Optional[str] = None):
        name = name or backend.name
        self._backends[name] = backend
        self._stats.setdefault(name, BackendStats())
        self.breakers.get_or_create(name)

    def get_available_backends(self) -> List[str]:
        """Registered backends that are configured, in registration order."""
        return [name for name, backend in self._backends.items() if backend.available]

    def is_backend_available(self, name: str) -> bool:
        backend = self._backends.get(name)
        return backend is not None and backend.available

    def resolve_order(
        self,
        preferred: Optional[str] = None,
        provider_order: Optional[Iterable[str]] = None,
        enabled: Optional[Mapping[str, bool]] = None
    ) -> List[str]:
        """Backends to try, in order, after dedup and enabled/available filtering."""
        candidates, _ = self._resolve(preferred, provider_order, enabled)
        return candidates

    def _resolve(
        self,
        preferred: Optional[str],
        provider_order: Optional[Iterable[str]],
        enabled: Optional[Mapping[str, bool]]
    ):
        order = list(provider_order or [])
        if not order and self.config.provider_order:
            # A per-call preferred backend still goes ahead of the configured order
            order = ([preferred] if preferred else []) + list(self.config.provider_order)
        if not order:
            preferred = preferred or self.config.preferred_backend
            order = [preferred] + [name for name in self._backends if name != preferred]

        seen = set()
        candidates: List[str] = []
        skipped: Dict[str, str] = {}
        for name in order:
            if name in seen:
                continue
            seen.add(name)
            if enabled is not None and enabled.get(name, True) is False:
                skipped[name] = "disabled"
            elif name not in self._backends:
                skipped[name] = "not registered"
            elif not self._backends[name].available:
                skipped[name] = "not configured"
            else:
                candidates.append(name)
        return candidates, skipped

    async def generate(
        self,
        prompt: str,
        backend_name: str,
        options: Optional[GenerationOptions] = None
    ) -> LLMResponse:
        """
        Call one backend behind its breaker, with timeout and retries.

        Raises:
            CircuitOpenError: breaker is open, backend not called
            Exception: the backend's last error once retries are spent
        """
        backend = self._backends[backend_name]
        breaker = self.breakers.get_or_create(backend_name)
        stats = self._stats[backend_name]
        options = options or GenerationOptions(
            max_tokens=self.config.max_tokens, temperature=self.config.temperature
        )

        try:
            breaker.before_call()
        except CircuitOpenError:
            stats.skipped_open += 1
            raise

        async def attempt() -> LLMResponse:
            stats.calls += 1
            return await race_timeout(
                backend.generate(prompt, options),
                self.config.request_timeout,
                f"{backend_name} request",
            )

        try:
            response = await retry_async(
                attempt,
                self.retry_policy,
                should_retry=lambda e: not is_auth_or_config_error(e),
                sleep=self._sleep,
                operation=f"LLM backend {backend_name}",
            )
        except Exception as e:
            stats.failures += 1
            breaker.record_failure(e)
            raise

        stats.successes += 1
        breaker.record_success()
        return response

    async def generate_with_fallback(
        self,
        prompt: str,
        preferred: Optional[str] = None,
        options: Optional[GenerationOptions] = None,
        provider_order: Optional[Iterable[str]] = None,
        enabled: Optional[Mapping[str, bool]] = None
    ) -> LLMResponse:
        """Generate with the first backend that answers."""
        candidates, failures = self._resolve(preferred, provider_order, enabled)

        for name in candidates:
            try:
                response = await self.generate(prompt, name, options)
                if failures:
                    logger.info(f"Generation served by '{name}' after fallback from {list(failures)}")
                return response
            except CircuitOpenError as e:
                failures[name] = f"circuit open (retry after {e.retry_after:.1f}s)"
                logger.debug(f"Fallback chain: '{name}' circuit is open")
            except Exception as e:
                failures[name] = str(e) or type(e).__name__
                logger.warning(f"Backend '{name}' failed, trying next: {e}")

        raise FallbackExhaustedError(failures)

    async def generate_text(
        self,
        prompt: str,
        system_prompt: Optional[str] = None,
        max_tokens: Optional[int] = None,
        temperature: Optional[float] = None,
        provider: Optional[str] = None,
        provider_order: Optional[Iterable[str]] = None,
        enabled_providers: Optional[Mapping[str, bool]] = None
    ) -> LLMResponse:
        """Convenience entry point: optional system prompt prefixed to the prompt."""
        full_prompt = f"{system_prompt}\n\n{prompt}" if system_prompt else prompt
        options = GenerationOptions(
            max_tokens=max_tokens or self.config.max_tokens,
            temperature=self.config.temperature if temperature is None else temperature,
        )
        return await self.generate_with_fallback(
            full_prompt,
            preferred=provider,
            options=options,
            provider_order=provider_order,
            enabled=enabled_providers,
        )

    def get_health(self) -> Dict[str, Any]:
        """Per-backend availability, breaker state and call counters."""
        backends = {}
        for name, backend in self._backends.items():
            stats = self._stats[name]
            backends[name] = {
                "available": backend.available,
                "model": backend.model,
                "circuit": self.breakers.get_or_create(name).get_status(),
                "calls": stats.calls,
                "successes": stats.successes,
                "failures": stats.failures,
                "skipped_open": stats.skipped_open,
            }
        return {
            "preferred_backend": self.config.preferred_backend,
            "available": self.get_available_backends(),
            "backends": backends,
            "circuits": self.breakers.get_health_summary(),
        }

    async def close(self):
        for backend in self._backends.values():
            await backend.close()
