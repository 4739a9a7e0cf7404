from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from typing import Any, ClassVar, Sequence

from langchain_core.messages import AIMessage, BaseMessage, HumanMessage, SystemMessage

from ..core.config import Settings
from ..core.exceptions import UpstreamError
from ..core.logging import get_logger

try:  # pragma: no cover - optional heavy dependency
    from langchain_ollama import ChatOllama
except ModuleNotFoundError:  # pragma: no cover
    ChatOllama = None  # type: ignore[misc, assignment]

logger = get_logger(name=__name__)


def _build_base_url(host: str, port: int) -> str:
    if ":" in host.rsplit("/", maxsplit=1)[-1]:
        return host.rstrip("/")
    return f"{host.rstrip('/')}:{port}"


def _messages_from_text(prompt: str, system_prompt: str | None = None) -> Sequence[BaseMessage]:
    messages: list[BaseMessage] = []
    if system_prompt:
        messages.append(SystemMessage(content=system_prompt))
    messages.append(HumanMessage(content=prompt))
    return messages


@dataclass(frozen=True, slots=True)
class RetryPolicy:
    max_attempts: int = 3
    base_delay: float = 1.0
    max_delay: float = 10.0
    attempt_timeout: float = 60.0

    def delay_for(self, attempt: int) -> float:
        return min(self.base_delay * (2**attempt), self.max_delay)


@dataclass(slots=True)
class CircuitBreaker:
    """Opens after ``threshold`` consecutive failures and half-opens after ``reset_after`` seconds."""

    threshold: int = 5
    reset_after: float = 30.0
    failures: int = 0
    last_failure: float = 0.0

    def allow(self, now: float | None = None) -> bool:
        if self.failures < self.threshold:
            return True
        current = time.monotonic() if now is None else now
        if current - self.last_failure >= self.reset_after:
            self.failures = 0
            return True
        return False

    def record_success(self) -> None:
        self.failures = 0

    def record_failure(self, now: float | None = None) -> None:
        self.failures += 1
        self.last_failure = time.monotonic() if now is None else now


@dataclass
class LLMService:
    """LangChain chat-model client used by the reasoning backend."""

    settings: Settings
    _client: Any
    model: str
    retry: RetryPolicy = field(default_factory=RetryPolicy)
    breaker: CircuitBreaker = field(default_factory=CircuitBreaker)
    default_system_prompt: str = "You are a careful planning agent. Reply with JSON only."
    _client_cache: ClassVar[dict[str, Any]] = {}

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        *,
        model: str | None = None,
        client: Any | None = None,
    ) -> "LLMService":
        model_name = model or settings.ollama.model
        if client is None:
            cache_key = f"{settings.ollama.host}:{settings.ollama.port}:{model_name}"
            cached = cls._client_cache.get(cache_key)
            if cached is None:
                if ChatOllama is None:  # pragma: no cover - handled in runtime logs
                    raise RuntimeError("langchain_ollama is not installed")
                base_url = _build_base_url(settings.ollama.host, settings.ollama.port)
                cached = ChatOllama(model=model_name, base_url=base_url, temperature=settings.ollama.temperature)
                cls._client_cache[cache_key] = cached
            client = cached
        return cls(settings=settings, _client=client, model=model_name)

    async def generate(
        self,
        prompt: str,
        *,
        system_prompt: str | None = None,
        max_tokens: int | None = None,
    ) -> str:
        """Return the model's reply, retrying with backoff; raise :class:`UpstreamError` when exhausted."""
        if not self.breaker.allow():
            logger.warning("llm_circuit_breaker_open", consecutive_failures=self.breaker.failures, model=self.model)
            raise UpstreamError("LLM circuit breaker is open")

        messages = _messages_from_text(prompt, system_prompt or self.default_system_prompt)
        client = self._client
        options: dict[str, Any] = {}
        if max_tokens is not None:
            options["num_predict"] = max_tokens
        if self.settings.ollama.num_ctx is not None:
            options["num_ctx"] = int(self.settings.ollama.num_ctx)
        if options and hasattr(client, "with_options"):
            client = client.with_options(**options)

        last_error: Exception | None = None
        for attempt in range(self.retry.max_attempts):
            try:
                result = await asyncio.wait_for(client.ainvoke(messages), timeout=self.retry.attempt_timeout)
            except asyncio.TimeoutError:
                last_error = asyncio.TimeoutError(f"LLM request timed out after {self.retry.attempt_timeout}s")
                self.breaker.record_failure()
                logger.warning("llm_generation_timeout", attempt=attempt + 1, model=self.model)
            except Exception as exc:  # noqa: BLE001 - any client failure is retried
                last_error = exc
                self.breaker.record_failure()
                logger.warning("llm_generation_retry", attempt=attempt + 1, error=str(exc), model=self.model)
            else:
                self.breaker.record_success()
                return _extract_content(result)
            if attempt < self.retry.max_attempts - 1:
                await asyncio.sleep(self.retry.delay_for(attempt))

        logger.error(
            "llm_generation_failed",
            error=str(last_error) if last_error else "unknown",
            model=self.model,
            attempts=self.retry.max_attempts,
        )
        raise UpstreamError(f"LLM generation failed after {self.retry.max_attempts} attempts: {last_error}")


def _extract_content(result: Any) -> str:
    content = result.content if isinstance(result, AIMessage) or hasattr(result, "content") else result
    if isinstance(content, list):
        return " ".join(str(item) for item in content)
    return str(content)
