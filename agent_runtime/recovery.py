"""
Retry, backoff and provider fallback for model calls and state actions.

Every model call in a turn goes through `ErrorRecoveryCoordinator.complete`.
An alias gets `max_retries` attempts (at least one); transient and
rate-limited failures back off and retry, auth/content/invalid-request
failures skip straight to the next alias. Aliases are tried in declared
order (primary, then `fallback_llms`). When every alias is exhausted the
coordinator raises LLMUnavailable, the only LLM failure a caller ever sees.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, AsyncIterator, Awaitable, Callable, List, Mapping, Optional, Sequence

from .errors import ActionError, CriticalToolFailure, LLMError, LLMUnavailable, ToolError
from .providers import Completion, Message, ProviderRegistry
from .spec import EffectiveConfig

logger = logging.getLogger("agent-runtime")

CONTEXT_OVERFLOW = "context_overflow"

Sleep = Callable[[float], Awaitable[Any]]
Shrink = Callable[[Sequence[Message]], Sequence[Message]]


@dataclass(frozen=True)
class BackoffPolicy:
    kind: str = "exponential"
    initial_ms: int = 100
    max_ms: int = 10_000
    multiplier: float = 2.0

    @classmethod
    def from_config(cls, config: EffectiveConfig) -> "BackoffPolicy":
        return cls(
            kind=config.backoff,
            initial_ms=config.initial_backoff_ms,
            max_ms=config.max_backoff_ms,
            multiplier=config.backoff_multiplier,
        )

    def delay(self, attempt: int) -> float:
        """Seconds to wait after failed attempt number `attempt` (1-based)."""
        if self.kind == "fixed":
            ms = float(self.initial_ms)
        elif self.kind == "linear":
            ms = float(self.initial_ms) * attempt
        else:
            ms = float(self.initial_ms) * (self.multiplier ** (attempt - 1))
        return min(ms, float(self.max_ms)) / 1000.0


def _alias_order(primary: str, fallbacks: Sequence[str]) -> List[str]:
    out: List[str] = []
    for alias in [primary, *fallbacks]:
        if alias not in out:
            out.append(alias)
    return out


class ErrorRecoveryCoordinator:
    def __init__(
        self,
        registry: ProviderRegistry,
        *,
        sleep: Sleep = asyncio.sleep,
        on_event: Optional[Callable[[str, Mapping[str, Any]], None]] = None,
    ) -> None:
        self.registry = registry
        self._sleep = sleep
        self._on_event = on_event

    def _emit(self, kind: str, payload: Mapping[str, Any]) -> None:
        if self._on_event is not None:
            self._on_event(kind, payload)

    async def complete(
        self,
        messages: Sequence[Message],
        config: EffectiveConfig,
        *,
        alias: Optional[str] = None,
        params: Optional[Mapping[str, Any]] = None,
        shrink: Optional[Shrink] = None,
    ) -> Completion:
        """Run one model call with retries and alias fallback."""
        call_params = {"temperature": config.temperature, "max_tokens": config.max_tokens, **(params or {})}
        aliases = _alias_order(alias or config.llm, config.fallback_llms)
        backoff = BackoffPolicy.from_config(config)
        attempts = max(1, config.max_retries)
        failures: List[dict] = []

        for index, current in enumerate(aliases):
            provider = self.registry.get(current)
            current_messages = list(messages)
            shrunk = False
            attempt = 0
            while attempt < attempts:
                attempt += 1
                self._emit("llm_start", {"alias": current, "attempt": attempt})
                try:
                    completion = await asyncio.wait_for(
                        provider.complete(current_messages, call_params),
                        timeout=config.llm_timeout_seconds,
                    )
                except asyncio.TimeoutError:
                    error = LLMError(LLMError.TRANSIENT, "model call timed out", alias=current)
                except LLMError as exc:
                    error = exc
                    error.alias = current
                else:
                    completion.alias = current
                    self._emit("llm_complete", {"alias": current, "attempt": attempt})
                    return completion

                failures.append({"alias": current, "attempt": attempt, "category": error.category, "message": str(error)})
                logger.warning(
                    "llm call failed alias=%s attempt=%s/%s category=%s error=%s",
                    current,
                    attempt,
                    attempts,
                    error.category,
                    error,
                )

                if error.category == CONTEXT_OVERFLOW and shrink is not None and not shrunk:
                    # One free retry with a reduced context.
                    current_messages = list(shrink(current_messages))
                    shrunk = True
                    attempt -= 1
                    continue
                if not error.retryable:
                    break
                if attempt < attempts:
                    await self._sleep(backoff.delay(attempt))

            if index + 1 < len(aliases):
                logger.warning("llm falling back from=%s to=%s", current, aliases[index + 1])
                self._emit("llm_fallback", {"from": current, "to": aliases[index + 1]})

        raise LLMUnavailable(
            "All LLM providers failed",
            details={"aliases": aliases, "failures": failures},
        )

    async def stream(
        self,
        messages: Sequence[Message],
        config: EffectiveConfig,
        *,
        alias: Optional[str] = None,
        params: Optional[Mapping[str, Any]] = None,
    ) -> AsyncIterator[str]:
        """
        Stream text deltas from the first alias that produces one.

        Retries and fallback apply until the first delta arrives; after that
        a failure propagates to the consumer.
        """
        call_params = {"temperature": config.temperature, "max_tokens": config.max_tokens, **(params or {})}
        aliases = _alias_order(alias or config.llm, config.fallback_llms)
        backoff = BackoffPolicy.from_config(config)
        attempts = max(1, config.max_retries)

        for current in aliases:
            provider = self.registry.get(current)
            for attempt in range(1, attempts + 1):
                iterator = provider.stream(list(messages), call_params).__aiter__()
                try:
                    first = await asyncio.wait_for(iterator.__anext__(), timeout=config.llm_timeout_seconds)
                except StopAsyncIteration:
                    return
                except asyncio.TimeoutError:
                    error = LLMError(LLMError.TRANSIENT, "stream start timed out", alias=current)
                except LLMError as exc:
                    error = exc
                else:
                    yield first
                    async for delta in iterator:
                        yield delta
                    return
                logger.warning("llm stream failed alias=%s attempt=%s category=%s", current, attempt, error.category)
                if not error.retryable:
                    break
                if attempt < attempts:
                    await self._sleep(backoff.delay(attempt))

        raise LLMUnavailable("All LLM providers failed to stream", details={"aliases": aliases})

    async def run_action(
        self,
        action: Callable[[], Awaitable[Any]],
        *,
        retries: int,
        description: str,
        state: Optional[str] = None,
    ) -> Any:
        """Run a state action, retrying up to `retries` extra times. Raises ActionError."""
        last: Optional[BaseException] = None
        for attempt in range(1, max(0, retries) + 2):
            try:
                return await action()
            except (ActionError, ToolError, CriticalToolFailure, LLMUnavailable, LLMError, OSError, ValueError, KeyError) as exc:
                last = exc
                logger.warning(
                    "state action failed state=%s action=%s attempt=%s error=%s",
                    state,
                    description,
                    attempt,
                    exc,
                )
        raise ActionError(f"{description} failed: {last}", state=state, action=description)
