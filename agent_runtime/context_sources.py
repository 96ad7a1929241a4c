from __future__ import annotations

import inspect
import logging
import os
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, Tuple

import httpx
import yaml

from .errors import ContextSourceError
from .models import Session
from .spec import AgentSpec, ContextSourceSpec

logger = logging.getLogger("agent-runtime")

# Session.context key holding the last good value of every source.
CACHE_KEY = "_sources"


class ContextSourceManager:
    """
    Refreshes an agent's dynamic context sources for one turn.

    Sources are read-only inputs. A source that fails yields its last cached
    value (or None) plus a warning; it never aborts the turn.
    """

    def __init__(
        self,
        spec: AgentSpec,
        *,
        callbacks: Optional[Mapping[str, Callable[..., Any]]] = None,
        http_transport: Optional[httpx.AsyncBaseTransport] = None,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ) -> None:
        self.spec = spec
        self.callbacks = dict(callbacks or {})
        self._transport = http_transport
        self._clock = clock
        self._once: Dict[str, Any] = {}

    def register_callback(self, name: str, fn: Callable[..., Any]) -> None:
        self.callbacks[name] = fn

    async def refresh(
        self,
        session: Session,
        runtime_values: Optional[Mapping[str, Any]] = None,
    ) -> Tuple[Dict[str, Any], List[str]]:
        """Return (values by source name, warnings)."""
        values: Dict[str, Any] = {}
        warnings: List[str] = []
        cache: Dict[str, Any] = session.context.setdefault(CACHE_KEY, {})
        runtime_values = runtime_values or {}

        for source in self.spec.context_sources:
            if source.refresh == "once" and source.name in self._once:
                values[source.name] = self._once[source.name]
                continue
            if source.refresh == "per_session" and source.name in cache:
                values[source.name] = cache[source.name]
                continue
            try:
                value = await self._load(source, session, runtime_values)
            except ContextSourceError as exc:
                stale = cache.get(source.name)
                values[source.name] = stale
                warnings.append(f"context source {source.name!r} failed: {exc}")
                logger.warning(
                    "context source failed name=%s kind=%s stale=%s error=%s",
                    source.name,
                    source.kind,
                    stale is not None,
                    exc,
                )
                continue
            values[source.name] = value
            cache[source.name] = value
            if source.refresh == "once":
                self._once[source.name] = value
        return values, warnings

    async def _load(self, source: ContextSourceSpec, session: Session, runtime_values: Mapping[str, Any]) -> Any:
        params = source.params
        kind = source.kind
        if kind == "runtime":
            if source.name in runtime_values:
                return runtime_values[source.name]
            if "default" in params:
                return params["default"]
            if params.get("required"):
                raise ContextSourceError("required runtime value missing")
            return None
        if kind == "builtin":
            return self._builtin(str(params.get("value", source.name)), session)
        if kind == "env":
            var = str(params.get("var", source.name.upper()))
            value = os.getenv(var)
            if value is None:
                if "default" in params:
                    return params["default"]
                raise ContextSourceError(f"environment variable {var} is not set")
            return value
        if kind == "file":
            return self._read_file(params)
        if kind == "http":
            return await self._fetch(params)
        if kind == "callback":
            name = str(params.get("callback", source.name))
            fn = self.callbacks.get(name)
            if fn is None:
                raise ContextSourceError(f"no callback registered as {name!r}")
            try:
                result = fn(session.context) if _accepts_argument(fn) else fn()
                if inspect.isawaitable(result):
                    result = await result
            except Exception as exc:
                raise ContextSourceError(f"callback raised: {exc}") from exc
            return result
        raise ContextSourceError(f"unsupported source kind {kind!r}")

    def _builtin(self, name: str, session: Session) -> Any:
        now = self._clock()
        if name == "datetime":
            return {"iso": now.isoformat(), "date": now.date().isoformat(), "weekday": now.strftime("%A")}
        if name == "session":
            return {"id": session.id, "turn": session.turn_counter, "state": session.current_state}
        if name == "agent":
            return {"name": self.spec.name, "version": self.spec.version}
        raise ContextSourceError(f"unknown builtin {name!r}")

    @staticmethod
    def _read_file(params: Mapping[str, Any]) -> Any:
        candidates: Sequence[Any] = [params.get("path"), params.get("fallback_path")]
        last_error: Optional[Exception] = None
        for raw in candidates:
            if not raw:
                continue
            path = Path(str(raw))
            try:
                text = path.read_text(encoding="utf-8")
            except (OSError, UnicodeDecodeError) as exc:
                last_error = exc
                continue
            if path.suffix in (".yaml", ".yml", ".json"):
                try:
                    return yaml.safe_load(text)
                except yaml.YAMLError as exc:
                    raise ContextSourceError(f"cannot parse {path}: {exc}") from exc
            return text
        raise ContextSourceError(f"cannot read file source: {last_error}")

    async def _fetch(self, params: Mapping[str, Any]) -> Any:
        url = params.get("url")
        if not url:
            raise ContextSourceError("http source needs a url")
        method = str(params.get("method", "GET")).upper()
        try:
            timeout = float(params.get("timeout_seconds", 5))
        except (TypeError, ValueError) as exc:
            raise ContextSourceError(f"invalid timeout_seconds {params.get('timeout_seconds')!r}") from exc
        try:
            async with httpx.AsyncClient(timeout=timeout, transport=self._transport) as client:
                resp = await client.request(
                    method,
                    str(url),
                    headers=dict(params.get("headers") or {}),
                    json=params.get("body") if method != "GET" else None,
                )
                resp.raise_for_status()
        except httpx.HTTPError as exc:
            if "fallback" in params:
                logger.warning("http context source failed url=%s using fallback error=%s", url, exc)
                return params["fallback"]
            raise ContextSourceError(f"request to {url} failed: {exc}") from exc
        if "json" in resp.headers.get("content-type", ""):
            try:
                return resp.json()
            except ValueError as exc:
                raise ContextSourceError(f"invalid JSON from {url}: {exc}") from exc
        return resp.text


def _accepts_argument(fn: Callable[..., Any]) -> bool:
    try:
        return len(inspect.signature(fn).parameters) > 0
    except (TypeError, ValueError):
        return False
