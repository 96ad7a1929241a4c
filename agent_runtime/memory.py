"""
Conversation memory: token estimates, compaction and context assembly.

Compaction replaces the oldest contiguous run of uncompacted entries with a
single summary and advances the memory watermark. The watermark only moves
forward, so asking to compact a range that is already behind it does
nothing.

Context assembly builds the prompt from prioritized components, each with a
share of the token budget. On overflow the policy's strategy (truncate or
summarize) is applied greedily from the lowest-priority component up: first
down to each component's share, then further as needed.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Protocol, Sequence, Tuple

from .models import ConversationMemory, MemoryEntry, MemoryPolicy, SummaryEntry

logger = logging.getLogger("agent-runtime")

MESSAGE_OVERHEAD_TOKENS = 4

# Lowest priority first: this is the order overflow handling walks.
COMPONENT_ORDER = ("summaries", "context", "history", "tools", "system")


def _is_cjk(ch: str) -> bool:
    code = ord(ch)
    return (
        0x4E00 <= code <= 0x9FFF
        or 0x3400 <= code <= 0x4DBF
        or 0x3040 <= code <= 0x30FF
        or 0xAC00 <= code <= 0xD7AF
        or 0xF900 <= code <= 0xFAFF
    )


def estimate_tokens(text: str) -> int:
    """Rough token count: ascii/4, CJK 1.5 each, anything else 1 each. Never below 1."""
    ascii_chars = cjk = other = 0
    for ch in text or "":
        if ord(ch) < 128:
            ascii_chars += 1
        elif _is_cjk(ch):
            cjk += 1
        else:
            other += 1
    return max(1, math.ceil(ascii_chars / 4 + cjk * 1.5 + other))


def message_tokens(content: str) -> int:
    return estimate_tokens(content) + MESSAGE_OVERHEAD_TOKENS


def truncate_to_tokens(text: str, tokens: int) -> str:
    """Cut `text` so its estimate fits in `tokens` (message overhead excluded)."""
    if tokens <= 0:
        return ""
    if estimate_tokens(text) <= tokens:
        return text
    lo, hi = 0, len(text)
    while lo < hi:
        mid = (lo + hi + 1) // 2
        if estimate_tokens(text[:mid]) <= tokens:
            lo = mid
        else:
            hi = mid - 1
    return text[:lo]


class Summarizer(Protocol):
    async def summarize(self, entries: Sequence[MemoryEntry], *, max_chars: int) -> str:  # pragma: no cover - interface only
        ...


class TruncatingSummarizer:
    """Deterministic summarizer: keeps the head of each entry, capped at max_chars."""

    def __init__(self, per_entry_chars: int = 120) -> None:
        self.per_entry_chars = per_entry_chars

    async def summarize(self, entries: Sequence[MemoryEntry], *, max_chars: int) -> str:
        lines = []
        for entry in entries:
            text = " ".join(entry.content.split())
            if len(text) > self.per_entry_chars:
                text = text[: self.per_entry_chars - 3] + "..."
            lines.append(f"{entry.role}: {text}")
        return "\n".join(lines)[:max_chars]


@dataclass
class ContextComponent:
    name: str
    items: List[Tuple[str, str]]
    share: float = 0.0

    @property
    def tokens(self) -> int:
        return sum(message_tokens(content) for _, content in self.items)


@dataclass
class AssembledContext:
    messages: List[Dict[str, str]]
    tokens: int
    budget: int
    component_tokens: Dict[str, int] = field(default_factory=dict)
    dropped: Dict[str, int] = field(default_factory=dict)
    warnings: List[str] = field(default_factory=list)


class MemoryManager:
    def __init__(self, policy: MemoryPolicy, summarizer: Optional[Summarizer] = None) -> None:
        self.policy = policy
        self.summarizer = summarizer or TruncatingSummarizer()

    def append(
        self,
        memory: ConversationMemory,
        role: str,
        content: str,
        meta: Optional[Dict[str, Any]] = None,
    ) -> MemoryEntry:
        entry = MemoryEntry(
            role=role,
            content=content,
            tokens=message_tokens(content),
            seq=memory.next_seq,
            meta=meta,
        )
        memory.next_seq += 1
        memory.entries.append(entry)
        return entry

    async def compact_range(self, memory: ConversationMemory, start_seq: int, end_seq: int) -> int:
        """
        Summarize entries [start_seq, end_seq) into one summary entry.

        Only the oldest uncompacted run can be compacted; a range at or behind
        the watermark is a no-op. Returns the number of summaries created.
        """
        if end_seq <= memory.watermark:
            return 0
        start_seq = max(start_seq, memory.watermark)
        batch = [e for e in memory.entries if start_seq <= e.seq < end_seq]
        if not batch or batch[0].seq != memory.entries[0].seq:
            return 0
        text = await self.summarizer.summarize(batch, max_chars=self.policy.max_summary_chars)
        text = text[: self.policy.max_summary_chars]
        last = batch[-1].seq + 1
        memory.summaries.append(
            SummaryEntry(content=text, tokens=message_tokens(text), start_seq=batch[0].seq, end_seq=last)
        )
        memory.entries = [e for e in memory.entries if e.seq >= last]
        memory.watermark = max(memory.watermark, last)
        return 1

    async def compact(self, memory: ConversationMemory) -> int:
        """Compact oldest batches until raw history fits the threshold."""
        created = 0
        threshold = self.policy.compact_threshold_tokens
        while memory.entries and memory.raw_tokens() > threshold:
            batch = memory.entries[: max(1, min(self.policy.summarize_batch_size, len(memory.entries)))]
            made = await self.compact_range(memory, batch[0].seq, batch[-1].seq + 1)
            if not made:
                break
            created += made
        if created:
            logger.info(
                "memory compacted summaries=%s watermark=%s raw_tokens=%s",
                created,
                memory.watermark,
                memory.raw_tokens(),
            )
        return created

    async def assemble_context(
        self,
        memory: ConversationMemory,
        *,
        system_prompt: str,
        dynamic_context: Optional[Mapping[str, Any]] = None,
        user_input: Optional[str] = None,
    ) -> AssembledContext:
        """
        Build the message list for a model call within the token budget.

        Tool observations from recent turns form their own budget component
        and are placed after the conversation history.
        """
        budget = self.policy.max_context_tokens
        shares = self.policy.allocation

        system_text = system_prompt.strip()
        context_items = [
            ("system", f"{key}: {value}") for key, value in (dynamic_context or {}).items() if value is not None
        ]
        recent = memory.entries[-self.policy.recent_turns:] if self.policy.recent_turns else []
        history = [(e.role if e.role in ("user", "assistant") else "system", e.content) for e in recent if e.role != "tool"]
        tool_results = [e.content for e in recent if e.role == "tool"]
        components: Dict[str, ContextComponent] = {
            "summaries": ContextComponent(
                "summaries", [("system", s.content) for s in memory.summaries], shares.get("summaries", 0.0)
            ),
            "context": ContextComponent("context", context_items, shares.get("context", 0.0)),
            "history": ContextComponent("history", history, shares.get("history", 0.0)),
            "tools": ContextComponent(
                "tools", [("system", f"Tool observation: {t}") for t in tool_results], shares.get("tools", 0.0)
            ),
            "system": ContextComponent("system", [("system", system_text)] if system_text else [], shares.get("system", 0.0)),
        }
        fixed = message_tokens(user_input) if user_input else 0
        dropped: Dict[str, int] = {}
        warnings: List[str] = []

        def total() -> int:
            return fixed + sum(c.tokens for c in components.values())

        if total() > budget:
            # Pass 1: bring each component down to its share, lowest priority first.
            for name in COMPONENT_ORDER:
                if total() <= budget:
                    break
                comp = components[name]
                await self._shrink(comp, int(comp.share * budget), dropped)
            # Pass 2: take whatever is still needed, again lowest priority first.
            for name in COMPONENT_ORDER:
                excess = total() - budget
                if excess <= 0:
                    break
                comp = components[name]
                await self._shrink(comp, max(0, comp.tokens - excess), dropped)
            if total() > budget:
                warnings.append("context still exceeds budget after overflow handling")
            logger.info("context overflow handled strategy=%s dropped=%s", self.policy.overflow_strategy, dropped)

        used = total()
        if budget and used * 100 >= budget * self.policy.warn_at_percent:
            warnings.append(f"context uses {used * 100 // budget}% of the token budget")

        system_parts = [components["system"].items[0][1]] if components["system"].items else []
        if components["context"].items:
            system_parts.append("# Context\n" + "\n".join(c for _, c in components["context"].items))
        if components["summaries"].items:
            system_parts.append("# Earlier conversation (summary)\n" + "\n".join(c for _, c in components["summaries"].items))
        messages: List[Dict[str, str]] = []
        if system_parts:
            messages.append({"role": "system", "content": "\n\n".join(p for p in system_parts if p)})
        messages.extend({"role": role, "content": content} for role, content in components["history"].items)
        messages.extend({"role": "system", "content": content} for _, content in components["tools"].items)
        if user_input:
            messages.append({"role": "user", "content": user_input})

        return AssembledContext(
            messages=messages,
            tokens=used,
            budget=budget,
            component_tokens={name: comp.tokens for name, comp in components.items()},
            dropped=dropped,
            warnings=warnings,
        )

    async def _shrink(self, comp: ContextComponent, target: int, dropped: Dict[str, int]) -> None:
        if comp.tokens <= target or not comp.items:
            return
        if len(comp.items) == 1:
            role, content = comp.items[0]
            room = target - MESSAGE_OVERHEAD_TOKENS
            if room <= 0:
                comp.items = []
            else:
                comp.items = [(role, truncate_to_tokens(content, room))]
            dropped[comp.name] = dropped.get(comp.name, 0) + 1
            return

        summarize = self.policy.overflow_strategy == "summarize" and comp.name in ("history", "summaries")
        # Leave a quarter of the target free for the summary message.
        limit = target - target // 4 if summarize else target
        removed: List[Tuple[str, str]] = []
        while comp.items and comp.tokens > limit:
            removed.append(comp.items.pop(0))
        dropped[comp.name] = dropped.get(comp.name, 0) + len(removed)

        if summarize and removed:
            entries = [MemoryEntry(role=role, content=content) for role, content in removed]
            room = target - comp.tokens - MESSAGE_OVERHEAD_TOKENS
            if room > 0:
                text = await self.summarizer.summarize(entries, max_chars=self.policy.max_summary_chars)
                text = truncate_to_tokens(f"Summary of earlier messages: {text}", room)
                if text:
                    comp.items.insert(0, ("system", text))
