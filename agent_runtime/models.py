"""
Data models for the agent runtime.

Defines the durable session shape (Session, ConversationMemory, MemoryEntry,
ApprovalRequest, PendingDisambiguation), the per-agent MemoryPolicy and the
TurnOutcome returned by the pipeline. Do not duplicate these definitions elsewhere.
"""

from __future__ import annotations

import time
import uuid
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field


def _now() -> float:
    return time.time()


def _new_id() -> str:
    return str(uuid.uuid4())


class MemoryPolicy(BaseModel):
    """Token budget and compaction policy for session memory."""

    max_context_tokens: int = Field(default=4096, ge=1)
    compact_threshold_tokens: int = Field(default=2048, ge=1)
    summarize_batch_size: int = Field(default=6, ge=1)
    max_summary_chars: int = Field(default=800, ge=1)
    recent_turns: int = Field(default=20, ge=0)
    overflow_strategy: Literal["truncate", "summarize"] = "truncate"
    warn_at_percent: int = Field(default=80, ge=0, le=100)
    # Share of max_context_tokens reserved per component.
    allocation: Dict[str, float] = Field(
        default_factory=lambda: {
            "system": 0.25,
            "context": 0.1,
            "summaries": 0.15,
            "history": 0.35,
            "tools": 0.15,
        }
    )


class MemoryEntry(BaseModel):
    """A single turn record in conversation memory."""

    role: str  # "user" | "assistant" | "system" | "tool"
    content: str
    tokens: int = 0
    ts: float = Field(default_factory=_now)
    seq: int = 0
    meta: Optional[Dict[str, Any]] = None


class SummaryEntry(BaseModel):
    """Generated summary standing in for entries [start_seq, end_seq)."""

    content: str
    tokens: int = 0
    start_seq: int
    end_seq: int
    ts: float = Field(default_factory=_now)


class ConversationMemory(BaseModel):
    """
    Uncompacted entries plus the summaries that replaced older ones.

    `watermark` is the absolute sequence number up to which history has been
    compacted. It only moves forward.
    """

    entries: List[MemoryEntry] = Field(default_factory=list)
    summaries: List[SummaryEntry] = Field(default_factory=list)
    watermark: int = 0
    next_seq: int = 0

    def raw_tokens(self) -> int:
        return sum(e.tokens for e in self.entries)


class ApprovalRequest(BaseModel):
    """A human-gated decision over a tool call or a state transition."""

    id: str = Field(default_factory=_new_id)
    subject_kind: Literal["tool_call", "transition", "condition"]
    subject: Dict[str, Any] = Field(default_factory=dict)
    message: str = ""
    status: Literal["pending", "approved", "rejected", "timed_out"] = "pending"
    timeout_seconds: float = 300.0
    default_outcome: Literal["approve", "reject"] = "reject"
    reason: Optional[str] = None
    created_at: float = Field(default_factory=_now)
    resolved_at: Optional[float] = None

    @property
    def approved(self) -> bool:
        if self.status == "approved":
            return True
        return self.status == "timed_out" and self.default_outcome == "approve"

    def resolve(self, status: str, reason: Optional[str] = None) -> bool:
        """Move out of pending. Returns False if the request was already resolved."""
        if self.status != "pending":
            return False
        self.status = status  # type: ignore[assignment]
        self.reason = reason
        self.resolved_at = _now()
        return True


class PendingDisambiguation(BaseModel):
    """Marker kept on the session while a clarification question is outstanding."""

    original_input: str
    candidates: List[str]
    attempts: int = 1
    question: str = ""


class Session(BaseModel):
    """One conversation instance of an agent."""

    id: str = Field(default_factory=_new_id)
    agent: str
    current_state: Optional[str] = None
    previous_state: Optional[str] = None
    state_turns: int = 0
    # Turns spent in each state of the current chain, root-most first.
    node_turns: Dict[str, int] = Field(default_factory=dict)
    timeout_fired: List[str] = Field(default_factory=list)
    turn_counter: int = 0
    memory: ConversationMemory = Field(default_factory=ConversationMemory)
    pending_approvals: List[ApprovalRequest] = Field(default_factory=list)
    approval_log: List[ApprovalRequest] = Field(default_factory=list)
    pending_disambiguation: Optional[PendingDisambiguation] = None
    context: Dict[str, Any] = Field(default_factory=dict)
    flags: List[Dict[str, Any]] = Field(default_factory=list)
    version: int = 0
    created_at: float = Field(default_factory=_now)
    closed: bool = False


class TurnOutcome(BaseModel):
    """Structured result of one turn. `content` is never partial on error."""

    status: Literal["ok", "clarification", "input_rejected", "error", "cancelled"]
    content: Optional[str] = None
    error: Optional[Dict[str, Any]] = None
    session_id: Optional[str] = None
    state: Optional[str] = None
    skill: Optional[str] = None
    flags: List[Dict[str, Any]] = Field(default_factory=list)
    warnings: List[str] = Field(default_factory=list)
    tool_results: List[Dict[str, Any]] = Field(default_factory=list)
    meta: Dict[str, Any] = Field(default_factory=dict)


class TurnRequest(BaseModel):
    """Parsed POST /sessions/{id}/turns body."""

    input: str
    overrides: Optional[Dict[str, Any]] = None
    context: Optional[Dict[str, Any]] = None


class ApprovalDecision(BaseModel):
    approved: bool
    reason: Optional[str] = None
