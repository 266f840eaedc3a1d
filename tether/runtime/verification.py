"""Completion verification gate and deliverable classification.

Two layers:

1. Pure classification functions deciding whether a candidate answer is
   a deliverable or just a placeholder / in-progress status update. The
   status-update patterns are English-specific heuristics; thresholds
   are configurable through DeliverableHeuristics.
2. VerificationGate, a small state machine that rejects
   non-deliverables, asks an independent verifier whether the request
   is satisfied, and forces an incomplete result once the verifier has
   said "not done" too many times in a row.
"""

from __future__ import annotations

import asyncio
import logging
import re
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any

from tether.runtime.protocols import Verifier
from tether.runtime.schemas import VerificationResult
from tether.runtime.sessions import CancelToken, StopRequested

logger = logging.getLogger(__name__)


class VerificationError(Exception):
    """The verifier returned something that is not a usable verdict."""


# ---------------------------------------------------------------------------
# Classification
# ---------------------------------------------------------------------------


class CandidateKind(StrEnum):
    EMPTY = "empty"
    PLACEHOLDER = "placeholder"
    STATUS_UPDATE = "status_update"
    DELIVERABLE = "deliverable"


@dataclass(frozen=True)
class DeliverableHeuristics:
    min_chars: int = 1
    status_update_max_chars: int = 300


DEFAULT_HEURISTICS = DeliverableHeuristics()

_TOOL_CALL_PLACEHOLDER_RE = re.compile(r"^\[(?:Calling tools?|Tool|Tools?):[^\]]+\]$", re.IGNORECASE)
_TOOL_MARKER_RE = re.compile(r"<\|tool_calls_section_begin\|>|<\|tool_call_begin\|>", re.IGNORECASE)
_MARKUP_TOKEN_RE = re.compile(r"<\|[^|]*\|>")
_PLACEHOLDER_TEXTS = frozenset({"[processing...]", "[no output]", "...", "…"})

_STATUS_UPDATE_PATTERNS = (
    # "Let me check the logs now", "I'll look into it", "Okay, now I'm going to..."
    re.compile(
        r"^(?:(?:ok(?:ay)?|alright|sure|great|now|next|first|then)[,.!]?\s+)*"
        r"(?:let me|let's|i'll|i will|i'm going to|i am going to|i need to|i should|"
        r"i'm now|i am now|going to)\b",
        re.IGNORECASE,
    ),
    # "Checking the configuration...", "Searching for files"
    re.compile(
        r"^(?:checking|looking|searching|working|running|fetching|trying|investigating|"
        r"analy[sz]ing|reading|loading|processing|gathering)\b",
        re.IGNORECASE,
    ),
    # Text that announces content that never follows: "Here are the results:"
    re.compile(r"(?::|\.\.\.|…)\s*$"),
)


def strip_tool_markup(text: str) -> str:
    return _MARKUP_TOKEN_RE.sub("", text).strip()


def has_tool_markers(text: str) -> bool:
    """Raw tool-call markup in plain text (model described a call instead of making it)."""
    return bool(_TOOL_MARKER_RE.search(text))


def is_tool_call_placeholder(text: str) -> bool:
    return bool(_TOOL_CALL_PLACEHOLDER_RE.match(text.strip()))


def is_status_update(text: str, max_chars: int = DEFAULT_HEURISTICS.status_update_max_chars) -> bool:
    stripped = text.strip()
    if not stripped or len(stripped) > max_chars:
        return False
    return any(p.search(stripped) for p in _STATUS_UPDATE_PATTERNS)


def classify_candidate(text: str | None, heuristics: DeliverableHeuristics = DEFAULT_HEURISTICS) -> CandidateKind:
    stripped = (text or "").strip()
    if len(stripped) < max(heuristics.min_chars, 1):
        return CandidateKind.EMPTY
    if (
        stripped.lower() in _PLACEHOLDER_TEXTS
        or is_tool_call_placeholder(stripped)
        or has_tool_markers(stripped)
    ):
        return CandidateKind.PLACEHOLDER
    if is_status_update(stripped, heuristics.status_update_max_chars):
        return CandidateKind.STATUS_UPDATE
    return CandidateKind.DELIVERABLE


def is_deliverable(text: str | None, heuristics: DeliverableHeuristics = DEFAULT_HEURISTICS) -> bool:
    return classify_candidate(text, heuristics) == CandidateKind.DELIVERABLE


# ---------------------------------------------------------------------------
# Corrective texts
# ---------------------------------------------------------------------------

NONDELIVERABLE_NUDGES: dict[CandidateKind, str] = {
    CandidateKind.EMPTY: (
        "Your previous response was empty. Continue working on the request, "
        "call tools if needed, and finish with the complete answer."
    ),
    CandidateKind.PLACEHOLDER: (
        "Your previous response was only a placeholder. If you need a tool, call it "
        "through the tool-calling interface; otherwise reply with the complete answer."
    ),
    CandidateKind.STATUS_UPDATE: (
        "Your previous response described what you are about to do instead of doing it. "
        "Carry out the work now (call the tools you need) and reply with the actual result."
    ),
}

USE_TOOLS_NUDGE = (
    "Use the available tools directly to make progress. Do not describe tool usage "
    "in prose; invoke the tools through the tool-calling interface."
)

VERIFIER_CORRECTION_PREFIX = "Verifier indicates the task is not complete"


def build_verifier_correction(verdict: VerificationResult | None) -> str:
    if verdict is None:
        return (
            f"{VERIFIER_CORRECTION_PREFIX} (verification was inconclusive). "
            "Review the original request and make sure every part of it is addressed."
        )
    lines = [f"{VERIFIER_CORRECTION_PREFIX}."]
    if verdict.missing_items:
        lines.append("Missing items:")
        lines.extend(f"- {item}" for item in verdict.missing_items)
    if verdict.reason:
        lines.append(f"Reason: {verdict.reason}")
    lines.append("Continue working and address the missing items before giving a final answer.")
    return "\n".join(lines)


def build_incomplete_explanation(candidate: str, failures: int, missing_items: list[str]) -> str:
    items = "\n".join(f"- {item}" for item in missing_items) if missing_items else "- (not specified)"
    note = (
        f"(Note: Task may be incomplete. The result could not be verified after "
        f"{failures} attempts. Still missing:\n{items})"
    )
    candidate = candidate.strip()
    return f"{candidate}\n\n{note}" if candidate else note


# ---------------------------------------------------------------------------
# Gate
# ---------------------------------------------------------------------------


class GateDecision(StrEnum):
    REJECT_NONDELIVERABLE = "reject_nondeliverable"
    ACCEPT = "accept"
    CONTINUE = "continue"
    FORCE_INCOMPLETE = "force_incomplete"


@dataclass
class GateOutcome:
    decision: GateDecision
    kind: CandidateKind
    final_content: str | None = None
    corrections: list[str] = field(default_factory=list)
    verdict: VerificationResult | None = None


class VerificationGate:
    """Per-run completion gate. Construct one per loop invocation."""

    def __init__(
        self,
        verifier: Verifier | None,
        *,
        max_failures: int = 5,
        max_attempts: int = 3,
        timeout: float = 60.0,
        tool_nudge_after: int = 2,
        heuristics: DeliverableHeuristics = DEFAULT_HEURISTICS,
        enabled: bool = True,
    ) -> None:
        self._verifier = verifier
        self._max_failures = max_failures
        self._max_attempts = max(1, max_attempts)
        self._timeout = timeout
        self._tool_nudge_after = tool_nudge_after
        self._heuristics = heuristics
        self._enabled = enabled and verifier is not None
        self._failures = 0
        self._tool_nudge_sent = False
        self._last_missing: list[str] = []

    @property
    def enabled(self) -> bool:
        return self._enabled

    @property
    def failures(self) -> int:
        """Consecutive negative or inconclusive verdicts."""
        return self._failures

    @property
    def last_missing_items(self) -> list[str]:
        return list(self._last_missing)

    def classify(self, candidate: str | None) -> CandidateKind:
        return classify_candidate(candidate, self._heuristics)

    async def evaluate(
        self,
        candidate: str,
        messages: list[dict[str, Any]],
        *,
        tools_used_this_turn: bool,
        token: CancelToken,
    ) -> GateOutcome:
        """Judge a candidate final answer.

        Raises StopRequested if the session is stopped while verifying.
        """
        kind = self.classify(candidate)
        if kind != CandidateKind.DELIVERABLE:
            return GateOutcome(
                decision=GateDecision.REJECT_NONDELIVERABLE,
                kind=kind,
                corrections=[NONDELIVERABLE_NUDGES[kind]],
            )

        if not self._enabled:
            return GateOutcome(decision=GateDecision.ACCEPT, kind=kind, final_content=candidate)

        verdict = await self._verify(messages, token)
        if verdict is not None and verdict.is_complete:
            self._failures = 0
            return GateOutcome(decision=GateDecision.ACCEPT, kind=kind, final_content=candidate, verdict=verdict)

        self._failures += 1
        if verdict is not None:
            self._last_missing = list(verdict.missing_items)
        logger.info("Verification failed (%d/%d)", self._failures, self._max_failures)

        if self._failures >= self._max_failures:
            return GateOutcome(
                decision=GateDecision.FORCE_INCOMPLETE,
                kind=kind,
                final_content=build_incomplete_explanation(candidate, self._failures, self._last_missing),
                verdict=verdict,
            )

        corrections = [build_verifier_correction(verdict)]
        if (
            not self._tool_nudge_sent
            and self._failures >= self._tool_nudge_after
            and not tools_used_this_turn
        ):
            self._tool_nudge_sent = True
            corrections.append(USE_TOOLS_NUDGE)
        return GateOutcome(decision=GateDecision.CONTINUE, kind=kind, corrections=corrections, verdict=verdict)

    async def _verify(self, messages: list[dict[str, Any]], token: CancelToken) -> VerificationResult | None:
        """Call the verifier, retrying errors. None means every attempt failed."""
        assert self._verifier is not None
        for attempt in range(1, self._max_attempts + 1):
            try:
                return await token.run(asyncio.wait_for(self._verifier.verify(messages), self._timeout))
            except StopRequested:
                raise
            except asyncio.TimeoutError:
                logger.warning("Verifier timed out after %.0fs (attempt %d/%d)", self._timeout, attempt, self._max_attempts)
            except Exception as e:
                logger.warning("Verifier failed (attempt %d/%d): %s", attempt, self._max_attempts, e)
        return None
