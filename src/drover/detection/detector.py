"""Poll-based classification of a worker's live output.

``classify_output`` is a pure function over a rolling window of captures, so
an event-driven source could feed it the same way. The detector adds the
timing: fixed-interval polling, deadlines and auto-approve delegation.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections import OrderedDict, deque
from dataclasses import dataclass, field
from enum import Enum
from typing import AsyncIterator, Awaitable, Callable, Deque, Protocol, Sequence

from ..approval.models import ApprovalRequest, Decision
from ..errors import BackendError
from ..registry import Worker
from ..terminal.models import TerminalBackend
from .patterns import (
    ends_with_idle_prompt,
    extract_permission,
    is_permission_prompt,
    is_question_prompt,
    is_working,
)

logger = logging.getLogger(__name__)

APPROVE_KEY = "Enter"
MAX_TRACKED_PANES = 256


class CompletionState(str, Enum):
    BUSY = "busy"
    IDLE = "idle"
    PERMISSION_PENDING = "permission_pending"
    QUESTION_PENDING = "question_pending"
    UNKNOWN = "unknown"


SETTLED_STATES = frozenset(
    {CompletionState.IDLE, CompletionState.PERMISSION_PENDING, CompletionState.QUESTION_PENDING}
)


def classify_output(history: Sequence[str | None], stable_polls: int = 3) -> CompletionState:
    """Classify the newest capture in ``history`` (oldest first).

    ``None`` marks a capture that could not be read.
    """

    if not history or history[-1] is None:
        return CompletionState.UNKNOWN
    current = history[-1]
    if is_permission_prompt(current):
        return CompletionState.PERMISSION_PENDING
    if is_question_prompt(current):
        return CompletionState.QUESTION_PENDING
    if len(history) >= 2 and history[-2] != current:
        return CompletionState.BUSY
    recent = history[-stable_polls:]
    if (
        len(recent) == stable_polls
        and all(item == current for item in recent)
        and ends_with_idle_prompt(current)
        and not is_working(current)
    ):
        return CompletionState.IDLE
    return CompletionState.UNKNOWN


class Approver(Protocol):
    def review(self, request: ApprovalRequest, worker: Worker | None = None) -> ApprovalRequest:
        ...


@dataclass(slots=True)
class SettleResult:
    final_state: CompletionState
    elapsed_ms: int
    last_output: str
    timed_out: bool = False
    decisions: list[ApprovalRequest] = field(default_factory=list)

    def to_dict(self, include_output: bool = True) -> dict[str, object]:
        payload: dict[str, object] = {
            "final_state": self.final_state.value,
            "elapsed_ms": self.elapsed_ms,
            "timed_out": self.timed_out,
            "decisions": [
                {
                    "id": request.id,
                    "tool_name": request.tool_name,
                    "parameter_text": request.parameter_text,
                    "decision": request.decision.value if request.decision else None,
                    "rule_basis": request.rule_basis,
                }
                for request in self.decisions
            ],
        }
        if include_output:
            payload["last_output"] = self.last_output
        return payload


@dataclass(slots=True)
class StateChange:
    state: CompletionState
    previous: CompletionState | None
    elapsed_ms: int
    output: str = ""
    timed_out: bool = False


class CompletionDetector:
    """Sample a pane's buffer and classify it into a :class:`CompletionState`."""

    def __init__(
        self,
        backend: TerminalBackend,
        *,
        approver: Approver | None = None,
        stable_polls: int = 3,
        capture_lines: int = 200,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if stable_polls < 2:
            raise ValueError("stable_polls must be >= 2")
        self._backend = backend
        self._approver = approver
        self._stable_polls = stable_polls
        self._capture_lines = capture_lines
        self._sleep = sleep
        self._clock = clock
        # Least recently classified panes are dropped past MAX_TRACKED_PANES.
        self._histories: OrderedDict[str, Deque[str | None]] = OrderedDict()

    @property
    def stable_polls(self) -> int:
        return self._stable_polls

    def _new_history(self) -> Deque[str | None]:
        return deque(maxlen=self._stable_polls)

    async def capture(self, pane_id: str) -> str | None:
        """Snapshot the pane; ``None`` when the backend cannot read it."""

        try:
            return await self._backend.capture_buffer(pane_id, lines=self._capture_lines)
        except BackendError as exc:
            logger.warning("Unreadable capture", extra={"pane_id": pane_id, "error": str(exc)})
            return None

    async def classify(self, pane_id: str) -> CompletionState:
        """One poll. Successive calls for the same pane share a rolling window."""

        history = self._histories.get(pane_id)
        if history is None:
            history = self._histories[pane_id] = self._new_history()
            while len(self._histories) > MAX_TRACKED_PANES:
                self._histories.popitem(last=False)
        else:
            self._histories.move_to_end(pane_id)
        history.append(await self.capture(pane_id))
        return classify_output(list(history), self._stable_polls)

    def last_capture(self, pane_id: str) -> str | None:
        """Newest snapshot seen by :meth:`classify` for ``pane_id``."""

        history = self._histories.get(pane_id)
        return history[-1] if history else None

    def reset(self, pane_id: str) -> None:
        self._histories.pop(pane_id, None)

    @property
    def tracked_panes(self) -> int:
        return len(self._histories)

    async def review_permission(self, pane_id: str, output: str, worker: Worker | None) -> ApprovalRequest | None:
        """Hand the prompt in ``output`` to the approver and answer it when approved.

        Returns ``None`` when there is no approver or no known worker; the
        prompt then stays on screen for a human.
        """

        decided = self._delegate(pane_id, output, worker)
        if decided is not None and decided.decision is Decision.APPROVED:
            await self._backend.send_key(pane_id, APPROVE_KEY)
        return decided

    async def run_until_settled(
        self,
        pane_id: str,
        *,
        timeout: float,
        poll_interval: float = 1.0,
        worker: Worker | None = None,
    ) -> SettleResult:
        """Poll until idle, a prompt a human must answer, an unreadable capture or the deadline.

        A permission prompt from a known worker goes to the approver first;
        approved prompts are answered with ``Enter`` and polling continues.
        """

        start = self._clock()
        deadline = start + timeout
        history = self._new_history()
        decisions: list[ApprovalRequest] = []
        last_output = ""
        answered: str | None = None

        def elapsed() -> int:
            return int((self._clock() - start) * 1000)

        while True:
            output = await self.capture(pane_id)
            if output is None:
                return SettleResult(CompletionState.UNKNOWN, elapsed(), last_output, False, decisions)
            last_output = output
            history.append(output)

            if answered is not None and output == answered:
                state = CompletionState.BUSY
            else:
                answered = None
                state = classify_output(list(history), self._stable_polls)

            if state is CompletionState.PERMISSION_PENDING:
                decided = await self.review_permission(pane_id, output, worker)
                if decided is not None:
                    decisions.append(decided)
                if decided is None or decided.decision is not Decision.APPROVED:
                    return SettleResult(state, elapsed(), last_output, False, decisions)
                history.clear()
                answered = output
            elif state in SETTLED_STATES:
                return SettleResult(state, elapsed(), last_output, False, decisions)

            remaining = deadline - self._clock()
            if remaining <= 0:
                return SettleResult(CompletionState.UNKNOWN, elapsed(), last_output, True, decisions)
            await self._sleep(min(poll_interval, remaining))

    def _delegate(self, pane_id: str, output: str, worker: Worker | None) -> ApprovalRequest | None:
        if worker is None or self._approver is None:
            return None
        details = extract_permission(output)
        request = ApprovalRequest(
            worker_id=worker.id,
            tool_name=details.tool_name if details else "unknown",
            parameter_text=details.parameter_text if details else "",
            pane_id=pane_id,
            auto_approve_enabled=worker.auto_approve_enabled,
        )
        return self._approver.review(request, worker)

    async def watch(
        self,
        pane_id: str,
        *,
        timeout: float,
        poll_interval: float = 1.0,
    ) -> AsyncIterator[StateChange]:
        """Yield a :class:`StateChange` whenever the classified state changes.

        Ends after the deadline (with a final timed-out ``unknown``) or when
        the pane can no longer be read.
        """

        start = self._clock()
        deadline = start + timeout
        history = self._new_history()
        previous: CompletionState | None = None

        while True:
            output = await self.capture(pane_id)
            history.append(output)
            state = classify_output(list(history), self._stable_polls)
            elapsed = int((self._clock() - start) * 1000)
            if state is not previous:
                yield StateChange(state, previous, elapsed, output or "")
                previous = state
            if output is None:
                return
            remaining = deadline - self._clock()
            if remaining <= 0:
                yield StateChange(CompletionState.UNKNOWN, previous, elapsed, output, timed_out=True)
                return
            await self._sleep(min(poll_interval, remaining))


__all__ = [
    "APPROVE_KEY",
    "Approver",
    "CompletionDetector",
    "CompletionState",
    "MAX_TRACKED_PANES",
    "SETTLED_STATES",
    "SettleResult",
    "StateChange",
    "classify_output",
]
