from __future__ import annotations

import threading
from typing import Iterable, Optional

from prism.claude.adapter import Supervisor
from prism.constants import HIGH_RISK_TOOLS, MEDIUM_RISK_TOOLS
from prism.errors import ConflictingApproval
from prism.state.models import PendingPermission, RiskLevel, ToolCall
from prism.state.store import ThreadStore
from prism.util.log import log


def classify_risk(
    tool_name: str,
    *,
    high: Iterable[str] = HIGH_RISK_TOOLS,
    medium: Iterable[str] = MEDIUM_RISK_TOOLS,
) -> RiskLevel:
    """Advisory only: shapes how a prompt is rendered, never whether one is shown."""
    if tool_name in set(high):
        return "high"
    if tool_name in set(medium):
        return "medium"
    return "low"


class ApprovalGate:
    """
    At most one pending permission per thread.

    The gate records and forwards decisions; it never changes a thread's status.
    """

    def __init__(
        self,
        store: ThreadStore,
        supervisor: Supervisor,
        *,
        high_risk_tools: Iterable[str] = HIGH_RISK_TOOLS,
        medium_risk_tools: Iterable[str] = MEDIUM_RISK_TOOLS,
    ) -> None:
        self._store = store
        self._supervisor = supervisor
        self._high = tuple(high_risk_tools)
        self._medium = tuple(medium_risk_tools)
        self._lock = threading.Lock()
        self._pending: dict[str, PendingPermission] = {}

    def classify(self, tool_name: str) -> RiskLevel:
        return classify_risk(tool_name, high=self._high, medium=self._medium)

    def request_permission(self, thread_id: str, tool_call: ToolCall) -> PendingPermission:
        with self._lock:
            current = self._pending.get(thread_id)
            if current is not None:
                if current.tool_call_id == tool_call.id:
                    return current
                log(
                    f"conflicting approval on thread {thread_id}: "
                    f"{current.tool_call_id} pending, {tool_call.id} requested"
                )
                raise ConflictingApproval(
                    thread_id=thread_id,
                    pending_tool_call_id=current.tool_call_id,
                    requested_tool_call_id=tool_call.id,
                )
            pending = PendingPermission(
                thread_id=thread_id,
                tool_call_id=tool_call.id,
                tool_name=tool_call.name,
                risk=self.classify(tool_call.name),
            )
            self._pending[thread_id] = pending
            return pending

    def pending(self, thread_id: str) -> Optional[PendingPermission]:
        with self._lock:
            return self._pending.get(thread_id)

    def cancel(self, thread_id: str) -> Optional[PendingPermission]:
        """Drop the pending entry without telling the supervisor."""
        with self._lock:
            return self._pending.pop(thread_id, None)

    async def resolve_permission(self, thread_id: str, tool_call_id: str, approved: bool) -> bool:
        """
        Clear the pending entry and forward the decision.

        Returns True when the decision reached the supervisor. Forwarding failures are
        logged, never raised; the entry stays cleared either way.
        """
        with self._lock:
            current = self._pending.get(thread_id)
            if current is None:
                log(f"no pending approval on thread {thread_id} for {tool_call_id}; ignoring")
                return False
            if current.tool_call_id != tool_call_id:
                log(
                    f"approval for {tool_call_id} on thread {thread_id} does not match "
                    f"pending {current.tool_call_id}; ignoring"
                )
                return False
            del self._pending[thread_id]

        if approved:
            try:
                self._store.advance_tool_call(thread_id, tool_call_id, "running")
            except KeyError:
                # Thread deleted while the prompt was open.
                pass

        try:
            await self._supervisor.resolve_approval(thread_id, tool_call_id, approved)
        except Exception as exc:
            log(f"failed to forward approval for {tool_call_id} on thread {thread_id}: {exc}")
            return False
        return True
