"""
Mission memory store.

Per-session goal, step plan, action counter and a bounded ring of executed
actions. One store instance is created by the caller and injected into the
agent; entries live from run start to run end and are never persisted.
"""

import logging
import threading
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Deque, Dict, List, Optional

from . import config
from .types import ActionRecord

logger = logging.getLogger(__name__)


@dataclass
class MissionMemory:
    """State for one session."""
    session_id: str
    original_goal: str
    plan: List[str]
    action_count: int = 0
    created_at: float = field(default_factory=time.time)
    updated_at: float = field(default_factory=time.time)


@dataclass
class _SessionEntry:
    memory: Optional[MissionMemory] = None
    history: Deque[ActionRecord] = field(default_factory=deque)


class MissionMemoryStore:
    """Session-keyed store shared by concurrent runs.

    Entries are never shared between sessions; the lock only guards the
    registry itself.
    """

    def __init__(
        self,
        max_plan_steps: int = config.MAX_PLAN_STEPS,
        history_size: int = config.ACTION_HISTORY_SIZE,
    ):
        self.max_plan_steps = max_plan_steps
        self.history_size = history_size
        self._entries: Dict[str, _SessionEntry] = {}
        self._lock = threading.Lock()

    def _entry(self, session_id: str) -> _SessionEntry:
        with self._lock:
            entry = self._entries.get(session_id)
            if entry is None:
                entry = _SessionEntry(history=deque(maxlen=self.history_size))
                self._entries[session_id] = entry
            return entry

    # ── Mission memory ──────────────────────────────────────────────

    def set_mission_memory(self, session_id: str, goal: str, plan: List[str]) -> MissionMemory:
        entry = self._entry(session_id)
        if len(plan) > self.max_plan_steps:
            logger.warning(
                f"Plan for session {session_id} has {len(plan)} steps, "
                f"keeping the first {self.max_plan_steps}"
            )
        steps = list(plan[: self.max_plan_steps])
        if entry.memory is None:
            entry.memory = MissionMemory(session_id=session_id, original_goal=goal, plan=steps)
        else:
            entry.memory.original_goal = goal
            entry.memory.plan = steps
            entry.memory.updated_at = time.time()
        logger.info(f"Mission memory set for session {session_id}: {len(steps)} steps")
        return entry.memory

    def get_mission_memory(self, session_id: str) -> Optional[MissionMemory]:
        with self._lock:
            entry = self._entries.get(session_id)
        return entry.memory if entry else None

    def increment_action_count(self, session_id: str) -> int:
        memory = self.get_mission_memory(session_id)
        if memory is None:
            return 0
        memory.action_count += 1
        memory.updated_at = time.time()
        return memory.action_count

    def format_for_prompt(self, session_id: str) -> Optional[str]:
        """Developer-message text for the session, or None when there is no plan."""
        memory = self.get_mission_memory(session_id)
        if memory is None or not memory.plan:
            return None

        numbered = "\n".join(f"   {i}. {step}" for i, step in enumerate(memory.plan, start=1))
        return (
            "=== MISSION CONTEXT ===\n"
            f"Original Goal: {memory.original_goal}\n\n"
            f"Full Plan ({len(memory.plan)} steps):\n"
            f"{numbered}\n\n"
            "INSTRUCTIONS:\n"
            "1. Look at the current screen to work out where you are in the plan.\n"
            "2. Pick the next sensible step; skip steps that are already done.\n"
            "3. Adapt if the page differs from what the plan expects.\n"
            "4. Do not repeat an action that already failed; try another route.\n"
            "5. Stop only when the original goal is fully accomplished.\n"
            "=== END MISSION CONTEXT ==="
        )

    # ── Action history ──────────────────────────────────────────────

    def log_action(self, session_id: str, record: ActionRecord) -> None:
        self._entry(session_id).history.append(record)

    def get_action_history(self, session_id: str) -> List[ActionRecord]:
        """Most recent actions, oldest first."""
        with self._lock:
            entry = self._entries.get(session_id)
        return list(entry.history) if entry else []

    def clear_action_history(self, session_id: str) -> None:
        with self._lock:
            entry = self._entries.get(session_id)
        if entry:
            entry.history.clear()

    # ── Lifecycle ───────────────────────────────────────────────────

    def clear_session(self, session_id: str) -> None:
        with self._lock:
            removed = self._entries.pop(session_id, None)
        if removed:
            logger.info(f"Cleared mission memory for session {session_id}")

    def clear_all_sessions(self) -> None:
        with self._lock:
            count = len(self._entries)
            self._entries.clear()
        logger.info(f"Cleared mission memory for {count} session(s)")

    def session_stats(self) -> dict:
        with self._lock:
            entries = dict(self._entries)
        return {
            "active_sessions": len(entries),
            "sessions": {
                sid: {
                    "action_count": e.memory.action_count if e.memory else 0,
                    "plan_steps": len(e.memory.plan) if e.memory else 0,
                    "history_size": len(e.history),
                }
                for sid, e in entries.items()
            },
        }
