"""
Stall guard: recognises unproductive action patterns.

Works on the bounded action-history window kept by the mission memory
store. It only classifies and suggests recovery text; injecting that text
into the conversation is the action loop's job.

Checks run in priority order and the first match wins:
  1. repeated wait        N consecutive waits at the tail of history
  2. same click           clicks landing within a small radius of each other
  3. repeated typing      the same normalised text typed again
  4. circular nav         the same URL visited again and again
  5. inactivity           no meaningful action for too long
"""

import logging
import math
import time
from collections import Counter
from dataclasses import dataclass
from enum import Enum
from typing import Any, Optional, Sequence

from . import config
from .types import ActionKind, ActionRecord

logger = logging.getLogger(__name__)

CLICK_WINDOW = 5
TYPING_WINDOW = 4
NAVIGATION_WINDOW = 6
MIN_NAVIGATIONS = 3

_NON_MEANINGFUL = {ActionKind.WAIT, ActionKind.SCREENSHOT, ActionKind.MOVE}


class StallPattern(str, Enum):
    REPEATED_WAIT = "repeated_wait"
    SAME_CLICK = "same_click"
    REPEATED_TYPING = "repeated_typing"
    CIRCULAR_NAV = "circular_nav"
    STUCK_INACTIVITY = "stuck_inactivity"
    GENERAL_STUCK = "general_stuck"
    NONE = "none"


class Severity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


@dataclass(frozen=True)
class StallCheckResult:
    is_stuck: bool
    pattern: StallPattern = StallPattern.NONE
    reason: str = ""
    severity: Severity = Severity.LOW


NOT_STUCK = StallCheckResult(is_stuck=False)


def _distance(a: tuple, b: tuple) -> float:
    return math.hypot(a[0] - b[0], a[1] - b[1])


class StallGuard:
    """Stateless analyser over an action-history window."""

    def __init__(
        self,
        max_consecutive_waits: int = config.MAX_CONSECUTIVE_WAITS,
        max_identical_clicks: int = config.MAX_IDENTICAL_CLICKS,
        click_radius_px: float = config.CLICK_RADIUS_PX,
        max_repeated_text: int = config.MAX_REPEATED_TEXT,
        max_url_revisits: int = config.MAX_URL_REVISITS,
        max_inactivity_seconds: float = config.MAX_INACTIVITY_SECONDS,
    ):
        self.max_consecutive_waits = max_consecutive_waits
        self.max_identical_clicks = max_identical_clicks
        self.click_radius_px = click_radius_px
        self.max_repeated_text = max_repeated_text
        self.max_url_revisits = max_url_revisits
        self.max_inactivity_seconds = max_inactivity_seconds

    # ── Classification ──────────────────────────────────────────────

    def check_for_stall(
        self, history: Sequence[ActionRecord], now: Optional[float] = None
    ) -> StallCheckResult:
        """Classify the history window. ``now`` defaults to the wall clock."""
        if not history:
            return NOT_STUCK
        now = time.time() if now is None else now

        for check in (
            self._check_repeated_wait,
            self._check_same_click,
            self._check_repeated_typing,
            self._check_circular_navigation,
        ):
            result = check(history)
            if result.is_stuck:
                return result
        return self._check_inactivity(history, now)

    def _check_repeated_wait(self, history: Sequence[ActionRecord]) -> StallCheckResult:
        tail_waits = 0
        for record in reversed(history):
            if record.kind != ActionKind.WAIT:
                break
            tail_waits += 1
        if tail_waits >= self.max_consecutive_waits:
            return StallCheckResult(
                is_stuck=True,
                pattern=StallPattern.REPEATED_WAIT,
                reason=f"{tail_waits} consecutive wait actions without progress",
                severity=Severity.HIGH,
            )
        return NOT_STUCK

    def _check_same_click(self, history: Sequence[ActionRecord]) -> StallCheckResult:
        points = [
            tuple(r.details["coordinates"])
            for r in history
            if r.kind in (ActionKind.CLICK, ActionKind.DOUBLE_CLICK) and "coordinates" in r.details
        ][-CLICK_WINDOW:]
        if len(points) < 2:
            return NOT_STUCK

        for i in range(len(points) - 1):
            anchor = points[i]
            if _distance(anchor, points[i + 1]) >= self.click_radius_px:
                continue
            repeats = 1 + sum(
                1 for p in points[i + 1:] if _distance(anchor, p) < self.click_radius_px
            )
            if repeats >= self.max_identical_clicks:
                return StallCheckResult(
                    is_stuck=True,
                    pattern=StallPattern.SAME_CLICK,
                    reason=(
                        f"Clicked near ({anchor[0]:.0f}, {anchor[1]:.0f}) "
                        f"{repeats} times without effect"
                    ),
                    severity=Severity.HIGH,
                )
        return NOT_STUCK

    def _check_repeated_typing(self, history: Sequence[ActionRecord]) -> StallCheckResult:
        texts = [
            str(r.details["text"]).strip().lower()
            for r in history
            if r.kind == ActionKind.TYPE and r.details.get("text")
        ][-TYPING_WINDOW:]
        counts = Counter(t for t in texts if t)
        for text, count in counts.items():
            if count >= self.max_repeated_text:
                return StallCheckResult(
                    is_stuck=True,
                    pattern=StallPattern.REPEATED_TYPING,
                    reason=f"Typed the same text {count} times: {text[:40]!r}",
                    severity=Severity.MEDIUM,
                )
        return NOT_STUCK

    def _check_circular_navigation(self, history: Sequence[ActionRecord]) -> StallCheckResult:
        urls = [
            r.details["url"]
            for r in history
            if r.kind == ActionKind.GOTO and r.details.get("url")
        ][-NAVIGATION_WINDOW:]
        if len(urls) < MIN_NAVIGATIONS:
            return NOT_STUCK
        url, count = Counter(urls).most_common(1)[0]
        if count >= self.max_url_revisits:
            return StallCheckResult(
                is_stuck=True,
                pattern=StallPattern.CIRCULAR_NAV,
                reason=f"Visited {url} {count} times",
                severity=Severity.HIGH,
            )
        return NOT_STUCK

    def _check_inactivity(self, history: Sequence[ActionRecord], now: float) -> StallCheckResult:
        if any(r.kind not in _NON_MEANINGFUL for r in history):
            return NOT_STUCK
        idle = now - history[-1].timestamp
        if idle > self.max_inactivity_seconds:
            return StallCheckResult(
                is_stuck=True,
                pattern=StallPattern.STUCK_INACTIVITY,
                reason=f"No meaningful action for {idle:.0f}s",
                severity=Severity.HIGH,
            )
        return NOT_STUCK

    # ── Recovery text ───────────────────────────────────────────────

    @staticmethod
    def recovery_prompt(pattern: StallPattern, goal: str) -> str:
        """Goal-interpolated recovery instruction for ``pattern``, or "" for none."""
        if pattern == StallPattern.NONE:
            return ""
        template = config.RECOVERY_PROMPTS.get(pattern.value) or config.RECOVERY_PROMPTS["general_stuck"]
        return config.RECOVERY_PROMPT_PREFIX + template.format(goal=goal)

    # ── Recording ───────────────────────────────────────────────────

    @staticmethod
    def record_action(kind: ActionKind, args: Optional[dict] = None,
                      timestamp: Optional[float] = None) -> ActionRecord:
        """Build an ActionRecord keeping only the details relevant to ``kind``."""
        args = args or {}
        details: dict[str, Any] = {}
        if "x" in args and "y" in args:
            try:
                details["coordinates"] = (float(args["x"]), float(args["y"]))
            except (TypeError, ValueError):
                logger.debug(f"Non-numeric coordinates for {kind.value}: {args!r}")
        if args.get("text"):
            details["text"] = args["text"]
        if args.get("url"):
            details["url"] = args["url"]
        if args.get("keys"):
            details["keys"] = list(args["keys"])
        return ActionRecord(
            kind=kind,
            timestamp=time.time() if timestamp is None else timestamp,
            details=details,
        )
