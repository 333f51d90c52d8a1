"""
Mission runner: drives one session from objective to a terminal state.

Composes the agent primitives into the outer loop:

1. Substitute credentials, plan the mission while the browser connects
2. Seed mission memory and the opening developer/user messages
3. Loop: liveness poll → model turn → log each call → execute → stall check
4. Always release mission memory and the browser session, then report status

Terminal states are ``completed`` (the model stopped asking for actions),
``capped`` (action budget spent), ``paused`` (liveness poll said stop) and
``failed`` (anything unrecoverable).
"""

import asyncio
import json
import logging
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

from . import config
from .action_formatter import describe_call, extract_reasoning_for_action
from .agent import ComputerUseAgent, SafetyCheckPredicate, approve_all_safety_checks, resolve
from .browser import PlaywrightComputer
from .credentials import format_credentials_text, substitute_credentials
from .errors import (
    ActionExecutionError,
    BrowserSessionLostError,
    MissingCredentialsError,
    ModelEndpointError,
    SafetyCheckError,
)
from .model_client import ResponsesClient
from .models import InvokeResponse, SessionLogRecord, SessionStatus, SessionStatusUpdate
from .session_state import MissionMemoryStore
from .sqlite_store import RunRecorder
from .stall_guard import StallGuard
from .task_planner import TaskPlanner, fallback_steps
from .types import (
    ComputerCall,
    ComputerCallOutput,
    ConversationItem,
    FunctionCall,
    FunctionCallOutput,
    Message,
    OutputItem,
    developer_message,
    to_payload,
    user_message,
)

logger = logging.getLogger(__name__)

# Returns (or resolves to) False once the run should stop
LivenessCheck = Callable[[], Union[bool, Awaitable[bool]]]

START_MESSAGE = (
    "Begin autonomous execution now. Work through the task step by step without "
    "asking for confirmation, and stop once the task is complete."
)


class RunStatus(str, Enum):
    COMPLETED = "completed"
    CAPPED = "capped"
    PAUSED = "paused"
    FAILED = "failed"


_PERSISTED_STATUS = {
    RunStatus.COMPLETED: SessionStatus.completed,
    RunStatus.CAPPED: SessionStatus.completed,
    RunStatus.PAUSED: SessionStatus.stopped,
    RunStatus.FAILED: SessionStatus.failed,
}


# ── Data classes ───────────────────────────────────────────────────────────

@dataclass
class StepRecord:
    """One logged action, recorded before it was executed."""
    step_number: int
    timestamp: float
    tool: str
    instruction: str
    reasoning: str
    payload: Dict[str, Any]


@dataclass
class RunResult:
    """Complete record of a mission run."""
    run_id: str
    status: RunStatus = RunStatus.FAILED
    reason: str = ""
    started_at: float = 0.0
    completed_at: float = 0.0
    plan: List[str] = field(default_factory=list)
    steps: List[StepRecord] = field(default_factory=list)
    live_view_url: Optional[str] = None
    error: Optional[str] = None

    @property
    def duration_seconds(self) -> float:
        return self.completed_at - self.started_at if self.completed_at else 0.0

    @property
    def action_count(self) -> int:
        return len(self.steps)

    def to_response(self) -> InvokeResponse:
        return InvokeResponse(
            run_id=self.run_id,
            status=self.status.value,
            reason=self.reason,
            action_count=self.action_count,
            plan=self.plan,
            duration_seconds=round(self.duration_seconds, 2),
            live_view_url=self.live_view_url,
        )


# ── Failure descriptions ──────────────────────────────────────────────────

def describe_failure(exc: BaseException) -> str:
    """Map an exception to a reason suitable for showing to a user."""
    if isinstance(exc, SafetyCheckError):
        return f"Stopped by a safety check: {exc}"
    if isinstance(exc, BrowserSessionLostError):
        return "The browser session was lost and could not be reconnected."
    if isinstance(exc, MissingCredentialsError):
        return str(exc)

    message = str(exc)
    lowered = message.lower()
    status_code = getattr(exc, "status_code", None)

    if status_code == 402 or "402" in message or "plan limit" in lowered:
        return "The browser provider refused a new session: the account's plan limit was reached."
    if "invalid url" in lowered or "err_invalid_url" in lowered:
        return "The agent tried to open an invalid URL."
    if "err_aborted" in lowered:
        return "The page aborted a navigation. The site may be blocking automated access."
    if status_code == 401:
        return "The model endpoint rejected the API key."
    if status_code == 429:
        return "The model endpoint is rate limiting requests. Try again in a few minutes."
    if status_code == 400 and "no tool output found" in lowered:
        return "The model conversation fell out of sync (a tool call had no output)."
    if "target closed" in lowered or "browser has been closed" in lowered or "browser closed" in lowered:
        return "The browser was closed unexpectedly."
    if isinstance(exc, ModelEndpointError):
        return f"Model endpoint error: {message[:200]}"
    return f"{type(exc).__name__}: {message}" if message else type(exc).__name__


def _iso(timestamp: float) -> str:
    return datetime.fromtimestamp(timestamp, timezone.utc).isoformat()


# ── Runner ─────────────────────────────────────────────────────────────────

class MissionRunner:
    """Runs missions against one browser computer.

    The computer is exclusively owned by the run; build a new runner (and
    computer) per run.
    """

    def __init__(
        self,
        model_client: ResponsesClient,
        computer: PlaywrightComputer,
        memory: MissionMemoryStore,
        planner: Optional[TaskPlanner] = None,
        recorder: Optional[RunRecorder] = None,
        stall_guard: Optional[StallGuard] = None,
        safety_check: SafetyCheckPredicate = approve_all_safety_checks,
        max_actions: int = config.MAX_ACTIONS,
        model: str = config.CUA_MODEL,
        enable_mission_memory: bool = config.ENABLE_MISSION_MEMORY,
        enable_stall_detection: bool = config.ENABLE_STALL_DETECTION,
        enable_auto_recovery: bool = config.ENABLE_AUTO_RECOVERY,
        enable_extraction: bool = config.ENABLE_EXTRACTION,
        ready_timeout: float = config.BROWSER_READY_TIMEOUT_SECONDS,
        goal_chars: int = config.GOAL_SUMMARY_CHARS,
    ):
        self.model_client = model_client
        self.computer = computer
        self.memory = memory
        self.planner = planner
        self.recorder = recorder
        self.stall_guard = stall_guard or StallGuard()
        self.safety_check = safety_check
        self.max_actions = max_actions
        self.model = model
        self.enable_mission_memory = enable_mission_memory
        self.enable_stall_detection = enable_stall_detection
        self.enable_auto_recovery = enable_auto_recovery
        self.enable_extraction = enable_extraction
        self.ready_timeout = ready_timeout
        self.goal_chars = goal_chars

    async def run(
        self,
        objective: str,
        run_id: Optional[str] = None,
        tenant_id: Optional[str] = None,
        platform: Optional[str] = None,
        credentials: Optional[Dict[str, str]] = None,
        should_continue: Optional[LivenessCheck] = None,
    ) -> RunResult:
        """Execute one mission end-to-end. Never raises for run failures."""
        run_id = run_id or f"run_{uuid.uuid4().hex[:12]}"
        credentials = credentials or {}
        result = RunResult(run_id=run_id, started_at=time.time(), reason="Run interrupted")
        logger.info(f"[{run_id}] Starting mission: {objective[:100]}...")

        try:
            prompt = substitute_credentials(objective, credentials)

            # Planning only sees the objective with placeholders intact
            plan, _ = await asyncio.gather(
                self._plan(objective, tenant_id, platform),
                self.computer.connect(),
            )
            await self.computer.wait_until_ready(self.ready_timeout)
            result.plan = plan
            result.live_view_url = await self.computer.live_view_url()

            if self.enable_mission_memory and plan:
                self.memory.set_mission_memory(run_id, objective.strip()[: self.goal_chars], plan)

            await self._loop(run_id, prompt, credentials, result, should_continue)

        except Exception as e:
            result.status = RunStatus.FAILED
            result.reason = describe_failure(e)
            result.error = f"{type(e).__name__}: {e}" if str(e) else type(e).__name__
            logger.error(f"[{run_id}] Mission failed: {result.error}")
        finally:
            self.memory.clear_session(run_id)
            try:
                await self.computer.disconnect(
                    login_completed=result.status in (RunStatus.COMPLETED, RunStatus.CAPPED)
                )
            except Exception as e:
                logger.warning(f"[{run_id}] Error disconnecting browser: {e}")
            result.completed_at = time.time()
            await self._record_status(result)

        logger.info(
            f"[{run_id}] Finished: status={result.status.value}, "
            f"actions={result.action_count}, duration={result.duration_seconds:.1f}s"
        )
        return result

    async def _plan(self, objective: str, tenant_id: Optional[str], platform: Optional[str]) -> List[str]:
        if self.planner is None:
            return fallback_steps(objective)
        return await self.planner.generate_browser_steps(objective, tenant_id, platform)

    async def _loop(
        self,
        run_id: str,
        prompt: str,
        credentials: Dict[str, str],
        result: RunResult,
        should_continue: Optional[LivenessCheck],
    ) -> None:
        agent = ComputerUseAgent(
            model_client=self.model_client,
            computer=self.computer,
            memory=self.memory,
            session_id=run_id,
            safety_check=self.safety_check,
            model=self.model,
            enable_extraction=self.enable_extraction,
            enable_mission_memory=self.enable_mission_memory,
        )

        task_text = prompt
        if credentials:
            task_text += "\n\nAVAILABLE CREDENTIALS:\n" + format_credentials_text(credentials)
        transcript: List[ConversationItem] = [developer_message(task_text), user_message(START_MESSAGE)]
        # Items since the last model call; earlier turns are carried by the continuation token
        pending: List[ConversationItem] = list(transcript)
        previous_response_id: Optional[str] = None

        while True:
            if result.action_count >= self.max_actions:
                result.status = RunStatus.CAPPED
                result.reason = f"Reached the limit of {self.max_actions} actions"
                return
            if not await self._still_allowed(should_continue):
                result.status = RunStatus.PAUSED
                result.reason = "Run paused"
                return
            if self.computer.expired:
                result.status = RunStatus.FAILED
                result.reason = "The browser session reached its time limit."
                return

            output, previous_response_id = await agent.get_action(pending, previous_response_id)
            transcript.extend(output)

            calls = [item for item in output if isinstance(item, (ComputerCall, FunctionCall))]
            if not calls:
                result.status = RunStatus.COMPLETED
                result.reason = self._final_message(output) or "Task completed"
                return

            turn = self._within_budget(output, self.max_actions - result.action_count)
            turn_calls = [item for item in turn if isinstance(item, (ComputerCall, FunctionCall))]
            for call in turn_calls:
                await self._log_step(run_id, call, output, result)

            try:
                outputs = await agent.take_action(turn)
            except ActionExecutionError as e:
                logger.warning(f"[{run_id}] Action error fed back to the model: {e}")
                outputs = list(e.completed_outputs) + await self._answer_unexecuted(e.unanswered, str(e))
                outputs.append(developer_message(
                    f"Action execution encountered an error: {e}. "
                    "Please try a different approach or skip this action if not critical."
                ))

            for _ in turn_calls:
                self.memory.increment_action_count(run_id)

            transcript.extend(outputs)
            pending = list(outputs)

            recovery = self._stall_recovery(run_id, prompt)
            if recovery is not None:
                transcript.append(recovery)
                pending.append(recovery)

    @staticmethod
    def _within_budget(output: List[OutputItem], budget: int) -> List[OutputItem]:
        """Output items up to and including the ``budget``-th call."""
        seen = 0
        for index, item in enumerate(output):
            if isinstance(item, (ComputerCall, FunctionCall)):
                seen += 1
                if seen == budget:
                    return list(output[: index + 1])
        return list(output)

    @staticmethod
    def _final_message(output: List[OutputItem]) -> str:
        texts = [item.text for item in output if isinstance(item, Message) and item.text]
        return texts[-1][:500] if texts else ""

    async def _still_allowed(self, should_continue: Optional[LivenessCheck]) -> bool:
        if should_continue is None:
            return True
        return bool(await resolve(should_continue()))

    async def _answer_unexecuted(self, calls: List[OutputItem], error: str) -> List[ConversationItem]:
        """Outputs for calls that failed or never ran, keeping calls and outputs paired."""
        outputs: List[ConversationItem] = []
        screenshot: Optional[str] = None
        for call in calls:
            if isinstance(call, FunctionCall):
                outputs.append(FunctionCallOutput(
                    call_id=call.call_id,
                    output=json.dumps({"status": "error", "error": error}),
                ))
            elif isinstance(call, ComputerCall):
                if screenshot is None:
                    screenshot = await self._screenshot_after_error()
                outputs.append(ComputerCallOutput.from_screenshot(call.call_id, screenshot))
        return outputs

    async def _screenshot_after_error(self) -> str:
        """Fresh screenshot once the transport is back, else the last one taken.

        Only an exhausted reconnection (``BrowserSessionLostError``) escapes.
        """
        try:
            await self.computer.ensure_connected()
            return await self.computer.screenshot(force_refresh=True)
        except BrowserSessionLostError:
            raise
        except Exception as e:
            if self.computer.last_screenshot is None:
                raise
            logger.warning(f"Screenshot after action error failed, reusing the previous one: {e}")
            return self.computer.last_screenshot

    def _stall_recovery(self, run_id: str, prompt: str) -> Optional[Message]:
        if not self.enable_stall_detection:
            return None
        check = self.stall_guard.check_for_stall(self.memory.get_action_history(run_id))
        if not check.is_stuck:
            return None

        logger.warning(f"[{run_id}] Stall detected ({check.pattern.value}, {check.severity.value}): {check.reason}")
        if not self.enable_auto_recovery:
            return None

        mission = self.memory.get_mission_memory(run_id)
        goal = mission.original_goal if mission else prompt[: self.goal_chars]
        self.memory.clear_action_history(run_id)
        return developer_message(StallGuard.recovery_prompt(check.pattern, goal))

    # ── Recording ───────────────────────────────────────────────────

    async def _log_step(self, run_id: str, call: OutputItem, output: List[OutputItem], result: RunResult) -> None:
        tool, instruction = describe_call(call)
        step = StepRecord(
            step_number=result.action_count + 1,
            timestamp=time.time(),
            tool=tool,
            instruction=instruction,
            reasoning=extract_reasoning_for_action(call, output) or "",
            payload=to_payload(call),
        )
        result.steps.append(step)
        logger.info(f"[{run_id}] Step {step.step_number}: {tool} {instruction}")

        if self.recorder is None:
            return
        try:
            await self.recorder.log_action(SessionLogRecord(
                session_id=run_id,
                step_number=step.step_number,
                tool=tool,
                instruction=instruction,
                reasoning=step.reasoning,
                payload=step.payload,
            ))
        except Exception as e:
            logger.warning(f"[{run_id}] Could not record step {step.step_number}: {e}")

    async def _record_status(self, result: RunResult) -> None:
        if self.recorder is None:
            return
        status = _PERSISTED_STATUS[result.status]
        try:
            await self.recorder.update_status(SessionStatusUpdate(
                session_id=result.run_id,
                status=status,
                started_at=_iso(result.started_at),
                completed_at=_iso(result.completed_at),
                step_count=result.action_count,
                summary=result.reason,
                error_message=result.error if status == SessionStatus.failed else None,
            ))
        except Exception as e:
            logger.warning(f"[{result.run_id}] Could not record final status: {e}")
