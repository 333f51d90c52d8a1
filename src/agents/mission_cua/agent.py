"""
Computer Use Agent: one model turn at a time.

``get_action`` sends the conversation (prefixed with mission context) and the
tool manifest to the computer-use model. ``take_action`` executes the calls
it returns, strictly in order, against the browser computer and produces the
matching outputs. The outer loop lives in ``runner.py``.
"""

import inspect
import json
import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, Tuple, Union

from . import config
from .browser import PlaywrightComputer
from .errors import (
    ActionExecutionError,
    BrowserSessionLostError,
    SafetyCheckError,
    UnsupportedActionError,
)
from .model_client import ResponsesClient
from .session_state import MissionMemoryStore
from .stall_guard import StallGuard
from .types import (
    ActionKind,
    ClickAction,
    ComputerCall,
    ComputerCallOutput,
    ConversationItem,
    DoubleClickAction,
    DragAction,
    FunctionCall,
    FunctionCallOutput,
    KeypressAction,
    Message,
    MoveAction,
    OutputItem,
    ReasoningItem,
    SafetyCheck,
    ScreenshotAction,
    ScrollAction,
    TypeAction,
    WaitAction,
    developer_message,
    parse_output_item,
    to_payload,
)

logger = logging.getLogger(__name__)

# Receives the safety-check message; returns (or resolves to) True to approve
SafetyCheckPredicate = Callable[[str], Union[bool, Awaitable[bool]]]

DEFAULT_WAIT_MS = 1000

_FUNCTION_ACTION_KINDS = {"goto": ActionKind.GOTO, "back": ActionKind.BACK}


async def resolve(value: Any) -> Any:
    """Await ``value`` if it is awaitable, else return it as is."""
    if inspect.isawaitable(value):
        return await value
    return value


def approve_all_safety_checks(message: str) -> bool:
    logger.warning(f"Auto-acknowledging safety check: {message}")
    return True


class ComputerUseAgent:
    """Turns model output into browser actions for one session."""

    def __init__(
        self,
        model_client: ResponsesClient,
        computer: PlaywrightComputer,
        memory: MissionMemoryStore,
        session_id: str,
        safety_check: SafetyCheckPredicate = approve_all_safety_checks,
        model: str = config.CUA_MODEL,
        enable_extraction: bool = config.ENABLE_EXTRACTION,
        enable_mission_memory: bool = config.ENABLE_MISSION_MEMORY,
    ):
        self.model_client = model_client
        self.computer = computer
        self.memory = memory
        self.session_id = session_id
        self.safety_check = safety_check
        self.model = model
        self.enable_extraction = enable_extraction
        self.enable_mission_memory = enable_mission_memory

        self._computer_handlers: Dict[str, Callable[[Any], Awaitable[None]]] = {
            "click": self._click,
            "double_click": self._double_click,
            "scroll": self._scroll,
            "type": self._type,
            "wait": self._wait,
            "keypress": self._keypress,
            "drag": self._drag,
            "screenshot": self._screenshot,
            "move": self._move,
        }
        self._function_handlers: Dict[str, Callable[[dict], Awaitable[Any]]] = {
            "goto": self._goto,
            "back": self._back,
        }
        if enable_extraction:
            self._function_handlers["extract_data"] = self._extract_data

    # ── Tool manifest ───────────────────────────────────────────────

    def tools(self) -> List[dict]:
        width, height = self.computer.dimensions
        tools = [
            {
                "type": "computer_use_preview",
                "display_width": width,
                "display_height": height,
                "environment": self.computer.environment,
            },
            {
                "type": "function",
                "name": "back",
                "description": "Go back to the previous page.",
                "parameters": {"type": "object", "properties": {}, "additionalProperties": False},
            },
            {
                "type": "function",
                "name": "goto",
                "description": "Go to a specific URL.",
                "parameters": {
                    "type": "object",
                    "properties": {
                        "url": {"type": "string", "description": "Fully qualified URL to navigate to."},
                    },
                    "additionalProperties": False,
                    "required": ["url"],
                },
            },
        ]
        if self.enable_extraction:
            tools.append({
                "type": "function",
                "name": "extract_data",
                "description": (
                    "Extract records from the current page. Use mode 'structured' with CSS "
                    "selectors for repeated elements, or 'smart' with keywords to collect "
                    "matching lines of visible text."
                ),
                "parameters": {
                    "type": "object",
                    "properties": {
                        "mode": {"type": "string", "enum": ["structured", "smart"]},
                        "data_type": {"type": "string", "description": "What is being collected, e.g. profiles"},
                        "selectors": {
                            "type": "object",
                            "properties": {
                                "container": {"type": "string"},
                                "fields": {"type": "object", "additionalProperties": {"type": "string"}},
                            },
                        },
                        "keywords": {"type": "array", "items": {"type": "string"}},
                        "max_records": {"type": "integer"},
                    },
                    "required": ["mode"],
                },
            })
        return tools

    # ── Model call ──────────────────────────────────────────────────

    async def get_action(
        self,
        items: Sequence[ConversationItem],
        previous_response_id: Optional[str] = None,
    ) -> Tuple[List[OutputItem], Optional[str]]:
        """Ask the model for its next action(s).

        Returns the parsed output items and the new continuation token.
        """
        request_items: List[ConversationItem] = []
        if self.enable_mission_memory:
            mission_context = self.memory.format_for_prompt(self.session_id)
            if mission_context:
                request_items.append(developer_message(mission_context))
        request_items.extend(items)

        payload: Dict[str, Any] = {
            "model": self.model,
            "input": [to_payload(item) for item in request_items],
            "tools": self.tools(),
            "truncation": "auto",
        }
        if previous_response_id:
            payload["previous_response_id"] = previous_response_id

        response = await self.model_client.create_response(payload)
        output = []
        for raw in response.output:
            parsed = parse_output_item(raw)
            if parsed is not None:
                output.append(parsed)
        logger.info(
            f"[{self.session_id}] Model returned {len(output)} item(s) "
            f"(response={response.response_id}, retries={response.retry_count}, "
            f"tokens in={response.usage.get('input_tokens', 0)} out={response.usage.get('output_tokens', 0)})"
        )
        return output, response.response_id

    # ── Execution ───────────────────────────────────────────────────

    async def take_action(self, output_items: Sequence[OutputItem]) -> List[ConversationItem]:
        """Execute calls in order and return one output per call.

        Safety-check rejection and session loss propagate as is; any other
        failure is wrapped in ActionExecutionError carrying the outputs
        produced so far and the calls still unanswered.
        """
        outputs: List[ConversationItem] = []
        for index, item in enumerate(output_items):
            if isinstance(item, Message):
                logger.info(f"[{self.session_id}] Model message: {item.text[:200]}")
                continue
            if isinstance(item, ReasoningItem):
                continue
            try:
                if isinstance(item, ComputerCall):
                    outputs.append(await self._run_computer_call(item))
                elif isinstance(item, FunctionCall):
                    outputs.append(await self._run_function_call(item))
            except (SafetyCheckError, BrowserSessionLostError):
                raise
            except Exception as e:
                error_detail = f"{type(e).__name__}: {e}" if str(e) else type(e).__name__
                logger.warning(f"[{self.session_id}] Action failed: {error_detail}")
                unanswered = [
                    call for call in output_items[index:]
                    if isinstance(call, (ComputerCall, FunctionCall))
                ]
                raise ActionExecutionError(error_detail, outputs, unanswered) from e
        return outputs

    async def _run_computer_call(self, call: ComputerCall) -> ComputerCallOutput:
        action = call.parsed_action()
        handler = self._computer_handlers.get(action.type)
        if handler is None:
            raise UnsupportedActionError(f"Unsupported computer action: {action.type!r}")

        await self.computer.ensure_connected()
        await handler(action)
        self.memory.log_action(
            self.session_id,
            StallGuard.record_action(ActionKind(action.type), action.model_dump()),
        )

        # Pointer movement does not change what is on screen
        screenshot = await self.computer.screenshot(force_refresh=action.type != "move")

        acknowledged: List[SafetyCheck] = []
        for check in call.pending_safety_checks:
            approved = await resolve(self.safety_check(check.message))
            if not approved:
                raise SafetyCheckError(f"Safety check failed: {check.message}")
            acknowledged.append(check)

        return ComputerCallOutput.from_screenshot(call.call_id, screenshot, acknowledged)

    async def _run_function_call(self, call: FunctionCall) -> FunctionCallOutput:
        handler = self._function_handlers.get(call.name)
        if handler is None:
            raise UnsupportedActionError(f"Unsupported function: {call.name!r}")

        args = call.parsed_arguments()
        await self.computer.ensure_connected()
        result = await handler(args)

        kind = _FUNCTION_ACTION_KINDS.get(call.name)
        if kind is not None:
            self.memory.log_action(self.session_id, StallGuard.record_action(kind, args))

        if isinstance(result, str):
            output = result
        else:
            output = json.dumps(result if result is not None else {"status": "success"})
        return FunctionCallOutput(call_id=call.call_id, output=output)

    # ── Computer action handlers ────────────────────────────────────

    async def _click(self, action: ClickAction) -> None:
        await self.computer.click(action.x, action.y, action.button)

    async def _double_click(self, action: DoubleClickAction) -> None:
        await self.computer.double_click(action.x, action.y)

    async def _scroll(self, action: ScrollAction) -> None:
        await self.computer.scroll(action.x, action.y, action.scroll_x, action.scroll_y)

    async def _type(self, action: TypeAction) -> None:
        await self.computer.type(action.text)

    async def _wait(self, action: WaitAction) -> None:
        await self.computer.wait(action.ms or DEFAULT_WAIT_MS)

    async def _keypress(self, action: KeypressAction) -> None:
        await self.computer.keypress(action.keys)

    async def _drag(self, action: DragAction) -> None:
        await self.computer.drag(action.path)

    async def _screenshot(self, action: ScreenshotAction) -> None:
        pass

    async def _move(self, action: MoveAction) -> None:
        await self.computer.move(action.x, action.y)

    # ── Function handlers ───────────────────────────────────────────

    async def _goto(self, args: dict) -> Any:
        url = args.get("url")
        if not url:
            raise ValueError("goto requires a 'url' argument")
        return await self.computer.goto(url)

    async def _back(self, args: dict) -> Any:
        return await self.computer.back()

    async def _extract_data(self, args: dict) -> Any:
        return await self.computer.extract_data(args)
