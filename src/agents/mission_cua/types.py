"""
Action schema shared by the action loop and the model endpoint.

Items the model emits (messages, reasoning, computer calls, function calls)
and the outputs the loop sends back (screenshots for computer calls, text for
function calls). Every executed call must be answered by exactly one output
with the same ``call_id``, in the order the calls were received.
"""

import json
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, Field, TypeAdapter, ValidationError

from .errors import UnsupportedActionError

logger = logging.getLogger(__name__)


# ── Action kinds ───────────────────────────────────────────────────────────

class ActionKind(str, Enum):
    """Closed set of actions recorded into mission memory."""
    CLICK = "click"
    DOUBLE_CLICK = "double_click"
    SCROLL = "scroll"
    TYPE = "type"
    WAIT = "wait"
    KEYPRESS = "keypress"
    DRAG = "drag"
    SCREENSHOT = "screenshot"
    MOVE = "move"
    GOTO = "goto"
    BACK = "back"


@dataclass(frozen=True)
class ActionRecord:
    """One executed action, as seen by the stall guard."""
    kind: ActionKind
    timestamp: float = field(default_factory=time.time)
    details: Dict[str, Any] = field(default_factory=dict)


# ── Computer actions ───────────────────────────────────────────────────────

class Point(BaseModel):
    x: float
    y: float


class ClickAction(BaseModel):
    type: Literal["click"] = "click"
    button: Literal["left", "right", "middle", "wheel", "back", "forward"] = "left"
    x: float
    y: float


class DoubleClickAction(BaseModel):
    type: Literal["double_click"] = "double_click"
    x: float
    y: float


class ScrollAction(BaseModel):
    type: Literal["scroll"] = "scroll"
    x: float
    y: float
    scroll_x: float = 0
    scroll_y: float = 0


class TypeAction(BaseModel):
    type: Literal["type"] = "type"
    text: str


class WaitAction(BaseModel):
    type: Literal["wait"] = "wait"
    ms: Optional[int] = None


class KeypressAction(BaseModel):
    type: Literal["keypress"] = "keypress"
    keys: List[str] = Field(..., min_length=1)


class DragAction(BaseModel):
    type: Literal["drag"] = "drag"
    path: List[Point] = Field(..., min_length=1)


class ScreenshotAction(BaseModel):
    type: Literal["screenshot"] = "screenshot"


class MoveAction(BaseModel):
    type: Literal["move"] = "move"
    x: float
    y: float


ComputerAction = Annotated[
    Union[
        ClickAction, DoubleClickAction, ScrollAction, TypeAction, WaitAction,
        KeypressAction, DragAction, ScreenshotAction, MoveAction,
    ],
    Field(discriminator="type"),
]

_computer_action_adapter = TypeAdapter(ComputerAction)


# ── Items exchanged with the model ─────────────────────────────────────────

class SafetyCheck(BaseModel):
    id: str
    code: Optional[str] = None
    message: str = ""


class Message(BaseModel):
    type: Literal["message"] = "message"
    role: Literal["user", "assistant", "developer", "system"]
    content: Union[str, List[Dict[str, Any]]]
    id: Optional[str] = None

    @property
    def text(self) -> str:
        if isinstance(self.content, str):
            return self.content
        return "\n".join(part.get("text", "") for part in self.content if part.get("text"))


class ReasoningItem(BaseModel):
    type: Literal["reasoning"] = "reasoning"
    id: Optional[str] = None
    summary: List[Dict[str, Any]] = Field(default_factory=list)
    content: List[Dict[str, Any]] = Field(default_factory=list)

    @property
    def text(self) -> str:
        parts = self.summary or self.content
        return "\n".join(part.get("text", "") for part in parts if part.get("text"))


class ComputerCall(BaseModel):
    type: Literal["computer_call"] = "computer_call"
    id: Optional[str] = None
    call_id: str
    action: Dict[str, Any]
    pending_safety_checks: List[SafetyCheck] = Field(default_factory=list)

    @property
    def kind(self) -> str:
        return str(self.action.get("type", ""))

    def parsed_action(self):
        """Validate the raw action against the closed action union."""
        try:
            return _computer_action_adapter.validate_python(self.action)
        except ValidationError as e:
            raise UnsupportedActionError(
                f"Invalid computer action {self.kind!r}: {e.errors()[0].get('msg', e)}"
            ) from e


class FunctionCall(BaseModel):
    type: Literal["function_call"] = "function_call"
    id: Optional[str] = None
    call_id: str
    name: str
    arguments: str = "{}"

    def parsed_arguments(self) -> dict:
        if not self.arguments or not self.arguments.strip():
            return {}
        args = json.loads(self.arguments)
        if not isinstance(args, dict):
            raise ValueError(f"Arguments for {self.name} must be a JSON object")
        return args


class InputImage(BaseModel):
    type: Literal["input_image"] = "input_image"
    image_url: str


class ComputerCallOutput(BaseModel):
    type: Literal["computer_call_output"] = "computer_call_output"
    call_id: str
    acknowledged_safety_checks: List[SafetyCheck] = Field(default_factory=list)
    output: InputImage

    @classmethod
    def from_screenshot(cls, call_id: str, screenshot_b64: str,
                        acknowledged: Optional[List[SafetyCheck]] = None) -> "ComputerCallOutput":
        return cls(
            call_id=call_id,
            acknowledged_safety_checks=acknowledged or [],
            output=InputImage(image_url=f"data:image/png;base64,{screenshot_b64}"),
        )


class FunctionCallOutput(BaseModel):
    type: Literal["function_call_output"] = "function_call_output"
    call_id: str
    output: str


OutputItem = Union[Message, ReasoningItem, ComputerCall, FunctionCall]
ConversationItem = Union[Message, ReasoningItem, ComputerCall, FunctionCall,
                         ComputerCallOutput, FunctionCallOutput]

_ITEM_TYPES: Dict[str, type] = {
    "message": Message,
    "reasoning": ReasoningItem,
    "computer_call": ComputerCall,
    "function_call": FunctionCall,
}


def parse_output_item(raw: Dict[str, Any]) -> Optional[OutputItem]:
    """Turn one raw endpoint item into its model; unknown item types yield None."""
    item_type = raw.get("type")
    model = _ITEM_TYPES.get(item_type)
    if model is None:
        logger.warning(f"Ignoring unsupported output item type: {item_type!r}")
        return None
    return model.model_validate(raw)


def to_payload(item: Union[BaseModel, Dict[str, Any]]) -> Dict[str, Any]:
    """Serialise an item for the request body."""
    if isinstance(item, BaseModel):
        return item.model_dump(exclude_none=True)
    return item


def developer_message(text: str) -> Message:
    return Message(role="developer", content=text)


def user_message(text: str) -> Message:
    return Message(role="user", content=text)
