"""User-facing descriptions of actions for the session log."""

from typing import List, Optional, Tuple
from urllib.parse import urlparse

from .types import ComputerCall, FunctionCall, Message, OutputItem, ReasoningItem

_SENSITIVE_WORDS = ("password", "secret", "token")

_BADGES = {
    "screenshot": "SCREENSHOT",
    "goto": "NAVIGATE",
    "navigate": "NAVIGATE",
    "back": "BACK",
    "click": "CLICK",
    "double_click": "DOUBLE CLICK",
    "type": "TYPE",
    "keypress": "KEYPRESS",
    "scroll": "SCROLL",
    "wait": "WAIT",
    "move": "MOVE",
    "drag": "DRAG",
    "extract_data": "READ",
    "message": "MESSAGE",
}


def format_tool_badge(tool: Optional[str]) -> str:
    if not tool:
        return "ACTION"
    return _BADGES.get(tool.lower(), tool.upper().replace("_", " "))


def _describe_url(url: str) -> str:
    parsed = urlparse(url if "://" in url else f"https://{url}")
    if not parsed.netloc:
        return url
    path = parsed.path if parsed.path not in ("", "/") else ""
    return f"{parsed.netloc}{path}"


def _as_number(value) -> float:
    try:
        return float(value or 0)
    except (TypeError, ValueError):
        return 0.0


def format_action_text(action: dict) -> str:
    """One-line description of a raw action or function-call argument dict."""
    kind = action.get("type") or action.get("tool") or ""

    if kind == "screenshot":
        return "Taking a screenshot to analyze the current page"
    if kind in ("goto", "navigate"):
        url = action.get("url")
        return f"Navigating to {_describe_url(str(url))}" if url else "Navigating to the webpage"
    if kind == "back":
        return "Going back to the previous page"
    if kind in ("click", "double_click"):
        verb = "Double-clicking" if kind == "double_click" else "Clicking"
        if "x" in action and "y" in action:
            return f"{verb} on an element at position ({action['x']}, {action['y']})"
        return f"{verb} on a page element"
    if kind == "type":
        text = str(action.get("text") or "")
        if any(word in text.lower() for word in _SENSITIVE_WORDS):
            return "Typing secure credentials"
        if 0 < len(text) < 100:
            return f'Typing "{text}" into a field'
        if text:
            return f"Typing text into a field ({len(text)} characters)"
        return "Typing text into a field"
    if kind == "keypress":
        keys = action.get("keys") or []
        if not isinstance(keys, (list, tuple)):
            keys = [keys]
        keys = [str(k) for k in keys]
        return f"Pressing {'+'.join(keys)} key{'s' if len(keys) > 1 else ''}"
    if kind == "scroll":
        scroll_x = _as_number(action.get("scroll_x"))
        scroll_y = _as_number(action.get("scroll_y"))
        if scroll_y > 0:
            return "Scrolling down the page"
        if scroll_y < 0:
            return "Scrolling up the page"
        if scroll_x:
            return "Scrolling horizontally"
        return "Scrolling the page"
    if kind == "wait":
        return "Waiting for the page to load"
    if kind == "move":
        return "Moving cursor to an element"
    if kind == "drag":
        return "Dragging an element on the page"
    if kind == "extract_data":
        return "Reading and analyzing page content"

    if action.get("url"):
        return f"Navigating to {action['url']}"
    if action.get("text"):
        return f"Performing action: {action['text']}"
    return "Performing a page action"


def describe_call(item) -> Tuple[str, str]:
    """(badge, instruction) for a computer or function call."""
    if isinstance(item, ComputerCall):
        return format_tool_badge(item.kind), format_action_text(item.action)
    if isinstance(item, FunctionCall):
        try:
            args = item.parsed_arguments()
        except ValueError:
            args = {}
        return format_tool_badge(item.name), format_action_text({**args, "type": item.name})
    return format_tool_badge(getattr(item, "type", None)), "Performing a page action"


def extract_reasoning_for_action(action_item: OutputItem, output: List[OutputItem]) -> Optional[str]:
    """Text of the nearest message or reasoning item preceding ``action_item``.

    Stops at the previous action, since reasoning sits right before its action.
    """
    index = next((i for i, item in enumerate(output) if item is action_item), -1)
    if index == -1:
        return None

    for item in reversed(output[:index]):
        if isinstance(item, (ComputerCall, FunctionCall)):
            break
        if isinstance(item, (Message, ReasoningItem)):
            text = " ".join(part.strip() for part in item.text.splitlines() if part.strip())
            if text:
                return text
    return None
