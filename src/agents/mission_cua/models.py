from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional
import uuid

from pydantic import BaseModel, Field


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


class AuthContextRecord(BaseModel):
    """Saved provider-side browser profile reused across runs for one platform."""
    id: str = Field(default_factory=lambda: f"ctx_{uuid.uuid4().hex[:16]}")
    tenant_id: str = Field(..., description="Owner of the saved login state")
    platform: str = Field(..., description="Target platform, e.g. linkedin")
    context_id: str = Field(..., description="Provider-issued context id")
    created_at: str = Field(default_factory=_now)
    last_used_at: Optional[str] = Field(default=None, description="Set when a run using this context ends")
    first_login_at: Optional[str] = Field(default=None, description="First run that completed a login")
    last_login_at: Optional[str] = None
    login_attempts: int = 0
    is_active: bool = True


class SessionStatus(str, Enum):
    completed = "completed"
    failed = "failed"
    stopped = "stopped"


class SessionLogRecord(BaseModel):
    """One action, logged before it is executed."""
    id: str = Field(default_factory=lambda: f"log_{uuid.uuid4().hex[:16]}")
    session_id: str
    step_number: int = Field(..., ge=1)
    tool: str = Field(..., description="Short tool label, e.g. Click")
    instruction: str = Field(..., description="Human-readable description of the action")
    reasoning: str = ""
    payload: Dict[str, Any] = Field(default_factory=dict, description="Raw action item")
    created_at: str = Field(default_factory=_now)


class SessionStatusUpdate(BaseModel):
    """Terminal status reported when a run ends."""
    session_id: str
    status: SessionStatus
    started_at: str
    completed_at: str = Field(default_factory=_now)
    step_count: int = 0
    summary: str = ""
    error_message: Optional[str] = None


# ── Run invocation API ─────────────────────────────────────────────────────

class InvokeRequest(BaseModel):
    objective: str = Field(..., min_length=1)
    tenant_id: str = "default"
    target_website: Optional[str] = None
    platform: Optional[str] = None
    session_id: Optional[str] = Field(default=None, description="Re-attach to an existing remote session")
    max_actions: Optional[int] = Field(default=None, ge=1)
    credentials: Dict[str, str] = Field(default_factory=dict)


class InvokeResponse(BaseModel):
    run_id: str
    status: str
    reason: str = ""
    action_count: int = 0
    plan: List[str] = Field(default_factory=list)
    duration_seconds: float = 0.0
    live_view_url: Optional[str] = None
