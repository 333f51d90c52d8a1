"""
Mission Agent Server

Exposes the mission runner as an HTTP endpoint. Each POST /invoke drives one
browser session from objective to a terminal state; runs are independent and
may execute concurrently.

Start with:
  python -m src.agents.mission_cua.server

Environment variables (all optional, see config.py for defaults):
  ── Model ─────────────────────────────────────────────────────────────────
  OPENAI_API_KEY       Key for the computer-use model and the planner
  CUA_MODEL            Computer-use model      (default: computer-use-preview)
  ── Browser ───────────────────────────────────────────────────────────────
  BROWSER_PROVIDER     "browserbase" (default) or "local"
  BROWSERBASE_API_KEY  Browserbase API key
  BROWSERBASE_PROJECT_ID
  ── Loop ──────────────────────────────────────────────────────────────────
  MAX_ACTIONS          Action budget per run   (default: 100)
  AGENT_PORT           Server port             (default: 8001)
"""

import logging
import time
import uuid
from dataclasses import dataclass
from typing import Dict, Optional

from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware

from . import config
from .browser import LocalPlaywrightComputer, PlaywrightComputer
from .model_client import ResponsesClient
from .models import InvokeRequest, InvokeResponse
from .remote_session import BrowserbaseClient, BrowserbaseComputer, rotate_auth_context
from .runner import MissionRunner, RunStatus, describe_failure
from .session_state import MissionMemoryStore
from .sqlite_store import SQLiteStore
from .task_planner import TaskPlanner, extract_platform_name

logging.basicConfig(level=logging.INFO, format="%(asctime)s [%(name)s] %(levelname)s: %(message)s")
logger = logging.getLogger(__name__)

# ── FastAPI App ───────────────────────────────────────────────────────────

app = FastAPI(
    title="Mission Agent",
    description="Computer-use browser agent with mission memory and stall recovery",
    version="1.0.0",
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=config.CORS_ORIGINS,
    allow_methods=["*"],
    allow_headers=["*"],
)

# ── Shared collaborators ──────────────────────────────────────────────────

_memory = MissionMemoryStore()
_store = SQLiteStore()
_planner: Optional[TaskPlanner] = None


def get_planner() -> TaskPlanner:
    """Return (or lazily create) the planner; the OpenAI client needs a key at construction."""
    global _planner
    if _planner is None:
        _planner = TaskPlanner(auth_store=_store)
    return _planner


def build_computer(request: InvokeRequest, platform: Optional[str]) -> PlaywrightComputer:
    if config.BROWSER_PROVIDER == "local":
        return LocalPlaywrightComputer()
    return BrowserbaseComputer(
        BrowserbaseClient(),
        auth_store=_store,
        tenant_id=request.tenant_id,
        platform=platform,
        session_id=request.session_id,
    )


def build_runner(request: InvokeRequest, platform: Optional[str]) -> MissionRunner:
    return MissionRunner(
        model_client=ResponsesClient(),
        computer=build_computer(request, platform),
        memory=_memory,
        planner=get_planner(),
        recorder=_store,
        max_actions=request.max_actions or config.MAX_ACTIONS,
    )


# ── Run tracking ──────────────────────────────────────────────────────────

@dataclass
class ActiveRun:
    run_id: str
    objective: str
    started_at: float
    allowed: bool = True


_active_runs: Dict[str, ActiveRun] = {}


# ── Endpoints ─────────────────────────────────────────────────────────────

@app.get("/health")
async def health():
    return {
        "status": "ok",
        "agent": "mission-cua",
        "model": config.CUA_MODEL,
        "browser_provider": config.BROWSER_PROVIDER,
        "active_runs": len(_active_runs),
    }


@app.post("/invoke", response_model=InvokeResponse)
async def invoke(request: InvokeRequest):
    """Run one mission to completion and return its result."""
    run_id = f"run_{uuid.uuid4().hex[:12]}"
    platform = request.platform or extract_platform_name(request.target_website, request.credentials.keys())
    active = ActiveRun(run_id=run_id, objective=request.objective, started_at=time.time())
    _active_runs[run_id] = active
    logger.info(f"[{run_id}] Queued (tenant={request.tenant_id}, platform={platform}): {request.objective[:100]}...")

    try:
        runner = build_runner(request, platform)
        result = await runner.run(
            request.objective,
            run_id=run_id,
            tenant_id=request.tenant_id,
            platform=platform,
            credentials=request.credentials,
            should_continue=lambda: active.allowed,
        )
        return result.to_response()
    except Exception as e:
        logger.error(f"[{run_id}] Could not start run: {type(e).__name__}: {e}")
        return InvokeResponse(
            run_id=run_id,
            status=RunStatus.FAILED.value,
            reason=describe_failure(e),
            duration_seconds=round(time.time() - active.started_at, 2),
        )
    finally:
        _active_runs.pop(run_id, None)


@app.post("/pause/{run_id}")
async def pause(run_id: str):
    """Ask a run to stop after its current action."""
    active = _active_runs.get(run_id)
    if active is None:
        raise HTTPException(status_code=404, detail=f"Run {run_id} not found")
    active.allowed = False
    logger.info(f"[{run_id}] Pause requested")
    return {"run_id": run_id, "paused": True}


@app.get("/progress")
async def progress():
    """Live action counts for the runs in flight."""
    runs = []
    for run in _active_runs.values():
        mission = _memory.get_mission_memory(run.run_id)
        runs.append({
            "run_id": run.run_id,
            "objective": run.objective[:200],
            "action_count": mission.action_count if mission else 0,
            "plan_steps": len(mission.plan) if mission else 0,
            "elapsed_seconds": round(time.time() - run.started_at, 1),
            "paused": not run.allowed,
        })
    return {"active_runs": len(runs), "runs": runs}


@app.post("/auth-contexts/{tenant_id}/{platform}/rotate")
async def rotate_context(tenant_id: str, platform: str):
    """Discard saved login state so the next run for this platform logs in again."""
    rotated = await rotate_auth_context(BrowserbaseClient(), _store, tenant_id, platform)
    return {"tenant_id": tenant_id, "platform": platform.lower(), "rotated": rotated}


# ── Main ──────────────────────────────────────────────────────────────────

if __name__ == "__main__":
    import uvicorn

    logger.info("=" * 60)
    logger.info("  Mission Agent")
    logger.info("=" * 60)
    logger.info(f"  Model:         {config.CUA_MODEL}")
    logger.info(f"  Browser:       {config.BROWSER_PROVIDER}")
    logger.info(f"  Max actions:   {config.MAX_ACTIONS}")
    logger.info(f"  Viewport:      {config.VIEWPORT_WIDTH}x{config.VIEWPORT_HEIGHT}")
    logger.info(f"  Port:          {config.AGENT_PORT}")
    logger.info("=" * 60)

    uvicorn.run(app, host="0.0.0.0", port=config.AGENT_PORT)
