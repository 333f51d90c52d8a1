"""
Task planner: one LLM call that turns an objective into concrete browser steps.

The plan is steering context for the action loop, not a script: the loop
still decides each action from the screenshot. Planning never blocks a run;
on any failure the planner falls back to a degenerate plan.
"""

import logging
import re
import time
from typing import Iterable, List, Optional

from openai import AsyncOpenAI

from . import config
from .sqlite_store import AuthContextStore

logger = logging.getLogger(__name__)

# ── Prompts ───────────────────────────────────────────────────────────────

TASK_PLANNING_PROMPT = f"""You turn high-level execution prompts into complete, step-by-step browser action plans.

Respond with a NUMBERED LIST. Each step must be:
- Concrete and specific (e.g. "Click the 'Sign in' button in the top right")
- Action-oriented (click, type, scroll, navigate, wait, verify)
- Atomic: one clear action per step
- Sequential and realistic for browser automation

COMPLETENESS:
- Generate every step needed to finish the whole task. Complex tasks often need 30-100 steps.
- Never shorten or merge steps to hit a step count. Safety maximum: {config.MAX_PLAN_STEPS} steps.
- If the prompt has an AUTHENTICATION: section, put those steps first in full detail.
- Every item in a WORKFLOW: section must become one or more detailed steps.
- Add verification steps after important actions and a final check that the task is done.

AUTONOMY:
- Never write steps that ask the user to log in, confirm, verify or wait on a human.
- The agent handles login, 2FA and verification itself ("Enter the password", not "Ask the user to sign in").

SESSION PERSISTENCE:
- Never add logout, sign-out, close-browser or clear-cookies steps.
  The session must stay authenticated for future runs.

Convert this execution prompt into a complete browser action plan:"""

AUTH_NOTICE = """AUTHENTICATION STATUS: you are ALREADY LOGGED IN to {platform} through a persistent browser session.
Cookies and session data are pre-loaded.

Do NOT include any login steps: no login pages, no email or username entry,
no password entry, no "Sign in" / "Log in" clicks, no 2FA handling.
Start the plan by navigating to the main {platform} page and go straight to the task."""

_NUMBERED_RE = re.compile(r"^(\d+)[.)]\s*(.+)$")
_WORKFLOW_RE = re.compile(r"WORKFLOW:?\s*([\s\S]*?)(?=\n\n|$)", re.IGNORECASE)

_PLATFORM_KEYWORDS = (
    ("linkedin", ("linkedin",)),
    ("twitter", ("twitter", "x.com")),
    ("google", ("google", "gmail")),
    ("facebook", ("facebook",)),
    ("reddit", ("reddit",)),
    ("instagram", ("instagram",)),
    ("salesforce", ("salesforce",)),
    ("slack", ("slack",)),
)


def extract_platform_name(target_website: Optional[str], credential_keys: Iterable[str] = ()) -> Optional[str]:
    """Guess the platform a run targets from its website or credential key prefixes."""
    website = (target_website or "").lower()
    for platform, keywords in _PLATFORM_KEYWORDS:
        if any(k in website for k in keywords):
            return platform
    prefixes = {k.lower().split("_")[0] for k in credential_keys}
    for platform, _ in _PLATFORM_KEYWORDS:
        if platform in prefixes:
            return platform
    return None


def extract_steps(text: str) -> List[str]:
    """Numbered ("1." / "1)") or dash-prefixed lines, in order."""
    steps = []
    for line in text.splitlines():
        stripped = line.strip()
        if not stripped:
            continue
        match = _NUMBERED_RE.match(stripped)
        if match:
            steps.append(match.group(2).strip())
        elif stripped.startswith("-"):
            step = stripped[1:].strip()
            if step:
                steps.append(step)
    return steps


def fallback_steps(objective: str, max_chars: int = 200) -> List[str]:
    """WORKFLOW: section of the objective, else the truncated objective."""
    match = _WORKFLOW_RE.search(objective)
    if match:
        section = match.group(1).strip()
        steps = extract_steps(section)
        if steps:
            logger.info(f"Using {len(steps)} steps from the WORKFLOW section")
            return steps
        if section:
            return [section]
    text = objective.strip()
    return [text[:max_chars] + "..." if len(text) > max_chars else text]


class TaskPlanner:
    """Generates the step plan that seeds mission memory."""

    def __init__(
        self,
        client: Optional[AsyncOpenAI] = None,
        auth_store: Optional[AuthContextStore] = None,
        model: str = config.STEP_GENERATION_MODEL,
        temperature: float = config.STEP_GENERATION_TEMPERATURE,
        max_tokens: int = config.STEP_GENERATION_MAX_TOKENS,
        max_steps: int = config.MAX_PLAN_STEPS,
        enabled: bool = config.ENABLE_STEP_GENERATION,
        accept_last_used: bool = config.AUTH_ACCEPT_LAST_USED,
    ):
        self.client = client or AsyncOpenAI(api_key=config.OPENAI_API_KEY or None)
        self.auth_store = auth_store
        self.model = model
        self.temperature = temperature
        self.max_tokens = max_tokens
        self.max_steps = max_steps
        self.enabled = enabled
        self.accept_last_used = accept_last_used

    async def is_authenticated(self, tenant_id: Optional[str], platform: Optional[str]) -> bool:
        """Whether a saved context for (tenant, platform) has been logged into before.

        A context that was created but never used has no cookies yet, so it
        does not count.
        """
        if self.auth_store is None or not tenant_id or not platform:
            return False
        try:
            record = await self.auth_store.get_auth_context(tenant_id, platform)
        except Exception as e:
            logger.warning(f"Auth context lookup failed for {tenant_id}/{platform}: {e}")
            return False
        if record is None or not record.context_id:
            return False
        used = bool(record.first_login_at) or (self.accept_last_used and bool(record.last_used_at))
        if used:
            logger.info(f"Found authenticated context for {platform} ({record.context_id}), skipping login steps")
        else:
            logger.info(f"Context for {platform} exists but was never used, keeping login steps")
        return used

    async def generate_browser_steps(
        self,
        objective: str,
        tenant_id: Optional[str] = None,
        platform: Optional[str] = None,
    ) -> List[str]:
        if not self.enabled:
            logger.info("Step generation disabled, using the objective as a single step")
            return [objective.strip()[:200]]

        try:
            prompt = objective
            if await self.is_authenticated(tenant_id, platform):
                prompt = AUTH_NOTICE.format(platform=platform) + "\n\n" + objective

            started = time.time()
            response = await self.client.chat.completions.create(
                model=self.model,
                messages=[
                    {"role": "system", "content": TASK_PLANNING_PROMPT},
                    {"role": "user", "content": prompt},
                ],
                temperature=self.temperature,
                max_completion_tokens=self.max_tokens,
            )
            plan_text = (response.choices[0].message.content or "") if response.choices else ""
            steps = extract_steps(plan_text)
            logger.info(f"Generated {len(steps)} steps in {time.time() - started:.1f}s")
        except Exception as e:
            logger.error(f"Error generating browser steps: {e}")
            return fallback_steps(objective)[: self.max_steps]

        if not steps:
            logger.warning("Planner response had no recognisable steps, falling back")
            return fallback_steps(objective)[: self.max_steps]

        if len(steps) > self.max_steps:
            logger.warning(f"Plan truncated: {len(steps)} steps generated, capped at {self.max_steps}")
        return steps[: self.max_steps]
