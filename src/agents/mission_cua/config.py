"""
Configuration Module

Loads environment variables and provides configuration constants for the
mission agent. Every component also accepts these values as constructor
arguments, so the constants here are only defaults.

==============================================================================
FEATURES CONFIGURED IN THIS MODULE:
==============================================================================

1. MODEL ENDPOINT (Feature: responses-api)
2. RETRY CONFIGURATION FOR RATE LIMITING (Feature: rate-limit-retry)
3. REMOTE BROWSER PROVIDER (Feature: browserbase-session)
4. SESSION LIFECYCLE (Feature: heartbeat-reconnect)
5. MISSION MEMORY & PLANNING (Feature: mission-memory)
6. STALL DETECTION (Feature: stall-guard)

==============================================================================
"""

import os

from dotenv import load_dotenv

# Load .env file
load_dotenv()


def _env_flag(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() in ("true", "1", "yes")


# ==============================================================================
# MODEL ENDPOINT (Feature: responses-api)
# ==============================================================================
OPENAI_API_KEY = os.getenv("OPENAI_API_KEY", "")
OPENAI_ORG = os.getenv("OPENAI_ORG") or None
OPENAI_BASE_URL = os.getenv("OPENAI_BASE_URL", "https://api.openai.com/v1")
CUA_MODEL = os.getenv("CUA_MODEL", "computer-use-preview")
MODEL_REQUEST_TIMEOUT = float(os.getenv("MODEL_REQUEST_TIMEOUT", "120"))

# ==============================================================================
# RETRY CONFIGURATION FOR RATE LIMITING (Feature: rate-limit-retry)
# ==============================================================================
# - RETRY_MAX_ATTEMPTS: retries after the first attempt before giving up
# - RETRY_BASE_DELAY: first backoff delay for 5xx / 408 / 409 / network errors
# - RATE_LIMIT_DELAYS: explicit ladder used for 429 responses only
#
# With defaults a persistent 429 waits 5s, 15s, 30s, 60s, 120s = 230s max
# ==============================================================================
RETRY_MAX_ATTEMPTS = int(os.getenv("RETRY_MAX_ATTEMPTS", "5"))
RETRY_BASE_DELAY = float(os.getenv("RETRY_BASE_DELAY", "1.0"))
RETRY_MAX_DELAY = float(os.getenv("RETRY_MAX_DELAY", "60.0"))
RATE_LIMIT_DELAYS = (5.0, 15.0, 30.0, 60.0, 120.0)
RETRYABLE_STATUS_CODES = frozenset({408, 409, 429, 500, 502, 503, 504})

# ==============================================================================
# REMOTE BROWSER PROVIDER (Feature: browserbase-session)
# ==============================================================================
# BROWSER_PROVIDER selects the computer backing the action loop:
#   "browserbase" : remote session attached over CDP (default)
#   "local"       : local Chromium launched by Playwright (development only)
# ==============================================================================
BROWSER_PROVIDER = os.getenv("BROWSER_PROVIDER", "browserbase").lower().strip()
BROWSERBASE_API_KEY = os.getenv("BROWSERBASE_API_KEY", "")
BROWSERBASE_PROJECT_ID = os.getenv("BROWSERBASE_PROJECT_ID", "")
BROWSERBASE_API_BASE = os.getenv("BROWSERBASE_API_BASE", "https://api.browserbase.com/v1")
BROWSERBASE_REGION = os.getenv("BROWSERBASE_REGION", "us-east-1")
BROWSERBASE_PROXIES = _env_flag("BROWSERBASE_PROXIES", "true")
BROWSERBASE_FINGERPRINTING = _env_flag("BROWSERBASE_FINGERPRINTING", "true")
VIEWPORT_WIDTH = int(os.getenv("VIEWPORT_WIDTH", "1024"))
VIEWPORT_HEIGHT = int(os.getenv("VIEWPORT_HEIGHT", "768"))
START_URL = os.getenv("START_URL", "https://search.brave.com")
HEADLESS = _env_flag("HEADLESS", "true")

# ==============================================================================
# SESSION LIFECYCLE (Feature: heartbeat-reconnect)
# ==============================================================================
SESSION_TIMEOUT_SECONDS = int(os.getenv("SESSION_TIMEOUT_SECONDS", "3600"))
HEARTBEAT_INTERVAL_SECONDS = float(os.getenv("HEARTBEAT_INTERVAL_SECONDS", "300"))
TIMEOUT_WARNING_SECONDS = float(os.getenv("TIMEOUT_WARNING_SECONDS", "600"))
MAX_RECONNECTION_ATTEMPTS = int(os.getenv("MAX_RECONNECTION_ATTEMPTS", "3"))
CDP_CONNECT_TIMEOUT_MS = int(os.getenv("CDP_CONNECT_TIMEOUT_MS", "180000"))
NAVIGATION_TIMEOUT_MS = int(os.getenv("NAVIGATION_TIMEOUT_MS", "20000"))
NAVIGATION_GUARD_WAIT_SECONDS = float(os.getenv("NAVIGATION_GUARD_WAIT_SECONDS", "2.0"))
SCREENSHOT_CACHE_SECONDS = float(os.getenv("SCREENSHOT_CACHE_SECONDS", "5.0"))
CONTEXT_PERSIST_DELAY_SECONDS = float(os.getenv("CONTEXT_PERSIST_DELAY_SECONDS", "5.0"))
BROWSER_READY_TIMEOUT_SECONDS = float(os.getenv("BROWSER_READY_TIMEOUT_SECONDS", "90"))

# ==============================================================================
# MISSION MEMORY & PLANNING (Feature: mission-memory)
# ==============================================================================
ENABLE_MISSION_MEMORY = _env_flag("ENABLE_MISSION_MEMORY", "true")
ENABLE_STEP_GENERATION = _env_flag("ENABLE_STEP_GENERATION", "true")
MAX_PLAN_STEPS = int(os.getenv("MAX_PLAN_STEPS", "200"))
STEP_GENERATION_MODEL = os.getenv("STEP_GENERATION_MODEL", "gpt-4o-mini")
STEP_GENERATION_TEMPERATURE = float(os.getenv("STEP_GENERATION_TEMPERATURE", "0.3"))
STEP_GENERATION_MAX_TOKENS = int(os.getenv("STEP_GENERATION_MAX_TOKENS", "2500"))
GOAL_SUMMARY_CHARS = int(os.getenv("GOAL_SUMMARY_CHARS", "300"))

# Authentication is assumed when the saved context has either marker.
# Set to false to require an explicit first-login marker.
AUTH_ACCEPT_LAST_USED = _env_flag("AUTH_ACCEPT_LAST_USED", "true")

# ==============================================================================
# STALL DETECTION (Feature: stall-guard)
# ==============================================================================
ENABLE_STALL_DETECTION = _env_flag("ENABLE_STALL_DETECTION", "true")
ENABLE_AUTO_RECOVERY = _env_flag("ENABLE_AUTO_RECOVERY", "true")
MAX_CONSECUTIVE_WAITS = int(os.getenv("MAX_CONSECUTIVE_WAITS", "3"))
MAX_IDENTICAL_CLICKS = int(os.getenv("MAX_IDENTICAL_CLICKS", "2"))
CLICK_RADIUS_PX = float(os.getenv("CLICK_RADIUS_PX", "10"))
MAX_REPEATED_TEXT = int(os.getenv("MAX_REPEATED_TEXT", "2"))
MAX_URL_REVISITS = int(os.getenv("MAX_URL_REVISITS", "3"))
MAX_INACTIVITY_SECONDS = float(os.getenv("MAX_INACTIVITY_SECONDS", "60"))
ACTION_HISTORY_SIZE = int(os.getenv("ACTION_HISTORY_SIZE", "10"))
RECOVERY_PROMPT_PREFIX = "⚠️ IMPORTANT: "

RECOVERY_PROMPTS: dict = {
    "repeated_wait": (
        "You have waited several times in a row without making progress. "
        "Stop waiting and take a concrete action that moves toward the goal: {goal}"
    ),
    "same_click": (
        "You keep clicking the same spot and nothing changes. That element is "
        "not responding. Try a different element, scroll to reveal other options, "
        "or use another route to reach the goal: {goal}"
    ),
    "repeated_typing": (
        "You are typing the same text again. It was probably already entered. "
        "Check the screen, then submit or move on to the next step toward the goal: {goal}"
    ),
    "circular_nav": (
        "You are navigating back and forth between the same pages. Look carefully "
        "at the current page and take a different approach to reach the goal: {goal}"
    ),
    "stuck_inactivity": (
        "No meaningful action has happened for a while. Look at the current screen "
        "and take a concrete step toward the goal: {goal}"
    ),
    "general_stuck": (
        "You do not seem to be making progress. Re-read the goal, look at the "
        "screen and try a different approach: {goal}"
    ),
}

# ==============================================================================
# ACTION LOOP
# ==============================================================================
MAX_ACTIONS = int(os.getenv("MAX_ACTIONS", "100"))
ENABLE_EXTRACTION = _env_flag("ENABLE_EXTRACTION", "false")

# SQLite (reference persistence collaborator)
SQLITE_DB_PATH = os.getenv(
    "SQLITE_DB_PATH",
    os.path.join(os.path.dirname(__file__), "..", "..", "..", "data", "mission.db"),
)

# Server
AGENT_PORT = int(os.getenv("AGENT_PORT", "8001"))
CORS_ORIGINS = os.getenv("CORS_ORIGINS", "http://localhost:3000,http://localhost:5173").split(",")
