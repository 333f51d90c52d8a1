"""Exceptions raised by the mission agent."""

from typing import Optional


class MissionError(Exception):
    """Base class for mission agent errors."""


class ModelEndpointError(MissionError):
    """The model endpoint failed with a non-retryable status or retries ran out."""

    def __init__(self, message: str, status_code: Optional[int] = None, body: str = ""):
        super().__init__(message)
        self.status_code = status_code
        self.body = body


class SafetyCheckError(MissionError):
    """A pending safety check was rejected by the acknowledgement predicate."""


class BrowserSessionLostError(MissionError):
    """The remote browser could not be reconnected."""


class MissingCredentialsError(MissionError):
    """The objective references credential placeholders that were not supplied."""

    def __init__(self, missing: list):
        super().__init__(
            f"Missing required credentials for execution: {', '.join(missing)}"
        )
        self.missing = missing


class UnsupportedActionError(MissionError):
    """The model asked for an action kind or function the agent does not handle."""


class ActionExecutionError(MissionError):
    """One action in a model turn failed.

    ``completed_outputs`` holds the outputs produced before the failure and
    ``unanswered`` the calls (failed one first) that still need an output.
    """

    def __init__(self, message: str, completed_outputs: list, unanswered: list):
        super().__init__(message)
        self.completed_outputs = completed_outputs
        self.unanswered = unanswered
