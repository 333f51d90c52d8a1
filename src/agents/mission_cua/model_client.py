"""
Responses API client for the computer-use model.

Retries transient failures locally: network errors, 5xx, 408 and 409 back
off exponentially with jitter; 429 walks an explicit, longer delay ladder
since it signals throughput exhaustion. Anything else is raised at once.
"""

import asyncio
import logging
import random
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence

import httpx

from . import config
from .errors import ModelEndpointError

logger = logging.getLogger(__name__)


@dataclass
class ModelResponse:
    """Output items and continuation token from one model call."""
    response_id: Optional[str]
    output: List[Dict[str, Any]] = field(default_factory=list)
    retry_count: int = 0
    usage: Dict[str, Any] = field(default_factory=dict)


class ResponsesClient:
    """POSTs to ``{base_url}/responses`` with the retry policy above."""

    def __init__(
        self,
        api_key: str = config.OPENAI_API_KEY,
        organization: Optional[str] = config.OPENAI_ORG,
        base_url: str = config.OPENAI_BASE_URL,
        timeout: float = config.MODEL_REQUEST_TIMEOUT,
        max_retries: int = config.RETRY_MAX_ATTEMPTS,
        base_delay: float = config.RETRY_BASE_DELAY,
        max_delay: float = config.RETRY_MAX_DELAY,
        rate_limit_delays: Sequence[float] = config.RATE_LIMIT_DELAYS,
        retryable_statuses: frozenset = config.RETRYABLE_STATUS_CODES,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.api_key = api_key
        self.organization = organization
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.max_retries = max_retries
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.rate_limit_delays = tuple(rate_limit_delays)
        self.retryable_statuses = retryable_statuses
        self._transport = transport

    def _headers(self) -> dict:
        headers = {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
            "Openai-beta": "responses=v1",
        }
        if self.organization:
            headers["Openai-Organization"] = self.organization
        return headers

    def _is_retryable(self, status_code: int) -> bool:
        return status_code in self.retryable_statuses or status_code >= 500

    def retry_delay(self, retry_number: int, status_code: Optional[int]) -> float:
        """Delay before retry ``retry_number`` (1-based)."""
        if status_code == 429:
            index = min(retry_number - 1, len(self.rate_limit_delays) - 1)
            return self.rate_limit_delays[index]
        delay = min(self.base_delay * (2 ** (retry_number - 1)), self.max_delay)
        return delay + random.uniform(0, delay * 0.1)

    async def create_response(self, payload: Dict[str, Any]) -> ModelResponse:
        """Send one request, retrying transient failures."""
        url = f"{self.base_url}/responses"
        last_error: Optional[ModelEndpointError] = None

        async with httpx.AsyncClient(
            timeout=httpx.Timeout(self.timeout), transport=self._transport
        ) as client:
            for attempt in range(self.max_retries + 1):
                status_code: Optional[int] = None
                try:
                    resp = await client.post(url, json=payload, headers=self._headers())
                except httpx.TransportError as e:
                    last_error = ModelEndpointError(f"Model endpoint unreachable: {e}")
                else:
                    if resp.status_code < 400:
                        data = resp.json()
                        return ModelResponse(
                            response_id=data.get("id"),
                            output=data.get("output") or [],
                            retry_count=attempt,
                            usage=data.get("usage") or {},
                        )
                    status_code = resp.status_code
                    body = resp.text[:500]
                    last_error = ModelEndpointError(
                        f"Model endpoint returned {status_code}: {body}",
                        status_code=status_code, body=body,
                    )
                    if not self._is_retryable(status_code):
                        logger.error(f"Model endpoint returned {status_code}: {body}")
                        raise last_error

                if attempt >= self.max_retries:
                    break
                wait_time = self.retry_delay(attempt + 1, status_code)
                logger.warning(
                    f"Model request failed (attempt {attempt + 1}/{self.max_retries + 1}, "
                    f"status={status_code or 'network'}). Retrying in {wait_time:.1f}s..."
                )
                await asyncio.sleep(wait_time)

        logger.error(f"Max retries ({self.max_retries}) exceeded: {last_error}")
        raise last_error
