"""
Crawler Gateway

Typed client for the external crawler service. Every request carries an
explicit timeout; transport failures surface as ``ServiceUnavailable``.
Retries are the caller's decision: ``start_audit`` in particular is not
idempotent on the crawler side.
"""
import asyncio
import enum
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Optional

import httpx

from app.platform.config import settings
from app.platform.exceptions import CrawlerRequestError, ServiceUnavailable
from app.platform.logger import get_logger
from app.platform.utils.clock import utcnow

logger = get_logger(__name__)


class RemoteState(str, enum.Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (RemoteState.COMPLETED, RemoteState.FAILED)


# Crawler state names -> RemoteState
_STATE_ALIASES = {
    "pending": RemoteState.PENDING,
    "queued": RemoteState.PENDING,
    "running": RemoteState.RUNNING,
    "in_progress": RemoteState.RUNNING,
    "processing": RemoteState.RUNNING,
    "completed": RemoteState.COMPLETED,
    "complete": RemoteState.COMPLETED,
    "failed": RemoteState.FAILED,
    "error": RemoteState.FAILED,
}


@dataclass
class CrawlerHealth:
    available: bool
    checked_at: datetime
    latency_ms: float
    error: Optional[str] = None


@dataclass
class RemoteStatus:
    state: RemoteState
    progress: int = 0
    error: Optional[str] = None
    raw: Optional[Dict[str, Any]] = None


def parse_remote_state(value: Optional[str]) -> RemoteState:
    state = _STATE_ALIASES.get((value or "").strip().lower())
    if state is None:
        logger.warning(f"Unknown crawler state '{value}', treating as running")
        return RemoteState.RUNNING
    return state


class CrawlerGateway:
    def __init__(
        self,
        base_url: Optional[str] = None,
        client: Optional[httpx.AsyncClient] = None,
        default_timeout: Optional[float] = None,
        health_timeout: Optional[float] = None,
        webhook_url: Optional[str] = None,
    ):
        self.base_url = (base_url or settings.CRAWLER_SERVICE_URL).rstrip("/")
        self.default_timeout = default_timeout or settings.CRAWLER_REQUEST_TIMEOUT_SECONDS
        self.health_timeout = health_timeout or settings.CRAWLER_HEALTH_TIMEOUT_SECONDS
        self.webhook_url = webhook_url if webhook_url is not None else settings.CRAWLER_WEBHOOK_URL
        self._client = client

    async def _send(self, method: str, url: str, timeout: float, json: Optional[Dict[str, Any]]) -> httpx.Response:
        if self._client is not None:
            return await self._client.request(method, url, json=json, timeout=httpx.Timeout(timeout))
        async with httpx.AsyncClient(timeout=httpx.Timeout(timeout)) as client:
            return await client.request(method, url, json=json)

    async def _request(
        self,
        method: str,
        path: str,
        timeout: float,
        json: Optional[Dict[str, Any]] = None,
    ) -> httpx.Response:
        url = f"{self.base_url}{path}"
        try:
            # httpx bounds each phase separately; wait_for bounds the whole call.
            response = await asyncio.wait_for(self._send(method, url, timeout, json), timeout=timeout)
        except (httpx.TimeoutException, asyncio.TimeoutError) as e:
            raise ServiceUnavailable(f"Crawler timed out after {timeout}s on {method} {path}") from e
        except httpx.TransportError as e:
            raise ServiceUnavailable(f"Crawler unreachable on {method} {path}: {e}") from e

        if response.status_code >= 500:
            raise ServiceUnavailable(
                f"Crawler returned {response.status_code} on {method} {path}"
            )
        if response.status_code >= 400:
            raise CrawlerRequestError(
                f"Crawler rejected {method} {path}: {response.status_code} {response.text[:200]}"
            )
        return response

    @staticmethod
    def _json(response: httpx.Response) -> Dict[str, Any]:
        try:
            body = response.json()
        except ValueError as e:
            raise ServiceUnavailable("Crawler returned a non-JSON body") from e
        if not isinstance(body, dict):
            raise ServiceUnavailable("Crawler returned an unexpected payload")
        return body

    async def health_check(self) -> CrawlerHealth:
        """Never raises: an unreachable crawler is reported as unavailable."""
        started = time.monotonic()
        error = None
        available = False
        try:
            response = await self._request("GET", "/health", timeout=self.health_timeout)
            body = self._json(response)
            available = str(body.get("status", "")).lower() == "ok"
            if not available:
                error = f"Unexpected health status: {body.get('status')}"
        except (ServiceUnavailable, CrawlerRequestError) as e:
            error = e.message

        latency_ms = round((time.monotonic() - started) * 1000, 2)
        if not available:
            logger.warning(f"Crawler health check failed in {latency_ms}ms: {error}")
        return CrawlerHealth(
            available=available, checked_at=utcnow(), latency_ms=latency_ms, error=error
        )

    async def start_audit(
        self,
        project_id: str,
        options: Optional[Dict[str, Any]] = None,
        audit_id: Optional[str] = None,
        timeout: Optional[float] = None,
    ) -> str:
        payload: Dict[str, Any] = {"projectId": project_id, "options": options or {}}
        if audit_id:
            payload["auditId"] = audit_id
        if self.webhook_url:
            payload["webhookUrl"] = self.webhook_url

        response = await self._request(
            "POST", "/api/audit/start", timeout=timeout or self.default_timeout, json=payload
        )
        body = self._json(response)
        remote_job_id = body.get("jobId")
        if not remote_job_id:
            raise ServiceUnavailable("Crawler accepted the audit but returned no jobId")

        logger.info(f"Crawler started audit {remote_job_id} for project {project_id}")
        return str(remote_job_id)

    async def poll_status(self, remote_job_id: str, timeout: Optional[float] = None) -> RemoteStatus:
        response = await self._request(
            "GET", f"/api/audit/status/{remote_job_id}", timeout=timeout or self.default_timeout
        )
        body = self._json(response)
        # Older crawler builds report "status" instead of "state"
        state = parse_remote_state(body.get("state") or body.get("status"))
        try:
            progress = int(body.get("progress") or 0)
        except (TypeError, ValueError):
            progress = 0
        return RemoteStatus(
            state=state,
            progress=max(0, min(100, progress)),
            error=body.get("error"),
            raw=body,
        )

    async def fetch_results(self, remote_job_id: str, timeout: Optional[float] = None) -> Dict[str, Any]:
        response = await self._request(
            "GET", f"/api/audit/results/{remote_job_id}", timeout=timeout or self.default_timeout
        )
        return self._json(response)


def get_crawler_gateway() -> CrawlerGateway:
    """FastAPI dependency; overridden in tests."""
    return CrawlerGateway()
