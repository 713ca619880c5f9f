import asyncio
from typing import Any, Dict, Optional

import httpx

from app.platform.config import settings
from app.platform.exceptions import ServiceUnavailable
from app.platform.logger import get_logger

logger = get_logger(__name__)


class RenderWorkerClient:
    """
    Hands PDF jobs to the external render worker.

    The worker answers immediately and reports progress back through the
    callback endpoints, so this is a single bounded POST.
    """

    def __init__(
        self,
        base_url: Optional[str] = None,
        token: Optional[str] = None,
        timeout: Optional[float] = None,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.base_url = (base_url or settings.RENDER_WORKER_URL).rstrip("/")
        self.token = token or settings.RENDER_WORKER_TOKEN
        self.timeout = timeout or settings.RENDER_WORKER_TIMEOUT_SECONDS
        self._client = client

    async def _post(self, url: str, payload: Dict[str, Any], headers: Dict[str, str]) -> httpx.Response:
        if self._client is not None:
            return await self._client.post(url, json=payload, headers=headers, timeout=httpx.Timeout(self.timeout))
        async with httpx.AsyncClient(timeout=httpx.Timeout(self.timeout)) as client:
            return await client.post(url, json=payload, headers=headers)

    async def dispatch(
        self,
        job_id: str,
        project_id: str,
        template_id: str,
        theme: Optional[Dict[str, Any]],
        requested_by: str,
    ) -> None:
        payload = {
            "jobId": job_id,
            "projectId": project_id,
            "templateId": template_id,
            "theme": theme or {},
        }
        headers = {
            "Content-Type": "application/json",
            "Authorization": f"Bearer {self.token}",
            "X-User-Id": requested_by,
        }
        url = f"{self.base_url}/render"

        try:
            response = await asyncio.wait_for(self._post(url, payload, headers), timeout=self.timeout)
        except (httpx.TimeoutException, asyncio.TimeoutError) as e:
            raise ServiceUnavailable(f"Render worker timed out after {self.timeout}s") from e
        except httpx.TransportError as e:
            raise ServiceUnavailable(f"Render worker unreachable: {e}") from e

        if response.status_code >= 400:
            raise ServiceUnavailable(
                f"Render worker refused job {job_id}: {response.status_code} {response.text[:200]}"
            )

        logger.info(f"Dispatched PDF job {job_id} to render worker")
