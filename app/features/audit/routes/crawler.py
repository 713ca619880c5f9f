from fastapi import APIRouter, Depends, status

from app.features.audit.schemas.audit import CrawlerHealthResponse
from app.features.audit.services.crawler_gateway import CrawlerGateway, get_crawler_gateway
from app.platform.response import api_response

router = APIRouter(prefix="/crawler", tags=["Crawler"])


@router.get("/health")
async def crawler_health(gateway: CrawlerGateway = Depends(get_crawler_gateway)):
    health = await gateway.health_check()
    data = CrawlerHealthResponse(
        available=health.available,
        checked_at=health.checked_at,
        latency_ms=health.latency_ms,
        error=health.error,
    ).model_dump()

    if not health.available:
        return api_response(
            data=data,
            message="Crawler service is unavailable",
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        )
    return api_response(data=data, message="Crawler service is healthy")
