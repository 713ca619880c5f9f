from datetime import datetime

from pydantic import BaseModel


class QuotaUsageResponse(BaseModel):
    """Audit allowance for the current billing period."""
    tier: str
    period_start: datetime
    used: int
    limit: int
    remaining: int

    class Config:
        json_schema_extra = {
            "example": {
                "tier": "pro",
                "period_start": "2026-10-01T00:00:00",
                "used": 3,
                "limit": 10,
                "remaining": 7,
            }
        }
