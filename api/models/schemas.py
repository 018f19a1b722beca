from typing import Optional

from pydantic import BaseModel


class WebhookResponse(BaseModel):
    """Response body of the GitHub webhook endpoint."""

    status: str
    message: str
    delivery_id: Optional[str] = None
    duplicate: bool = False
    repository: Optional[str] = None
    pr_number: Optional[int] = None


class HealthResponse(BaseModel):
    status: str = "healthy"
    service: str
