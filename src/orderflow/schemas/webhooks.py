"""Webhook intake schemas."""

from datetime import datetime
from typing import Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict

from orderflow.database.models.webhook import WebhookSource, WebhookStatus


class WebhookAcceptedResponse(BaseModel):
    """Acknowledgement returned once a webhook is durably stored."""

    model_config = ConfigDict(from_attributes=True)

    id: UUID
    source: WebhookSource
    status: WebhookStatus
    event: Optional[str] = None
    created_at: datetime
