from datetime import datetime, timezone
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

from signature_sync.models.agreement import CanonicalStatus
from signature_sync.models.mixins import PROVIDER_REQUEST_ID_LENGTH
from signature_sync.schemas.common import ORMModel


class WebhookPayload(BaseModel):
    """Body of a provider notification. Only RequestId and EventId are required."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    request_id: str = Field(alias="RequestId", min_length=1, max_length=PROVIDER_REQUEST_ID_LENGTH)
    event_id: int = Field(alias="EventId", ge=1, le=3)
    event_description: str | None = Field(default=None, alias="EventDescription")
    user_name: str | None = Field(default=None, alias="UserName")
    email: str | None = Field(default=None, alias="Email")
    subject: str | None = Field(default=None, alias="Subject")
    event_time: datetime | None = Field(default=None, alias="EventTime")
    documents: list[dict[str, Any]] = Field(default_factory=list, alias="Documents")

    @field_validator("request_id", mode="before")
    @classmethod
    def coerce_request_id(cls, value: Any) -> Any:
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            return str(value)
        if isinstance(value, str):
            return value.strip()
        return value

    @field_validator("event_time", mode="before")
    @classmethod
    def parse_event_time(cls, value: Any) -> Any:
        if value in (None, ""):
            return None
        if isinstance(value, str):
            try:
                value = datetime.fromisoformat(value.replace("Z", "+00:00"))
            except ValueError:
                return None
        if isinstance(value, datetime) and value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value

    @field_validator("documents", mode="before")
    @classmethod
    def drop_malformed_documents(cls, value: Any) -> Any:
        if not isinstance(value, list):
            return []
        return [item for item in value if isinstance(item, dict)]


class WebhookAck(BaseModel):
    accepted: bool
    event_id: str | None = None
    reconciled: bool = False
    status: CanonicalStatus | None = None


class WebhookEventRead(ORMModel):
    id: str
    provider_request_id: str
    event_kind: int
    event_description: str | None
    occurred_at: datetime
    actor_name: str | None
    actor_email: str | None
    subject: str | None
    received_at: datetime | None
