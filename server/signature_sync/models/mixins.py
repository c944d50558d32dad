import uuid
from datetime import datetime
from typing import Annotated

from sqlalchemy import DateTime, String, func
from sqlalchemy.orm import Mapped, mapped_column


def new_identifier() -> str:
    return str(uuid.uuid4())


Identifier = Annotated[str, mapped_column(String(36), primary_key=True, default=new_identifier)]
# Correlation key assigned by the signing provider
PROVIDER_REQUEST_ID_LENGTH = 120
ProviderRequestId = Annotated[str, mapped_column(String(PROVIDER_REQUEST_ID_LENGTH), nullable=False, index=True)]
UtcDateTime = Annotated[datetime, mapped_column(DateTime(timezone=True), nullable=False)]
ReceivedAt = Annotated[datetime, mapped_column(DateTime(timezone=True), server_default=func.now(), nullable=False)]


class TimestampMixin:
    """created_at/updated_at maintained by the database."""

    created_at: Mapped[ReceivedAt]
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )
