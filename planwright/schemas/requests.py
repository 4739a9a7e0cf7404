from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from uuid import uuid4

from pydantic import BaseModel, Field


class RequestStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in-progress"
    COMPLETED = "completed"
    FAILED = "failed"


def new_request_id() -> str:
    return uuid4().hex


class RequestContext(BaseModel):
    request_id: str = Field(default_factory=new_request_id, min_length=1)
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    updated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    agent_chain: list[str] = Field(default_factory=list)
    status: RequestStatus = Field(default=RequestStatus.PENDING)
    user_query: str | None = None
    failure_reason: str | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status in {RequestStatus.COMPLETED, RequestStatus.FAILED}
