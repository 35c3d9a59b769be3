"""Session data models."""

from datetime import datetime, timedelta, timezone
from typing import Any, Literal
from uuid import uuid4

from pydantic import BaseModel, Field

from provtrack.config import SESSION_TTL_SECONDS

Environment = Literal["development", "staging", "production", "testing", "local"]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_session_id() -> str:
    millis = int(utcnow().timestamp() * 1000)
    return f"cs_{millis}_{uuid4().hex[:6]}"


def new_decision_id() -> str:
    return f"dec_{uuid4().hex[:8]}"


class Decision(BaseModel):
    """A decision recorded during a session, with the options that were rejected."""

    id: str = Field(default_factory=new_decision_id)
    timestamp: datetime = Field(default_factory=utcnow)
    type: str = "architecture"
    decision: str = Field(min_length=1)
    reasoning: str = Field(min_length=1)
    alternatives: list[str] = Field(default_factory=list)
    confidence: float = Field(default=0.9, ge=0.0, le=1.0)


class SessionMetrics(BaseModel):
    events_count: int = 0
    decisions_count: int = 0
    files_modified: int = 0
    lines_added: int = 0
    lines_removed: int = 0


class Session(BaseModel):
    """A tracked work session owned by one actor until ended or expired."""

    id: str = Field(default_factory=new_session_id)
    owner_id: str = Field(description="User that started the session")
    organization_id: str
    project_id: str | None = None
    start_time: datetime = Field(default_factory=utcnow)
    end_time: datetime | None = None
    current_intent: str | None = None
    task_description: str | None = None
    environment: Environment = "development"
    recent_event_ids: list[str] = Field(
        default_factory=list,
        description="Last event ids, oldest first; the tail is the default parent",
    )
    decisions: list[Decision] = Field(default_factory=list)
    files_in_scope: list[str] = Field(default_factory=list)
    metrics: SessionMetrics = Field(default_factory=SessionMetrics)
    metadata: dict[str, Any] = Field(default_factory=dict)

    @property
    def last_event_id(self) -> str | None:
        return self.recent_event_ids[-1] if self.recent_event_ids else None

    def is_expired(self, now: datetime | None = None) -> bool:
        """Ended sessions and sessions older than the TTL accept no more writes."""
        if self.end_time is not None:
            return True
        now = now or utcnow()
        return now - self.start_time > timedelta(seconds=SESSION_TTL_SECONDS)
