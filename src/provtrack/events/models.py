"""Event data models.

An event's payload is a tagged union keyed by its category. Categories with
a known payload shape get a typed model; anything else (or a payload that is
not a mapping) is kept as an opaque value.
"""

import json
from datetime import datetime
from enum import Enum
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from provtrack.session.models import utcnow


class EventCategory(str, Enum):
    """Known event taxonomy"""
    CODE_CHANGE = "code_change"
    ANALYSIS = "analysis"
    DECISION = "decision"
    SEARCH = "search"
    DEPLOYMENT = "deployment"
    INCIDENT = "incident"
    REVIEW = "review"
    PLANNING = "planning"
    DOCUMENTATION = "documentation"
    CONFIGURATION = "configuration"


class _Payload(BaseModel):
    # Clients send camelCase keys; unknown keys are kept.
    model_config = ConfigDict(extra="allow", populate_by_name=True, alias_generator=to_camel)


class CodeChangePayload(_Payload):
    kind: Literal["code_change"] = "code_change"
    file_path: str | None = None
    change_type: Literal["created", "modified", "deleted"] | None = None
    lines_added: int = Field(default=0, ge=0)
    lines_removed: int = Field(default=0, ge=0)
    size: int = Field(default=0, ge=0)


class AnalysisPayload(_Payload):
    kind: Literal["analysis"] = "analysis"
    file_path: str | None = None
    metric: str | None = None
    result: Any = None


class DecisionPayload(_Payload):
    kind: Literal["decision"] = "decision"
    decision: str
    reasoning: str | None = None
    alternatives: list[str] = Field(default_factory=list)
    session_id: str | None = None


class SearchPayload(_Payload):
    kind: Literal["search"] = "search"
    query: str
    results: int | None = Field(default=None, ge=0)


class PlanningPayload(_Payload):
    kind: Literal["planning"] = "planning"
    session_id: str | None = None
    summary: str | None = None


class OpaquePayload(BaseModel):
    kind: Literal["opaque"] = "opaque"
    data: Any = None


EventPayload = Annotated[
    Union[
        CodeChangePayload,
        AnalysisPayload,
        DecisionPayload,
        SearchPayload,
        PlanningPayload,
        OpaquePayload,
    ],
    Field(discriminator="kind"),
]

PAYLOAD_MODELS: dict[EventCategory, type[_Payload]] = {
    EventCategory.CODE_CHANGE: CodeChangePayload,
    EventCategory.ANALYSIS: AnalysisPayload,
    EventCategory.DECISION: DecisionPayload,
    EventCategory.SEARCH: SearchPayload,
    EventCategory.PLANNING: PlanningPayload,
}


def parse_payload(category: EventCategory, value: Any) -> BaseModel:
    """Pick the payload variant for a category.

    Raises pydantic.ValidationError when a typed payload is malformed.
    """
    model = PAYLOAD_MODELS.get(category)
    if model is None or not isinstance(value, dict):
        return OpaquePayload(data=value)
    return model.model_validate({k: v for k, v in value.items() if k != "kind"})


class GitContext(BaseModel):
    model_config = ConfigDict(populate_by_name=True, alias_generator=to_camel)

    commit: str | None = Field(default=None, max_length=40)
    branch: str | None = None
    repository: str | None = None
    pr_number: int | None = None


class CaptureEventInput(BaseModel):
    """Caller-supplied fields of an event, validated before anything is queued."""

    model_config = ConfigDict(populate_by_name=True, alias_generator=to_camel)

    category: EventCategory
    action: str = Field(min_length=1, max_length=100, pattern=r"^[A-Za-z][A-Za-z0-9_.:-]*$")
    label: str | None = None
    value: Any = None
    parent_event_id: str | None = None
    confidence: float = Field(default=1.0, ge=0.0, le=1.0)
    git_context: GitContext | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)


class Event(BaseModel):
    """An immutable record of one tracked action.

    ``child_event_ids`` is not stored here: it is derived from the lineage
    graph (see LineageTracker.get_children).
    """

    model_config = ConfigDict(frozen=True)

    id: str
    timestamp: datetime = Field(default_factory=utcnow)
    source_type: str = "claude_code"
    source_id: str
    user_id: str | None = None
    organization_id: str
    project_id: str | None = None
    environment: str = "development"
    category: EventCategory
    action: str
    label: str | None = None
    value: EventPayload
    intent: str | None = None
    parent_event_ids: tuple[str, ...] = ()
    git_commit: str | None = None
    git_branch: str | None = None
    git_repository: str | None = None
    pr_number: int | None = None
    confidence: float = Field(default=1.0, ge=0.0, le=1.0)
    algorithm: str = "direct_capture"
    algorithm_version: str = "1.0.0"
    search_text: str = ""
    tags: tuple[str, ...] = ()
    metadata: dict[str, Any] = Field(default_factory=dict)

    def notification(self) -> dict:
        """Compact record for the new-events channel."""
        return {
            "eventId": self.id,
            "category": self.category.value,
            "action": self.action,
            "timestamp": self.timestamp.isoformat(),
            "sessionId": self.source_id,
            "projectId": self.project_id,
        }


def extract_tags(category: str, action: str, value: Any) -> tuple[str, ...]:
    tags: list[str] = [category, action]
    if isinstance(value, dict):
        if isinstance(value.get("tags"), list):
            tags.extend(str(t) for t in value["tags"])
        for key in ("language", "framework"):
            if value.get(key):
                tags.append(str(value[key]))
    return tuple(dict.fromkeys(tags))


def build_search_text(category: str, action: str, label: str | None, value: Any) -> str:
    parts = [category, action, label, json.dumps(value, default=str) if value is not None else None]
    return " ".join(p for p in parts if p)
