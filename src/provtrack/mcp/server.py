"""MCP server exposing session, capture and lineage tools."""

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any

from mcp.server.fastmcp import FastMCP

from provtrack import complexity
from provtrack.errors import ValidationError
from provtrack.runtime import Runtime

runtime = Runtime()


@asynccontextmanager
async def lifespan(server: FastMCP) -> AsyncIterator[None]:
    await runtime.start()
    try:
        yield
    finally:
        await runtime.stop()


mcp = FastMCP("provtrack", lifespan=lifespan)


@mcp.tool()
async def start_session(
    user_id: str,
    task_description: str,
    project_id: str | None = None,
    environment: str = "development",
) -> dict:
    """Start a tracked work session and return its session ID.

    Every other session tool takes the returned session_id. Sessions expire
    24 hours after they start if never ended.

    Args:
        user_id: Who is working
        task_description: What the session is meant to accomplish
        project_id: Optional - project the work belongs to
        environment: One of development, staging, production, testing, local
    """
    session = runtime.sessions.create_session(
        owner_id=user_id,
        organization_id=runtime.organization_id,
        project_id=project_id,
        intent=task_description,
        environment=environment,
    )
    await runtime.capture.capture_event(
        session.id,
        {
            "category": "planning",
            "action": "session_start",
            "label": task_description,
            "value": {"sessionId": session.id, "userId": user_id, "projectId": project_id},
        },
    )
    return {
        "sessionId": session.id,
        "status": "active",
        "taskDescription": session.task_description,
    }


@mcp.tool()
async def capture_event(
    session_id: str,
    category: str,
    action: str,
    value: Any = None,
    label: str | None = None,
    parent_event_id: str | None = None,
    confidence: float | None = None,
    git_context: dict | None = None,
    metadata: dict | None = None,
) -> dict:
    """Record any action in the session with lineage tracking.

    The event is linked to parent_event_id, or to the session's most recent
    event when no parent is given. "captured" means queued: the event is
    written to durable storage asynchronously, within about a second.

    Args:
        session_id: Session returned by start_session
        category: code_change, analysis, decision, search, deployment, incident,
            review, planning, documentation or configuration
        action: Short action name (e.g. "file_modified", "complexity_calculation")
        value: Event payload
        label: Optional human-readable description
        parent_event_id: Optional - explicit causal parent
        confidence: Optional - certainty of the causal link, 0 to 1 (default 1.0)
        git_context: Optional - commit, branch, repository, prNumber
        metadata: Optional - free-form metadata
    """
    data: dict[str, Any] = {
        "category": category,
        "action": action,
        "value": value,
        "label": label,
        "parent_event_id": parent_event_id,
        "git_context": git_context,
        "metadata": metadata or {},
    }
    if confidence is not None:
        data["confidence"] = confidence
    result = await runtime.capture.capture_event(session_id, data)
    return {"eventId": result.event_id, "status": result.status}


@mcp.tool()
async def record_decision(
    session_id: str,
    decision: str,
    reasoning: str,
    alternatives: list[str] | None = None,
    confidence: float | None = None,
) -> dict:
    """Record an architectural decision, the reasoning, and the rejected options.

    Args:
        session_id: Session returned by start_session
        decision: What was decided
        reasoning: Why
        alternatives: Options considered and rejected
        confidence: Optional - 0 to 1 (default 0.9)
    """
    confidence = 0.9 if confidence is None else confidence
    decision_id = runtime.sessions.add_decision(
        session_id,
        decision=decision,
        reasoning=reasoning,
        alternatives=alternatives or [],
        confidence=confidence,
    )
    result = await runtime.capture.capture_event(
        session_id,
        {
            "category": "decision",
            "action": "architecture_decision",
            "value": {
                "decision": decision,
                "reasoning": reasoning,
                "alternatives": alternatives or [],
                "sessionId": session_id,
                "decisionId": decision_id,
            },
            "confidence": confidence,
        },
    )
    return {"recorded": True, "eventId": result.event_id, "decisionId": decision_id}


@mcp.tool()
async def track_file_change(
    session_id: str,
    file_path: str,
    change_type: str,
    lines_added: int = 0,
    lines_removed: int = 0,
) -> dict:
    """Track a file created, modified or deleted during the session.

    Args:
        session_id: Session returned by start_session
        file_path: Path of the changed file
        change_type: created, modified or deleted
        lines_added: Lines added by the change
        lines_removed: Lines removed by the change
    """
    if change_type not in ("created", "modified", "deleted"):
        raise ValidationError(f"Unknown change type: {change_type}")

    result = await runtime.capture.capture_event(
        session_id,
        {
            "category": "code_change",
            "action": f"file_{change_type}",
            "label": file_path,
            "value": {
                "filePath": file_path,
                "changeType": change_type,
                "linesAdded": lines_added,
                "linesRemoved": lines_removed,
            },
        },
    )

    metrics = runtime.sessions.require_session(session_id).metrics
    runtime.sessions.update_metrics(
        session_id,
        files_modified=metrics.files_modified + 1,
        lines_added=metrics.lines_added + lines_added,
        lines_removed=metrics.lines_removed + lines_removed,
    )
    runtime.sessions.add_files_to_scope(session_id, [file_path])

    return {
        "tracked": True,
        "eventId": result.event_id,
        "filePath": file_path,
        "changeType": change_type,
    }


@mcp.tool()
async def analyze_complexity(session_id: str, file_path: str, content: str) -> dict:
    """Measure the complexity of Python source and record it as an analysis event.

    Args:
        session_id: Session returned by start_session
        file_path: Path the content was read from
        content: Source code to measure
    """
    result = complexity.analyze(content)
    captured = await runtime.capture.capture_event(
        session_id,
        {
            "category": "analysis",
            "action": "complexity_calculation",
            "label": file_path,
            "value": {"filePath": file_path, "metric": "complexity", "result": result.to_dict()},
        },
    )
    return {"complexity": result.to_dict(), "eventId": captured.event_id}


@mcp.tool()
def update_intent(session_id: str, intent: str) -> dict:
    """Change what the session is currently trying to accomplish.

    Events captured afterwards carry the new intent.

    Args:
        session_id: Session returned by start_session
        intent: The new intent
    """
    runtime.sessions.update_intent(session_id, intent)
    return {"sessionId": session_id, "intent": intent}


@mcp.tool()
async def end_session(session_id: str, summary: str | None = None) -> dict:
    """End the session. No further events can be recorded against it.

    Args:
        session_id: Session returned by start_session
        summary: Optional - what the session achieved
    """
    session = runtime.sessions.require_session(session_id)
    await runtime.capture.capture_event(
        session_id,
        {
            "category": "planning",
            "action": "session_end",
            "label": summary,
            "value": {
                "sessionId": session_id,
                "summary": summary,
                "metrics": session.metrics.model_dump(),
            },
        },
    )
    session = runtime.sessions.end_session(session_id)
    return {
        "sessionId": session.id,
        "status": "completed",
        "summary": summary,
        "metrics": session.metrics.model_dump(),
    }


@mcp.tool()
def get_session(session_id: str) -> dict | str:
    """Get full details of a session: intent, decisions, files, metrics.

    Args:
        session_id: The session ID to retrieve
    """
    session = runtime.sessions.get_session(session_id)
    if not session:
        return f"Session {session_id} not found"
    details = session.model_dump(mode="json")
    details["expired"] = runtime.sessions.is_expired(session)
    return details


@mcp.tool()
def get_lineage_tree(event_id: str, direction: str = "both", max_depth: int = 10) -> dict:
    """Walk the provenance graph around an event.

    Args:
        event_id: Event to start from
        direction: ancestors, descendants or both
        max_depth: How many hops to follow (default 10)
    """
    return runtime.lineage.get_lineage_tree(event_id, direction, max_depth).to_dict()  # type: ignore[arg-type]


@mcp.tool()
def get_impact_radius(event_id: str) -> dict:
    """Count what an event led to, directly and indirectly, with its high-confidence paths.

    Args:
        event_id: Event whose downstream impact to measure
    """
    return runtime.lineage.calculate_impact_radius(event_id).to_dict()


@mcp.tool()
def verify_integrity() -> dict:
    """Audit the lineage graph for asymmetric links and circular dependencies."""
    return runtime.lineage.verify_integrity().to_dict()
