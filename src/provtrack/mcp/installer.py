"""Register the provtrack MCP server in a project's .mcp.json."""

import json
import shutil
from pathlib import Path

SERVER_NAME = "provtrack"
PROJECT_CONFIG = ".mcp.json"


def _resolve_executable() -> str:
    """Full path to the provtrack executable, or the bare name if not on PATH."""
    return shutil.which("provtrack") or "provtrack"


def _read_config(config_path: Path) -> dict | None:
    if not config_path.exists():
        return {}
    try:
        config = json.loads(config_path.read_text())
    except (json.JSONDecodeError, OSError):
        return None
    return config if isinstance(config, dict) else None


def install_mcp_project(
    project_path: Path,
    organization_id: str | None = None,
    executable: str | None = None,
) -> bool:
    """Merge a provtrack server entry into ``project_path/.mcp.json``.

    Other servers in the file are left alone. Returns False when an existing
    file cannot be parsed, in which case it is not touched.
    """
    config_path = project_path / PROJECT_CONFIG
    config = _read_config(config_path)
    if config is None:
        return False

    entry: dict = {
        "command": executable or _resolve_executable(),
        "args": ["mcp", "serve"],
    }
    if organization_id:
        entry["env"] = {"PROVTRACK_ORGANIZATION_ID": organization_id}

    config.setdefault("mcpServers", {})[SERVER_NAME] = entry
    config_path.parent.mkdir(parents=True, exist_ok=True)
    config_path.write_text(json.dumps(config, indent=2) + "\n")
    return True


def remove_mcp_project(project_path: Path) -> bool:
    """Drop the provtrack entry from ``project_path/.mcp.json`` if present."""
    config_path = project_path / PROJECT_CONFIG
    config = _read_config(config_path)
    if config is None:
        return False
    servers = config.get("mcpServers", {})
    if SERVER_NAME in servers:
        del servers[SERVER_NAME]
        config_path.write_text(json.dumps(config, indent=2) + "\n")
    return True
