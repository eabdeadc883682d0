from __future__ import annotations

from collections import Counter
from typing import Any, Dict, List, Optional, Set

from core.workflow_edit import iter_links

# Trigger-style nodes that legitimately have no inbound links
_ENTRY_NODE_TYPES = {
    "n8n-nodes-base.start",
    "n8n-nodes-base.manualTrigger",
    "n8n-nodes-base.webhook",
    "n8n-nodes-base.scheduleTrigger",
    "n8n-nodes-base.cron",
}

NODE_CATALOG: List[Dict[str, str]] = [
    {"name": "Webhook", "type": "n8n-nodes-base.webhook", "category": "Core Nodes",
     "description": "Receives data via webhook HTTP endpoint"},
    {"name": "HTTP Request", "type": "n8n-nodes-base.httpRequest", "category": "Core Nodes",
     "description": "Makes HTTP requests to any URL"},
    {"name": "Set", "type": "n8n-nodes-base.set", "category": "Core Nodes",
     "description": "Sets or transforms item fields"},
    {"name": "IF", "type": "n8n-nodes-base.if", "category": "Core Nodes",
     "description": "Routes items down a true or false branch"},
    {"name": "Code", "type": "n8n-nodes-base.code", "category": "Core Nodes",
     "description": "Run custom JavaScript or Python code"},
    {"name": "Merge", "type": "n8n-nodes-base.merge", "category": "Core Nodes",
     "description": "Merges data from multiple inputs"},
    {"name": "Email Send", "type": "n8n-nodes-base.emailSend", "category": "Communication",
     "description": "Sends email over SMTP"},
    {"name": "Slack", "type": "n8n-nodes-base.slack", "category": "Communication",
     "description": "Posts messages and manages Slack channels"},
    {"name": "Google Sheets", "type": "n8n-nodes-base.googleSheets", "category": "Data",
     "description": "Reads and writes spreadsheet rows"},
    {"name": "Postgres", "type": "n8n-nodes-base.postgres", "category": "Data",
     "description": "Runs queries against PostgreSQL"},
    {"name": "MongoDB", "type": "n8n-nodes-base.mongoDb", "category": "Data",
     "description": "Reads and writes MongoDB documents"},
]


def list_node_types(category: Optional[str] = None) -> List[Dict[str, str]]:
    if not category:
        return list(NODE_CATALOG)
    wanted = category.lower()
    return [node for node in NODE_CATALOG if node["category"].lower() == wanted]


def node_categories() -> List[str]:
    return sorted({node["category"] for node in NODE_CATALOG})


def validate_workflow(workflow: Dict[str, Any]) -> Dict[str, Any]:
    """
    Inspect a workflow as returned by the n8n API.

    Issues make the workflow invalid; warnings and info do not.

    Returns:
        Report with issues, warnings, info, isValid and a one-line summary
    """
    nodes: List[Dict[str, Any]] = workflow.get("nodes") or []
    issues: List[str] = []
    warnings: List[str] = []
    info: List[str] = []

    if not nodes:
        warnings.append("Workflow has no nodes")

    names = [str(node.get("name")) for node in nodes]
    for name, count in Counter(names).items():
        if count > 1:
            issues.append(f"Duplicate node name '{name}' used {count} times")

    known: Set[str] = set(names)
    sources: Set[str] = set()
    targets: Set[str] = set()
    for source, _, _, entry in iter_links(workflow):
        target = entry.get("node")
        if source not in known:
            issues.append(f"Connection from missing node '{source}'")
        if target not in known:
            issues.append(f"Connection from '{source}' to missing node '{target}'")
        sources.add(source)
        targets.add(str(target))

    for node in nodes:
        name = node.get("name")
        node_type = node.get("type", "")
        params = node.get("parameters") or {}

        if len(nodes) > 1 and name not in sources and name not in targets:
            if node_type != "n8n-nodes-base.start":
                warnings.append(f"Node '{name}' is not connected to any other node")
        elif name not in targets and name in sources and node_type not in _ENTRY_NODE_TYPES:
            if not node_type.lower().endswith("trigger"):
                info.append(f"Node '{name}' has no inbound connection")

        if node_type == "n8n-nodes-base.httpRequest" and not params.get("url"):
            issues.append(f"HTTP Request node '{name}' is missing a URL")
        if node_type == "n8n-nodes-base.webhook" and not params.get("path"):
            issues.append(f"Webhook node '{name}' is missing a path")
        if node.get("disabled"):
            info.append(f"Node '{name}' is disabled")

    is_valid = not issues
    summary = (
        f"{len(issues)} issue(s), {len(warnings)} warning(s) found"
        if issues or warnings
        else "Workflow looks good"
    )
    return {
        "workflowName": workflow.get("name"),
        "isActive": bool(workflow.get("active")),
        "nodeCount": len(nodes),
        "issues": issues,
        "warnings": warnings,
        "info": info,
        "isValid": is_valid,
        "summary": summary,
    }
