"""In-memory edits on n8n workflow JSON (nodes and the connections map)."""
from __future__ import annotations

import copy
import uuid
from typing import Any, Callable, Dict, Iterator, List, Optional, Tuple

from core.errors import ValidationError

# Connections structure: {fromNode: {outputType: [[entries for branch 0], [entries for branch 1], ...]}}
Connections = Dict[str, Dict[str, List[List[Dict[str, Any]]]]]

# Fields n8n accepts on PUT /workflows/{id}; everything else is read-only
_WRITABLE_FIELDS = ("name", "nodes", "connections", "settings", "staticData")

DEFAULT_POSITION = [250, 250]


def find_node(workflow: Dict[str, Any], node_name: str) -> Dict[str, Any]:
    for node in workflow.get("nodes") or []:
        if node.get("name") == node_name:
            return node
    raise ValidationError(
        f"Node '{node_name}' not found in workflow",
        {"nodeName": node_name, "workflowId": workflow.get("id")},
    )


def node_names(workflow: Dict[str, Any]) -> List[str]:
    return [str(node.get("name")) for node in workflow.get("nodes") or []]


def add_node(
    workflow: Dict[str, Any],
    name: str,
    node_type: str,
    type_version: Any = 1,
    position: Optional[List[int]] = None,
    parameters: Optional[Dict[str, Any]] = None,
) -> Dict[str, Any]:
    """Return a copy of workflow with a new node appended."""
    if name in node_names(workflow):
        raise ValidationError(f"Node '{name}' already exists", {"nodeName": name})

    updated = copy.deepcopy(workflow)
    updated.setdefault("nodes", []).append(
        {
            "parameters": parameters or {},
            "id": str(uuid.uuid4()),
            "name": name,
            "type": node_type,
            "typeVersion": type_version,
            "position": list(position or DEFAULT_POSITION),
        }
    )
    return updated


def update_node(
    workflow: Dict[str, Any],
    name: str,
    parameters: Optional[Dict[str, Any]] = None,
    position: Optional[List[int]] = None,
    disabled: Optional[bool] = None,
) -> Dict[str, Any]:
    updated = copy.deepcopy(workflow)
    node = find_node(updated, name)
    if parameters is not None:
        merged = dict(node.get("parameters") or {})
        merged.update(parameters)
        node["parameters"] = merged
    if position is not None:
        node["position"] = list(position)
    if disabled is not None:
        node["disabled"] = disabled
    return updated


def remove_node(workflow: Dict[str, Any], name: str) -> Dict[str, Any]:
    """Drop a node along with every connection into or out of it."""
    find_node(workflow, name)
    updated = copy.deepcopy(workflow)
    updated["nodes"] = [node for node in updated.get("nodes") or [] if node.get("name") != name]

    connections: Connections = updated.get("connections") or {}
    connections.pop(name, None)
    for source in list(connections):
        _filter_targets(connections, source, lambda entry: entry.get("node") != name)
    updated["connections"] = connections
    return updated


def connect(
    workflow: Dict[str, Any],
    source: str,
    target: str,
    source_output: str = "main",
    target_input: str = "main",
    output_index: int = 0,
    input_index: int = 0,
) -> Dict[str, Any]:
    find_node(workflow, source)
    find_node(workflow, target)

    updated = copy.deepcopy(workflow)
    connections: Connections = updated.setdefault("connections", {})
    output_list = connections.setdefault(source, {}).setdefault(source_output, [])

    # Ensure we have enough branches
    while len(output_list) <= output_index:
        output_list.append([])

    entry = {"node": target, "type": target_input, "index": input_index}
    branch = output_list[output_index]
    if entry not in branch:
        branch.append(entry)
    return updated


def disconnect(workflow: Dict[str, Any], source: str, target: str) -> Dict[str, Any]:
    """Remove all links source -> target. Raises if there were none."""
    find_node(workflow, source)
    updated = copy.deepcopy(workflow)
    connections: Connections = updated.get("connections") or {}
    removed = _filter_targets(connections, source, lambda entry: entry.get("node") != target)
    if not removed:
        raise ValidationError(
            f"No connection from '{source}' to '{target}'",
            {"sourceNode": source, "targetNode": target},
        )
    updated["connections"] = connections
    return updated


def _filter_targets(
    connections: Connections, source: str, keep: Callable[[Dict[str, Any]], bool]
) -> int:
    removed = 0
    outputs = connections.get(source) or {}
    for output_type, branches in list(outputs.items()):
        new_branches = []
        for branch in branches or []:
            kept = [entry for entry in branch or [] if keep(entry)]
            removed += len(branch or []) - len(kept)
            new_branches.append(kept)
        # trailing empty branches carry no information
        while new_branches and not new_branches[-1]:
            new_branches.pop()
        if new_branches:
            outputs[output_type] = new_branches
        else:
            del outputs[output_type]
    if source in connections and not outputs:
        del connections[source]
    return removed


def iter_links(
    workflow: Dict[str, Any],
) -> Iterator[Tuple[str, str, int, Dict[str, Any]]]:
    """Yield (source, output_type, output_index, entry) for every connection entry."""
    for source, outputs in (workflow.get("connections") or {}).items():
        for output_type, branches in (outputs or {}).items():
            for index, branch in enumerate(branches or []):
                for entry in branch or []:
                    yield source, output_type, index, entry


def update_payload(workflow: Dict[str, Any]) -> Dict[str, Any]:
    """Keep only the fields the n8n API accepts on update."""
    payload = {key: workflow[key] for key in _WRITABLE_FIELDS if key in workflow}
    payload.setdefault("settings", {})
    payload.setdefault("connections", {})
    return payload


def summarize(workflow: Dict[str, Any]) -> Dict[str, Any]:
    nodes = workflow.get("nodes") or []
    return {
        "id": workflow.get("id"),
        "name": workflow.get("name"),
        "active": bool(workflow.get("active")),
        "nodeCount": len(nodes),
        "nodes": [
            {
                "name": node.get("name"),
                "type": node.get("type"),
                "position": node.get("position"),
                "parameters": node.get("parameters") or {},
                "disabled": bool(node.get("disabled", False)),
            }
            for node in nodes
        ],
        "connections": workflow.get("connections") or {},
        "createdAt": workflow.get("createdAt"),
        "updatedAt": workflow.get("updatedAt"),
    }
