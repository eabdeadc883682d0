"""The fixed set of n8n tools exposed over MCP."""
from __future__ import annotations

import re
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional

from client.n8n_client import N8nClient
from core import workflow_edit
from core.errors import UpstreamError, ValidationError
from core.logging import audit_log
from core.specs import (
    AddNodeArgs,
    ConnectNodesArgs,
    CreateCredentialArgs,
    CreateVariableArgs,
    CreateWorkflowArgs,
    DiagnoseNodeErrorArgs,
    DisconnectNodesArgs,
    EmptyArgs,
    ExecuteWorkflowArgs,
    GenerateAuditArgs,
    GetExecutionResultArgs,
    GetNodeExecutionDataArgs,
    ListExecutionsArgs,
    ListNodeTypesArgs,
    ListWorkflowsArgs,
    NodeRef,
    TransferWorkflowArgs,
    UpdateNodeArgs,
    UpdateWorkflowArgs,
    WorkflowRef,
)
from core.validator import list_node_types as catalog_node_types
from core.validator import node_categories, validate_workflow as validate_definition
from mcp_server.registry import ToolContext, ToolRegistry


registry = ToolRegistry()


def _workflow_brief(workflow: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "id": workflow.get("id"),
        "name": workflow.get("name"),
        "active": bool(workflow.get("active")),
        "createdAt": workflow.get("createdAt"),
        "updatedAt": workflow.get("updatedAt"),
        "tags": [tag.get("name") for tag in workflow.get("tags") or [] if isinstance(tag, dict)],
    }


def _execution_brief(execution: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "id": execution.get("id"),
        "workflowId": execution.get("workflowId"),
        "status": execution.get("status"),
        "finished": bool(execution.get("finished")),
        "mode": execution.get("mode"),
        "startedAt": execution.get("startedAt"),
        "stoppedAt": execution.get("stoppedAt"),
    }


def _result_data(execution: Dict[str, Any]) -> Dict[str, Any]:
    data = execution.get("data")
    if not isinstance(data, dict):
        return {}
    return data.get("resultData") or {}


def _require_id(payload: Dict[str, Any], endpoint: str) -> Any:
    if payload.get("id") is None:
        raise UpstreamError(
            "n8n response did not include an id",
            endpoint=endpoint,
            details={"malformed": True},
        )
    return payload["id"]


async def _edit_workflow(
    ctx: ToolContext,
    workflow_id: str,
    event: str,
    mutate: Callable[[Dict[str, Any]], Dict[str, Any]],
    details: Dict[str, Any],
) -> Dict[str, Any]:
    """Fetch, mutate in memory, PUT back."""
    workflow = await ctx.client.get_workflow(workflow_id)
    updated = mutate(workflow)
    saved = await ctx.client.update_workflow(workflow_id, workflow_edit.update_payload(updated))
    audit_log(event, actor=ctx.actor, details={"workflowId": workflow_id, **details})
    return saved


# Workflows


@registry.register(
    "list_workflows",
    "List workflows, optionally filtered by active flag and a name search.",
    ListWorkflowsArgs,
)
async def list_workflows(ctx: ToolContext, args: ListWorkflowsArgs) -> Dict[str, Any]:
    params: Dict[str, Any] = {}
    if args.active is not None:
        params["active"] = "true" if args.active else "false"
    if args.search:
        params["name"] = args.search

    workflows = await ctx.client.list_workflows(params or None)
    # Older n8n versions ignore the filters, so apply them again here
    if args.active is not None:
        workflows = [wf for wf in workflows if bool(wf.get("active")) == args.active]
    if args.search:
        needle = args.search.lower()
        workflows = [wf for wf in workflows if needle in str(wf.get("name", "")).lower()]
    return {"workflows": [_workflow_brief(wf) for wf in workflows], "total": len(workflows)}


@registry.register(
    "get_workflow",
    "Get a workflow with its nodes and connections.",
    WorkflowRef,
)
async def get_workflow(ctx: ToolContext, args: WorkflowRef) -> Dict[str, Any]:
    return workflow_edit.summarize(await ctx.client.get_workflow(args.workflowId))


@registry.register(
    "create_workflow",
    "Create a workflow from nodes and connections. Optionally activate it.",
    CreateWorkflowArgs,
    idempotent=False,
)
async def create_workflow(ctx: ToolContext, args: CreateWorkflowArgs) -> Dict[str, Any]:
    created = await ctx.client.create_workflow(
        {
            "name": args.name,
            "nodes": args.nodes,
            "connections": args.connections,
            "settings": args.settings or {},
        }
    )
    workflow_id = _require_id(created, "POST /workflows")
    if args.activate:
        created = await ctx.client.set_activation(workflow_id, True)

    audit_log(
        "create_workflow",
        actor=ctx.actor,
        details={"id": workflow_id, "name": args.name, "activate": args.activate},
    )
    return {
        "workflow": _workflow_brief(created),
        "message": f"Workflow '{args.name}' created",
    }


@registry.register(
    "update_workflow",
    "Replace the name, nodes, connections or settings of a workflow.",
    UpdateWorkflowArgs,
    idempotent=False,
)
async def update_workflow(ctx: ToolContext, args: UpdateWorkflowArgs) -> Dict[str, Any]:
    changes = args.model_dump(exclude={"workflowId"}, exclude_none=True)

    def apply(workflow: Dict[str, Any]) -> Dict[str, Any]:
        return {**workflow, **changes}

    saved = await _edit_workflow(
        ctx, args.workflowId, "update_workflow", apply, {"fields": sorted(changes)}
    )
    return {
        "workflow": workflow_edit.summarize(saved),
        "message": f"Workflow {args.workflowId} updated",
    }


@registry.register(
    "delete_workflow",
    "Permanently delete a workflow.",
    WorkflowRef,
    idempotent=False,
)
async def delete_workflow(ctx: ToolContext, args: WorkflowRef) -> Dict[str, Any]:
    result = await ctx.client.delete_workflow(args.workflowId)
    audit_log("delete_workflow", actor=ctx.actor, details={"id": args.workflowId})
    return {**result, "message": f"Workflow {args.workflowId} deleted"}


async def _set_active(ctx: ToolContext, workflow_id: str, active: bool) -> Dict[str, Any]:
    result = await ctx.client.set_activation(workflow_id, active)
    audit_log(
        "activate_workflow" if active else "deactivate_workflow",
        actor=ctx.actor,
        details={"id": workflow_id, "active": active},
    )
    return {
        "id": workflow_id,
        "active": bool(result.get("active", active)),
        "message": f"Workflow {workflow_id} {'activated' if active else 'deactivated'}",
    }


@registry.register("activate_workflow", "Activate a workflow.", WorkflowRef, idempotent=False)
async def activate_workflow(ctx: ToolContext, args: WorkflowRef) -> Dict[str, Any]:
    return await _set_active(ctx, args.workflowId, True)


@registry.register("deactivate_workflow", "Deactivate a workflow.", WorkflowRef, idempotent=False)
async def deactivate_workflow(ctx: ToolContext, args: WorkflowRef) -> Dict[str, Any]:
    return await _set_active(ctx, args.workflowId, False)


# Nodes and connections


@registry.register(
    "add_node",
    "Add a node to an existing workflow.",
    AddNodeArgs,
    idempotent=False,
)
async def add_node(ctx: ToolContext, args: AddNodeArgs) -> Dict[str, Any]:
    saved = await _edit_workflow(
        ctx,
        args.workflowId,
        "add_node",
        lambda wf: workflow_edit.add_node(
            wf,
            args.nodeName,
            args.nodeType,
            type_version=args.typeVersion,
            position=args.position,
            parameters=args.parameters,
        ),
        {"nodeName": args.nodeName, "nodeType": args.nodeType},
    )
    return {
        "node": next(
            (node for node in saved.get("nodes") or [] if node.get("name") == args.nodeName),
            None,
        ),
        "message": f"Node '{args.nodeName}' added to workflow {args.workflowId}",
    }


@registry.register(
    "update_node",
    "Update a node's parameters, position or disabled flag. Parameters are merged.",
    UpdateNodeArgs,
    idempotent=False,
)
async def update_node(ctx: ToolContext, args: UpdateNodeArgs) -> Dict[str, Any]:
    await _edit_workflow(
        ctx,
        args.workflowId,
        "update_node",
        lambda wf: workflow_edit.update_node(
            wf,
            args.nodeName,
            parameters=args.parameters,
            position=args.position,
            disabled=args.disabled,
        ),
        {"nodeName": args.nodeName},
    )
    return {"message": f"Node '{args.nodeName}' updated in workflow {args.workflowId}"}


@registry.register(
    "delete_node",
    "Remove a node and every connection touching it.",
    NodeRef,
    idempotent=False,
)
async def delete_node(ctx: ToolContext, args: NodeRef) -> Dict[str, Any]:
    await _edit_workflow(
        ctx,
        args.workflowId,
        "delete_node",
        lambda wf: workflow_edit.remove_node(wf, args.nodeName),
        {"nodeName": args.nodeName},
    )
    return {"message": f"Node '{args.nodeName}' deleted from workflow {args.workflowId}"}


@registry.register(
    "connect_nodes",
    "Connect the output of one node to the input of another.",
    ConnectNodesArgs,
    idempotent=False,
)
async def connect_nodes(ctx: ToolContext, args: ConnectNodesArgs) -> Dict[str, Any]:
    saved = await _edit_workflow(
        ctx,
        args.workflowId,
        "connect_nodes",
        lambda wf: workflow_edit.connect(
            wf,
            args.sourceNode,
            args.targetNode,
            source_output=args.sourceOutput,
            target_input=args.targetInput,
            output_index=args.outputIndex,
            input_index=args.inputIndex,
        ),
        {"sourceNode": args.sourceNode, "targetNode": args.targetNode},
    )
    return {
        "connections": (saved.get("connections") or {}).get(args.sourceNode, {}),
        "message": f"Connected '{args.sourceNode}' to '{args.targetNode}'",
    }


@registry.register(
    "disconnect_nodes",
    "Remove every connection from one node to another.",
    DisconnectNodesArgs,
    idempotent=False,
)
async def disconnect_nodes(ctx: ToolContext, args: DisconnectNodesArgs) -> Dict[str, Any]:
    await _edit_workflow(
        ctx,
        args.workflowId,
        "disconnect_nodes",
        lambda wf: workflow_edit.disconnect(wf, args.sourceNode, args.targetNode),
        {"sourceNode": args.sourceNode, "targetNode": args.targetNode},
    )
    return {"message": f"Disconnected '{args.sourceNode}' from '{args.targetNode}'"}


@registry.register(
    "list_node_types",
    "List common n8n node types, optionally for one category.",
    ListNodeTypesArgs,
)
async def list_node_types(ctx: ToolContext, args: ListNodeTypesArgs) -> Dict[str, Any]:
    node_types = catalog_node_types(args.category)
    return {"nodeTypes": node_types, "total": len(node_types), "categories": node_categories()}


# Executions


@registry.register(
    "execute_workflow",
    "Run a workflow, optionally passing input data.",
    ExecuteWorkflowArgs,
    idempotent=False,
)
async def execute_workflow(ctx: ToolContext, args: ExecuteWorkflowArgs) -> Dict[str, Any]:
    result = await ctx.client.execute_workflow(args.workflowId, args.data)
    audit_log("execute_workflow", actor=ctx.actor, details={"id": args.workflowId})
    return {"execution": result, "message": f"Workflow {args.workflowId} executed"}


@registry.register(
    "get_execution_result",
    "Get the status and, optionally, the result data of an execution.",
    GetExecutionResultArgs,
)
async def get_execution_result(ctx: ToolContext, args: GetExecutionResultArgs) -> Dict[str, Any]:
    execution = await ctx.client.get_execution(args.executionId, include_data=args.includeData)
    payload = _execution_brief(execution)
    result = _result_data(execution)
    payload["lastNodeExecuted"] = result.get("lastNodeExecuted")
    payload["error"] = result.get("error")
    if args.includeData:
        payload["data"] = execution.get("data")
    return payload


@registry.register(
    "list_executions",
    "List recent executions, optionally for one workflow or status.",
    ListExecutionsArgs,
)
async def list_executions(ctx: ToolContext, args: ListExecutionsArgs) -> Dict[str, Any]:
    params: Dict[str, Any] = {"limit": args.limit}
    if args.workflowId is not None:
        params["workflowId"] = str(args.workflowId)
    if args.status:
        params["status"] = args.status
    executions = await ctx.client.list_executions(params)
    return {
        "executions": [_execution_brief(item) for item in executions],
        "total": len(executions),
    }


@registry.register(
    "get_node_execution_data",
    "Get the run data one node produced during an execution.",
    GetNodeExecutionDataArgs,
)
async def get_node_execution_data(
    ctx: ToolContext, args: GetNodeExecutionDataArgs
) -> Dict[str, Any]:
    execution = await ctx.client.get_execution(args.executionId, include_data=True)
    run_data = _result_data(execution).get("runData") or {}
    if args.nodeName not in run_data:
        raise ValidationError(
            f"Node '{args.nodeName}' did not run in execution {args.executionId}",
            {"nodeName": args.nodeName, "executedNodes": sorted(run_data)},
        )
    runs: List[Dict[str, Any]] = run_data[args.nodeName] or []
    return {
        "executionId": args.executionId,
        "nodeName": args.nodeName,
        "runCount": len(runs),
        "runs": runs,
    }


_ISSUE_PATTERNS = [
    (
        re.compile(r"credential|auth|401|403|forbidden|unauthori[sz]ed", re.I),
        "Credential or authentication problem",
        "Check the credentials attached to the node and that they have not expired",
    ),
    (
        re.compile(r"connect|timeout|timed out|econnrefused|enotfound|socket", re.I),
        "Connection or timeout problem",
        "Check that the target service is reachable and consider raising the timeout",
    ),
    (
        re.compile(r"json|parse|unexpected token", re.I),
        "Malformed data",
        "Inspect the input items for this node and add a Set or Code node to reshape them",
    ),
]


@registry.register(
    "diagnose_node_error",
    "Look through recent failed executions for errors raised by one node.",
    DiagnoseNodeErrorArgs,
)
async def diagnose_node_error(ctx: ToolContext, args: DiagnoseNodeErrorArgs) -> Dict[str, Any]:
    workflow = await ctx.client.get_workflow(args.workflowId)
    node = workflow_edit.find_node(workflow, args.nodeName)
    failed = await ctx.client.list_executions(
        {"workflowId": args.workflowId, "status": "error", "limit": args.limit}
    )

    errors: List[Dict[str, Any]] = []
    for brief in failed:
        execution = await ctx.client.get_execution(brief.get("id"), include_data=True)
        result = _result_data(execution)
        error = result.get("error") or {}
        failing_node = (error.get("node") or {}).get("name") or result.get("lastNodeExecuted")
        if failing_node != args.nodeName:
            continue
        errors.append(
            {
                "executionId": execution.get("id"),
                "startedAt": execution.get("startedAt"),
                "message": error.get("message"),
                "description": error.get("description"),
            }
        )

    common_issues: List[str] = []
    recommendations: List[str] = []
    text = " ".join(f"{err.get('message') or ''} {err.get('description') or ''}" for err in errors)
    for pattern, issue, advice in _ISSUE_PATTERNS:
        if pattern.search(text):
            common_issues.append(issue)
            recommendations.append(advice)
    if node.get("disabled"):
        common_issues.append("Node is disabled")
        recommendations.append("Enable the node before running the workflow again")
    if errors and not recommendations:
        recommendations.append("Open the failing executions in n8n to inspect the node input")

    return {
        "workflowId": args.workflowId,
        "nodeName": args.nodeName,
        "nodeType": node.get("type"),
        "errorCount": len(errors),
        "errors": errors,
        "commonIssues": common_issues,
        "recommendations": recommendations,
    }


# Validation and audit


@registry.register(
    "validate_workflow",
    "Check a workflow for missing parameters, orphaned nodes and broken connections.",
    WorkflowRef,
)
async def validate_workflow(ctx: ToolContext, args: WorkflowRef) -> Dict[str, Any]:
    workflow = await ctx.client.get_workflow(args.workflowId)
    return {"workflowId": args.workflowId, **validate_definition(workflow)}


_UNIT_SECONDS = {"h": 3600, "d": 86400, "w": 604800}


def parse_time_range(value: str) -> timedelta:
    match = re.fullmatch(r"(\d+)([hdw])", value)
    if not match:
        raise ValidationError(f"Invalid timeRange: {value}", {"fields": ["timeRange"]})
    return timedelta(seconds=int(match.group(1)) * _UNIT_SECONDS[match.group(2)])


def _parse_timestamp(value: Any) -> Optional[datetime]:
    if not isinstance(value, str):
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


def _succeeded(execution: Dict[str, Any]) -> bool:
    status = execution.get("status")
    if status:
        return status == "success"
    return bool(execution.get("finished"))


@registry.register(
    "generate_audit",
    "Summarise execution success and failure over a time range (e.g. 24h, 7d).",
    GenerateAuditArgs,
)
async def generate_audit(ctx: ToolContext, args: GenerateAuditArgs) -> Dict[str, Any]:
    now = datetime.now(timezone.utc)
    since = now - parse_time_range(args.timeRange)

    params: Dict[str, Any] = {"limit": 100}
    if args.workflowId is not None:
        params["workflowId"] = str(args.workflowId)
    executions = [
        item
        for item in await ctx.client.list_executions(params)
        if (_parse_timestamp(item.get("startedAt")) or now) >= since
    ]

    by_workflow: Dict[str, Dict[str, int]] = {}
    successful = 0
    for item in executions:
        ok = _succeeded(item)
        successful += ok
        bucket = by_workflow.setdefault(str(item.get("workflowId")), {"successful": 0, "failed": 0})
        bucket["successful" if ok else "failed"] += 1

    total = len(executions)
    if args.workflowId is not None:
        workflow = await ctx.client.get_workflow(args.workflowId)
        workflows = {"total": 1, "active": int(bool(workflow.get("active")))}
    else:
        all_workflows = await ctx.client.list_workflows()
        workflows = {
            "total": len(all_workflows),
            "active": sum(1 for wf in all_workflows if wf.get("active")),
        }

    return {
        "timeRange": args.timeRange,
        "period": {"from": since.isoformat(), "to": now.isoformat()},
        "workflows": workflows,
        "executions": {
            "total": total,
            "successful": successful,
            "failed": total - successful,
            "successRate": round(successful / total * 100, 2) if total else None,
        },
        "byWorkflow": by_workflow,
    }


# Credentials and variables


@registry.register(
    "create_credential",
    "Create a credential. The secret data is never echoed back or logged.",
    CreateCredentialArgs,
    idempotent=False,
)
async def create_credential(ctx: ToolContext, args: CreateCredentialArgs) -> Dict[str, Any]:
    created = await ctx.client.create_credential(
        {"name": args.name, "type": args.type, "data": args.data}
    )
    audit_log(
        "create_credential",
        actor=ctx.actor,
        details={"id": created.get("id"), "name": args.name, "type": args.type, "data": args.data},
    )
    return {
        "credential": {"id": created.get("id"), "name": args.name, "type": args.type},
        "message": f"Credential '{args.name}' created",
    }


@registry.register("list_variables", "List environment variables defined in n8n.", EmptyArgs)
async def list_variables(ctx: ToolContext, args: EmptyArgs) -> Dict[str, Any]:
    variables = await ctx.client.list_variables()
    return {"variables": variables, "total": len(variables)}


@registry.register(
    "create_variable",
    "Create an n8n environment variable.",
    CreateVariableArgs,
    idempotent=False,
)
async def create_variable(ctx: ToolContext, args: CreateVariableArgs) -> Dict[str, Any]:
    created = await ctx.client.create_variable(args.key, args.value)
    audit_log("create_variable", actor=ctx.actor, details={"key": args.key, "value": args.value})
    return {"variable": {"id": created.get("id"), "key": args.key}, "message": f"Variable {args.key} created"}


# Migration


@registry.register(
    "transfer_workflow",
    "Copy a workflow to another n8n instance. The copy is created inactive.",
    TransferWorkflowArgs,
    idempotent=False,
)
async def transfer_workflow(ctx: ToolContext, args: TransferWorkflowArgs) -> Dict[str, Any]:
    workflow = await ctx.client.get_workflow(args.workflowId)
    factory = ctx.client_factory or N8nClient
    target = factory(args.targetUrl, args.targetApiKey)
    try:
        created = await target.create_workflow(
            {
                "name": f"{workflow.get('name')} (Transferred)",
                "nodes": workflow.get("nodes") or [],
                "connections": workflow.get("connections") or {},
                "settings": workflow.get("settings") or {},
            }
        )
    finally:
        await target.close()

    audit_log(
        "transfer_workflow",
        actor=ctx.actor,
        details={
            "sourceWorkflowId": args.workflowId,
            "targetUrl": args.targetUrl,
            "targetWorkflowId": created.get("id"),
        },
    )
    return {
        "sourceWorkflowId": args.workflowId,
        "targetWorkflowId": created.get("id"),
        "targetUrl": args.targetUrl,
        "message": f"Workflow '{workflow.get('name')}' transferred",
    }


# Probes


def _probes(ctx: ToolContext) -> Any:
    if ctx.probes is None:
        raise RuntimeError("health reporter is not attached")
    return ctx.probes


@registry.register("get_health_status", "Server liveness: uptime, connections and memory.", EmptyArgs)
async def get_health_status(ctx: ToolContext, args: EmptyArgs) -> Dict[str, Any]:
    return _probes(ctx).health()


@registry.register("get_metrics", "Request counters, latency and connection statistics.", EmptyArgs)
async def get_metrics(ctx: ToolContext, args: EmptyArgs) -> Dict[str, Any]:
    return _probes(ctx).metrics()
