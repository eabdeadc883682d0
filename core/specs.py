from __future__ import annotations

from typing import Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


Identifier = Union[str, int]


class ToolArgs(BaseModel):
    """Base for tool arguments: unknown keys are rejected."""

    model_config = ConfigDict(extra="forbid")


class EmptyArgs(ToolArgs):
    pass


class WorkflowRef(ToolArgs):
    workflowId: Identifier = Field(description="ID of the workflow")

    @field_validator("workflowId")
    @classmethod
    def validate_workflow_id(cls, value: Identifier) -> str:
        text = str(value).strip()
        if not text:
            raise ValueError("workflowId must not be empty")
        return text


class NodeRef(WorkflowRef):
    nodeName: str = Field(min_length=1, description="Name of the node in the workflow")


# Workflows


class ListWorkflowsArgs(ToolArgs):
    active: Optional[bool] = Field(default=None, description="Only workflows with this active flag")
    search: Optional[str] = Field(default=None, description="Case-insensitive name filter")


class CreateWorkflowArgs(ToolArgs):
    name: str = Field(min_length=1)
    nodes: List[Dict[str, Any]] = Field(default_factory=list)
    connections: Dict[str, Any] = Field(default_factory=dict)
    settings: Optional[Dict[str, Any]] = None
    activate: bool = False


class UpdateWorkflowArgs(WorkflowRef):
    name: Optional[str] = Field(default=None, min_length=1)
    nodes: Optional[List[Dict[str, Any]]] = None
    connections: Optional[Dict[str, Any]] = None
    settings: Optional[Dict[str, Any]] = None

    @model_validator(mode="after")
    def require_change(self) -> "UpdateWorkflowArgs":
        if all(
            value is None for value in (self.name, self.nodes, self.connections, self.settings)
        ):
            raise ValueError("at least one of name, nodes, connections or settings is required")
        return self


# Nodes and connections


class AddNodeArgs(NodeRef):
    nodeType: str = Field(min_length=1, description="e.g. n8n-nodes-base.httpRequest")
    typeVersion: Union[int, float] = Field(default=1, gt=0)
    position: Optional[List[int]] = Field(default=None, min_length=2, max_length=2)
    parameters: Dict[str, Any] = Field(default_factory=dict)


class UpdateNodeArgs(NodeRef):
    parameters: Optional[Dict[str, Any]] = Field(
        default=None, description="Merged into the node's existing parameters"
    )
    position: Optional[List[int]] = Field(default=None, min_length=2, max_length=2)
    disabled: Optional[bool] = None


class ConnectNodesArgs(WorkflowRef):
    sourceNode: str = Field(min_length=1)
    targetNode: str = Field(min_length=1)
    sourceOutput: str = "main"
    targetInput: str = "main"
    outputIndex: int = Field(default=0, ge=0)
    inputIndex: int = Field(default=0, ge=0)

    @model_validator(mode="after")
    def reject_self_connection(self) -> "ConnectNodesArgs":
        if self.sourceNode == self.targetNode:
            raise ValueError(f"self-connection not allowed: {self.sourceNode}")
        return self


class DisconnectNodesArgs(WorkflowRef):
    sourceNode: str = Field(min_length=1)
    targetNode: str = Field(min_length=1)


class ListNodeTypesArgs(ToolArgs):
    category: Optional[str] = None


# Executions


ExecutionStatus = Literal["success", "error", "waiting", "running", "canceled"]


class ExecuteWorkflowArgs(WorkflowRef):
    data: Optional[Dict[str, Any]] = None


class ExecutionRef(ToolArgs):
    executionId: Identifier

    @field_validator("executionId")
    @classmethod
    def validate_execution_id(cls, value: Identifier) -> str:
        text = str(value).strip()
        if not text:
            raise ValueError("executionId must not be empty")
        return text


class GetExecutionResultArgs(ExecutionRef):
    includeData: bool = True


class GetNodeExecutionDataArgs(ExecutionRef):
    nodeName: str = Field(min_length=1)


class ListExecutionsArgs(ToolArgs):
    workflowId: Optional[Identifier] = None
    status: Optional[ExecutionStatus] = None
    limit: int = Field(default=20, ge=1, le=250)


class DiagnoseNodeErrorArgs(NodeRef):
    limit: int = Field(default=5, ge=1, le=100)


class GenerateAuditArgs(ToolArgs):
    workflowId: Optional[Identifier] = None
    timeRange: str = Field(default="7d", pattern=r"^\d+[hdw]$", description="e.g. 24h, 7d, 2w")


# Credentials, variables, migration


class CreateCredentialArgs(ToolArgs):
    name: str = Field(min_length=1)
    type: str = Field(min_length=1, description="Credential type, e.g. httpBasicAuth")
    data: Dict[str, Any]


class CreateVariableArgs(ToolArgs):
    key: str = Field(min_length=1, max_length=50, pattern=r"^[A-Za-z0-9_]+$")
    value: str


class TransferWorkflowArgs(WorkflowRef):
    targetUrl: str = Field(pattern=r"^https?://", description="Base URL of the target n8n")
    targetApiKey: str = Field(min_length=1)
