"""
Runtime Models — Shared Pydantic models for workflow definitions.

Defines the core data structures used across the runtime:
  - Definition: A declarative workflow document (nodes + connections + settings)
  - Node: A single step inside a definition
  - ConnectionTarget: One edge endpoint in the connection graph
  - Settings: Optional execution settings
  - ValidationResult: Outcome of structural validation
  - LoadResult: Aggregate outcome of one discovery pass
  - RuntimeStatus: Snapshot for health/status reporting

On-disk documents use camelCase keys (``typeVersion``, ``executionOrder``);
the models accept both spellings and dump camelCase with ``by_alias=True``.
"""

from __future__ import annotations

import enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


# ── Enums ────────────────────────────────────────────────────────────


class ExecutionOrder(str, enum.Enum):
    """Known execution-order modes of the execution engine."""

    V0 = "v0"
    V1 = "v1"


class LoaderState(str, enum.Enum):
    """Phases of the loader orchestrator."""

    IDLE = "idle"
    SCANNING = "scanning"
    LOADING = "loading"
    VALIDATING = "validating"
    REGISTERING = "registering"
    REJECTED = "rejected"


# ── Definition Document ──────────────────────────────────────────────


class ConnectionTarget(BaseModel):
    """A single target reference inside a connection branch."""

    model_config = ConfigDict(populate_by_name=True, extra="allow")

    node: str
    type: str = "main"
    index: int = 0


# source node name → channel name → parallel branches → ordered targets
ConnectionGraph = dict[str, dict[str, list[list[ConnectionTarget]]]]


class Node(BaseModel):
    """
    A single step in a definition.

    ``position`` and ``parameters`` are intentionally untyped: shape
    problems are reported by the validator, not rejected by the parser.
    """

    model_config = ConfigDict(populate_by_name=True, extra="allow")

    id: str = ""
    name: str = ""
    type: str = ""
    type_version: int = Field(default=1, alias="typeVersion")
    position: Any = None
    parameters: Any = Field(default_factory=dict)
    disabled: bool = False
    webhook_id: str | None = Field(default=None, alias="webhookId")
    credentials: dict[str, Any] | None = None


class Settings(BaseModel):
    """Optional execution settings carried by a definition."""

    model_config = ConfigDict(populate_by_name=True, extra="allow")

    execution_order: Any = Field(default=None, alias="executionOrder")
    timezone: Any = None
    save_execution_progress: bool | None = Field(default=None, alias="saveExecutionProgress")
    save_manual_executions: bool | None = Field(default=None, alias="saveManualExecutions")
    save_data_error_execution: str | None = Field(default=None, alias="saveDataErrorExecution")
    save_data_success_execution: str | None = Field(default=None, alias="saveDataSuccessExecution")
    error_workflow: str | None = Field(default=None, alias="errorWorkflow")


class Definition(BaseModel):
    """
    Declarative workflow document — the unit the runtime loads and registers.

    A fresh instance is built on every load; the registry never mutates
    a previously accepted instance.
    """

    model_config = ConfigDict(populate_by_name=True, extra="allow")

    id: str = ""
    name: str = ""
    description: str | None = None
    version: str = "1.0.0"
    tags: list[str] = Field(default_factory=list)
    active: bool = False
    nodes: list[Node] = Field(default_factory=list)
    connections: ConnectionGraph = Field(default_factory=dict)
    settings: Settings | None = None
    static_data: dict[str, Any] | None = Field(default=None, alias="staticData")
    pin_data: dict[str, Any] | None = Field(default=None, alias="pinData")
    meta: dict[str, Any] | None = None

    @property
    def node_names(self) -> set[str]:
        return {node.name for node in self.nodes}

    def to_document(self) -> dict[str, Any]:
        """Serialize back to the on-disk (camelCase) document shape."""
        return self.model_dump(by_alias=True, exclude_none=True)


# ── Validation & Load Results ────────────────────────────────────────


class ValidationResult(BaseModel):
    """Outcome of structural validation. ``valid`` iff ``errors`` is empty."""

    valid: bool
    errors: list[str] = Field(default_factory=list)


class LoadedDefinition(BaseModel):
    """A definition accepted into the registry during a pass."""

    id: str
    name: str
    source_path: str


class LoadFailure(BaseModel):
    """A file whose definition could not be loaded, validated or published."""

    source_path: str
    errors: list[str] = Field(default_factory=list)


class SkippedSource(BaseModel):
    """A discovered file that was not processed."""

    source_path: str
    reason: str


class LoadResult(BaseModel):
    """Aggregate outcome of one discovery pass."""

    loaded: list[LoadedDefinition] = Field(default_factory=list)
    errors: list[LoadFailure] = Field(default_factory=list)
    skipped: list[SkippedSource] = Field(default_factory=list)
    published: list[str] = Field(default_factory=list)
    publish_errors: list[LoadFailure] = Field(default_factory=list)
    duration_ms: float = 0.0


# ── Status ───────────────────────────────────────────────────────────


class RuntimeStatus(BaseModel):
    """Point-in-time snapshot of the orchestrator for status reporting."""

    state: LoaderState
    total_definitions: int
    active_definitions: int
    watching: bool
    degraded: bool
    last_load_loaded: int = 0
    last_load_errors: int = 0
    last_load_duration_ms: float | None = None
