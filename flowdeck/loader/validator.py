"""
DefinitionValidator — Structural checks for a loaded definition.

Validation is a pure function of the definition: no I/O, no registry
access. It runs synchronously in both the bulk discovery pass and the
single-file hot-reload path.

Checks run in a fixed order and never short-circuit, so one call
surfaces every problem:
  1. Presence: id, name, at least one node
  2. Nodes: required fields, unique ids/names, position shape, parameters shape
  3. Connections: every source and every target names an existing node
  4. Settings: execution order and timezone (only when settings are present)
"""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any

from flowdeck.errors import StructuralError
from flowdeck.models import ConnectionGraph, Definition, ExecutionOrder, Node, Settings, ValidationResult

_EXECUTION_ORDERS = {order.value for order in ExecutionOrder}


class DefinitionValidator:
    """
    Collects every structural violation of a definition.

    Usage:
        result = DefinitionValidator().validate(definition)
        if not result.valid:
            print(result.errors)
    """

    def validate(self, definition: Definition) -> ValidationResult:
        errors: list[str] = []

        if not definition.id:
            errors.append("Workflow ID is required")
        if not definition.name:
            errors.append("Workflow name is required")
        if not definition.nodes:
            errors.append("Workflow must have at least one node")

        self._validate_nodes(definition.nodes, errors)
        self._validate_connections(definition.connections, definition.nodes, errors)

        if definition.settings is not None:
            self._validate_settings(definition.settings, errors)

        return ValidationResult(valid=not errors, errors=errors)

    # ── Nodes ────────────────────────────────────────────────────────

    def _validate_nodes(self, nodes: list[Node], errors: list[str]) -> None:
        seen_ids: set[str] = set()
        seen_names: set[str] = set()

        for node in nodes:
            if not node.id:
                errors.append("Node ID is required")
            if not node.name:
                errors.append("Node name is required")
            if not node.type:
                errors.append("Node type is required")

            # Missing values are already reported above
            if node.id:
                if node.id in seen_ids:
                    errors.append(f"Duplicate node ID: {node.id}")
                seen_ids.add(node.id)

            if node.name:
                if node.name in seen_names:
                    errors.append(f"Duplicate node name: {node.name}")
                seen_names.add(node.name)

            label = node.name or node.id or "<unnamed>"
            if not _is_position(node.position):
                errors.append(f"Invalid node position for {label}: must be [x, y]")
            if not isinstance(node.parameters, Mapping):
                errors.append(f"Invalid parameters for {label}: must be an object")

    # ── Connections ──────────────────────────────────────────────────

    def _validate_connections(
        self,
        connections: ConnectionGraph,
        nodes: list[Node],
        errors: list[str],
    ) -> None:
        node_names = {node.name for node in nodes}

        for source_name, channels in connections.items():
            if source_name not in node_names:
                errors.append(f"Connection source node not found: {source_name}")
                continue

            # Every channel ("main", "error", ...) is checked the same way
            for channel, branches in channels.items():
                for branch in branches:
                    for target in branch:
                        if target.node not in node_names:
                            errors.append(
                                f"Connection target node not found: {target.node} "
                                f"(from {source_name}, channel: {channel})"
                            )

    # ── Settings ─────────────────────────────────────────────────────

    def _validate_settings(self, settings: Settings, errors: list[str]) -> None:
        order = settings.execution_order
        if order is not None and (not isinstance(order, str) or order not in _EXECUTION_ORDERS):
            errors.append("Invalid executionOrder: must be v0 or v1")

        if settings.timezone is not None and not isinstance(settings.timezone, str):
            errors.append("Invalid timezone: must be a string")


def _is_position(value: Any) -> bool:
    if not isinstance(value, (list, tuple)) or len(value) != 2:
        return False
    return all(isinstance(v, (int, float)) and not isinstance(v, bool) for v in value)


def raise_for_result(result: ValidationResult) -> None:
    """Raise ``StructuralError`` carrying every violation if ``result`` is invalid."""
    if not result.valid:
        raise StructuralError(
            f"Definition failed validation with {len(result.errors)} error(s).",
            errors=result.errors,
        )


def validate_definition(definition: Definition) -> ValidationResult:
    """Module-level shortcut for one-off validation."""
    return DefinitionValidator().validate(definition)
